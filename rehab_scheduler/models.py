"""
models.py — Domain records for the rehab allocation engine

Staff / ward / preference / program configuration plus the allocation rows
produced by each step. All records round-trip through to_dict()/from_dict()
using the persisted row shape (snake_case columns).
"""

import copy
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from rehab_scheduler.schedule_config import (
    FLOOR_SELECTIONS,
    PCA_RANK,
    ROBOTIC_SLOT_TEAMS,
    SLOT_FTE,
    SLOTS,
    SPECIAL_PROGRAM_SLOT_FALLBACKS,
    STAFF_RANKS,
    STAFF_STATUSES,
    TEAMS,
    THERAPIST_RANKS,
)


def _list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


# ---------------------------------------------------------------------------
# Configuration records
# ---------------------------------------------------------------------------

@dataclass
class Staff:
    id: str
    name: str
    rank: str
    team: Optional[str] = None
    floating: bool = False
    floor_pca: List[str] = field(default_factory=list)
    status: str = "active"
    buffer_fte: Optional[float] = None
    special_program: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.rank not in STAFF_RANKS:
            raise ValueError(f"Unknown rank {self.rank!r} for staff {self.id}")
        if self.floating and self.rank != PCA_RANK:
            raise ValueError(f"Only PCA staff may be floating ({self.name} is {self.rank})")
        if self.status not in STAFF_STATUSES:
            raise ValueError(f"Unknown status {self.status!r} for staff {self.id}")
        if self.team is not None and self.team not in TEAMS:
            raise ValueError(f"Unknown team {self.team!r} for staff {self.id}")

    @property
    def is_therapist(self) -> bool:
        return self.rank in THERAPIST_RANKS

    @property
    def is_pca(self) -> bool:
        return self.rank == PCA_RANK

    @property
    def is_buffer(self) -> bool:
        return self.status == "buffer"

    @property
    def base_capacity(self) -> float:
        """1.0 FTE, or the explicit cap for buffer staff."""
        if self.is_buffer and self.buffer_fte is not None:
            return float(self.buffer_fte)
        return 1.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "Staff":
        status = row.get("status")
        if status not in STAFF_STATUSES:
            # Old rows only carry an `active` boolean
            legacy_active = row.get("active")
            status = "inactive" if legacy_active is False else "active"
        buffer_fte = row.get("buffer_fte")
        return cls(
            id=str(row["id"]),
            name=str(row.get("name", row["id"])),
            rank=str(row["rank"]),
            team=row.get("team") or None,
            floating=bool(row.get("floating", False)),
            floor_pca=_list(row.get("floor_pca")),
            status=status,
            buffer_fte=float(buffer_fte) if buffer_fte is not None else None,
            special_program=_list(row.get("special_program")),
        )


@dataclass
class Ward:
    name: str
    total_beds: int
    team_assignments: Dict[str, int] = field(default_factory=dict)
    team_assignment_portions: Dict[str, str] = field(default_factory=dict)

    def teams(self) -> List[str]:
        return [t for t in TEAMS if self.team_assignments.get(t, 0) > 0]

    def label_for(self, team: str) -> str:
        """Ward label as shown under a team, e.g. '1/2 R7A' for a shared ward."""
        portion = self.team_assignment_portions.get(team)
        if portion:
            return f"{portion} {self.name}"
        beds = self.team_assignments.get(team, 0)
        if not self.total_beds or beds == self.total_beds:
            return self.name
        fraction = beds / self.total_beds
        for num, den in ((1, 2), (1, 3), (2, 3), (3, 4)):
            if abs(fraction - num / den) < 0.01:
                return f"{num}/{den} {self.name}"
        return self.name

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "Ward":
        return cls(
            name=str(row["name"]),
            total_beds=int(row.get("total_beds", 0) or 0),
            team_assignments={k: int(v) for k, v in (row.get("team_assignments") or {}).items()},
            team_assignment_portions=dict(row.get("team_assignment_portions") or {}),
        )


@dataclass
class PCAPreference:
    team: str
    preferred_pca_ids: List[str] = field(default_factory=list)
    preferred_slots: List[int] = field(default_factory=list)
    avoid_gym_schedule: bool = False
    gym_schedule: Optional[int] = None
    floor_pca_selection: Optional[str] = None

    def __post_init__(self):
        if len(self.preferred_pca_ids) > 2:
            raise ValueError(f"{self.team}: at most 2 preferred PCAs")
        if len(self.preferred_slots) > 1:
            raise ValueError(f"{self.team}: at most 1 preferred slot")
        if self.floor_pca_selection is not None and self.floor_pca_selection not in FLOOR_SELECTIONS:
            raise ValueError(f"{self.team}: floor must be one of {FLOOR_SELECTIONS}")

    @property
    def preferred_slot(self) -> Optional[int]:
        return self.preferred_slots[0] if self.preferred_slots else None

    @property
    def condition(self) -> str:
        """A = preferred PCA + slot, B = slot only, C = PCA only, D = none."""
        has_pca = bool(self.preferred_pca_ids)
        has_slot = bool(self.preferred_slots)
        if has_pca and has_slot:
            return "A"
        if has_slot:
            return "B"
        if has_pca:
            return "C"
        return "D"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "PCAPreference":
        gym = row.get("gym_schedule")
        return cls(
            team=str(row["team"]),
            preferred_pca_ids=[str(x) for x in _list(row.get("preferred_pca_ids"))],
            preferred_slots=[int(x) for x in _list(row.get("preferred_slots"))],
            avoid_gym_schedule=bool(row.get("avoid_gym_schedule") or False),
            gym_schedule=int(gym) if gym is not None else None,
            floor_pca_selection=row.get("floor_pca_selection") or None,
        )


@dataclass
class SpecialProgram:
    id: str
    name: str
    weekdays: List[str] = field(default_factory=list)
    staff_ids: List[str] = field(default_factory=list)
    slots: Dict[str, List[int]] = field(default_factory=dict)     # weekday → PCA slots
    team: Optional[str] = None
    pca_preference_order: List[str] = field(default_factory=list)
    therapist_fte_subtraction: Dict[str, float] = field(default_factory=dict)

    def is_active_on(self, weekday: str) -> bool:
        return weekday in self.weekdays

    def slots_for(self, weekday: str) -> List[int]:
        configured = self.slots.get(weekday)
        if configured:
            return sorted(s for s in configured if s in SLOTS)
        return list(SPECIAL_PROGRAM_SLOT_FALLBACKS.get(self.name, SLOTS))

    def slot_team(self, slot: int) -> Optional[str]:
        if self.name == "Robotic":
            return ROBOTIC_SLOT_TEAMS.get(slot)
        return self.team

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "SpecialProgram":
        return cls(
            id=str(row["id"]),
            name=str(row["name"]),
            weekdays=_list(row.get("weekdays")),
            staff_ids=[str(x) for x in _list(row.get("staff_ids"))],
            slots={k: [int(s) for s in v] for k, v in (row.get("slots") or {}).items()},
            team=row.get("team") or None,
            pca_preference_order=[str(x) for x in _list(row.get("pca_preference_order"))],
            therapist_fte_subtraction={
                str(k): float(v) for k, v in (row.get("therapist_fte_subtraction") or {}).items()
            },
        )


@dataclass
class SPTAllocation:
    id: str
    staff_id: str
    weekdays: List[str] = field(default_factory=list)
    fte_addon: float = 0.0
    teams: List[str] = field(default_factory=list)
    slots: Dict[str, List[int]] = field(default_factory=dict)
    active: bool = True

    def applies_on(self, weekday: str) -> bool:
        return self.active and weekday in self.weekdays

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "SPTAllocation":
        return cls(
            id=str(row["id"]),
            staff_id=str(row["staff_id"]),
            weekdays=_list(row.get("weekdays")),
            fte_addon=float(row.get("fte_addon") or 0.0),
            teams=_list(row.get("teams")),
            slots={k: [int(s) for s in v] for k, v in (row.get("slots") or {}).items()},
            active=row.get("active") is not False,
        )


@dataclass
class BedCountOverride:
    """Per-team bed-count edits: ward counts replace ward assignments."""
    ward_bed_counts: Dict[str, int] = field(default_factory=dict)
    shs_bed_count: int = 0
    student_placement_bed_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "BedCountOverride":
        return cls(
            ward_bed_counts={k: int(v) for k, v in (row.get("ward_bed_counts") or {}).items()},
            shs_bed_count=int(row.get("shs_bed_count") or 0),
            student_placement_bed_count=int(row.get("student_placement_bed_count") or 0),
        )


# ---------------------------------------------------------------------------
# Allocation rows
# ---------------------------------------------------------------------------

@dataclass
class TherapistAllocation:
    staff_id: str
    team: str
    fte_therapist: float
    slot_half: Optional[str] = None          # None = whole day, "am" / "pm" = half day
    leave_type: Optional[str] = None
    special_program_ids: List[str] = field(default_factory=list)
    manual_override: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "TherapistAllocation":
        return cls(
            staff_id=str(row["staff_id"]),
            team=str(row["team"]),
            fte_therapist=float(row.get("fte_therapist") or 0.0),
            slot_half=row.get("slot_half"),
            leave_type=row.get("leave_type"),
            special_program_ids=_list(row.get("special_program_ids")),
            manual_override=bool(row.get("manual_override", False)),
        )


@dataclass
class PCAAllocation:
    staff_id: str
    team: str
    fte_pca: float
    fte_remaining: float
    slot1: Optional[str] = None
    slot2: Optional[str] = None
    slot3: Optional[str] = None
    slot4: Optional[str] = None
    invalid_slot: Optional[int] = None
    leave_type: Optional[str] = None
    special_program_ids: List[str] = field(default_factory=list)
    special_program_slots: List[int] = field(default_factory=list)

    def get_slot(self, slot: int) -> Optional[str]:
        if slot not in SLOTS:
            raise ValueError(f"Invalid slot {slot}")
        return getattr(self, f"slot{slot}")

    def set_slot(self, slot: int, team: Optional[str]) -> None:
        if slot not in SLOTS:
            raise ValueError(f"Invalid slot {slot}")
        setattr(self, f"slot{slot}", team)

    def slot_map(self) -> Dict[int, Optional[str]]:
        return {s: self.get_slot(s) for s in SLOTS}

    def slots_for(self, team: str) -> List[int]:
        return [s for s in SLOTS if self.get_slot(s) == team]

    def free_slots(self) -> List[int]:
        return [s for s in SLOTS if self.get_slot(s) is None and s != self.invalid_slot]

    def teams(self) -> List[str]:
        owners = {self.get_slot(s) for s in SLOTS} - {None}
        return [t for t in TEAMS if t in owners]

    @property
    def slot_assigned(self) -> float:
        """FTE of owned slots (the invalid slot is owned but not counted)."""
        owned = [s for s in SLOTS if self.get_slot(s) is not None and s != self.invalid_slot]
        return len(owned) * SLOT_FTE

    def fte_for_team(self, team: str) -> float:
        """Team share of this PCA, excluding the invalid slot and program slots."""
        counted = [
            s for s in self.slots_for(team)
            if s != self.invalid_slot and s not in self.special_program_slots
        ]
        return len(counted) * SLOT_FTE

    def recompute_remaining(self) -> None:
        self.fte_remaining = max(0.0, round(self.fte_pca - self.slot_assigned, 4))

    def clone(self) -> "PCAAllocation":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "PCAAllocation":
        return cls(
            staff_id=str(row["staff_id"]),
            team=str(row["team"]),
            fte_pca=float(row.get("fte_pca") or 0.0),
            fte_remaining=float(row.get("fte_remaining") or 0.0),
            slot1=row.get("slot1"),
            slot2=row.get("slot2"),
            slot3=row.get("slot3"),
            slot4=row.get("slot4"),
            invalid_slot=row.get("invalid_slot"),
            leave_type=row.get("leave_type"),
            special_program_ids=_list(row.get("special_program_ids")),
            special_program_slots=[int(s) for s in _list(row.get("special_program_slots"))],
        )


@dataclass
class BedAllocation:
    from_team: str
    to_team: str
    ward: str
    num_beds: int
    slot: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "BedAllocation":
        return cls(
            from_team=str(row["from_team"]),
            to_team=str(row["to_team"]),
            ward=str(row["ward"]),
            num_beds=int(row["num_beds"]),
            slot=row.get("slot"),
        )


@dataclass
class TeamCalculations:
    team: str
    designated_wards: List[str] = field(default_factory=list)
    total_beds_designated: float = 0.0
    total_beds: float = 0.0
    total_pt_on_duty: float = 0.0
    beds_per_pt: float = 0.0
    pt_per_team: float = 0.0
    beds_for_relieving: float = 0.0
    pca_on_duty: float = 0.0
    total_pt_per_pca: float = 0.0
    average_pca_per_team: float = 0.0
    base_average_pca_per_team: Optional[float] = None
    expected_beds_per_team: float = 0.0
    required_pca_per_team: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FloatingPCA:
    """A floating PCA as seen by the Step 3 engine (capacity after leave)."""
    id: str
    name: str
    fte: float
    available_slots: List[int] = field(default_factory=lambda: list(SLOTS))
    floor_pca: List[str] = field(default_factory=list)
    is_buffer: bool = False
    invalid_slot: Optional[int] = None

    def usable_slots(self) -> List[int]:
        return [s for s in self.available_slots if s in SLOTS and s != self.invalid_slot]
