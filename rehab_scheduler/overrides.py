"""
overrides.py — Staff Override Store

One StaffOverride record per staff id captures everything a person changed by
hand: leave, remaining FTE, slot availability, team moves, FTE splits,
special-program edits, floating slot placement, substitution links and card
colours. Algorithms read from it; they never write outside their own fields.

FIELD OWNERSHIP
───────────────
  leave-fte      leave_type, fte_remaining, fte_subtraction,
                 available_slots, invalid_slots
  therapist-pca  team, therapist_team_fte_by_team, special_program_overrides
  floating-pca   slot_overrides, buffer_manual_slot_overrides
  display        card_color_by_team              (never cleared by a step)
  per link       substitution_for[slot].origin_step

Clearing step N drops every field owned by step N or later and every
substitution link created in step N or later.

Records are frozen; every store mutation swaps in a new mapping, so a saved
snapshot() can be restored verbatim by undo.
"""

import logging
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

from rehab_scheduler.errors import OverrideError
from rehab_scheduler.schedule_config import (
    FTE_EPSILON,
    SLOTS,
    STEP_FLOATING,
    STEP_LEAVE,
    STEP_ORDER,
    STEP_THERAPIST,
    step_index,
)

logger = logging.getLogger(__name__)

OWNER_DISPLAY = "display"

FIELD_OWNERSHIP: Dict[str, str] = {
    "leave_type":                   STEP_LEAVE,
    "fte_remaining":                STEP_LEAVE,
    "fte_subtraction":              STEP_LEAVE,
    "available_slots":              STEP_LEAVE,
    "invalid_slots":                STEP_LEAVE,
    "team":                         STEP_THERAPIST,
    "therapist_team_fte_by_team":   STEP_THERAPIST,
    "special_program_overrides":    STEP_THERAPIST,
    "slot_overrides":               STEP_FLOATING,
    "buffer_manual_slot_overrides": STEP_FLOATING,
    "card_color_by_team":           OWNER_DISPLAY,
}

# substitution_for is owned per link, see SubstitutionTarget.origin_step
LINK_FIELD = "substitution_for"

_CAMEL_NAMES: Dict[str, str] = {
    "leave_type":                   "leaveType",
    "fte_remaining":                "fteRemaining",
    "fte_subtraction":              "fteSubtraction",
    "available_slots":              "availableSlots",
    "invalid_slots":                "invalidSlots",
    "team":                         "team",
    "therapist_team_fte_by_team":   "therapistTeamFTEByTeam",
    "special_program_overrides":    "specialProgramOverrides",
    "slot_overrides":               "slotOverrides",
    "buffer_manual_slot_overrides": "bufferManualSlotOverrides",
    "card_color_by_team":           "cardColorByTeam",
}


def target_key(team: str, non_floating_pca_id: str) -> str:
    return f"{team}::{non_floating_pca_id}"


@dataclass(frozen=True)
class SubstitutionTarget:
    non_floating_pca_id: str
    non_floating_pca_name: str
    team: str
    origin_step: str = STEP_THERAPIST

    @property
    def key(self) -> str:
        return target_key(self.team, self.non_floating_pca_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nonFloatingPCAId": self.non_floating_pca_id,
            "nonFloatingPCAName": self.non_floating_pca_name,
            "team": self.team,
            "originStep": self.origin_step,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "SubstitutionTarget":
        return cls(
            non_floating_pca_id=str(raw.get("nonFloatingPCAId") or raw.get("non_floating_pca_id")),
            non_floating_pca_name=str(raw.get("nonFloatingPCAName") or raw.get("non_floating_pca_name") or ""),
            team=str(raw["team"]),
            origin_step=raw.get("originStep") or raw.get("origin_step") or STEP_THERAPIST,
        )


@dataclass(frozen=True)
class StaffOverride:
    leave_type: Optional[str] = None
    fte_remaining: Optional[float] = None
    fte_subtraction: Optional[float] = None
    available_slots: Optional[Tuple[int, ...]] = None
    invalid_slots: Optional[Tuple[int, ...]] = None
    team: Optional[str] = None
    therapist_team_fte_by_team: Optional[Dict[str, float]] = None
    special_program_overrides: Optional[Dict[str, Any]] = None
    slot_overrides: Optional[Dict[int, str]] = None
    buffer_manual_slot_overrides: Optional[Dict[int, str]] = None
    substitution_for: Optional[Dict[int, SubstitutionTarget]] = None
    card_color_by_team: Optional[Dict[str, str]] = None

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for name, camel in _CAMEL_NAMES.items():
            value = getattr(self, name)
            if value is None:
                continue
            if isinstance(value, tuple):
                value = list(value)
            elif isinstance(value, dict):
                value = {str(k): v for k, v in value.items()}
            out[camel] = value
        if self.substitution_for:
            out["substitutionForBySlot"] = {
                str(slot): target.to_dict() for slot, target in sorted(self.substitution_for.items())
            }
        return out

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "StaffOverride":
        patch: Dict[str, Any] = {}
        for name, camel in _CAMEL_NAMES.items():
            if camel in raw and raw[camel] is not None:
                patch[name] = raw[camel]
            elif name in raw and raw[name] is not None:
                patch[name] = raw[name]
        # Legacy single invalid slot
        if "invalidSlot" in raw and raw["invalidSlot"] is not None and "invalid_slots" not in patch:
            patch["invalid_slots"] = [raw["invalidSlot"]]

        links: Dict[int, SubstitutionTarget] = {}
        by_slot = raw.get("substitutionForBySlot") or {}
        for slot, target in by_slot.items():
            links[int(slot)] = SubstitutionTarget.from_dict(target)
        legacy = raw.get("substitutionFor")
        if legacy and not links:
            target = SubstitutionTarget.from_dict(legacy)
            for slot in legacy.get("slots") or []:
                links[int(slot)] = target
        if links:
            patch[LINK_FIELD] = links
        return _merge(cls(), patch)


# ---------------------------------------------------------------------------
# Patch normalisation / merge
# ---------------------------------------------------------------------------

def _normalise_slots(value: Iterable[Any], name: str) -> Tuple[int, ...]:
    slots = sorted({int(s) for s in value})
    bad = [s for s in slots if s not in SLOTS]
    if bad:
        raise OverrideError(f"{name}: invalid slots {bad}")
    return tuple(slots)


def _normalise(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in ("available_slots", "invalid_slots"):
        return _normalise_slots(value, name)
    if name in ("fte_remaining", "fte_subtraction"):
        value = float(value)
        if value < -FTE_EPSILON:
            raise OverrideError(f"{name} must not be negative (got {value})")
        return value
    if name in ("slot_overrides", "buffer_manual_slot_overrides"):
        slots = {int(k): v for k, v in value.items()}
        _normalise_slots(slots.keys(), name)
        return slots
    if name == LINK_FIELD:
        links: Dict[int, SubstitutionTarget] = {}
        for slot, target in value.items():
            if not isinstance(target, SubstitutionTarget):
                target = SubstitutionTarget.from_dict(target)
            links[int(slot)] = target
        _normalise_slots(links.keys(), name)
        return links or None
    if isinstance(value, dict):
        return dict(value)
    return value


def _merge(record: StaffOverride, patch: Dict[str, Any]) -> StaffOverride:
    known = {f.name for f in fields(StaffOverride)}
    unknown = set(patch) - known
    if unknown:
        raise OverrideError(f"Unknown override fields: {sorted(unknown)}")
    changes = {name: _normalise(name, value) for name, value in patch.items()}
    return replace(record, **changes)


def _check_capacity(record: StaffOverride, capacity: float, staff_id: str) -> None:
    remaining = record.fte_remaining
    subtraction = record.fte_subtraction or 0.0
    if remaining is None:
        return
    if remaining > capacity + FTE_EPSILON:
        raise OverrideError(f"{staff_id}: fte_remaining {remaining} exceeds capacity {capacity}")
    if remaining + subtraction > capacity + FTE_EPSILON:
        raise OverrideError(
            f"{staff_id}: fte_remaining {remaining} + fte_subtraction {subtraction} exceeds capacity {capacity}"
        )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class OverrideStore:
    """Immutable-value mapping of staff id → StaffOverride."""

    def __init__(self, overrides: Optional[Dict[str, StaffOverride]] = None):
        self._overrides: Dict[str, StaffOverride] = dict(overrides or {})

    def __contains__(self, staff_id: str) -> bool:
        return staff_id in self._overrides

    def __len__(self) -> int:
        return len(self._overrides)

    def get(self, staff_id: str) -> Optional[StaffOverride]:
        return self._overrides.get(staff_id)

    def items(self):
        return self._overrides.items()

    def snapshot(self) -> Dict[str, StaffOverride]:
        return dict(self._overrides)

    def restore(self, snapshot: Dict[str, StaffOverride]) -> None:
        self._overrides = dict(snapshot)

    def _put(self, staff_id: str, record: StaffOverride) -> None:
        updated = dict(self._overrides)
        if record.is_empty():
            updated.pop(staff_id, None)
        else:
            updated[staff_id] = record
        self._overrides = updated

    # -- generic ------------------------------------------------------------

    def apply_override(
        self,
        staff_id: str,
        patch: Dict[str, Any],
        capacity: Optional[float] = None,
    ) -> StaffOverride:
        """
        Merge patch into the staff member's record. Fields not named in the
        patch are kept; a None value clears that field.
        """
        current = self._overrides.get(staff_id, StaffOverride())
        merged = _merge(current, patch)
        _check_capacity(merged, 1.0 if capacity is None else capacity, staff_id)
        self._put(staff_id, merged)
        return merged

    def remove(self, staff_id: str) -> None:
        if staff_id in self._overrides:
            updated = dict(self._overrides)
            del updated[staff_id]
            self._overrides = updated

    # -- substitution links -------------------------------------------------

    def substitution_links(self) -> List[Tuple[str, int, SubstitutionTarget]]:
        """Every (floating_pca_id, slot, target) link, sorted for stable output."""
        links = []
        for staff_id, record in self._overrides.items():
            for slot, target in (record.substitution_for or {}).items():
                links.append((staff_id, slot, target))
        return sorted(links, key=lambda x: (x[0], x[1]))

    def apply_substitution(
        self,
        floating_pca_id: str,
        team: str,
        non_floating_pca_id: str,
        non_floating_pca_name: str,
        slots: Iterable[int],
        origin_step: str = STEP_THERAPIST,
    ) -> StaffOverride:
        target = SubstitutionTarget(non_floating_pca_id, non_floating_pca_name, team, origin_step)
        slots = _normalise_slots(slots, LINK_FIELD)

        current = self._overrides.get(floating_pca_id, StaffOverride())
        links = dict(current.substitution_for or {})
        for slot in slots:
            existing = links.get(slot)
            if existing is not None and existing.key != target.key:
                raise OverrideError(
                    f"{floating_pca_id} slot {slot} already covers {existing.key}"
                )
        for other_id, slot, other in self.substitution_links():
            if other_id != floating_pca_id and other.key == target.key and slot in slots:
                raise OverrideError(f"{target.key} slot {slot} already covered by {other_id}")

        for slot in slots:
            links[slot] = target
        record = replace(current, substitution_for=links)
        self._put(floating_pca_id, record)
        logger.debug(f"Substitution {floating_pca_id} → {target.key} slots {list(slots)}")
        return record

    def _filter_links(self, keep) -> int:
        removed = 0
        updated = dict(self._overrides)
        for staff_id, record in self._overrides.items():
            links = record.substitution_for or {}
            kept = {slot: t for slot, t in links.items() if keep(staff_id, slot, t)}
            if len(kept) == len(links):
                continue
            removed += len(links) - len(kept)
            new_record = replace(record, substitution_for=kept or None)
            if new_record.is_empty():
                del updated[staff_id]
            else:
                updated[staff_id] = new_record
        self._overrides = updated
        return removed

    def remove_substitutions_from_step(self, step: str) -> int:
        return self._filter_links(lambda _id, _slot, t: t.origin_step != step)

    def remove_substitutions_for_teams(self, teams: Iterable[str]) -> int:
        teams = set(teams)
        return self._filter_links(lambda _id, _slot, t: t.team not in teams)

    def remove_substitutions_targeting(self, target_keys: Iterable[str]) -> int:
        keys = set(target_keys)
        removed = self._filter_links(lambda _id, _slot, t: t.key not in keys)
        if removed:
            logger.info(f"Removed {removed} stale substitution link(s) for {sorted(keys)}")
        return removed

    # -- step clearing ------------------------------------------------------

    def clear_for_step(self, step: str) -> None:
        """Drop fields (and links) owned by `step` or any later step."""
        cutoff = step_index(step)
        doomed = [
            name for name, owner in FIELD_OWNERSHIP.items()
            if owner in STEP_ORDER and step_index(owner) >= cutoff
        ]
        updated: Dict[str, StaffOverride] = {}
        for staff_id, record in self._overrides.items():
            changes: Dict[str, Any] = {name: None for name in doomed}
            links = record.substitution_for or {}
            kept = {s: t for s, t in links.items() if step_index(t.origin_step) < cutoff}
            changes[LINK_FIELD] = kept or None
            new_record = replace(record, **changes)
            if not new_record.is_empty():
                updated[staff_id] = new_record
        self._overrides = updated
        logger.info(f"Cleared override fields owned by {step} and later")

    # -- persistence --------------------------------------------------------

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {staff_id: record.to_dict() for staff_id, record in sorted(self._overrides.items())}

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Dict[str, Any]]]) -> "OverrideStore":
        records = {}
        for staff_id, data in (raw or {}).items():
            record = StaffOverride.from_dict(data or {})
            if not record.is_empty():
                records[str(staff_id)] = record
        return cls(records)
