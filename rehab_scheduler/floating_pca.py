"""
floating_pca.py — Step 3: Floating PCA Allocation

Distributes the floating PCA pool across teams, one 0.25 FTE slot at a
time, until every team's pending FTE is met or the pool runs dry.

PASSES
──────
  0  validate pool           skip entries with no id, fte <= 0, unknown slots
  1  buffer pre-assignment   each buffer PCA reserves floor(free × ratio)
                             slots, handed out one per team in order
  2  preferred PCA + slot    condition-A teams get their preferred PCA in
                             their first preferred slot when still free
  3  adjacent continuity     a PCA holding a special-program slot also takes
                             the adjacent slot for that team (1<->2, 3<->4)
  4  fill                    highest pending first; ties → tie-break resolver
                             (only when the pool cannot serve every tied
                             team), then score candidate (PCA, slot) pairs

FILL SCORING (lower wins)
─────────────────────────
  preferred PCA > floor match > team's preferred slot > AM/PM balance >
  gym avoidance > remaining breadth (desc) > name > slot number

The engine works on deep copies of its inputs, so a cancellation leaves the
caller's allocations untouched. Instances are single use.
"""

import copy
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from rehab_scheduler.capacity import round_down_to_quarter, round_to_nearest_quarter_with_midpoint
from rehab_scheduler.errors import (
    WARN_INVALID_POOL_ENTRY,
    WARN_PREFERRED_SLOT,
    WARN_UNMET_PENDING,
    AllocationWarning,
    StepCancelled,
)
from rehab_scheduler.models import FloatingPCA, PCAAllocation, PCAPreference
from rehab_scheduler.resolvers import CANCEL, call_resolver
from rehab_scheduler.schedule_config import (
    ADJACENT_SLOTS,
    AM_SLOTS,
    FTE_EPSILON,
    PM_SLOTS,
    SLOT_FTE,
    SLOTS,
    TEAMS,
)

logger = logging.getLogger(__name__)

ASSIGNED_BUFFER = "buffer"
ASSIGNED_PREFERRED = "preferred"
ASSIGNED_ADJACENT = "adjacent"
ASSIGNED_FILL = "fill"


class EngineState(Enum):
    IDLE = "idle"
    CONFIGURING = "configuring"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------

@dataclass
class SlotAssignmentLog:
    slot: int
    pca_id: str
    pca_name: str
    assigned_in: str
    order: int
    condition: str = "D"
    preferred_slot: bool = False
    preferred_pca: bool = False
    floor_pca: bool = False
    buffer: bool = False
    user_tie_break: bool = False
    am_pm_balanced: bool = False
    gym_avoided: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


class AllocationTracker:
    """Append-only per-team record of every slot Step 3 handed out."""

    def __init__(self, teams: Optional[List[str]] = None):
        self.teams = list(teams or TEAMS)
        self._logs: Dict[str, List[SlotAssignmentLog]] = {t: [] for t in self.teams}
        self._order = 0

    def record(self, team: str, entry: SlotAssignmentLog) -> SlotAssignmentLog:
        self._order += 1
        entry.order = self._order
        self._logs.setdefault(team, []).append(entry)
        return entry

    def entries(self, team: str) -> List[SlotAssignmentLog]:
        return list(self._logs.get(team, []))

    def total_assigned(self) -> int:
        return sum(len(v) for v in self._logs.values())

    def mark_balance(self) -> None:
        for entries in self._logs.values():
            slots = {e.slot for e in entries}
            balanced = bool(slots & set(AM_SLOTS)) and bool(slots & set(PM_SLOTS))
            for entry in entries:
                entry.am_pm_balanced = balanced

    def summary(self) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for team in self.teams:
            entries = self._logs.get(team, [])
            by_pass: Dict[str, int] = {}
            for entry in entries:
                by_pass[entry.assigned_in] = by_pass.get(entry.assigned_in, 0) + 1
            out[team] = {
                "slots_assigned": len(entries),
                "fte_assigned": len(entries) * SLOT_FTE,
                "by_pass": by_pass,
                "am_slots": sum(1 for e in entries if e.slot in AM_SLOTS),
                "pm_slots": sum(1 for e in entries if e.slot in PM_SLOTS),
                "am_pm_balanced": bool(entries) and entries[-1].am_pm_balanced,
                "preferred_slot_filled": any(e.preferred_slot for e in entries),
                "preferred_pca_used": any(e.preferred_pca for e in entries),
                "user_tie_breaks": sum(1 for e in entries if e.user_tie_break),
            }
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": {t: [e.to_dict() for e in v] for t, v in self._logs.items()},
            "summary": self.summary(),
        }


@dataclass
class Step3Result:
    allocations: List[PCAAllocation]
    tracker: AllocationTracker
    pending_after: Dict[str, float]
    tie_break_decisions: Dict[str, str] = field(default_factory=dict)
    warnings: List[AllocationWarning] = field(default_factory=list)
    state: EngineState = EngineState.COMPLETED


def tie_break_key(tied_teams: List[str], pending: float) -> str:
    return f"{'|'.join(sorted(tied_teams, key=TEAMS.index))}@{pending:.2f}"


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class FloatingPCAEngine:
    """
    One Step 3 run.

    Args:
        pending_fte:          {team: FTE still needed}, rounded to quarters.
        pool:                 FloatingPCA entries available today.
        allocations:          Existing PCA rows (non-floating, special program,
                              substitution, preserved buffer). Copied.
        preferences:          PCAPreference per team.
        team_order:           User processing order; ties follow it silently.
        buffer_ratio:         Share of each buffer PCA's free slots reserved
                              in pass 1 (0 disables the pass).
        tie_break:            Resolver(tied_teams, pending) → team / SKIP / CANCEL.
        tie_break_decisions:  Earlier decisions to replay, keyed by tie_break_key().
    """

    def __init__(
        self,
        pending_fte: Dict[str, float],
        pool: List[FloatingPCA],
        allocations: Optional[List[PCAAllocation]] = None,
        preferences: Optional[List[PCAPreference]] = None,
        team_order: Optional[List[str]] = None,
        buffer_ratio: float = 0.0,
        tie_break: Optional[Callable[..., Any]] = None,
        tie_break_decisions: Optional[Dict[str, str]] = None,
    ):
        self.state = EngineState.IDLE
        self._raw_pending = dict(pending_fte)
        self._raw_pool = list(pool)
        self._raw_allocations = list(allocations or [])
        self.preferences = {p.team: p for p in (preferences or [])}
        self.team_order = list(team_order) if team_order else None
        self.buffer_ratio = max(0.0, min(1.0, float(buffer_ratio or 0.0)))
        self.tie_break = tie_break
        self.decisions: Dict[str, str] = dict(tie_break_decisions or {})

        self.pending: Dict[str, float] = {}
        self.pool: List[FloatingPCA] = []
        self.rows: Dict[str, PCAAllocation] = {}
        self.other_rows: List[PCAAllocation] = []
        self.slots_left: Dict[str, int] = {}
        self.tracker = AllocationTracker()
        self.warnings: List[AllocationWarning] = []

    # -- setup ----------------------------------------------------------------

    def configure(self) -> None:
        if self.state is not EngineState.IDLE:
            raise RuntimeError(f"FloatingPCAEngine already used (state={self.state.value})")
        self.state = EngineState.CONFIGURING

        self.pending = {
            t: max(0.0, round_to_nearest_quarter_with_midpoint(self._raw_pending.get(t, 0.0)))
            for t in TEAMS
        }
        allocations = copy.deepcopy(self._raw_allocations)

        for pca in sorted(self._raw_pool, key=lambda p: (p.name, p.id or "")):
            problem = self._validate(pca)
            if problem:
                logger.warning(f"Skipping pool entry {pca.id or '?'}: {problem}")
                self.warnings.append(AllocationWarning(
                    kind=WARN_INVALID_POOL_ENTRY,
                    message=f"Floating PCA {pca.name or pca.id or '?'} skipped: {problem}",
                    details={"pca_id": pca.id},
                ))
                continue
            self.pool.append(pca)

        pool_ids = {p.id for p in self.pool}
        for row in allocations:
            if row.staff_id in pool_ids and row.staff_id not in self.rows:
                self.rows[row.staff_id] = row
            else:
                self.other_rows.append(row)

        for pca in self.pool:
            row = self.rows.get(pca.id)
            owned = int(round(row.slot_assigned / SLOT_FTE)) if row else 0
            capacity = int(round(round_down_to_quarter(pca.fte) / SLOT_FTE))
            self.slots_left[pca.id] = max(0, capacity - owned)
        logger.debug(
            f"Step 3 configured: {len(self.pool)} pool PCA(s), "
            f"pending {sum(self.pending.values()):.2f}"
        )

    @staticmethod
    def _validate(pca: FloatingPCA) -> Optional[str]:
        if not pca.id:
            return "missing id"
        if pca.fte is None or pca.fte <= FTE_EPSILON:
            return "no FTE"
        bad = [s for s in pca.available_slots if s not in SLOTS]
        if bad:
            return f"unknown slot(s) {bad}"
        return None

    # -- helpers --------------------------------------------------------------

    def _row_for(self, pca: FloatingPCA, team: str) -> PCAAllocation:
        row = self.rows.get(pca.id)
        if row is None:
            row = PCAAllocation(
                staff_id=pca.id, team=team, fte_pca=pca.fte, fte_remaining=pca.fte,
                invalid_slot=pca.invalid_slot,
            )
            self.rows[pca.id] = row
        return row

    def _free_slots(self, pca: FloatingPCA) -> List[int]:
        if self.slots_left.get(pca.id, 0) <= 0:
            return []
        row = self.rows.get(pca.id)
        return [s for s in pca.usable_slots() if row is None or row.get_slot(s) is None]

    def _capacity_slots(self) -> int:
        return sum(min(self.slots_left.get(p.id, 0), len(self._free_slots(p))) for p in self.pool)

    def _team_slots(self, team: str) -> List[int]:
        slots = []
        for row in list(self.rows.values()) + self.other_rows:
            slots.extend(row.slots_for(team))
        return slots

    def _processing_order(self) -> List[str]:
        if self.team_order:
            ordered = [t for t in self.team_order if t in TEAMS]
            return ordered + [t for t in TEAMS if t not in ordered]
        return sorted(TEAMS, key=lambda t: (-self.pending[t], TEAMS.index(t)))

    def _assign(
        self,
        pca: FloatingPCA,
        slot: int,
        team: str,
        assigned_in: str,
        user_tie_break: bool = False,
    ) -> None:
        pref = self.preferences.get(team)
        row = self._row_for(pca, team)
        row.set_slot(slot, team)
        row.recompute_remaining()
        self.slots_left[pca.id] -= 1
        self.pending[team] = max(0.0, round(self.pending[team] - SLOT_FTE, 4))
        self.tracker.record(team, SlotAssignmentLog(
            slot=slot,
            pca_id=pca.id,
            pca_name=pca.name,
            assigned_in=assigned_in,
            order=0,
            condition=pref.condition if pref else "D",
            preferred_slot=bool(pref and pref.preferred_slot == slot),
            preferred_pca=bool(pref and pca.id in pref.preferred_pca_ids),
            floor_pca=bool(pref and pref.floor_pca_selection in pca.floor_pca),
            buffer=pca.is_buffer,
            user_tie_break=user_tie_break,
            gym_avoided=bool(pref and pref.avoid_gym_schedule and pref.gym_schedule not in (None, slot)),
        ))
        logger.debug(f"{assigned_in}: {pca.name} slot {slot} → {team} (pending {self.pending[team]:.2f})")

    def _score(self, team: str, pca: FloatingPCA, slot: int) -> Tuple:
        pref = self.preferences.get(team)
        team_slots = self._team_slots(team)
        half = AM_SLOTS if slot in AM_SLOTS else PM_SLOTS
        return (
            not (pref and pca.id in pref.preferred_pca_ids),
            not (pref and pref.floor_pca_selection and pref.floor_pca_selection in pca.floor_pca),
            not (pref and pref.preferred_slot == slot),
            (slot in team_slots, sum(1 for s in team_slots if s in half)),
            bool(pref and pref.avoid_gym_schedule and pref.gym_schedule == slot),
            -len(self._free_slots(pca)),
            pca.name,
            slot,
        )

    def _best_candidate(self, team: str, pcas: Optional[List[FloatingPCA]] = None) -> Optional[Tuple[FloatingPCA, int]]:
        options = [
            (self._score(team, pca, slot), pca, slot)
            for pca in (pcas or self.pool)
            for slot in self._free_slots(pca)
        ]
        if not options:
            return None
        _, pca, slot = min(options, key=lambda o: o[0])
        return pca, slot

    # -- passes ---------------------------------------------------------------

    def _pass_buffer(self) -> None:
        if self.buffer_ratio <= 0:
            return
        for pca in [p for p in self.pool if p.is_buffer]:
            free = min(self.slots_left[pca.id], len(self._free_slots(pca)))
            reserve = int(math.floor(free * self.buffer_ratio + FTE_EPSILON))
            while reserve > 0:
                handed_out = False
                for team in self._processing_order():
                    if reserve <= 0:
                        break
                    if self.pending[team] <= FTE_EPSILON:
                        continue
                    choice = self._best_candidate(team, [pca])
                    if choice is None:
                        reserve = 0
                        break
                    self._assign(pca, choice[1], team, ASSIGNED_BUFFER)
                    reserve -= 1
                    handed_out = True
                if not handed_out:
                    break

    def _pass_preferred(self) -> None:
        by_id = {p.id: p for p in self.pool}
        claimed: Set[Tuple[str, int]] = set()
        for team in self._processing_order():
            pref = self.preferences.get(team)
            if pref is None or pref.condition != "A":
                continue
            if self.pending[team] <= FTE_EPSILON:
                continue
            slot = pref.preferred_slot
            if slot in self._team_slots(team):
                continue
            placed = False
            for pca_id in pref.preferred_pca_ids:
                pca = by_id.get(pca_id)
                if pca is None or (pca_id, slot) in claimed:
                    continue
                if slot in self._free_slots(pca):
                    self._assign(pca, slot, team, ASSIGNED_PREFERRED)
                    claimed.add((pca_id, slot))
                    placed = True
                    break
            if not placed:
                self.warnings.append(AllocationWarning(
                    kind=WARN_PREFERRED_SLOT,
                    message=f"Preferred slot {slot} could not be filled by a preferred PCA",
                    team=team,
                    details={"slot": slot, "preferred_pca_ids": list(pref.preferred_pca_ids)},
                ))

    def _pass_adjacent(self) -> None:
        by_id = {p.id: p for p in self.pool}
        changed = True
        while changed:
            changed = False
            for pca_id, row in sorted(self.rows.items()):
                pca = by_id.get(pca_id)
                if pca is None:
                    continue
                for slot in sorted(row.special_program_slots):
                    team = row.get_slot(slot)
                    adjacent = ADJACENT_SLOTS[slot]
                    if team is None or self.pending.get(team, 0.0) <= FTE_EPSILON:
                        continue
                    if adjacent in self._free_slots(pca):
                        self._assign(pca, adjacent, team, ASSIGNED_ADJACENT)
                        changed = True

    async def _choose_team(self, tied: List[str], pending: float) -> Tuple[str, bool]:
        """Returns (team, chosen_by_user)."""
        if self.team_order:
            order = self._processing_order()
            return min(tied, key=order.index), False
        if self._capacity_slots() >= len(tied):
            return tied[0], False

        key = tie_break_key(tied, pending)
        remembered = self.decisions.get(key)
        if remembered in tied:
            return remembered, True
        if self.tie_break is None:
            return tied[0], False

        answer = await call_resolver(self.tie_break, list(tied), pending)
        if answer is CANCEL:
            raise StepCancelled("tie_break")
        if answer in tied:
            self.decisions[key] = answer
            logger.info(f"Tie-break {key} → {answer}")
            return answer, True
        return tied[0], False

    async def _pass_fill(self) -> None:
        while True:
            open_teams = [t for t in TEAMS if self.pending[t] > FTE_EPSILON]
            if not open_teams or self._capacity_slots() == 0:
                return
            top = max(self.pending[t] for t in open_teams)
            tied = [t for t in open_teams if abs(self.pending[t] - top) <= FTE_EPSILON]
            if len(tied) > 1:
                team, by_user = await self._choose_team(tied, top)
            else:
                team, by_user = tied[0], False
            choice = self._best_candidate(team)
            if choice is None:
                return
            self._assign(choice[0], choice[1], team, ASSIGNED_FILL, user_tie_break=by_user)

    # -- run ------------------------------------------------------------------

    async def run(self) -> Step3Result:
        if self.state is EngineState.IDLE:
            self.configure()
        if self.state is not EngineState.CONFIGURING:
            raise RuntimeError(f"FloatingPCAEngine cannot run from state {self.state.value}")
        self.state = EngineState.RUNNING
        start_pending = sum(self.pending.values())

        try:
            self._pass_buffer()
            self._pass_preferred()
            self._pass_adjacent()
            await self._pass_fill()
        except StepCancelled:
            self.state = EngineState.CANCELLED
            logger.info("Step 3 cancelled at tie-break")
            raise

        self.tracker.mark_balance()
        for team in TEAMS:
            if self.pending[team] > FTE_EPSILON:
                logger.warning(f"{team}: {self.pending[team]:.2f} FTE still pending after Step 3")
                self.warnings.append(AllocationWarning(
                    kind=WARN_UNMET_PENDING,
                    message=f"{self.pending[team]:.2f} FTE still pending",
                    team=team,
                    details={"pending": self.pending[team]},
                ))

        self.state = EngineState.COMPLETED
        allocations = self.other_rows + [self.rows[k] for k in sorted(self.rows)]
        logger.info(
            f"Step 3 complete: {self.tracker.total_assigned()} slot(s) assigned, "
            f"pending {start_pending:.2f} → {sum(self.pending.values()):.2f}"
        )
        return Step3Result(
            allocations=allocations,
            tracker=self.tracker,
            pending_after=dict(self.pending),
            tie_break_decisions=dict(self.decisions),
            warnings=list(self.warnings),
            state=self.state,
        )


async def run_step3(
    pending_fte: Dict[str, float],
    pool: List[FloatingPCA],
    allocations: Optional[List[PCAAllocation]] = None,
    preferences: Optional[List[PCAPreference]] = None,
    team_order: Optional[List[str]] = None,
    buffer_ratio: float = 0.0,
    tie_break: Optional[Callable[..., Any]] = None,
    tie_break_decisions: Optional[Dict[str, str]] = None,
) -> Step3Result:
    """
    Distribute floating PCA slots over teams with pending FTE.

    Arguments are as for FloatingPCAEngine. A non-empty `team_order` settles
    every tie by that order, so `tie_break` is never called and no decision
    is recorded, even when the pool is too small to serve all tied teams.
    """
    engine = FloatingPCAEngine(
        pending_fte, pool, allocations, preferences, team_order, buffer_ratio, tie_break, tie_break_decisions,
    )
    return await engine.run()
