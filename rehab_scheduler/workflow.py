"""
workflow.py — Per-date Workflow Controller

One WorkflowController owns every piece of state for one schedule date.
Create one per date (main view, comparison view, ...); they share nothing.

STATE SLICES
────────────
  overrides               OverrideStore (per-staff manual edits)
  therapist_allocations   Step 2 output
  pca_allocations         Step 2 + Step 3 output, one row per PCA
  bed_allocations         Step 4 output
  bed_count_overrides     {team: BedCountOverride}
  bed_relieving_notes     BedRelievingNotes
  workflow_state          current step, status per step, initialized steps
  calculations            {team: TeamCalculations}, rebuilt by recalculate()
  pending_fte             {team: FTE still needed from floating PCAs}
  tie_break_decisions     remembered Step 3 tie-break answers
  pca_allocation_errors   {step: [AllocationWarning]}

Step runs and manual edits take deep copies of the slices they touch, so a
cancelled or failed run puts everything back, and every edit is an undo
checkpoint.

NAVIGATION
──────────
  leave-fte → therapist-pca → floating-pca → bed-relieving → review
  Backward is always allowed. Forward needs every required step between
  here and the target to be started (status != pending).
"""

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Union

from rehab_scheduler import floating_pca, therapist_step
from rehab_scheduler.bed_relieving import BedAllocationResult, BedRelievingNotes, allocate_beds
from rehab_scheduler.capacity import (
    assigned_pca_fte_by_team,
    compute_pending_fte,
    compute_team_calculations,
    drm_add_on_fte,
    effective_fte,
    reserved_special_program_pca_fte,
    round_down_to_quarter,
    total_pca_on_duty,
)
from rehab_scheduler.errors import (
    AllocationError,
    AllocationWarning,
    ConfirmationRequired,
    NavigationError,
    OverrideError,
    StepCancelled,
)
from rehab_scheduler.models import (
    BedAllocation,
    BedCountOverride,
    FloatingPCA,
    PCAAllocation,
    PCAPreference,
    SpecialProgram,
    SPTAllocation,
    Staff,
    TeamCalculations,
    TherapistAllocation,
    Ward,
)
from rehab_scheduler.overrides import OverrideStore
from rehab_scheduler.resolvers import ResolverSet
from rehab_scheduler.schedule_config import (
    FTE_EPSILON,
    LEAVE_TYPE_FTE_MAP,
    MAX_UNDO_DEPTH,
    SLOT_FTE,
    SLOTS,
    STEP_BEDS,
    STEP_COMPLETED,
    STEP_DEFINITIONS,
    STEP_FLOATING,
    STEP_LEAVE,
    STEP_MODIFIED,
    STEP_ORDER,
    STEP_PENDING,
    STEP_THERAPIST,
    TEAMS,
    step_index,
)
from rehab_scheduler.undo import UndoHistory

logger = logging.getLogger(__name__)

WEEKDAY_KEYS = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]

STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
STATUS_FAILED = "failed"

SLICES = (
    "overrides",
    "therapist_allocations",
    "pca_allocations",
    "bed_allocations",
    "bed_count_overrides",
    "bed_relieving_notes",
    "workflow_state",
    "calculations",
    "pending_fte",
    "tie_break_decisions",
    "pca_allocation_errors",
)

# Rebuilt after every change, so every checkpoint carries them
DERIVED_SLICES = ("workflow_state", "calculations", "pending_fte", "bed_allocations")


@dataclass
class WorkflowState:
    current_step: str = STEP_LEAVE
    step_status: Dict[str, str] = field(default_factory=lambda: {s: STEP_PENDING for s in STEP_ORDER})
    initialized_steps: List[str] = field(default_factory=lambda: [STEP_LEAVE])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_step": self.current_step,
            "step_status": dict(self.step_status),
            "initialized_steps": list(self.initialized_steps),
        }

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "WorkflowState":
        raw = raw or {}
        state = cls()
        if raw.get("current_step") in STEP_ORDER:
            state.current_step = raw["current_step"]
        for step, status in (raw.get("step_status") or {}).items():
            if step in STEP_ORDER:
                state.step_status[step] = status
        state.initialized_steps = [s for s in raw.get("initialized_steps") or [STEP_LEAVE] if s in STEP_ORDER]
        return state


@dataclass
class StepOutcome:
    status: str
    step: str
    message: str = ""
    warnings: List[AllocationWarning] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_COMPLETED


def weekday_key(schedule_date: Union[str, date]) -> str:
    if isinstance(schedule_date, str):
        schedule_date = datetime.strptime(schedule_date, "%Y-%m-%d").date()
    return WEEKDAY_KEYS[schedule_date.weekday()]


class WorkflowController:

    def __init__(
        self,
        schedule_date: Union[str, date],
        staff: List[Staff],
        wards: List[Ward],
        special_programs: Optional[List[SpecialProgram]] = None,
        spt_allocations: Optional[List[SPTAllocation]] = None,
        pca_preferences: Optional[List[PCAPreference]] = None,
        previous_spt_teams: Optional[Dict[str, str]] = None,
        overrides: Optional[OverrideStore] = None,
        max_undo: int = MAX_UNDO_DEPTH,
    ):
        self.schedule_date = schedule_date if isinstance(schedule_date, str) else schedule_date.isoformat()
        self.weekday = weekday_key(schedule_date)
        self._set_config(staff, wards, special_programs, spt_allocations, pca_preferences)
        self.previous_spt_teams = dict(previous_spt_teams or {})

        self.overrides = overrides or OverrideStore()
        self.therapist_allocations: List[TherapistAllocation] = []
        self.pca_allocations: List[PCAAllocation] = []
        self.bed_allocations: List[BedAllocation] = []
        self.bed_count_overrides: Dict[str, BedCountOverride] = {}
        self.bed_relieving_notes = BedRelievingNotes()
        self.workflow_state = WorkflowState()
        self.calculations: Dict[str, TeamCalculations] = {}
        self.pending_fte: Dict[str, float] = {t: 0.0 for t in TEAMS}
        self.tie_break_decisions: Dict[str, str] = {}
        self.pca_allocation_errors: Dict[str, List[AllocationWarning]] = {}

        self.history = UndoHistory(max_undo)
        self.last_tracker: Optional[floating_pca.AllocationTracker] = None
        self.last_bed_result: Optional[BedAllocationResult] = None
        self._inflight: Optional[asyncio.Task] = None
        self._superseded: set = set()

        self.recalculate()

    def _set_config(self, staff, wards, special_programs, spt_allocations, pca_preferences) -> None:
        self.staff: List[Staff] = list(staff)
        self.staff_by_id: Dict[str, Staff] = {s.id: s for s in self.staff}
        self.wards: List[Ward] = list(wards)
        self.special_programs: List[SpecialProgram] = list(special_programs or [])
        self.spt_allocations: List[SPTAllocation] = list(spt_allocations or [])
        self.pca_preferences: List[PCAPreference] = list(pca_preferences or [])

    # ------------------------------------------------------------------
    # Slices
    # ------------------------------------------------------------------

    def _capture(self, names) -> Dict[str, Any]:
        return {name: copy.deepcopy(getattr(self, name)) for name in names}

    def _restore(self, data: Dict[str, Any]) -> None:
        for name, value in data.items():
            setattr(self, name, copy.deepcopy(value))

    def _touched(self, *names: str) -> List[str]:
        return list(dict.fromkeys(list(names) + list(DERIVED_SLICES)))

    def _staff(self, staff_id: str) -> Staff:
        member = self.staff_by_id.get(staff_id)
        if member is None:
            raise AllocationError(f"Unknown staff id {staff_id!r}")
        return member

    def _pca_row(self, staff_id: str) -> PCAAllocation:
        for row in self.pca_allocations:
            if row.staff_id == staff_id:
                return row
        raise AllocationError(f"No PCA allocation for {staff_id!r}")

    @property
    def warnings(self) -> List[AllocationWarning]:
        out: List[AllocationWarning] = []
        for step in STEP_ORDER:
            out.extend(self.pca_allocation_errors.get(step, []))
        return out

    # ------------------------------------------------------------------
    # Calculations
    # ------------------------------------------------------------------

    def compute_calculations(self):
        """Fresh (calculations, pending_fte) from the current slices; stores nothing."""
        pt_by_team = {t: 0.0 for t in TEAMS}
        for row in self.therapist_allocations:
            pt_by_team[row.team] = pt_by_team.get(row.team, 0.0) + row.fte_therapist
        assigned = assigned_pca_fte_by_team(self.pca_allocations)
        program_overrides = therapist_step.collect_program_overrides(self.overrides)
        reserved = reserved_special_program_pca_fte(self.special_programs, self.weekday, program_overrides)
        drm = drm_add_on_fte(self.special_programs, self.weekday)
        calculations = compute_team_calculations(
            TEAMS, self.wards, pt_by_team, assigned,
            total_pca_on_duty(self.staff, self.overrides),
            self.bed_count_overrides, reserved, drm,
        )
        pending = compute_pending_fte({t: c.average_pca_per_team for t, c in calculations.items()}, assigned)
        return calculations, pending

    def recalculate(self) -> None:
        self.calculations, self.pending_fte = self.compute_calculations()

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def status(self, step: str) -> str:
        return self.workflow_state.step_status.get(step, STEP_PENDING)

    @property
    def current_step(self) -> str:
        return self.workflow_state.current_step

    def can_go_to_step(self, target: str) -> bool:
        if target not in STEP_ORDER:
            return False
        current = step_index(self.current_step)
        wanted = step_index(target)
        if wanted <= current:
            return True
        for step in STEP_ORDER[current:wanted]:
            if STEP_DEFINITIONS[step]["required_for_next"] and self.status(step) == STEP_PENDING:
                return False
        return True

    def go_to_step(self, target: str) -> None:
        if not self.can_go_to_step(target):
            raise NavigationError(f"Cannot go from {self.current_step} to {target}")
        self.workflow_state.current_step = target
        if target not in self.workflow_state.initialized_steps:
            self.workflow_state.initialized_steps.append(target)
        logger.debug(f"{self.schedule_date}: now at {target}")

    def go_to_next_step(self) -> None:
        idx = step_index(self.current_step)
        if idx + 1 >= len(STEP_ORDER):
            raise NavigationError("Already at the last step")
        self.go_to_step(STEP_ORDER[idx + 1])

    def go_to_previous_step(self) -> None:
        idx = step_index(self.current_step)
        if idx == 0:
            raise NavigationError("Already at the first step")
        self.go_to_step(STEP_ORDER[idx - 1])

    def _mark(self, step: str, status: str) -> None:
        self.workflow_state.step_status[step] = status
        if step not in self.workflow_state.initialized_steps:
            self.workflow_state.initialized_steps.append(step)

    def _mark_modified(self, step: Optional[str]) -> None:
        if step in STEP_ORDER and self.status(step) == STEP_COMPLETED:
            self.workflow_state.step_status[step] = STEP_MODIFIED

    # ------------------------------------------------------------------
    # Edits (one undo checkpoint each)
    # ------------------------------------------------------------------

    def _edit(
        self,
        label: str,
        owner_step: Optional[str],
        slices: List[str],
        mutate: Callable[[], None],
        recompute_beds: bool = True,
    ) -> None:
        before = self._capture(slices)
        try:
            mutate()
        except Exception:
            self._restore(before)
            raise
        self._mark_modified(owner_step)
        self.recalculate()
        if recompute_beds:
            self._auto_step4()
        self.history.push(label, before, self._capture(slices))
        logger.info(f"{self.schedule_date}: {label}")

    def set_leave(
        self,
        staff_id: str,
        leave_type: Optional[str],
        fte_remaining: Optional[float] = None,
        available_slots: Optional[List[int]] = None,
        invalid_slots: Optional[List[int]] = None,
    ) -> None:
        member = self._staff(staff_id)
        capacity = member.base_capacity
        if leave_type is not None and leave_type not in LEAVE_TYPE_FTE_MAP:
            raise OverrideError(f"Unknown leave type {leave_type!r}")

        if leave_type is None and fte_remaining is None:
            patch: Dict[str, Any] = {
                "leave_type": None, "fte_remaining": None, "fte_subtraction": None,
                "available_slots": available_slots, "invalid_slots": invalid_slots,
            }
        else:
            remaining = fte_remaining
            if remaining is None:
                remaining = LEAVE_TYPE_FTE_MAP[leave_type]
                if remaining is None:
                    raise OverrideError(f"Leave type {leave_type!r} needs an explicit fte_remaining")
                remaining = min(remaining, capacity)
            if member.is_pca and available_slots is None and remaining < capacity - FTE_EPSILON:
                available_slots = SLOTS[:int(round(round_down_to_quarter(remaining) / SLOT_FTE))]
            patch = {
                "leave_type": leave_type,
                "fte_remaining": remaining,
                "fte_subtraction": max(0.0, capacity - remaining),
                "available_slots": available_slots,
                "invalid_slots": invalid_slots,
            }

        self._edit(
            f"Leave {member.name}: {leave_type or 'none'}",
            STEP_LEAVE,
            self._touched("overrides"),
            lambda: self.overrides.apply_override(staff_id, patch, capacity),
        )

    def complete_leave_step(self) -> None:
        self._mark(STEP_LEAVE, STEP_COMPLETED)
        logger.info(f"{self.schedule_date}: leave & FTE completed")

    def set_bed_count_override(
        self,
        team: str,
        ward_bed_counts: Optional[Dict[str, int]] = None,
        shs_bed_count: Optional[int] = None,
        student_placement_bed_count: Optional[int] = None,
    ) -> None:
        if team not in TEAMS:
            raise AllocationError(f"Unknown team {team!r}")

        def mutate():
            current = self.bed_count_overrides.get(team, BedCountOverride())
            updated = BedCountOverride(
                ward_bed_counts=dict(ward_bed_counts) if ward_bed_counts is not None else dict(current.ward_bed_counts),
                shs_bed_count=current.shs_bed_count if shs_bed_count is None else int(shs_bed_count),
                student_placement_bed_count=(
                    current.student_placement_bed_count
                    if student_placement_bed_count is None else int(student_placement_bed_count)
                ),
            )
            if updated.shs_bed_count < 0 or updated.student_placement_bed_count < 0:
                raise AllocationError("Bed counts must not be negative")
            self.bed_count_overrides[team] = updated

        self._edit(f"Bed counts {team}", STEP_LEAVE, self._touched("bed_count_overrides"), mutate)

    def set_bed_relieving_note(self, team: str, direction: str, text: str) -> None:
        self._edit(
            f"Bed note {team} {direction}",
            STEP_BEDS,
            self._touched("bed_relieving_notes"),
            lambda: self.bed_relieving_notes.set(team, direction, text),
        )

    def move_slot(self, staff_id: str, slot: int, from_team: str, to_team: str) -> None:
        member = self._staff(staff_id)
        if to_team not in TEAMS:
            raise AllocationError(f"Unknown team {to_team!r}")
        row = self._pca_row(staff_id)
        if row.get_slot(slot) != from_team:
            raise AllocationError(f"{member.name} slot {slot} is not held by {from_team}")

        def mutate():
            row = self._pca_row(staff_id)
            row.set_slot(slot, to_team)
            if slot in row.special_program_slots:
                row.special_program_slots.remove(slot)
            row.recompute_remaining()
            record = self.overrides.get(staff_id)
            links = dict(record.substitution_for or {}) if record else {}
            patch: Dict[str, Any] = {}
            if slot in links:
                del links[slot]
                patch["substitution_for"] = links or None
            if member.floating:
                slots = dict(record.slot_overrides or {}) if record else {}
                slots[slot] = to_team
                patch["slot_overrides"] = slots
            if patch:
                self.overrides.apply_override(staff_id, patch, member.base_capacity)

        owner = STEP_FLOATING if member.floating else STEP_THERAPIST
        self._edit(
            f"Move {member.name} slot {slot} {from_team} → {to_team}",
            owner, self._touched("pca_allocations", "overrides"), mutate,
        )

    def discard_slot(self, staff_id: str, team: str, slots: List[int]) -> None:
        member = self._staff(staff_id)
        row = self._pca_row(staff_id)
        not_held = [s for s in slots if row.get_slot(s) != team]
        if not_held:
            raise AllocationError(f"{member.name} slots {not_held} are not held by {team}")

        def mutate():
            row = self._pca_row(staff_id)
            for slot in slots:
                row.set_slot(slot, None)
                if slot in row.special_program_slots:
                    row.special_program_slots.remove(slot)
            row.recompute_remaining()
            record = self.overrides.get(staff_id)
            patch: Dict[str, Any] = {}
            if record and record.substitution_for:
                kept = {s: t for s, t in record.substitution_for.items() if s not in slots}
                patch["substitution_for"] = kept or None
            if record and record.slot_overrides:
                placed = {s: t for s, t in record.slot_overrides.items() if s not in slots}
                patch["slot_overrides"] = placed or None
            if patch:
                self.overrides.apply_override(staff_id, patch, member.base_capacity)
            if member.floating and not row.teams():
                self.pca_allocations = [r for r in self.pca_allocations if r.staff_id != staff_id]

        owner = STEP_FLOATING if member.floating else STEP_THERAPIST
        self._edit(
            f"Discard {member.name} slots {list(slots)} from {team}",
            owner, self._touched("pca_allocations", "overrides"), mutate,
        )

    def split_therapist(self, staff_id: str, fte_by_team: Dict[str, float]) -> None:
        member = self._staff(staff_id)
        if not member.is_therapist:
            raise AllocationError(f"{member.name} is not a therapist")
        unknown = [t for t in fte_by_team if t not in TEAMS]
        if unknown:
            raise AllocationError(f"Unknown teams {unknown}")
        available = effective_fte(member, self.overrides.get(staff_id))
        if sum(fte_by_team.values()) > available + FTE_EPSILON:
            raise OverrideError(f"{member.name}: split {sum(fte_by_team.values()):.2f} exceeds {available:.2f} FTE")

        def mutate():
            self.overrides.apply_override(
                staff_id, {"therapist_team_fte_by_team": dict(fte_by_team)}, member.base_capacity,
            )
            kept = [r for r in self.therapist_allocations if r.staff_id != staff_id]
            template = next((r for r in self.therapist_allocations if r.staff_id == staff_id), None)
            for team in TEAMS:
                share = float(fte_by_team.get(team, 0.0))
                if share > FTE_EPSILON:
                    kept.append(TherapistAllocation(
                        staff_id=staff_id, team=team, fte_therapist=share,
                        leave_type=template.leave_type if template else None,
                        special_program_ids=list(template.special_program_ids) if template else [],
                        manual_override=True,
                    ))
            self.therapist_allocations = kept

        self._edit(
            f"Split {member.name} across {sorted(fte_by_team)}",
            STEP_THERAPIST, self._touched("therapist_allocations", "overrides"), mutate,
        )

    def merge_therapist(self, staff_id: str, team: str) -> None:
        member = self._staff(staff_id)
        if team not in TEAMS:
            raise AllocationError(f"Unknown team {team!r}")
        rows = [r for r in self.therapist_allocations if r.staff_id == staff_id]
        if not rows:
            raise AllocationError(f"No therapist allocation for {member.name}")

        def mutate():
            self.overrides.apply_override(
                staff_id, {"therapist_team_fte_by_team": None, "team": team}, member.base_capacity,
            )
            merged = TherapistAllocation(
                staff_id=staff_id, team=team,
                fte_therapist=sum(r.fte_therapist for r in rows),
                leave_type=rows[0].leave_type,
                special_program_ids=list(rows[0].special_program_ids),
                manual_override=True,
            )
            self.therapist_allocations = [
                r for r in self.therapist_allocations if r.staff_id != staff_id
            ] + [merged]

        self._edit(
            f"Merge {member.name} into {team}",
            STEP_THERAPIST, self._touched("therapist_allocations", "overrides"), mutate,
        )

    def set_card_color(self, staff_id: str, team: str, color: Optional[str]) -> None:
        member = self._staff(staff_id)
        record = self.overrides.get(staff_id)
        colors = dict(record.card_color_by_team or {}) if record else {}
        if color:
            colors[team] = color
        else:
            colors.pop(team, None)
        self._edit(
            f"Card colour {member.name} {team}",
            None, self._touched("overrides"),
            lambda: self.overrides.apply_override(
                staff_id, {"card_color_by_team": colors or None}, member.base_capacity,
            ),
        )

    # ------------------------------------------------------------------
    # Undo / redo
    # ------------------------------------------------------------------

    def undo(self) -> Optional[str]:
        checkpoint = self.history.undo()
        if checkpoint is None:
            return None
        self._restore_keeping_navigation(checkpoint.before)
        logger.info(f"{self.schedule_date}: undo '{checkpoint.label}'")
        return checkpoint.label

    def redo(self) -> Optional[str]:
        checkpoint = self.history.redo()
        if checkpoint is None:
            return None
        self._restore_keeping_navigation(checkpoint.after)
        logger.info(f"{self.schedule_date}: redo '{checkpoint.label}'")
        return checkpoint.label

    def _restore_keeping_navigation(self, data: Dict[str, Any]) -> None:
        """Restore a checkpoint without moving the user forward past where they navigated."""
        here = self.current_step
        self._restore(data)
        if step_index(here) < step_index(self.current_step):
            self.workflow_state.current_step = here

    # ------------------------------------------------------------------
    # Engine runs
    # ------------------------------------------------------------------

    async def _cancel_inflight(self) -> None:
        task = self._inflight
        if task is None or task.done():
            return
        self._superseded.add(task)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.info(f"{self.schedule_date}: superseded in-flight run cancelled")

    async def _run_exclusive(self, step: str, body: Callable[..., Any], *args: Any) -> StepOutcome:
        await self._cancel_inflight()
        task = asyncio.ensure_future(self._guarded(step, body, *args))
        self._inflight = task
        try:
            return await task
        except asyncio.CancelledError:
            if task in self._superseded:
                self._superseded.discard(task)
                return StepOutcome(STATUS_CANCELLED, step, "superseded by a newer run")
            raise
        finally:
            if self._inflight is task:
                self._inflight = None

    async def _guarded(self, step: str, body: Callable[..., Any], *args: Any) -> StepOutcome:
        before = self._capture(SLICES)
        try:
            outcome = await body(*args)
        except StepCancelled as exc:
            self._restore(before)
            logger.info(f"{self.schedule_date}: {step} cancelled ({exc.resolver})")
            return StepOutcome(STATUS_CANCELLED, step, str(exc))
        except NavigationError as exc:
            self._restore(before)
            logger.warning(f"{self.schedule_date}: {exc}")
            return StepOutcome(STATUS_FAILED, step, str(exc))
        except asyncio.CancelledError:
            self._restore(before)
            raise
        except Exception as exc:
            logger.exception(f"{self.schedule_date}: {step} failed")
            self._restore(before)
            return StepOutcome(STATUS_FAILED, step, str(exc))
        self.history.push(f"Run {STEP_DEFINITIONS[step]['title']}", before, self._capture(SLICES))
        return outcome

    async def run_step2(self, resolvers: Optional[ResolverSet] = None) -> StepOutcome:
        return await self._run_exclusive(STEP_THERAPIST, self._step2, resolvers)

    async def run_step3(
        self,
        resolvers: Optional[ResolverSet] = None,
        team_order: Optional[List[str]] = None,
        buffer_ratio: float = 0.0,
    ) -> StepOutcome:
        return await self._run_exclusive(STEP_FLOATING, self._step3, resolvers, team_order, buffer_ratio)

    async def _step2(self, resolvers: Optional[ResolverSet]) -> StepOutcome:
        self.go_to_step(STEP_THERAPIST)
        result = await therapist_step.run_step2(
            self.staff, self.overrides, self.weekday,
            self.special_programs, self.spt_allocations, self.pca_preferences,
            resolvers, self.previous_spt_teams,
        )
        self.therapist_allocations = result.therapist_allocations
        self.pca_allocations = result.pca_allocations
        self.pca_allocation_errors[STEP_THERAPIST] = list(result.warnings)
        self.pca_allocation_errors.pop(STEP_FLOATING, None)
        if self.status(STEP_FLOATING) != STEP_PENDING:
            # Floating slots were rebuilt from scratch; Step 3 has to run again
            self.workflow_state.step_status[STEP_FLOATING] = STEP_PENDING
        self._mark(STEP_THERAPIST, STEP_COMPLETED)
        self.recalculate()
        self._auto_step4()
        return StepOutcome(STATUS_COMPLETED, STEP_THERAPIST, warnings=list(result.warnings))

    def preserved_step3_rows(self, keep_buffer: bool = True, keep_manual: bool = True) -> List[PCAAllocation]:
        """
        PCA rows Step 3 keeps on re-entry: non-floating rows whole, buffer
        floating rows whole (unless keep_buffer is False), other floating
        rows cut back to their special-program and substitution slots plus
        slots placed by hand with move_slot (unless keep_manual is False).
        """
        kept: List[PCAAllocation] = []
        for row in self.pca_allocations:
            member = self.staff_by_id.get(row.staff_id)
            if member is None or not member.floating or (keep_buffer and member.is_buffer):
                kept.append(row.clone())
                continue
            record = self.overrides.get(row.staff_id)
            keep_slots = set(row.special_program_slots)
            keep_slots |= set((record.substitution_for or {}).keys()) if record else set()
            if keep_manual and record and record.slot_overrides:
                keep_slots |= {s for s, team in record.slot_overrides.items() if row.get_slot(s) == team}
            if not keep_slots:
                continue
            trimmed = row.clone()
            for slot in SLOTS:
                if slot not in keep_slots:
                    trimmed.set_slot(slot, None)
            trimmed.recompute_remaining()
            kept.append(trimmed)
        return kept

    def floating_pool(self) -> List[FloatingPCA]:
        pool = []
        for member in self.staff:
            if not member.floating or member.status == "inactive":
                continue
            record = self.overrides.get(member.id)
            fte = effective_fte(member, record)
            if fte <= FTE_EPSILON:
                continue
            pool.append(FloatingPCA(
                id=member.id,
                name=member.name,
                fte=fte,
                available_slots=list(record.available_slots) if record and record.available_slots is not None else list(SLOTS),
                floor_pca=list(member.floor_pca),
                is_buffer=member.is_buffer,
                invalid_slot=record.invalid_slots[0] if record and record.invalid_slots else None,
            ))
        return pool

    async def _step3(
        self,
        resolvers: Optional[ResolverSet],
        team_order: Optional[List[str]],
        buffer_ratio: float,
    ) -> StepOutcome:
        self.go_to_step(STEP_FLOATING)
        resolvers = resolvers or ResolverSet()
        self.pca_allocations = self.preserved_step3_rows()
        self.recalculate()

        result = await floating_pca.run_step3(
            self.pending_fte,
            self.floating_pool(),
            self.pca_allocations,
            self.pca_preferences,
            team_order=team_order,
            buffer_ratio=buffer_ratio,
            tie_break=resolvers.tie_break,
            tie_break_decisions=self.tie_break_decisions,
        )
        self.pca_allocations = result.allocations
        self.tie_break_decisions = dict(result.tie_break_decisions)
        self.pca_allocation_errors[STEP_FLOATING] = list(result.warnings)
        self.last_tracker = result.tracker
        self._mark(STEP_FLOATING, STEP_COMPLETED)
        self.recalculate()
        self._auto_step4()
        return StepOutcome(STATUS_COMPLETED, STEP_FLOATING, warnings=list(result.warnings))

    def _auto_step4(self) -> None:
        if step_index(self.current_step) <= step_index(STEP_BEDS):
            self._recompute_beds()

    def _recompute_beds(self) -> None:
        relieving = {t: c.beds_for_relieving for t, c in self.calculations.items()}
        self.last_bed_result = allocate_beds(relieving, self.wards)
        self.bed_allocations = list(self.last_bed_result.allocations)

    def run_step4(self, force: bool = False) -> bool:
        """
        Recompute bed transfers. Past bed-relieving the stored result is
        kept unless force=True. Returns True when recomputed.
        """
        if step_index(self.current_step) > step_index(STEP_BEDS) and not force:
            logger.info(f"{self.schedule_date}: past bed relieving, keeping stored bed allocations")
            return False
        self.recalculate()
        self._recompute_beds()
        if self.current_step == STEP_BEDS:
            self._mark(STEP_BEDS, STEP_COMPLETED)
        return True

    # ------------------------------------------------------------------
    # Clear / reset
    # ------------------------------------------------------------------

    def clear_step(self, step: str, confirm: bool = False) -> None:
        idx = step_index(step)
        later = [s for s in STEP_ORDER[idx + 1:] if self.status(s) != STEP_PENDING]
        if later and not confirm:
            raise ConfirmationRequired(step, later)

        def mutate():
            if idx <= step_index(STEP_FLOATING):
                if idx <= step_index(STEP_THERAPIST):
                    self.therapist_allocations = []
                    self.pca_allocations = []
                else:
                    self.pca_allocations = self.preserved_step3_rows(keep_buffer=False, keep_manual=False)
                self.tie_break_decisions = {}
                self.last_tracker = None
            if idx <= step_index(STEP_LEAVE):
                self.bed_count_overrides = {}
            if idx <= step_index(STEP_BEDS):
                self.bed_allocations = []
                self.last_bed_result = None
                self.bed_relieving_notes = BedRelievingNotes()
            self.overrides.clear_for_step(step)
            for s in STEP_ORDER[idx:]:
                self.workflow_state.step_status[s] = STEP_PENDING
                self.pca_allocation_errors.pop(s, None)
            if step_index(self.current_step) > idx:
                self.workflow_state.current_step = step

        # Cleared output stays cleared until the step runs again
        self._edit(
            f"Clear {STEP_DEFINITIONS[step]['title']}", None, list(SLICES), mutate, recompute_beds=False,
        )

    def reset_to_baseline(self, snapshot: Any) -> None:
        """
        Drop every override and allocation and re-derive config from a
        BaselineSnapshot. The snapshot object is not modified.
        """
        self._set_config(
            copy.deepcopy(snapshot.staff),
            copy.deepcopy(snapshot.wards),
            copy.deepcopy(snapshot.special_programs),
            copy.deepcopy(snapshot.spt_allocations),
            copy.deepcopy(snapshot.pca_preferences),
        )
        self.overrides = OverrideStore()
        self.therapist_allocations = []
        self.pca_allocations = []
        self.bed_allocations = []
        self.bed_count_overrides = {}
        self.bed_relieving_notes = BedRelievingNotes()
        self.workflow_state = WorkflowState()
        self.tie_break_decisions = {}
        self.pca_allocation_errors = {}
        self.last_tracker = None
        self.history.clear()
        self.recalculate()
        logger.info(f"{self.schedule_date}: reset to baseline")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_state_dict(self) -> Dict[str, Any]:
        return {
            "date": self.schedule_date,
            "workflow_state": self.workflow_state.to_dict(),
            "overrides": self.overrides.to_dict(),
            "therapist_allocations": [r.to_dict() for r in self.therapist_allocations],
            "pca_allocations": [r.to_dict() for r in self.pca_allocations],
            "bed_allocations": [r.to_dict() for r in self.bed_allocations],
            "bed_count_overrides": {t: o.to_dict() for t, o in self.bed_count_overrides.items()},
            "bed_relieving_notes": self.bed_relieving_notes.to_dict(),
            "tie_break_decisions": dict(self.tie_break_decisions),
        }

    def load_state_dict(self, raw: Dict[str, Any]) -> None:
        self.workflow_state = WorkflowState.from_dict(raw.get("workflow_state"))
        self.overrides = OverrideStore.from_dict(raw.get("overrides"))
        self.therapist_allocations = [TherapistAllocation.from_dict(r) for r in raw.get("therapist_allocations") or []]
        self.pca_allocations = [PCAAllocation.from_dict(r) for r in raw.get("pca_allocations") or []]
        self.bed_allocations = [BedAllocation.from_dict(r) for r in raw.get("bed_allocations") or []]
        self.bed_count_overrides = {
            t: BedCountOverride.from_dict(o) for t, o in (raw.get("bed_count_overrides") or {}).items()
        }
        self.bed_relieving_notes = BedRelievingNotes.from_dict(raw.get("bed_relieving_notes"))
        self.tie_break_decisions = dict(raw.get("tie_break_decisions") or {})
        self.history.clear()
        self.recalculate()
