"""
constraints.py — Allocation invariant checks

Hard constraints (state is corrupt if violated):
  - SLOT_DOUBLE_BOOKED: a PCA's slot is owned by more than one row
  - SUBSTITUTION_OVERLAP: two floating PCAs cover the same gap slot
  - OVERRIDE_CAPACITY: fte_remaining + fte_subtraction > staff capacity
  - FLOATING_RANK: a non-PCA staff member marked floating

Soft constraints (reported, repair may help):
  - CONSERVATION_MISMATCH: Σ(assigned − target) off by more than the tolerance
  - UNMET_PENDING: a team still needs floating PCA FTE after Step 3
  - STALE_CALCULATION: stored calculations differ from a fresh recompute

Usage:
  checker = AllocationChecker(staff)
  hard, soft = checker.check_all(controller)
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from rehab_scheduler.capacity import assigned_pca_fte_by_team, round_to_nearest_quarter_with_midpoint
from rehab_scheduler.models import Staff
from rehab_scheduler.schedule_config import (
    CONSERVATION_TOLERANCE,
    FTE_EPSILON,
    SLOTS,
    STEP_FLOATING,
    STEP_PENDING,
)

logger = logging.getLogger(__name__)

CALCULATION_FIELDS = ("pt_per_team", "total_beds_designated", "beds_for_relieving", "average_pca_per_team")


class ConstraintSeverity(Enum):
    HARD = "hard"
    SOFT = "soft"


@dataclass
class ConstraintViolation:
    severity: ConstraintSeverity
    constraint_type: str
    description: str
    team: Optional[str] = None
    staff: Optional[str] = None
    slot: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        parts = [f"[{self.severity.value.upper()}] {self.constraint_type}"]
        if self.team:
            parts.append(f"team={self.team}")
        if self.staff:
            parts.append(f"staff={self.staff}")
        if self.slot:
            parts.append(f"slot={self.slot}")
        parts.append(f"→ {self.description}")
        return " | ".join(parts)


class AllocationChecker:
    """
    Validates a controller's allocation state.

    Works on anything exposing the WorkflowController slices
    (pca_allocations, overrides, calculations, pending_fte, ...).
    """

    def __init__(self, staff: List[Staff]):
        self.staff = staff
        self._by_id: Dict[str, Staff] = {s.id: s for s in staff}

    def _name(self, staff_id: str) -> str:
        member = self._by_id.get(staff_id)
        return member.name if member else staff_id

    # -----------------------------------------------------------------------
    # HARD
    # -----------------------------------------------------------------------

    def check_slot_double_booking(self, pca_allocations) -> List[ConstraintViolation]:
        """Hard: each (PCA, slot) is owned by at most one row."""
        violations = []
        owners: Dict[Tuple[str, int], List[str]] = {}
        for row in pca_allocations:
            for slot in SLOTS:
                team = row.get_slot(slot)
                if team is not None:
                    owners.setdefault((row.staff_id, slot), []).append(team)
        for (staff_id, slot), teams in sorted(owners.items()):
            if len(teams) > 1:
                violations.append(ConstraintViolation(
                    severity=ConstraintSeverity.HARD,
                    constraint_type="SLOT_DOUBLE_BOOKED",
                    description=f"{self._name(staff_id)} slot {slot} owned by {', '.join(teams)}",
                    staff=staff_id,
                    slot=slot,
                    details={"teams": teams},
                ))
        return violations

    def check_substitution_overlap(self, overrides) -> List[ConstraintViolation]:
        """Hard: a gap slot of a non-floating PCA is covered by one floating PCA at most."""
        violations = []
        covering: Dict[Tuple[str, int], List[str]] = {}
        for floating_id, slot, target in overrides.substitution_links():
            covering.setdefault((target.key, slot), []).append(floating_id)
        for (key, slot), floating_ids in sorted(covering.items()):
            if len(floating_ids) > 1:
                violations.append(ConstraintViolation(
                    severity=ConstraintSeverity.HARD,
                    constraint_type="SUBSTITUTION_OVERLAP",
                    description=f"{key} slot {slot} covered by {', '.join(floating_ids)}",
                    team=key.split("::")[0],
                    slot=slot,
                    details={"floating_pca_ids": floating_ids},
                ))
        return violations

    def check_override_capacity(self, overrides) -> List[ConstraintViolation]:
        """Hard: remaining + subtracted FTE never exceeds the staff member's capacity."""
        violations = []
        for staff_id, record in sorted(overrides.items()):
            member = self._by_id.get(staff_id)
            capacity = member.base_capacity if member else 1.0
            remaining = record.fte_remaining or 0.0
            subtraction = record.fte_subtraction or 0.0
            if remaining + subtraction > capacity + FTE_EPSILON:
                violations.append(ConstraintViolation(
                    severity=ConstraintSeverity.HARD,
                    constraint_type="OVERRIDE_CAPACITY",
                    description=(
                        f"{self._name(staff_id)}: remaining {remaining:.2f} + subtraction "
                        f"{subtraction:.2f} > capacity {capacity:.2f}"
                    ),
                    staff=staff_id,
                ))
        return violations

    def check_floating_rank(self) -> List[ConstraintViolation]:
        """Hard: only PCAs float."""
        return [
            ConstraintViolation(
                severity=ConstraintSeverity.HARD,
                constraint_type="FLOATING_RANK",
                description=f"{s.name} is {s.rank} but marked floating",
                staff=s.id,
            )
            for s in self.staff
            if s.floating and not s.is_pca
        ]

    # -----------------------------------------------------------------------
    # SOFT
    # -----------------------------------------------------------------------

    def check_conservation(self, state) -> List[ConstraintViolation]:
        """Soft: once Step 3 ran, team-assigned PCA FTE nets out against targets."""
        if state.status(STEP_FLOATING) == STEP_PENDING or not state.calculations:
            return []
        assigned = assigned_pca_fte_by_team(state.pca_allocations)
        balance = {
            team: assigned.get(team, 0.0) - round_to_nearest_quarter_with_midpoint(calc.average_pca_per_team)
            for team, calc in state.calculations.items()
        }
        net = sum(balance.values())
        if abs(net) <= CONSERVATION_TOLERANCE:
            return []
        return [ConstraintViolation(
            severity=ConstraintSeverity.SOFT,
            constraint_type="CONSERVATION_MISMATCH",
            description=f"Assigned PCA FTE nets {net:+.2f} against team targets",
            details={"net": net, "balance": balance},
        )]

    def check_unmet_pending(self, state) -> List[ConstraintViolation]:
        """Soft: Step 3 left a team short."""
        if state.status(STEP_FLOATING) == STEP_PENDING:
            return []
        return [
            ConstraintViolation(
                severity=ConstraintSeverity.SOFT,
                constraint_type="UNMET_PENDING",
                description=f"{pending:.2f} FTE still pending",
                team=team,
                details={"pending": pending},
            )
            for team, pending in state.pending_fte.items()
            if pending > FTE_EPSILON
        ]

    def check_stale_calculations(self, state) -> List[ConstraintViolation]:
        """Soft: stored calculations match what the current slices produce."""
        fresh, _pending = state.compute_calculations()
        violations = []
        for team, calc in fresh.items():
            stored = state.calculations.get(team)
            if stored is None:
                violations.append(ConstraintViolation(
                    severity=ConstraintSeverity.SOFT,
                    constraint_type="STALE_CALCULATION",
                    description="No stored calculations",
                    team=team,
                ))
                continue
            drift = {
                name: (getattr(stored, name), getattr(calc, name))
                for name in CALCULATION_FIELDS
                if abs(getattr(stored, name) - getattr(calc, name)) > FTE_EPSILON
            }
            if drift:
                violations.append(ConstraintViolation(
                    severity=ConstraintSeverity.SOFT,
                    constraint_type="STALE_CALCULATION",
                    description=f"Stored calculations drifted: {', '.join(sorted(drift))}",
                    team=team,
                    details={"drift": drift},
                ))
        return violations

    # -----------------------------------------------------------------------
    # Run all checks
    # -----------------------------------------------------------------------

    def check_all(self, state) -> Tuple[List[ConstraintViolation], List[ConstraintViolation]]:
        """
        Run all hard and soft checks against a controller state.

        Returns:
            (hard_violations, soft_violations)
        """
        hard: List[ConstraintViolation] = []
        soft: List[ConstraintViolation] = []

        hard.extend(self.check_slot_double_booking(state.pca_allocations))
        hard.extend(self.check_substitution_overlap(state.overrides))
        hard.extend(self.check_override_capacity(state.overrides))
        hard.extend(self.check_floating_rank())

        soft.extend(self.check_conservation(state))
        soft.extend(self.check_unmet_pending(state))
        soft.extend(self.check_stale_calculations(state))

        if hard:
            logger.warning(f"{len(hard)} hard violation(s) found")
        return hard, soft
