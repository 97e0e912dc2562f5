"""
capacity.py — Bed & FTE Capacity Math

Pure functions, no I/O, safe to re-run on every edit.

  designated beds   = Σ ward beds assigned to team (per-ward override replaces
                      the assignment, capped at ward size) − SHS − student
                      placement, floored at 0
  expected beds     = total effective beds × team PT / total PT
  beds for relieving= expected − designated  (+ = needs beds, − = can give)
  average PCA/team  = PT share × (PCA on duty − reserved program FTE − DRM add-on)
                      + DRM add-on for the DRM team only

Quarter rounding
────────────────
  round_to_nearest_quarter_with_midpoint() snaps to 0.25 steps. Exact
  midpoints (x.125, x.375, ...) go to the nearer EVEN quarter index, so
  0.125 → 0.0, 0.375 → 0.5, 0.625 → 0.5, 0.875 → 1.0. Negative inputs
  mirror positive ones. A small tolerance absorbs float noise so
  0.1 + 0.025 still counts as a midpoint.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from rehab_scheduler.models import BedCountOverride, SpecialProgram, Staff, TeamCalculations, Ward
from rehab_scheduler.schedule_config import (
    DRM_DEFAULT_ADD_ON,
    DRM_PROGRAM_NAME,
    DRM_TEAM,
    LEAVE_TYPE_FTE_MAP,
    SLOT_FTE,
    TEAMS,
)

logger = logging.getLogger(__name__)

MIDPOINT_TOLERANCE = 1e-9


# ---------------------------------------------------------------------------
# Rounding
# ---------------------------------------------------------------------------

def round_to_nearest_quarter_with_midpoint(value: float) -> float:
    sign = -1.0 if value < 0 else 1.0
    quarters = abs(value) * 4.0
    lower = math.floor(quarters)
    frac = quarters - lower
    if abs(frac - 0.5) <= MIDPOINT_TOLERANCE:
        steps = lower if lower % 2 == 0 else lower + 1
    elif frac < 0.5:
        steps = lower
    else:
        steps = lower + 1
    result = sign * steps / 4.0
    return result + 0.0   # normalise -0.0


def round_down_to_quarter(value: float) -> float:
    return math.floor(value * 4.0 + MIDPOINT_TOLERANCE) / 4.0


def round_to_nearest_integer(value: float) -> int:
    """Half rounds up (toward +inf), matching how bed counts are displayed."""
    return int(math.floor(value + 0.5))


def format_fte(value: float) -> str:
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return text or "0"


# ---------------------------------------------------------------------------
# Staff capacity
# ---------------------------------------------------------------------------

def effective_fte(staff: Staff, override: Any = None) -> float:
    """On-duty FTE for a staff member after leave (0 when inactive)."""
    if staff.status == "inactive":
        return 0.0
    if override is not None:
        if getattr(override, "fte_remaining", None) is not None:
            return float(override.fte_remaining)
        leave_type = getattr(override, "leave_type", None)
        if leave_type is not None and LEAVE_TYPE_FTE_MAP.get(leave_type) is not None:
            return min(LEAVE_TYPE_FTE_MAP[leave_type], staff.base_capacity)
    return staff.base_capacity


def total_pca_on_duty(staff: Iterable[Staff], overrides: Dict[str, Any]) -> float:
    return sum(
        effective_fte(s, overrides.get(s.id))
        for s in staff
        if s.is_pca
    )


# ---------------------------------------------------------------------------
# Beds
# ---------------------------------------------------------------------------

def compute_beds_designated_by_team(
    teams: List[str],
    wards: List[Ward],
    overrides_by_team: Optional[Dict[str, BedCountOverride]] = None,
) -> Tuple[Dict[str, float], float]:
    """
    Returns (designated_by_team, total_effective_beds).

    A ward bed-count override replaces the team's assignment on that ward and
    is capped at the ward's total beds. SHS + student placement beds are then
    deducted, never below zero.
    """
    overrides_by_team = overrides_by_team or {}
    designated: Dict[str, float] = {}

    for team in teams:
        override = overrides_by_team.get(team)
        base = 0
        for ward in wards:
            assigned = ward.team_assignments.get(team, 0)
            if override is not None and ward.name in override.ward_bed_counts:
                count = min(max(0, override.ward_bed_counts[ward.name]), ward.total_beds)
            else:
                count = assigned
            base += count

        deduction = 0
        if override is not None:
            deduction = min(base, override.shs_bed_count + override.student_placement_bed_count)
        designated[team] = max(0, base - deduction)

    total = sum(designated.values())
    return designated, total


@dataclass
class RelievingResult:
    beds_for_relieving: Dict[str, float] = field(default_factory=dict)
    total_pt: float = 0.0
    overall_beds_per_pt: float = 0.0


def compute_beds_for_relieving(
    teams: List[str],
    designated_by_team: Dict[str, float],
    total_effective_beds: float,
    total_pt_by_team: Dict[str, float],
) -> RelievingResult:
    total_pt = sum(total_pt_by_team.get(t, 0.0) for t in teams)
    if total_pt <= 0:
        return RelievingResult({t: 0.0 for t in teams}, 0.0, 0.0)

    overall_beds_per_pt = total_effective_beds / total_pt
    relieving = {
        t: overall_beds_per_pt * total_pt_by_team.get(t, 0.0) - designated_by_team.get(t, 0.0)
        for t in teams
    }
    return RelievingResult(relieving, total_pt, overall_beds_per_pt)


# ---------------------------------------------------------------------------
# Special programs
# ---------------------------------------------------------------------------

def required_program_slots(
    program: SpecialProgram,
    weekday: str,
    override: Optional[Dict[str, Any]] = None,
) -> List[int]:
    """Override required_slots, then override slots, then program config / fallback."""
    if override:
        if override.get("required_slots"):
            return sorted(override["required_slots"])
        if override.get("slots"):
            return sorted(override["slots"])
    return program.slots_for(weekday)


def reserved_special_program_pca_fte(
    programs: List[SpecialProgram],
    weekday: str,
    overrides: Optional[Dict[str, Dict[str, Any]]] = None,
) -> float:
    overrides = overrides or {}
    reserved = 0.0
    for program in programs:
        if program.name == DRM_PROGRAM_NAME or not program.is_active_on(weekday):
            continue
        slots = required_program_slots(program, weekday, overrides.get(program.id))
        reserved += len(slots) * SLOT_FTE
    return reserved


def drm_add_on_fte(
    programs: List[SpecialProgram],
    weekday: str,
    override: Optional[float] = None,
) -> float:
    active = any(p.name == DRM_PROGRAM_NAME and p.is_active_on(weekday) for p in programs)
    if not active:
        return 0.0
    return DRM_DEFAULT_ADD_ON if override is None else float(override)


# ---------------------------------------------------------------------------
# PCA targets
# ---------------------------------------------------------------------------

def compute_average_pca_per_team(
    teams: List[str],
    pt_by_team: Dict[str, float],
    total_pca_on_duty: float,
    reserved_fte: float = 0.0,
    drm_add_on: float = 0.0,
    drm_team: str = DRM_TEAM,
) -> Tuple[Dict[str, float], Dict[str, float]]:
    """
    Returns (average_by_team, base_average_by_team).

    The DRM team's average carries the fixed add-on on top of its PT share;
    base_average is the PT share alone.
    """
    effective_pool = total_pca_on_duty - reserved_fte - drm_add_on
    total_pt = sum(pt_by_team.get(t, 0.0) for t in teams)

    base: Dict[str, float] = {}
    for team in teams:
        if total_pt > 0:
            base[team] = pt_by_team.get(team, 0.0) / total_pt * effective_pool
        else:
            base[team] = effective_pool / len(teams) if teams else 0.0

    average = dict(base)
    if drm_team in average:
        average[drm_team] += drm_add_on
    return average, base


def compute_pending_fte(
    average_by_team: Dict[str, float],
    assigned_by_team: Dict[str, float],
) -> Dict[str, float]:
    return {
        team: max(0.0, round_to_nearest_quarter_with_midpoint(avg - assigned_by_team.get(team, 0.0)))
        for team, avg in average_by_team.items()
    }


def compute_team_calculations(
    teams: List[str],
    wards: List[Ward],
    pt_by_team: Dict[str, float],
    pca_on_duty_by_team: Dict[str, float],
    total_pca: float,
    bed_overrides: Optional[Dict[str, BedCountOverride]] = None,
    reserved_fte: float = 0.0,
    drm_add_on: float = 0.0,
    drm_team: str = DRM_TEAM,
) -> Dict[str, TeamCalculations]:
    """Full per-team calculation rows (the figures shown under each team)."""
    designated, total_beds = compute_beds_designated_by_team(teams, wards, bed_overrides)
    relieving = compute_beds_for_relieving(teams, designated, total_beds, pt_by_team)
    average, base_average = compute_average_pca_per_team(
        teams, pt_by_team, total_pca, reserved_fte, drm_add_on, drm_team,
    )
    beds_per_pca = total_beds / total_pca if total_pca > 0 else 0.0

    rows: Dict[str, TeamCalculations] = {}
    for team in teams:
        pt = pt_by_team.get(team, 0.0)
        pca_on_duty = pca_on_duty_by_team.get(team, 0.0)
        expected = relieving.overall_beds_per_pt * pt
        rows[team] = TeamCalculations(
            team=team,
            designated_wards=[w.label_for(team) for w in wards if w.team_assignments.get(team, 0) > 0],
            total_beds_designated=designated[team],
            total_beds=total_beds,
            total_pt_on_duty=relieving.total_pt,
            beds_per_pt=designated[team] / pt if pt > 0 else 0.0,
            pt_per_team=pt,
            beds_for_relieving=relieving.beds_for_relieving[team],
            pca_on_duty=pca_on_duty,
            total_pt_per_pca=pt / pca_on_duty if pca_on_duty > 0 else 0.0,
            average_pca_per_team=average[team],
            base_average_pca_per_team=base_average[team] if (team == drm_team and drm_add_on) else None,
            expected_beds_per_team=expected,
            required_pca_per_team=expected / beds_per_pca if beds_per_pca > 0 else 0.0,
        )
    logger.debug(f"Calculations rebuilt for {len(rows)} teams (total beds {total_beds})")
    return rows


def assigned_pca_fte_by_team(pca_allocations: Iterable[Any], teams: Optional[List[str]] = None) -> Dict[str, float]:
    """Slot FTE each team holds (invalid and special-program slots excluded)."""
    assigned = {t: 0.0 for t in (teams or TEAMS)}
    for row in pca_allocations:
        for team in row.teams():
            assigned[team] = assigned.get(team, 0.0) + row.fte_for_team(team)
    return assigned
