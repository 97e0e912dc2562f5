"""
bed_relieving.py — Step 4: Bed Relieving

Moves beds from teams carrying more than their PT share to teams carrying
less. Input is beds_for_relieving per team (expected − designated):
positive = team should take beds, negative = team can release beds.

  1. round every value to an integer
  2. takers by need desc (ties in team order), releasers by surplus desc
  3. each transfer draws from the releaser's wards, largest coverage first,
     num_beds = min(need, surplus, beds the releaser holds on that ward)

Score (lower is better) = total wards used × 1000 + discrepancy × 100, where
discrepancy is the need left unmet after all transfers.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from rehab_scheduler.capacity import round_to_nearest_integer
from rehab_scheduler.models import BedAllocation, Ward
from rehab_scheduler.schedule_config import TEAMS

logger = logging.getLogger(__name__)

DIRECTION_TAKES = "takes"
DIRECTION_RELEASES = "releases"


@dataclass
class BedAllocationResult:
    allocations: List[BedAllocation] = field(default_factory=list)
    total_wards: int = 0
    discrepancy: int = 0

    @property
    def score(self) -> int:
        return self.total_wards * 1000 + self.discrepancy * 100


def allocate_beds(
    beds_for_relieving: Dict[str, float],
    wards: List[Ward],
    teams: Optional[List[str]] = None,
) -> BedAllocationResult:
    teams = list(teams or TEAMS)
    rounded = {t: round_to_nearest_integer(beds_for_relieving.get(t, 0.0)) for t in teams}

    takers = sorted((t for t in teams if rounded[t] > 0), key=lambda t: (-rounded[t], teams.index(t)))
    need = {t: rounded[t] for t in takers}
    surplus = {t: -rounded[t] for t in teams if rounded[t] < 0}

    # Beds each releasing team still holds per ward
    holdings: Dict[str, Dict[str, int]] = {
        t: {w.name: w.team_assignments.get(t, 0) for w in wards if w.team_assignments.get(t, 0) > 0}
        for t in surplus
    }

    allocations: List[BedAllocation] = []
    wards_used = set()
    for taker in takers:
        releasers = sorted(
            (t for t in surplus if surplus[t] > 0),
            key=lambda t: (-surplus[t], teams.index(t)),
        )
        for releaser in releasers:
            if need[taker] <= 0:
                break
            ward_order = sorted(holdings[releaser].items(), key=lambda kv: (-kv[1], kv[0]))
            for ward_name, held in ward_order:
                if need[taker] <= 0 or surplus[releaser] <= 0:
                    break
                beds = min(need[taker], surplus[releaser], held)
                if beds <= 0:
                    continue
                allocations.append(BedAllocation(
                    from_team=releaser, to_team=taker, ward=ward_name, num_beds=beds,
                ))
                holdings[releaser][ward_name] -= beds
                need[taker] -= beds
                surplus[releaser] -= beds
                wards_used.add(ward_name)
                logger.debug(f"Beds: {releaser} → {taker} {beds} on {ward_name}")

    discrepancy = sum(need.values())
    if discrepancy:
        logger.warning(f"Bed relieving left {discrepancy} bed(s) unplaced")
    result = BedAllocationResult(allocations, len(wards_used), discrepancy)
    logger.info(f"Bed relieving: {len(allocations)} transfer(s), score {result.score}")
    return result


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------

class BedRelievingNotes:
    """Free-text notes per (team, direction), kept as a workflow state slice."""

    def __init__(self, notes: Optional[Dict[str, Dict[str, str]]] = None):
        self._notes: Dict[str, Dict[str, str]] = {t: dict(v) for t, v in (notes or {}).items()}

    def set(self, team: str, direction: str, text: str) -> None:
        if direction not in (DIRECTION_TAKES, DIRECTION_RELEASES):
            raise ValueError(f"Unknown bed relieving direction {direction!r}")
        if team not in TEAMS:
            raise ValueError(f"Unknown team {team!r}")
        if text:
            self._notes.setdefault(team, {})[direction] = text
        else:
            self._notes.get(team, {}).pop(direction, None)
            if not self._notes.get(team):
                self._notes.pop(team, None)

    def get(self, team: str, direction: str) -> Optional[str]:
        return self._notes.get(team, {}).get(direction)

    def items(self) -> List[Tuple[str, str, str]]:
        return [
            (team, direction, text)
            for team in TEAMS if team in self._notes
            for direction, text in sorted(self._notes[team].items())
        ]

    def to_dict(self) -> Dict[str, Dict[str, str]]:
        return {t: dict(v) for t, v in self._notes.items()}

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "BedRelievingNotes":
        return cls({str(t): {str(k): str(v) for k, v in (d or {}).items()} for t, d in (raw or {}).items()})
