"""
schedule_config.py — Teams, Slots, Leave Types & Workflow Step Configuration

Fixed tables shared by every engine step.

TEAMS
─────
  FO, SMM, SFM, CPPC, MC, GMC, NSM, DRO  (enumeration order is also the
  final deterministic tie-break everywhere a team order is needed)

SLOT MODEL
──────────
  4 half-day slots per working day, 0.25 FTE each:
    slot 1  0900-1030   AM
    slot 2  1030-1200   AM
    slot 3  1330-1500   PM
    slot 4  1500-1630   PM
  Adjacent pairs (continuity): 1 <-> 2, 3 <-> 4

LEAVE TYPES
───────────
  Default remaining FTE after leave. "others" has no default; the caller
  must supply fte_remaining explicitly.

WORKFLOW
────────
  leave-fte → therapist-pca → floating-pca → bed-relieving → review
  Steps 1-3 must be started (non-pending) before the next one opens.
"""

from typing import Any, Dict, List, Optional

# ---------------------------------------------------------------------------
# Teams / weekdays / ranks
# ---------------------------------------------------------------------------

TEAMS: List[str] = ["FO", "SMM", "SFM", "CPPC", "MC", "GMC", "NSM", "DRO"]

WEEKDAYS: List[str] = ["mon", "tue", "wed", "thu", "fri"]

WEEKDAY_NAMES: Dict[str, str] = {
    "mon": "Mon", "tue": "Tue", "wed": "Wed", "thu": "Thu", "fri": "Fri",
}

THERAPIST_RANKS = ("SPT", "APPT", "RPT")
PCA_RANK = "PCA"
STAFF_RANKS = THERAPIST_RANKS + (PCA_RANK,)

STAFF_STATUSES = ("active", "inactive", "buffer")

FLOOR_SELECTIONS = ("upper", "lower")

# ---------------------------------------------------------------------------
# Slots
# ---------------------------------------------------------------------------

SLOTS: List[int] = [1, 2, 3, 4]
SLOT_FTE = 0.25
AM_SLOTS: List[int] = [1, 2]
PM_SLOTS: List[int] = [3, 4]

SLOT_TIMES: Dict[int, str] = {
    1: "0900-1030",
    2: "1030-1200",
    3: "1330-1500",
    4: "1500-1630",
}

ADJACENT_SLOTS: Dict[int, int] = {1: 2, 2: 1, 3: 4, 4: 3}

# ---------------------------------------------------------------------------
# Leave
# ---------------------------------------------------------------------------

LEAVE_TYPE_FTE_MAP: Dict[str, Optional[float]] = {
    "VL":                0.0,
    "half day VL":       0.5,
    "TIL":               0.0,
    "SDO":               0.0,
    "sick leave":        0.0,
    "study leave":       0.0,
    "medical follow-up": 0.0,
    "others":            None,
}

# ---------------------------------------------------------------------------
# Special programs
# ---------------------------------------------------------------------------

DRM_PROGRAM_NAME = "DRM"
DRM_TEAM = "DRO"
DRM_DEFAULT_ADD_ON = 0.4

# Slot fallbacks when a program has no slot configuration for the weekday
SPECIAL_PROGRAM_SLOT_FALLBACKS: Dict[str, List[int]] = {
    "Robotic": [1, 2, 3, 4],
    "CRP":     [2],
}

# Robotic covers both surgical teams: mornings to SMM, afternoons to SFM
ROBOTIC_SLOT_TEAMS: Dict[int, str] = {1: "SMM", 2: "SMM", 3: "SFM", 4: "SFM"}

# ---------------------------------------------------------------------------
# Workflow steps
# ---------------------------------------------------------------------------

STEP_LEAVE = "leave-fte"
STEP_THERAPIST = "therapist-pca"
STEP_FLOATING = "floating-pca"
STEP_BEDS = "bed-relieving"
STEP_REVIEW = "review"

STEP_ORDER: List[str] = [STEP_LEAVE, STEP_THERAPIST, STEP_FLOATING, STEP_BEDS, STEP_REVIEW]

STEP_DEFINITIONS: Dict[str, Dict[str, Any]] = {
    STEP_LEAVE: {
        "number": 1,
        "title": "Leave & FTE",
        "description": "Record leave, remaining FTE and slot availability",
        "required_for_next": True,
    },
    STEP_THERAPIST: {
        "number": 2,
        "title": "Therapist & PCA",
        "description": "Allocate therapists and non-floating PCAs",
        "required_for_next": True,
    },
    STEP_FLOATING: {
        "number": 3,
        "title": "Floating PCA",
        "description": "Distribute floating PCA slots across teams",
        "required_for_next": True,
    },
    STEP_BEDS: {
        "number": 4,
        "title": "Bed Relieving",
        "description": "Transfer beds between teams",
        "required_for_next": False,
    },
    STEP_REVIEW: {
        "number": 5,
        "title": "Review",
        "description": "Final review of the day",
        "required_for_next": False,
    },
}

STEP_PENDING = "pending"
STEP_MODIFIED = "modified"
STEP_COMPLETED = "completed"
STEP_STATUSES = (STEP_PENDING, STEP_MODIFIED, STEP_COMPLETED)

# ---------------------------------------------------------------------------
# Tolerances / limits
# ---------------------------------------------------------------------------

CONSERVATION_TOLERANCE = 0.01
FTE_EPSILON = 1e-6
MAX_UNDO_DEPTH = 50


def step_index(step: str) -> int:
    """Position of a step in STEP_ORDER (ValueError for unknown steps)."""
    return STEP_ORDER.index(step)
