"""
config.py — CSV configuration loaders for the rehab allocation engine

Loads the staff roster, wards, PCA preferences, special programs, SPT
allocations and the daily leave sheet from config/, plus the saved per-date
workflow state (JSON).

List cells are tolerant: "1,2", "1;2", "1|2" and '"1" "2"' all parse to the
same list. Mapping cells use "key:value" pairs in a list cell, e.g.
team_assignments "FO:12;SMM:6" or program slots "mon:2,wed:2".
"""

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from rehab_scheduler.models import PCAPreference, SpecialProgram, SPTAllocation, Staff, Ward
from rehab_scheduler.snapshot import BaselineSnapshot

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_DIR = PROJECT_ROOT / "config"
DEFAULT_STATE_DIR = PROJECT_ROOT / "state"

STAFF_FILE = "staff_roster.csv"
WARDS_FILE = "wards.csv"
PREFERENCES_FILE = "pca_preferences.csv"
PROGRAMS_FILE = "special_programs.csv"
SPT_FILE = "spt_allocations.csv"
LEAVE_FILE = "leave_sheet.csv"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _parse_yes_no(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("yes", "true", "1", "y")


def _parse_list(raw: Any) -> List[str]:
    """
    Robust parser for list cells.
    Handles:
      - comma-separated:  "1,2"
      - semicolon-sep:    "1;2"
      - pipe-sep:         "1|2"
      - space-sep quoted: '"1" "2"'
    Returns stripped, non-empty items.
    """
    if raw is None or isinstance(raw, float):
        return []
    s = str(raw).strip()
    if not s:
        return []

    s = s.strip('"').strip("'")
    s = re.sub(r'"\s+"', ",", s)
    s = re.sub(r'"\s*', "", s)
    s = s.replace(";", ",").replace("|", ",")

    parts = [p.strip().strip('"').strip("'") for p in s.split(",")]
    return [p for p in parts if p]


def _parse_pairs(raw: Any) -> List[List[str]]:
    pairs = []
    for item in _parse_list(raw):
        if ":" not in item:
            raise ValueError(f"Expected key:value, got {item!r}")
        key, value = item.split(":", 1)
        pairs.append([key.strip(), value.strip()])
    return pairs


def _cell(row: Any, column: str) -> Optional[str]:
    value = row.get(column, "")
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _read_csv(path: Path, required: bool = True):
    import pandas as pd

    if not path.exists():
        if required:
            raise FileNotFoundError(f"Config file not found: {path}")
        logger.warning(f"{path.name} not found, continuing without it")
        return None
    return pd.read_csv(path, dtype=str, keep_default_na=False)


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------

def load_staff_roster(path: Optional[Path] = None) -> List[Staff]:
    """
    Load staff from staff_roster.csv.

    Expected columns:
      id, name, rank, team, floating, floor_pca, status,
      buffer_fte (optional), special_program (optional)
    """
    path = path or DEFAULT_CONFIG_DIR / STAFF_FILE
    df = _read_csv(path)

    staff: List[Staff] = []
    for _, row in df.iterrows():
        buffer_fte = _cell(row, "buffer_fte")
        staff.append(Staff.from_dict({
            "id": _cell(row, "id"),
            "name": _cell(row, "name"),
            "rank": _cell(row, "rank"),
            "team": _cell(row, "team"),
            "floating": _parse_yes_no(_cell(row, "floating") or "no"),
            "floor_pca": _parse_list(_cell(row, "floor_pca")),
            "status": _cell(row, "status") or "active",
            "buffer_fte": float(buffer_fte) if buffer_fte else None,
            "special_program": _parse_list(_cell(row, "special_program")),
        }))

    ids = [s.id for s in staff]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise ValueError(f"Duplicate staff ids in {path.name}: {duplicates}")

    logger.info(f"Loaded {len(staff)} staff from {path}")
    return staff


def load_wards(path: Optional[Path] = None) -> List[Ward]:
    """
    Expected columns: name, total_beds, team_assignments ("FO:12;SMM:6"),
    team_assignment_portions (optional, "SMM:1/2").
    """
    path = path or DEFAULT_CONFIG_DIR / WARDS_FILE
    df = _read_csv(path)

    wards: List[Ward] = []
    for _, row in df.iterrows():
        ward = Ward.from_dict({
            "name": _cell(row, "name"),
            "total_beds": int(_cell(row, "total_beds") or 0),
            "team_assignments": {k: int(v) for k, v in _parse_pairs(_cell(row, "team_assignments"))},
            "team_assignment_portions": dict(_parse_pairs(_cell(row, "team_assignment_portions"))),
        })
        assigned = sum(ward.team_assignments.values())
        if assigned > ward.total_beds:
            logger.warning(f"Ward {ward.name}: {assigned} beds assigned but only {ward.total_beds} exist")
        wards.append(ward)

    logger.info(f"Loaded {len(wards)} wards from {path}")
    return wards


def load_pca_preferences(path: Optional[Path] = None) -> List[PCAPreference]:
    path = path or DEFAULT_CONFIG_DIR / PREFERENCES_FILE
    df = _read_csv(path, required=False)
    if df is None:
        return []

    prefs = []
    for _, row in df.iterrows():
        gym = _cell(row, "gym_schedule")
        prefs.append(PCAPreference.from_dict({
            "team": _cell(row, "team"),
            "preferred_pca_ids": _parse_list(_cell(row, "preferred_pca_ids")),
            "preferred_slots": _parse_list(_cell(row, "preferred_slots")),
            "avoid_gym_schedule": _parse_yes_no(_cell(row, "avoid_gym_schedule") or "no"),
            "gym_schedule": int(gym) if gym else None,
            "floor_pca_selection": _cell(row, "floor_pca_selection"),
        }))
    logger.info(f"Loaded PCA preferences for {len(prefs)} teams from {path}")
    return prefs


def load_special_programs(path: Optional[Path] = None) -> List[SpecialProgram]:
    """
    Expected columns: id, name, weekdays, staff_ids, team,
    pca_preference_order, slots ("mon:1,mon:2,wed:2"),
    therapist_fte_subtraction ("T01:0.4").
    """
    path = path or DEFAULT_CONFIG_DIR / PROGRAMS_FILE
    df = _read_csv(path, required=False)
    if df is None:
        return []

    programs = []
    for _, row in df.iterrows():
        slots: Dict[str, List[int]] = {}
        for weekday, slot in _parse_pairs(_cell(row, "slots")):
            slots.setdefault(weekday, []).append(int(slot))
        programs.append(SpecialProgram.from_dict({
            "id": _cell(row, "id"),
            "name": _cell(row, "name"),
            "weekdays": _parse_list(_cell(row, "weekdays")),
            "staff_ids": _parse_list(_cell(row, "staff_ids")),
            "slots": slots,
            "team": _cell(row, "team"),
            "pca_preference_order": _parse_list(_cell(row, "pca_preference_order")),
            "therapist_fte_subtraction": {
                k: float(v) for k, v in _parse_pairs(_cell(row, "therapist_fte_subtraction"))
            },
        }))
    logger.info(f"Loaded {len(programs)} special programs from {path}")
    return programs


def load_spt_allocations(path: Optional[Path] = None) -> List[SPTAllocation]:
    path = path or DEFAULT_CONFIG_DIR / SPT_FILE
    df = _read_csv(path, required=False)
    if df is None:
        return []

    rows = []
    for _, row in df.iterrows():
        rows.append(SPTAllocation.from_dict({
            "id": _cell(row, "id"),
            "staff_id": _cell(row, "staff_id"),
            "weekdays": _parse_list(_cell(row, "weekdays")),
            "fte_addon": float(_cell(row, "fte_addon") or 0.0),
            "teams": _parse_list(_cell(row, "teams")),
            "active": _parse_yes_no(_cell(row, "active") or "yes"),
        }))
    logger.info(f"Loaded {len(rows)} SPT allocations from {path}")
    return rows


def load_leave_sheet(path: Optional[Path] = None) -> Dict[str, List[Dict[str, Any]]]:
    """
    Load the leave sheet.

    Expected columns: date, staff_id, leave_type, fte_remaining (optional),
    available_slots (optional), invalid_slots (optional).

    Returns: {date_str: [{staff_id, leave_type, fte_remaining,
                          available_slots, invalid_slots}]}
    """
    path = path or DEFAULT_CONFIG_DIR / LEAVE_FILE
    df = _read_csv(path, required=False)
    if df is None:
        return {}

    sheet: Dict[str, List[Dict[str, Any]]] = {}
    for _, row in df.iterrows():
        date_str = _cell(row, "date")
        staff_id = _cell(row, "staff_id")
        if not date_str or not staff_id:
            continue
        remaining = _cell(row, "fte_remaining")
        available = _parse_list(_cell(row, "available_slots"))
        invalid = _parse_list(_cell(row, "invalid_slots"))
        sheet.setdefault(date_str, []).append({
            "staff_id": staff_id,
            "leave_type": _cell(row, "leave_type"),
            "fte_remaining": float(remaining) if remaining else None,
            "available_slots": [int(s) for s in available] if available else None,
            "invalid_slots": [int(s) for s in invalid] if invalid else None,
        })

    logger.info(f"Loaded leave sheet: {len(sheet)} dates from {path}")
    return sheet


def load_baseline(config_dir: Optional[Path] = None) -> BaselineSnapshot:
    """Every config section from one directory, as a BaselineSnapshot."""
    config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
    return BaselineSnapshot(
        staff=load_staff_roster(config_dir / STAFF_FILE),
        special_programs=load_special_programs(config_dir / PROGRAMS_FILE),
        spt_allocations=load_spt_allocations(config_dir / SPT_FILE),
        wards=load_wards(config_dir / WARDS_FILE),
        pca_preferences=load_pca_preferences(config_dir / PREFERENCES_FILE),
    )


# ---------------------------------------------------------------------------
# Workflow state
# ---------------------------------------------------------------------------

def workflow_state_path(schedule_date: str, state_dir: Optional[Path] = None) -> Path:
    return Path(state_dir or DEFAULT_STATE_DIR) / f"workflow_state_{schedule_date}.json"


def load_workflow_state(path: Path) -> Dict[str, Any]:
    """Load a saved controller state dict. Returns empty dict if file missing."""
    if not path.exists():
        logger.warning(f"Workflow state not found: {path}. Starting fresh.")
        return {}
    with open(path) as f:
        data = json.load(f)
    data.pop("last_updated", None)
    return data


def save_workflow_state(state: Dict[str, Any], path: Path) -> None:
    """Persist a controller state dict (WorkflowController.to_state_dict()) with metadata."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = dict(state)
    data["last_updated"] = datetime.now(timezone.utc).isoformat()
    with open(path, "w") as f:
        json.dump(data, f, indent=2, default=str)
    logger.info(f"Workflow state saved to {path}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    baseline = load_baseline()
    print(f"Loaded {len(baseline.staff)} staff")
    for s in baseline.staff:
        flag = "floating" if s.floating else (s.team or "-")
        print(f"  {s.id:<5} {s.name:<20} {s.rank:<5} {flag:<9} {s.status}")
    print(f"\nWards: {len(baseline.wards)} | programs: {len(baseline.special_programs)} "
          f"| preferences: {len(baseline.pca_preferences)}")
