"""
repair.py — One-shot self-healing pass for a schedule date.

When a loaded or freshly run schedule shows drift (stale calculations,
conservation mismatch), recompute the derived slices from source data and
re-check with AllocationChecker.check_all. Each date gets exactly one
attempt per session: a date still mismatched afterwards is reported, never
retried, so repair can't loop.

Also holds migrate_legacy_leave_cost(), a one-time data migration that is
never run automatically.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from rehab_scheduler.constraints import AllocationChecker
from rehab_scheduler.overrides import OverrideStore
from rehab_scheduler.schedule_config import FTE_EPSILON

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
REPAIR_LOG_FILENAME = "allocation_repair_log.json"
REASON_ALREADY_ATTEMPTED = "already_attempted"
REASON_NO_DRIFT = "no_drift"
REASON_STILL_MISMATCHED = "still_mismatched"

REPAIRABLE_TYPES = {"STALE_CALCULATION", "CONSERVATION_MISMATCH"}


def _types(violations) -> List[str]:
    return sorted({v.constraint_type for v in violations})


def append_repair_log(entry: Dict[str, Any], output_dir: Optional[Path] = None) -> Path:
    output_dir = Path(output_dir) if output_dir else Path(".")
    log_path = output_dir / REPAIR_LOG_FILENAME
    try:
        existing: List[Dict[str, Any]] = []
        if log_path.exists():
            with open(log_path) as f:
                data = json.load(f)
                existing = data if isinstance(data, list) else [data]
        existing.append(entry)
        output_dir.mkdir(parents=True, exist_ok=True)
        with open(log_path, "w") as f:
            json.dump(existing, f, indent=2, default=str)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not write repair log: {e}")
    return log_path


def run_repair(
    controller: Any,
    schedule_date: str,
    attempted_dates: Set[str],
    output_dir: Optional[Path] = None,
) -> Dict[str, Any]:
    """
    Detect drift, recompute, re-check. One attempt per date.

    Returns: { "date", "attempted", "reason", "hard_before", "soft_before",
               "hard_after", "soft_after", "repaired", "still_violated" }.
    """
    summary: Dict[str, Any] = {"date": schedule_date, "attempted": False}
    if schedule_date in attempted_dates:
        logger.info(f"Repair already attempted for {schedule_date}, skipping")
        summary["reason"] = REASON_ALREADY_ATTEMPTED
        return summary
    attempted_dates.add(schedule_date)

    checker = AllocationChecker(controller.staff)
    hard_before, soft_before = checker.check_all(controller)
    drift = [v for v in soft_before if v.constraint_type in REPAIRABLE_TYPES]
    summary.update({
        "hard_before": _types(hard_before),
        "soft_before": _types(soft_before),
    })

    if not drift:
        summary.update({
            "reason": REASON_NO_DRIFT,
            "hard_after": summary["hard_before"],
            "soft_after": summary["soft_before"],
            "repaired": [],
            "still_violated": summary["soft_before"],
        })
        return summary

    logger.info(f"Repair initiated for {schedule_date}: {', '.join(_types(drift))}")
    summary["attempted"] = True
    controller.recalculate()
    controller.run_step4()

    hard_after, soft_after = checker.check_all(controller)
    repaired = sorted(set(_types(drift)) - set(_types(soft_after)))
    still = sorted(set(_types(drift)) & set(_types(soft_after)))
    summary.update({
        "reason": REASON_STILL_MISMATCHED if still else "repaired",
        "hard_after": _types(hard_after),
        "soft_after": _types(soft_after),
        "repaired": repaired,
        "still_violated": still,
    })

    # Report
    sep = "━" * 38
    print(f"\n{sep}")
    print(f"  REPAIR SUMMARY  {schedule_date}")
    print(sep)
    print(f"  Drift before repair : {', '.join(_types(drift))}")
    print(f"  Repaired            : {', '.join(repaired) or '-'}")
    print(f"  Still mismatched    : {', '.join(still) or '-'}")
    print(sep + "\n")

    append_repair_log(dict(
        summary,
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    ), output_dir)
    if still:
        logger.warning(f"{schedule_date}: still mismatched after repair ({', '.join(still)}), not retrying")
    return summary


# ---------------------------------------------------------------------------
# One-time migration
# ---------------------------------------------------------------------------

def migrate_legacy_leave_cost(overrides: OverrideStore) -> List[Dict[str, Any]]:
    """
    Zero out fte_subtraction values an older release auto-filled as
    1 − fte_remaining on records without a leave type.

    This is a heuristic: a hand-entered subtraction that happens to match
    the formula is zeroed too, so run it once per data set after review.
    Returns one {staff_id, fte_remaining, from, to} entry per change.
    """
    changes: List[Dict[str, Any]] = []
    for staff_id, record in sorted(overrides.items()):
        if record.leave_type is not None:
            continue
        if record.fte_remaining is None or not record.fte_subtraction:
            continue
        if abs(record.fte_subtraction - (1.0 - record.fte_remaining)) > FTE_EPSILON:
            continue
        changes.append({
            "staff_id": staff_id,
            "fte_remaining": record.fte_remaining,
            "from": record.fte_subtraction,
            "to": 0.0,
        })
    for change in changes:
        overrides.apply_override(change["staff_id"], {"fte_subtraction": 0.0})
    if changes:
        logger.info(f"Legacy leave cost migration zeroed {len(changes)} record(s)")
    return changes
