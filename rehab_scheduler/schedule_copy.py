"""
schedule_copy.py — Copy one day's schedule onto another date

MODES
─────
  full    clone every row (therapist, PCA, bed, calculations), the bed-count
          overrides, bed relieving notes and the source
          workflow state
  hybrid  clone therapist rows plus the PCA rows Step 2 produces
          (non-floating, special-program, substitution); the target opens at
          floating-pca so Step 3 runs fresh for the new day

Buffer staff (status buffer in the source baseline, else live) can be left
out; they are then dropped from the cloned rows and marked inactive in the
target baseline.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from rehab_scheduler.errors import ScheduleNotFound
from rehab_scheduler.gateway import ScheduleGateway
from rehab_scheduler.schedule_config import (
    STEP_BEDS,
    STEP_COMPLETED,
    STEP_FLOATING,
    STEP_LEAVE,
    STEP_ORDER,
    STEP_PENDING,
    STEP_THERAPIST,
)
from rehab_scheduler.snapshot import (
    HEALTH_OK,
    BaselineSnapshot,
    build_envelope,
    validate_snapshot,
)

logger = logging.getLogger(__name__)

COPY_MODES = ("full", "hybrid")


@dataclass
class CopyReport:
    mode: str
    from_date: str
    to_date: str
    copied_up_to_step: str
    rebase_warning: Optional[str] = None
    buffer_staff_ids: List[str] = field(default_factory=list)
    row_counts: Dict[str, int] = field(default_factory=dict)


def infer_copied_up_to_step(therapist_rows, pca_rows, bed_rows) -> str:
    if bed_rows:
        return STEP_BEDS
    if pca_rows:
        return STEP_FLOATING
    if therapist_rows:
        return STEP_THERAPIST
    return STEP_LEAVE


def build_live_baseline(gateway: ScheduleGateway) -> BaselineSnapshot:
    """Baseline from live config; secondary sections degrade to empty."""
    data: Dict[str, Any] = {"staff": gateway.fetch_staff()}
    for section in ("special_programs", "spt_allocations", "wards", "pca_preferences"):
        data[section] = gateway.fetch_with_fallback(section).data
    settings = gateway.fetch_with_fallback("team_settings").data
    data["team_display_names"] = {
        row["team"]: row.get("display_name") or row["team"] for row in settings if row.get("team")
    }
    return BaselineSnapshot.from_dict(data)


def referenced_staff_ids(therapist_rows, pca_rows, overrides: Dict[str, Any]) -> Set[str]:
    ids = {r["staff_id"] for r in list(therapist_rows) + list(pca_rows) if r.get("staff_id")}
    ids.update((overrides or {}).keys())
    return ids


def resolve_buffer_staff_ids(
    baseline: BaselineSnapshot,
    referenced: Set[str],
    live_staff: Optional[List[Dict[str, Any]]] = None,
) -> Set[str]:
    """Snapshot status wins; live status is used for staff the snapshot lacks."""
    snapshot_status = {s.id: s.status for s in baseline.staff}
    live_status = {str(r.get("id")): r.get("status") for r in (live_staff or [])}
    buffer = set()
    for staff_id in referenced:
        status = snapshot_status.get(staff_id, live_status.get(staff_id))
        if status == "buffer":
            buffer.add(staff_id)
    return buffer


def _hybrid_workflow_state(overrides: Dict[str, Any], therapist_rows) -> Dict[str, Any]:
    status = {s: STEP_PENDING for s in STEP_ORDER}
    initialized = [STEP_LEAVE]
    if overrides:
        status[STEP_LEAVE] = STEP_COMPLETED
    if therapist_rows:
        status[STEP_THERAPIST] = STEP_COMPLETED
        initialized.append(STEP_THERAPIST)
    initialized.append(STEP_FLOATING)
    return {"current_step": STEP_FLOATING, "step_status": status, "initialized_steps": initialized}


def copy_schedule(
    gateway: ScheduleGateway,
    from_date: str,
    to_date: str,
    mode: str = "hybrid",
    include_buffer_staff: bool = True,
) -> CopyReport:
    if mode not in COPY_MODES:
        raise ValueError(f"Unknown copy mode {mode!r}")

    source = gateway.fetch_schedule(from_date)
    if source is None:
        raise ScheduleNotFound(f"Source schedule {from_date} not found")
    target = gateway.fetch_schedule(to_date) or gateway.create_schedule(to_date)
    source_id, target_id = source["id"], target["id"]
    logger.info(f"Copying {from_date} → {to_date} ({mode}, buffer staff {'in' if include_buffer_staff else 'out'})")

    # Baseline: reuse the source's, otherwise build from live and persist back
    rebase_warning = None
    stored = source.get("baseline_snapshot")
    live_baseline = build_live_baseline(gateway)
    if stored:
        validation = validate_snapshot(stored, live_baseline)
        baseline = validation.snapshot
        if validation.health != HEALTH_OK:
            rebase_warning = f"Source baseline {validation.health}: {'; '.join(validation.issues)}"
            logger.warning(rebase_warning)
    else:
        baseline = live_baseline
        gateway.save_baseline_snapshot(source_id, build_envelope(baseline.to_dict(), "save"))

    overrides = source.get("staff_overrides") or {}
    therapist_rows = gateway.fetch_allocations(source_id, "therapist")
    pca_rows = gateway.fetch_allocations(source_id, "pca")
    bed_rows = gateway.fetch_allocations(source_id, "bed")
    calc_rows = gateway.fetch_allocations(source_id, "calculations")
    copied_up_to = infer_copied_up_to_step(therapist_rows, pca_rows, bed_rows)

    live_rows = [s.to_dict() for s in live_baseline.staff]
    buffer_ids = resolve_buffer_staff_ids(
        baseline, referenced_staff_ids(therapist_rows, pca_rows, overrides), live_rows,
    )

    target_baseline = copy.deepcopy(baseline)
    if not include_buffer_staff:
        for member in target_baseline.staff:
            if member.id in buffer_ids:
                member.status = "inactive"

    def keep(row: Dict[str, Any]) -> bool:
        return include_buffer_staff or row.get("staff_id") not in buffer_ids

    therapist_out = [r for r in therapist_rows if keep(r)]
    if mode == "full":
        pca_out = [r for r in pca_rows if keep(r)]
        bed_out, calc_out = bed_rows, calc_rows
        workflow_state = source.get("workflow_state")
    else:
        non_floating = {s.id for s in baseline.staff if s.is_pca and not s.floating}
        substitutes = {
            sid for sid, raw in overrides.items()
            if raw and (raw.get("substitutionForBySlot") or raw.get("substitutionFor"))
        }
        pca_out = [
            r for r in pca_rows
            if keep(r) and (
                r.get("staff_id") in non_floating
                or r.get("special_program_ids")
                or r.get("staff_id") in substitutes
            )
        ]
        bed_out, calc_out = [], []
        workflow_state = _hybrid_workflow_state(overrides, therapist_rows)

    for kind, rows in (("therapist", therapist_out), ("pca", pca_out), ("bed", bed_out), ("calculations", calc_out)):
        gateway.save_allocations(target_id, kind, rows)

    metadata = {
        "is_tentative": True,
        "baseline_snapshot": build_envelope(target_baseline.to_dict(), "copy"),
        "staff_overrides": overrides,
        "workflow_state": workflow_state,
        "tie_break_decisions": source.get("tie_break_decisions") or {},
    }
    if mode == "full":
        metadata["bed_count_overrides"] = source.get("bed_count_overrides") or {}
        metadata["bed_relieving_notes"] = source.get("bed_relieving_notes") or {}
    gateway.save_schedule_metadata(target_id, metadata)

    report = CopyReport(
        mode=mode,
        from_date=from_date,
        to_date=to_date,
        copied_up_to_step=copied_up_to,
        rebase_warning=rebase_warning,
        buffer_staff_ids=sorted(buffer_ids),
        row_counts={
            "therapist": len(therapist_out), "pca": len(pca_out),
            "bed": len(bed_out), "calculations": len(calc_out),
        },
    )
    logger.info(f"Copy done: up to {copied_up_to}, rows {report.row_counts}")
    return report
