"""
exporter.py — Export Layer for the daily allocation

Outputs:
  - CSV: flat (kind, staff, team, fte, slots) for programmatic review
  - Excel (.xlsx): Therapists, PCA (team × slot grid), Beds, Calculations
  - Allocation report (.txt): per-team target vs assigned, warnings,
    tie-break decisions and the Step 3 tracker summary

Usage:
  from rehab_scheduler.exporter import export_allocations_csv, export_to_excel, export_allocation_report
"""

import csv
import logging
from pathlib import Path
from typing import Any, Dict, List

from rehab_scheduler.capacity import (
    assigned_pca_fte_by_team,
    format_fte,
    round_to_nearest_quarter_with_midpoint,
)
from rehab_scheduler.schedule_config import SLOT_TIMES, SLOTS, STEP_DEFINITIONS, STEP_ORDER, TEAMS

logger = logging.getLogger(__name__)

CSV_FIELDS = ["kind", "staff_id", "staff", "team", "fte", "slots"]


def _name(state: Any, staff_id: str) -> str:
    member = state.staff_by_id.get(staff_id)
    return member.name if member else staff_id


def allocation_rows(state: Any) -> List[Dict[str, Any]]:
    """Flat rows: one per therapist row, one per (PCA, team) share."""
    rows: List[Dict[str, Any]] = []
    for alloc in sorted(state.therapist_allocations, key=lambda r: (TEAMS.index(r.team), _name(state, r.staff_id))):
        rows.append({
            "kind": "therapist",
            "staff_id": alloc.staff_id,
            "staff": _name(state, alloc.staff_id),
            "team": alloc.team,
            "fte": alloc.fte_therapist,
            "slots": alloc.slot_half or "",
        })
    for alloc in sorted(state.pca_allocations, key=lambda r: _name(state, r.staff_id)):
        for team in alloc.teams():
            rows.append({
                "kind": "pca",
                "staff_id": alloc.staff_id,
                "staff": _name(state, alloc.staff_id),
                "team": team,
                "fte": alloc.fte_for_team(team),
                "slots": ";".join(str(s) for s in alloc.slots_for(team)),
            })
    for bed in state.bed_allocations:
        rows.append({
            "kind": "bed",
            "staff_id": "",
            "staff": f"{bed.from_team} → {bed.to_team}",
            "team": bed.to_team,
            "fte": bed.num_beds,
            "slots": bed.ward,
        })
    return rows


# ---------------------------------------------------------------------------
# CSV Export
# ---------------------------------------------------------------------------

def export_allocations_csv(state: Any, output_path: Path) -> None:
    """
    Export the day's allocations to a flat CSV.

    Args:
        state:        WorkflowController (or anything with the same slices)
        output_path:  .csv file path
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=CSV_FIELDS)
        writer.writeheader()
        for row in allocation_rows(state):
            writer.writerow(row)

    logger.info(f"CSV exported → {output_path}")


# ---------------------------------------------------------------------------
# Excel Export
# ---------------------------------------------------------------------------

def pca_grid(state: Any) -> Dict[str, Dict[str, str]]:
    """{team: {"Slot n (time)": "PCA A; PCA B"}}"""
    columns = {s: f"Slot {s} ({SLOT_TIMES[s]})" for s in SLOTS}
    grid: Dict[str, Dict[str, List[str]]] = {t: {columns[s]: [] for s in SLOTS} for t in TEAMS}
    for alloc in sorted(state.pca_allocations, key=lambda r: _name(state, r.staff_id)):
        for slot in SLOTS:
            team = alloc.get_slot(slot)
            if team is None:
                continue
            label = _name(state, alloc.staff_id)
            if slot == alloc.invalid_slot:
                label += " (x)"
            grid.setdefault(team, {columns[s]: [] for s in SLOTS})[columns[slot]].append(label)
    return {t: {c: "; ".join(names) for c, names in cells.items()} for t, cells in grid.items()}


def export_to_excel(state: Any, output_path: Path) -> None:
    """
    Export the day to a formatted workbook.

    Sheets:
      Therapists    team, staff, FTE, half day, leave, special programs
      PCA           rows = team, columns = slot, cells = PCA names
      Beds          from team, to team, ward, beds
      Calculations  one row per team (TeamCalculations fields)
    """
    import pandas as pd

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    therapists = pd.DataFrame([
        {
            "Team": r.team,
            "Staff": _name(state, r.staff_id),
            "FTE": r.fte_therapist,
            "Half day": r.slot_half or "",
            "Leave": r.leave_type or "",
            "Programs": ", ".join(r.special_program_ids),
        }
        for r in sorted(state.therapist_allocations, key=lambda r: (TEAMS.index(r.team), _name(state, r.staff_id)))
    ], columns=["Team", "Staff", "FTE", "Half day", "Leave", "Programs"])

    grid = pd.DataFrame.from_dict(pca_grid(state), orient="index")
    grid.index.name = "Team"

    beds = pd.DataFrame(
        [{"From": b.from_team, "To": b.to_team, "Ward": b.ward, "Beds": b.num_beds} for b in state.bed_allocations],
        columns=["From", "To", "Ward", "Beds"],
    )

    calculations = pd.DataFrame([
        dict(c.to_dict(), designated_wards=", ".join(c.designated_wards))
        for c in state.calculations.values()
    ])
    if not calculations.empty:
        calculations["pending_fte"] = calculations["team"].map(state.pending_fte)
        calculations = calculations.set_index("team")

    with pd.ExcelWriter(output_path, engine="openpyxl") as writer:
        therapists.to_excel(writer, sheet_name="Therapists", index=False)
        _format_excel_grid(writer, "Therapists")
        grid.to_excel(writer, sheet_name="PCA")
        _format_excel_grid(writer, "PCA")
        beds.to_excel(writer, sheet_name="Beds", index=False)
        _format_excel_grid(writer, "Beds")
        calculations.to_excel(writer, sheet_name="Calculations")
        _format_excel_grid(writer, "Calculations")

    logger.info(f"Excel exported → {output_path}")


def _format_excel_grid(writer: Any, sheet_name: str) -> None:
    """Apply basic formatting: column widths, header bold, alternate shading."""
    from openpyxl.styles import Alignment, Font, PatternFill

    ws = writer.sheets[sheet_name]
    header_fill = PatternFill("solid", fgColor="1F4E79")
    header_font = Font(bold=True, color="FFFFFF")

    for cell in ws[1]:
        cell.fill = header_fill
        cell.font = header_font
        cell.alignment = Alignment(horizontal="center")

    for col in ws.columns:
        max_len = max((len(str(c.value)) for c in col if c.value is not None), default=8)
        ws.column_dimensions[col[0].column_letter].width = min(max_len + 2, 40)

    alt = PatternFill("solid", fgColor="EBF3FB")
    for i, row in enumerate(ws.iter_rows(min_row=2), start=2):
        if i % 2 == 0:
            for cell in row:
                cell.fill = alt


# ---------------------------------------------------------------------------
# Allocation Report
# ---------------------------------------------------------------------------

def export_allocation_report(state: Any, output_path: Path) -> str:
    """
    Export the day's allocation report (text format).

    Includes:
      - Workflow step status
      - Per-team PT, PCA target (rounded average), assigned, pending, beds
      - Warnings from every step
      - Remembered tie-break decisions
      - Step 3 tracker summary, when Step 3 ran in this session
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    assigned = assigned_pca_fte_by_team(state.pca_allocations)
    sep = "=" * 70
    rule = "─" * 70

    lines = [
        sep,
        f"  ALLOCATION REPORT  {state.schedule_date} ({state.weekday})",
        sep,
        "",
    ]
    for step in STEP_ORDER:
        marker = "▶" if step == state.current_step else " "
        lines.append(f" {marker} {STEP_DEFINITIONS[step]['number']}. {STEP_DEFINITIONS[step]['title']:<18} {state.status(step)}")

    lines += [
        "",
        rule,
        "  Per-Team PCA Target vs Assigned",
        rule,
        f"  {'Team':<6} {'PT':>6} {'Avg PCA':>8} {'Target':>7} {'Assigned':>9} {'Pending':>8} {'Beds ±':>7}",
    ]
    total_target = total_assigned = 0.0
    for team in TEAMS:
        calc = state.calculations.get(team)
        if calc is None:
            continue
        target = round_to_nearest_quarter_with_midpoint(calc.average_pca_per_team)
        total_target += target
        total_assigned += assigned.get(team, 0.0)
        flag = "  ← short" if state.pending_fte.get(team, 0.0) > 0 else ""
        lines.append(
            f"  {team:<6} {calc.pt_per_team:>6.2f} {calc.average_pca_per_team:>8.2f} {target:>7.2f} "
            f"{assigned.get(team, 0.0):>9.2f} {state.pending_fte.get(team, 0.0):>8.2f} "
            f"{calc.beds_for_relieving:>+7.1f}{flag}"
        )
    lines.append(f"  {'Total':<6} {'':>6} {'':>8} {total_target:>7.2f} {total_assigned:>9.2f}")

    lines += ["", rule, "  Warnings", rule]
    warnings = state.warnings
    if warnings:
        lines.extend(f"  {w}" for w in warnings)
    else:
        lines.append("  (none)")

    lines += ["", rule, "  Tie-break Decisions", rule]
    if state.tie_break_decisions:
        for key, team in sorted(state.tie_break_decisions.items()):
            lines.append(f"  {key:<40} → {team}")
    else:
        lines.append("  (none)")

    tracker = getattr(state, "last_tracker", None)
    if tracker is not None:
        lines += [
            "",
            rule,
            "  Floating PCA Tracker",
            rule,
            f"  {'Team':<6} {'Slots':>5} {'FTE':>6} {'AM':>3} {'PM':>3}  {'Passes':<28} Flags",
        ]
        for team, info in tracker.summary().items():
            if not info["slots_assigned"]:
                continue
            passes = ", ".join(f"{k}={v}" for k, v in sorted(info["by_pass"].items()))
            flags = []
            if info["preferred_slot_filled"]:
                flags.append("pref-slot")
            if info["preferred_pca_used"]:
                flags.append("pref-pca")
            if info["am_pm_balanced"]:
                flags.append("balanced")
            if info["user_tie_breaks"]:
                flags.append(f"tie-break×{info['user_tie_breaks']}")
            lines.append(
                f"  {team:<6} {info['slots_assigned']:>5} {format_fte(info['fte_assigned']):>6} "
                f"{info['am_slots']:>3} {info['pm_slots']:>3}  {passes:<28} {' '.join(flags)}"
            )

    notes = state.bed_relieving_notes.items()
    if notes:
        lines += ["", rule, "  Bed Relieving Notes", rule]
        for team, direction, text in notes:
            lines.append(f"  {team:<6} {direction:<9} {text}")

    lines.append("")
    lines.append(sep)

    report_text = "\n".join(lines)
    with open(output_path, "w") as f:
        f.write(report_text)

    logger.info(f"Allocation report exported → {output_path}")
    return report_text
