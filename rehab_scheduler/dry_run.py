"""
dry_run.py — Run one schedule date end to end from CSV config (no store writes)

Full orchestration:
  1. Load staff, wards, programs, SPT allocations, preferences, leave sheet
  2. Step 1: apply the day's leave sheet
  3. Step 2: therapists + non-floating PCAs (+ substitution)
  4. Step 3: floating PCAs (tie-breaks automatic, or prompted with --interactive)
  5. Step 4: bed relieving
  6. Check invariants, one repair attempt on drift
  7. Export CSV, Excel, allocation report, violations report, workflow state

Usage:
  python -m rehab_scheduler.dry_run --date 2026-03-02
  python -m rehab_scheduler.dry_run --date 2026-03-02 --interactive --team-order DRO FO
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from rehab_scheduler.capacity import assigned_pca_fte_by_team, round_to_nearest_quarter_with_midpoint
from rehab_scheduler.config import (
    DEFAULT_CONFIG_DIR,
    LEAVE_FILE,
    PROJECT_ROOT,
    load_baseline,
    load_leave_sheet,
    save_workflow_state,
    workflow_state_path,
)
from rehab_scheduler.constraints import AllocationChecker
from rehab_scheduler.errors import AllocationError
from rehab_scheduler.exporter import export_allocation_report, export_allocations_csv, export_to_excel
from rehab_scheduler.repair import run_repair
from rehab_scheduler.resolvers import ResolverSet, interactive_substitution, interactive_tie_break
from rehab_scheduler.schedule_config import STEP_BEDS, STEP_REVIEW, TEAMS
from rehab_scheduler.workflow import WorkflowController, weekday_key

logger = logging.getLogger(__name__)

OUTPUTS_DIR = PROJECT_ROOT / "outputs"


# ---------------------------------------------------------------------------
# Visual analysis (matplotlib)
# ---------------------------------------------------------------------------

def _generate_visual_analysis(controller: WorkflowController, output_dir: Path, prefix: str) -> None:
    """Bar chart of PCA target vs assigned per team."""
    try:
        import matplotlib
        matplotlib.use("Agg")
        import matplotlib.pyplot as plt
    except ImportError:
        logger.warning("matplotlib not installed, skipping visual analysis. Install with: pip install matplotlib")
        return

    assigned = assigned_pca_fte_by_team(controller.pca_allocations)
    targets = [
        round_to_nearest_quarter_with_midpoint(controller.calculations[t].average_pca_per_team)
        for t in TEAMS
    ]
    held = [assigned.get(t, 0.0) for t in TEAMS]
    x = range(len(TEAMS))

    fig, ax = plt.subplots(figsize=(11, 5))
    ax.bar([i - 0.2 for i in x], targets, width=0.4, color="#1a3d7c", alpha=0.85, label="Target")
    ax.bar([i + 0.2 for i in x], held, width=0.4, color="#4a90d9", alpha=0.85, label="Assigned")
    for i, (t, a) in enumerate(zip(targets, held)):
        if a + 1e-6 < t:
            ax.text(i + 0.2, a + 0.05, f"-{t - a:.2f}", ha="center", va="bottom", fontsize=8, color="#b22222")
    ax.set_xticks(list(x))
    ax.set_xticklabels(TEAMS)
    ax.set_ylabel("PCA FTE")
    ax.set_title(f"PCA Target vs Assigned — {controller.schedule_date}", fontsize=13, fontweight="bold")
    ax.legend()
    ax.grid(axis="y", alpha=0.3)
    fig.tight_layout()
    fig.savefig(output_dir / f"{prefix}_pca_balance.png", dpi=150)
    plt.close(fig)
    print(f"  ✓ Visual  → {prefix}_pca_balance.png")


# ---------------------------------------------------------------------------
# Main orchestrator
# ---------------------------------------------------------------------------

def apply_leave_sheet(controller: WorkflowController, entries: List[Dict[str, Any]]) -> List[str]:
    """Apply leave rows; rows that do not fit are reported and skipped."""
    problems = []
    for entry in entries:
        try:
            controller.set_leave(
                entry["staff_id"],
                entry.get("leave_type"),
                fte_remaining=entry.get("fte_remaining"),
                available_slots=entry.get("available_slots"),
                invalid_slots=entry.get("invalid_slots"),
            )
        except AllocationError as e:
            problems.append(f"{entry['staff_id']}: {e}")
            logger.warning(f"Leave row skipped for {entry['staff_id']}: {e}")
    controller.complete_leave_step()
    return problems


def run_dry_run(
    schedule_date: str,
    config_dir: Path = DEFAULT_CONFIG_DIR,
    output_dir: Path = OUTPUTS_DIR,
    interactive: bool = False,
    team_order: Optional[List[str]] = None,
    buffer_ratio: float = 0.0,
    visual: bool = False,
) -> Dict:
    """
    Allocate one date from CSV config in dry-run mode (nothing is saved to the store).

    Args:
        schedule_date: YYYY-MM-DD
        config_dir:    Directory holding the config CSVs
        output_dir:    Directory for output files
        interactive:   Prompt for substitution choices and tie-breaks
        team_order:    Step 3 team processing order
        buffer_ratio:  Share of buffer PCA slots reserved in Step 3 pass 1
        visual:        Write a matplotlib chart as well

    Returns:
        Dict with controller, violations, repair summary, output paths
    """
    config_dir = Path(config_dir)
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    prefix = f"dry_run_{schedule_date}"
    sep = "=" * 70

    print(f"\n{sep}")
    print("  DRY RUN MODE — Nothing saved to the schedule store")
    print(f"  Date: {schedule_date} ({weekday_key(schedule_date)})")
    print(f"{sep}\n")

    # ── 1. Load configuration ──────────────────────────────────────────────
    print("Step 1/7: Loading configuration...")
    baseline = load_baseline(config_dir)
    leave_sheet = load_leave_sheet(config_dir / LEAVE_FILE)
    print(
        f"  ✓ {len(baseline.staff)} staff | {len(baseline.wards)} wards | "
        f"{len(baseline.special_programs)} programs | {len(leave_sheet.get(schedule_date, []))} leave rows today"
    )

    controller = WorkflowController(
        schedule_date,
        baseline.staff,
        baseline.wards,
        special_programs=baseline.special_programs,
        spt_allocations=baseline.spt_allocations,
        pca_preferences=baseline.pca_preferences,
    )
    resolvers = ResolverSet()
    if interactive:
        resolvers = ResolverSet(substitution=interactive_substitution, tie_break=interactive_tie_break)

    # ── 2. Leave & FTE ─────────────────────────────────────────────────────
    print("\nStep 2/7: Applying leave sheet...")
    problems = apply_leave_sheet(controller, leave_sheet.get(schedule_date, []))
    for p in problems:
        print(f"  ⚠ WARNING: {p}")
    print(f"  ✓ {len(controller.overrides)} staff with overrides")

    # ── 3-4. Engine steps ──────────────────────────────────────────────────
    print("\nStep 3/7: Therapists & non-floating PCAs...")
    outcome = asyncio.run(controller.run_step2(resolvers))
    if not outcome.ok:
        print(f"  ✗ Step 2 {outcome.status}: {outcome.message}")
        sys.exit(1)
    print(f"  ✓ {len(controller.therapist_allocations)} therapist rows | {len(controller.pca_allocations)} PCA rows")

    print("\nStep 4/7: Floating PCAs...")
    outcome = asyncio.run(controller.run_step3(resolvers, team_order=team_order, buffer_ratio=buffer_ratio))
    if not outcome.ok:
        print(f"  ✗ Step 3 {outcome.status}: {outcome.message}")
        sys.exit(1)
    assigned = controller.last_tracker.total_assigned() if controller.last_tracker else 0
    print(f"  ✓ {assigned} floating slot(s) assigned | pending {sum(controller.pending_fte.values()):.2f} FTE")

    # ── 5. Beds ────────────────────────────────────────────────────────────
    print("\nStep 5/7: Bed relieving...")
    controller.go_to_step(STEP_BEDS)
    controller.run_step4()
    bed_result = controller.last_bed_result
    print(f"  ✓ {len(controller.bed_allocations)} transfer(s) | score {bed_result.score if bed_result else 0}")
    controller.go_to_step(STEP_REVIEW)

    # ── 6. Checks ──────────────────────────────────────────────────────────
    print("\nStep 6/7: Checking invariants...")
    repair_summary = run_repair(controller, schedule_date, set(), output_dir=output_dir)
    checker = AllocationChecker(controller.staff)
    hard_violations, soft_violations = checker.check_all(controller)
    h_count = len(hard_violations)
    s_count = len(soft_violations)
    status = "✓" if h_count == 0 else "✗"
    print(f"  {status} Hard violations: {h_count}")
    print(f"    Soft violations: {s_count}")

    # ── 7. Export ──────────────────────────────────────────────────────────
    print("\nStep 7/7: Exporting outputs...")
    csv_path        = output_dir / f"{prefix}_allocations.csv"
    xlsx_path       = output_dir / f"{prefix}_allocations.xlsx"
    report_path     = output_dir / f"{prefix}_report.txt"
    violations_path = output_dir / f"{prefix}_violations.txt"
    state_path      = workflow_state_path(schedule_date, output_dir)

    export_allocations_csv(controller, csv_path)
    export_to_excel(controller, xlsx_path)
    export_allocation_report(controller, report_path)
    save_workflow_state(controller.to_state_dict(), state_path)

    with open(violations_path, "w") as f:
        f.write("=== Allocation Violations ===\n\n")
        f.write(f"HARD ({h_count}):\n")
        for v in hard_violations:
            f.write(f"  {v}\n")
        f.write(f"\nSOFT ({s_count}):\n")
        for v in soft_violations:
            f.write(f"  {v}\n")

    print(f"  ✓ CSV:       {csv_path.name}")
    print(f"  ✓ Excel:     {xlsx_path.name}")
    print(f"  ✓ Report:    {report_path.name}")
    print(f"  ✓ Violations:{violations_path.name}")
    print(f"  ✓ State:     {state_path.name}")

    # ── Summary ────────────────────────────────────────────────────────────
    print(f"\n{sep}")
    print("  SUMMARY")
    print(f"{sep}")
    print(f"  {'Team':<6} {'PT':>6} {'Target':>7} {'Pending':>8}")
    for team in TEAMS:
        calc = controller.calculations[team]
        print(
            f"  {team:<6} {calc.pt_per_team:>6.2f} "
            f"{round_to_nearest_quarter_with_midpoint(calc.average_pca_per_team):>7.2f} "
            f"{controller.pending_fte[team]:>8.2f}"
        )
    print(f"\n  Warnings:          {len(controller.warnings)}")
    print(f"  Hard violations:   {h_count}  {status}")
    print(f"  Soft violations:   {s_count}")

    if visual:
        _generate_visual_analysis(controller, output_dir, prefix)

    print(f"\n{sep}\n")

    return {
        "controller":      controller,
        "hard_violations": hard_violations,
        "soft_violations": soft_violations,
        "repair":          repair_summary,
        "outputs": {
            "csv":        csv_path,
            "excel":      xlsx_path,
            "report":     report_path,
            "violations": violations_path,
            "state":      state_path,
        },
    }


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(
        description="Dry-run allocation for one date (no schedule store writes)"
    )
    parser.add_argument("--date",         required=True, help="Schedule date YYYY-MM-DD")
    parser.add_argument("--config-dir",   default=None,  help="Config CSV directory (default: config/)")
    parser.add_argument("--output-dir",   default=None,  help="Output directory (default: outputs/)")
    parser.add_argument("--interactive",  action="store_true", help="Prompt for substitutions and tie-breaks")
    parser.add_argument("--team-order",   nargs="+", default=None, metavar="TEAM",
                        help="Step 3 team processing order (ties follow it)")
    parser.add_argument("--buffer-ratio", type=float, default=0.0,
                        help="Share of buffer PCA slots reserved before the fill pass (0-1)")
    parser.add_argument("--visual",       action="store_true", help="Write a matplotlib target/assigned chart")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    try:
        schedule_date = datetime.strptime(args.date, "%Y-%m-%d").date()
    except ValueError as e:
        print(f"Invalid date format: {e}")
        sys.exit(1)

    if schedule_date.weekday() >= 5:
        print("Error: schedules are only built for weekdays")
        sys.exit(1)

    unknown = [t for t in args.team_order or [] if t not in TEAMS]
    if unknown:
        print(f"Error: unknown team(s) {unknown}; expected {', '.join(TEAMS)}")
        sys.exit(1)

    if not 0.0 <= args.buffer_ratio <= 1.0:
        print("Error: --buffer-ratio must be between 0 and 1")
        sys.exit(1)

    run_dry_run(
        schedule_date.isoformat(),
        config_dir=Path(args.config_dir) if args.config_dir else DEFAULT_CONFIG_DIR,
        output_dir=Path(args.output_dir) if args.output_dir else OUTPUTS_DIR,
        interactive=args.interactive,
        team_order=args.team_order,
        buffer_ratio=args.buffer_ratio,
        visual=args.visual,
    )


if __name__ == "__main__":
    main()
