"""
tests/test_repair.py — One-shot repair pass and the legacy leave cost migration.
"""

import asyncio
import json
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from rehab_scheduler.models import Staff, Ward
from rehab_scheduler.overrides import OverrideStore
from rehab_scheduler.repair import (
    REASON_ALREADY_ATTEMPTED,
    REASON_NO_DRIFT,
    REASON_STILL_MISMATCHED,
    REPAIR_LOG_FILENAME,
    migrate_legacy_leave_cost,
    run_repair,
)
from rehab_scheduler.workflow import WorkflowController

DATE = "2026-03-02"


def _controller():
    staff = [
        Staff("T1", "Tara", "RPT", "FO"),
        Staff("P1", "Pat", "PCA", "FO"),
        Staff("F1", "Fay", "PCA", floating=True),
    ]
    ctrl = WorkflowController(DATE, staff, [Ward("W1", 40, {"FO": 20, "SMM": 20})])
    ctrl.set_leave("F1", "others", fte_remaining=0.5)
    ctrl.complete_leave_step()
    asyncio.run(ctrl.run_step2())
    asyncio.run(ctrl.run_step3())
    return ctrl


class TestRunRepair:

    def test_no_drift(self, tmp_path):
        summary = run_repair(_controller(), DATE, set(), output_dir=tmp_path)
        assert summary["reason"] == REASON_NO_DRIFT
        assert summary["attempted"] is False
        assert not (tmp_path / REPAIR_LOG_FILENAME).exists()

    def test_one_attempt_per_date(self, tmp_path):
        attempted = {DATE}
        summary = run_repair(_controller(), DATE, attempted, output_dir=tmp_path)
        assert summary == {"date": DATE, "attempted": False, "reason": REASON_ALREADY_ATTEMPTED}

    def test_stale_calculations_repaired(self, tmp_path):
        ctrl = _controller()
        ctrl.calculations["FO"].average_pca_per_team = 9.0
        attempted = set()

        summary = run_repair(ctrl, DATE, attempted, output_dir=tmp_path)

        assert summary["attempted"] is True
        assert summary["reason"] == "repaired"
        assert summary["repaired"] == ["CONSERVATION_MISMATCH", "STALE_CALCULATION"]
        assert summary["still_violated"] == []
        assert ctrl.calculations["FO"].average_pca_per_team == 1.5
        assert attempted == {DATE}

        log = json.loads((tmp_path / REPAIR_LOG_FILENAME).read_text())
        assert len(log) == 1
        assert log[0]["date"] == DATE
        assert log[0]["timestamp"].endswith("Z")

        again = run_repair(ctrl, DATE, attempted, output_dir=tmp_path)
        assert again["reason"] == REASON_ALREADY_ATTEMPTED

    def test_still_mismatched(self, tmp_path):
        ctrl = _controller()
        row = next(r for r in ctrl.pca_allocations if r.staff_id == "F1")
        row.set_slot(2, None)

        summary = run_repair(ctrl, DATE, set(), output_dir=tmp_path)

        assert summary["reason"] == REASON_STILL_MISMATCHED
        assert summary["still_violated"] == ["CONSERVATION_MISMATCH"]
        assert "UNMET_PENDING" in summary["soft_after"]

    def test_log_appends(self, tmp_path):
        for date in ("2026-03-02", "2026-03-03"):
            ctrl = _controller()
            ctrl.calculations["FO"].pt_per_team = 0.0
            run_repair(ctrl, date, set(), output_dir=tmp_path)
        log = json.loads((tmp_path / REPAIR_LOG_FILENAME).read_text())
        assert [e["date"] for e in log] == ["2026-03-02", "2026-03-03"]


class TestLegacyLeaveCost:

    def test_auto_filled_subtraction_zeroed(self):
        store = OverrideStore()
        store.apply_override("T1", {"fte_remaining": 0.75, "fte_subtraction": 0.25})
        store.apply_override("T2", {"fte_remaining": 0.5, "fte_subtraction": 0.5, "leave_type": "VL"})
        store.apply_override("T3", {"fte_remaining": 0.5, "fte_subtraction": 0.25})

        changes = migrate_legacy_leave_cost(store)

        assert changes == [{"staff_id": "T1", "fte_remaining": 0.75, "from": 0.25, "to": 0.0}]
        assert store.get("T1").fte_subtraction == 0.0
        assert store.get("T2").fte_subtraction == 0.5
        assert store.get("T3").fte_subtraction == 0.25

    def test_nothing_to_migrate(self):
        assert migrate_legacy_leave_cost(OverrideStore()) == []
