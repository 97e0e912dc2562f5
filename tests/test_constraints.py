"""
tests/test_constraints.py — AllocationChecker hard and soft checks.
"""

import asyncio
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from rehab_scheduler.constraints import AllocationChecker, ConstraintSeverity
from rehab_scheduler.models import PCAAllocation, Staff, Ward
from rehab_scheduler.overrides import OverrideStore, StaffOverride, SubstitutionTarget
from rehab_scheduler.workflow import WorkflowController


def _staff():
    return [
        Staff("T1", "Tara", "RPT", "FO"),
        Staff("P1", "Pat", "PCA", "FO"),
        Staff("F1", "Fay", "PCA", floating=True),
    ]


def _controller():
    ctrl = WorkflowController(
        "2026-03-02", _staff(),
        [Ward("W1", 40, {"FO": 20, "SMM": 20}), Ward("W2", 30, {"SFM": 30})],
    )
    ctrl.set_leave("F1", "others", fte_remaining=0.5)
    ctrl.complete_leave_step()
    asyncio.run(ctrl.run_step2())
    asyncio.run(ctrl.run_step3())
    return ctrl


def _types(violations):
    return [v.constraint_type for v in violations]


# ---------------------------------------------------------------------------
# HARD
# ---------------------------------------------------------------------------

class TestHardConstraints:

    def test_double_booked_slot(self):
        rows = [
            PCAAllocation("F1", "FO", 1.0, 0.75, slot1="FO"),
            PCAAllocation("F1", "SMM", 1.0, 0.75, slot1="SMM"),
        ]
        violations = AllocationChecker(_staff()).check_slot_double_booking(rows)
        assert len(violations) == 1
        v = violations[0]
        assert (v.constraint_type, v.staff, v.slot) == ("SLOT_DOUBLE_BOOKED", "F1", 1)
        assert v.details["teams"] == ["FO", "SMM"]
        assert v.severity is ConstraintSeverity.HARD

    def test_substitution_overlap(self):
        target = SubstitutionTarget("P1", "Pat", "FO")
        store = OverrideStore({
            "F1": StaffOverride(substitution_for={2: target}),
            "F2": StaffOverride(substitution_for={2: target, 3: target}),
        })
        violations = AllocationChecker(_staff()).check_substitution_overlap(store)
        assert _types(violations) == ["SUBSTITUTION_OVERLAP"]
        assert violations[0].team == "FO"
        assert violations[0].slot == 2
        assert violations[0].details["floating_pca_ids"] == ["F1", "F2"]

    def test_override_capacity(self):
        staff = _staff() + [Staff("B1", "Ben", "RPT", "SMM", status="buffer", buffer_fte=0.5)]
        store = OverrideStore({
            "T1": StaffOverride(fte_remaining=0.75, fte_subtraction=0.5),
            "P1": StaffOverride(fte_remaining=0.5, fte_subtraction=0.5),
            "B1": StaffOverride(fte_remaining=0.5, fte_subtraction=0.25),
        })
        violations = AllocationChecker(staff).check_override_capacity(store)
        assert [v.staff for v in violations] == ["B1", "T1"]

    def test_floating_rank(self):
        staff = _staff()
        staff[0].floating = True
        violations = AllocationChecker(staff).check_floating_rank()
        assert [v.staff for v in violations] == ["T1"]


# ---------------------------------------------------------------------------
# SOFT
# ---------------------------------------------------------------------------

class TestSoftConstraints:

    def test_clean_run(self):
        ctrl = _controller()
        hard, soft = AllocationChecker(ctrl.staff).check_all(ctrl)
        assert hard == []
        assert soft == []

    def test_before_step3_no_conservation_check(self):
        ctrl = WorkflowController("2026-03-02", _staff(), [Ward("W1", 20, {"FO": 20})])
        checker = AllocationChecker(ctrl.staff)
        assert checker.check_conservation(ctrl) == []
        assert checker.check_unmet_pending(ctrl) == []

    def test_conservation_mismatch(self):
        ctrl = _controller()
        row = next(r for r in ctrl.pca_allocations if r.staff_id == "F1")
        row.set_slot(2, None)
        violations = AllocationChecker(ctrl.staff).check_conservation(ctrl)
        assert _types(violations) == ["CONSERVATION_MISMATCH"]
        assert violations[0].details["net"] == -0.25

    def test_unmet_pending(self):
        ctrl = _controller()
        ctrl.pending_fte["SMM"] = 0.25
        violations = AllocationChecker(ctrl.staff).check_unmet_pending(ctrl)
        assert [(v.constraint_type, v.team) for v in violations] == [("UNMET_PENDING", "SMM")]

    def test_stale_calculation(self):
        ctrl = _controller()
        ctrl.calculations["FO"].pt_per_team += 1.0
        violations = AllocationChecker(ctrl.staff).check_stale_calculations(ctrl)
        assert [(v.constraint_type, v.team) for v in violations] == [("STALE_CALCULATION", "FO")]
        assert list(violations[0].details["drift"]) == ["pt_per_team"]

    def test_violation_str(self):
        ctrl = _controller()
        ctrl.calculations["FO"].pt_per_team += 1.0
        text = str(AllocationChecker(ctrl.staff).check_stale_calculations(ctrl)[0])
        assert text.startswith("[SOFT] STALE_CALCULATION | team=FO")
