"""
tests/test_schedule_copy.py — Copying a day's schedule onto another date.

Uses an in-memory gateway holding one source schedule:
  - therapist rows for T1 and buffer therapist B1
  - PCA rows for non-floating P1, program PCA F1, substitute F2, plain floating F3
  - one bed row and one calculations row
"""

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from rehab_scheduler.errors import GatewayError, ScheduleNotFound
from rehab_scheduler.gateway import GatewayResult
from rehab_scheduler.schedule_config import STEP_BEDS, STEP_COMPLETED, STEP_FLOATING, STEP_THERAPIST
from rehab_scheduler.schedule_copy import copy_schedule, infer_copied_up_to_step
from rehab_scheduler.snapshot import BaselineSnapshot, build_envelope

LIVE_STAFF = [
    {"id": "T1", "name": "Tara", "rank": "RPT", "team": "FO"},
    {"id": "B1", "name": "Ben", "rank": "RPT", "team": "FO", "status": "buffer", "buffer_fte": 0.5},
    {"id": "P1", "name": "Pat", "rank": "PCA", "team": "FO"},
    {"id": "F1", "name": "Fay", "rank": "PCA", "floating": True},
    {"id": "F2", "name": "Finn", "rank": "PCA", "floating": True},
    {"id": "F3", "name": "Flo", "rank": "PCA", "floating": True},
]


class FakeGateway:

    def __init__(self, source=None, failing_sections=()):
        self.schedules = {}
        self.rows = {}
        self.saved_rows = {}
        self.metadata = {}
        self.saved_baselines = {}
        self.failing_sections = set(failing_sections)
        if source is not None:
            self.schedules["2026-03-02"] = source
            self.rows["s1"] = {
                "therapist": [
                    {"staff_id": "T1", "team": "FO", "fte_therapist": 1.0},
                    {"staff_id": "B1", "team": "FO", "fte_therapist": 0.5},
                ],
                "pca": [
                    {"staff_id": "P1", "team": "FO"},
                    {"staff_id": "F1", "team": "SMM", "special_program_ids": ["SP1"]},
                    {"staff_id": "F2", "team": "FO"},
                    {"staff_id": "F3", "team": "MC"},
                ],
                "bed": [{"from_team": "SMM", "to_team": "FO", "ward": "R1", "num_beds": 2}],
                "calculations": [{"team": "FO"}],
            }

    def fetch_schedule(self, date):
        return self.schedules.get(date)

    def create_schedule(self, date):
        row = {"id": "s2", "date": date}
        self.schedules[date] = row
        return row

    def fetch_staff(self):
        return [dict(r) for r in LIVE_STAFF]

    def fetch_with_fallback(self, section):
        if section in self.failing_sections:
            return GatewayResult([], error="down", used_fallback=True)
        if section == "wards":
            return GatewayResult([{"name": "R1", "total_beds": 20, "team_assignments": {"FO": 20}}])
        if section == "team_settings":
            return GatewayResult([{"team": "FO", "display_name": "Fracture"}])
        return GatewayResult([])

    def fetch_allocations(self, schedule_id, kind):
        return [dict(r) for r in self.rows.get(schedule_id, {}).get(kind, [])]

    def save_allocations(self, schedule_id, kind, rows):
        self.saved_rows[(schedule_id, kind)] = list(rows)

    def save_schedule_metadata(self, schedule_id, fields):
        self.metadata.setdefault(schedule_id, {}).update(fields)

    def save_baseline_snapshot(self, schedule_id, envelope):
        self.saved_baselines[schedule_id] = envelope


def _source(**extra):
    row = {
        "id": "s1",
        "date": "2026-03-02",
        "staff_overrides": {"F2": {"substitutionForBySlot": {"1": {"nonFloatingPCAId": "P9"}}}},
        "workflow_state": {"current_step": "review"},
        "tie_break_decisions": {"SMM|SFM@0.50": "SMM"},
    }
    row.update(extra)
    return row


def _staff_ids(gw, kind):
    return [r["staff_id"] for r in gw.saved_rows[("s2", kind)]]


class TestCopySchedule:

    def test_missing_source(self):
        with pytest.raises(ScheduleNotFound) as exc:
            copy_schedule(FakeGateway(), "2026-03-02", "2026-03-03")
        assert exc.value.reason == "not_found"
        assert isinstance(exc.value, GatewayError)

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            copy_schedule(FakeGateway(_source()), "2026-03-02", "2026-03-03", mode="partial")

    def test_hybrid_keeps_step2_rows(self):
        gw = FakeGateway(_source())
        report = copy_schedule(gw, "2026-03-02", "2026-03-03")

        assert _staff_ids(gw, "pca") == ["P1", "F1", "F2"]
        assert _staff_ids(gw, "therapist") == ["T1", "B1"]
        assert gw.saved_rows[("s2", "bed")] == []
        assert report.copied_up_to_step == STEP_BEDS
        assert report.row_counts == {"therapist": 2, "pca": 3, "bed": 0, "calculations": 0}

        state = gw.metadata["s2"]["workflow_state"]
        assert state["current_step"] == STEP_FLOATING
        assert state["step_status"][STEP_THERAPIST] == STEP_COMPLETED
        assert gw.metadata["s2"]["tie_break_decisions"] == {"SMM|SFM@0.50": "SMM"}

    def test_full_clones_everything(self):
        gw = FakeGateway(_source())
        report = copy_schedule(gw, "2026-03-02", "2026-03-03", mode="full")
        assert _staff_ids(gw, "pca") == ["P1", "F1", "F2", "F3"]
        assert len(gw.saved_rows[("s2", "bed")]) == 1
        assert gw.metadata["s2"]["workflow_state"] == {"current_step": "review"}
        assert report.row_counts["calculations"] == 1

    def test_bed_overrides_follow_full_copy_only(self):
        notes = {"FO": {"takes": "R1"}}
        gw = FakeGateway(_source(bed_relieving_notes=notes))
        copy_schedule(gw, "2026-03-02", "2026-03-03", mode="full")
        assert gw.metadata["s2"]["bed_relieving_notes"] == notes
        assert gw.metadata["s2"]["bed_count_overrides"] == {}

        gw = FakeGateway(_source(bed_relieving_notes=notes))
        copy_schedule(gw, "2026-03-02", "2026-03-03")
        assert "bed_relieving_notes" not in gw.metadata["s2"]

    def test_buffer_staff_left_out(self):
        gw = FakeGateway(_source())
        report = copy_schedule(gw, "2026-03-02", "2026-03-03", include_buffer_staff=False)
        assert report.buffer_staff_ids == ["B1"]
        assert _staff_ids(gw, "therapist") == ["T1"]
        target = BaselineSnapshot.from_dict(gw.metadata["s2"]["baseline_snapshot"]["data"])
        assert {s.id: s.status for s in target.staff}["B1"] == "inactive"

    def test_missing_source_baseline_saved_back(self):
        gw = FakeGateway(_source())
        report = copy_schedule(gw, "2026-03-02", "2026-03-03")
        saved = gw.saved_baselines["s1"]
        assert saved["source"] == "save"
        assert [w["name"] for w in saved["data"]["wards"]] == ["R1"]
        assert report.rebase_warning is None
        assert gw.metadata["s2"]["baseline_snapshot"]["source"] == "copy"

    def test_damaged_source_baseline_warns(self):
        data = BaselineSnapshot.from_dict({"staff": LIVE_STAFF}).to_dict()
        del data["wards"]
        gw = FakeGateway(_source(baseline_snapshot=build_envelope(data)))
        report = copy_schedule(gw, "2026-03-02", "2026-03-03")
        assert report.rebase_warning.startswith("Source baseline repaired")
        assert "s1" not in gw.saved_baselines

    def test_secondary_section_outage_tolerated(self):
        gw = FakeGateway(_source(), failing_sections={"wards", "team_settings"})
        copy_schedule(gw, "2026-03-02", "2026-03-03")
        assert gw.saved_baselines["s1"]["data"]["wards"] == []

    def test_existing_target_reused(self):
        gw = FakeGateway(_source())
        gw.schedules["2026-03-03"] = {"id": "s2", "date": "2026-03-03"}
        copy_schedule(gw, "2026-03-02", "2026-03-03")
        assert gw.metadata["s2"]["is_tentative"] is True


@pytest.mark.parametrize("therapist, pca, bed, expected", [
    ([], [], [], "leave-fte"),
    ([{}], [], [], "therapist-pca"),
    ([{}], [{}], [], "floating-pca"),
    ([], [], [{}], "bed-relieving"),
])
def test_infer_copied_up_to_step(therapist, pca, bed, expected):
    assert infer_copied_up_to_step(therapist, pca, bed) == expected
