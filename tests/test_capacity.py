"""
tests/test_capacity.py — Bed and FTE capacity math.

Tests: quarter rounding (midpoints, sign symmetry, float noise), effective
FTE after leave, designated beds with overrides, beds for relieving,
reserved program FTE, DRM add-on, average / pending PCA per team.
"""

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from rehab_scheduler.capacity import (
    compute_average_pca_per_team,
    compute_beds_designated_by_team,
    compute_beds_for_relieving,
    compute_pending_fte,
    compute_team_calculations,
    drm_add_on_fte,
    effective_fte,
    format_fte,
    reserved_special_program_pca_fte,
    round_down_to_quarter,
    round_to_nearest_integer,
    round_to_nearest_quarter_with_midpoint,
)
from rehab_scheduler.models import BedCountOverride, SpecialProgram, Staff, Ward
from rehab_scheduler.overrides import StaffOverride
from rehab_scheduler.schedule_config import TEAMS


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="module")
def wards():
    return [
        Ward("R1", 40, {"FO": 20, "SMM": 20}),
        Ward("R2", 30, {"SFM": 30}),
    ]


@pytest.fixture(scope="module")
def programs():
    return [
        SpecialProgram("SP1", "Robotic", weekdays=["mon", "wed"], team="SMM"),
        SpecialProgram("SP2", "CRP", weekdays=["tue"], slots={"tue": [2]}, team="CPPC"),
        SpecialProgram("SP3", "DRM", weekdays=["mon", "tue"], team="DRO"),
    ]


# ---------------------------------------------------------------------------
# Rounding
# ---------------------------------------------------------------------------

class TestQuarterRounding:

    @pytest.mark.parametrize("value,expected", [
        (0.0, 0.0),
        (0.3, 0.25),
        (0.4, 0.5),
        (1.13, 1.25),
        (0.125, 0.0),
        (0.375, 0.5),
        (0.625, 0.5),
        (0.875, 1.0),
        (1.125, 1.0),
    ])
    def test_nearest_quarter(self, value, expected):
        assert round_to_nearest_quarter_with_midpoint(value) == expected

    @pytest.mark.parametrize("value", [0.125, 0.375, 0.3, 1.6, 2.875])
    def test_sign_symmetric(self, value):
        assert round_to_nearest_quarter_with_midpoint(-value) == -round_to_nearest_quarter_with_midpoint(value)

    def test_float_noise_still_midpoint(self):
        assert round_to_nearest_quarter_with_midpoint(0.1 + 0.025) == 0.0
        assert round_to_nearest_quarter_with_midpoint(0.3 + 0.075) == 0.5

    def test_negative_zero_normalised(self):
        result = round_to_nearest_quarter_with_midpoint(-0.1)
        assert result == 0.0
        assert str(result) == "0.0"

    def test_deterministic(self):
        values = [0.05 * i for i in range(60)]
        first = [round_to_nearest_quarter_with_midpoint(v) for v in values]
        second = [round_to_nearest_quarter_with_midpoint(v) for v in values]
        assert first == second
        assert all((r * 4) == int(r * 4) for r in first)

    def test_round_down(self):
        assert round_down_to_quarter(0.74) == 0.5
        assert round_down_to_quarter(0.75) == 0.75
        assert round_down_to_quarter(1.0) == 1.0

    def test_round_integer_half_up(self):
        assert round_to_nearest_integer(2.5) == 3
        assert round_to_nearest_integer(2.49) == 2
        assert round_to_nearest_integer(-2.5) == -2
        assert round_to_nearest_integer(-2.6) == -3

    def test_format_fte(self):
        assert format_fte(0.5) == "0.5"
        assert format_fte(1.0) == "1"
        assert format_fte(0.25) == "0.25"
        assert format_fte(0.0) == "0"


# ---------------------------------------------------------------------------
# Effective FTE
# ---------------------------------------------------------------------------

class TestEffectiveFTE:

    def test_no_override(self):
        assert effective_fte(Staff("P1", "P One", "PCA", "FO")) == 1.0

    def test_inactive_is_zero(self):
        member = Staff("P1", "P One", "PCA", "FO", status="inactive")
        assert effective_fte(member, StaffOverride(fte_remaining=0.5)) == 0.0

    def test_explicit_remaining_wins(self):
        member = Staff("P1", "P One", "PCA", "FO")
        assert effective_fte(member, StaffOverride(leave_type="VL", fte_remaining=0.25)) == 0.25

    def test_leave_type_default(self):
        member = Staff("T1", "T One", "RPT", "FO")
        assert effective_fte(member, StaffOverride(leave_type="VL")) == 0.0
        assert effective_fte(member, StaffOverride(leave_type="half day VL")) == 0.5

    def test_others_without_remaining_keeps_capacity(self):
        member = Staff("T1", "T One", "RPT", "FO")
        assert effective_fte(member, StaffOverride(leave_type="others")) == 1.0

    def test_buffer_capacity(self):
        member = Staff("B1", "Buffer", "PCA", floating=True, status="buffer", buffer_fte=0.5)
        assert effective_fte(member) == 0.5
        assert effective_fte(member, StaffOverride(leave_type="half day VL")) == 0.5


# ---------------------------------------------------------------------------
# Beds
# ---------------------------------------------------------------------------

class TestBeds:

    def test_designated_from_wards(self, wards):
        designated, total = compute_beds_designated_by_team(["FO", "SMM", "SFM", "MC"], wards)
        assert designated == {"FO": 20, "SMM": 20, "SFM": 30, "MC": 0}
        assert total == 70

    def test_override_replaces_and_caps(self, wards):
        overrides = {"FO": BedCountOverride(ward_bed_counts={"R1": 50}, shs_bed_count=5)}
        designated, total = compute_beds_designated_by_team(["FO", "SMM", "SFM"], wards, overrides)
        assert designated["FO"] == 35          # capped at 40, minus 5 SHS
        assert total == 35 + 20 + 30

    def test_deduction_never_negative(self, wards):
        overrides = {"SFM": BedCountOverride(shs_bed_count=20, student_placement_bed_count=20)}
        designated, _ = compute_beds_designated_by_team(["SFM"], wards, overrides)
        assert designated["SFM"] == 0

    def test_even_split_relieves_nothing(self):
        """FO: designated 40, PT 4 of 32, 320 beds → expected 40, relieving 0."""
        designated = {t: 40 for t in TEAMS}
        pt = {t: 4.0 for t in TEAMS}
        result = compute_beds_for_relieving(TEAMS, designated, 320, pt)
        assert result.total_pt == 32
        assert result.overall_beds_per_pt * pt["FO"] == 40
        assert result.beds_for_relieving["FO"] == 0

    def test_relieving_signs_and_balance(self):
        result = compute_beds_for_relieving(
            ["FO", "SMM", "SFM"], {"FO": 20, "SMM": 20, "SFM": 30}, 70, {"FO": 2, "SMM": 1, "SFM": 2},
        )
        assert result.beds_for_relieving == pytest.approx({"FO": 8, "SMM": -6, "SFM": -2})
        assert sum(result.beds_for_relieving.values()) == pytest.approx(0)

    def test_zero_pt(self):
        result = compute_beds_for_relieving(["FO"], {"FO": 10}, 10, {"FO": 0})
        assert result.beds_for_relieving == {"FO": 0.0}


# ---------------------------------------------------------------------------
# Special programs
# ---------------------------------------------------------------------------

class TestProgramReservation:

    def test_reserved_uses_fallback_slots(self, programs):
        # Robotic has no slot config → all 4 slots; DRM never reserves
        assert reserved_special_program_pca_fte(programs, "mon") == 1.0

    def test_reserved_configured_slots(self, programs):
        assert reserved_special_program_pca_fte(programs, "tue") == 0.25

    def test_reserved_override(self, programs):
        overrides = {"SP1": {"required_slots": [1, 2]}}
        assert reserved_special_program_pca_fte(programs, "mon", overrides) == 0.5

    def test_drm_add_on(self, programs):
        assert drm_add_on_fte(programs, "mon") == 0.4
        assert drm_add_on_fte(programs, "mon", 0.3) == 0.3
        assert drm_add_on_fte(programs, "fri") == 0.0


# ---------------------------------------------------------------------------
# PCA targets
# ---------------------------------------------------------------------------

class TestPCATargets:

    def test_average_with_reservation_and_drm(self):
        average, base = compute_average_pca_per_team(
            ["FO", "SMM", "DRO"], {"FO": 2, "SMM": 1, "DRO": 1}, 6.0, reserved_fte=1.0, drm_add_on=0.4,
        )
        assert base == pytest.approx({"FO": 2.3, "SMM": 1.15, "DRO": 1.15})
        assert average["DRO"] == pytest.approx(1.55)
        assert sum(average.values()) == pytest.approx(5.0)

    def test_average_without_pt_splits_evenly(self):
        average, _ = compute_average_pca_per_team(["FO", "SMM"], {}, 2.0)
        assert average == {"FO": 1.0, "SMM": 1.0}

    def test_pending_rounded_and_floored(self):
        pending = compute_pending_fte(
            {"FO": 2.3, "SMM": 1.15, "DRO": 1.55}, {"FO": 1.0, "SMM": 1.0, "DRO": 2.0},
        )
        assert pending == {"FO": 1.25, "SMM": 0.25, "DRO": 0.0}

    def test_team_calculations_rows(self, wards):
        calcs = compute_team_calculations(
            ["FO", "SMM", "SFM"], wards, {"FO": 2, "SMM": 1, "SFM": 2}, {"FO": 1.0}, 5.0,
        )
        fo = calcs["FO"]
        assert fo.total_beds_designated == 20
        assert fo.beds_for_relieving == pytest.approx(8)
        assert fo.average_pca_per_team == pytest.approx(2.0)
        assert fo.designated_wards == ["1/2 R1"]
        assert fo.total_pt_per_pca == pytest.approx(2.0)
        assert fo.base_average_pca_per_team is None
