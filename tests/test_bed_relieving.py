"""
tests/test_bed_relieving.py — Step 4 bed transfers, notes, undo history.
"""

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from rehab_scheduler.bed_relieving import (
    DIRECTION_RELEASES,
    DIRECTION_TAKES,
    BedRelievingNotes,
    allocate_beds,
)
from rehab_scheduler.models import Ward
from rehab_scheduler.undo import UndoHistory


@pytest.fixture(scope="module")
def wards():
    return [
        Ward("R1", 40, {"FO": 20, "SMM": 20}),
        Ward("R2", 30, {"SFM": 30}),
        Ward("R3", 10, {"SMM": 10}),
    ]


def _moves(result):
    return [(a.from_team, a.to_team, a.ward, a.num_beds) for a in result.allocations]


class TestAllocateBeds:

    def test_surplus_drawn_largest_first(self, wards):
        result = allocate_beds({"FO": 8, "SMM": -6, "SFM": -2}, wards)
        assert _moves(result) == [("SMM", "FO", "R1", 6), ("SFM", "FO", "R2", 2)]
        assert result.total_wards == 2
        assert result.discrepancy == 0
        assert result.score == 2000

    def test_spills_onto_second_ward(self, wards):
        result = allocate_beds({"FO": 25, "SMM": -25}, wards)
        assert _moves(result) == [("SMM", "FO", "R1", 20), ("SMM", "FO", "R3", 5)]

    def test_values_rounded_half_up(self, wards):
        result = allocate_beds({"FO": 2.5, "SMM": -2.5}, wards)
        # FO needs 3, SMM can give 2
        assert _moves(result) == [("SMM", "FO", "R1", 2)]
        assert result.discrepancy == 1
        assert result.score == 1100

    def test_releaser_without_wards(self, wards):
        result = allocate_beds({"FO": 5, "MC": -5}, wards)
        assert result.allocations == []
        assert result.discrepancy == 5
        assert result.score == 500

    def test_takers_by_need(self, wards):
        result = allocate_beds({"FO": 2, "MC": 4, "SFM": -6}, wards)
        assert _moves(result) == [("SFM", "MC", "R2", 4), ("SFM", "FO", "R2", 2)]

    def test_team_subset(self, wards):
        result = allocate_beds({"FO": 4, "SMM": -4, "SFM": -4}, wards, teams=["FO", "SFM"])
        assert _moves(result) == [("SFM", "FO", "R2", 4)]

    def test_nothing_to_move(self, wards):
        result = allocate_beds({}, wards)
        assert result.allocations == []
        assert result.score == 0


class TestBedRelievingNotes:

    def test_set_get_clear(self):
        notes = BedRelievingNotes()
        notes.set("SMM", DIRECTION_RELEASES, "R3 only")
        notes.set("FO", DIRECTION_TAKES, "prefer R1")
        assert notes.items() == [("FO", "takes", "prefer R1"), ("SMM", "releases", "R3 only")]
        notes.set("FO", DIRECTION_TAKES, "")
        assert notes.get("FO", DIRECTION_TAKES) is None
        assert notes.to_dict() == {"SMM": {"releases": "R3 only"}}

    def test_validation(self):
        notes = BedRelievingNotes()
        with pytest.raises(ValueError):
            notes.set("FO", "both", "x")
        with pytest.raises(ValueError):
            notes.set("ICU", DIRECTION_TAKES, "x")

    def test_round_trip(self):
        notes = BedRelievingNotes.from_dict({"MC": {"takes": "from GMC"}})
        assert BedRelievingNotes.from_dict(notes.to_dict()).get("MC", "takes") == "from GMC"


class TestUndoHistory:

    def test_undo_redo_order(self):
        history = UndoHistory()
        history.push("a", {"x": 0}, {"x": 1})
        history.push("b", {"x": 1}, {"x": 2})
        assert history.labels() == ["a", "b"]
        assert history.undo().label == "b"
        assert history.can_redo
        assert history.redo().after == {"x": 2}
        assert history.redo() is None

    def test_push_clears_redo(self):
        history = UndoHistory()
        history.push("a", {}, {})
        history.undo()
        history.push("b", {}, {})
        assert not history.can_redo
        assert history.labels() == ["b"]

    def test_bounded(self):
        history = UndoHistory(max_depth=2)
        for label in "abc":
            history.push(label, {}, {})
        assert history.labels() == ["b", "c"]
        assert len(history) == 2

    def test_invalid_depth(self):
        with pytest.raises(ValueError):
            UndoHistory(max_depth=0)
