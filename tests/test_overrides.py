"""
tests/test_overrides.py — Staff override store.

Tests: patch merge (idempotent, None clears), capacity / slot validation,
substitution link disjointness, step-owned clearing, persisted shape
(camelCase, legacy single-slot and single-target forms).
"""

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from rehab_scheduler.errors import OverrideError
from rehab_scheduler.overrides import OverrideStore, StaffOverride, SubstitutionTarget
from rehab_scheduler.schedule_config import STEP_FLOATING, STEP_LEAVE, STEP_THERAPIST


def _linked_store() -> OverrideStore:
    store = OverrideStore()
    store.apply_override("P1", {"leave_type": "half day VL", "fte_remaining": 0.5, "available_slots": [1, 2]})
    store.apply_override("F1", {"slot_overrides": {1: "SMM"}, "card_color_by_team": {"FO": "blue"}})
    store.apply_substitution("F1", "FO", "P1", "Pat", [3, 4], origin_step=STEP_THERAPIST)
    store.apply_substitution("F2", "SMM", "P2", "Sam", [1], origin_step=STEP_FLOATING)
    store.apply_override("T1", {"team": "SMM"})
    return store


class TestApplyOverride:

    def test_merge_keeps_other_fields(self):
        store = OverrideStore()
        store.apply_override("P1", {"leave_type": "VL", "fte_remaining": 0.0})
        record = store.apply_override("P1", {"team": "FO"})
        assert record.leave_type == "VL"
        assert record.fte_remaining == 0.0
        assert record.team == "FO"

    def test_idempotent(self):
        store = OverrideStore()
        patch = {"leave_type": "half day VL", "fte_remaining": 0.5, "available_slots": [2, 1]}
        first = store.apply_override("P1", patch)
        second = store.apply_override("P1", patch)
        assert first == second
        assert second.available_slots == (1, 2)

    def test_none_clears_field(self):
        store = OverrideStore()
        store.apply_override("P1", {"leave_type": "VL", "team": "FO"})
        record = store.apply_override("P1", {"leave_type": None})
        assert record.leave_type is None
        assert record.team == "FO"

    def test_empty_record_removed(self):
        store = OverrideStore()
        store.apply_override("P1", {"leave_type": "VL"})
        store.apply_override("P1", {"leave_type": None})
        assert "P1" not in store
        assert len(store) == 0

    def test_capacity_overflow_rejected(self):
        store = OverrideStore()
        with pytest.raises(OverrideError):
            store.apply_override("P1", {"fte_remaining": 0.75, "fte_subtraction": 0.5})
        assert store.get("P1") is None

    def test_buffer_capacity(self):
        store = OverrideStore()
        with pytest.raises(OverrideError):
            store.apply_override("B1", {"fte_remaining": 0.75}, capacity=0.5)
        store.apply_override("B1", {"fte_remaining": 0.5}, capacity=0.5)
        assert store.get("B1").fte_remaining == 0.5

    def test_negative_rejected(self):
        with pytest.raises(OverrideError):
            OverrideStore().apply_override("P1", {"fte_subtraction": -0.25})

    def test_unknown_field_rejected(self):
        with pytest.raises(OverrideError):
            OverrideStore().apply_override("P1", {"colour": "red"})

    def test_bad_slot_rejected(self):
        with pytest.raises(OverrideError):
            OverrideStore().apply_override("P1", {"available_slots": [1, 5]})

    def test_override_error_is_value_error(self):
        with pytest.raises(ValueError):
            OverrideStore().apply_override("P1", {"invalid_slots": [0]})


class TestSubstitutionLinks:

    def test_links_listed(self):
        store = _linked_store()
        links = store.substitution_links()
        assert [(pca, slot) for pca, slot, _ in links] == [("F1", 3), ("F1", 4), ("F2", 1)]
        assert links[0][2].key == "FO::P1"

    def test_same_target_twice_is_fine(self):
        store = _linked_store()
        store.apply_substitution("F1", "FO", "P1", "Pat", [3], origin_step=STEP_THERAPIST)
        assert len(store.substitution_links()) == 3

    def test_floating_slot_cannot_cover_two_targets(self):
        store = _linked_store()
        with pytest.raises(OverrideError):
            store.apply_substitution("F1", "SMM", "P2", "Sam", [3])

    def test_target_slot_cannot_have_two_pcas(self):
        store = _linked_store()
        with pytest.raises(OverrideError):
            store.apply_substitution("F3", "FO", "P1", "Pat", [4])

    def test_remove_for_teams(self):
        store = _linked_store()
        assert store.remove_substitutions_for_teams(["FO"]) == 2
        assert store.get("F1").substitution_for is None
        assert store.get("F1").slot_overrides == {1: "SMM"}

    def test_remove_targeting_drops_empty_records(self):
        store = _linked_store()
        assert store.remove_substitutions_targeting(["SMM::P2"]) == 1
        assert "F2" not in store


class TestClearForStep:

    def test_clear_therapist_keeps_leave_and_colour(self):
        store = _linked_store()
        store.clear_for_step(STEP_THERAPIST)

        p1 = store.get("P1")
        assert p1.leave_type == "half day VL"
        assert p1.available_slots == (1, 2)
        assert "T1" not in store
        f1 = store.get("F1")
        assert f1.slot_overrides is None
        assert f1.substitution_for is None
        assert f1.card_color_by_team == {"FO": "blue"}
        assert "F2" not in store

    def test_clear_floating_keeps_therapist_links(self):
        store = _linked_store()
        store.clear_for_step(STEP_FLOATING)

        assert store.get("T1").team == "SMM"
        assert sorted(store.get("F1").substitution_for) == [3, 4]
        assert store.get("F1").slot_overrides is None
        assert "F2" not in store

    def test_clear_leave_clears_everything_but_display(self):
        store = _linked_store()
        store.clear_for_step(STEP_LEAVE)
        assert list(dict(store.items())) == ["F1"]
        assert store.get("F1") == StaffOverride(card_color_by_team={"FO": "blue"})


class TestPersistence:

    def test_round_trip(self):
        store = _linked_store()
        raw = store.to_dict()
        assert raw["P1"]["fteRemaining"] == 0.5
        assert raw["P1"]["availableSlots"] == [1, 2]
        assert raw["F1"]["substitutionForBySlot"]["3"]["nonFloatingPCAId"] == "P1"
        restored = OverrideStore.from_dict(raw)
        assert restored.to_dict() == raw

    def test_legacy_single_target(self):
        raw = {"F1": {"substitutionFor": {"nonFloatingPCAId": "P1", "nonFloatingPCAName": "Pat",
                                          "team": "FO", "slots": [3, 4]}}}
        record = OverrideStore.from_dict(raw).get("F1")
        assert sorted(record.substitution_for) == [3, 4]
        assert record.substitution_for[3] == SubstitutionTarget("P1", "Pat", "FO", STEP_THERAPIST)

    def test_legacy_invalid_slot(self):
        record = OverrideStore.from_dict({"P1": {"invalidSlot": 2, "leaveType": "others"}}).get("P1")
        assert record.invalid_slots == (2,)
        assert record.leave_type == "others"

    def test_empty_records_dropped(self):
        assert len(OverrideStore.from_dict({"P1": {}, "P2": None})) == 0

    def test_snapshot_restore(self):
        store = _linked_store()
        saved = store.snapshot()
        store.apply_override("P1", {"leave_type": "VL", "fte_remaining": 0.0})
        store.remove("T1")
        store.restore(saved)
        assert store.get("P1").leave_type == "half day VL"
        assert store.get("T1").team == "SMM"
