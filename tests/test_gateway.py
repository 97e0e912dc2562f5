"""
tests/test_gateway.py — REST gateway against a stub session.

Tests:
  - Staff fetch: status normalisation, missing-column retry with select=*
  - Transport failures surface as GatewayError
  - Secondary sections degrade to an empty list
  - Allocation saves replace rows (DELETE then POST)
"""

import sys
from pathlib import Path

import pytest
import requests

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from rehab_scheduler.errors import GatewayError
from rehab_scheduler.gateway import ScheduleGateway, split_staff_rows_by_status


class StubResponse:

    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else ("" if body is None else "json")
        self.content = b"" if body is None and text is None else self.text.encode()

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error", response=self)

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class StubSession:
    """Answers requests from a queue and records every call."""

    def __init__(self, responses):
        self.headers = {}
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, params=None, json=None, timeout=None):
        self.calls.append({"method": method, "url": url, "params": params, "json": json})
        answer = self.responses.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


def _gateway(*responses):
    session = StubSession(responses)
    return ScheduleGateway("https://store.example/rest/v1/", "key", session=session), session


class TestStaff:

    def test_headers_and_columns(self):
        gw, session = _gateway(StubResponse(body=[]))
        gw.fetch_staff()
        assert session.headers["Authorization"] == "Bearer key"
        call = session.calls[0]
        assert call["url"] == "https://store.example/rest/v1/staff"
        assert call["params"]["select"].startswith("id,name,rank")

    def test_legacy_active_flag(self):
        rows = [
            {"id": "T1", "active": False},
            {"id": "T2", "active": True},
            {"id": "B1", "status": "buffer"},
        ]
        gw, _ = _gateway(StubResponse(body=rows))
        result = gw.fetch_staff()
        assert [r["status"] for r in result] == ["inactive", "active", "buffer"]

    def test_missing_column_retries_star(self):
        gw, session = _gateway(
            StubResponse(400, text='column "buffer_fte" does not exist'),
            StubResponse(body=[{"id": "T1", "rank": "RPT"}]),
        )
        rows = gw.fetch_staff()
        assert rows[0]["status"] == "active"
        assert [c["params"]["select"] for c in session.calls][1] == "*"

    def test_other_400_not_retried(self):
        gw, session = _gateway(StubResponse(400, text="bad filter"))
        with pytest.raises(GatewayError):
            gw.fetch_staff()
        assert len(session.calls) == 1


class TestTransport:

    def test_server_error(self):
        gw, _ = _gateway(StubResponse(500, text="boom"))
        with pytest.raises(GatewayError):
            gw.fetch_wards()

    def test_connection_error(self):
        gw, _ = _gateway(requests.exceptions.ConnectionError("refused"))
        with pytest.raises(GatewayError) as exc:
            gw.fetch_pca_preferences()
        assert isinstance(exc.value.__cause__, requests.exceptions.ConnectionError)

    def test_malformed_json(self):
        gw, _ = _gateway(StubResponse(body=ValueError("not json"), text="<html>"))
        with pytest.raises(GatewayError):
            gw.fetch_team_settings()

    def test_non_list_rejected(self):
        gw, _ = _gateway(StubResponse(body={"id": 1}))
        with pytest.raises(GatewayError):
            gw.fetch_special_programs()


class TestSections:

    def test_fallback_on_failure(self):
        gw, _ = _gateway(StubResponse(503, text="down"))
        result = gw.fetch_with_fallback("wards")
        assert result.data == []
        assert result.used_fallback is True
        assert result.error

    def test_fallback_passthrough(self):
        gw, _ = _gateway(StubResponse(body=[{"name": "R1", "total_beds": 20}]))
        result = gw.fetch_with_fallback("wards")
        assert result.used_fallback is False
        assert result.data[0]["team_assignments"] == {}

    def test_unknown_section(self):
        gw, _ = _gateway()
        with pytest.raises(ValueError):
            gw.fetch_with_fallback("holidays")

    def test_inactive_spt_filtered(self):
        gw, _ = _gateway(StubResponse(body=[{"id": "A1", "active": False}, {"id": "A2"}]))
        assert [r["id"] for r in gw.fetch_spt_allocations()] == ["A2"]


class TestSchedules:

    def test_missing_schedule_is_none(self):
        gw, session = _gateway(StubResponse(body=[]))
        assert gw.fetch_schedule("2026-03-02") is None
        assert session.calls[0]["params"]["date"] == "eq.2026-03-02"

    def test_create_schedule(self):
        gw, session = _gateway(StubResponse(body=[{"id": "s1", "date": "2026-03-02"}]))
        assert gw.create_schedule("2026-03-02")["id"] == "s1"
        assert session.calls[0]["json"] == {"date": "2026-03-02", "is_tentative": True}

    def test_save_replaces_rows(self):
        gw, session = _gateway(StubResponse(), StubResponse(body=[]))
        gw.save_allocations("s1", "pca", [{"id": "old", "staff_id": "P1"}])
        delete, post = session.calls
        assert delete["method"] == "DELETE"
        assert delete["params"] == {"schedule_id": "eq.s1"}
        assert post["url"].endswith("/schedule_pca_allocations")
        assert post["json"] == [{"staff_id": "P1", "schedule_id": "s1"}]

    def test_save_empty_only_deletes(self):
        gw, session = _gateway(StubResponse())
        gw.save_allocations("s1", "bed", [])
        assert [c["method"] for c in session.calls] == ["DELETE"]

    def test_unknown_kind(self):
        gw, _ = _gateway()
        with pytest.raises(ValueError):
            gw.save_allocations("s1", "desk", [])

    def test_baseline_snapshot_read(self):
        gw, _ = _gateway(StubResponse(body=[{"id": "s1", "baseline_snapshot": {"schema_version": 1}}]))
        assert gw.fetch_baseline_snapshot("s1") == {"schema_version": 1}

    def test_bed_overrides_default_empty(self):
        gw, session = _gateway(StubResponse(body=[{"id": "s1"}]))
        assert gw.fetch_bed_overrides("s1") == {"bed_count_overrides": {}, "bed_relieving_notes": {}}
        assert session.calls[0]["params"]["id"] == "eq.s1"

    def test_save_bed_overrides(self):
        gw, session = _gateway(StubResponse())
        gw.save_bed_overrides("s1", {"FO": {"total": 18}}, {"FO": {"takes": "R1"}})
        call = session.calls[0]
        assert call["method"] == "PATCH"
        assert call["params"] == {"id": "eq.s1"}
        assert call["json"] == {
            "bed_count_overrides": {"FO": {"total": 18}},
            "bed_relieving_notes": {"FO": {"takes": "R1"}},
        }


def test_split_staff_rows_by_status():
    active, inactive, buffer = split_staff_rows_by_status(
        [{"id": "a"}, {"id": "b", "status": "inactive"}, {"id": "c", "status": "buffer"}]
    )
    assert [r["id"] for r in active] == ["a"]
    assert [r["id"] for r in inactive] == ["b"]
    assert [r["id"] for r in buffer] == ["c"]
