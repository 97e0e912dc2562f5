"""
Schedule Gateway
Handles reads and writes against the REST data store (PostgREST-style)

Tables: staff, special_programs, spt_allocations, wards, pca_preferences,
team_settings, daily_schedules and the per-schedule allocation tables
schedule_{therapist,pca,bed}_allocations + schedule_calculations.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests

from rehab_scheduler.errors import GatewayError

logger = logging.getLogger(__name__)

ALLOCATION_TABLES: Dict[str, str] = {
    'therapist': 'schedule_therapist_allocations',
    'pca': 'schedule_pca_allocations',
    'bed': 'schedule_bed_allocations',
    'calculations': 'schedule_calculations',
}

STAFF_COLUMNS = 'id,name,rank,team,floating,floor_pca,status,buffer_fte,special_program'


@dataclass
class GatewayResult:
    data: Any
    error: Optional[str] = None
    used_fallback: bool = False


def split_staff_rows_by_status(rows: List[Dict[str, Any]]) -> Tuple[List[Dict], List[Dict], List[Dict]]:
    """
    Split raw staff rows into (active, inactive, buffer).

    Rows from before the status column only carry `active`; they are
    normalised in place to status active / inactive.
    """
    active, inactive, buffer = [], [], []
    for row in rows:
        status = row.get('status')
        if status not in ('active', 'inactive', 'buffer'):
            status = 'inactive' if row.get('active') is False else 'active'
            row['status'] = status
        if status == 'buffer':
            buffer.append(row)
        elif status == 'inactive':
            inactive.append(row)
        else:
            active.append(row)
    return active, inactive, buffer


class ScheduleGateway:
    """
    Client for the schedule data store
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        session: Optional[requests.Session] = None,
        timeout: int = 30
    ):
        """
        Initialize the gateway

        Args:
            base_url: Store base URL, e.g. https://example.org/rest/v1
            api_key: Service key, sent as bearer token and apikey header
            session: Optional pre-built session (tests pass a stub)
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'apikey': api_key,
            'Authorization': f'Bearer {api_key}',
            'Content-Type': 'application/json',
            'Prefer': 'return=representation',
        })

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, Any]] = None,
        payload: Any = None,
        what: str = ''
    ) -> Any:
        endpoint = f"{self.base_url}/{table}"
        try:
            response = self.session.request(
                method, endpoint, params=params, json=payload, timeout=self.timeout
            )
            response.raise_for_status()
            if not response.content:
                return None
            return response.json()
        except requests.exceptions.RequestException as e:
            logger.error(f"Error {what or method + ' ' + table}: {e}")
            raise GatewayError(f"{what or table}: {e}") from e
        except ValueError as e:
            logger.error(f"Malformed response for {what or table}: {e}")
            raise GatewayError(f"{what or table}: malformed response") from e

    def _select(self, table: str, columns: str = '*', what: str = '', **filters: Any) -> List[Dict]:
        params = {'select': columns}
        params.update({k: f"eq.{v}" for k, v in filters.items()})
        data = self._request('GET', table, params=params, what=what or f"fetching {table}")
        if not isinstance(data, list):
            raise GatewayError(f"{table}: expected a list of rows")
        return data

    @staticmethod
    def _is_missing_column(error: GatewayError) -> bool:
        cause = error.__cause__
        response = getattr(cause, 'response', None)
        if response is None or response.status_code != 400:
            return False
        return 'column' in (response.text or '').lower()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def fetch_staff(self) -> List[Dict]:
        """
        Retrieve the staff roster

        Selects the known columns first; an older schema without one of them
        answers 400 "column ... does not exist", in which case `*` is used.

        Returns:
            List of staff rows with a normalised `status`
        """
        logger.info("Fetching staff")
        try:
            rows = self._select('staff', STAFF_COLUMNS, what='fetching staff')
        except GatewayError as e:
            if not self._is_missing_column(e):
                raise
            logger.warning("Staff column missing, retrying with select=*")
            rows = self._select('staff', '*', what='fetching staff (fallback)')
        split_staff_rows_by_status(rows)
        logger.info(f"Retrieved {len(rows)} staff rows")
        return rows

    def fetch_special_programs(self) -> List[Dict]:
        return self._select('special_programs', what='fetching special programs')

    def fetch_spt_allocations(self) -> List[Dict]:
        rows = self._select('spt_allocations', what='fetching SPT allocations')
        return [r for r in rows if r.get('active') is not False]

    def fetch_wards(self) -> List[Dict]:
        rows = self._select('wards', what='fetching wards')
        for row in rows:
            row['team_assignments'] = row.get('team_assignments') or {}
            row['team_assignment_portions'] = row.get('team_assignment_portions') or {}
        return rows

    def fetch_pca_preferences(self) -> List[Dict]:
        return self._select('pca_preferences', what='fetching PCA preferences')

    def fetch_team_settings(self) -> List[Dict]:
        return self._select('team_settings', what='fetching team settings')

    def fetch_with_fallback(self, section: str) -> GatewayResult:
        """
        Fetch a secondary section, degrading to an empty list on failure so
        a schedule can still load without it.
        """
        fetchers = {
            'special_programs': self.fetch_special_programs,
            'spt_allocations': self.fetch_spt_allocations,
            'wards': self.fetch_wards,
            'pca_preferences': self.fetch_pca_preferences,
            'team_settings': self.fetch_team_settings,
        }
        if section not in fetchers:
            raise ValueError(f"Unknown section {section!r}")
        try:
            return GatewayResult(fetchers[section]())
        except GatewayError as e:
            logger.warning(f"{section} unavailable, continuing without it: {e}")
            return GatewayResult([], error=str(e), used_fallback=True)

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    def fetch_schedule(self, schedule_date: str) -> Optional[Dict]:
        """
        Retrieve the schedule row for a date

        Returns:
            The row, or None when no schedule exists yet (not an error)
        """
        rows = self._select('daily_schedules', what=f"fetching schedule {schedule_date}", date=schedule_date)
        if not rows:
            logger.info(f"No schedule stored for {schedule_date}")
            return None
        return rows[0]

    def create_schedule(self, schedule_date: str) -> Dict:
        logger.info(f"Creating schedule for {schedule_date}")
        data = self._request(
            'POST', 'daily_schedules',
            payload={'date': schedule_date, 'is_tentative': True},
            what=f"creating schedule {schedule_date}",
        )
        row = data[0] if isinstance(data, list) and data else data
        if not isinstance(row, dict) or 'id' not in row:
            raise GatewayError(f"Creating schedule {schedule_date}: no row returned")
        return row

    def save_schedule_metadata(self, schedule_id: str, fields: Dict[str, Any]) -> None:
        self._request(
            'PATCH', 'daily_schedules',
            params={'id': f"eq.{schedule_id}"}, payload=fields,
            what=f"saving schedule {schedule_id}",
        )

    def fetch_allocations(self, schedule_id: str, kind: str) -> List[Dict]:
        table = self._table(kind)
        return self._select(table, what=f"fetching {kind} allocations", schedule_id=schedule_id)

    def delete_allocations(self, schedule_id: str, kind: str) -> None:
        self._request(
            'DELETE', self._table(kind),
            params={'schedule_id': f"eq.{schedule_id}"},
            what=f"clearing {kind} allocations",
        )

    def save_allocations(self, schedule_id: str, kind: str, rows: List[Dict[str, Any]]) -> None:
        """
        Replace a schedule's rows of one kind

        Args:
            schedule_id: Target schedule
            kind: therapist | pca | bed | calculations
            rows: Row dicts; `id` is dropped and `schedule_id` set
        """
        self.delete_allocations(schedule_id, kind)
        if not rows:
            return
        payload = []
        for row in rows:
            clone = {k: v for k, v in row.items() if k != 'id'}
            clone['schedule_id'] = schedule_id
            payload.append(clone)
        self._request('POST', self._table(kind), payload=payload, what=f"saving {kind} allocations")
        logger.info(f"Saved {len(payload)} {kind} row(s) for schedule {schedule_id}")

    def fetch_baseline_snapshot(self, schedule_id: str) -> Optional[Dict]:
        rows = self._select(
            'daily_schedules', 'id,baseline_snapshot',
            what=f"fetching baseline snapshot {schedule_id}", id=schedule_id,
        )
        return rows[0].get('baseline_snapshot') if rows else None

    def save_baseline_snapshot(self, schedule_id: str, envelope: Dict[str, Any]) -> None:
        self.save_schedule_metadata(schedule_id, {'baseline_snapshot': envelope})

    def fetch_bed_overrides(self, schedule_id: str) -> Dict[str, Dict[str, Any]]:
        """
        Retrieve a schedule's bed-count overrides and bed relieving notes

        Returns:
            {'bed_count_overrides': {team: {...}}, 'bed_relieving_notes': {team: {direction: text}}},
            with empty maps when nothing was saved
        """
        rows = self._select(
            'daily_schedules', 'id,bed_count_overrides,bed_relieving_notes',
            what=f"fetching bed overrides {schedule_id}", id=schedule_id,
        )
        row = rows[0] if rows else {}
        return {
            'bed_count_overrides': row.get('bed_count_overrides') or {},
            'bed_relieving_notes': row.get('bed_relieving_notes') or {},
        }

    def save_bed_overrides(
        self,
        schedule_id: str,
        bed_count_overrides: Dict[str, Any],
        bed_relieving_notes: Dict[str, Any]
    ) -> None:
        self.save_schedule_metadata(schedule_id, {
            'bed_count_overrides': bed_count_overrides,
            'bed_relieving_notes': bed_relieving_notes,
        })

    @staticmethod
    def _table(kind: str) -> str:
        if kind not in ALLOCATION_TABLES:
            raise ValueError(f"Unknown allocation kind {kind!r}")
        return ALLOCATION_TABLES[kind]
