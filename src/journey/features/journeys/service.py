from __future__ import annotations

from datetime import datetime

from journey.core.logging import get_logger
from journey.core.types import ensure_utc, to_db_ts
from journey.features.persistence.duckdb_adapter import DuckDBAdapter
from journey.features.persistence.schema import SESSIONS_TABLE_NAME, TOUCHPOINTS_TABLE_NAME
from journey.features.sessions.service import touchpoint_from_row
from journey.features.sessions.types import Touchpoint

from .types import Journey

# Sessions reachable from a key: the sessions it names directly (as session,
# visitor or customer id), widened to every session of the same visitors and
# of the same known customers.
_JOURNEY_SQL = f"""
WITH seed AS (
    SELECT visitor_id, customer_id
    FROM {SESSIONS_TABLE_NAME}
    WHERE session_id = $key OR visitor_id = $key OR customer_id = $key
),
reach AS (
    SELECT s.session_id
    FROM {SESSIONS_TABLE_NAME} s
    WHERE s.visitor_id IN (SELECT visitor_id FROM seed)
       OR s.customer_id IN (SELECT customer_id FROM seed WHERE customer_id IS NOT NULL)
)
SELECT t.*
FROM {TOUCHPOINTS_TABLE_NAME} t
WHERE (t.session_id IN (SELECT session_id FROM reach) OR t.session_id = $key)
  AND t.ts <= $as_of
ORDER BY t.ts, t.seq
"""


class JourneyAssembler:
    """
    Rebuilds a visitor's cross-session touchpoint history up to a point in time.
    """

    def __init__(self, *, adapter: DuckDBAdapter) -> None:
        self.adapter = adapter
        self._logger = get_logger(__name__)

    def assemble_journey(self, key: str, as_of: datetime) -> Journey:
        """
        `key` may be a session id, visitor id or customer id. Touchpoints stored
        for a session that has no record are still reachable by that session id.
        """
        as_of_utc = ensure_utc(as_of)

        def _load() -> list[Touchpoint]:
            rows = self.adapter.fetch_dicts(
                _JOURNEY_SQL, {"key": key, "as_of": to_db_ts(as_of_utc)}
            )
            self._logger.debug(
                "journey_loaded",
                extra={"feature": "journeys", "session_id": key, "num_events": len(rows)},
            )
            return [touchpoint_from_row(r) for r in rows]

        return Journey(_load, key=key, as_of=as_of_utc)
