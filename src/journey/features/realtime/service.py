from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from journey.core.logging import get_logger
from journey.core.types import Clock, ensure_utc, to_db_ts, utc_now
from journey.features.events.schema import PAGE_VIEW
from journey.features.persistence.duckdb_adapter import DuckDBAdapter
from journey.features.persistence.schema import (
    CONVERSIONS_TABLE_NAME,
    EVENTS_TABLE_NAME,
    SESSIONS_TABLE_NAME,
)

from .types import PageCount, RealtimeSnapshot

MAX_CACHE_TTL_SECONDS = 60.0


@dataclass(frozen=True)
class RealtimeWindows:
    active: timedelta = timedelta(minutes=30)
    conversions: timedelta = timedelta(minutes=60)
    top_pages_limit: int = 5


class RealtimeAggregator:
    """
    "Right now" statistics computed from raw rows over sliding windows.

    Nothing is materialized; the last snapshot is reused for `cache_ttl_seconds`
    of engine-clock time.
    """

    def __init__(
        self,
        *,
        adapter: DuckDBAdapter,
        windows: RealtimeWindows | None = None,
        cache_ttl_seconds: float = 30.0,
        before_query: Callable[[], None] | None = None,
        clock: Clock = utc_now,
    ) -> None:
        if not (0.0 <= cache_ttl_seconds <= MAX_CACHE_TTL_SECONDS):
            raise ValueError(f"cache_ttl_seconds must be in [0, {MAX_CACHE_TTL_SECONDS:g}]")
        self.adapter = adapter
        self.windows = windows or RealtimeWindows()
        self.cache_ttl = timedelta(seconds=cache_ttl_seconds)
        self._before_query = before_query
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: RealtimeSnapshot | None = None
        self._logger = get_logger(__name__)

    def snapshot(self, now: datetime | None = None) -> RealtimeSnapshot:
        """
        Cached unless `now` is given explicitly (point-in-time queries always
        recompute).
        """
        if now is not None:
            return self._compute(ensure_utc(now))

        now = self._clock()
        with self._lock:
            cached = self._cached
            if cached is not None and timedelta(0) <= now - cached.computed_at < self.cache_ttl:
                return cached

        snap = self._compute(now)
        with self._lock:
            self._cached = snap
        return snap

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None

    # ----------------------------
    # Internal helpers
    # ----------------------------

    def _compute(self, now: datetime) -> RealtimeSnapshot:
        if self._before_query is not None:
            self._before_query()

        end = to_db_ts(now)
        active_since = to_db_ts(now - self.windows.active)
        hour_since = to_db_ts(now - self.windows.conversions)

        (active_users,) = self.adapter.fetchone(
            f"""
            SELECT COUNT(DISTINCT visitor_id) FROM {SESSIONS_TABLE_NAME}
            WHERE updated_at BETWEEN ? AND ?
            """,
            [active_since, end],
        )
        (recent_sessions,) = self.adapter.fetchone(
            f"SELECT COUNT(*) FROM {SESSIONS_TABLE_NAME} WHERE created_at BETWEEN ? AND ?",
            [active_since, end],
        )
        (conversions,) = self.adapter.fetchone(
            f"SELECT COUNT(*) FROM {CONVERSIONS_TABLE_NAME} WHERE created_at BETWEEN ? AND ?",
            [hour_since, end],
        )
        pages = self.adapter.execute(
            f"""
            SELECT page_url, COUNT(DISTINCT session_id) AS visitors
            FROM {EVENTS_TABLE_NAME}
            WHERE event_name = ? AND page_url IS NOT NULL AND ts BETWEEN ? AND ?
            GROUP BY page_url
            ORDER BY visitors DESC, page_url
            LIMIT ?
            """,
            [PAGE_VIEW, hour_since, end, self.windows.top_pages_limit],
        )

        snap = RealtimeSnapshot(
            computed_at=now,
            active_users=int(active_users or 0),
            sessions_last_30_minutes=int(recent_sessions or 0),
            conversion_events=int(conversions or 0),
            top_pages=tuple(PageCount(page=p, visitors=int(v)) for p, v in pages),
        )
        self._logger.debug("realtime_snapshot", extra={"feature": "realtime"})
        return snap
