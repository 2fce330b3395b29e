from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from journey.core.errors import SessionNotFound
from journey.core.logging import get_logger
from journey.core.types import Clock, ensure_utc, from_db_ts, to_db_ts, utc_now
from journey.features.persistence.duckdb_adapter import DuckDBAdapter
from journey.features.persistence.schema import (
    SESSION_CONTEXT_COLUMNS,
    SESSIONS_TABLE_NAME,
    TOUCHPOINT_COLUMNS,
    TOUCHPOINTS_TABLE_NAME,
)

from .types import ActivityResult, Session, Touchpoint, TouchpointResult, TrackingContext

# ----------------------------
# Config models
# ----------------------------


@dataclass(frozen=True)
class TrackerConfig:
    inactivity_timeout_minutes: float = 30.0

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=float(self.inactivity_timeout_minutes))


class IdsLike(Protocol):
    def next_id(self, prefix: str) -> str: ...


# ----------------------------
# Internal helpers
# ----------------------------

_SESSION_TS_COLUMNS = ("created_at", "updated_at", "expires_at")


def session_from_row(row: dict[str, Any]) -> Session:
    values = dict(row)
    for col in _SESSION_TS_COLUMNS:
        values[col] = from_db_ts(values[col])
    return Session(**values)


def touchpoint_from_row(row: dict[str, Any]) -> Touchpoint:
    values = {k: v for k, v in row.items() if k not in ("ts", "created_at")}
    values["timestamp"] = from_db_ts(row["ts"])
    values["seq"] = int(row.get("seq") or 0)
    return Touchpoint(**values)


# ----------------------------
# Service
# ----------------------------


class SessionTracker:
    """
    Maintains session lifecycle and records touchpoints per session.

    Concurrency: every write is a single statement at the storage boundary.
      - creation is INSERT ... ON CONFLICT DO NOTHING
      - refresh takes greatest(expires_at), least(created_at) and fills only
        empty context columns (coalesce), so calls commute and may arrive in
        any order
    """

    def __init__(
        self,
        *,
        adapter: DuckDBAdapter,
        ids: IdsLike,
        cfg: TrackerConfig | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.adapter = adapter
        self.ids = ids
        self.cfg = cfg or TrackerConfig()
        self._clock = clock
        self._logger = get_logger(__name__)

    # ----------------------------
    # Public API
    # ----------------------------

    def record_activity(
        self,
        session_id: str,
        visitor_id: str,
        context: TrackingContext | None,
        timestamp: datetime,
    ) -> ActivityResult:
        """
        Create the session if absent, else slide its expiry forward and fill in
        context fields that were empty. First-touch values are never overwritten.
        """
        if not session_id:
            raise ValueError("session_id is required")
        if not visitor_id:
            raise ValueError("visitor_id is required")

        ts = ensure_utc(timestamp)
        expires_at = ts + self.cfg.window
        ctx = (context or TrackingContext()).session_values()

        insert_cols = ["session_id", "visitor_id", "created_at", "updated_at", "expires_at"]
        insert_cols += list(SESSION_CONTEXT_COLUMNS)
        params: list[Any] = [session_id, visitor_id, to_db_ts(ts), to_db_ts(ts)]
        params.append(to_db_ts(expires_at))
        params += [ctx.get(c) for c in SESSION_CONTEXT_COLUMNS]

        created = (
            self.adapter.changed_rows(
                f"""
                INSERT INTO {SESSIONS_TABLE_NAME} ({", ".join(insert_cols)})
                VALUES ({", ".join("?" for _ in insert_cols)})
                ON CONFLICT DO NOTHING
                """,
                params,
            )
            > 0
        )

        if not created:
            fill = ", ".join(f"{c} = coalesce({c}, ?)" for c in SESSION_CONTEXT_COLUMNS)
            self.adapter.execute(
                f"""
                UPDATE {SESSIONS_TABLE_NAME}
                SET created_at = least(created_at, ?),
                    updated_at = greatest(updated_at, ?),
                    expires_at = greatest(expires_at, ?),
                    {fill}
                WHERE session_id = ?
                """,
                [to_db_ts(ts), to_db_ts(ts), to_db_ts(expires_at)]
                + [ctx.get(c) for c in SESSION_CONTEXT_COLUMNS]
                + [session_id],
            )

        session = self.get_session(session_id)
        if session is None:
            # deleted concurrently between upsert and read
            raise SessionNotFound(session_id)

        if created:
            self._logger.info(
                "session_created",
                extra={"feature": "sessions", "session_id": session_id, "visitor_id": visitor_id},
            )
        return ActivityResult(session=session, created=created)

    def record_touchpoint(
        self,
        session_id: str,
        context: TrackingContext | None,
        timestamp: datetime,
        *,
        session_start: bool = False,
    ) -> TouchpointResult:
        """
        Append an immutable touchpoint snapshot.

        A touchpoint for a session with no record is still stored (out-of-order
        delivery); the result is marked orphaned and carries SessionNotFound.
        """
        if not session_id:
            raise ValueError("session_id is required")

        ts = ensure_utc(timestamp)
        ctx = context or TrackingContext()

        # Refresh doubles as the existence check: 0 rows touched means unknown session.
        touched = self.adapter.changed_rows(
            f"""
            UPDATE {SESSIONS_TABLE_NAME}
            SET updated_at = greatest(updated_at, ?),
                expires_at = greatest(expires_at, ?)
            WHERE session_id = ?
            """,
            [to_db_ts(ts), to_db_ts(ts + self.cfg.window), session_id],
        )

        values: dict[str, Any] = {
            "touchpoint_id": self.ids.next_id("tp"),
            "session_id": session_id,
            "ts": to_db_ts(ts),
            "utm_source": ctx.utm_source,
            "utm_medium": ctx.utm_medium,
            "utm_campaign": ctx.utm_campaign,
            "utm_term": ctx.utm_term,
            "utm_content": ctx.utm_content,
            "page_url": ctx.page_url or ctx.landing_page,
            "page_title": ctx.page_title,
            "referrer": ctx.referrer,
            "fbclid": ctx.fbclid,
            "gclid": ctx.gclid,
            "ttclid": ctx.ttclid,
            "device_type": ctx.device_type,
            "browser": ctx.browser,
            "created_at": to_db_ts(self._clock()),
        }
        row = self.adapter.fetchone(
            f"""
            INSERT INTO {TOUCHPOINTS_TABLE_NAME} ({", ".join(TOUCHPOINT_COLUMNS)})
            VALUES ({", ".join("?" for _ in TOUCHPOINT_COLUMNS)})
            RETURNING seq
            """,
            [values[c] for c in TOUCHPOINT_COLUMNS],
        )
        seq = int(row[0]) if row else 0

        tp_values = {k: v for k, v in values.items() if k not in ("ts", "created_at")}
        touchpoint = Touchpoint(timestamp=ts, seq=seq, **tp_values)

        if touched == 0 and not session_start:
            warning = SessionNotFound(session_id)
            self._logger.warning(
                "touchpoint_orphaned",
                extra={"feature": "sessions", "session_id": session_id, "warning": str(warning)},
            )
            return TouchpointResult(touchpoint=touchpoint, status="orphaned", warning=warning)

        return TouchpointResult(touchpoint=touchpoint, status="recorded")

    def get_session(self, session_id: str) -> Session | None:
        rows = self.adapter.fetch_dicts(
            f"SELECT * FROM {SESSIONS_TABLE_NAME} WHERE session_id = ?",
            [session_id],
        )
        return session_from_row(rows[0]) if rows else None

    def touchpoints_for_session(self, session_id: str) -> list[Touchpoint]:
        rows = self.adapter.fetch_dicts(
            f"""
            SELECT * FROM {TOUCHPOINTS_TABLE_NAME}
            WHERE session_id = ?
            ORDER BY ts, seq
            """,
            [session_id],
        )
        return [touchpoint_from_row(r) for r in rows]

    def is_live(self, session_id: str, now: datetime | None = None) -> bool:
        session = self.get_session(session_id)
        if session is None:
            return False
        return session.is_live(ensure_utc(now) if now is not None else self._clock())

    def delete_session(self, session_id: str) -> bool:
        """
        Purge a session and, by ownership, its touchpoints. Conversions keep their
        own attribution snapshot and are left untouched.
        """
        with self.adapter.transaction():
            self.adapter.execute(
                f"DELETE FROM {TOUCHPOINTS_TABLE_NAME} WHERE session_id = ?", [session_id]
            )
            deleted = self.adapter.changed_rows(
                f"DELETE FROM {SESSIONS_TABLE_NAME} WHERE session_id = ?", [session_id]
            )
        return deleted > 0
