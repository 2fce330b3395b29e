from __future__ import annotations

import os
import threading
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

import duckdb

from journey.core.errors import StorageUnavailable

from .schema import EVENT_COLUMNS, EVENTS_TABLE_NAME, create_schema

# Positional (?) or named ($name) parameters.
Params = Sequence[Any] | Mapping[str, Any] | None

# Failures a caller may reasonably retry. Everything else (binder/constraint
# errors) is a programming error and propagates unchanged.
_TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    duckdb.IOException,
    duckdb.ConnectionException,
    duckdb.TransactionException,
)


@dataclass(frozen=True)
class DuckDBWriteResult:
    num_events: int
    duration_ms: float


class DuckDBAdapter:
    """
    DuckDB persistence adapter. Owns the connection and schema.

    One connection is shared by all callers; statements are serialized through a
    re-entrant lock whose acquisition is bounded by `lock_timeout_seconds`.
    Upserts and counter increments are issued as single statements, so holding
    the lock never spans a client-side read-modify-write.
    """

    def __init__(self, path: str, *, clean_slate: bool, lock_timeout_seconds: float = 5.0) -> None:
        self.path = path
        self.clean_slate = clean_slate
        self.lock_timeout_seconds = float(lock_timeout_seconds)
        self._conn: duckdb.DuckDBPyConnection | None = None
        self._lock = threading.RLock()

    @property
    def in_memory(self) -> bool:
        return self.path == ":memory:" or not self.path

    def open(self) -> None:
        if not self.in_memory:
            if self.clean_slate and os.path.exists(self.path):
                os.remove(self.path)

            # Ensure parent dir exists
            parent = os.path.dirname(self.path)
            if parent:
                os.makedirs(parent, exist_ok=True)

        with self._translate_errors():
            self._conn = duckdb.connect(":memory:" if self.in_memory else self.path)
            create_schema(self._conn)

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise RuntimeError("DuckDBAdapter not opened. Call open() first.")
        return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # ----------------------------
    # Statement helpers
    # ----------------------------

    def execute(self, sql: str, params: Params = None) -> list[tuple]:
        with self._locked(), self._translate_errors():
            return self.conn.execute(sql, params or []).fetchall()

    def fetchone(self, sql: str, params: Params = None) -> tuple | None:
        with self._locked(), self._translate_errors():
            return self.conn.execute(sql, params or []).fetchone()

    def fetch_dicts(self, sql: str, params: Params = None) -> list[dict[str, Any]]:
        with self._locked(), self._translate_errors():
            cur = self.conn.execute(sql, params or [])
            names = [d[0] for d in cur.description or []]
            return [dict(zip(names, row, strict=True)) for row in cur.fetchall()]

    def executemany(self, sql: str, rows: Sequence[Sequence[Any]]) -> None:
        if not rows:
            return
        with self._locked(), self._translate_errors():
            self.conn.executemany(sql, rows)

    def changed_rows(self, sql: str, params: Params = None) -> int:
        """
        Run an INSERT/UPDATE/DELETE and return the affected row count DuckDB reports.
        """
        row = self.fetchone(sql, params)
        return int(row[0]) if row else 0

    @contextmanager
    def transaction(self) -> Iterator[DuckDBAdapter]:
        """
        Explicit transaction for multi-statement units (conversion + line items).
        The lock is held for the whole block.
        """
        with self._locked():
            with self._translate_errors():
                self.conn.execute("BEGIN TRANSACTION")
            try:
                yield self
            except BaseException:
                with self._translate_errors():
                    self.conn.execute("ROLLBACK")
                raise
            with self._translate_errors():
                self.conn.execute("COMMIT")

    # ----------------------------
    # Events
    # ----------------------------

    def write_events(self, rows: Sequence[Mapping[str, Any]]) -> DuckDBWriteResult:
        """
        Writes a batch of event rows (dicts keyed by EVENT_COLUMNS).
        Returns count and duration.
        """
        if not rows:
            return DuckDBWriteResult(num_events=0, duration_ms=0.0)

        t0 = time.perf_counter()

        cols = ", ".join(EVENT_COLUMNS)
        placeholders = ", ".join("?" for _ in EVENT_COLUMNS)
        self.executemany(
            f"INSERT INTO {EVENTS_TABLE_NAME} ({cols}) VALUES ({placeholders})",
            [tuple(r.get(c) for c in EVENT_COLUMNS) for r in rows],
        )

        dt_ms = (time.perf_counter() - t0) * 1000.0
        return DuckDBWriteResult(num_events=len(rows), duration_ms=dt_ms)

    def count_events(self, session_id: str | None = None) -> int:
        """
        Convenience method for sanity checks/tests.
        """
        if session_id is None:
            res = self.fetchone(f"SELECT COUNT(*) FROM {EVENTS_TABLE_NAME}")
        else:
            res = self.fetchone(
                f"SELECT COUNT(*) FROM {EVENTS_TABLE_NAME} WHERE session_id = ?",
                [session_id],
            )
        return int(res[0]) if res else 0

    # ----------------------------
    # Internal helpers
    # ----------------------------

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.lock_timeout_seconds):
            raise StorageUnavailable(
                f"timed out after {self.lock_timeout_seconds}s waiting for storage ({self.path})"
            )
        try:
            yield
        finally:
            self._lock.release()

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except _TRANSIENT_ERRORS as e:
            raise StorageUnavailable(str(e)) from e
