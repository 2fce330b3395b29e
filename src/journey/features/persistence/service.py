from __future__ import annotations

import threading
import time
from typing import Any

from journey.core.errors import StorageUnavailable
from journey.core.logging import get_logger

from .duckdb_adapter import DuckDBAdapter


class PersistenceService:
    """
    Buffered sink for the append-only event log + flush policy.
    - Hot: buffer in memory
    - Cold: DuckDB

    Flushes when the buffer reaches `every_n_events`, when the oldest buffered
    row is older than `or_every_seconds`, on demand (query-time reads), on a
    SimPy timer when one is started, and at shutdown.
    """

    def __init__(
        self,
        *,
        adapter: DuckDBAdapter,
        every_n_events: int,
        or_every_seconds: float,
    ) -> None:
        self.adapter = adapter
        self.every_n_events = int(every_n_events)
        self.or_every_seconds = float(or_every_seconds)

        self._buf: list[dict[str, Any]] = []
        self._buf_lock = threading.Lock()
        self._oldest_monotonic: float | None = None
        self._logger = get_logger(__name__)

        self._is_open = False
        self._periodic_proc_started = False

    @property
    def buffered(self) -> int:
        return len(self._buf)

    def open(self) -> None:
        if self._is_open:
            return
        self.adapter.open()
        self._is_open = True

    def append(self, row: dict[str, Any]) -> None:
        if not self._is_open:
            raise RuntimeError("PersistenceService not open. Call open() during bootstrap.")

        with self._buf_lock:
            if not self._buf:
                self._oldest_monotonic = time.monotonic()
            self._buf.append(row)
            n = len(self._buf)
            age = time.monotonic() - (self._oldest_monotonic or time.monotonic())

        if self.every_n_events > 0 and n >= self.every_n_events:
            self.flush(reason="count")
        elif self.or_every_seconds > 0 and age >= self.or_every_seconds:
            self.flush(reason="age")

    def flush(self, *, reason: str) -> None:
        with self._buf_lock:
            if not self._buf:
                return
            rows = list(self._buf)
            self._buf.clear()
            self._oldest_monotonic = None

        try:
            result = self.adapter.write_events(rows)
        except StorageUnavailable:
            # keep the batch for the next flush attempt
            with self._buf_lock:
                self._buf[:0] = rows
                if self._oldest_monotonic is None:
                    self._oldest_monotonic = time.monotonic()
            raise

        self._logger.info(
            "flush",
            extra={
                "feature": "persistence",
                "reason": reason,
                "duckdb_path": self.adapter.path,
                "num_events": result.num_events,
                "duration_ms": result.duration_ms,
            },
        )

    def close(self) -> None:
        if not self._is_open:
            return
        # final flush
        self.flush(reason="shutdown")
        self.adapter.close()
        self._is_open = False

    def start_periodic_flush(self, env) -> None:
        """
        Start a SimPy process that flushes every `or_every_seconds` of simulated time.
        Used by event-time replay. Call once after env is created.
        """
        if self._periodic_proc_started or self.or_every_seconds <= 0:
            return
        self._periodic_proc_started = True
        env.process(self._periodic_flush_proc(env))

    def _periodic_flush_proc(self, env):
        while True:
            yield env.timeout(self.or_every_seconds)
            self.flush(reason="timer")
