from __future__ import annotations

from collections.abc import Callable, Sequence

from journey.core.logging import get_logger
from journey.core.types import Clock, TimeWindow, from_db_ts, to_db_ts, utc_now
from journey.features.persistence.duckdb_adapter import DuckDBAdapter
from journey.features.persistence.schema import EVENTS_TABLE_NAME, FUNNEL_STEPS_TABLE_NAME

from .types import FunnelStepResult, StepDefinition, StoredFunnelStep, split_pattern


def funnel_rates(visitors: Sequence[int]) -> list[tuple[float, int]]:
    """
    (conversion_rate, drop_off) per step. Rates are relative to step 0, not the
    previous step. Step 0 is 100 by convention; later steps are 0 when step 0
    is empty.
    """
    out: list[tuple[float, int]] = []
    base = visitors[0] if visitors else 0
    for i, v in enumerate(visitors):
        if i == 0:
            out.append((100.0, 0))
        else:
            rate = (v / base) * 100.0 if base > 0 else 0.0
            out.append((rate, visitors[i - 1] - v))
    return out


class FunnelAggregator:
    """
    Exposure-based funnel over the raw event log: each step counts the distinct
    sessions with at least one matching event in the window, independently of
    the other steps.
    """

    def __init__(
        self,
        *,
        adapter: DuckDBAdapter,
        before_query: Callable[[], None] | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.adapter = adapter
        self._before_query = before_query
        self._clock = clock
        self._logger = get_logger(__name__)

    def count_sessions(self, event_pattern: str, window: TimeWindow) -> int:
        globs = split_pattern(event_pattern)
        match = " OR ".join("event_name GLOB ?" for _ in globs)
        row = self.adapter.fetchone(
            f"""
            SELECT COUNT(DISTINCT session_id)
            FROM {EVENTS_TABLE_NAME}
            WHERE ({match}) AND ts BETWEEN ? AND ?
            """,
            [*globs, to_db_ts(window.start), to_db_ts(window.end)],
        )
        return int(row[0]) if row and row[0] is not None else 0

    def compute_funnel(
        self, steps: Sequence[StepDefinition], window: TimeWindow
    ) -> list[FunnelStepResult]:
        if self._before_query is not None:
            self._before_query()

        visitors = [self.count_sessions(s.event_pattern, window) for s in steps]
        results = [
            FunnelStepResult(
                step=s.name,
                event_pattern=s.event_pattern,
                step_order=i,
                visitors=v,
                conversion_rate=rate,
                drop_off=drop,
            )
            for i, (s, v, (rate, drop)) in enumerate(
                zip(steps, visitors, funnel_rates(visitors), strict=True)
            )
        ]
        self._logger.debug(
            "funnel_computed",
            extra={"feature": "funnel", "num_events": sum(visitors)},
        )
        return results

    def refresh_funnel_steps(
        self, steps: Sequence[StepDefinition], window: TimeWindow
    ) -> list[FunnelStepResult]:
        """Recompute the funnel and overwrite the stored step counters."""
        results = self.compute_funnel(steps, window)
        now = to_db_ts(self._clock())
        base = results[0].visitors if results else 0

        rows = []
        for i, r in enumerate(results):
            prev = results[i - 1].visitors if i > 0 else r.visitors
            dropoff_rate = (r.drop_off / prev) * 100.0 if i > 0 and prev > 0 else 0.0
            rows.append(
                (r.step, r.step_order, r.event_pattern, base, r.visitors, dropoff_rate, now)
            )

        self.adapter.executemany(
            f"""
            INSERT INTO {FUNNEL_STEPS_TABLE_NAME}
                (name, step_order, event_pattern, total_sessions, completed_sessions,
                 dropoff_rate, refreshed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (name, step_order) DO UPDATE SET
                event_pattern = EXCLUDED.event_pattern,
                total_sessions = EXCLUDED.total_sessions,
                completed_sessions = EXCLUDED.completed_sessions,
                dropoff_rate = EXCLUDED.dropoff_rate,
                refreshed_at = EXCLUDED.refreshed_at
            """,
            rows,
        )
        self._logger.info(
            "funnel_refreshed",
            extra={"feature": "funnel", "num_events": len(rows)},
        )
        return results

    def stored_steps(self) -> list[StoredFunnelStep]:
        rows = self.adapter.fetch_dicts(
            f"SELECT * FROM {FUNNEL_STEPS_TABLE_NAME} ORDER BY step_order, name"
        )
        for r in rows:
            r["refreshed_at"] = from_db_ts(r["refreshed_at"])
        return [StoredFunnelStep(**r) for r in rows]
