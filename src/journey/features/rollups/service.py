from __future__ import annotations

from dataclasses import fields
from datetime import date, datetime
from zoneinfo import ZoneInfo

from journey.core.logging import get_logger
from journey.core.types import Clock, ensure_utc, to_db_ts, utc_now
from journey.features.persistence.duckdb_adapter import DuckDBAdapter
from journey.features.persistence.schema import CAMPAIGNS_TABLE_NAME, DAILY_METRICS_TABLE_NAME

from .types import AdSpendRecord, CampaignStats, DailyMetrics, DailyMetricsDelta, MetricsDelta

_CAMPAIGN_COUNTERS = tuple(f.name for f in fields(MetricsDelta))
_DAILY_COUNTERS = tuple(f.name for f in fields(DailyMetricsDelta))


def _upsert_increment_sql(
    table: str,
    keys: tuple[str, ...],
    extra: tuple[str, ...],
    counters: tuple[str, ...],
) -> str:
    cols = keys + extra + counters + ("updated_at",)
    sets = [f"{c} = {c} + EXCLUDED.{c}" for c in counters]
    sets.append("updated_at = greatest(updated_at, EXCLUDED.updated_at)")
    return f"""
        INSERT INTO {table} ({", ".join(cols)})
        VALUES ({", ".join("?" for _ in cols)})
        ON CONFLICT ({", ".join(keys)}) DO UPDATE SET {", ".join(sets)}
    """


_CAMPAIGN_UPSERT = _upsert_increment_sql(
    CAMPAIGNS_TABLE_NAME,
    ("source", "medium", "campaign"),
    ("name", "created_at"),
    _CAMPAIGN_COUNTERS,
)
_DAILY_UPSERT = _upsert_increment_sql(
    DAILY_METRICS_TABLE_NAME, ("metric_date",), (), _DAILY_COUNTERS
)


class RollupAggregator:
    """
    Incremental campaign and daily counters.

    Every increment is one INSERT ... ON CONFLICT DO UPDATE SET x = x + EXCLUDED.x
    statement, so concurrent increments on the same key never lose updates.
    """

    def __init__(
        self,
        *,
        adapter: DuckDBAdapter,
        reporting_timezone: str = "UTC",
        clock: Clock = utc_now,
    ) -> None:
        self.adapter = adapter
        self.tz = ZoneInfo(reporting_timezone)
        self._clock = clock
        self._logger = get_logger(__name__)

    def local_date(self, when: date | datetime) -> date:
        """Calendar day of `when` in the reporting timezone."""
        if isinstance(when, datetime):
            return ensure_utc(when).astimezone(self.tz).date()
        return when

    # ----------------------------
    # Writes
    # ----------------------------

    def increment_campaign(
        self,
        source: str,
        medium: str,
        campaign: str,
        delta: MetricsDelta,
        *,
        name: str | None = None,
    ) -> None:
        if not (source and medium and campaign):
            raise ValueError("campaign key needs source, medium and campaign")
        now = to_db_ts(self._clock())
        self.adapter.execute(
            _CAMPAIGN_UPSERT,
            [source, medium, campaign, name or campaign, now]
            + [getattr(delta, c) for c in _CAMPAIGN_COUNTERS]
            + [now],
        )
        self._logger.debug(
            "campaign_incremented",
            extra={"feature": "rollups", "reason": f"{source}/{medium}/{campaign}"},
        )

    def increment_daily_metric(self, when: date | datetime, delta: DailyMetricsDelta) -> date:
        day = self.local_date(when)
        self.adapter.execute(
            _DAILY_UPSERT,
            [day] + [getattr(delta, c) for c in _DAILY_COUNTERS] + [to_db_ts(self._clock())],
        )
        return day

    def apply_ad_spend(self, record: AdSpendRecord) -> None:
        """Fold a connector's spend/delivery record into its campaign counters."""
        self.increment_campaign(
            record.source,
            record.medium,
            record.campaign,
            MetricsDelta(impressions=record.impressions, clicks=record.clicks, spend=record.spend),
            name=record.name,
        )

    # ----------------------------
    # Reads
    # ----------------------------

    def campaign_stats(
        self,
        *,
        source: str | None = None,
        medium: str | None = None,
        campaign: str | None = None,
    ) -> list[CampaignStats]:
        where: list[str] = []
        params: list[str] = []
        for col, val in (("source", source), ("medium", medium), ("campaign", campaign)):
            if val is not None:
                where.append(f"{col} = ?")
                params.append(val)
        clause = f"WHERE {' AND '.join(where)}" if where else ""
        rows = self.adapter.fetch_dicts(
            f"""
            SELECT source, medium, campaign, name, {", ".join(_CAMPAIGN_COUNTERS)}
            FROM {CAMPAIGNS_TABLE_NAME}
            {clause}
            ORDER BY revenue DESC, source, medium, campaign
            """,
            params,
        )
        return [CampaignStats(**r) for r in rows]

    def get_campaign(self, source: str, medium: str, campaign: str) -> CampaignStats | None:
        rows = self.campaign_stats(source=source, medium=medium, campaign=campaign)
        return rows[0] if rows else None

    def daily_metrics(self, start: date, end: date) -> list[DailyMetrics]:
        rows = self.adapter.fetch_dicts(
            f"""
            SELECT metric_date, {", ".join(_DAILY_COUNTERS)}
            FROM {DAILY_METRICS_TABLE_NAME}
            WHERE metric_date BETWEEN ? AND ?
            ORDER BY metric_date
            """,
            [start, end],
        )
        return [DailyMetrics(**r) for r in rows]
