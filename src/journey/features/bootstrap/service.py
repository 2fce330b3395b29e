from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from journey.core.config import EngineConfig
from journey.core.ids import IdsService
from journey.core.logging import get_logger, set_level
from journey.core.types import Clock, utc_now
from journey.features.conversion.service import ConversionRecorder
from journey.features.events.service import EventService
from journey.features.funnel.service import FunnelAggregator
from journey.features.ingest.service import IngestService
from journey.features.journeys.service import JourneyAssembler
from journey.features.persistence.duckdb_adapter import DuckDBAdapter
from journey.features.persistence.service import PersistenceService
from journey.features.realtime.service import RealtimeAggregator, RealtimeWindows
from journey.features.reporting.service import DashboardService
from journey.features.rollups.service import RollupAggregator
from journey.features.sessions.service import SessionTracker, TrackerConfig


@dataclass
class Engine:
    """Every service of one engine instance, sharing one adapter and one clock."""

    cfg: EngineConfig
    clock: Clock
    ids: IdsService
    adapter: DuckDBAdapter
    persistence: PersistenceService
    sessions: SessionTracker
    events: EventService
    assembler: JourneyAssembler
    rollups: RollupAggregator
    conversions: ConversionRecorder
    funnel: FunnelAggregator
    realtime: RealtimeAggregator
    reporting: DashboardService
    ingest: IngestService

    def flush(self, reason: str = "query") -> None:
        self.persistence.flush(reason=reason)

    def close(self) -> None:
        self.persistence.close()

    def __enter__(self) -> Engine:
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def bootstrap_engine(cfg: EngineConfig, *, clock: Clock | None = None) -> Engine:
    clock = clock or utc_now
    logger = get_logger("journey", cfg.logging.level)
    ids = IdsService()

    # ----- cold storage -----
    adapter = DuckDBAdapter(
        path=cfg.storage.duckdb_path,
        clean_slate=cfg.storage.clean_slate,
        lock_timeout_seconds=cfg.storage.lock_timeout_seconds,
    )
    persistence = PersistenceService(
        adapter=adapter,
        every_n_events=cfg.storage.flush.every_n_events,
        or_every_seconds=cfg.storage.flush.or_every_seconds,
    )
    persistence.open()

    # Reads must see buffered events.
    def flush_for_query() -> None:
        persistence.flush(reason="query")

    # ----- core -----
    sessions = SessionTracker(
        adapter=adapter,
        ids=ids,
        cfg=TrackerConfig(inactivity_timeout_minutes=cfg.sessions.inactivity_timeout_minutes),
        clock=clock,
    )
    events = EventService(persistence=persistence, ids=ids, clock=clock)
    assembler = JourneyAssembler(adapter=adapter)
    rollups = RollupAggregator(
        adapter=adapter, reporting_timezone=cfg.rollups.reporting_timezone, clock=clock
    )
    conversions = ConversionRecorder(
        adapter=adapter,
        sessions=sessions,
        assembler=assembler,
        rollups=rollups,
        half_life=timedelta(days=cfg.attribution.half_life_days),
        clock=clock,
    )

    # ----- read side -----
    funnel = FunnelAggregator(adapter=adapter, before_query=flush_for_query, clock=clock)
    realtime = RealtimeAggregator(
        adapter=adapter,
        windows=RealtimeWindows(
            active=timedelta(minutes=cfg.realtime.active_window_minutes),
            conversions=timedelta(minutes=cfg.realtime.conversions_window_minutes),
            top_pages_limit=cfg.realtime.top_pages_limit,
        ),
        cache_ttl_seconds=cfg.realtime.cache_ttl_seconds,
        before_query=flush_for_query,
        clock=clock,
    )
    reporting = DashboardService(
        adapter=adapter,
        funnel=funnel,
        realtime=realtime,
        rollups=rollups,
        funnel_steps=cfg.funnel_steps,
        before_query=flush_for_query,
        clock=clock,
    )

    # ----- ingress -----
    ingest = IngestService(
        sessions=sessions,
        events=events,
        conversions=conversions,
        rollups=rollups,
        clock=clock,
    )

    set_level(cfg.logging.level)
    logger.info(
        "engine_started",
        extra={"feature": "bootstrap", "duckdb_path": cfg.storage.duckdb_path},
    )
    return Engine(
        cfg=cfg,
        clock=clock,
        ids=ids,
        adapter=adapter,
        persistence=persistence,
        sessions=sessions,
        events=events,
        assembler=assembler,
        rollups=rollups,
        conversions=conversions,
        funnel=funnel,
        realtime=realtime,
        reporting=reporting,
        ingest=ingest,
    )
