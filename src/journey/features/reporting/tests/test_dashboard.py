from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from journey.core.config import DEFAULT_FUNNEL_STEPS
from journey.core.ids import IdsService
from journey.core.types import TimeWindow
from journey.features.conversion.service import ConversionRecorder
from journey.features.conversion.types import OrderData
from journey.features.events.service import EventService
from journey.features.funnel.service import FunnelAggregator
from journey.features.journeys.service import JourneyAssembler
from journey.features.persistence.duckdb_adapter import DuckDBAdapter
from journey.features.persistence.service import PersistenceService
from journey.features.realtime.service import RealtimeAggregator
from journey.features.reporting.service import DashboardService
from journey.features.reporting.types import Trend, window_for
from journey.features.rollups.service import RollupAggregator
from journey.features.rollups.types import AdSpendRecord, DailyMetricsDelta
from journey.features.sessions.service import SessionTracker
from journey.features.sessions.types import TrackingContext

NOW = datetime(2026, 9, 10, 12, 0, tzinfo=UTC)


class Harness:
    def __init__(self) -> None:
        self.adapter = DuckDBAdapter(path=":memory:", clean_slate=False)
        self.persistence = PersistenceService(
            adapter=self.adapter, every_n_events=1_000_000, or_every_seconds=10_000.0
        )
        self.persistence.open()
        ids = IdsService("rep")
        clock = lambda: NOW  # noqa: E731
        flush = lambda: self.persistence.flush(reason="query")  # noqa: E731
        self.sessions = SessionTracker(adapter=self.adapter, ids=ids, clock=clock)
        self.rollups = RollupAggregator(adapter=self.adapter, clock=clock)
        self.events = EventService(persistence=self.persistence, ids=ids, clock=clock)
        self.conversions = ConversionRecorder(
            adapter=self.adapter,
            sessions=self.sessions,
            assembler=JourneyAssembler(adapter=self.adapter),
            rollups=self.rollups,
            clock=clock,
        )
        self.dashboard = DashboardService(
            adapter=self.adapter,
            funnel=FunnelAggregator(adapter=self.adapter, before_query=flush, clock=clock),
            realtime=RealtimeAggregator(adapter=self.adapter, before_query=flush, clock=clock),
            rollups=self.rollups,
            funnel_steps=DEFAULT_FUNNEL_STEPS,
            before_query=flush,
            clock=clock,
        )

    def visit(self, session_id: str, visitor_id: str, ts: datetime, **ctx) -> None:
        context = TrackingContext(**ctx)
        self.sessions.record_activity(session_id, visitor_id, context, ts)
        self.sessions.record_touchpoint(session_id, context, ts, session_start=True)

    def buy(self, order_id: str, session_id: str, value: float, ts: datetime) -> None:
        self.conversions.record_conversion(
            OrderData(order_id=order_id, total_value=value, session_id=session_id, created_at=ts)
        )


@pytest.fixture()
def h():
    harness = Harness()
    yield harness
    harness.persistence.close()


def test_trend_compare() -> None:
    assert Trend.compare(12, 10).trend == "up"
    assert Trend.compare(12, 10).change == pytest.approx(20.0)
    assert Trend.compare(5, 10).trend == "down"
    assert Trend.compare(3, 0).change == 100.0
    assert Trend.compare(0, 0) == Trend(value=0, previous=0, change=0.0, trend="flat")


def test_window_for_falls_back_to_seven_days() -> None:
    assert window_for("30d", now=NOW).span == timedelta(days=30)
    assert window_for("bogus", now=NOW).span == timedelta(days=7)
    assert window_for(None, now=NOW).end == NOW


def test_overview_compares_with_previous_window(h) -> None:
    window = TimeWindow.last(timedelta(days=7), now=NOW)
    h.visit("old", "v0", NOW - timedelta(days=10))
    h.visit("a", "v1", NOW - timedelta(days=2))
    h.visit("b", "v1", NOW - timedelta(days=1))
    h.visit("c", "v2", NOW - timedelta(hours=1))
    h.buy("o1", "a", 50.0, NOW - timedelta(days=2))
    h.buy("o2", "old", 20.0, NOW - timedelta(days=9))

    ov = h.dashboard.overview(window)

    assert ov.total_sessions.value == 3
    assert ov.total_sessions.previous == 1
    assert ov.total_sessions.trend == "up"
    assert ov.unique_visitors.value == 2
    assert ov.revenue.value == pytest.approx(50.0)
    assert ov.revenue.change == pytest.approx(150.0)
    assert ov.conversion_rate == pytest.approx(100 / 3)
    assert ov.avg_order_value == pytest.approx(50.0)


def test_attribution_by_channel_uses_first_click_and_real_spend(h) -> None:
    window = TimeWindow.last(timedelta(days=7), now=NOW)
    h.visit("g1", "v1", NOW - timedelta(days=1), utm_source="google", utm_medium="cpc",
            utm_campaign="spring")
    h.visit("g2", "v2", NOW - timedelta(hours=5), utm_source="google", utm_medium="cpc",
            utm_campaign="spring")
    h.visit("m1", "v3", NOW - timedelta(hours=3), utm_source="meta", utm_medium="paid_social",
            utm_campaign="q3")
    h.visit("d1", "v4", NOW - timedelta(hours=2))
    h.buy("o1", "g1", 120.0, NOW - timedelta(hours=20))
    h.rollups.apply_ad_spend(
        AdSpendRecord(source="google", medium="cpc", campaign="spring", spend=40.0)
    )

    rows = {r.channel: r for r in h.dashboard.attribution_by_channel(window)}

    assert set(rows) == {"google / cpc", "meta / paid_social"}
    g = rows["google / cpc"]
    assert (g.sessions, g.conversions) == (2, 1)
    assert g.revenue == pytest.approx(120.0)
    assert g.roas == pytest.approx(3.0)
    assert rows["meta / paid_social"].roas == 0.0


def test_timeline_is_zero_filled(h) -> None:
    h.rollups.increment_daily_metric(NOW - timedelta(days=1), DailyMetricsDelta(sessions=4))
    points = h.dashboard.timeline(TimeWindow.last(timedelta(days=3), now=NOW))

    assert [p.date for p in points] == ["2026-09-07", "2026-09-08", "2026-09-09", "2026-09-10"]
    assert [p.sessions for p in points] == [0, 0, 4, 0]


def test_recent_sessions_show_conversion_status(h) -> None:
    h.visit("s1", "v1", NOW - timedelta(minutes=30), utm_source="email", utm_medium="email")
    h.visit("s2", "v2", NOW - timedelta(minutes=10))
    h.buy("o1", "s1", 30.0, NOW - timedelta(minutes=5))

    recent = h.dashboard.recent_sessions()

    assert [r.session_id for r in recent] == ["s2", "s1"]
    assert recent[0].source == "direct" and not recent[0].converted
    assert recent[1].converted and recent[1].value == pytest.approx(30.0)


def test_performance_and_bounce_rate(h) -> None:
    h.visit("s1", "v1", NOW - timedelta(hours=1))
    h.visit("s2", "v2", NOW - timedelta(hours=1))
    h.events.emit(event_name="page_view", session_id="s1", ts=NOW, load_time=1500.0, lcp_time=900)
    h.events.emit(event_name="page_view", session_id="s2", ts=NOW, load_time=500.0, lcp_time=300)
    h.events.emit(event_name="add_to_cart", session_id="s2", ts=NOW)

    perf = h.dashboard.performance(TimeWindow.last(timedelta(days=1), now=NOW))

    assert perf.avg_load_time_s == pytest.approx(1.0)
    assert perf.avg_lcp_ms == pytest.approx(600.0)
    assert perf.avg_fid_ms == 0.0
    assert perf.bounce_rate == pytest.approx(50.0)


def test_product_summary(h) -> None:
    for _ in range(3):
        h.events.emit(event_name="product_view", session_id="s", ts=NOW,
                      payload={"productName": "Mug"})
    h.events.emit(event_name="product_view", session_id="s", ts=NOW, payload={"productName": "Cap"})
    h.events.emit(event_name="add_to_cart", session_id="s", ts=NOW, payload={"productName": "Mug"})
    h.events.emit(event_name="add_to_cart_click", session_id="s", ts=NOW)
    h.events.emit(event_name="scroll_depth", session_id="s", ts=NOW, scroll_depth=40.0)
    h.events.emit(event_name="scroll_depth", session_id="s", ts=NOW, payload={"depth": 80})
    h.buy("o1", "s", 12.5, NOW)

    summary = h.dashboard.product_summary(TimeWindow.last(timedelta(days=1), now=NOW))

    assert summary.product_views == 4
    assert summary.add_to_carts == 2
    assert (summary.sales, summary.revenue) == (1, pytest.approx(12.5))
    assert summary.avg_scroll_depth == pytest.approx(60.0)
    assert summary.top_products[0].name == "Mug"
    assert summary.top_products[0].add_to_carts == 1


def test_landing_summary(h) -> None:
    h.visit("s1", "v1", NOW - timedelta(minutes=5))
    h.visit("s2", "v2", NOW - timedelta(minutes=5))
    h.events.emit(event_name="time_on_page", session_id="s1", ts=NOW, time_on_page=30.0)
    h.events.emit(event_name="time_on_page", session_id="s2", ts=NOW, payload={"timeOnPage": 10})
    h.events.emit(event_name="page_exit", session_id="s1", ts=NOW, time_on_page=4.0)
    h.events.emit(event_name="exit_intent", session_id="s1", ts=NOW)
    for _ in range(2):
        h.events.emit(event_name="button_click", session_id="s2", ts=NOW,
                      payload={"buttonName": "Buy", "buttonLocation": "hero"})

    summary = h.dashboard.landing_summary(TimeWindow.last(timedelta(days=1), now=NOW))

    assert summary.sessions == 2
    assert summary.bounce_rate == pytest.approx(50.0)
    assert summary.avg_time_on_page == pytest.approx(20.0)
    assert summary.exit_intent == 1
    assert summary.button_clicks == {"Buy-hero": 2}
    assert summary.top_buttons[0].clicks == 2


def test_dashboard_payload_shape(h) -> None:
    h.visit("s1", "v1", NOW - timedelta(minutes=5), utm_source="google", utm_medium="cpc")
    h.events.emit(event_name="page_view", session_id="s1", ts=NOW - timedelta(minutes=5),
                  page_url="/")

    data = h.dashboard.dashboard("7d")

    assert set(data) == {
        "overview",
        "funnel",
        "attribution",
        "timeline",
        "recentSessions",
        "realTime",
        "performance",
        "lastUpdated",
    }
    assert data["funnel"][0] == {
        "step": "Landing Page Views",
        "visitors": 1,
        "conversionRate": 100.0,
        "dropOff": 0,
    }
    assert data["realTime"]["topPages"] == [{"page": "/", "visitors": 1}]
    assert data["lastUpdated"] == NOW.isoformat()
    assert len(data["timeline"]) == 8
