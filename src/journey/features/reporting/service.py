from __future__ import annotations

import json
from collections import Counter
from collections.abc import Callable, Sequence
from datetime import timedelta
from typing import Any

from journey.core.logging import get_logger
from journey.core.types import Clock, TimeWindow, from_db_ts, to_db_ts, utc_now
from journey.features.events.schema import (
    ADD_TO_CART,
    CHECKOUT_STARTED,
    PAGE_VIEW,
    PRODUCT_VIEW,
)
from journey.features.funnel.service import FunnelAggregator
from journey.features.funnel.types import StepDefinition
from journey.features.persistence.duckdb_adapter import DuckDBAdapter
from journey.features.persistence.schema import (
    CAMPAIGNS_TABLE_NAME,
    CONVERSIONS_TABLE_NAME,
    EVENTS_TABLE_NAME,
    SESSIONS_TABLE_NAME,
)
from journey.features.realtime.service import RealtimeAggregator
from journey.features.rollups.service import RollupAggregator

from .types import (
    ButtonStat,
    ChannelAttribution,
    LandingSummary,
    Overview,
    Performance,
    ProductStat,
    ProductSummary,
    RecentSession,
    TimelinePoint,
    Trend,
    window_for,
)

ADD_TO_CART_NAMES = (ADD_TO_CART, "add_to_cart_click")
SCROLL_DEPTH = "scroll_depth"
TIME_ON_PAGE = "time_on_page"
EXIT_INTENT = "exit_intent"
PAGE_EXIT = "page_exit"
BUTTON_CLICK = "button_click"

# A page exit after less than this many seconds counts as a bounce.
BOUNCE_SECONDS = 10.0
TOP_N = 5

_ATTRIBUTION_SQL = f"""
WITH s AS (
    SELECT utm_source AS source, coalesce(utm_medium, 'Unknown') AS medium,
           COUNT(*) AS sessions
    FROM {SESSIONS_TABLE_NAME}
    WHERE utm_source IS NOT NULL AND created_at BETWEEN $start AND $end
    GROUP BY 1, 2
),
c AS (
    SELECT first_click_utm_source AS source,
           coalesce(first_click_utm_medium, 'Unknown') AS medium,
           COUNT(*) AS conversions, SUM(total_value) AS revenue
    FROM {CONVERSIONS_TABLE_NAME}
    WHERE first_click_utm_source IS NOT NULL AND created_at BETWEEN $start AND $end
    GROUP BY 1, 2
),
sp AS (
    SELECT source, medium, SUM(spend) AS spend
    FROM {CAMPAIGNS_TABLE_NAME}
    GROUP BY 1, 2
)
SELECT s.source, s.medium, s.sessions,
       coalesce(c.conversions, 0) AS conversions,
       coalesce(c.revenue, 0) AS revenue,
       coalesce(sp.spend, 0) AS spend
FROM s
LEFT JOIN c ON c.source = s.source AND c.medium = s.medium
LEFT JOIN sp ON sp.source = s.source AND sp.medium = s.medium
ORDER BY revenue DESC, s.source, s.medium
"""

_RECENT_SESSIONS_SQL = f"""
SELECT s.session_id, s.created_at, s.utm_source, s.utm_medium, s.utm_campaign,
       c.order_id IS NOT NULL AS converted,
       coalesce(c.total_value, 0) AS value
FROM {SESSIONS_TABLE_NAME} s
LEFT JOIN (
    SELECT session_id,
           arg_min(order_id, created_at) AS order_id,
           arg_min(total_value, created_at) AS total_value
    FROM {CONVERSIONS_TABLE_NAME}
    WHERE session_id IS NOT NULL
    GROUP BY session_id
) c ON c.session_id = s.session_id
ORDER BY s.created_at DESC, s.session_id
LIMIT ?
"""


def _payload(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    data = json.loads(raw)
    return data if isinstance(data, dict) else {}


def _num(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


class DashboardService:
    """
    Read-only aggregates for the presentation layer.

    Every query reads committed rows only; `before_query` (normally a
    persistence flush) runs first so buffered events are visible.
    """

    def __init__(
        self,
        *,
        adapter: DuckDBAdapter,
        funnel: FunnelAggregator,
        realtime: RealtimeAggregator,
        rollups: RollupAggregator,
        funnel_steps: Sequence[StepDefinition],
        before_query: Callable[[], None] | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.adapter = adapter
        self.funnel = funnel
        self.realtime = realtime
        self.rollups = rollups
        self.funnel_steps = tuple(funnel_steps)
        self._before_query = before_query
        self._clock = clock
        self._logger = get_logger(__name__)

    # ----------------------------
    # Public API
    # ----------------------------

    def dashboard(self, time_range: str | None = None) -> dict[str, Any]:
        """The combined dashboard payload for a range selector such as '7d'."""
        now = self._clock()
        window = window_for(time_range, now=now)
        self._flush()

        data = {
            "overview": self.overview(window).to_payload(),
            "funnel": [
                r.to_payload() for r in self.funnel.compute_funnel(self.funnel_steps, window)
            ],
            "attribution": [c.to_payload() for c in self.attribution_by_channel(window)],
            "timeline": [vars(p) for p in self.timeline(window)],
            "recentSessions": [s.to_payload() for s in self.recent_sessions()],
            "realTime": self.realtime.snapshot().to_payload(),
            "performance": self.performance(window).to_payload(),
            "lastUpdated": now.isoformat(),
        }
        self._logger.info(
            "dashboard_built",
            extra={"feature": "reporting", "reason": f"time_range={time_range}"},
        )
        return data

    def overview(self, window: TimeWindow) -> Overview:
        self._flush()
        cur = self._overview_counts(window)
        prev = self._overview_counts(window.previous())
        return Overview(
            total_sessions=Trend.compare(cur[0], prev[0]),
            unique_visitors=Trend.compare(cur[1], prev[1]),
            conversions=Trend.compare(cur[2], prev[2]),
            revenue=Trend.compare(cur[3], prev[3]),
        )

    def attribution_by_channel(self, window: TimeWindow) -> list[ChannelAttribution]:
        """
        Sessions per (utm_source, utm_medium) with the conversions and revenue
        whose first click came from the same pair. Spend is the lifetime spend
        recorded on matching campaigns; ROAS is 0 without spend.
        """
        self._flush()
        rows = self.adapter.fetch_dicts(
            _ATTRIBUTION_SQL,
            {"start": to_db_ts(window.start), "end": to_db_ts(window.end)},
        )
        return [
            ChannelAttribution(
                source=r["source"],
                medium=r["medium"],
                sessions=int(r["sessions"]),
                conversions=int(r["conversions"]),
                revenue=float(r["revenue"]),
                spend=float(r["spend"]),
            )
            for r in rows
        ]

    def timeline(self, window: TimeWindow) -> list[TimelinePoint]:
        """One point per reporting-timezone day in the window, zero-filled."""
        start = self.rollups.local_date(window.start)
        end = self.rollups.local_date(window.end)
        by_day = {m.metric_date: m for m in self.rollups.daily_metrics(start, end)}

        points: list[TimelinePoint] = []
        day = start
        while day <= end:
            m = by_day.get(day)
            points.append(
                TimelinePoint(
                    date=day.isoformat(),
                    sessions=m.sessions if m else 0,
                    conversions=m.conversions if m else 0,
                    revenue=m.revenue if m else 0.0,
                )
            )
            day += timedelta(days=1)
        return points

    def recent_sessions(self, limit: int = 10) -> list[RecentSession]:
        rows = self.adapter.fetch_dicts(_RECENT_SESSIONS_SQL, [int(limit)])
        return [
            RecentSession(
                session_id=r["session_id"],
                created_at=from_db_ts(r["created_at"]),
                source=r["utm_source"] or "direct",
                medium=r["utm_medium"] or "none",
                campaign=r["utm_campaign"] or "N/A",
                converted=bool(r["converted"]),
                value=float(r["value"]),
            )
            for r in rows
        ]

    def performance(self, window: TimeWindow) -> Performance:
        """
        Average page timings over page views in the window (load time in seconds,
        LCP/FID in ms). Bounce rate: share of sessions created in the window with
        no event other than page views.
        """
        self._flush()
        start, end = to_db_ts(window.start), to_db_ts(window.end)
        load, lcp, fid = self.adapter.fetchone(
            f"""
            SELECT avg(load_time), avg(lcp_time), avg(fid_time)
            FROM {EVENTS_TABLE_NAME}
            WHERE load_time IS NOT NULL AND ts BETWEEN ? AND ?
            """,
            [start, end],
        )
        total, single = self.adapter.fetchone(
            f"""
            SELECT COUNT(*),
                   coalesce(SUM(CASE WHEN e.session_id IS NULL THEN 1 ELSE 0 END), 0)
            FROM {SESSIONS_TABLE_NAME} s
            LEFT JOIN (
                SELECT DISTINCT session_id FROM {EVENTS_TABLE_NAME} WHERE event_name <> ?
            ) e ON e.session_id = s.session_id
            WHERE s.created_at BETWEEN ? AND ?
            """,
            [PAGE_VIEW, start, end],
        )
        return Performance(
            avg_load_time_s=(load or 0.0) / 1000.0,
            avg_lcp_ms=lcp or 0.0,
            avg_fid_ms=fid or 0.0,
            bounce_rate=(single / total * 100.0) if total else 0.0,
        )

    def product_summary(self, window: TimeWindow) -> ProductSummary:
        self._flush()
        start, end = to_db_ts(window.start), to_db_ts(window.end)
        names = (PRODUCT_VIEW, *ADD_TO_CART_NAMES, CHECKOUT_STARTED, SCROLL_DEPTH)
        rows = self.adapter.execute(
            f"""
            SELECT event_name, scroll_depth, payload_json
            FROM {EVENTS_TABLE_NAME}
            WHERE event_name IN ({", ".join("?" for _ in names)}) AND ts BETWEEN ? AND ?
            """,
            [*names, start, end],
        )
        sales, revenue = self.adapter.fetchone(
            f"""
            SELECT COUNT(*), coalesce(SUM(total_value), 0)
            FROM {CONVERSIONS_TABLE_NAME}
            WHERE created_at BETWEEN ? AND ?
            """,
            [start, end],
        )

        counts: Counter[str] = Counter()
        views: Counter[str] = Counter()
        carts: Counter[str] = Counter()
        depths: list[float] = []
        for name, depth, raw in rows:
            counts[name] += 1
            payload = _payload(raw)
            if name == SCROLL_DEPTH:
                depths.append(depth if depth is not None else _num(payload.get("depth")))
                continue
            product = (
                payload.get("productName")
                or payload.get("product_name")
                or payload.get("product_id")
                or "Unknown Product"
            )
            if name == PRODUCT_VIEW:
                views[str(product)] += 1
            elif name in ADD_TO_CART_NAMES:
                carts[str(product)] += 1

        top = sorted(views, key=lambda p: (-views[p], p))[:TOP_N]
        return ProductSummary(
            product_views=counts[PRODUCT_VIEW],
            add_to_carts=sum(counts[n] for n in ADD_TO_CART_NAMES),
            checkouts=counts[CHECKOUT_STARTED],
            sales=int(sales),
            revenue=float(revenue),
            avg_scroll_depth=sum(depths) / len(depths) if depths else 0.0,
            top_products=tuple(
                ProductStat(name=p, views=views[p], add_to_carts=carts[p]) for p in top
            ),
        )

    def landing_summary(self, window: TimeWindow) -> LandingSummary:
        """
        Landing-page engagement. A bounce is a page exit after less than
        BOUNCE_SECONDS on the page.
        """
        self._flush()
        start, end = to_db_ts(window.start), to_db_ts(window.end)
        (sessions,) = self.adapter.fetchone(
            f"SELECT COUNT(*) FROM {SESSIONS_TABLE_NAME} WHERE created_at BETWEEN ? AND ?",
            [start, end],
        )
        names = (TIME_ON_PAGE, EXIT_INTENT, PAGE_EXIT, BUTTON_CLICK)
        rows = self.adapter.execute(
            f"""
            SELECT event_name, time_on_page, payload_json
            FROM {EVENTS_TABLE_NAME}
            WHERE event_name IN ({", ".join("?" for _ in names)}) AND ts BETWEEN ? AND ?
            """,
            [*names, start, end],
        )

        times: list[float] = []
        exits = bounces = 0
        clicks: Counter[tuple[str, str]] = Counter()
        for name, seconds, raw in rows:
            payload = _payload(raw)
            if seconds is None:
                seconds = _num(payload.get("timeOnPage"))
            if name == TIME_ON_PAGE:
                times.append(seconds)
            elif name == EXIT_INTENT:
                exits += 1
            elif name == PAGE_EXIT:
                if seconds < BOUNCE_SECONDS:
                    bounces += 1
            else:
                key = (
                    str(payload.get("buttonName") or "Unknown"),
                    str(payload.get("buttonLocation") or "Unknown"),
                )
                clicks[key] += 1

        top = sorted(clicks, key=lambda k: (-clicks[k], k))[:TOP_N]
        return LandingSummary(
            sessions=int(sessions),
            bounce_rate=(bounces / sessions * 100.0) if sessions else 0.0,
            avg_time_on_page=sum(times) / len(times) if times else 0.0,
            exit_intent=exits,
            button_clicks={f"{n}-{loc}": c for (n, loc), c in clicks.items()},
            top_buttons=tuple(
                ButtonStat(name=n, location=loc, clicks=clicks[(n, loc)]) for n, loc in top
            ),
        )

    # ----------------------------
    # Internal helpers
    # ----------------------------

    def _flush(self) -> None:
        if self._before_query is not None:
            self._before_query()

    def _overview_counts(self, window: TimeWindow) -> tuple[int, int, int, float]:
        start, end = to_db_ts(window.start), to_db_ts(window.end)
        sessions, visitors = self.adapter.fetchone(
            f"""
            SELECT COUNT(*), COUNT(DISTINCT visitor_id)
            FROM {SESSIONS_TABLE_NAME}
            WHERE created_at BETWEEN ? AND ?
            """,
            [start, end],
        )
        conversions, revenue = self.adapter.fetchone(
            f"""
            SELECT COUNT(*), coalesce(SUM(total_value), 0)
            FROM {CONVERSIONS_TABLE_NAME}
            WHERE created_at BETWEEN ? AND ?
            """,
            [start, end],
        )
        return int(sessions), int(visitors), int(conversions), float(revenue)
