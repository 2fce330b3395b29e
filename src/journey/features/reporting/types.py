from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

from journey.core.types import TimeWindow

TrendDirection = Literal["up", "down", "flat"]

# Dashboard range selectors; anything else falls back to DEFAULT_TIME_RANGE.
TIME_RANGES: dict[str, timedelta] = {
    "1d": timedelta(days=1),
    "24h": timedelta(days=1),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
}
DEFAULT_TIME_RANGE = "7d"


def window_for(time_range: str | None, *, now: datetime) -> TimeWindow:
    span = TIME_RANGES.get(time_range or DEFAULT_TIME_RANGE, TIME_RANGES[DEFAULT_TIME_RANGE])
    return TimeWindow.last(span, now=now)


@dataclass(frozen=True)
class Trend:
    """A counter for the window plus its change against the preceding window."""

    value: float
    previous: float
    change: float
    trend: TrendDirection

    @classmethod
    def compare(cls, current: float, previous: float) -> Trend:
        if previous:
            change = (current - previous) / previous * 100.0
        else:
            change = 100.0 if current else 0.0
        direction: TrendDirection = (
            "up" if current > previous else "down" if current < previous else "flat"
        )
        return cls(value=current, previous=previous, change=change, trend=direction)

    def to_payload(self) -> dict[str, Any]:
        return {"value": self.value, "change": self.change, "trend": self.trend}


@dataclass(frozen=True)
class Overview:
    total_sessions: Trend
    unique_visitors: Trend
    conversions: Trend
    revenue: Trend

    @property
    def conversion_rate(self) -> float:
        s = self.total_sessions.value
        return self.conversions.value / s * 100.0 if s else 0.0

    @property
    def avg_order_value(self) -> float:
        c = self.conversions.value
        return self.revenue.value / c if c else 0.0

    def to_payload(self) -> dict[str, Any]:
        return {
            "totalSessions": self.total_sessions.to_payload(),
            "uniqueVisitors": self.unique_visitors.to_payload(),
            "conversions": self.conversions.to_payload(),
            "revenue": self.revenue.to_payload(),
            "conversionRate": self.conversion_rate,
            "avgOrderValue": self.avg_order_value,
        }


@dataclass(frozen=True)
class ChannelAttribution:
    source: str
    medium: str
    sessions: int
    conversions: int
    revenue: float
    spend: float

    @property
    def channel(self) -> str:
        return f"{self.source} / {self.medium}"

    @property
    def roas(self) -> float:
        return self.revenue / self.spend if self.spend else 0.0

    def to_payload(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "sessions": self.sessions,
            "conversions": self.conversions,
            "revenue": self.revenue,
            "spend": self.spend,
            "roas": self.roas,
        }


@dataclass(frozen=True)
class TimelinePoint:
    date: str
    sessions: int
    conversions: int
    revenue: float


@dataclass(frozen=True)
class RecentSession:
    session_id: str
    created_at: datetime
    source: str
    medium: str
    campaign: str
    converted: bool
    value: float

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.session_id,
            "timestamp": self.created_at.isoformat(),
            "source": self.source,
            "medium": self.medium,
            "campaign": self.campaign,
            "converted": self.converted,
            "value": self.value,
        }


@dataclass(frozen=True)
class Performance:
    avg_load_time_s: float
    avg_lcp_ms: float
    avg_fid_ms: float
    bounce_rate: float

    def to_payload(self) -> dict[str, Any]:
        return {
            "avgLoadTime": self.avg_load_time_s,
            "avgLCP": self.avg_lcp_ms,
            "avgFID": self.avg_fid_ms,
            "bounceRate": self.bounce_rate,
        }


@dataclass(frozen=True)
class ProductStat:
    name: str
    views: int = 0
    add_to_carts: int = 0


@dataclass(frozen=True)
class ProductSummary:
    product_views: int
    add_to_carts: int
    checkouts: int
    sales: int
    revenue: float
    avg_scroll_depth: float
    top_products: tuple[ProductStat, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        return {
            "productViews": self.product_views,
            "addToCarts": self.add_to_carts,
            "checkouts": self.checkouts,
            "sales": self.sales,
            "revenue": self.revenue,
            "avgScrollDepth": self.avg_scroll_depth,
            "topProducts": [
                {"name": p.name, "views": p.views, "addToCarts": p.add_to_carts}
                for p in self.top_products
            ],
        }


@dataclass(frozen=True)
class ButtonStat:
    name: str
    location: str
    clicks: int


@dataclass(frozen=True)
class LandingSummary:
    sessions: int
    bounce_rate: float
    avg_time_on_page: float
    exit_intent: int
    button_clicks: dict[str, int] = field(default_factory=dict)
    top_buttons: tuple[ButtonStat, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        return {
            "sessions": self.sessions,
            "bounceRate": self.bounce_rate,
            "avgTimeOnPage": self.avg_time_on_page,
            "exitIntent": self.exit_intent,
            "buttonClicks": dict(self.button_clicks),
            "topButtons": [
                {"name": b.name, "location": b.location, "clicks": b.clicks}
                for b in self.top_buttons
            ],
        }
