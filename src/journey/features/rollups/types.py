from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from datetime import date
from typing import Any

from journey.core.types import finite_float

CHANNELS: tuple[str, ...] = ("organic", "paid", "social", "email", "referral", "direct")


def _ratio(num: float, den: float, scale: float = 1.0) -> float:
    return (num / den) * scale if den else 0.0


@dataclass(frozen=True)
class MetricsDelta:
    """Amounts added to one campaign's counters. Counters only ever grow."""

    impressions: int = 0
    clicks: int = 0
    sessions: int = 0
    conversions: int = 0
    revenue: float = 0.0
    spend: float = 0.0

    def __post_init__(self) -> None:
        for f in fields(self):
            if getattr(self, f.name) < 0:
                raise ValueError(f"{f.name} delta must be >= 0")


@dataclass(frozen=True)
class DailyMetricsDelta:
    sessions: int = 0
    page_views: int = 0
    conversions: int = 0
    revenue: float = 0.0
    organic_sessions: int = 0
    paid_sessions: int = 0
    social_sessions: int = 0
    email_sessions: int = 0
    referral_sessions: int = 0
    direct_sessions: int = 0

    def __post_init__(self) -> None:
        for f in fields(self):
            if getattr(self, f.name) < 0:
                raise ValueError(f"{f.name} delta must be >= 0")

    @classmethod
    def new_session(cls, channel: str) -> DailyMetricsDelta:
        if channel not in CHANNELS:
            raise ValueError(f"unknown channel: {channel!r}")
        return cls(sessions=1, **{f"{channel}_sessions": 1})


@dataclass(frozen=True)
class AdSpendRecord:
    """Normalized spend/delivery figures from an ad-platform connector."""

    source: str
    medium: str
    campaign: str
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    name: str | None = None

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> AdSpendRecord:
        return cls(
            source=str(data["source"]),
            medium=str(data["medium"]),
            campaign=str(data["campaign"]),
            impressions=int(data.get("impressions") or 0),
            clicks=int(data.get("clicks") or 0),
            spend=finite_float(data.get("spend") or 0.0),
            name=data.get("name"),
        )


@dataclass(frozen=True)
class CampaignStats:
    source: str
    medium: str
    campaign: str
    name: str
    impressions: int = 0
    clicks: int = 0
    sessions: int = 0
    conversions: int = 0
    revenue: float = 0.0
    spend: float = 0.0

    # Derived ratios are computed on read, never stored.
    @property
    def ctr(self) -> float:
        return _ratio(self.clicks, self.impressions, 100.0)

    @property
    def conversion_rate(self) -> float:
        return _ratio(self.conversions, self.sessions, 100.0)

    @property
    def cpa(self) -> float:
        return _ratio(self.spend, self.conversions)

    @property
    def roas(self) -> float:
        return _ratio(self.revenue, self.spend)

    def as_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d.update(ctr=self.ctr, conversion_rate=self.conversion_rate, cpa=self.cpa, roas=self.roas)
        return d


@dataclass(frozen=True)
class DailyMetrics:
    metric_date: date
    sessions: int = 0
    page_views: int = 0
    conversions: int = 0
    revenue: float = 0.0
    organic_sessions: int = 0
    paid_sessions: int = 0
    social_sessions: int = 0
    email_sessions: int = 0
    referral_sessions: int = 0
    direct_sessions: int = 0

    @property
    def conversion_rate(self) -> float:
        return _ratio(self.conversions, self.sessions, 100.0)

    def as_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["metric_date"] = self.metric_date.isoformat()
        d["conversion_rate"] = self.conversion_rate
        return d
