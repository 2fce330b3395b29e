from __future__ import annotations

import threading
from datetime import UTC, date, datetime

import pytest

from journey.features.persistence.duckdb_adapter import DuckDBAdapter
from journey.features.rollups.channels import classify_channel
from journey.features.rollups.service import RollupAggregator
from journey.features.rollups.types import (
    AdSpendRecord,
    CampaignStats,
    DailyMetricsDelta,
    MetricsDelta,
)

NOW = datetime(2026, 5, 10, 23, 30, tzinfo=UTC)


@pytest.fixture()
def adapter():
    a = DuckDBAdapter(path=":memory:", clean_slate=False)
    a.open()
    yield a
    a.close()


@pytest.fixture()
def rollups(adapter):
    return RollupAggregator(adapter=adapter, clock=lambda: NOW)


def test_increment_campaign_creates_then_adds(rollups) -> None:
    rollups.increment_campaign("google", "cpc", "spring", MetricsDelta(sessions=1))
    rollups.increment_campaign(
        "google", "cpc", "spring", MetricsDelta(conversions=1, revenue=49.5)
    )

    stats = rollups.get_campaign("google", "cpc", "spring")
    assert stats is not None
    assert stats.name == "spring"
    assert stats.sessions == 1
    assert stats.conversions == 1
    assert stats.revenue == pytest.approx(49.5)


def test_concurrent_increments_do_not_lose_updates(rollups) -> None:
    n_threads, per_thread, r = 8, 25, 12.5

    def _work() -> None:
        for _ in range(per_thread):
            rollups.increment_campaign(
                "meta", "paid_social", "launch", MetricsDelta(conversions=1, revenue=r)
            )

    threads = [threading.Thread(target=_work) for _ in range(n_threads)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    stats = rollups.get_campaign("meta", "paid_social", "launch")
    n = n_threads * per_thread
    assert stats.conversions == n
    assert stats.revenue == pytest.approx(n * r)


def test_ad_spend_feeds_derived_ratios(rollups) -> None:
    rollups.apply_ad_spend(
        AdSpendRecord(
            source="google",
            medium="cpc",
            campaign="spring",
            impressions=1000,
            clicks=50,
            spend=100.0,
            name="Spring Sale",
        )
    )
    rollups.increment_campaign(
        "google", "cpc", "spring", MetricsDelta(sessions=40, conversions=4, revenue=400.0)
    )

    stats = rollups.get_campaign("google", "cpc", "spring")
    assert stats.name == "Spring Sale"
    assert stats.ctr == pytest.approx(5.0)
    assert stats.conversion_rate == pytest.approx(10.0)
    assert stats.cpa == pytest.approx(25.0)
    assert stats.roas == pytest.approx(4.0)


def test_ratios_are_zero_without_denominator() -> None:
    stats = CampaignStats(source="a", medium="b", campaign="c", name="c", revenue=10.0)
    assert stats.ctr == stats.conversion_rate == stats.cpa == stats.roas == 0.0


def test_negative_delta_rejected() -> None:
    with pytest.raises(ValueError):
        MetricsDelta(revenue=-1.0)


def test_daily_metric_keyed_by_reporting_timezone(adapter) -> None:
    utc = RollupAggregator(adapter=adapter, clock=lambda: NOW)
    assert utc.increment_daily_metric(NOW, DailyMetricsDelta(page_views=1)) == date(2026, 5, 10)

    tokyo = RollupAggregator(adapter=adapter, reporting_timezone="Asia/Tokyo", clock=lambda: NOW)
    assert tokyo.local_date(NOW) == date(2026, 5, 11)


def test_daily_metrics_accumulate_per_channel(rollups) -> None:
    rollups.increment_daily_metric(NOW, DailyMetricsDelta.new_session("paid"))
    rollups.increment_daily_metric(NOW, DailyMetricsDelta.new_session("direct"))
    rollups.increment_daily_metric(NOW, DailyMetricsDelta(conversions=1, revenue=20.0))

    [day] = rollups.daily_metrics(date(2026, 5, 1), date(2026, 5, 31))
    assert day.metric_date == date(2026, 5, 10)
    assert day.sessions == 2
    assert day.paid_sessions == 1
    assert day.direct_sessions == 1
    assert day.conversions == 1
    assert day.conversion_rate == pytest.approx(50.0)


@pytest.mark.parametrize(
    ("kwargs", "expected"),
    [
        ({}, "direct"),
        ({"gclid": "abc"}, "paid"),
        ({"utm_source": "google", "utm_medium": "cpc"}, "paid"),
        ({"utm_source": "newsletter"}, "email"),
        ({"utm_source": "facebook", "utm_medium": "social"}, "social"),
        ({"utm_source": "google"}, "organic"),
        ({"utm_source": "partner-blog", "utm_medium": "referral"}, "referral"),
        ({"referrer": "https://www.google.co.uk/search?q=x"}, "organic"),
        ({"referrer": "https://t.co/abc"}, "social"),
        ({"referrer": "https://www.microsoft.com/"}, "referral"),
    ],
)
def test_classify_channel(kwargs: dict, expected: str) -> None:
    assert classify_channel(**kwargs) == expected
