from __future__ import annotations

import random
import threading
from datetime import UTC, datetime, timedelta

import pytest

from journey.core.ids import IdsService
from journey.features.persistence.duckdb_adapter import DuckDBAdapter
from journey.features.sessions.service import SessionTracker, TrackerConfig
from journey.features.sessions.types import TrackingContext

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)


@pytest.fixture()
def adapter():
    a = DuckDBAdapter(path=":memory:", clean_slate=False)
    a.open()
    yield a
    a.close()


@pytest.fixture()
def tracker(adapter):
    return SessionTracker(
        adapter=adapter,
        ids=IdsService(instance_id="t"),
        cfg=TrackerConfig(inactivity_timeout_minutes=30),
        clock=lambda: T0,
    )


def test_first_activity_creates_session_with_expiry(tracker) -> None:
    ctx = TrackingContext(utm_source="google", utm_medium="cpc", utm_campaign="spring")
    res = tracker.record_activity("s1", "v1", ctx, T0)

    assert res.created is True
    assert res.session.created_at == T0
    assert res.session.expires_at == T0 + timedelta(minutes=30)
    assert res.session.campaign_key == ("google", "cpc", "spring")


def test_repeat_activity_refreshes_but_keeps_first_touch(tracker) -> None:
    tracker.record_activity("s1", "v1", TrackingContext(utm_source="google"), T0)
    res = tracker.record_activity(
        "s1",
        "v1",
        TrackingContext(utm_source="facebook", country="DE"),
        T0 + timedelta(minutes=10),
    )

    assert res.created is False
    assert res.session.utm_source == "google"
    # an empty field may still be filled in later
    assert res.session.country == "DE"
    assert res.session.expires_at == T0 + timedelta(minutes=40)


def test_expiry_never_moves_backwards(tracker) -> None:
    tracker.record_activity("s1", "v1", None, T0 + timedelta(minutes=20))
    res = tracker.record_activity("s1", "v1", None, T0)

    assert res.session.expires_at == T0 + timedelta(minutes=50)
    assert res.session.created_at == T0
    assert res.session.updated_at == T0 + timedelta(minutes=20)


def test_concurrent_activity_converges_on_latest_expiry(tracker) -> None:
    stamps = [T0 + timedelta(minutes=m) for m in range(0, 48, 3)]
    random.Random(7).shuffle(stamps)
    created: list[bool] = []
    errors: list[Exception] = []

    def _work(ts: datetime) -> None:
        try:
            created.append(tracker.record_activity("s1", "v1", None, ts).created)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=_work, args=(ts,)) for ts in stamps]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert created.count(True) == 1
    session = tracker.get_session("s1")
    assert session.created_at == min(stamps)
    assert session.updated_at == max(stamps)
    assert session.expires_at == max(stamps) + timedelta(minutes=30)


def test_landing_page_falls_back_to_page_url(tracker) -> None:
    ctx = TrackingContext.from_mapping({"pageUrl": "https://shop.test/p/1", "utmSource": "x"})
    res = tracker.record_activity("s1", "v1", ctx, T0)
    assert res.session.landing_page == "https://shop.test/p/1"
    assert res.session.utm_source == "x"


def test_is_live_respects_inactivity_window(tracker) -> None:
    tracker.record_activity("s1", "v1", None, T0)
    assert tracker.is_live("s1", T0 + timedelta(minutes=29))
    assert not tracker.is_live("s1", T0 + timedelta(minutes=30))
    assert not tracker.is_live("missing", T0)


def test_touchpoint_for_known_session_is_recorded(tracker) -> None:
    tracker.record_activity("s1", "v1", None, T0)
    res = tracker.record_touchpoint(
        "s1",
        TrackingContext(utm_source="google", page_url="https://shop.test/"),
        T0 + timedelta(minutes=5),
    )

    assert res.status == "recorded"
    assert res.warning is None
    assert res.touchpoint.page_url == "https://shop.test/"
    # touchpoint extends the session
    assert tracker.get_session("s1").expires_at == T0 + timedelta(minutes=35)


def test_orphan_touchpoint_is_stored_with_warning(tracker) -> None:
    from journey.core.errors import SessionNotFound

    res = tracker.record_touchpoint("ghost", TrackingContext(gclid="abc"), T0)

    assert res.orphaned
    assert isinstance(res.warning, SessionNotFound)
    assert res.warning.session_id == "ghost"
    assert [tp.gclid for tp in tracker.touchpoints_for_session("ghost")] == ["abc"]


def test_touchpoints_order_by_time_then_insertion(tracker) -> None:
    tracker.record_activity("s1", "v1", None, T0)
    tracker.record_touchpoint("s1", TrackingContext(utm_source="b"), T0 + timedelta(minutes=1))
    tracker.record_touchpoint("s1", TrackingContext(utm_source="a"), T0)
    tracker.record_touchpoint("s1", TrackingContext(utm_source="c"), T0)

    sources = [tp.utm_source for tp in tracker.touchpoints_for_session("s1")]
    assert sources == ["a", "c", "b"]


def test_delete_session_cascades_to_touchpoints(tracker, adapter) -> None:
    tracker.record_activity("s1", "v1", None, T0)
    tracker.record_touchpoint("s1", TrackingContext(utm_source="google"), T0)

    assert tracker.delete_session("s1") is True
    assert tracker.get_session("s1") is None
    assert tracker.touchpoints_for_session("s1") == []
    assert tracker.delete_session("s1") is False


def test_context_from_mapping_accepts_both_spellings() -> None:
    camel = TrackingContext.from_mapping({"utmCampaign": "x", "deviceType": "mobile"})
    snake = TrackingContext.from_mapping({"utm_campaign": "x", "device_type": "mobile"})
    nested = TrackingContext.from_mapping(
        {"utm_data": {"utm_campaign": "x"}, "device_type": "mobile"}
    )
    assert camel == snake == nested


def test_empty_strings_are_not_observed() -> None:
    ctx = TrackingContext(utm_source="  ", referrer="")
    assert ctx.utm_source is None
    assert ctx.referrer is None
    assert not ctx.has_marketing_signal
