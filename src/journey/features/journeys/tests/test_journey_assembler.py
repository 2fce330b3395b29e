from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from journey.core.ids import IdsService
from journey.features.journeys.service import JourneyAssembler
from journey.features.journeys.types import Journey
from journey.features.persistence.duckdb_adapter import DuckDBAdapter
from journey.features.sessions.service import SessionTracker
from journey.features.sessions.types import TrackingContext

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture()
def adapter():
    a = DuckDBAdapter(path=":memory:", clean_slate=False)
    a.open()
    yield a
    a.close()


@pytest.fixture()
def tracker(adapter):
    return SessionTracker(adapter=adapter, ids=IdsService(instance_id="j"), clock=lambda: T0)


def _visit(tracker, session_id, visitor_id, source, ts, customer_id=None):
    ctx = TrackingContext(utm_source=source, customer_id=customer_id)
    tracker.record_activity(session_id, visitor_id, ctx, ts)
    tracker.record_touchpoint(session_id, ctx, ts, session_start=True)


def test_journey_spans_all_sessions_of_visitor(adapter, tracker) -> None:
    _visit(tracker, "s1", "v1", "google", T0)
    _visit(tracker, "s2", "v1", "facebook", T0 + timedelta(days=2))
    _visit(tracker, "s3", "v2", "bing", T0 + timedelta(days=1))

    journey = JourneyAssembler(adapter=adapter).assemble_journey("s2", T0 + timedelta(days=3))

    assert [tp.utm_source for tp in journey] == ["google", "facebook"]
    assert {tp.session_id for tp in journey} == {"s1", "s2"}


def test_journey_is_cut_at_as_of(adapter, tracker) -> None:
    _visit(tracker, "s1", "v1", "google", T0)
    _visit(tracker, "s2", "v1", "facebook", T0 + timedelta(days=2))

    journey = JourneyAssembler(adapter=adapter).assemble_journey("v1", T0 + timedelta(days=2))
    assert len(journey) == 2

    journey = JourneyAssembler(adapter=adapter).assemble_journey("v1", T0 + timedelta(days=1))
    assert [tp.utm_source for tp in journey] == ["google"]


def test_journey_follows_customer_across_visitors(adapter, tracker) -> None:
    _visit(tracker, "s1", "v1", "google", T0, customer_id="c1")
    _visit(tracker, "s2", "v2", "email", T0 + timedelta(hours=5), customer_id="c1")

    journey = JourneyAssembler(adapter=adapter).assemble_journey("c1", T0 + timedelta(days=1))
    assert [tp.utm_source for tp in journey] == ["google", "email"]


def test_unknown_key_gives_empty_journey(adapter) -> None:
    journey = JourneyAssembler(adapter=adapter).assemble_journey("nobody", T0)
    assert len(journey) == 0
    assert not journey


def test_journey_is_lazy_and_restartable(adapter, tracker) -> None:
    _visit(tracker, "s1", "v1", "google", T0)
    journey = JourneyAssembler(adapter=adapter).assemble_journey("v1", T0)
    assert not journey.materialized

    first = list(journey)
    # a later write is not seen by an already materialized journey
    _visit(tracker, "s1", "v1", "bing", T0)
    assert list(journey) == first
    assert journey.materialized


def test_from_payload_sorts_stably_and_parses_timestamps() -> None:
    ms = int(T0.timestamp() * 1000)
    journey = Journey.from_payload(
        [
            {"timestamp": ms + 1000, "session_id": "s2", "utm_source": "late"},
            {"timestamp": T0.isoformat(), "session_id": "s1", "utm_source": "a"},
            {"timestamp": ms, "sessionId": "s1", "utmSource": "b"},
        ]
    )
    assert [tp.utm_source for tp in journey] == ["a", "b", "late"]
    assert journey[0].timestamp == T0


def test_from_payload_rejects_items_without_timestamp() -> None:
    with pytest.raises(ValueError, match="timestamp"):
        Journey.from_payload([{"utm_source": "x"}])
