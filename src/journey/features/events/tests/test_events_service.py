from __future__ import annotations

from datetime import UTC, datetime

import pytest

from journey.core.ids import IdsService
from journey.features.events.service import EventService


class ListSink:
    def __init__(self) -> None:
        self.rows: list[dict] = []

    def append(self, row: dict) -> None:
        self.rows.append(row)


NOW = datetime(2026, 2, 1, 10, 0, tzinfo=UTC)


def _svc(sink: ListSink) -> EventService:
    return EventService(persistence=sink, ids=IdsService(instance_id="test"), clock=lambda: NOW)


def test_emit_appends_row_with_naive_utc_timestamps() -> None:
    sink = ListSink()
    ev = _svc(sink).emit(
        event_name="add_to_cart",
        session_id="s1",
        ts=datetime(2026, 2, 1, 9, 59, tzinfo=UTC),
        payload={"product_id": "p1", "quantity": 2},
    )

    assert ev.event_id == "evt_test_00000001"
    assert ev.payload == {"product_id": "p1", "quantity": 2}
    assert len(sink.rows) == 1
    row = sink.rows[0]
    assert row["event_name"] == "add_to_cart"
    assert row["ts"] == datetime(2026, 2, 1, 9, 59)
    assert row["created_at"] == datetime(2026, 2, 1, 10, 0)


def test_emit_defaults_ts_to_clock() -> None:
    sink = ListSink()
    ev = _svc(sink).emit(event_name="page_view", session_id="s1")
    assert ev.ts == NOW
    assert ev.payload_json is None


@pytest.mark.parametrize("name", ["", "   ", "x" * 129])
def test_emit_rejects_bad_event_names(name: str) -> None:
    with pytest.raises(ValueError):
        _svc(ListSink()).emit(event_name=name, session_id="s1")


def test_emit_requires_session() -> None:
    with pytest.raises(ValueError, match="session_id"):
        _svc(ListSink()).emit(event_name="page_view", session_id="")
