from __future__ import annotations

import json
from datetime import UTC, datetime

import duckdb
import pytest
import simpy

from journey.core.config import parse_config
from journey.core.errors import MalformedPayload
from journey.features.replay.service import (
    SimClock,
    envelope_timestamp,
    read_envelopes,
    replay_file,
)

T0 = datetime(2026, 5, 4, 10, 0, tzinfo=UTC)
MS0 = int(T0.timestamp() * 1000)


def _write_jsonl(path, envelopes) -> None:
    path.write_text("\n".join(json.dumps(e) for e in envelopes) + "\n\n")


def _cfg(db_path):
    return parse_config(
        {
            "storage": {
                "duckdb_path": str(db_path),
                "clean_slate": True,
                "flush": {"every_n_events": 1000, "or_every_seconds": 60},
            },
            "logging": {"level": "WARNING"},
        }
    )


def test_sim_clock_follows_env():
    env = simpy.Environment()
    clock = SimClock(env, T0)
    env.run(until=90)
    assert clock() == datetime(2026, 5, 4, 10, 1, 30, tzinfo=UTC)


def test_envelope_timestamp_shapes():
    assert envelope_timestamp({"type": "page_view", "data": {"timestamp": MS0}}) == T0
    webhook = {"topic": "orders/create", "body": {"created_at": T0.isoformat()}}
    assert envelope_timestamp(webhook) == T0
    assert envelope_timestamp({"type": "page_view", "data": {}}) is None
    assert envelope_timestamp({"type": "page_view", "data": {"timestamp": "later"}}) is None


def test_read_envelopes_rejects_non_objects(tmp_path):
    p = tmp_path / "bad.jsonl"
    p.write_text('{"type": "page_view", "data": {}}\n[1, 2]\n')
    with pytest.raises(MalformedPayload):
        list(read_envelopes(p))


def test_replay_end_to_end(tmp_path):
    db_path = tmp_path / "replay.duckdb"
    src = tmp_path / "events.jsonl"
    _write_jsonl(
        src,
        [
            {
                "type": "session_start",
                "data": {
                    "sessionId": "s1",
                    "visitorId": "v1",
                    "timestamp": MS0,
                    "utmSource": "google",
                    "utmMedium": "cpc",
                    "utmCampaign": "may",
                },
            },
            {
                "type": "page_view",
                "data": {"sessionId": "s1", "pageUrl": "/", "timestamp": MS0 + 5_000},
            },
            {"type": "add_to_cart", "data": {"sessionId": "s1", "timestamp": MS0 + 120_000}},
            # late delivery: stamped before the previous envelope
            {"type": "product_view", "data": {"sessionId": "s1", "timestamp": MS0 + 60_000}},
            {"type": "bogus", "data": {}},
            {
                "type": "conversion",
                "data": {
                    "sessionId": "s1",
                    "orderId": "A-1",
                    "totalValue": 42.0,
                    "timestamp": MS0 + 600_000,
                },
            },
        ],
    )

    result = replay_file(_cfg(db_path), src)

    assert result.started_at == T0
    assert result.finished_at == datetime(2026, 5, 4, 10, 10, tzinfo=UTC)
    assert result.dispatched == 5
    assert result.rejected == 1
    assert result.statuses == {"accepted": 5}

    con = duckdb.connect(str(db_path), read_only=True)
    names = [r[0] for r in con.execute("SELECT event_name FROM events ORDER BY ts").fetchall()]
    conv = con.execute("SELECT created_at, first_click_utm_source FROM conversions").fetchone()
    funnel = con.execute(
        "SELECT name, completed_sessions FROM funnel_steps ORDER BY step_order"
    ).fetchall()
    con.close()

    assert names == ["page_view", "product_view", "add_to_cart", "purchase_completed"]
    assert conv == (datetime(2026, 5, 4, 10, 10), "google")
    assert funnel == [
        ("Landing Page Views", 1),
        ("Product Views", 1),
        ("Add to Cart", 1),
        ("Checkout Started", 0),
        ("Purchase", 1),
    ]


def test_replay_of_empty_file(tmp_path):
    src = tmp_path / "empty.jsonl"
    src.write_text("")
    result = replay_file(_cfg(tmp_path / "e.duckdb"), src)
    assert result.dispatched == 0
    assert result.started_at is None
