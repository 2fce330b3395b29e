from __future__ import annotations

import json
from collections import Counter
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import simpy

from journey.core.config import EngineConfig
from journey.core.errors import MalformedPayload
from journey.core.logging import get_logger
from journey.core.types import TimeWindow, ensure_utc, parse_timestamp
from journey.features.bootstrap.service import Engine, bootstrap_engine


class SimClock:
    """Engine clock driven by a SimPy environment: start + env.now seconds."""

    def __init__(self, env: simpy.Environment, start: datetime) -> None:
        self.env = env
        self.start = ensure_utc(start)

    def __call__(self) -> datetime:
        return self.start + timedelta(seconds=float(self.env.now))


@dataclass(frozen=True)
class ReplayItem:
    line_no: int
    ts: datetime | None
    envelope: dict[str, Any]


@dataclass(frozen=True)
class ReplayResult:
    duckdb_path: str
    started_at: datetime | None
    finished_at: datetime | None
    dispatched: int = 0
    rejected: int = 0
    statuses: dict[str, int] = field(default_factory=dict)


def envelope_timestamp(envelope: Mapping[str, Any]) -> datetime | None:
    """
    Event time of an envelope: `data.timestamp` for tracker envelopes,
    `body.created_at` for webhook envelopes (`{"topic": ..., "body": ...}`).
    """
    body = envelope.get("body") if "topic" in envelope else envelope.get("data")
    if not isinstance(body, Mapping):
        return None
    raw = body.get("timestamp") if "topic" not in envelope else body.get("created_at")
    if raw in (None, ""):
        return None
    try:
        return parse_timestamp(raw)
    except ValueError:
        return None


def read_envelopes(path: str | Path) -> Iterator[ReplayItem]:
    """JSONL reader. Blank lines are skipped; anything else must be a JSON object."""
    with Path(path).open(encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                envelope = json.loads(line)
            except json.JSONDecodeError as e:
                raise MalformedPayload(f"line {line_no}: invalid JSON ({e.msg})") from e
            if not isinstance(envelope, dict):
                raise MalformedPayload(f"line {line_no}: envelope must be an object")
            yield ReplayItem(line_no=line_no, ts=envelope_timestamp(envelope), envelope=envelope)


class ReplayService:
    """
    Replays recorded envelopes at their own event times on a SimPy clock.

    Items are dispatched in file order. An item whose time is already past is
    dispatched immediately (late delivery); an item without a timestamp takes
    the current simulated time.
    """

    def __init__(self, *, engine: Engine, env: simpy.Environment, start: datetime) -> None:
        self.engine = engine
        self.env = env
        self.start = ensure_utc(start)
        self.statuses: Counter[str] = Counter()
        self.dispatched = 0
        self.rejected = 0
        self._logger = get_logger(__name__)

    def run(self, items: list[ReplayItem]) -> None:
        self.engine.persistence.start_periodic_flush(self.env)
        proc = self.env.process(self._dispatch_proc(items))
        self.env.run(until=proc)
        self.engine.flush(reason="replay_finish")

    def _dispatch_proc(self, items: list[ReplayItem]):
        for item in items:
            if item.ts is not None:
                wait = (item.ts - self.start).total_seconds() - float(self.env.now)
                if wait > 0:
                    yield self.env.timeout(wait)
            self._dispatch(item)
        yield self.env.timeout(0)

    def _dispatch(self, item: ReplayItem) -> None:
        envelope = item.envelope
        try:
            if "topic" in envelope:
                body = envelope.get("body")
                result = self.engine.ingest.handle_order_webhook(str(envelope["topic"]), body)
            else:
                result = self.engine.ingest.handle(envelope)
        except MalformedPayload as e:
            self.rejected += 1
            self._logger.warning(
                "envelope_rejected",
                extra={"feature": "replay", "reason": f"line {item.line_no}: {e}"},
            )
            return
        self.dispatched += 1
        self.statuses[result.status] += 1


def replay_file(
    cfg: EngineConfig, path: str | Path, *, start: datetime | None = None
) -> ReplayResult:
    """
    Replay a JSONL file into a fresh engine and close it. The simulated clock
    starts at `start`, or at the earliest envelope time in the file.
    """
    items = list(read_envelopes(path))
    stamped = [i.ts for i in items if i.ts is not None]
    if start is None:
        start = min(stamped) if stamped else None
    logger = get_logger("journey", cfg.logging.level)

    if start is None:
        logger.warning("replay_empty", extra={"feature": "replay", "reason": str(path)})
        return ReplayResult(duckdb_path=cfg.storage.duckdb_path, started_at=None, finished_at=None)

    env = simpy.Environment()
    clock = SimClock(env, start)
    engine = bootstrap_engine(cfg, clock=clock)
    try:
        replay = ReplayService(engine=engine, env=env, start=clock.start)
        logger.info(
            "starting replay",
            extra={"feature": "replay", "num_events": len(items), "reason": str(path)},
        )
        replay.run(items)
        finished_at = clock()
        engine.funnel.refresh_funnel_steps(
            engine.cfg.funnel_steps, TimeWindow(start=clock.start, end=finished_at)
        )
    finally:
        engine.close()

    return ReplayResult(
        duckdb_path=cfg.storage.duckdb_path,
        started_at=clock.start,
        finished_at=finished_at,
        dispatched=replay.dispatched,
        rejected=replay.rejected,
        statuses=dict(replay.statuses),
    )
