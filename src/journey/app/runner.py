from __future__ import annotations

import dataclasses
from datetime import datetime
from typing import Any

from journey.core.config import EngineConfig, load_config
from journey.core.types import parse_timestamp
from journey.features.bootstrap.service import Engine, bootstrap_engine
from journey.features.replay.service import ReplayResult, replay_file
from journey.features.reporting.types import window_for


def _open_existing(cfg: EngineConfig) -> Engine:
    # read commands never wipe the database
    storage = dataclasses.replace(cfg.storage, clean_slate=False)
    return bootstrap_engine(dataclasses.replace(cfg, storage=storage))


def run_replay(config_path: str, input_path: str, start: str | None = None) -> ReplayResult:
    cfg = load_config(config_path)
    start_dt: datetime | None = parse_timestamp(start) if start else None
    return replay_file(cfg, input_path, start=start_dt)


def build_dashboard(config_path: str, time_range: str) -> dict[str, Any]:
    with _open_existing(load_config(config_path)) as engine:
        return engine.reporting.dashboard(time_range)


def compute_funnel(config_path: str, time_range: str) -> list[dict[str, Any]]:
    with _open_existing(load_config(config_path)) as engine:
        window = window_for(time_range, now=engine.clock())
        results = engine.funnel.compute_funnel(engine.cfg.funnel_steps, window)
        return [r.to_payload() for r in results]


def realtime_snapshot(config_path: str) -> dict[str, Any]:
    with _open_existing(load_config(config_path)) as engine:
        return engine.realtime.snapshot().to_payload()
