from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from journey.core.errors import ConfigError


@dataclass(frozen=True)
class FlushConfig:
    every_n_events: int = 500
    or_every_seconds: float = 30.0


@dataclass(frozen=True)
class StorageConfig:
    duckdb_path: str
    clean_slate: bool = False
    lock_timeout_seconds: float = 5.0
    flush: FlushConfig = FlushConfig()


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(frozen=True)
class SessionsConfig:
    inactivity_timeout_minutes: float = 30.0


@dataclass(frozen=True)
class AttributionConfig:
    half_life_days: float = 7.0


@dataclass(frozen=True)
class RollupsConfig:
    reporting_timezone: str = "UTC"


@dataclass(frozen=True)
class RealtimeConfig:
    cache_ttl_seconds: float = 30.0
    active_window_minutes: float = 30.0
    conversions_window_minutes: float = 60.0
    top_pages_limit: int = 5


@dataclass(frozen=True)
class FunnelStepConfig:
    name: str
    event_pattern: str


DEFAULT_FUNNEL_STEPS: tuple[FunnelStepConfig, ...] = (
    FunnelStepConfig("Landing Page Views", "page_view"),
    FunnelStepConfig("Product Views", "product_view"),
    FunnelStepConfig("Add to Cart", "add_to_cart"),
    FunnelStepConfig("Checkout Started", "checkout_started"),
    FunnelStepConfig("Purchase", "purchase_completed"),
)


@dataclass(frozen=True)
class EngineConfig:
    storage: StorageConfig
    logging: LoggingConfig
    sessions: SessionsConfig = SessionsConfig()
    attribution: AttributionConfig = AttributionConfig()
    rollups: RollupsConfig = RollupsConfig()
    realtime: RealtimeConfig = RealtimeConfig()
    funnel_steps: tuple[FunnelStepConfig, ...] = DEFAULT_FUNNEL_STEPS
    raw: dict[str, Any] | None = None  # original parsed YAML (for debugging)


def load_yaml(path: str | Path) -> dict[str, Any]:
    p = Path(path)
    data = yaml.safe_load(p.read_text())
    if not isinstance(data, dict):
        raise ConfigError("Config YAML must parse to a dict at the top level.")
    return data


def _positive(section: str, key: str, value: Any) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{section}.{key} must be numeric") from e
    if v <= 0:
        raise ConfigError(f"{section}.{key} must be > 0")
    return v


def _parse_funnel_steps(funnel: dict[str, Any]) -> tuple[FunnelStepConfig, ...]:
    steps_raw = funnel.get("steps")
    if steps_raw is None:
        return DEFAULT_FUNNEL_STEPS
    if not isinstance(steps_raw, list) or not steps_raw:
        raise ConfigError("funnel.steps must be a non-empty list")

    steps: list[FunnelStepConfig] = []
    for idx, item in enumerate(steps_raw):
        if not isinstance(item, dict):
            raise ConfigError(f"funnel.steps[{idx}] must be a mapping with name/event_pattern")
        name = item.get("name")
        pattern = item.get("event_pattern")
        if not isinstance(name, str) or not name:
            raise ConfigError(f"funnel.steps[{idx}].name must be a non-empty string")
        if not isinstance(pattern, str) or not pattern:
            raise ConfigError(f"funnel.steps[{idx}].event_pattern must be a non-empty string")
        steps.append(FunnelStepConfig(name=name, event_pattern=pattern))
    return tuple(steps)


def parse_config(data: dict[str, Any]) -> EngineConfig:
    for key in ["storage", "logging"]:
        if key not in data:
            raise ConfigError(f"Missing required top-level config section: '{key}'")

    storage = data.get("storage") or {}
    logging_cfg = data.get("logging") or {}
    sessions = data.get("sessions") or {}
    attribution = data.get("attribution") or {}
    rollups = data.get("rollups") or {}
    realtime = data.get("realtime") or {}
    funnel = data.get("funnel") or {}

    if "duckdb_path" not in storage:
        raise ConfigError("storage.duckdb_path is required")

    flush_raw = storage.get("flush") or {}
    storage_cfg = StorageConfig(
        duckdb_path=str(storage["duckdb_path"]),
        clean_slate=bool(storage.get("clean_slate", False)),
        lock_timeout_seconds=_positive(
            "storage", "lock_timeout_seconds", storage.get("lock_timeout_seconds", 5.0)
        ),
        flush=FlushConfig(
            every_n_events=int(flush_raw.get("every_n_events", 500)),
            or_every_seconds=float(flush_raw.get("or_every_seconds", 30.0)),
        ),
    )

    log_cfg = LoggingConfig(level=str(logging_cfg.get("level", "INFO")).upper())

    sessions_cfg = SessionsConfig(
        inactivity_timeout_minutes=_positive(
            "sessions",
            "inactivity_timeout_minutes",
            sessions.get("inactivity_timeout_minutes", 30.0),
        )
    )

    attribution_cfg = AttributionConfig(
        half_life_days=_positive(
            "attribution", "half_life_days", attribution.get("half_life_days", 7.0)
        )
    )

    tz_name = str(rollups.get("reporting_timezone", "UTC"))
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError(f"rollups.reporting_timezone is not a known timezone: {tz_name!r}") from e
    rollups_cfg = RollupsConfig(reporting_timezone=tz_name)

    ttl = float(realtime.get("cache_ttl_seconds", 30.0))
    if not (0.0 <= ttl <= 60.0):
        raise ConfigError("realtime.cache_ttl_seconds must be in [0, 60]")
    realtime_cfg = RealtimeConfig(
        cache_ttl_seconds=ttl,
        active_window_minutes=_positive(
            "realtime", "active_window_minutes", realtime.get("active_window_minutes", 30.0)
        ),
        conversions_window_minutes=_positive(
            "realtime",
            "conversions_window_minutes",
            realtime.get("conversions_window_minutes", 60.0),
        ),
        top_pages_limit=int(realtime.get("top_pages_limit", 5)),
    )

    return EngineConfig(
        storage=storage_cfg,
        logging=log_cfg,
        sessions=sessions_cfg,
        attribution=attribution_cfg,
        rollups=rollups_cfg,
        realtime=realtime_cfg,
        funnel_steps=_parse_funnel_steps(funnel),
        raw=data,
    )


def load_config(path: str | Path) -> EngineConfig:
    data = load_yaml(path)
    return parse_config(data)
