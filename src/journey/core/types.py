from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_db_ts(dt: datetime | None) -> datetime | None:
    # DuckDB TIMESTAMP columns hold naive UTC
    if dt is None:
        return None
    return ensure_utc(dt).replace(tzinfo=None)


def from_db_ts(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    return parse_timestamp(value)


def parse_timestamp(value: Any) -> datetime:
    """
    Accepts the timestamp shapes seen on the wire:
      - datetime (naive is taken as UTC)
      - int/float epoch milliseconds (browser Date.now())
      - ISO-8601 string, with or without a trailing 'Z'
    """
    try:
        return _parse_timestamp(value)
    except (OverflowError, OSError) as e:
        # epoch outside what the platform can represent
        raise ValueError(f"timestamp out of range: {value!r}") from e


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, bool):
        raise ValueError(f"not a timestamp: {value!r}")
    if isinstance(value, int | float):
        return datetime.fromtimestamp(float(value) / 1000.0, tz=UTC)
    if isinstance(value, str):
        s = value.strip()
        if not s:
            raise ValueError("empty timestamp")
        if s.lstrip("-").replace(".", "", 1).isdigit():
            return datetime.fromtimestamp(float(s) / 1000.0, tz=UTC)
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        return ensure_utc(datetime.fromisoformat(s))
    raise ValueError(f"not a timestamp: {value!r}")


def finite_float(value: Any) -> float:
    """float(value), rejecting NaN and infinities with ValueError."""
    f = float(value)
    if not math.isfinite(f):
        raise ValueError(f"not a finite number: {value!r}")
    return f


@dataclass(frozen=True)
class TimeWindow:
    """Inclusive [start, end] window in UTC."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", ensure_utc(self.start))
        object.__setattr__(self, "end", ensure_utc(self.end))
        if self.end < self.start:
            raise ValueError("window end must not be before start")

    @classmethod
    def last(cls, span: timedelta, *, now: datetime) -> TimeWindow:
        now = ensure_utc(now)
        return cls(start=now - span, end=now)

    @property
    def span(self) -> timedelta:
        return self.end - self.start

    def previous(self) -> TimeWindow:
        """The window of equal length immediately before this one."""
        return TimeWindow(start=self.start - self.span, end=self.start)
