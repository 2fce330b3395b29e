from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta

from journey.core.types import ensure_utc
from journey.features.sessions.types import Touchpoint

from .types import DEFAULT_HALF_LIFE, AttributionModel, AttributionResult

# Position-based split: first and last each get 0.4, the middle shares 0.2.
POSITION_ENDS_WEIGHT = 0.4
POSITION_MIDDLE_WEIGHT = 0.2


def _first_click(n: int) -> tuple[float, ...]:
    return tuple(1.0 if i == 0 else 0.0 for i in range(n))


def _last_click(n: int) -> tuple[float, ...]:
    return tuple(1.0 if i == n - 1 else 0.0 for i in range(n))


def _linear(n: int) -> tuple[float, ...]:
    return tuple(1.0 / n for _ in range(n))


def _position_based(n: int) -> tuple[float, ...]:
    # With n == 2 there is no middle, so the result is (0.4, 0.4) and sums to 0.8.
    # Kept as-is; stored snapshots depend on it.
    if n == 1:
        return (1.0,)
    middle = POSITION_MIDDLE_WEIGHT / max(1, n - 2)
    return tuple(POSITION_ENDS_WEIGHT if i in (0, n - 1) else middle for i in range(n))


def time_decay_raw_weights(
    timestamps: Sequence[datetime],
    converted_at: datetime,
    half_life: timedelta = DEFAULT_HALF_LIFE,
) -> tuple[float, ...]:
    """
    Un-normalized weights 2^(-dt/H), dt = converted_at - timestamp.
    A timestamp at (or after) the conversion instant weighs exactly 1.
    """
    if half_life <= timedelta(0):
        raise ValueError("half_life must be positive")
    conv = ensure_utc(converted_at)
    h = half_life.total_seconds()
    out = []
    for ts in timestamps:
        dt = max(0.0, (conv - ensure_utc(ts)).total_seconds())
        out.append(2.0 ** (-dt / h))
    return tuple(out)


def _time_decay(
    touchpoints: Sequence[Touchpoint], converted_at: datetime, half_life: timedelta
) -> tuple[float, ...]:
    # Exponents are shifted by the smallest dt: same ratios as the raw weights,
    # and the freshest touchpoint weighs 1 before normalization.
    if half_life <= timedelta(0):
        raise ValueError("half_life must be positive")
    conv = ensure_utc(converted_at)
    h = half_life.total_seconds()
    dts = [max(0.0, (conv - ensure_utc(tp.timestamp)).total_seconds()) for tp in touchpoints]
    floor = min(dts)
    shifted = [2.0 ** (-(dt - floor) / h) for dt in dts]
    total = math.fsum(shifted)
    return tuple(w / total for w in shifted)


def _days_between(first: datetime, last: datetime) -> int:
    days = (ensure_utc(last) - ensure_utc(first)).total_seconds() / 86400.0
    # round half up
    return int(math.floor(days + 0.5))


def compute_attribution(
    journey: Iterable[Touchpoint],
    *,
    converted_at: datetime | None = None,
    half_life: timedelta = DEFAULT_HALF_LIFE,
) -> AttributionResult:
    """
    Credit assignment over an ordered journey for all five models.

    Pure: reads the journey once and touches nothing else. Never raises for a
    valid journey; an empty one yields an empty result.
    """
    tps = tuple(journey)
    n = len(tps)

    if n == 0:
        return AttributionResult(
            touchpoints=(),
            weights={m: () for m in AttributionModel},
            converted_at=ensure_utc(converted_at) if converted_at is not None else None,
            half_life=half_life,
        )

    conv = ensure_utc(converted_at) if converted_at is not None else tps[-1].timestamp

    weights = {
        AttributionModel.FIRST_CLICK: _first_click(n),
        AttributionModel.LAST_CLICK: _last_click(n),
        AttributionModel.LINEAR: _linear(n),
        AttributionModel.TIME_DECAY: _time_decay(tps, conv, half_life),
        AttributionModel.POSITION_BASED: _position_based(n),
    }

    return AttributionResult(
        touchpoints=tps,
        weights=weights,
        converted_at=conv,
        half_life=half_life,
        days_to_purchase=_days_between(tps[0].timestamp, tps[-1].timestamp),
        sessions_to_conversion=len({tp.session_id for tp in tps}),
    )
