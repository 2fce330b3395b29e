from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol


class StepDefinition(Protocol):
    name: str
    event_pattern: str


def split_pattern(event_pattern: str) -> list[str]:
    """'add_to_cart|cart_*' -> ['add_to_cart', 'cart_*'] (GLOB alternatives)."""
    parts = [p.strip() for p in event_pattern.split("|")]
    parts = [p for p in parts if p]
    if not parts:
        raise ValueError(f"empty event pattern: {event_pattern!r}")
    return parts


@dataclass(frozen=True)
class FunnelStepResult:
    step: str
    event_pattern: str
    step_order: int
    visitors: int
    conversion_rate: float
    drop_off: int

    def to_payload(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "visitors": self.visitors,
            "conversionRate": self.conversion_rate,
            "dropOff": self.drop_off,
        }


@dataclass(frozen=True)
class StoredFunnelStep:
    name: str
    step_order: int
    event_pattern: str
    total_sessions: int
    completed_sessions: int
    dropoff_rate: float | None
    refreshed_at: datetime
