from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from journey.features.sessions.types import Touchpoint


class AttributionModel(str, Enum):
    FIRST_CLICK = "first_click"
    LAST_CLICK = "last_click"
    LINEAR = "linear"
    TIME_DECAY = "time_decay"
    POSITION_BASED = "position_based"


DEFAULT_HALF_LIFE = timedelta(days=7)


@dataclass(frozen=True)
class AttributionResult:
    """
    Credit weights per model over one journey. `weights[model][i]` belongs to
    `touchpoints[i]`. An empty journey yields empty weight tuples, no first/last
    click and no days-to-purchase.
    """

    touchpoints: tuple[Touchpoint, ...]
    weights: dict[AttributionModel, tuple[float, ...]]
    converted_at: datetime | None
    half_life: timedelta = DEFAULT_HALF_LIFE
    days_to_purchase: int | None = None
    sessions_to_conversion: int = 0
    first_click: Touchpoint | None = field(init=False)
    last_click: Touchpoint | None = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "first_click", self.touchpoints[0] if self.touchpoints else None)
        object.__setattr__(self, "last_click", self.touchpoints[-1] if self.touchpoints else None)

    @property
    def touchpoint_count(self) -> int:
        return len(self.touchpoints)

    @property
    def empty(self) -> bool:
        return not self.touchpoints

    def weighted(self, model: AttributionModel | str) -> list[tuple[Touchpoint, float]]:
        return list(zip(self.touchpoints, self.weights[AttributionModel(model)], strict=True))

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready snapshot stored alongside the conversion."""
        return {
            "converted_at": self.converted_at.isoformat() if self.converted_at else None,
            "half_life_days": self.half_life.total_seconds() / 86400.0,
            "touchpoint_count": self.touchpoint_count,
            "days_to_purchase": self.days_to_purchase,
            "sessions_to_conversion": self.sessions_to_conversion,
            "first_click": self.first_click.as_dict() if self.first_click else None,
            "last_click": self.last_click.as_dict() if self.last_click else None,
            "models": {
                m.value: [
                    {
                        "touchpoint_id": tp.touchpoint_id,
                        "session_id": tp.session_id,
                        "utm_source": tp.utm_source,
                        "utm_medium": tp.utm_medium,
                        "utm_campaign": tp.utm_campaign,
                        "weight": w,
                    }
                    for tp, w in self.weighted(m)
                ]
                for m in AttributionModel
            },
        }
