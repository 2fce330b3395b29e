from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class PageCount:
    page: str
    visitors: int


@dataclass(frozen=True)
class RealtimeSnapshot:
    computed_at: datetime
    active_users: int
    sessions_last_30_minutes: int
    conversion_events: int
    top_pages: tuple[PageCount, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        return {
            "activeUsers": self.active_users,
            "sessionsLast30Minutes": self.sessions_last_30_minutes,
            "conversionEvents": self.conversion_events,
            "topPages": [{"page": p.page, "visitors": p.visitors} for p in self.top_pages],
            "computedAt": self.computed_at.isoformat(),
        }
