from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from journey.core.types import to_db_ts

# Names the engine itself emits or reports on. Interactions may use any
# caller-defined name; these are not an allow-list.
PAGE_VIEW = "page_view"
PRODUCT_VIEW = "product_view"
ADD_TO_CART = "add_to_cart"
CHECKOUT_STEP = "checkout_step"
CHECKOUT_STARTED = "checkout_started"
PURCHASE_COMPLETED = "purchase_completed"

COMMERCE_EVENT_NAMES: set[str] = {
    PRODUCT_VIEW,
    ADD_TO_CART,
    CHECKOUT_STEP,
    CHECKOUT_STARTED,
}

MAX_EVENT_NAME_LENGTH = 128


@dataclass(frozen=True, slots=True)
class Event:
    event_id: str
    session_id: str
    event_name: str
    ts: datetime
    created_at: datetime

    visitor_id: str | None = None

    page_url: str | None = None
    page_title: str | None = None
    referrer: str | None = None

    # Element metadata for interactions
    element_id: str | None = None
    element_class: str | None = None
    element_text: str | None = None
    click_x: int | None = None
    click_y: int | None = None
    scroll_depth: float | None = None
    time_on_page: float | None = None

    # Page performance (ms)
    load_time: float | None = None
    lcp_time: float | None = None
    fid_time: float | None = None

    payload_json: str | None = None

    @property
    def payload(self) -> dict[str, Any]:
        if not self.payload_json:
            return {}
        return json.loads(self.payload_json)

    def as_row(self) -> dict[str, Any]:
        """
        Canonical DuckDB row representation matching the events table columns.
        """
        return {
            "event_id": self.event_id,
            "session_id": self.session_id,
            "visitor_id": self.visitor_id,
            "event_name": self.event_name,
            "ts": to_db_ts(self.ts),
            "page_url": self.page_url,
            "page_title": self.page_title,
            "referrer": self.referrer,
            "element_id": self.element_id,
            "element_class": self.element_class,
            "element_text": self.element_text,
            "click_x": self.click_x,
            "click_y": self.click_y,
            "scroll_depth": self.scroll_depth,
            "time_on_page": self.time_on_page,
            "load_time": self.load_time,
            "lcp_time": self.lcp_time,
            "fid_time": self.fid_time,
            "payload_json": self.payload_json,
            "created_at": to_db_ts(self.created_at),
        }


def json_dumps(payload: dict[str, Any] | None) -> str | None:
    if not payload:
        return None
    # Stable JSON for deterministic outputs/diffs
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
