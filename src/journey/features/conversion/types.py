from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from journey.core.errors import SessionNotFound
from journey.core.types import finite_float
from journey.features.attribution.types import AttributionResult


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        v = data.get(k)
        if v not in (None, ""):
            return v
    return None


def _opt_str(v: Any) -> str | None:
    return None if v is None else str(v)


@dataclass(frozen=True)
class LineItem:
    product_id: str | None = None
    variant_id: str | None = None
    sku: str | None = None
    product_name: str | None = None
    category: str | None = None
    quantity: int = 1
    price: float = 0.0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> LineItem:
        return cls(
            product_id=_opt_str(_first(data, "product_id", "productId")),
            variant_id=_opt_str(_first(data, "variant_id", "variantId")),
            sku=_opt_str(data.get("sku")),
            product_name=_opt_str(_first(data, "product_name", "productName", "name", "title")),
            category=_opt_str(data.get("category")),
            quantity=int(_first(data, "quantity") or 1),
            price=finite_float(_first(data, "price") or 0.0),
        )


@dataclass(frozen=True)
class OrderData:
    """
    Normalized order as handed to the recorder. `utm_*` is an explicit
    attribution triple supplied by the caller (storefront script), if any.
    """

    order_id: str
    total_value: float
    currency: str = "USD"
    order_number: str | None = None
    session_id: str | None = None
    customer_id: str | None = None
    email: str | None = None
    item_count: int | None = None
    line_items: tuple[LineItem, ...] = ()
    created_at: datetime | None = None

    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None

    def __post_init__(self) -> None:
        if not self.order_id:
            raise ValueError("order_id is required")
        if self.item_count is None:
            object.__setattr__(self, "item_count", len(self.line_items))

    @property
    def campaign_key(self) -> tuple[str, str, str] | None:
        if self.utm_source and self.utm_medium and self.utm_campaign:
            return (self.utm_source, self.utm_medium, self.utm_campaign)
        return None


@dataclass(frozen=True)
class ConversionResult:
    """
    created=False means the order was already recorded (DuplicateConversion):
    only its monetary fields were amended and attribution was not re-run.
    """

    conversion_id: str
    order_id: str
    created: bool
    attribution: AttributionResult | None = None
    warning: SessionNotFound | None = None

    @property
    def duplicate(self) -> bool:
        return not self.created

    @property
    def attributed(self) -> bool:
        return self.attribution is not None and not self.attribution.empty


@dataclass(frozen=True)
class Conversion:
    """Stored conversion row."""

    order_id: str
    conversion_id: str
    created_at: datetime
    updated_at: datetime
    total_value: float
    currency: str
    order_number: str | None = None
    session_id: str | None = None
    item_count: int | None = None
    customer_id: str | None = None
    email: str | None = None

    first_click_utm_source: str | None = None
    first_click_utm_medium: str | None = None
    first_click_utm_campaign: str | None = None
    last_click_utm_source: str | None = None
    last_click_utm_medium: str | None = None
    last_click_utm_campaign: str | None = None

    attribution_json: str | None = field(default=None, repr=False)
    touchpoint_count: int | None = None
    days_to_purchase: int | None = None
    sessions_to_conversion: int | None = None

    @property
    def attribution(self) -> dict[str, Any] | None:
        return json.loads(self.attribution_json) if self.attribution_json else None
