from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from journey.core.errors import MalformedPayload
from journey.core.types import finite_float, parse_timestamp
from journey.features.conversion.types import LineItem, OrderData

ORDER_CREATE = "orders/create"
ORDER_UPDATED = "orders/updated"
ORDER_PAID = "orders/paid"
ORDER_CANCELLED = "orders/cancelled"
CHECKOUT_CREATE = "checkouts/create"
CHECKOUT_UPDATE = "checkouts/update"

_NOTE_SESSION = re.compile(r"session_id:([A-Za-z0-9_-]+)")
_REFERRER_SESSION = re.compile(r"session=([A-Za-z0-9_-]+)")


def first_of(data: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        v = data.get(k)
        if v not in (None, ""):
            return v
    return None


def extract_session_id(order: Mapping[str, Any]) -> str | None:
    """
    Session id smuggled through the storefront, checked in order:
      1. `session_id:<id>` in the order note
      2. the same in the customer note
      3. a `session_id` note attribute
      4. `session=<id>` in the referring site
    """
    note = order.get("note")
    if isinstance(note, str) and (m := _NOTE_SESSION.search(note)):
        return m.group(1)

    customer = order.get("customer")
    if isinstance(customer, Mapping):
        cnote = customer.get("note")
        if isinstance(cnote, str) and (m := _NOTE_SESSION.search(cnote)):
            return m.group(1)

    for attrs_key in ("attributes", "note_attributes"):
        for attr in order.get(attrs_key) or ():
            if isinstance(attr, Mapping) and attr.get("name") == "session_id" and attr.get("value"):
                return str(attr["value"])

    referring = order.get("referring_site")
    if isinstance(referring, str) and (m := _REFERRER_SESSION.search(referring)):
        return m.group(1)
    return None


def _money(value: Any, field: str) -> float:
    if value is None or value == "":
        raise MalformedPayload(f"{field} is required", field=field)
    try:
        return finite_float(value)
    except (TypeError, ValueError) as e:
        raise MalformedPayload(
            f"{field} must be a finite number, got {value!r}", field=field
        ) from e


def _count(value: Any, field: str) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise MalformedPayload(f"{field} must be an integer, got {value!r}", field=field) from e


def _line_items(raw: Any, field: str) -> tuple[LineItem, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise MalformedPayload(f"{field} must be a list", field=field)
    try:
        return tuple(LineItem.from_mapping(item) for item in raw if isinstance(item, Mapping))
    except (TypeError, ValueError) as e:
        raise MalformedPayload(f"{field} holds an invalid item: {e}", field=field) from e


def _created_at(raw: Any, field: str):
    if raw is None:
        return None
    try:
        return parse_timestamp(raw)
    except ValueError as e:
        raise MalformedPayload(f"{field} is not a timestamp: {raw!r}", field=field) from e


def order_from_webhook(order: Mapping[str, Any]) -> OrderData:
    """Normalize a commerce-platform order webhook body."""
    if order.get("id") is None:
        raise MalformedPayload("order id is required", field="id")
    customer = order.get("customer") if isinstance(order.get("customer"), Mapping) else {}
    items = _line_items(order.get("line_items"), "line_items")
    order_number = order.get("order_number")
    customer_id = customer.get("id")
    return OrderData(
        order_id=str(order["id"]),
        order_number=str(order_number) if order_number is not None else None,
        total_value=_money(order.get("total_price"), "total_price"),
        currency=str(order.get("currency") or "USD"),
        session_id=extract_session_id(order),
        customer_id=str(customer_id) if customer_id is not None else None,
        email=customer.get("email") or order.get("email"),
        line_items=items,
        created_at=_created_at(order.get("created_at"), "created_at"),
    )


def order_from_tracking(data: Mapping[str, Any]) -> OrderData:
    """
    Normalize a tracker `conversion` payload. Accepts the flat camelCase shape
    and the storefront shape with nested `order_data` and `attribution`.
    """
    order = data.get("order_data") if isinstance(data.get("order_data"), Mapping) else data
    attribution = data.get("attribution") if isinstance(data.get("attribution"), Mapping) else {}

    order_id = first_of(order, "orderId", "order_id", "id")
    if order_id is None:
        raise MalformedPayload("orderId is required", field="orderId")

    total = first_of(order, "totalValue", "total_value", "total_price")
    items = _line_items(first_of(order, "lineItems", "line_items"), "lineItems")
    item_count = first_of(order, "itemCount", "item_count")
    session_id = first_of(data, "sessionId", "session_id") or first_of(attribution, "session_id")
    order_number = first_of(order, "orderNumber", "order_number")
    customer_id = first_of(order, "customerId", "customer_id")

    return OrderData(
        order_id=str(order_id),
        order_number=str(order_number) if order_number is not None else None,
        total_value=_money(total, "totalValue"),
        currency=str(first_of(order, "currency") or "USD"),
        session_id=str(session_id) if session_id is not None else None,
        customer_id=str(customer_id) if customer_id is not None else None,
        email=first_of(order, "email"),
        item_count=_count(item_count, "itemCount"),
        line_items=items,
        created_at=_created_at(first_of(data, "timestamp"), "timestamp"),
        utm_source=first_of(attribution, "utm_source", "utmSource"),
        utm_medium=first_of(attribution, "utm_medium", "utmMedium"),
        utm_campaign=first_of(attribution, "utm_campaign", "utmCampaign"),
    )
