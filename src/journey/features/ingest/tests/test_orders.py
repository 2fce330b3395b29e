from __future__ import annotations

import pytest

from journey.core.errors import MalformedPayload
from journey.features.ingest.orders import (
    extract_session_id,
    order_from_tracking,
    order_from_webhook,
)


@pytest.mark.parametrize(
    ("order", "expected"),
    [
        ({"note": "gift wrap; session_id:abc_123"}, "abc_123"),
        ({"customer": {"note": "session_id:cust-9"}}, "cust-9"),
        (
            {
                "attributes": [
                    {"name": "other", "value": "x"},
                    {"name": "session_id", "value": "attr"},
                ]
            },
            "attr",
        ),
        ({"note_attributes": [{"name": "session_id", "value": "na"}]}, "na"),
        ({"referring_site": "https://ads.test/?session=ref1&x=2"}, "ref1"),
        ({"note": "thanks", "referring_site": "https://ads.test/"}, None),
        ({}, None),
    ],
)
def test_extract_session_id(order: dict, expected: str | None) -> None:
    assert extract_session_id(order) == expected


def test_note_wins_over_referrer() -> None:
    order = {"note": "session_id:n", "referring_site": "https://x.test/?session=r"}
    assert extract_session_id(order) == "n"


def test_webhook_order_normalization() -> None:
    order = order_from_webhook(
        {
            "id": 42,
            "order_number": 7,
            "total_price": "19.99",
            "customer": {"id": 5, "email": "c@example.test"},
            "line_items": [{"product_id": 1, "variant_id": 2, "name": "Cap", "price": "19.99"}],
            "created_at": "2026-01-01T10:00:00Z",
        }
    )
    assert order.order_id == "42"
    assert order.order_number == "7"
    assert order.total_value == pytest.approx(19.99)
    assert order.currency == "USD"
    assert order.customer_id == "5"
    assert order.item_count == 1
    assert order.line_items[0].product_name == "Cap"
    assert order.line_items[0].quantity == 1
    assert order.created_at.isoformat() == "2026-01-01T10:00:00+00:00"


def test_tracking_order_flat_camel_case() -> None:
    order = order_from_tracking(
        {
            "sessionId": "s1",
            "orderId": "o1",
            "totalValue": 10,
            "itemCount": 3,
            "lineItems": [{"productId": "p", "productName": "Thing", "quantity": 3, "price": 3.33}],
        }
    )
    assert order.session_id == "s1"
    assert order.item_count == 3
    assert order.line_items[0].product_id == "p"
    assert order.campaign_key is None


def test_bad_total_is_malformed() -> None:
    with pytest.raises(MalformedPayload) as exc:
        order_from_webhook({"id": 1, "total_price": "lots"})
    assert exc.value.field == "total_price"


@pytest.mark.parametrize("total", ["NaN", "nan", "inf", "-Infinity", float("nan")])
def test_non_finite_total_is_malformed(total) -> None:
    with pytest.raises(MalformedPayload) as exc:
        order_from_tracking({"orderId": "x", "totalValue": total})
    assert exc.value.field == "totalValue"


def test_non_finite_line_item_price_is_malformed() -> None:
    with pytest.raises(MalformedPayload) as exc:
        order_from_webhook({"id": 1, "total_price": "5", "line_items": [{"price": "inf"}]})
    assert exc.value.field == "line_items"


@pytest.mark.parametrize("ts", [1e20, "100000000000000000000", -1e20])
def test_out_of_range_epoch_is_malformed(ts) -> None:
    with pytest.raises(MalformedPayload) as exc:
        order_from_tracking({"orderId": "x", "totalValue": 1, "timestamp": ts})
    assert exc.value.field == "timestamp"
