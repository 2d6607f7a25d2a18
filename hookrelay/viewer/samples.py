"""Sample Shopify payloads for local test runs.

A test run pushes a synthetic event straight into a viewer's buffer; it never
touches the network or the relay.
"""

from __future__ import annotations

import copy
from datetime import datetime
from enum import Enum
from typing import Any

from hookrelay.models import CapturedEvent
from hookrelay.viewer.buffer import BoundedEventBuffer

LOCAL_TEST_SOURCE = "local_manual_test_run"


class SampleEventType(str, Enum):
    """Kinds of sample deliveries available for a test run."""

    ORDER_CREATED = "Order Created"
    PRODUCT_UPDATED = "Product Updated"
    ORDER_CANCELLED = "Order Cancelled"


SAMPLE_ORDER_CREATED: dict[str, Any] = {
    "event_type": SampleEventType.ORDER_CREATED.value,
    "id": 6011185955070,
    "admin_graphql_api_id": "gid://shopify/Order/6011185955070",
    "app_id": 580111,
    "browser_ip": "154.80.33.250",
    "buyer_accepts_marketing": False,
    "cancel_reason": None,
    "cancelled_at": None,
    "checkout_id": 36255044632830,
    "client_details": {
        "accept_language": "en-US,en;q=0.9",
        "browser_height": 789,
        "browser_ip": "154.80.33.250",
        "browser_width": 1440,
    },
    "closed_at": None,
    "confirmation_number": "JFVBNM87U",
    "contact_email": "customer@example.com",
    "created_at": "2024-07-28T10:30:00-04:00",
    "currency": "USD",
    "current_total_price": "199.99",
    "line_items": [
        {
            "id": 1234567890123,
            "title": "Awesome T-Shirt",
            "quantity": 1,
            "sku": "TSHIRT-BLK-L",
            "price": "25.00",
            "vendor": "MyBrand",
        }
    ],
    "name": "#1001",
    "order_number": 1001,
    "processed_at": "2024-07-28T10:30:00-04:00",
    "shipping_address": {
        "first_name": "John",
        "last_name": "Doe",
        "address1": "123 Shopify Street",
        "city": "Ottawa",
        "province_code": "ON",
        "zip": "K1N 5T5",
        "country_code": "CA",
    },
    "tags": "new-customer, vip",
    "total_price": "199.99",
    "updated_at": "2024-07-28T10:30:00-04:00",
    "user_id": None,
}

SAMPLE_PRODUCT_UPDATED: dict[str, Any] = {
    "event_type": SampleEventType.PRODUCT_UPDATED.value,
    "id": 801230450789,
    "admin_graphql_api_id": "gid://shopify/Product/801230450789",
    "title": "Updated Luxury Snowboard",
    "vendor": "SnowBeast Inc.",
    "product_type": "Snowboard",
    "created_at": "2024-07-01T10:00:00-04:00",
    "updated_at": "2024-07-29T11:00:00-04:00",
    "published_at": "2024-07-01T10:00:00-04:00",
    "status": "active",
    "tags": "snowboard, winter, pro-series",
    "variants": [
        {
            "id": 987654321098,
            "product_id": 801230450789,
            "title": "155cm",
            "price": "599.99",
            "sku": "SB-LUX-155",
            "inventory_quantity": 15,
            "old_inventory_quantity": 20,
        },
        {
            "id": 987654321099,
            "product_id": 801230450789,
            "title": "160cm",
            "price": "609.99",
            "sku": "SB-LUX-160",
            "inventory_quantity": 10,
            "old_inventory_quantity": 10,
        },
    ],
    "images": [{"id": 1001, "src": "https://example.com/images/snowboard_updated.jpg"}],
}

SAMPLE_ORDER_CANCELLED: dict[str, Any] = {
    "event_type": SampleEventType.ORDER_CANCELLED.value,
    "id": 6011185955070,
    "admin_graphql_api_id": "gid://shopify/Order/6011185955070",
    "app_id": 580111,
    "cancel_reason": "customer",
    "cancelled_at": "2024-07-29T12:00:00-04:00",
    "currency": "USD",
    "email": "customer@example.com",
    "financial_status": "refunded",
    "name": "#1001",
    "order_number": 1001,
    "phone": None,
    "total_price": "199.99",
    "user_id": None,
    "note": "Customer requested cancellation.",
}

SAMPLE_PAYLOADS: dict[SampleEventType, dict[str, Any]] = {
    SampleEventType.ORDER_CREATED: SAMPLE_ORDER_CREATED,
    SampleEventType.PRODUCT_UPDATED: SAMPLE_PRODUCT_UPDATED,
    SampleEventType.ORDER_CANCELLED: SAMPLE_ORDER_CANCELLED,
}


def sample_payload(kind: SampleEventType | str) -> dict[str, Any]:
    """Return a private copy of a sample payload."""
    return copy.deepcopy(SAMPLE_PAYLOADS[SampleEventType(kind)])


def make_test_event(kind: SampleEventType | str = SampleEventType.ORDER_CREATED) -> CapturedEvent:
    """Build a synthetic CapturedEvent tagged as a local test run."""
    payload = sample_payload(kind)
    payload["event_source"] = LOCAL_TEST_SOURCE
    payload["received_at"] = datetime.now().strftime("%H:%M:%S")
    return CapturedEvent.create(payload, prefix="local-test")


def inject_test_event(
    buffer: BoundedEventBuffer,
    kind: SampleEventType | str = SampleEventType.ORDER_CREATED,
) -> CapturedEvent:
    """Push a synthetic event straight into ``buffer``."""
    event = make_test_event(kind)
    buffer.push(event)
    return event
