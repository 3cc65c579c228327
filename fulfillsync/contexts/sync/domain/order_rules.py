from __future__ import annotations

from typing import Any, Mapping


SHOPIFY_PAID_STATUSES = frozenset({"paid", "authorized", "partially_paid"})
WOOCOMMERCE_UNPAID_STATUSES = frozenset({"pending", "on-hold"})
CANCELLING_PAYMENT_STATUSES = frozenset({"refunded", "voided", "cancelled"})

STRESS_TEST_TAGS = frozenset({"stress-test", "k6", "test-mode", "load-test"})
STRESS_TEST_EMAIL_DOMAINS = (
    "@test.com",
    "@test-medium.com",
    "@blackfriday-test.com",
    "@stress-test.io",
    "@load-test.net",
)

# Status reported by the fulfillment network -> operational fulfillment_state.
FFN_STATUS_MAP = {
    "NEW": "awaiting_stock",
    "OPEN": "ready_for_picking",
    "IN_PICK": "picking",
    "PICKED": "picked",
    "PACKING": "packing",
    "PACKED": "packed",
    "SHIPPED": "shipped",
    "DELIVERED": "delivered",
    "CANCELLED": "cancelled",
    "FAILED": "failed_delivery",
    "RETURNED": "returned_to_sender",
}


def is_payment_approved(channel_type: str | None, payment_status: str | None) -> bool:
    status = str(payment_status or "").strip().lower()
    if not status:
        return False
    if status in CANCELLING_PAYMENT_STATUSES:
        return False
    if str(channel_type or "").strip().lower() == "woocommerce":
        return status not in WOOCOMMERCE_UNPAID_STATUSES
    return status in SHOPIFY_PAID_STATUSES


def is_cancelled_by_commerce(order: Mapping[str, Any]) -> bool:
    status = str(order.get("payment_status") or "").strip().lower()
    return status in CANCELLING_PAYMENT_STATUSES or bool(order.get("commerce_cancelled_at"))


def split_tags(tags: object) -> list[str]:
    if isinstance(tags, (list, tuple, set)):
        items = [str(tag) for tag in tags]
    else:
        items = str(tags or "").split(",")
    return [item.strip().lower() for item in items if item and item.strip()]


def is_stress_test_order(order: Mapping[str, Any]) -> bool:
    if STRESS_TEST_TAGS.intersection(split_tags(order.get("tags"))):
        return True
    email = str(order.get("customer_email") or "").strip().lower()
    return any(email.endswith(domain) for domain in STRESS_TEST_EMAIL_DOMAINS)


def map_ffn_status(status: str | None) -> str | None:
    return FFN_STATUS_MAP.get(str(status or "").strip().upper())
