from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
from typing import Any, Callable, Dict, List, Mapping, Tuple

from flask import current_app

from fulfillsync.contexts.sync.application.orchestrator import SyncOrchestrator
from fulfillsync.contexts.sync.domain.events import (
    Address,
    ChangeEvent,
    LineItem,
    OrderChangeEvent,
    ProductChangeEvent,
    ReturnChangeEvent,
)
from fulfillsync.contexts.sync.domain.results import SyncResult
from fulfillsync.contexts.sync.infrastructure.channel_repository import ChannelRepository
from fulfillsync.errors import MalformedPayloadError, NotFoundError, SignatureError
from fulfillsync.infrastructure.credentials import CredentialVault


PROVIDER_SHOPIFY = "shopify"
PROVIDER_WOOCOMMERCE = "woocommerce"

SIGNATURE_HEADERS = {
    PROVIDER_SHOPIFY: "X-Shopify-Hmac-Sha256",
    PROVIDER_WOOCOMMERCE: "X-WC-Webhook-Signature",
}
TOPIC_HEADERS = {
    PROVIDER_SHOPIFY: "X-Shopify-Topic",
    PROVIDER_WOOCOMMERCE: "X-WC-Webhook-Topic",
}

_TOPIC_SPLIT = re.compile(r"[/.\-]")


def _compute_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(provider: str, raw_body: bytes, header: str | None, secret: str | None) -> None:
    """Check the base64 HMAC-SHA256 of ``raw_body``; raise :class:`SignatureError` on mismatch."""
    normalized = str(provider or "").strip().lower()
    if normalized not in SIGNATURE_HEADERS:
        raise SignatureError(details=f"unsupported provider {provider!r}")
    if not secret:
        raise SignatureError(details=f"no webhook secret configured for {normalized}")
    received = str(header or "").strip()
    if not received:
        raise SignatureError(details=f"missing {SIGNATURE_HEADERS[normalized]} header")
    expected = _compute_signature(bytes(raw_body or b""), secret)
    if not hmac.compare_digest(expected.encode("ascii"), received.encode("utf-8", errors="replace")):
        raise SignatureError(details="signature mismatch")


def parse_topic(topic: str | None) -> Tuple[str, str]:
    """``orders/create``, ``order.updated`` and ``order-created`` all become ``(order, create[d])``."""
    parts = [part for part in _TOPIC_SPLIT.split(str(topic or "").strip().lower()) if part]
    if len(parts) < 2:
        raise MalformedPayloadError(code="topic_invalid", details=f"webhook topic {topic!r}")
    resource = parts[0][:-1] if parts[0].endswith("s") else parts[0]
    return resource, parts[1]


def _text(value: Any) -> str | None:
    if value is None:
        return None
    raw = str(value).strip()
    return raw or None


def _number(value: Any) -> float | None:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _first(items: Any) -> Mapping[str, Any]:
    if isinstance(items, list) and items and isinstance(items[0], Mapping):
        return items[0]
    return {}


def _required_id(payload: Mapping[str, Any], key: str = "id") -> str:
    value = _text(payload.get(key))
    if value is None:
        raise MalformedPayloadError(details=f"payload without {key}")
    return value


def _without_none(values: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


# -- Shopify ----------------------------------------------------------------


def _shopify_address(raw: Any) -> Address | None:
    if not isinstance(raw, Mapping):
        return None
    return Address.from_dict(
        {
            "first_name": raw.get("first_name"),
            "last_name": raw.get("last_name"),
            "company": raw.get("company"),
            "street": raw.get("address1"),
            "address_line2": raw.get("address2"),
            "city": raw.get("city"),
            "zip": raw.get("zip"),
            "state": raw.get("province_code") or raw.get("province"),
            "country": raw.get("country_code") or raw.get("country"),
            "phone": raw.get("phone"),
        }
    )


def _shopify_order(payload: Mapping[str, Any]) -> Tuple[Dict[str, Any], List[LineItem]]:
    customer = payload.get("customer") if isinstance(payload.get("customer"), Mapping) else {}
    shipping_line = _first(payload.get("shipping_lines"))
    price_set = payload.get("total_shipping_price_set")
    shop_money = price_set.get("shop_money") if isinstance(price_set, Mapping) else None
    shipping_cost = _number(shop_money.get("amount")) if isinstance(shop_money, Mapping) else None
    if shipping_cost is None and shipping_line:
        shipping_cost = _number(shipping_line.get("price"))
    customer_name = " ".join(
        part for part in (_text(customer.get("first_name")), _text(customer.get("last_name"))) if part
    )
    gateways = payload.get("payment_gateway_names")
    fields = {
        "order_number": _text(payload.get("name")) or _text(payload.get("order_number")),
        "subtotal": _number(payload.get("subtotal_price")),
        "shipping_cost": shipping_cost,
        "tax_amount": _number(payload.get("total_tax")),
        "total": _number(payload.get("total_price")),
        "currency": _text(payload.get("currency")),
        "discount_code": _text(_first(payload.get("discount_codes")).get("code")),
        "discount_amount": _number(payload.get("total_discounts")),
        "payment_status": _text(payload.get("financial_status")),
        "payment_method": _text(gateways[0]) if isinstance(gateways, list) and gateways else _text(payload.get("gateway")),
        "customer_name": customer_name or None,
        "customer_email": _text(payload.get("email")) or _text(customer.get("email")),
        "customer_phone": _text(payload.get("phone")) or _text(customer.get("phone")),
        "shipping_address": _shopify_address(payload.get("shipping_address")),
        "billing_address": _shopify_address(payload.get("billing_address")),
        "shipping_method_code": _text(shipping_line.get("code")),
        "shipping_method_title": _text(shipping_line.get("title")),
        "notes": _text(payload.get("note")),
        "order_date": _text(payload.get("created_at")),
        "tags": _text(payload.get("tags")),
        "commerce_cancelled_at": _text(payload.get("cancelled_at")),
    }
    items = [
        LineItem.from_dict(
            {
                "sku": line.get("sku") or f"SHOP-{line.get('variant_id') or line.get('product_id')}",
                "quantity": line.get("quantity"),
                "name": line.get("name") or line.get("title"),
                "unit_price": line.get("price"),
                "external_line_id": line.get("id"),
            }
        )
        for line in payload.get("line_items") or []
        if isinstance(line, Mapping)
    ]
    return _without_none(fields), items


def _shopify_refund(payload: Mapping[str, Any]) -> Tuple[Dict[str, Any], List[LineItem]]:
    fields = {
        "reason": _text(payload.get("reason")) or _text(payload.get("note")) or "Refund from Shopify",
        "customer_note": _text(payload.get("note")),
    }
    items = []
    for refund_line in payload.get("refund_line_items") or []:
        if not isinstance(refund_line, Mapping):
            continue
        line = refund_line.get("line_item") if isinstance(refund_line.get("line_item"), Mapping) else {}
        sku = _text(line.get("sku"))
        if sku is None:
            continue
        items.append(
            LineItem.from_dict({"sku": sku, "quantity": refund_line.get("quantity"), "name": line.get("name")})
        )
    return _without_none(fields), items


def _shopify_product(payload: Mapping[str, Any]) -> Tuple[str, Dict[str, Any]]:
    variant = _first(payload.get("variants"))
    sku = _text(variant.get("sku")) or f"SHOP-{_required_id(payload)}"
    fields = {
        "name": _text(payload.get("title")),
        "description": _text(payload.get("body_html")),
        "image_url": _text(_first(payload.get("images")).get("src")),
        "net_sales_price": _number(variant.get("price")),
        "compare_at_price": _number(variant.get("compare_at_price")),
        "taxable": variant.get("taxable") if isinstance(variant.get("taxable"), bool) else None,
        "tags": _text(payload.get("tags")),
        "product_type": _text(payload.get("product_type")),
        "vendor": _text(payload.get("vendor")),
    }
    return sku, _without_none(fields)


# -- WooCommerce ------------------------------------------------------------


def _woo_address(raw: Any) -> Address | None:
    if not isinstance(raw, Mapping):
        return None
    return Address.from_dict(
        {
            "first_name": raw.get("first_name"),
            "last_name": raw.get("last_name"),
            "company": raw.get("company"),
            "street": raw.get("address_1"),
            "address_line2": raw.get("address_2"),
            "city": raw.get("city"),
            "zip": raw.get("postcode"),
            "state": raw.get("state"),
            "country": raw.get("country"),
            "phone": raw.get("phone"),
            "email": raw.get("email"),
        }
    )


def _woo_unit_price(line: Mapping[str, Any]) -> float | None:
    price = _number(line.get("price"))
    if price is not None:
        return price
    total = _number(line.get("total"))
    quantity = _number(line.get("quantity"))
    if total is None or not quantity:
        return None
    return round(total / quantity, 4)


def _woo_order(payload: Mapping[str, Any]) -> Tuple[Dict[str, Any], List[LineItem]]:
    billing = payload.get("billing") if isinstance(payload.get("billing"), Mapping) else {}
    shipping_line = _first(payload.get("shipping_lines"))
    customer_name = " ".join(
        part for part in (_text(billing.get("first_name")), _text(billing.get("last_name"))) if part
    )
    total = _number(payload.get("total"))
    shipping_cost = _number(payload.get("shipping_total"))
    tax_amount = _number(payload.get("total_tax"))
    subtotal = None
    if total is not None:
        subtotal = round(total - (shipping_cost or 0.0) - (tax_amount or 0.0), 2)
    fields = {
        "order_number": _text(payload.get("number")),
        "subtotal": subtotal,
        "shipping_cost": shipping_cost,
        "tax_amount": tax_amount,
        "total": total,
        "currency": _text(payload.get("currency")),
        "discount_code": _text(_first(payload.get("coupon_lines")).get("code")),
        "discount_amount": _number(payload.get("discount_total")),
        "payment_status": _text(payload.get("status")),
        "payment_method": _text(payload.get("payment_method_title")) or _text(payload.get("payment_method")),
        "customer_name": customer_name or None,
        "customer_email": _text(billing.get("email")),
        "customer_phone": _text(billing.get("phone")),
        "shipping_address": _woo_address(payload.get("shipping")),
        "billing_address": _woo_address(billing),
        "shipping_method_code": _text(shipping_line.get("method_id")),
        "shipping_method_title": _text(shipping_line.get("method_title")),
        "notes": _text(payload.get("customer_note")),
        "order_date": _text(payload.get("date_created_gmt")) or _text(payload.get("date_created")),
    }
    items = [
        LineItem.from_dict(
            {
                "sku": line.get("sku") or f"WOO-{line.get('variation_id') or line.get('product_id')}",
                "quantity": line.get("quantity"),
                "name": line.get("name"),
                "unit_price": _woo_unit_price(line),
                "external_line_id": line.get("id"),
            }
        )
        for line in payload.get("line_items") or []
        if isinstance(line, Mapping)
    ]
    return _without_none(fields), items


def _woo_refund(payload: Mapping[str, Any]) -> Tuple[Dict[str, Any], List[LineItem]]:
    fields = {"reason": _text(payload.get("reason")) or "Refund from WooCommerce"}
    items = []
    for line in payload.get("line_items") or []:
        if not isinstance(line, Mapping) or not _text(line.get("sku")):
            continue
        # WooCommerce reports refunded quantities as negative numbers.
        quantity = abs(int(_number(line.get("quantity")) or 0))
        items.append(LineItem.from_dict({"sku": line.get("sku"), "quantity": quantity, "name": line.get("name")}))
    return fields, items


def _woo_product(payload: Mapping[str, Any]) -> Tuple[str, Dict[str, Any]]:
    sku = _text(payload.get("sku")) or f"WOO-{_required_id(payload)}"
    tags = payload.get("tags")
    if isinstance(tags, list):
        tag_names = ", ".join(str(tag["name"]).strip() for tag in tags if isinstance(tag, Mapping) and tag.get("name"))
    else:
        tag_names = _text(tags)
    price = _number(payload.get("price"))
    fields = {
        "name": _text(payload.get("name")),
        "description": _text(payload.get("description")),
        "image_url": _text(_first(payload.get("images")).get("src")),
        "net_sales_price": price if price is not None else _number(payload.get("regular_price")),
        "compare_at_price": _number(payload.get("regular_price")) if _text(payload.get("sale_price")) else None,
        "taxable": (str(payload.get("tax_status")).lower() == "taxable") if payload.get("tax_status") else None,
        "tags": tag_names or None,
        "product_type": _text(payload.get("type")),
    }
    return sku, _without_none(fields)


class WebhookIngestor:
    """Verifies storefront webhooks and turns them into change events.

    The channel decides the provider; the secret comes from the credential
    vault on every call.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        vault: CredentialVault,
        *,
        channels: ChannelRepository | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.vault = vault
        self.channels = channels or ChannelRepository()

    def ingest_request(self, db, channel_id: str, headers: Mapping[str, str], raw_body: bytes) -> SyncResult:
        channel = self._channel(db, channel_id)
        provider = str(channel["channel_type"])
        return self.ingest(
            db,
            channel_id,
            topic=headers.get(TOPIC_HEADERS[provider]),
            raw_body=raw_body,
            signature=headers.get(SIGNATURE_HEADERS[provider]),
        )

    def ingest(self, db, channel_id: str, *, topic: str | None, raw_body: bytes, signature: str | None) -> SyncResult:
        channel = self._channel(db, channel_id)
        provider = str(channel["channel_type"])
        try:
            verify_signature(provider, raw_body, signature, self.vault.channel_secret(channel_id))
        except SignatureError as exc:
            current_app.logger.warning(
                "webhook_signature_rejected",
                extra={"channel_id": channel_id, "provider": provider, "details": exc.details},
            )
            raise
        payload = self._decode(raw_body)
        event = self.normalize(channel, topic, payload)
        result = self.orchestrator.process(db, event)
        current_app.logger.info(
            "webhook_ingested",
            extra={
                "channel_id": channel_id,
                "provider": provider,
                "topic": topic,
                "outcome": result.outcome,
                "entity_id": result.entity_id,
            },
        )
        return result

    def normalize(self, channel: Mapping[str, Any], topic: str | None, payload: Mapping[str, Any]) -> ChangeEvent:
        provider = str(channel.get("channel_type") or "").lower()
        client_id = str(channel["client_id"])
        channel_id = str(channel["id"])
        resource, _action = parse_topic(topic)
        builders: Dict[Tuple[str, str], Callable[..., ChangeEvent]] = {
            (PROVIDER_SHOPIFY, "order"): lambda: self._order_event(client_id, channel_id, provider, payload, _shopify_order),
            (PROVIDER_WOOCOMMERCE, "order"): lambda: self._order_event(client_id, channel_id, provider, payload, _woo_order),
            (PROVIDER_SHOPIFY, "refund"): lambda: self._return_event(client_id, channel_id, provider, payload, _shopify_refund),
            (PROVIDER_WOOCOMMERCE, "refund"): lambda: self._return_event(client_id, channel_id, provider, payload, _woo_refund),
            (PROVIDER_SHOPIFY, "product"): lambda: self._product_event(client_id, channel_id, provider, payload, _shopify_product),
            (PROVIDER_WOOCOMMERCE, "product"): lambda: self._product_event(client_id, channel_id, provider, payload, _woo_product),
        }
        builder = builders.get((provider, resource))
        if builder is None:
            raise MalformedPayloadError(code="topic_unsupported", details=f"{provider} topic {topic!r}")
        return builder()

    def _channel(self, db, channel_id: str) -> dict:
        channel = self.channels.get_channel(db, channel_id)
        if channel is None:
            raise NotFoundError(details=f"channel {channel_id}")
        return channel

    @staticmethod
    def _decode(raw_body: bytes) -> Mapping[str, Any]:
        try:
            payload = json.loads(bytes(raw_body or b"").decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MalformedPayloadError(details=f"webhook body is not JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise MalformedPayloadError(details="webhook body must be a JSON object")
        return payload

    @staticmethod
    def _order_event(client_id, channel_id, provider, payload, normalize) -> OrderChangeEvent:
        fields, items = normalize(payload)
        return OrderChangeEvent(
            client_id=client_id,
            channel_id=channel_id,
            external_order_id=_required_id(payload),
            source=provider,
            fields=fields,
            items=items or None,
        )

    @staticmethod
    def _return_event(client_id, channel_id, provider, payload, normalize) -> ReturnChangeEvent:
        fields, items = normalize(payload)
        return ReturnChangeEvent(
            client_id=client_id,
            channel_id=channel_id,
            external_return_id=_required_id(payload),
            external_order_id=_required_id(payload, "order_id"),
            source=provider,
            fields=fields,
            items=items or None,
        )

    @staticmethod
    def _product_event(client_id, channel_id, provider, payload, normalize) -> ProductChangeEvent:
        sku, fields = normalize(payload)
        return ProductChangeEvent(
            client_id=client_id,
            sku=sku,
            source=provider,
            fields=fields,
            channel_id=channel_id,
            external_id=_required_id(payload),
        )
