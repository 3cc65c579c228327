from __future__ import annotations

from typing import Any, Dict, List, Mapping

from fulfillsync.contexts.commerce.domain.gateway import CommerceGateway, CommerceGatewayError
from fulfillsync.contexts.commerce.infrastructure.client import StorefrontClientError, StorefrontHttpClient
from fulfillsync.infrastructure.credentials import CredentialVault


SHOPIFY_API_VERSION = "2024-10"
WOOCOMMERCE_API_VERSION = "wc/v3"

# fulfillment_state -> WooCommerce order status; other states leave the status alone.
WOOCOMMERCE_ORDER_STATUS = {
    "shipped": "completed",
    "delivered": "completed",
    "cancelled": "cancelled",
}

_SHOPIFY_PUSHED_STATES = frozenset({"shipped", "delivered", "cancelled"})


def _request(client: StorefrontHttpClient, method: str, path: str, **kwargs: Any) -> object:
    try:
        return client.request_json(method, path, **kwargs)
    except StorefrontClientError as exc:
        raise CommerceGatewayError(str(exc), definitive=exc.definitive) from exc


def _required(credentials: Mapping[str, str], channel: Mapping[str, Any], *names: str) -> List[str]:
    values = [str(credentials.get(name) or "").strip() for name in names]
    missing = [name for name, value in zip(names, values) if not value]
    if missing:
        raise CommerceGatewayError(
            f"channel {channel.get('id')} is missing credentials: {', '.join(missing)}", definitive=True
        )
    return values


def _records(payload: object, key: str) -> List[dict]:
    items = payload.get(key) if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


def _refund_due(return_record: Mapping[str, Any]) -> float | None:
    """Refund amount to write back, or None while the return carries no refund."""
    amount = return_record.get("refund_amount")
    if not return_record.get("refunded_at") or amount in (None, ""):
        return None
    value = float(amount)
    return value if value > 0 else None


def _refund_marker(return_record: Mapping[str, Any]) -> str:
    return f"[return {return_record.get('external_return_id')}]"


def _external_order_id(return_record: Mapping[str, Any]) -> str:
    order_id = str(return_record.get("external_order_id") or "").strip()
    if not order_id:
        raise CommerceGatewayError(
            f"return {return_record.get('external_return_id')} has no storefront order", definitive=True
        )
    return order_id


class ShopifyCommerceGateway(CommerceGateway):
    """Shopify Admin REST API, authenticated with the channel's access token.

    Every push reads the remote state first, so a retried job never repeats a
    fulfillment or a refund.
    """

    def __init__(self, vault: CredentialVault, **client_options: Any) -> None:
        self.vault = vault
        self._client_options = client_options

    def _client(self, channel: Mapping[str, Any]) -> tuple[StorefrontHttpClient, Dict[str, str]]:
        credentials = self.vault.channel_credentials(str(channel.get("id") or ""))
        shop_domain, token = _required(credentials, channel, "shop_domain", "access_token")
        if not shop_domain.startswith(("http://", "https://")):
            shop_domain = f"https://{shop_domain}"
        version = credentials.get("api_version") or SHOPIFY_API_VERSION
        client = StorefrontHttpClient(
            f"{shop_domain.rstrip('/')}/admin/api/{version}",
            provider="Shopify",
            auth_headers={"X-Shopify-Access-Token": token},
            **self._client_options,
        )
        return client, credentials

    def _location_id(self, client: StorefrontHttpClient, credentials: Mapping[str, str], inventory_item_id=None):
        if credentials.get("location_id"):
            return int(credentials["location_id"])
        if inventory_item_id is not None:
            levels = _records(
                _request(client, "GET", "/inventory_levels.json", query={"inventory_item_ids": inventory_item_id}, allow_retry=True),
                "inventory_levels",
            )
            if levels and levels[0].get("location_id"):
                return levels[0]["location_id"]
        locations = _records(_request(client, "GET", "/locations.json", allow_retry=True), "locations")
        for location in locations:
            if location.get("active", True) and location.get("id"):
                return location["id"]
        raise CommerceGatewayError("Shopify shop has no active location", definitive=True)

    def push_order_status(self, channel: Mapping[str, Any], order: Mapping[str, Any]) -> None:
        state = str(order.get("fulfillment_state") or "")
        if state not in _SHOPIFY_PUSHED_STATES:
            return
        client, credentials = self._client(channel)
        order_id = str(order["external_order_id"])
        payload = _request(
            client,
            "GET",
            f"/orders/{order_id}.json",
            query={"fields": "id,fulfillment_status,cancelled_at,closed_at"},
            allow_retry=True,
        )
        remote = (payload.get("order") if isinstance(payload, dict) else None) or {}

        if state == "cancelled":
            if not remote.get("cancelled_at"):
                _request(client, "POST", f"/orders/{order_id}/cancel.json", payload={"reason": "other"})
            return

        if remote.get("fulfillment_status") != "fulfilled":
            fulfillment = {
                "location_id": self._location_id(client, credentials),
                "tracking_number": order.get("tracking_number"),
                "tracking_url": order.get("tracking_url"),
                "tracking_company": order.get("carrier_selection"),
                "notify_customer": True,
            }
            _request(
                client,
                "POST",
                f"/orders/{order_id}/fulfillments.json",
                payload={"fulfillment": {key: value for key, value in fulfillment.items() if value is not None}},
            )
        if state == "delivered" and not remote.get("closed_at"):
            _request(client, "POST", f"/orders/{order_id}/close.json", payload={})

    def push_return_status(self, channel: Mapping[str, Any], return_record: Mapping[str, Any]) -> None:
        # Shopify's REST API has no return states; only the refund is written back.
        amount = _refund_due(return_record)
        if amount is None:
            return
        order_id = _external_order_id(return_record)
        client, _credentials = self._client(channel)
        marker = _refund_marker(return_record)
        refunds = _records(_request(client, "GET", f"/orders/{order_id}/refunds.json", allow_retry=True), "refunds")
        if any(marker in str(refund.get("note") or "") for refund in refunds):
            return
        note = f"{return_record.get('reason') or 'Return'} {marker} amount {amount:.2f}"
        _request(client, "POST", f"/orders/{order_id}/refunds.json", payload={"refund": {"note": note, "notify": True}})

    def push_stock(self, channel: Mapping[str, Any], external_id: str, sku: str, quantity: int) -> None:
        client, credentials = self._client(channel)
        payload = _request(client, "GET", f"/products/{external_id}.json", allow_retry=True)
        product = (payload.get("product") if isinstance(payload, dict) else None) or {}
        variants = _records(product, "variants")
        variant = next((item for item in variants if item.get("sku") == sku), variants[0] if variants else None)
        if variant is None or not variant.get("inventory_item_id"):
            raise CommerceGatewayError(f"Shopify product {external_id} has no inventory item", definitive=True)
        inventory_item_id = variant["inventory_item_id"]
        _request(
            client,
            "POST",
            "/inventory_levels/set.json",
            payload={
                "location_id": self._location_id(client, credentials, inventory_item_id),
                "inventory_item_id": inventory_item_id,
                "available": int(quantity),
            },
        )


class WooCommerceGateway(CommerceGateway):
    """WooCommerce REST API v3, authenticated with consumer key and secret."""

    def __init__(self, vault: CredentialVault, **client_options: Any) -> None:
        self.vault = vault
        self._client_options = client_options

    def _client(self, channel: Mapping[str, Any]) -> StorefrontHttpClient:
        credentials = self.vault.channel_credentials(str(channel.get("id") or ""))
        url, key, secret = _required(credentials, channel, "url", "consumer_key", "consumer_secret")
        version = credentials.get("api_version") or WOOCOMMERCE_API_VERSION
        return StorefrontHttpClient(
            f"{url.rstrip('/')}/wp-json/{version}",
            provider="WooCommerce",
            auth_query={"consumer_key": key, "consumer_secret": secret},
            **self._client_options,
        )

    def push_order_status(self, channel: Mapping[str, Any], order: Mapping[str, Any]) -> None:
        update: Dict[str, Any] = {}
        status = WOOCOMMERCE_ORDER_STATUS.get(str(order.get("fulfillment_state") or ""))
        if status:
            update["status"] = status
        meta = [
            {"key": key, "value": order.get(field)}
            for key, field in (("_tracking_number", "tracking_number"), ("_tracking_url", "tracking_url"))
            if order.get(field)
        ]
        if meta:
            update["meta_data"] = meta
        if not update:
            return
        _request(self._client(channel), "PUT", f"/orders/{order['external_order_id']}", payload=update, allow_retry=True)

    def push_return_status(self, channel: Mapping[str, Any], return_record: Mapping[str, Any]) -> None:
        amount = _refund_due(return_record)
        if amount is None:
            order_id = str(return_record.get("external_order_id") or "").strip()
            if not order_id:
                return
            _request(
                self._client(channel),
                "POST",
                f"/orders/{order_id}/notes",
                payload={"note": f"Return {return_record.get('external_return_id')}: {return_record.get('status')}", "customer_note": False},
            )
            return
        order_id = _external_order_id(return_record)
        client = self._client(channel)
        marker = _refund_marker(return_record)
        refunds = _records(_request(client, "GET", f"/orders/{order_id}/refunds", allow_retry=True), "refunds")
        if any(marker in str(refund.get("reason") or "") for refund in refunds):
            return
        _request(
            client,
            "POST",
            f"/orders/{order_id}/refunds",
            payload={
                "amount": f"{amount:.2f}",
                "reason": f"{return_record.get('reason') or 'Return'} {marker}",
                "api_refund": False,
            },
        )

    def push_stock(self, channel: Mapping[str, Any], external_id: str, sku: str, quantity: int) -> None:
        _request(
            self._client(channel),
            "PUT",
            f"/products/{external_id}",
            payload={"manage_stock": True, "stock_quantity": int(quantity)},
            allow_retry=True,
        )


class ChannelCommerceGateway(CommerceGateway):
    """Routes each write-back to the gateway for the channel's type."""

    def __init__(self, gateways: Mapping[str, CommerceGateway]) -> None:
        self.gateways = dict(gateways)

    def _for(self, channel: Mapping[str, Any]) -> CommerceGateway:
        channel_type = str(channel.get("channel_type") or "")
        gateway = self.gateways.get(channel_type)
        if gateway is None:
            raise CommerceGatewayError(f"unsupported channel type: {channel_type or 'unknown'}", definitive=True)
        return gateway

    def push_order_status(self, channel: Mapping[str, Any], order: Mapping[str, Any]) -> None:
        self._for(channel).push_order_status(channel, order)

    def push_return_status(self, channel: Mapping[str, Any], return_record: Mapping[str, Any]) -> None:
        self._for(channel).push_return_status(channel, return_record)

    def push_stock(self, channel: Mapping[str, Any], external_id: str, sku: str, quantity: int) -> None:
        self._for(channel).push_stock(channel, external_id, sku, quantity)
