from __future__ import annotations

from typing import Any, Dict

from flask import current_app

from fulfillsync.contexts.catalog.infrastructure.product_repository import ProductRepository
from fulfillsync.contexts.commerce.domain.gateway import CommerceGateway
from fulfillsync.contexts.sync.infrastructure.channel_repository import ChannelRepository
from fulfillsync.contexts.sync.infrastructure.order_repository import OrderRepository
from fulfillsync.contexts.sync.infrastructure.return_repository import ReturnRepository
from fulfillsync.errors import NotFoundError


class CommerceSyncBack:
    """Pushes platform and warehouse state back to the storefront channels."""

    def __init__(self, gateway: CommerceGateway, *, channels: ChannelRepository | None = None) -> None:
        self.gateway = gateway
        self.channels = channels or ChannelRepository()

    def _channel(self, db, channel_id: str | None) -> dict | None:
        channel = self.channels.get_channel(db, channel_id) if channel_id else None
        if channel is None or not channel.get("is_active"):
            return None
        return channel

    def push_order(self, db, client_id: str, order_id: int) -> Dict[str, Any]:
        order = OrderRepository(client_id=client_id).get(db, order_id)
        if order is None:
            raise NotFoundError(details=f"order {order_id}")
        channel = self._channel(db, order.get("channel_id"))
        # Replacements have no storefront counterpart.
        if channel is None or not order.get("external_order_id"):
            current_app.logger.info("commerce_order_push_skipped", extra={"client_id": client_id, "order_id": order_id})
            return {"pushed": False}
        self.gateway.push_order_status(channel, order)
        return {"pushed": True, "channel_id": channel["id"]}

    def push_return(self, db, client_id: str, return_id: int) -> Dict[str, Any]:
        record = ReturnRepository(client_id=client_id).get(db, return_id)
        if record is None:
            raise NotFoundError(details=f"return {return_id}")
        channel = self._channel(db, record.get("channel_id"))
        if channel is None or not record.get("external_return_id"):
            current_app.logger.info("commerce_return_push_skipped", extra={"client_id": client_id, "return_id": return_id})
            return {"pushed": False}
        self.gateway.push_return_status(channel, record)
        return {"pushed": True, "channel_id": channel["id"]}

    def push_stock(self, db, client_id: str, product_id: int) -> Dict[str, Any]:
        products = ProductRepository(client_id=client_id)
        product = products.get(db, product_id)
        if product is None:
            raise NotFoundError(details=f"product {product_id}")
        pushed = 0
        for link in products.channel_links(db, product_id):
            channel = self._channel(db, link["channel_id"])
            if channel is None:
                continue
            self.gateway.push_stock(
                channel,
                str(link["external_id"]),
                str(product["sku"]),
                int(product.get("available_quantity") or 0),
            )
            pushed += 1
        return {"pushed": pushed}
