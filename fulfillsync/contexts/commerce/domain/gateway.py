from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping


class CommerceGatewayError(RuntimeError):
    def __init__(self, message: str, *, definitive: bool = False) -> None:
        super().__init__(message)
        self.definitive = bool(definitive)


class CommerceGateway(ABC):
    """Write-back to a storefront channel (fulfillment, return and stock status)."""

    @abstractmethod
    def push_order_status(self, channel: Mapping[str, Any], order: Mapping[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def push_return_status(self, channel: Mapping[str, Any], return_record: Mapping[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def push_stock(self, channel: Mapping[str, Any], external_id: str, sku: str, quantity: int) -> None:
        raise NotImplementedError


class LoggingCommerceGateway(CommerceGateway):
    """Records write-backs instead of calling storefront APIs."""

    def __init__(self, logger) -> None:
        self._logger = logger
        self.calls: List[Dict[str, Any]] = []

    def _record(self, event: str, payload: Dict[str, Any]) -> None:
        self.calls.append({"event": event, **payload})
        self._logger.info(event, extra=payload)

    def push_order_status(self, channel: Mapping[str, Any], order: Mapping[str, Any]) -> None:
        self._record(
            "commerce_order_status_pushed",
            {
                "channel_id": channel.get("id"),
                "channel_type": channel.get("channel_type"),
                "external_order_id": order.get("external_order_id"),
                "fulfillment_state": order.get("fulfillment_state"),
                "tracking_number": order.get("tracking_number"),
                "tracking_url": order.get("tracking_url"),
            },
        )

    def push_return_status(self, channel: Mapping[str, Any], return_record: Mapping[str, Any]) -> None:
        self._record(
            "commerce_return_status_pushed",
            {
                "channel_id": channel.get("id"),
                "channel_type": channel.get("channel_type"),
                "external_return_id": return_record.get("external_return_id"),
                "status": return_record.get("status"),
                "refund_amount": return_record.get("refund_amount"),
            },
        )

    def push_stock(self, channel: Mapping[str, Any], external_id: str, sku: str, quantity: int) -> None:
        self._record(
            "commerce_stock_pushed",
            {
                "channel_id": channel.get("id"),
                "channel_type": channel.get("channel_type"),
                "external_id": external_id,
                "sku": sku,
                "quantity": int(quantity),
            },
        )
