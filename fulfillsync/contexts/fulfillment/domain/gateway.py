from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List

from fulfillsync.contexts.fulfillment.domain.contracts import (
    OutboundRequestV1,
    OutboundResponseV1,
    OutboundUpdateV1,
    ProductRequestV1,
    ProductResponseV1,
    ShippingMethodV1,
)


class FulfillmentGatewayError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        definitive: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = str(code or "").strip() or None
        self.definitive = bool(definitive)


class FulfillmentGateway(ABC):
    @abstractmethod
    def create_outbound(self, request: OutboundRequestV1) -> OutboundResponseV1:
        raise NotImplementedError

    @abstractmethod
    def find_outbound(self, merchant_outbound_number: str) -> OutboundResponseV1 | None:
        raise NotImplementedError

    @abstractmethod
    def cancel_outbound(self, outbound_id: str, reason: str | None = None) -> None:
        raise NotImplementedError

    @abstractmethod
    def outbound_updates(self, since: str, until: str | None = None) -> List[OutboundUpdateV1]:
        raise NotImplementedError

    @abstractmethod
    def shipping_methods(self) -> List[ShippingMethodV1]:
        raise NotImplementedError

    @abstractmethod
    def upsert_product(self, product: ProductRequestV1) -> ProductResponseV1:
        raise NotImplementedError
