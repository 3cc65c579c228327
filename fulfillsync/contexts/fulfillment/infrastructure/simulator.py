from __future__ import annotations

import hashlib
from datetime import datetime
from threading import Lock
from typing import Callable, Dict, List

from fulfillsync.contexts.fulfillment.domain.contracts import (
    OutboundRequestV1,
    OutboundResponseV1,
    OutboundUpdateV1,
    ProductRequestV1,
    ProductResponseV1,
    ShippingMethodV1,
)
from fulfillsync.contexts.fulfillment.domain.gateway import FulfillmentGateway, FulfillmentGatewayError
from fulfillsync.core.clock import iso_utc, parse_iso_utc, utcnow


DEFAULT_SHIPPING_METHODS = (
    ShippingMethodV1(external_id="FFN-DHL-PAKET", name="DHL Paket", carrier_code="DHL", carrier_name="DHL", shipping_type="Standard"),
    ShippingMethodV1(external_id="FFN-DHL-EXPRESS", name="DHL Express", carrier_code="DHL", carrier_name="DHL", shipping_type="Express"),
    ShippingMethodV1(external_id="FFN-DPD-CLASSIC", name="DPD Classic", carrier_code="DPD", carrier_name="DPD", shipping_type="Standard"),
    ShippingMethodV1(external_id="FFN-GLS-BUSINESS", name="GLS Business", carrier_code="GLS", carrier_name="GLS", shipping_type="Standard"),
)

_NOT_CANCELLABLE = frozenset({"SHIPPED", "DELIVERED", "RETURNED"})


class DeterministicFulfillmentSimulator(FulfillmentGateway):
    """In-memory fulfillment network.

    Outbounds are idempotent by merchant outbound number and get ids derived
    from the seed, so runs are reproducible. ``advance`` moves an outbound
    through warehouse states and records the update that polling returns.
    """

    def __init__(self, seed: int = 42, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.seed = int(seed)
        self._clock = clock
        self._lock = Lock()
        self._outbounds: Dict[str, dict] = {}
        self._by_number: Dict[str, str] = {}
        self._updates: List[OutboundUpdateV1] = []
        self._products: Dict[str, ProductResponseV1] = {}
        self._pending_failures: List[FulfillmentGatewayError] = []
        self.calls: List[str] = []

    def _digest(self, value: str) -> str:
        return hashlib.sha256(f"{self.seed}:{value}".encode("utf-8")).hexdigest()

    def _maybe_fail(self, operation: str) -> None:
        self.calls.append(operation)
        if self._pending_failures:
            raise self._pending_failures.pop(0)

    def fail_next(self, count: int = 1, *, definitive: bool = False, message: str = "FFN HTTP 503: unavailable") -> None:
        with self._lock:
            for _ in range(max(0, int(count))):
                self._pending_failures.append(
                    FulfillmentGatewayError(message, code="ffn_simulated_failure", definitive=definitive)
                )

    def create_outbound(self, request: OutboundRequestV1) -> OutboundResponseV1:
        with self._lock:
            self._maybe_fail("create_outbound")
            existing_id = self._by_number.get(request.merchant_outbound_number)
            if existing_id is not None:
                return self._response(self._outbounds[existing_id])
            if not request.items or any(int(item.quantity) <= 0 for item in request.items):
                raise FulfillmentGatewayError(
                    "FFN HTTP 422: outbound items invalid",
                    code="ffn_request_rejected",
                    definitive=True,
                )
            if not request.ship_to.country_code or not request.ship_to.zip:
                raise FulfillmentGatewayError(
                    "FFN HTTP 422: shipTo address invalid",
                    code="ffn_request_rejected",
                    definitive=True,
                )
            outbound_id = f"SIM-OB-{self._digest(request.merchant_outbound_number)[:10].upper()}"
            record = {
                "outbound_id": outbound_id,
                "merchant_outbound_number": request.merchant_outbound_number,
                "status": "NEW",
                "created_at": iso_utc(self._clock()),
                "request": request,
            }
            self._outbounds[outbound_id] = record
            self._by_number[request.merchant_outbound_number] = outbound_id
            return self._response(record)

    def find_outbound(self, merchant_outbound_number: str) -> OutboundResponseV1 | None:
        with self._lock:
            self._maybe_fail("find_outbound")
            outbound_id = self._by_number.get(str(merchant_outbound_number))
            return self._response(self._outbounds[outbound_id]) if outbound_id else None

    def cancel_outbound(self, outbound_id: str, reason: str | None = None) -> None:
        with self._lock:
            self._maybe_fail("cancel_outbound")
            record = self._outbounds.get(outbound_id)
            if record is None:
                raise FulfillmentGatewayError(
                    f"FFN HTTP 404: outbound {outbound_id} not found",
                    code="ffn_request_rejected",
                    definitive=True,
                )
            if record["status"] == "CANCELLED":
                return
            if record["status"] in _NOT_CANCELLABLE:
                raise FulfillmentGatewayError(
                    f"FFN HTTP 409: outbound {outbound_id} is {record['status']}",
                    code="ffn_request_rejected",
                    definitive=True,
                )
            self._record_update(record, "CANCELLED")

    def outbound_updates(self, since: str, until: str | None = None) -> List[OutboundUpdateV1]:
        with self._lock:
            self._maybe_fail("outbound_updates")
            lower = parse_iso_utc(since)
            upper = parse_iso_utc(until) if until else None
            selected = []
            for update in self._updates:
                moment = parse_iso_utc(update.updated_at)
                if lower is not None and moment is not None and moment < lower:
                    continue
                if upper is not None and moment is not None and moment > upper:
                    continue
                selected.append(update)
            return list(selected)

    def shipping_methods(self) -> List[ShippingMethodV1]:
        with self._lock:
            self._maybe_fail("shipping_methods")
            return list(DEFAULT_SHIPPING_METHODS)

    def upsert_product(self, product: ProductRequestV1) -> ProductResponseV1:
        with self._lock:
            self._maybe_fail("upsert_product")
            if not product.merchant_sku or not product.name:
                raise FulfillmentGatewayError(
                    "FFN HTTP 422: product requires merchantSku and name",
                    code="ffn_request_rejected",
                    definitive=True,
                )
            existing = self._products.get(product.merchant_sku)
            if existing is not None:
                return existing
            response = ProductResponseV1(
                fulfillment_product_id=f"SIM-{self._digest(product.merchant_sku)[:8].upper()}",
                merchant_sku=product.merchant_sku,
            )
            self._products[product.merchant_sku] = response
            return response

    def advance(
        self,
        merchant_outbound_number: str,
        status: str,
        *,
        tracking_number: str | None = None,
        tracking_url: str | None = None,
        carrier: str | None = None,
    ) -> OutboundUpdateV1:
        with self._lock:
            outbound_id = self._by_number.get(str(merchant_outbound_number))
            if outbound_id is None:
                raise KeyError(merchant_outbound_number)
            return self._record_update(
                self._outbounds[outbound_id],
                str(status).upper(),
                tracking_number=tracking_number,
                tracking_url=tracking_url,
                carrier=carrier,
            )

    def outbound(self, merchant_outbound_number: str) -> dict | None:
        with self._lock:
            outbound_id = self._by_number.get(str(merchant_outbound_number))
            return dict(self._outbounds[outbound_id]) if outbound_id else None

    def _record_update(self, record: dict, status: str, **shipping) -> OutboundUpdateV1:
        now = iso_utc(self._clock())
        record["status"] = status
        update = OutboundUpdateV1(
            outbound_id=record["outbound_id"],
            merchant_outbound_number=record["merchant_outbound_number"],
            status=status,
            updated_at=now,
            tracking_number=shipping.get("tracking_number"),
            tracking_url=shipping.get("tracking_url"),
            carrier=shipping.get("carrier"),
            shipped_at=now if status == "SHIPPED" else None,
            delivered_at=now if status == "DELIVERED" else None,
        )
        self._updates.append(update)
        return update

    @staticmethod
    def _response(record: dict) -> OutboundResponseV1:
        return OutboundResponseV1(
            outbound_id=record["outbound_id"],
            merchant_outbound_number=record["merchant_outbound_number"],
            status=record["status"],
            created_at=record["created_at"],
        )
