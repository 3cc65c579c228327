from __future__ import annotations

from typing import List

from fulfillsync.contexts.fulfillment.domain.contracts import (
    OutboundRequestV1,
    OutboundResponseV1,
    OutboundUpdateV1,
    ProductRequestV1,
    ProductResponseV1,
    ShippingMethodV1,
)
from fulfillsync.contexts.fulfillment.domain.gateway import FulfillmentGateway, FulfillmentGatewayError
from fulfillsync.contexts.fulfillment.infrastructure.client import FulfillmentClientError, FulfillmentHttpClient
from fulfillsync.errors import classify_gateway_failure


_MAX_UPDATE_PAGES = 50


def _records(payload: object) -> List[dict]:
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if isinstance(payload, dict):
        items = payload.get("data") or payload.get("items") or []
        if isinstance(items, list):
            return [item for item in items if isinstance(item, dict)]
    return []


def _gateway_error(exc: FulfillmentClientError) -> FulfillmentGatewayError:
    details = str(exc)
    message_key, definitive = classify_gateway_failure(details)
    return FulfillmentGatewayError(details, code=message_key, definitive=definitive)


class HttpFulfillmentGateway(FulfillmentGateway):
    def __init__(self, client: FulfillmentHttpClient) -> None:
        self.client = client

    def create_outbound(self, request: OutboundRequestV1) -> OutboundResponseV1:
        try:
            payload = self.client.request_json(
                "POST",
                "/v1/merchant/outbounds",
                payload=request.to_dict(),
                query={"oversale": "true"},
                headers={"Idempotency-Key": request.idempotency_key},
                allow_retry=True,
            )
        except FulfillmentClientError as exc:
            if exc.status == 409:
                existing = self.find_outbound(request.merchant_outbound_number)
                if existing is not None:
                    return existing
            raise _gateway_error(exc) from exc
        if not isinstance(payload, dict):
            raise FulfillmentGatewayError("FFN returned a non-object outbound response.")
        response = OutboundResponseV1.from_dict(payload)
        if not response.outbound_id:
            raise FulfillmentGatewayError("FFN did not return an outboundId.")
        if not response.merchant_outbound_number:
            response.merchant_outbound_number = request.merchant_outbound_number
        return response

    def find_outbound(self, merchant_outbound_number: str) -> OutboundResponseV1 | None:
        try:
            payload = self.client.request_json(
                "GET",
                "/v1/merchant/outbounds",
                query={"merchantOutboundNumber": merchant_outbound_number},
                allow_retry=True,
            )
        except FulfillmentClientError as exc:
            if exc.status == 404:
                return None
            raise _gateway_error(exc) from exc
        for record in _records(payload):
            if str(record.get("merchantOutboundNumber") or "") == str(merchant_outbound_number):
                return OutboundResponseV1.from_dict(record)
        return None

    def cancel_outbound(self, outbound_id: str, reason: str | None = None) -> None:
        try:
            self.client.request_json(
                "POST",
                f"/v1/merchant/outbounds/{outbound_id}/cancel",
                payload={"reason": reason or "cancelled by merchant"},
                headers={"Idempotency-Key": f"cancel-{outbound_id}"},
                allow_retry=True,
            )
        except FulfillmentClientError as exc:
            raise _gateway_error(exc) from exc

    def outbound_updates(self, since: str, until: str | None = None) -> List[OutboundUpdateV1]:
        updates: List[OutboundUpdateV1] = []
        page = 1
        while page <= _MAX_UPDATE_PAGES:
            try:
                payload = self.client.request_json(
                    "GET",
                    "/v1/merchant/outbounds/updates",
                    query={"fromDate": since, "toDate": until, "page": page},
                    allow_retry=True,
                )
            except FulfillmentClientError as exc:
                raise _gateway_error(exc) from exc
            updates.extend(OutboundUpdateV1.from_dict(record) for record in _records(payload))
            if not (isinstance(payload, dict) and payload.get("moreDataAvailable")):
                break
            page += 1
        return updates

    def shipping_methods(self) -> List[ShippingMethodV1]:
        try:
            payload = self.client.request_json("GET", "/v1/merchant/shippingmethods", allow_retry=True)
        except FulfillmentClientError as exc:
            raise _gateway_error(exc) from exc
        methods = [ShippingMethodV1.from_dict(record) for record in _records(payload)]
        return [method for method in methods if method.external_id]

    def upsert_product(self, product: ProductRequestV1) -> ProductResponseV1:
        try:
            payload = self.client.request_json(
                "POST",
                "/v1/merchant/products",
                payload=product.to_dict(),
                headers={"Idempotency-Key": f"product-{product.merchant_sku}"},
                allow_retry=True,
            )
        except FulfillmentClientError as exc:
            if exc.status == 409:
                return self._existing_product(product.merchant_sku, exc)
            raise _gateway_error(exc) from exc
        response = ProductResponseV1.from_dict(payload if isinstance(payload, dict) else {})
        if not response.fulfillment_product_id:
            raise FulfillmentGatewayError("FFN did not return a jfsku for the product.")
        return response

    def _existing_product(self, merchant_sku: str, cause: FulfillmentClientError) -> ProductResponseV1:
        try:
            payload = self.client.request_json(
                "GET",
                "/v1/merchant/products",
                query={"merchantSku": merchant_sku},
                allow_retry=True,
            )
        except FulfillmentClientError as exc:
            raise _gateway_error(exc) from exc
        for record in _records(payload):
            if str(record.get("merchantSku") or "") == merchant_sku:
                return ProductResponseV1.from_dict(record)
        raise _gateway_error(cause)
