from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from fulfillsync.core.clock import iso_utc


def _safe_str(value: object | None) -> str | None:
    if value is None:
        return None
    raw = str(value).strip()
    return raw or None


def _safe_float(value: object | None, default: float | None = None) -> float | None:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _safe_int(value: object | None, default: int = 0) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


@dataclass
class ShipToV1:
    name: str
    street: str
    city: str
    zip: str
    country_code: str
    company: str | None = None
    additional_address: str | None = None
    phone: str | None = None
    email: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "name": self.name,
            "company": self.company,
            "street": self.street,
            "additionalAddress": self.additional_address,
            "city": self.city,
            "zip": self.zip,
            "countryCode": self.country_code,
            "phone": self.phone,
            "email": self.email,
        }
        return {key: value for key, value in payload.items() if value is not None}

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "ShipToV1":
        data = dict(payload or {})
        return ShipToV1(
            name=str(data.get("name") or ""),
            company=_safe_str(data.get("company")),
            street=str(data.get("street") or ""),
            additional_address=_safe_str(data.get("additionalAddress")),
            city=str(data.get("city") or ""),
            zip=str(data.get("zip") or ""),
            country_code=str(data.get("countryCode") or "").upper(),
            phone=_safe_str(data.get("phone")),
            email=_safe_str(data.get("email")),
        )


@dataclass
class OutboundItemV1:
    merchant_sku: str
    quantity: int
    name: str | None = None
    jfsku: str | None = None
    unit_price: float | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "merchantSku": self.merchant_sku,
            "jfsku": self.jfsku,
            "name": self.name,
            "quantity": int(self.quantity),
            "unitPrice": self.unit_price,
        }
        return {key: value for key, value in payload.items() if value is not None}

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "OutboundItemV1":
        data = dict(payload or {})
        return OutboundItemV1(
            merchant_sku=str(data.get("merchantSku") or ""),
            quantity=_safe_int(data.get("quantity"), 0),
            name=_safe_str(data.get("name")),
            jfsku=_safe_str(data.get("jfsku")),
            unit_price=_safe_float(data.get("unitPrice")),
        )


@dataclass
class OutboundRequestV1:
    """Outbound (fulfillment order) as sent to the network.

    ``merchant_outbound_number`` is the platform order id and doubles as the
    idempotency key, so a repeated push never creates a second outbound.
    """

    merchant_outbound_number: str
    ship_to: ShipToV1
    items: list[OutboundItemV1] = field(default_factory=list)
    currency: str | None = None
    customer_order_number: str | None = None
    order_date: str | None = None
    shipping_method_id: str | None = None
    priority: int = 0
    note: str | None = None
    schema_name: str = "ffn.outbound"
    schema_version: int = 1

    @property
    def idempotency_key(self) -> str:
        return f"outbound-{self.merchant_outbound_number}"

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "merchantOutboundNumber": self.merchant_outbound_number,
            "currency": self.currency,
            "customerOrderNumber": self.customer_order_number,
            "orderDate": self.order_date,
            "shippingMethodId": self.shipping_method_id,
            "priority": int(self.priority),
            "shipTo": self.ship_to.to_dict(),
            "items": [item.to_dict() for item in self.items],
            "note": self.note,
        }
        return {key: value for key, value in payload.items() if value is not None}

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "OutboundRequestV1":
        data = dict(payload or {})
        items_raw = data.get("items")
        items = [OutboundItemV1.from_dict(item) for item in items_raw if isinstance(item, dict)] if isinstance(items_raw, list) else []
        return OutboundRequestV1(
            merchant_outbound_number=str(data.get("merchantOutboundNumber") or ""),
            ship_to=ShipToV1.from_dict(data.get("shipTo") if isinstance(data.get("shipTo"), dict) else {}),
            items=items,
            currency=_safe_str(data.get("currency")),
            customer_order_number=_safe_str(data.get("customerOrderNumber")),
            order_date=_safe_str(data.get("orderDate")),
            shipping_method_id=_safe_str(data.get("shippingMethodId")),
            priority=_safe_int(data.get("priority"), 0),
            note=_safe_str(data.get("note")),
        )


@dataclass
class OutboundResponseV1:
    outbound_id: str
    merchant_outbound_number: str
    status: str
    created_at: str = field(default_factory=iso_utc)

    def to_dict(self) -> dict[str, Any]:
        return {
            "outboundId": self.outbound_id,
            "merchantOutboundNumber": self.merchant_outbound_number,
            "status": self.status,
            "createdAt": self.created_at,
        }

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "OutboundResponseV1":
        data = dict(payload or {})
        return OutboundResponseV1(
            outbound_id=str(data.get("outboundId") or data.get("id") or ""),
            merchant_outbound_number=str(data.get("merchantOutboundNumber") or ""),
            status=str(data.get("status") or "NEW").upper(),
            created_at=str(data.get("createdAt") or iso_utc()),
        )


@dataclass
class OutboundUpdateV1:
    outbound_id: str
    merchant_outbound_number: str
    status: str
    updated_at: str
    tracking_number: str | None = None
    tracking_url: str | None = None
    carrier: str | None = None
    shipped_at: str | None = None
    delivered_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "outboundId": self.outbound_id,
            "merchantOutboundNumber": self.merchant_outbound_number,
            "status": self.status,
            "updatedAt": self.updated_at,
            "trackingNumber": self.tracking_number,
            "trackingUrl": self.tracking_url,
            "carrier": self.carrier,
            "shippedAt": self.shipped_at,
            "deliveredAt": self.delivered_at,
        }

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "OutboundUpdateV1":
        data = dict(payload or {})
        shipping = data.get("shippingInfo") if isinstance(data.get("shippingInfo"), dict) else {}
        return OutboundUpdateV1(
            outbound_id=str(data.get("outboundId") or ""),
            merchant_outbound_number=str(data.get("merchantOutboundNumber") or ""),
            status=str(data.get("status") or data.get("currentStatus") or "").upper(),
            updated_at=str(data.get("updatedAt") or data.get("createdAt") or iso_utc()),
            tracking_number=_safe_str(data.get("trackingNumber") or shipping.get("trackingNumber")),
            tracking_url=_safe_str(data.get("trackingUrl") or shipping.get("trackingUrl")),
            carrier=_safe_str(data.get("carrier") or shipping.get("carrier")),
            shipped_at=_safe_str(data.get("shippedAt") or shipping.get("shippedAt")),
            delivered_at=_safe_str(data.get("deliveredAt")),
        )


@dataclass
class ShippingMethodV1:
    external_id: str
    name: str
    carrier_code: str | None = None
    carrier_name: str | None = None
    shipping_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "shippingMethodId": self.external_id,
            "name": self.name,
            "carrierCode": self.carrier_code,
            "carrierName": self.carrier_name,
            "shippingType": self.shipping_type,
        }

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "ShippingMethodV1":
        data = dict(payload or {})
        return ShippingMethodV1(
            external_id=str(data.get("shippingMethodId") or ""),
            name=str(data.get("name") or ""),
            carrier_code=_safe_str(data.get("carrierCode")),
            carrier_name=_safe_str(data.get("carrierName")),
            shipping_type=_safe_str(data.get("shippingType")),
        )


@dataclass
class ProductRequestV1:
    merchant_sku: str
    name: str
    description: str | None = None
    gtin: str | None = None
    weight: float | None = None
    length: float | None = None
    width: float | None = None
    height: float | None = None
    customs_code: str | None = None
    country_of_origin: str | None = None
    image_url: str | None = None
    net_retail_price: float | None = None
    currency: str = "EUR"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "merchantSku": self.merchant_sku,
            "name": self.name,
            "identifier": {"ean": self.gtin} if self.gtin else {},
            "description": self.description,
            "weight": self.weight,
            "length": self.length,
            "width": self.width,
            "height": self.height,
            "customsCode": self.customs_code,
            "countryOfOrigin": self.country_of_origin,
            "imageUrl": self.image_url,
        }
        if self.net_retail_price is not None:
            payload["netRetailPrice"] = {"amount": float(self.net_retail_price), "currency": self.currency}
        return {key: value for key, value in payload.items() if value is not None}

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "ProductRequestV1":
        data = dict(payload or {})
        identifier = data.get("identifier") if isinstance(data.get("identifier"), dict) else {}
        price = data.get("netRetailPrice") if isinstance(data.get("netRetailPrice"), dict) else {}
        return ProductRequestV1(
            merchant_sku=str(data.get("merchantSku") or ""),
            name=str(data.get("name") or ""),
            description=_safe_str(data.get("description")),
            gtin=_safe_str(identifier.get("ean")),
            weight=_safe_float(data.get("weight")),
            length=_safe_float(data.get("length")),
            width=_safe_float(data.get("width")),
            height=_safe_float(data.get("height")),
            customs_code=_safe_str(data.get("customsCode")),
            country_of_origin=_safe_str(data.get("countryOfOrigin")),
            image_url=_safe_str(data.get("imageUrl")),
            net_retail_price=_safe_float(price.get("amount")),
            currency=str(price.get("currency") or "EUR"),
        )


@dataclass
class ProductResponseV1:
    fulfillment_product_id: str
    merchant_sku: str
    status: str = "ACTIVE"

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "ProductResponseV1":
        data = dict(payload or {})
        return ProductResponseV1(
            fulfillment_product_id=str(data.get("jfsku") or data.get("productId") or ""),
            merchant_sku=str(data.get("merchantSku") or ""),
            status=str(data.get("status") or "ACTIVE"),
        )
