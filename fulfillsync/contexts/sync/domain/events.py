from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Union


class Origin(str, Enum):
    COMMERCE = "commerce"
    PLATFORM = "platform"
    FULFILLMENT = "fulfillment"
    WAREHOUSE = "warehouse"

    @classmethod
    def from_source(cls, source: "Origin | str | None") -> "Origin":
        if isinstance(source, Origin):
            return source
        normalized = str(source or "").strip().lower()
        if normalized in {"shopify", "woocommerce", "commerce"}:
            return cls.COMMERCE
        if normalized in {"ffn", "jtl", "fulfillment"}:
            return cls.FULFILLMENT
        if normalized == "warehouse":
            return cls.WAREHOUSE
        if normalized in {"platform", "nolimits", "system"}:
            return cls.PLATFORM
        raise ValueError(f"unknown event source: {source!r}")


def _iso_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _safe_str(value: object | None) -> str | None:
    if value is None:
        return None
    raw = str(value).strip()
    return raw or None


def _safe_float(value: object | None, default: float = 0.0) -> float:
    if value is None:
        return float(default)
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def _safe_int(value: object | None, default: int = 0) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return int(default)


_ADDRESS_FIELDS = (
    "first_name",
    "last_name",
    "company",
    "street",
    "house_number",
    "address_line2",
    "city",
    "zip",
    "state",
    "country",
    "phone",
    "email",
)


@dataclass(frozen=True)
class Address:
    """Postal address stored as JSON text in ``orders``."""

    first_name: str | None = None
    last_name: str | None = None
    company: str | None = None
    street: str | None = None
    house_number: str | None = None
    address_line2: str | None = None
    city: str | None = None
    zip: str | None = None
    state: str | None = None
    country: str | None = None
    phone: str | None = None
    email: str | None = None

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    def is_empty(self) -> bool:
        return not any(getattr(self, name) for name in _ADDRESS_FIELDS)

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in _ADDRESS_FIELDS}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=True, separators=(",", ":"), sort_keys=True)

    @staticmethod
    def from_dict(payload: Dict[str, Any] | None) -> "Address":
        data = dict(payload or {})
        country = _safe_str(data.get("country"))
        return Address(
            first_name=_safe_str(data.get("first_name")),
            last_name=_safe_str(data.get("last_name")),
            company=_safe_str(data.get("company")),
            street=_safe_str(data.get("street")),
            house_number=_safe_str(data.get("house_number")),
            address_line2=_safe_str(data.get("address_line2")),
            city=_safe_str(data.get("city")),
            zip=_safe_str(data.get("zip")),
            state=_safe_str(data.get("state")),
            country=country.upper() if country else None,
            phone=_safe_str(data.get("phone")),
            email=_safe_str(data.get("email")),
        )

    @staticmethod
    def from_json(value: "str | Address | None") -> "Address | None":
        if value is None or isinstance(value, Address):
            return value
        raw = str(value).strip()
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(parsed, dict):
            return None
        return Address.from_dict(parsed)


@dataclass
class LineItem:
    sku: str
    quantity: int = 1
    name: str | None = None
    unit_price: float | None = None
    external_line_id: str | None = None

    def key(self) -> tuple:
        price = None if self.unit_price is None else round(float(self.unit_price), 4)
        return (self.sku, int(self.quantity), price)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sku": self.sku,
            "quantity": int(self.quantity),
            "name": self.name,
            "unit_price": self.unit_price,
            "external_line_id": self.external_line_id,
        }

    @staticmethod
    def from_dict(payload: Dict[str, Any]) -> "LineItem":
        data = dict(payload or {})
        unit_price = data.get("unit_price")
        return LineItem(
            sku=str(data.get("sku") or "").strip(),
            quantity=max(0, _safe_int(data.get("quantity"), 1)),
            name=_safe_str(data.get("name")),
            unit_price=None if unit_price in (None, "") else _safe_float(unit_price),
            external_line_id=_safe_str(data.get("external_line_id")),
        )


@dataclass
class OrderChangeEvent:
    """Canonical order change. ``fields`` holds column values keyed by column name."""

    client_id: str
    channel_id: str | None
    external_order_id: str
    source: str
    fields: Dict[str, Any] = field(default_factory=dict)
    items: List[LineItem] | None = None
    occurred_at: str = field(default_factory=_iso_now)
    entity_type: str = "order"

    @property
    def origin(self) -> Origin:
        return Origin.from_source(self.source)

    @property
    def natural_key(self) -> tuple:
        return (self.channel_id, self.external_order_id)


@dataclass
class ReturnChangeEvent:
    client_id: str
    channel_id: str | None
    external_return_id: str
    source: str
    fields: Dict[str, Any] = field(default_factory=dict)
    items: List[LineItem] | None = None
    external_order_id: str | None = None
    occurred_at: str = field(default_factory=_iso_now)
    entity_type: str = "return"

    @property
    def origin(self) -> Origin:
        return Origin.from_source(self.source)

    @property
    def natural_key(self) -> tuple:
        return (self.channel_id, self.external_return_id)


@dataclass
class ProductChangeEvent:
    client_id: str
    sku: str
    source: str
    fields: Dict[str, Any] = field(default_factory=dict)
    channel_id: str | None = None
    external_id: str | None = None
    occurred_at: str = field(default_factory=_iso_now)
    entity_type: str = "product"

    @property
    def origin(self) -> Origin:
        return Origin.from_source(self.source)

    @property
    def natural_key(self) -> tuple:
        return (self.client_id, self.sku)


ChangeEvent = Union[OrderChangeEvent, ReturnChangeEvent, ProductChangeEvent]
