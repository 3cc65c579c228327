from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from fulfillsync.contexts.sync.domain.events import Address, LineItem, Origin


logger = logging.getLogger("fulfillsync.ownership")

OWNER_COMMERCE = "commerce"
OWNER_PLATFORM = "platform"
OWNER_SHARED = "shared"

_ALL_ORIGINS = frozenset(Origin)
_OPERATIONAL_ORIGINS = frozenset({Origin.PLATFORM, Origin.FULFILLMENT, Origin.WAREHOUSE})

ORDER_COMMERCE_FIELDS = frozenset(
    {
        "order_number",
        "subtotal",
        "shipping_cost",
        "tax_amount",
        "total",
        "currency",
        "discount_code",
        "discount_amount",
        "payment_status",
        "payment_method",
        "customer_name",
        "customer_email",
        "customer_phone",
        "shipping_address",
        "billing_address",
        "shipping_method_code",
        "shipping_method_title",
        "notes",
        "order_date",
        "tags",
        "commerce_cancelled_at",
        "items",
    }
)

# Warehouse progress may come from the network; the rest is edited only on the platform.
ORDER_PROGRESS_FIELDS = frozenset(
    {
        "fulfillment_state",
        "tracking_number",
        "tracking_url",
        "shipped_at",
        "delivered_at",
    }
)

ORDER_CONTROL_FIELDS = frozenset(
    {
        "shipping_method_id",
        "carrier_selection",
        "carrier_service_level",
        "priority_level",
        "warehouse_notes",
        "is_on_hold",
        "hold_reason",
        "is_cancelled",
        "cancelled_at",
        "cancelled_by",
        "cancellation_reason",
        "address_corrected",
        "address_corrected_at",
        "original_shipping_address",
    }
)

ORDER_OPERATIONAL_FIELDS = ORDER_PROGRESS_FIELDS | ORDER_CONTROL_FIELDS

RETURN_COMMERCE_FIELDS = frozenset({"reason", "customer_note", "requested_items"})

RETURN_PLATFORM_FIELDS = frozenset(
    {
        "status",
        "inspection_result",
        "item_condition",
        "inspected_at",
        "inspected_by",
        "restock_eligible",
        "restock_quantity",
        "restocked_at",
        "refund_amount",
        "refunded_at",
        "replacement_order_id",
        "finalized_at",
        "finalized_by",
    }
)

PRODUCT_COMMERCE_FIELDS = frozenset(
    {
        "net_sales_price",
        "compare_at_price",
        "taxable",
        "seo_title",
        "seo_description",
        "tags",
        "product_type",
        "vendor",
    }
)

PRODUCT_OPS_FIELDS = frozenset(
    {
        "gtin",
        "weight",
        "length",
        "width",
        "height",
        "hazmat",
        "customs_code",
        "country_of_origin",
        "manufacturer",
        "warehouse_notes",
    }
)

PRODUCT_STOCK_FIELDS = frozenset({"available_quantity"})

PRODUCT_SHARED_FIELDS = frozenset({"name", "description", "image_url"})


@dataclass(frozen=True)
class FieldGroup:
    name: str
    owner: str
    fields: frozenset
    writers: frozenset


@dataclass(frozen=True)
class EntityRules:
    entity_type: str
    groups: Tuple[FieldGroup, ...]

    def group_for(self, field_name: str) -> FieldGroup | None:
        for group in self.groups:
            if field_name in group.fields:
                return group
        return None


DEFAULT_RULES: Dict[str, EntityRules] = {
    "order": EntityRules(
        entity_type="order",
        groups=(
            FieldGroup("commercial", OWNER_COMMERCE, ORDER_COMMERCE_FIELDS, frozenset({Origin.COMMERCE})),
            FieldGroup("progress", OWNER_PLATFORM, ORDER_PROGRESS_FIELDS, _OPERATIONAL_ORIGINS),
            FieldGroup("controls", OWNER_PLATFORM, ORDER_CONTROL_FIELDS, frozenset({Origin.PLATFORM})),
        ),
    ),
    "return": EntityRules(
        entity_type="return",
        groups=(
            FieldGroup("customer", OWNER_COMMERCE, RETURN_COMMERCE_FIELDS, frozenset({Origin.COMMERCE})),
            FieldGroup("processing", OWNER_PLATFORM, RETURN_PLATFORM_FIELDS, frozenset({Origin.PLATFORM})),
        ),
    ),
    "product": EntityRules(
        entity_type="product",
        groups=(
            FieldGroup("commerce", OWNER_COMMERCE, PRODUCT_COMMERCE_FIELDS, frozenset({Origin.COMMERCE})),
            FieldGroup("ops", OWNER_PLATFORM, PRODUCT_OPS_FIELDS, frozenset({Origin.PLATFORM})),
            FieldGroup(
                "stock",
                OWNER_PLATFORM,
                PRODUCT_STOCK_FIELDS,
                frozenset({Origin.FULFILLMENT, Origin.WAREHOUSE}),
            ),
            FieldGroup("shared", OWNER_SHARED, PRODUCT_SHARED_FIELDS, _ALL_ORIGINS),
        ),
    ),
}


def normalize_value(value: Any) -> Any:
    """Canonical form used for comparing stored and incoming values."""
    if value is None:
        return None
    if isinstance(value, Address):
        return None if value.is_empty() else json.dumps(value.to_dict(), sort_keys=True)
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (int, float, Decimal)):
        try:
            return Decimal(str(value)).normalize()
        except InvalidOperation:
            return str(value)
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    if isinstance(value, LineItem):
        return value.key()
    if isinstance(value, (list, tuple)):
        return tuple(normalize_value(item) for item in value)
    if isinstance(value, Mapping):
        return json.dumps({str(k): v for k, v in value.items()}, sort_keys=True, default=str)
    return value


@dataclass
class FieldDiff:
    changes: Dict[str, Tuple[Any, Any]] = field(default_factory=dict)

    @property
    def changed_fields(self) -> List[str]:
        return sorted(self.changes)

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def before(self) -> Dict[str, Any]:
        return {name: values[0] for name, values in self.changes.items()}

    def after(self) -> Dict[str, Any]:
        return {name: values[1] for name, values in self.changes.items()}

    def touches(self, *field_names: str) -> bool:
        return any(name in self.changes for name in field_names)


class FieldOwnershipPolicy:
    """Decides which origin may write which field, per entity type.

    Fields an origin does not own are dropped, never rejected, so partial and
    legacy payloads go through.
    """

    def __init__(self, rules: Dict[str, EntityRules] | None = None) -> None:
        self._rules = dict(rules or DEFAULT_RULES)

    def _entity_rules(self, entity_type: str) -> EntityRules:
        rules = self._rules.get(entity_type)
        if rules is None:
            raise ValueError(f"no ownership rules for entity type {entity_type!r}")
        return rules

    def owner_of(self, entity_type: str, field_name: str) -> str | None:
        group = self._entity_rules(entity_type).group_for(field_name)
        return group.owner if group else None

    def can_write(self, entity_type: str, origin: Origin | str, field_name: str) -> bool:
        group = self._entity_rules(entity_type).group_for(field_name)
        if group is None:
            return False
        return Origin.from_source(origin) in group.writers

    def writable_fields(self, entity_type: str, origin: Origin | str) -> frozenset:
        resolved = Origin.from_source(origin)
        allowed: set = set()
        for group in self._entity_rules(entity_type).groups:
            if resolved in group.writers:
                allowed |= group.fields
        return frozenset(allowed)

    def filter_writable(
        self,
        entity_type: str,
        origin: Origin | str,
        payload: Mapping[str, Any],
    ) -> Tuple[Dict[str, Any], List[str]]:
        allowed = self.writable_fields(entity_type, origin)
        writable: Dict[str, Any] = {}
        rejected: List[str] = []
        for name, value in payload.items():
            if name in allowed:
                writable[name] = value
            else:
                rejected.append(name)
        if rejected:
            logger.debug(
                "ownership_fields_dropped",
                extra={"entity_type": entity_type, "origin": Origin.from_source(origin).value, "fields": sorted(rejected)},
            )
        return writable, sorted(rejected)

    def diff(
        self,
        entity_type: str,
        origin: Origin | str,
        stored: Mapping[str, Any],
        incoming: Mapping[str, Any],
    ) -> FieldDiff:
        writable, _rejected = self.filter_writable(entity_type, origin, incoming)
        changes: Dict[str, Tuple[Any, Any]] = {}
        for name, value in writable.items():
            current = stored.get(name)
            if normalize_value(current) != normalize_value(value):
                changes[name] = (current, value)
        return FieldDiff(changes=changes)

    def is_echo(
        self,
        entity_type: str,
        origin: Origin | str,
        stored: Mapping[str, Any],
        incoming: Mapping[str, Any],
    ) -> bool:
        return self.diff(entity_type, origin, stored, incoming).is_empty

    def fields_of(self, entity_type: str, owner: str) -> Iterable[str]:
        for group in self._entity_rules(entity_type).groups:
            if group.owner == owner:
                yield from group.fields
