from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, TypeVar

from flask import current_app

from fulfillsync.contexts.catalog.application.entity_cache import EntityCache
from fulfillsync.contexts.catalog.infrastructure.product_repository import ProductRepository
from fulfillsync.contexts.fulfillment.domain.contracts import (
    OutboundItemV1,
    OutboundRequestV1,
    OutboundUpdateV1,
    ProductRequestV1,
    ShipToV1,
)
from fulfillsync.contexts.fulfillment.domain.gateway import FulfillmentGateway, FulfillmentGatewayError
from fulfillsync.contexts.fulfillment.domain.results import (
    SYNC_STATE_CANCEL_REQUESTED,
    SYNC_STATE_CANCELLED,
    SYNC_STATE_ERROR,
    SYNC_STATE_SYNCED,
    SYNC_STATE_UNSYNCED,
    FulfillmentResult,
    PollSummary,
)
from fulfillsync.contexts.fulfillment.infrastructure.circuit_breaker import CircuitBreaker
from fulfillsync.contexts.shipping.infrastructure.repository import ShippingRepository
from fulfillsync.contexts.sync.application.orchestrator import SyncOrchestrator
from fulfillsync.contexts.sync.domain.events import Address, Origin
from fulfillsync.contexts.sync.domain.order_rules import is_payment_approved, map_ffn_status
from fulfillsync.contexts.sync.domain.results import (
    OUTCOME_FAILED,
    OUTCOME_SKIPPED_ECHO,
)
from fulfillsync.contexts.sync.infrastructure.channel_repository import ChannelRepository
from fulfillsync.contexts.sync.infrastructure.order_repository import OrderRepository
from fulfillsync.contexts.sync.infrastructure.sync_log_repository import SyncLogRepository
from fulfillsync.core import EventBus, OutboundCreated
from fulfillsync.core.clock import iso_utc, parse_iso_utc, utcnow


T = TypeVar("T")


def _ship_to(address: Address | None, fallback_email: str | None) -> ShipToV1 | None:
    if address is None or address.is_empty():
        return None
    street = " ".join(part for part in (address.street, address.house_number) if part)
    return ShipToV1(
        name=address.full_name or address.company or "",
        company=address.company,
        street=street,
        additional_address=address.address_line2,
        city=address.city or "",
        zip=address.zip or "",
        country_code=(address.country or "").upper(),
        phone=address.phone,
        email=address.email or fallback_email,
    )


class FulfillmentSyncAdapter:
    """Pushes orders and products to the fulfillment network and pulls progress back.

    Order sync state moves ``unsynced -> synced(outbound_id) -> cancel_requested
    -> cancelled``; ``outbound_id`` is written at most once.
    """

    def __init__(
        self,
        *,
        gateway_for: Callable[[str], FulfillmentGateway],
        circuit_breaker: CircuitBreaker,
        orchestrator: SyncOrchestrator,
        event_bus: EventBus | None = None,
        shipping: ShippingRepository | None = None,
        channels: ChannelRepository | None = None,
        poll_window_hours: int = 24,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.gateway_for = gateway_for
        self.circuit_breaker = circuit_breaker
        self.orchestrator = orchestrator
        self.event_bus = event_bus
        self.shipping = shipping or ShippingRepository()
        self.channels = channels or ChannelRepository()
        self.poll_window_hours = max(1, int(poll_window_hours))
        self._clock = clock

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        allowed, state = self.circuit_breaker.before_call()
        if not allowed:
            current_app.logger.warning("ffn_circuit_blocked", extra={"operation": operation, "circuit_state": state})
            raise FulfillmentGatewayError(f"circuit {state}", code="ffn_circuit_open", definitive=False)
        try:
            result = fn()
        except FulfillmentGatewayError as exc:
            # A definitive rejection is a healthy response.
            if exc.definitive:
                self.circuit_breaker.record_success()
            else:
                self.circuit_breaker.record_failure()
            raise
        except Exception:
            self.circuit_breaker.record_failure()
            raise
        self.circuit_breaker.record_success()
        return result

    # -- orders -----------------------------------------------------------

    def sync_order(self, db, client_id: str, order_id: int) -> FulfillmentResult:
        orders = OrderRepository(client_id=client_id)
        order = orders.get(db, order_id)
        if order is None:
            return FulfillmentResult.rejected(SYNC_STATE_UNSYNCED, "order_not_found", f"order {order_id} not found")
        if order.get("is_cancelled") or order.get("sync_status") == SYNC_STATE_CANCELLED:
            return FulfillmentResult.ok(SYNC_STATE_CANCELLED, order.get("outbound_id"), message="order is cancelled")
        if order.get("outbound_id"):
            return FulfillmentResult.ok(SYNC_STATE_SYNCED, order["outbound_id"], message="already synced")

        violation = self._precondition_violation(db, order)
        if violation is not None:
            code, message = violation
            current_app.logger.info("ffn_order_sync_blocked", extra={"client_id": client_id, "order_id": order_id, "code": code})
            return FulfillmentResult.rejected(SYNC_STATE_UNSYNCED, code, message)

        request = self._outbound_request(db, client_id, order)
        if isinstance(request, FulfillmentResult):
            return request

        gateway = self.gateway_for(client_id)
        try:
            response = self._call("create_outbound", lambda: gateway.create_outbound(request))
        except FulfillmentGatewayError as exc:
            return self._order_failure(db, orders, order, exc, action="outbound_create")

        with db.transaction():
            stored = orders.set_outbound_id(db, int(order_id), response.outbound_id)
            if not stored:
                current = orders.get(db, order_id) or {}
                outbound_id = current.get("outbound_id") or response.outbound_id
                current_app.logger.warning(
                    "ffn_outbound_already_set",
                    extra={"client_id": client_id, "order_id": order_id, "outbound_id": outbound_id},
                )
                return FulfillmentResult.ok(SYNC_STATE_SYNCED, outbound_id, message="already synced")
            SyncLogRepository(client_id=client_id).append(
                db,
                entity_type="order",
                entity_id=int(order_id),
                origin=Origin.FULFILLMENT.value,
                action="outbound_created",
                actor="ffn",
                changed_fields=["outbound_id", "sync_status", "fulfillment_state"],
                after={"outbound_id": response.outbound_id, "sync_status": SYNC_STATE_SYNCED},
            )
        if self.event_bus is not None:
            self.event_bus.publish(
                OutboundCreated(client_id=client_id, order_id=int(order_id), outbound_id=response.outbound_id)
            )
        current_app.logger.info(
            "ffn_outbound_created",
            extra={"client_id": client_id, "order_id": order_id, "outbound_id": response.outbound_id},
        )
        return FulfillmentResult.ok(SYNC_STATE_SYNCED, response.outbound_id)

    def _precondition_violation(self, db, order: Dict[str, Any]) -> tuple[str, str] | None:
        if order.get("is_on_hold"):
            return "order_on_hold", f"order is on hold ({order.get('hold_reason') or 'manual'})"
        if order.get("shipping_method_id") is None:
            return "shipping_method_unresolved", "order has no resolved shipping method"
        if not order.get("is_replacement"):
            channel = self.channels.get_channel(db, order.get("channel_id")) or {}
            if not is_payment_approved(channel.get("channel_type"), order.get("payment_status")):
                return "payment_not_approved", f"payment status {order.get('payment_status')!r} is not approved"
        return None

    def _outbound_request(self, db, client_id: str, order: Dict[str, Any]) -> OutboundRequestV1 | FulfillmentResult:
        order_id = int(order["id"])
        orders = OrderRepository(client_id=client_id)
        products = ProductRepository(client_id=client_id)
        ship_to = _ship_to(order.get("shipping_address"), order.get("customer_email"))
        if ship_to is None:
            return FulfillmentResult.rejected(SYNC_STATE_UNSYNCED, "shipping_address_missing", "order has no shipping address")
        method = self.shipping.get_method(db, order.get("shipping_method_id"))
        if method is None:
            return FulfillmentResult.rejected(
                SYNC_STATE_UNSYNCED,
                "shipping_method_unresolved",
                f"shipping method {order.get('shipping_method_id')} is unknown or inactive",
            )
        items: List[OutboundItemV1] = []
        for row in orders.item_rows(db, order_id):
            product = products.get(db, row["product_id"]) if row.get("product_id") else None
            items.append(
                OutboundItemV1(
                    merchant_sku=str(row.get("sku") or ""),
                    quantity=int(row.get("quantity") or 0),
                    name=row.get("name"),
                    jfsku=(product or {}).get("fulfillment_product_id"),
                    unit_price=float(row["unit_price"]) if row.get("unit_price") is not None else None,
                )
            )
        if not items:
            return FulfillmentResult.rejected(SYNC_STATE_UNSYNCED, "order_without_items", "order has no line items")
        return OutboundRequestV1(
            merchant_outbound_number=str(order_id),
            ship_to=ship_to,
            items=items,
            currency=order.get("currency"),
            customer_order_number=order.get("order_number"),
            order_date=order.get("order_date"),
            shipping_method_id=str(method["external_id"]),
            priority=int(order.get("priority_level") or 0),
            note=order.get("warehouse_notes"),
        )

    def _order_failure(
        self,
        db,
        orders: OrderRepository,
        order: Dict[str, Any],
        exc: FulfillmentGatewayError,
        *,
        action: str,
    ) -> FulfillmentResult:
        order_id = int(order["id"])
        code = exc.code or "ffn_request_failed"
        values: Dict[str, Any] = {"last_error": str(exc)[:500]}
        if exc.definitive:
            values["sync_status"] = SYNC_STATE_ERROR
        with db.transaction():
            orders.update(db, order_id, values)
            SyncLogRepository(client_id=orders.client_id).append(
                db,
                entity_type="order",
                entity_id=order_id,
                origin=Origin.FULFILLMENT.value,
                action=action,
                actor="ffn",
                success=False,
                error_message=f"{code}: {exc}",
            )
        current_app.logger.warning(
            "ffn_order_call_failed",
            extra={
                "client_id": orders.client_id,
                "order_id": order_id,
                "action": action,
                "code": code,
                "definitive": exc.definitive,
                "error": str(exc)[:200],
            },
        )
        state = SYNC_STATE_ERROR if exc.definitive else str(order.get("sync_status") or SYNC_STATE_UNSYNCED)
        return FulfillmentResult.rejected(
            state,
            code,
            str(exc),
            retryable=not exc.definitive,
            outbound_id=order.get("outbound_id"),
        )

    def cancel_order(self, db, client_id: str, order_id: int, reason: str | None = None) -> FulfillmentResult:
        orders = OrderRepository(client_id=client_id)
        order = orders.get(db, order_id)
        if order is None:
            return FulfillmentResult.rejected(SYNC_STATE_UNSYNCED, "order_not_found", f"order {order_id} not found")
        outbound_id = order.get("outbound_id")
        if not outbound_id:
            return FulfillmentResult.ok(SYNC_STATE_UNSYNCED, message="no outbound to cancel")
        if order.get("sync_status") == SYNC_STATE_CANCELLED:
            return FulfillmentResult.ok(SYNC_STATE_CANCELLED, outbound_id, message="already cancelled")

        with db.transaction():
            orders.update(db, int(order_id), {"sync_status": SYNC_STATE_CANCEL_REQUESTED})

        gateway = self.gateway_for(client_id)
        try:
            self._call("cancel_outbound", lambda: gateway.cancel_outbound(outbound_id, reason or order.get("cancellation_reason")))
        except FulfillmentGatewayError as exc:
            return self._order_failure(db, orders, {**order, "sync_status": SYNC_STATE_CANCEL_REQUESTED}, exc, action="outbound_cancel")

        now = iso_utc(self._clock())
        with db.transaction():
            orders.update(
                db,
                int(order_id),
                {
                    "sync_status": SYNC_STATE_CANCELLED,
                    "fulfillment_state": "cancelled",
                    "last_synced_at": now,
                    "last_error": None,
                },
            )
            SyncLogRepository(client_id=client_id).append(
                db,
                entity_type="order",
                entity_id=int(order_id),
                origin=Origin.FULFILLMENT.value,
                action="outbound_cancelled",
                actor="ffn",
                changed_fields=["sync_status", "fulfillment_state"],
                before={"sync_status": order.get("sync_status"), "fulfillment_state": order.get("fulfillment_state")},
                after={"sync_status": SYNC_STATE_CANCELLED, "fulfillment_state": "cancelled"},
            )
        current_app.logger.info("ffn_outbound_cancelled", extra={"client_id": client_id, "order_id": order_id, "outbound_id": outbound_id})
        return FulfillmentResult.ok(SYNC_STATE_CANCELLED, outbound_id)

    # -- polling ----------------------------------------------------------

    def poll_updates(self, db, client_id: str, since: str | None = None) -> PollSummary:
        now = self._clock()
        lower = parse_iso_utc(since) if since else None
        if lower is None:
            lower = now - timedelta(hours=self.poll_window_hours)
        summary = PollSummary(client_id=client_id, since=iso_utc(lower), until=iso_utc(now))
        gateway = self.gateway_for(client_id)
        updates = self._call("outbound_updates", lambda: gateway.outbound_updates(summary.since, summary.until))
        summary.received = len(updates)

        # The window overlaps earlier polls; only the newest update per outbound counts.
        latest: Dict[str, OutboundUpdateV1] = {}
        for update in sorted(updates, key=lambda item: item.updated_at):
            latest[update.outbound_id or str(update.merchant_outbound_number)] = update
        summary.skipped = len(updates) - len(latest)

        orders = OrderRepository(client_id=client_id)
        for update in latest.values():
            order = self._order_for_update(db, orders, update)
            state = map_ffn_status(update.status)
            if order is None or state is None:
                summary.unknown += 1
                if state is None:
                    summary.errors.append(f"{update.outbound_id}: unknown status {update.status!r}")
                continue
            result = self.orchestrator.apply_fulfillment_update(
                db,
                client_id,
                int(order["id"]),
                self._progress_fields(update, state),
                origin=Origin.FULFILLMENT,
                actor="ffn_poll",
            )
            if result.outcome == OUTCOME_SKIPPED_ECHO:
                summary.skipped += 1
            elif result.outcome == OUTCOME_FAILED:
                summary.failed += 1
                summary.errors.append(f"{update.outbound_id}: {result.code}")
            else:
                summary.applied += 1

        current_app.logger.info("ffn_poll_completed", extra=summary.to_dict())
        return summary

    @staticmethod
    def _order_for_update(db, orders: OrderRepository, update: OutboundUpdateV1) -> dict | None:
        if update.outbound_id:
            order = orders.get_by_outbound(db, update.outbound_id)
            if order is not None:
                return order
        number = str(update.merchant_outbound_number or "").strip()
        if number.isdigit():
            order = orders.get(db, int(number))
            if order is not None and (not order.get("outbound_id") or order.get("outbound_id") == update.outbound_id):
                return order
        return None

    @staticmethod
    def _progress_fields(update: OutboundUpdateV1, state: str) -> Dict[str, Any]:
        fields: Dict[str, Any] = {"fulfillment_state": state}
        if update.tracking_number:
            fields["tracking_number"] = update.tracking_number
        if update.tracking_url:
            fields["tracking_url"] = update.tracking_url
        if state == "shipped":
            fields["shipped_at"] = update.shipped_at or update.updated_at
        elif update.shipped_at:
            fields["shipped_at"] = update.shipped_at
        if state == "delivered":
            fields["delivered_at"] = update.delivered_at or update.updated_at
        return fields

    # -- master data ------------------------------------------------------

    def sync_shipping_methods(self, db, client_id: str) -> Dict[str, int]:
        gateway = self.gateway_for(client_id)
        methods = self._call("shipping_methods", gateway.shipping_methods)
        created = 0
        with db.transaction():
            for method in methods:
                _method_id, was_created = self.shipping.upsert_method(
                    db,
                    external_id=method.external_id,
                    name=method.name or method.external_id,
                    carrier_code=method.carrier_code,
                    carrier_name=method.carrier_name,
                    shipping_type=method.shipping_type,
                )
                created += 1 if was_created else 0
        summary = {"total": len(methods), "created": created, "updated": len(methods) - created}
        current_app.logger.info(
            "ffn_shipping_methods_synced",
            extra={"client_id": client_id, "methods_total": summary["total"], "methods_created": created},
        )
        return summary

    def sync_product(self, db, client_id: str, product_id: int, *, cache: EntityCache | None = None) -> FulfillmentResult:
        products = ProductRepository(client_id=client_id)
        product = products.get(db, product_id)
        if product is None:
            return FulfillmentResult.rejected(SYNC_STATE_UNSYNCED, "product_not_found", f"product {product_id} not found")
        request = ProductRequestV1(
            merchant_sku=str(product["sku"]),
            name=str(product.get("name") or product["sku"]),
            description=product.get("description"),
            gtin=product.get("gtin"),
            weight=product.get("weight"),
            length=product.get("length"),
            width=product.get("width"),
            height=product.get("height"),
            customs_code=product.get("customs_code"),
            country_of_origin=product.get("country_of_origin"),
            image_url=product.get("image_url"),
            net_retail_price=product.get("net_sales_price"),
        )
        gateway = self.gateway_for(client_id)
        try:
            response = self._call("upsert_product", lambda: gateway.upsert_product(request))
        except FulfillmentGatewayError as exc:
            current_app.logger.warning(
                "ffn_product_sync_failed",
                extra={"client_id": client_id, "product_id": product_id, "code": exc.code, "definitive": exc.definitive},
            )
            return FulfillmentResult.rejected(
                SYNC_STATE_ERROR if exc.definitive else SYNC_STATE_UNSYNCED,
                exc.code or "ffn_request_failed",
                str(exc),
                retryable=not exc.definitive,
            )
        if response.fulfillment_product_id != product.get("fulfillment_product_id"):
            with db.transaction():
                products.set_fulfillment_id(db, int(product_id), response.fulfillment_product_id)
            if cache is not None and cache.client_id == client_id:
                cache.update_fulfillment_id(str(product["sku"]), response.fulfillment_product_id)
        current_app.logger.info(
            "ffn_product_synced",
            extra={"client_id": client_id, "product_id": product_id, "fulfillment_product_id": response.fulfillment_product_id},
        )
        return FulfillmentResult.ok(SYNC_STATE_SYNCED, message=response.fulfillment_product_id)
