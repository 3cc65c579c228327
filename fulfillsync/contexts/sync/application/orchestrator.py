from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence

from flask import current_app

from fulfillsync.contexts.catalog.application.entity_cache import EntityCache
from fulfillsync.contexts.catalog.domain.products import ProductRef
from fulfillsync.contexts.catalog.infrastructure.product_repository import ProductRepository
from fulfillsync.contexts.queue.domain.jobs import (
    ORDER_CANCEL_SYNC,
    ORDER_SYNC_TO_COMMERCE,
    ORDER_SYNC_TO_FFN,
    PRODUCT_SYNC_TO_COMMERCE,
    PRODUCT_SYNC_TO_FFN,
    RETURN_RESTOCK_SYNC,
    RETURN_SYNC_TO_COMMERCE,
    JobOptions,
)
from fulfillsync.contexts.queue.infrastructure.job_queue import JobQueue
from fulfillsync.contexts.shipping.application.resolver import ShippingMethodResolver
from fulfillsync.contexts.sync.domain.events import (
    ChangeEvent,
    LineItem,
    OrderChangeEvent,
    Origin,
    ProductChangeEvent,
    ReturnChangeEvent,
)
from fulfillsync.contexts.sync.domain.order_rules import (
    is_cancelled_by_commerce,
    is_payment_approved,
    is_stress_test_order,
)
from fulfillsync.contexts.sync.domain.ownership import (
    PRODUCT_COMMERCE_FIELDS,
    PRODUCT_OPS_FIELDS,
    PRODUCT_SHARED_FIELDS,
    FieldDiff,
    FieldOwnershipPolicy,
)
from fulfillsync.contexts.sync.domain.results import (
    HOLD_AWAITING_PAYMENT,
    HOLD_SHIPPING_METHOD_MISMATCH,
    OUTCOME_CREATED,
    OUTCOME_FAILED,
    OUTCOME_SKIPPED_ECHO,
    OUTCOME_UPDATED,
    RETURN_STATUS_ANNOUNCED,
    TERMINAL_FULFILLMENT_STATES,
    SyncResult,
)
from fulfillsync.contexts.sync.infrastructure.channel_repository import ChannelRepository
from fulfillsync.contexts.sync.infrastructure.order_repository import OrderRepository
from fulfillsync.contexts.sync.infrastructure.return_repository import ReturnRepository
from fulfillsync.contexts.sync.infrastructure.sync_log_repository import SyncLogRepository
from fulfillsync.core import DomainEvent, EventBus, OrderPlacedOnHold, ShippingMismatchDetected
from fulfillsync.core.clock import iso_utc, utcnow
from fulfillsync.errors import AppError, MalformedPayloadError, NotFoundError
from fulfillsync.observability import observe_sync_outcome


_PRODUCT_FFN_FIELDS = PRODUCT_COMMERCE_FIELDS | PRODUCT_OPS_FIELDS | PRODUCT_SHARED_FIELDS
_TRACKING_FIELDS = frozenset({"tracking_number", "tracking_url", "shipped_at"})
_REPLACEMENT_COPY_FIELDS = (
    "currency",
    "customer_name",
    "customer_email",
    "customer_phone",
    "shipping_address",
    "billing_address",
    "shipping_method_code",
    "shipping_method_title",
    "payment_status",
    "shipping_method_id",
    "carrier_selection",
    "carrier_service_level",
)


def _sorted_items(items: Iterable[LineItem]) -> List[LineItem]:
    return sorted(items, key=lambda item: (item.sku, int(item.quantity)))


class SyncOrchestrator:
    """Applies normalized change events under the field ownership rules.

    Every public operation returns a :class:`SyncResult`; errors are turned
    into ``failed`` results so one bad event never aborts a batch.
    """

    def __init__(
        self,
        *,
        job_queue: JobQueue,
        resolver: ShippingMethodResolver | None = None,
        policy: FieldOwnershipPolicy | None = None,
        event_bus: EventBus | None = None,
        channels: ChannelRepository | None = None,
        stress_test_sync: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.job_queue = job_queue
        self.resolver = resolver or ShippingMethodResolver()
        self.policy = policy or FieldOwnershipPolicy()
        self.event_bus = event_bus
        self.channels = channels or ChannelRepository()
        self.stress_test_sync = bool(stress_test_sync)
        self._clock = clock

    # -- entry points -----------------------------------------------------

    def process(self, db, event: ChangeEvent, *, cache: EntityCache | None = None) -> SyncResult:
        entity_type = str(getattr(event, "entity_type", "") or "unknown")
        if isinstance(event, OrderChangeEvent):
            handler = self._process_order
        elif isinstance(event, ReturnChangeEvent):
            handler = self._process_return
        elif isinstance(event, ProductChangeEvent):
            handler = self._process_product
        else:
            return self._finish(
                entity_type,
                SyncResult.failed(entity_type, f"unsupported event {type(event).__name__}", code="event_unsupported"),
            )
        return self._guarded(
            entity_type,
            lambda: handler(db, event, self._cache_for(db, event.client_id, cache)),
            db=db,
            client_id=event.client_id,
            origin=getattr(event, "source", None),
        )

    def process_many(self, db, events: Sequence[ChangeEvent]) -> List[SyncResult]:
        caches: Dict[str, EntityCache] = {}
        results: List[SyncResult] = []
        for event in events:
            client_id = str(getattr(event, "client_id", "") or "")
            cache = caches.get(client_id)
            if cache is None and client_id:
                cache = EntityCache()
                try:
                    cache.initialize(db, client_id)
                except Exception:  # noqa: BLE001
                    current_app.logger.exception("entity_cache_initialize_failed", extra={"client_id": client_id})
                    cache = None
                else:
                    caches[client_id] = cache
            results.append(self.process(db, event, cache=cache))
        summary: Dict[str, int] = {}
        for result in results:
            summary[result.outcome] = summary.get(result.outcome, 0) + 1
        current_app.logger.info("sync_batch_processed", extra={"events": len(events), "outcomes": summary})
        return results

    def update_operational_fields(
        self,
        db,
        client_id: str,
        order_id: int,
        changes: Mapping[str, Any],
        *,
        actor: str = "platform",
    ) -> SyncResult:
        return self._guarded(
            "order",
            lambda: self._update_order_fields(db, client_id, order_id, changes, actor=actor, origin=Origin.PLATFORM),
            db=db,
            client_id=client_id,
            origin=Origin.PLATFORM.value,
        )

    def apply_fulfillment_update(
        self,
        db,
        client_id: str,
        order_id: int,
        changes: Mapping[str, Any],
        *,
        origin: Origin = Origin.FULFILLMENT,
        actor: str = "ffn",
    ) -> SyncResult:
        """Apply warehouse progress (state, tracking) reported by the network."""
        return self._guarded(
            "order",
            lambda: self._update_order_fields(db, client_id, order_id, changes, actor=actor, origin=origin),
            db=db,
            client_id=client_id,
            origin=origin.value,
        )

    def cancel_order(self, db, client_id: str, order_id: int, *, actor: str, reason: str | None = None) -> SyncResult:
        order = OrderRepository(client_id=client_id).get(db, order_id)
        if order is None:
            return self._finish("order", SyncResult.failed("order", f"order {order_id} not found", code="not_found"))
        if order.get("is_cancelled"):
            return self._finish("order", SyncResult(outcome=OUTCOME_SKIPPED_ECHO, entity_type="order", entity_id=int(order_id)))
        changes: Dict[str, Any] = {
            "is_cancelled": True,
            "cancelled_at": iso_utc(self._clock()),
            "cancelled_by": actor,
            "cancellation_reason": reason,
        }
        if not order.get("outbound_id"):
            changes["fulfillment_state"] = "cancelled"
        return self.update_operational_fields(db, client_id, order_id, changes, actor=actor)

    def release_hold(self, db, client_id: str, order_id: int, *, actor: str) -> SyncResult:
        order = OrderRepository(client_id=client_id).get(db, order_id)
        if order is None:
            return self._finish("order", SyncResult.failed("order", f"order {order_id} not found", code="not_found"))
        if not order.get("is_on_hold"):
            return self._finish("order", SyncResult(outcome=OUTCOME_SKIPPED_ECHO, entity_type="order", entity_id=int(order_id)))
        if order.get("hold_reason") == HOLD_SHIPPING_METHOD_MISMATCH and order.get("shipping_method_id") is None:
            return self._finish(
                "order",
                SyncResult.failed(
                    "order",
                    "assign a shipping method before releasing the hold",
                    code="shipping_method_unresolved",
                    entity_id=int(order_id),
                ),
            )
        return self.update_operational_fields(
            db,
            client_id,
            order_id,
            {"is_on_hold": False, "hold_reason": None},
            actor=actor,
        )

    def create_replacement_order(
        self,
        db,
        client_id: str,
        original_order_id: int,
        items: Sequence[LineItem] | None = None,
        *,
        actor: str,
        reason: str | None = None,
    ) -> SyncResult:
        return self._guarded(
            "order",
            lambda: self._create_replacement(db, client_id, original_order_id, items, actor=actor, reason=reason),
            db=db,
            client_id=client_id,
            origin=Origin.PLATFORM.value,
        )

    def update_return_fields(
        self,
        db,
        client_id: str,
        return_id: int,
        changes: Mapping[str, Any],
        *,
        actor: str = "platform",
    ) -> SyncResult:
        return self._guarded(
            "return",
            lambda: self._update_return_as_platform(db, client_id, return_id, changes, actor=actor),
            db=db,
            client_id=client_id,
            origin=Origin.PLATFORM.value,
        )

    # -- plumbing ---------------------------------------------------------

    def _guarded(self, entity_type: str, operation: Callable[[], SyncResult], *, db, client_id: str, origin) -> SyncResult:
        try:
            result = operation()
        except AppError as exc:
            current_app.logger.warning(
                "sync_event_rejected",
                extra={"entity_type": entity_type, "client_id": client_id, "code": exc.code, "details": exc.details},
            )
            result = SyncResult.failed(entity_type, exc.details or exc.user_message(), code=exc.code)
        except Exception as exc:  # noqa: BLE001
            current_app.logger.exception("sync_event_failed", extra={"entity_type": entity_type, "client_id": client_id})
            result = SyncResult.failed(entity_type, str(exc) or type(exc).__name__)
        if result.outcome == OUTCOME_FAILED and client_id:
            self._log_failure(db, client_id, entity_type, result, origin)
        return self._finish(entity_type, result)

    def _finish(self, entity_type: str, result: SyncResult) -> SyncResult:
        observe_sync_outcome(entity_type, result.outcome)
        return result

    def _log_failure(self, db, client_id: str, entity_type: str, result: SyncResult, origin) -> None:
        try:
            origin_value = Origin.from_source(origin).value
        except ValueError:
            origin_value = str(origin or "unknown")
        try:
            with db.transaction():
                SyncLogRepository(client_id=client_id).append(
                    db,
                    entity_type=entity_type,
                    entity_id=result.entity_id,
                    origin=origin_value,
                    action="failed",
                    success=False,
                    error_message=f"{result.code}: {result.message}",
                )
        except Exception:  # noqa: BLE001
            current_app.logger.exception("sync_failure_log_failed", extra={"entity_type": entity_type, "client_id": client_id})

    def _cache_for(self, db, client_id: str, cache: EntityCache | None) -> EntityCache:
        if cache is not None and cache.client_id == client_id and cache.initialized:
            return cache
        fresh = EntityCache()
        fresh.initialize(db, client_id)
        return fresh

    def _publish(self, events: Iterable[DomainEvent]) -> None:
        if self.event_bus is None:
            return
        for event in events:
            self.event_bus.publish(event)

    def _enqueue(
        self,
        db,
        queue_name: str,
        client_id: str,
        payload: Dict[str, Any],
        *,
        singleton_key: str,
        priority: int = 0,
    ) -> str:
        result = self.job_queue.send(
            db,
            queue_name,
            {"client_id": client_id, **payload},
            JobOptions(priority=priority, singleton_key=singleton_key),
            client_id=client_id,
        )
        return f"{queue_name}:{result.job_id}"

    # -- orders -----------------------------------------------------------

    def _process_order(self, db, event: OrderChangeEvent, cache: EntityCache) -> SyncResult:
        if not str(event.external_order_id or "").strip():
            raise MalformedPayloadError(details="order event without external_order_id")
        origin = event.origin
        orders = OrderRepository(client_id=event.client_id)
        logs = SyncLogRepository(client_id=event.client_id)
        published: List[DomainEvent] = []

        with db.transaction():
            existing = orders.get_by_external(db, event.channel_id, event.external_order_id)
            if existing is None:
                if origin is not Origin.COMMERCE:
                    return SyncResult.failed(
                        "order",
                        f"order {event.external_order_id} does not exist",
                        code="order_not_found",
                    )
                order_id, changed = self._create_order(db, orders, logs, event, cache)
                if order_id is not None:
                    order = orders.get(db, order_id) or {}
                    jobs = self._order_followups(db, orders, logs, order, origin, set(changed), True, published)
                    outcome = OUTCOME_CREATED
                else:
                    # A concurrent writer inserted it first; continue as an update.
                    existing = orders.get_by_external(db, event.channel_id, event.external_order_id)
            if existing is not None:
                diff = self._order_diff(db, orders, existing, event)
                order_id = int(existing["id"])
                if diff.is_empty:
                    return SyncResult(outcome=OUTCOME_SKIPPED_ECHO, entity_type="order", entity_id=order_id)
                if existing.get("fulfillment_state") in TERMINAL_FULFILLMENT_STATES and origin is Origin.PLATFORM:
                    return SyncResult.failed(
                        "order",
                        f"order {order_id} is {existing.get('fulfillment_state')}",
                        code="order_terminal",
                        entity_id=order_id,
                    )
                self._apply_order_diff(db, orders, logs, order_id, diff, origin, cache, actor=str(event.source))
                changed = diff.changed_fields
                order = orders.get(db, order_id) or {}
                jobs = self._order_followups(db, orders, logs, order, origin, set(changed), False, published)
                outcome = OUTCOME_UPDATED

        self._publish(published)
        current_app.logger.info(
            "order_synced",
            extra={
                "client_id": event.client_id,
                "order_id": order_id,
                "origin": origin.value,
                "outcome": outcome,
                "changed_fields": changed,
                "jobs": jobs,
            },
        )
        return SyncResult(outcome=outcome, entity_type="order", entity_id=order_id, changed_fields=list(changed), jobs=jobs)

    def _create_order(self, db, orders: OrderRepository, logs: SyncLogRepository, event: OrderChangeEvent, cache: EntityCache):
        writable, _rejected = self.policy.filter_writable("order", event.origin, event.fields)
        values = {name: value for name, value in writable.items() if name != "items"}
        values.update(
            {
                "channel_id": event.channel_id,
                "external_order_id": event.external_order_id,
                "origin": event.origin.value,
                "fulfillment_state": "pending",
                "sync_status": "unsynced",
            }
        )
        order_id = orders.insert(db, values)
        if order_id is None:
            return None, []
        items = list(event.items or [])
        orders.replace_items(db, order_id, items, cache.get_id)
        changed = sorted(set(values) | ({"items"} if items else set()))
        logs.append(
            db,
            entity_type="order",
            entity_id=order_id,
            origin=event.origin.value,
            action="create",
            actor=str(event.source),
            changed_fields=changed,
            after={**values, "items": items},
        )
        return order_id, changed

    def _order_diff(self, db, orders: OrderRepository, existing: dict, event: OrderChangeEvent) -> FieldDiff:
        incoming: Dict[str, Any] = dict(event.fields)
        stored: Dict[str, Any] = dict(existing)
        if event.items is not None:
            incoming["items"] = _sorted_items(event.items)
            stored["items"] = _sorted_items(orders.items(db, int(existing["id"])))
        diff = self.policy.diff("order", event.origin, stored, incoming)
        if "items" in diff.changes and existing.get("outbound_id"):
            # Line items are frozen once the warehouse has the outbound.
            diff.changes.pop("items")
            current_app.logger.info(
                "order_items_locked",
                extra={"client_id": event.client_id, "order_id": existing["id"], "outbound_id": existing["outbound_id"]},
            )
        return diff

    def _apply_order_diff(
        self,
        db,
        orders: OrderRepository,
        logs: SyncLogRepository,
        order_id: int,
        diff: FieldDiff,
        origin: Origin,
        cache: EntityCache | None,
        *,
        actor: str | None,
        action: str = "update",
    ) -> None:
        values = {name: value for name, value in diff.after().items() if name != "items"}
        orders.update(db, order_id, values)
        if "items" in diff.changes:
            product_id_for = cache.get_id if cache is not None else (lambda _sku: None)
            orders.replace_items(db, order_id, diff.changes["items"][1], product_id_for)
        logs.append(
            db,
            entity_type="order",
            entity_id=order_id,
            origin=origin.value,
            action=action,
            actor=actor,
            changed_fields=diff.changed_fields,
            before=diff.before(),
            after=diff.after(),
        )

    def _apply_platform_reaction(
        self,
        db,
        orders: OrderRepository,
        logs: SyncLogRepository,
        order: dict,
        changes: Mapping[str, Any],
        *,
        action: str,
        actor: str,
    ) -> dict:
        diff = self.policy.diff("order", Origin.PLATFORM, order, changes)
        if diff.is_empty:
            return order
        self._apply_order_diff(db, orders, logs, int(order["id"]), diff, Origin.PLATFORM, None, actor=actor, action=action)
        merged = dict(order)
        merged.update(diff.after())
        return merged

    def _order_followups(
        self,
        db,
        orders: OrderRepository,
        logs: SyncLogRepository,
        order: dict,
        origin: Origin,
        changed: set,
        created: bool,
        published: List[DomainEvent],
    ) -> List[str]:
        order_id = int(order["id"])
        client_id = str(order["client_id"])
        jobs: List[str] = []

        if origin is Origin.COMMERCE:
            if is_cancelled_by_commerce(order):
                if not order.get("is_cancelled"):
                    changes: Dict[str, Any] = {
                        "is_cancelled": True,
                        "cancelled_at": iso_utc(self._clock()),
                        "cancelled_by": "commerce",
                        "cancellation_reason": f"payment_status={order.get('payment_status') or 'cancelled'}",
                    }
                    if not order.get("outbound_id"):
                        changes["fulfillment_state"] = "cancelled"
                    order = self._apply_platform_reaction(db, orders, logs, order, changes, action="cancel", actor="commerce")
                    if order.get("outbound_id"):
                        jobs.append(
                            self._enqueue(
                                db,
                                ORDER_CANCEL_SYNC,
                                client_id,
                                {"order_id": order_id, "reason": order.get("cancellation_reason")},
                                singleton_key=f"order-cancel:{order_id}",
                                priority=2,
                            )
                        )
                return jobs
            order = self._apply_order_gates(db, orders, logs, order, changed, created, published)
            jobs.extend(self._enqueue_ffn_sync_if_eligible(db, order))
            return jobs

        if origin in (Origin.FULFILLMENT, Origin.WAREHOUSE):
            state = order.get("fulfillment_state")
            if changed & _TRACKING_FIELDS or ("fulfillment_state" in changed and state in {"shipped", "delivered"}):
                jobs.append(
                    self._enqueue(
                        db,
                        ORDER_SYNC_TO_COMMERCE,
                        client_id,
                        {"order_id": order_id},
                        singleton_key=f"order-commerce:{order_id}",
                    )
                )
            if "fulfillment_state" in changed and state == "cancelled" and not order.get("is_cancelled"):
                self._apply_platform_reaction(
                    db,
                    orders,
                    logs,
                    order,
                    {"is_cancelled": True, "cancelled_at": iso_utc(self._clock()), "cancelled_by": origin.value},
                    action="cancel",
                    actor=origin.value,
                )
            return jobs

        # Platform edits.
        if "is_cancelled" in changed and order.get("is_cancelled"):
            if order.get("outbound_id"):
                jobs.append(
                    self._enqueue(
                        db,
                        ORDER_CANCEL_SYNC,
                        client_id,
                        {"order_id": order_id, "reason": order.get("cancellation_reason")},
                        singleton_key=f"order-cancel:{order_id}",
                        priority=2,
                    )
                )
            return jobs
        if changed & {"is_on_hold", "shipping_method_id"}:
            jobs.extend(self._enqueue_ffn_sync_if_eligible(db, order))
        return jobs

    def _apply_order_gates(
        self,
        db,
        orders: OrderRepository,
        logs: SyncLogRepository,
        order: dict,
        changed: set,
        created: bool,
        published: List[DomainEvent],
    ) -> dict:
        """Payment hold and shipping resolution, applied by the platform after a commerce write."""
        order_id = int(order["id"])
        client_id = str(order["client_id"])
        channel = self.channels.get_channel(db, order.get("channel_id")) or {}
        channel_type = str(channel.get("channel_type") or "")
        hold_reason = order.get("hold_reason") if order.get("is_on_hold") else None
        reactions: Dict[str, Any] = {}

        paid = bool(order.get("is_replacement")) or is_payment_approved(channel_type, order.get("payment_status"))
        if not paid and hold_reason is None:
            hold_reason = HOLD_AWAITING_PAYMENT
        elif paid and hold_reason == HOLD_AWAITING_PAYMENT:
            hold_reason = None

        needs_resolution = (
            created
            or order.get("shipping_method_id") is None
            or bool(changed & {"shipping_method_code", "shipping_method_title"})
        )
        mismatch_event: ShippingMismatchDetected | None = None
        if needs_resolution and not order.get("outbound_id"):
            resolution = self.resolver.resolve(
                db,
                client_id=client_id,
                channel_id=order.get("channel_id"),
                channel_type=channel_type,
                code=order.get("shipping_method_code"),
                title=order.get("shipping_method_title"),
            )
            if resolution.success:
                reactions["shipping_method_id"] = resolution.shipping_method_id
                if hold_reason == HOLD_SHIPPING_METHOD_MISMATCH:
                    hold_reason = None
            elif resolution.should_hold_order:
                mismatch_id, mismatch_created = self.resolver.record_mismatch(
                    db,
                    client_id=client_id,
                    order_id=order_id,
                    channel_id=order.get("channel_id"),
                    code=order.get("shipping_method_code"),
                    title=order.get("shipping_method_title"),
                )
                if hold_reason is None:
                    hold_reason = HOLD_SHIPPING_METHOD_MISMATCH
                if mismatch_created:
                    mismatch_event = ShippingMismatchDetected(
                        client_id=client_id,
                        order_id=order_id,
                        mismatch_id=mismatch_id,
                        channel_shipping_code=order.get("shipping_method_code"),
                        channel_shipping_title=order.get("shipping_method_title"),
                    )

        reactions["is_on_hold"] = hold_reason is not None
        reactions["hold_reason"] = hold_reason
        was_on_hold = bool(order.get("is_on_hold"))
        order = self._apply_platform_reaction(db, orders, logs, order, reactions, action="gate", actor="system")
        if mismatch_event is not None:
            published.append(mismatch_event)
        if hold_reason is not None and not was_on_hold:
            published.append(OrderPlacedOnHold(client_id=client_id, order_id=order_id, reason=hold_reason))
        return order

    def _ffn_eligible(self, order: Mapping[str, Any]) -> bool:
        if order.get("is_cancelled") or order.get("is_on_hold") or order.get("outbound_id"):
            return False
        if order.get("shipping_method_id") is None:
            return False
        if order.get("fulfillment_state") in TERMINAL_FULFILLMENT_STATES:
            return False
        if is_stress_test_order(order) and not self.stress_test_sync:
            current_app.logger.info(
                "order_ffn_sync_skipped_stress_test",
                extra={"client_id": order.get("client_id"), "order_id": order.get("id")},
            )
            return False
        return True

    def _enqueue_ffn_sync_if_eligible(self, db, order: Mapping[str, Any]) -> List[str]:
        if not self._ffn_eligible(order):
            return []
        order_id = int(order["id"])
        return [
            self._enqueue(
                db,
                ORDER_SYNC_TO_FFN,
                str(order["client_id"]),
                {"order_id": order_id},
                singleton_key=f"order-sync:{order_id}",
                priority=1,
            )
        ]

    def _update_order_fields(
        self,
        db,
        client_id: str,
        order_id: int,
        changes: Mapping[str, Any],
        *,
        actor: str,
        origin: Origin,
    ) -> SyncResult:
        orders = OrderRepository(client_id=client_id)
        logs = SyncLogRepository(client_id=client_id)
        published: List[DomainEvent] = []
        with db.transaction():
            order = orders.get(db, order_id)
            if order is None:
                raise NotFoundError(details=f"order {order_id}")
            diff = self.policy.diff("order", origin, order, changes)
            if diff.is_empty:
                return SyncResult(outcome=OUTCOME_SKIPPED_ECHO, entity_type="order", entity_id=int(order_id))
            # The network may still report returns after delivery; platform edits stop at a terminal state.
            if origin is Origin.PLATFORM and order.get("fulfillment_state") in TERMINAL_FULFILLMENT_STATES:
                return SyncResult.failed(
                    "order",
                    f"order {order_id} is {order.get('fulfillment_state')}",
                    code="order_terminal",
                    entity_id=int(order_id),
                )
            self._apply_order_diff(db, orders, logs, int(order_id), diff, origin, None, actor=actor)
            merged = dict(order)
            merged.update(diff.after())
            if diff.touches("is_on_hold") and merged.get("is_on_hold") and not order.get("is_on_hold"):
                published.append(
                    OrderPlacedOnHold(client_id=client_id, order_id=int(order_id), reason=str(merged.get("hold_reason") or "manual"))
                )
            jobs = self._order_followups(db, orders, logs, merged, origin, set(diff.changed_fields), False, published)
        self._publish(published)
        current_app.logger.info(
            "order_operational_fields_updated",
            extra={
                "client_id": client_id,
                "order_id": order_id,
                "origin": origin.value,
                "actor": actor,
                "changed_fields": diff.changed_fields,
            },
        )
        return SyncResult(
            outcome=OUTCOME_UPDATED,
            entity_type="order",
            entity_id=int(order_id),
            changed_fields=diff.changed_fields,
            jobs=jobs,
        )

    def _create_replacement(
        self,
        db,
        client_id: str,
        original_order_id: int,
        items: Sequence[LineItem] | None,
        *,
        actor: str,
        reason: str | None,
    ) -> SyncResult:
        orders = OrderRepository(client_id=client_id)
        logs = SyncLogRepository(client_id=client_id)
        published: List[DomainEvent] = []
        with db.transaction():
            original = orders.get(db, original_order_id)
            if original is None:
                raise NotFoundError(details=f"order {original_order_id}")
            values: Dict[str, Any] = {name: original.get(name) for name in _REPLACEMENT_COPY_FIELDS}
            values.update(
                {
                    "channel_id": original.get("channel_id"),
                    "external_order_id": None,
                    "origin": Origin.PLATFORM.value,
                    "is_replacement": True,
                    "original_order_id": int(original_order_id),
                    "order_number": f"{original.get('order_number') or original_order_id}-R",
                    "notes": reason,
                    "fulfillment_state": "pending",
                    "sync_status": "unsynced",
                }
            )
            order_id = orders.insert(db, values)
            line_items = list(items) if items else orders.items(db, int(original_order_id))
            cache = self._cache_for(db, client_id, None)
            orders.replace_items(db, int(order_id), line_items, cache.get_id)
            changed = sorted(set(values) | {"items"})
            logs.append(
                db,
                entity_type="order",
                entity_id=order_id,
                origin=Origin.PLATFORM.value,
                action="create_replacement",
                actor=actor,
                changed_fields=changed,
                after={**values, "items": line_items},
            )
            order = orders.get(db, int(order_id)) or {}
            order = self._apply_order_gates(db, orders, logs, order, set(), True, published)
            jobs = self._enqueue_ffn_sync_if_eligible(db, order)
        self._publish(published)
        current_app.logger.info(
            "replacement_order_created",
            extra={"client_id": client_id, "order_id": order_id, "original_order_id": original_order_id, "actor": actor},
        )
        return SyncResult(outcome=OUTCOME_CREATED, entity_type="order", entity_id=int(order_id), changed_fields=changed, jobs=jobs)

    # -- returns ----------------------------------------------------------

    def _process_return(self, db, event: ReturnChangeEvent, cache: EntityCache) -> SyncResult:
        if not str(event.external_return_id or "").strip():
            raise MalformedPayloadError(details="return event without external_return_id")
        origin = event.origin
        returns = ReturnRepository(client_id=event.client_id)
        logs = SyncLogRepository(client_id=event.client_id)

        with db.transaction():
            existing = returns.get_by_external(db, event.channel_id, event.external_return_id)
            if existing is None:
                writable, _rejected = self.policy.filter_writable("return", origin, event.fields)
                order = None
                if event.external_order_id:
                    order = OrderRepository(client_id=event.client_id).get_by_external(
                        db, event.channel_id, event.external_order_id
                    )
                values: Dict[str, Any] = {"status": RETURN_STATUS_ANNOUNCED}
                values.update(writable)
                values.update(
                    {
                        "channel_id": event.channel_id,
                        "external_return_id": event.external_return_id,
                        "external_order_id": event.external_order_id,
                        "order_id": int(order["id"]) if order else None,
                        "origin": origin.value,
                    }
                )
                return_id = returns.insert(db, values)
                if return_id is not None:
                    items = list(event.items or [])
                    returns.insert_items(db, return_id, items, cache.get_id)
                    changed = sorted(set(values) | ({"items"} if items else set()))
                    logs.append(
                        db,
                        entity_type="return",
                        entity_id=return_id,
                        origin=origin.value,
                        action="create",
                        actor=str(event.source),
                        changed_fields=changed,
                        after={**values, "items": items},
                    )
                    current_app.logger.info(
                        "return_synced",
                        extra={"client_id": event.client_id, "return_id": return_id, "origin": origin.value, "outcome": OUTCOME_CREATED},
                    )
                    return SyncResult(outcome=OUTCOME_CREATED, entity_type="return", entity_id=return_id, changed_fields=changed)
                existing = returns.get_by_external(db, event.channel_id, event.external_return_id)

            return_id = int(existing["id"])
            diff = self.policy.diff("return", origin, existing, event.fields)
            if diff.is_empty:
                return SyncResult(outcome=OUTCOME_SKIPPED_ECHO, entity_type="return", entity_id=return_id)
            if existing.get("finalized_at"):
                return SyncResult.failed(
                    "return",
                    f"return {return_id} is finalized",
                    code="return_finalized",
                    entity_id=return_id,
                )
            jobs = self._apply_return_diff(db, returns, logs, existing, diff, origin, actor=str(event.source))

        current_app.logger.info(
            "return_synced",
            extra={"client_id": event.client_id, "return_id": return_id, "origin": origin.value, "outcome": OUTCOME_UPDATED},
        )
        return SyncResult(
            outcome=OUTCOME_UPDATED,
            entity_type="return",
            entity_id=return_id,
            changed_fields=diff.changed_fields,
            jobs=jobs,
        )

    def _apply_return_diff(
        self,
        db,
        returns: ReturnRepository,
        logs: SyncLogRepository,
        existing: dict,
        diff: FieldDiff,
        origin: Origin,
        *,
        actor: str | None,
    ) -> List[str]:
        return_id = int(existing["id"])
        client_id = str(existing["client_id"])
        returns.update(db, return_id, diff.after())
        logs.append(
            db,
            entity_type="return",
            entity_id=return_id,
            origin=origin.value,
            action="update",
            actor=actor,
            changed_fields=diff.changed_fields,
            before=diff.before(),
            after=diff.after(),
        )
        jobs: List[str] = []
        if origin is not Origin.PLATFORM:
            return jobs
        after = {**existing, **diff.after()}
        if diff.touches("restock_eligible") and after.get("restock_eligible") and not after.get("restocked_at"):
            jobs.append(
                self._enqueue(
                    db,
                    RETURN_RESTOCK_SYNC,
                    client_id,
                    {"return_id": return_id},
                    singleton_key=f"return-restock:{return_id}",
                )
            )
        if diff.touches("status", "refund_amount", "refunded_at"):
            jobs.append(
                self._enqueue(
                    db,
                    RETURN_SYNC_TO_COMMERCE,
                    client_id,
                    {"return_id": return_id},
                    singleton_key=f"return-commerce:{return_id}",
                )
            )
        return jobs

    def _update_return_as_platform(
        self,
        db,
        client_id: str,
        return_id: int,
        changes: Mapping[str, Any],
        *,
        actor: str,
    ) -> SyncResult:
        returns = ReturnRepository(client_id=client_id)
        logs = SyncLogRepository(client_id=client_id)
        with db.transaction():
            existing = returns.get(db, return_id)
            if existing is None:
                raise NotFoundError(details=f"return {return_id}")
            diff = self.policy.diff("return", Origin.PLATFORM, existing, changes)
            if diff.is_empty:
                return SyncResult(outcome=OUTCOME_SKIPPED_ECHO, entity_type="return", entity_id=int(return_id))
            if existing.get("finalized_at"):
                return SyncResult.failed(
                    "return",
                    f"return {return_id} is finalized",
                    code="return_finalized",
                    entity_id=int(return_id),
                )
            jobs = self._apply_return_diff(db, returns, logs, existing, diff, Origin.PLATFORM, actor=actor)
        current_app.logger.info(
            "return_updated",
            extra={"client_id": client_id, "return_id": return_id, "actor": actor, "changed_fields": diff.changed_fields},
        )
        return SyncResult(
            outcome=OUTCOME_UPDATED,
            entity_type="return",
            entity_id=int(return_id),
            changed_fields=diff.changed_fields,
            jobs=jobs,
        )

    # -- products ---------------------------------------------------------

    def _process_product(self, db, event: ProductChangeEvent, cache: EntityCache) -> SyncResult:
        sku = str(event.sku or "").strip()
        if not sku:
            raise MalformedPayloadError(details="product event without sku")
        origin = event.origin
        products = ProductRepository(client_id=event.client_id)
        logs = SyncLogRepository(client_id=event.client_id)

        with db.transaction():
            existing = products.get_by_sku(db, sku)
            if existing is None:
                writable, _rejected = self.policy.filter_writable("product", origin, event.fields)
                values = dict(writable)
                values.update({"sku": sku, "origin": origin.value})
                product_id = products.insert(db, values)
                if product_id is not None:
                    if event.channel_id and event.external_id:
                        products.link_channel(db, product_id, event.channel_id, str(event.external_id))
                    cache.add(ProductRef(id=product_id, sku=sku, name=values.get("name")))
                    logs.append(
                        db,
                        entity_type="product",
                        entity_id=product_id,
                        origin=origin.value,
                        action="create",
                        actor=str(event.source),
                        changed_fields=sorted(values),
                        after=values,
                    )
                    jobs: List[str] = []
                    if origin in (Origin.COMMERCE, Origin.PLATFORM):
                        jobs.append(
                            self._enqueue(
                                db,
                                PRODUCT_SYNC_TO_FFN,
                                event.client_id,
                                {"product_id": product_id},
                                singleton_key=f"product-ffn:{product_id}",
                            )
                        )
                    return SyncResult(
                        outcome=OUTCOME_CREATED,
                        entity_type="product",
                        entity_id=product_id,
                        changed_fields=sorted(values),
                        jobs=jobs,
                    )
                existing = products.get_by_sku(db, sku)

            product_id = int(existing["id"])
            if event.channel_id and event.external_id:
                products.link_channel(db, product_id, event.channel_id, str(event.external_id))
            diff = self.policy.diff("product", origin, existing, event.fields)
            if diff.is_empty:
                return SyncResult(outcome=OUTCOME_SKIPPED_ECHO, entity_type="product", entity_id=product_id)
            products.update(db, product_id, diff.after())
            logs.append(
                db,
                entity_type="product",
                entity_id=product_id,
                origin=origin.value,
                action="update",
                actor=str(event.source),
                changed_fields=diff.changed_fields,
                before=diff.before(),
                after=diff.after(),
            )
            jobs = []
            if origin in (Origin.COMMERCE, Origin.PLATFORM) and diff.touches(*_PRODUCT_FFN_FIELDS):
                jobs.append(
                    self._enqueue(
                        db,
                        PRODUCT_SYNC_TO_FFN,
                        event.client_id,
                        {"product_id": product_id},
                        singleton_key=f"product-ffn:{product_id}",
                    )
                )
            if diff.touches("available_quantity"):
                jobs.append(
                    self._enqueue(
                        db,
                        PRODUCT_SYNC_TO_COMMERCE,
                        event.client_id,
                        {"product_id": product_id},
                        singleton_key=f"product-commerce:{product_id}",
                    )
                )

        return SyncResult(
            outcome=OUTCOME_UPDATED,
            entity_type="product",
            entity_id=product_id,
            changed_fields=diff.changed_fields,
            jobs=jobs,
        )
