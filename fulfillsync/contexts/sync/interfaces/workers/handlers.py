from __future__ import annotations

from typing import Callable, Dict, Tuple

from flask import current_app

from fulfillsync.contexts.commerce.application.sync_back import CommerceSyncBack
from fulfillsync.contexts.commerce.domain.gateway import CommerceGatewayError
from fulfillsync.contexts.fulfillment.application.adapter import FulfillmentSyncAdapter
from fulfillsync.contexts.fulfillment.domain.results import FulfillmentResult
from fulfillsync.contexts.queue.domain.jobs import (
    ORDER_CANCEL_SYNC,
    ORDER_SYNC_TO_COMMERCE,
    ORDER_SYNC_TO_FFN,
    PRODUCT_SYNC_TO_COMMERCE,
    PRODUCT_SYNC_TO_FFN,
    RETURN_RESTOCK_SYNC,
    RETURN_SYNC_TO_COMMERCE,
    PermanentJobError,
    SyncJob,
)
from fulfillsync.contexts.sync.application.return_service import ReturnService
from fulfillsync.errors import IntegrationError, NotFoundError


JobHandler = Callable[[object, SyncJob], None]

# Gates that re-enqueue the sync themselves once they clear: a hold release,
# a payment update, or a platform edit assigning the shipping method.
DEFERRED_CODES = frozenset({"order_on_hold", "payment_not_approved", "shipping_method_unresolved"})


def _job_target(job: SyncJob, key: str) -> Tuple[str, int]:
    client_id = str(job.payload.get("client_id") or job.client_id or "").strip()
    try:
        entity_id = int(job.payload.get(key))
    except (TypeError, ValueError):
        entity_id = 0
    if not client_id or entity_id <= 0:
        raise PermanentJobError(code="job_payload_invalid", details=f"{job.queue_name} job {job.id} needs client_id and {key}")
    return client_id, entity_id


def _raise_for_result(job: SyncJob, result: FulfillmentResult) -> None:
    if result.success:
        return
    if result.code in DEFERRED_CODES:
        current_app.logger.info("job_deferred_by_gate", extra={"queue": job.queue_name, "job_id": job.id, "code": result.code})
        return
    details = f"{result.code}: {result.message}"
    if result.retryable:
        raise IntegrationError(code=result.code or "ffn_unavailable", details=details)
    raise PermanentJobError(code=result.code or "ffn_request_rejected", details=details)


def _commerce_call(fn: Callable[[], object]) -> None:
    try:
        fn()
    except NotFoundError as exc:
        raise PermanentJobError(code="job_target_missing", details=str(exc)) from exc
    except CommerceGatewayError as exc:
        if exc.definitive:
            raise PermanentJobError(code="commerce_request_rejected", details=str(exc)) from exc
        raise IntegrationError(code="commerce_unavailable", details=str(exc)) from exc


def build_job_handlers(
    *,
    adapter: FulfillmentSyncAdapter,
    sync_back: CommerceSyncBack,
    returns: ReturnService,
) -> Dict[str, JobHandler]:
    """Return one ``(db, job)`` handler per queue name."""

    def order_sync_to_ffn(db, job: SyncJob) -> None:
        client_id, order_id = _job_target(job, "order_id")
        result = adapter.sync_order(db, client_id, order_id)
        _raise_for_result(job, result)

    def order_cancel_sync(db, job: SyncJob) -> None:
        client_id, order_id = _job_target(job, "order_id")
        result = adapter.cancel_order(db, client_id, order_id, reason=job.payload.get("reason"))
        _raise_for_result(job, result)

    def order_sync_to_commerce(db, job: SyncJob) -> None:
        client_id, order_id = _job_target(job, "order_id")
        _commerce_call(lambda: sync_back.push_order(db, client_id, order_id))

    def return_sync_to_commerce(db, job: SyncJob) -> None:
        client_id, return_id = _job_target(job, "return_id")
        _commerce_call(lambda: sync_back.push_return(db, client_id, return_id))

    def return_restock_sync(db, job: SyncJob) -> None:
        client_id, return_id = _job_target(job, "return_id")
        try:
            result = returns.apply_restock(db, client_id, return_id)
        except NotFoundError as exc:
            raise PermanentJobError(code="job_target_missing", details=str(exc)) from exc
        current_app.logger.info(
            "return_restock_job_completed",
            extra={"client_id": client_id, "return_id": return_id, "outcome": result.outcome},
        )

    def product_sync_to_ffn(db, job: SyncJob) -> None:
        client_id, product_id = _job_target(job, "product_id")
        result = adapter.sync_product(db, client_id, product_id)
        _raise_for_result(job, result)

    def product_sync_to_commerce(db, job: SyncJob) -> None:
        client_id, product_id = _job_target(job, "product_id")
        _commerce_call(lambda: sync_back.push_stock(db, client_id, product_id))

    return {
        ORDER_SYNC_TO_FFN: order_sync_to_ffn,
        ORDER_CANCEL_SYNC: order_cancel_sync,
        ORDER_SYNC_TO_COMMERCE: order_sync_to_commerce,
        RETURN_SYNC_TO_COMMERCE: return_sync_to_commerce,
        RETURN_RESTOCK_SYNC: return_restock_sync,
        PRODUCT_SYNC_TO_FFN: product_sync_to_ffn,
        PRODUCT_SYNC_TO_COMMERCE: product_sync_to_commerce,
    }
