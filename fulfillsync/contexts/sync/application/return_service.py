from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping

from flask import current_app

from fulfillsync.contexts.catalog.infrastructure.product_repository import ProductRepository
from fulfillsync.contexts.queue.domain.jobs import PRODUCT_SYNC_TO_COMMERCE, RETURN_RESTOCK_SYNC, JobOptions
from fulfillsync.contexts.sync.application.orchestrator import SyncOrchestrator
from fulfillsync.contexts.sync.domain.events import Origin
from fulfillsync.contexts.sync.domain.results import (
    OUTCOME_SKIPPED_ECHO,
    OUTCOME_UPDATED,
    RETURN_STATUS_CHECKED,
    RETURN_STATUS_COMPLETED,
    RETURN_STATUS_NOT_RESTOCKED,
    RETURN_STATUS_RECEIVED,
    RETURN_STATUS_RESTOCKED,
    SyncResult,
)
from fulfillsync.contexts.sync.infrastructure.return_repository import ReturnRepository
from fulfillsync.contexts.sync.infrastructure.sync_log_repository import SyncLogRepository
from fulfillsync.core.clock import iso_utc
from fulfillsync.errors import NotFoundError, ValidationError


INSPECTION_RESULTS = frozenset({"ok", "damaged", "incomplete", "wrong_item"})


class ReturnService:
    """Platform-side return processing: inspection, refund, restock, finalization."""

    def __init__(self, orchestrator: SyncOrchestrator) -> None:
        self.orchestrator = orchestrator

    def mark_received(self, db, client_id: str, return_id: int, *, actor: str) -> SyncResult:
        return self.orchestrator.update_return_fields(
            db, client_id, return_id, {"status": RETURN_STATUS_RECEIVED}, actor=actor
        )

    def inspect_return(
        self,
        db,
        client_id: str,
        return_id: int,
        *,
        actor: str,
        inspection_result: str,
        restock_eligible: bool,
        item_condition: str | None = None,
        restockable: Mapping[int, int] | None = None,
    ) -> SyncResult:
        """Record the inspection.

        ``restockable`` maps return item ids to the quantity that may go back
        to stock; items not listed keep their full quantity when the return is
        restock eligible.
        """
        if inspection_result not in INSPECTION_RESULTS:
            raise ValidationError(details=f"inspection_result must be one of {sorted(INSPECTION_RESULTS)}")
        returns = ReturnRepository(client_id=client_id)
        with db.transaction():
            record = returns.get(db, return_id)
            if record is None:
                raise NotFoundError(details=f"return {return_id}")
            if record.get("finalized_at"):
                raise ValidationError(code="return_finalized", details=f"return {return_id} is finalized")
            items = returns.items(db, return_id)
            known_ids = {int(item["id"]) for item in items}
            unknown = sorted(set(int(key) for key in (restockable or {})) - known_ids)
            if unknown:
                raise ValidationError(details=f"unknown return items: {unknown}")
            total = 0
            for item in items:
                quantity = int(item.get("quantity") or 0)
                if restock_eligible:
                    allowed = int((restockable or {}).get(int(item["id"]), quantity))
                    allowed = max(0, min(quantity, allowed))
                else:
                    allowed = 0
                total += allowed
                returns.update_item_inspection(
                    db,
                    int(item["id"]),
                    restockable_quantity=allowed,
                    item_condition=item_condition,
                )
            result = self.orchestrator.update_return_fields(
                db,
                client_id,
                return_id,
                {
                    "status": RETURN_STATUS_CHECKED,
                    "inspection_result": inspection_result,
                    "item_condition": item_condition,
                    "inspected_at": iso_utc(),
                    "inspected_by": actor,
                    "restock_eligible": bool(restock_eligible),
                    "restock_quantity": total,
                },
                actor=actor,
            )
        current_app.logger.info(
            "return_inspected",
            extra={
                "client_id": client_id,
                "return_id": return_id,
                "inspection_result": inspection_result,
                "restock_eligible": bool(restock_eligible),
                "restock_quantity": total,
            },
        )
        return result

    def issue_refund(self, db, client_id: str, return_id: int, amount: Any, *, actor: str) -> SyncResult:
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise ValidationError(details="refund amount must be numeric") from None
        if value < 0:
            raise ValidationError(details="refund amount must not be negative")
        return self.orchestrator.update_return_fields(
            db,
            client_id,
            return_id,
            {"refund_amount": float(value), "refunded_at": iso_utc()},
            actor=actor,
        )

    def finalize_return(self, db, client_id: str, return_id: int, *, actor: str) -> SyncResult:
        return self.orchestrator.update_return_fields(
            db,
            client_id,
            return_id,
            {"status": RETURN_STATUS_COMPLETED, "finalized_at": iso_utc(), "finalized_by": actor},
            actor=actor,
        )

    def queue_restock_sync(self, db, client_id: str, return_id: int) -> str:
        record = ReturnRepository(client_id=client_id).get(db, return_id)
        if record is None:
            raise NotFoundError(details=f"return {return_id}")
        if not record.get("restock_eligible"):
            raise ValidationError(details=f"return {return_id} is not restock eligible")
        with db.transaction():
            enqueued = self.orchestrator.job_queue.send(
                db,
                RETURN_RESTOCK_SYNC,
                {"client_id": client_id, "return_id": int(return_id)},
                JobOptions(singleton_key=f"return-restock:{int(return_id)}"),
                client_id=client_id,
            )
        return f"{RETURN_RESTOCK_SYNC}:{enqueued.job_id}"

    def apply_restock(self, db, client_id: str, return_id: int) -> SyncResult:
        """Put restockable quantities back on stock, at most once per return."""
        returns = ReturnRepository(client_id=client_id)
        products = ProductRepository(client_id=client_id)
        with db.transaction():
            record = returns.get(db, return_id)
            if record is None:
                raise NotFoundError(details=f"return {return_id}")
            if record.get("restocked_at"):
                return SyncResult(outcome=OUTCOME_SKIPPED_ECHO, entity_type="return", entity_id=int(return_id))
            eligible = bool(record.get("restock_eligible"))
            status = RETURN_STATUS_RESTOCKED if eligible else RETURN_STATUS_NOT_RESTOCKED
            if not returns.mark_restocked(db, return_id, status):
                return SyncResult(outcome=OUTCOME_SKIPPED_ECHO, entity_type="return", entity_id=int(return_id))

            restocked: Dict[int, int] = {}
            if eligible:
                for item in returns.items(db, return_id):
                    product_id = item.get("product_id")
                    if product_id is None:
                        continue
                    quantity = item.get("restockable_quantity")
                    quantity = int(item.get("quantity") or 0) if quantity is None else int(quantity)
                    if quantity <= 0:
                        continue
                    restocked[int(product_id)] = restocked.get(int(product_id), 0) + quantity
                for product_id, quantity in restocked.items():
                    products.increment_stock(db, product_id, quantity)

            jobs: List[str] = []
            for product_id in sorted(restocked):
                enqueued = self.orchestrator.job_queue.send(
                    db,
                    PRODUCT_SYNC_TO_COMMERCE,
                    {"client_id": client_id, "product_id": product_id},
                    JobOptions(singleton_key=f"product-commerce:{product_id}"),
                    client_id=client_id,
                )
                jobs.append(f"{PRODUCT_SYNC_TO_COMMERCE}:{enqueued.job_id}")

            SyncLogRepository(client_id=client_id).append(
                db,
                entity_type="return",
                entity_id=int(return_id),
                origin=Origin.PLATFORM.value,
                action="restock",
                actor="system",
                changed_fields=["restocked_at", "status"],
                before={"status": record.get("status")},
                after={"status": status, "restocked": {str(key): value for key, value in restocked.items()}},
            )
        current_app.logger.info(
            "return_restocked",
            extra={"client_id": client_id, "return_id": return_id, "status": status, "products": len(restocked)},
        )
        return SyncResult(
            outcome=OUTCOME_UPDATED,
            entity_type="return",
            entity_id=int(return_id),
            changed_fields=["restocked_at", "status"],
            jobs=jobs,
        )
