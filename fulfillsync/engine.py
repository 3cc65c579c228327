from __future__ import annotations

import logging
from typing import Dict

from flask import Flask

from fulfillsync.contexts.catalog.application.batch_upsert import BatchUpsertEngine
from fulfillsync.contexts.commerce.application.sync_back import CommerceSyncBack
from fulfillsync.contexts.commerce.domain.gateway import CommerceGateway, LoggingCommerceGateway
from fulfillsync.contexts.commerce.infrastructure.http_gateway import (
    ChannelCommerceGateway,
    ShopifyCommerceGateway,
    WooCommerceGateway,
)
from fulfillsync.contexts.fulfillment.application.adapter import FulfillmentSyncAdapter
from fulfillsync.contexts.fulfillment.infrastructure.circuit_breaker import CircuitBreaker
from fulfillsync.contexts.fulfillment.infrastructure.runtime import GatewayFactory, build_gateway_factory
from fulfillsync.contexts.queue.application.worker_pool import WorkerPool
from fulfillsync.contexts.queue.domain.jobs import (
    ORDER_CANCEL_SYNC,
    ORDER_SYNC_TO_COMMERCE,
    ORDER_SYNC_TO_FFN,
    PRODUCT_SYNC_TO_COMMERCE,
    PRODUCT_SYNC_TO_FFN,
    RETURN_RESTOCK_SYNC,
    RETURN_SYNC_TO_COMMERCE,
)
from fulfillsync.contexts.queue.infrastructure.job_queue import JobQueue
from fulfillsync.contexts.shipping.application.resolver import ShippingMethodResolver
from fulfillsync.contexts.sync.application.orchestrator import SyncOrchestrator
from fulfillsync.contexts.sync.application.return_service import ReturnService
from fulfillsync.contexts.sync.interfaces.ingestion import WebhookIngestor
from fulfillsync.contexts.sync.interfaces.workers.handlers import build_job_handlers
from fulfillsync.core import EventBus, JobDeadLettered, OrderPlacedOnHold, ShippingMismatchDetected
from fulfillsync.infrastructure.credentials import ConfigCredentialVault, CredentialVault
from fulfillsync.scheduler import PollScheduler


EXTENSION_KEY = "fulfillsync"

COMMERCE_MODES = ("log", "http")


def _batch_sizes(config) -> Dict[str, int]:
    products = int(config.get("WORKER_BATCH_SIZE_PRODUCTS", 5) or 5)
    orders = int(config.get("WORKER_BATCH_SIZE_ORDERS", 3) or 3)
    cancellations = int(config.get("WORKER_BATCH_SIZE_CANCELLATIONS", 2) or 2)
    returns = int(config.get("WORKER_BATCH_SIZE_RETURNS", 2) or 2)
    return {
        ORDER_SYNC_TO_FFN: orders,
        ORDER_CANCEL_SYNC: cancellations,
        ORDER_SYNC_TO_COMMERCE: orders,
        RETURN_SYNC_TO_COMMERCE: returns,
        RETURN_RESTOCK_SYNC: returns,
        PRODUCT_SYNC_TO_FFN: products,
        PRODUCT_SYNC_TO_COMMERCE: products,
    }


def build_commerce_gateway(config, vault: CredentialVault | None = None) -> CommerceGateway:
    """Return the storefront write-back gateway for ``COMMERCE_MODE``.

    ``log`` records calls without touching any storefront; ``http`` calls the
    Shopify and WooCommerce REST APIs with per-channel credentials from the vault.
    """
    mode = str(config.get("COMMERCE_MODE") or "log").strip().lower()
    if mode not in COMMERCE_MODES:
        raise ValueError(f"invalid COMMERCE_MODE: {mode}")
    if mode == "log":
        return LoggingCommerceGateway(logging.getLogger("fulfillsync.commerce"))

    vault = vault or ConfigCredentialVault(config)
    client_options = {
        "timeout_seconds": int(config.get("COMMERCE_TIMEOUT_SECONDS", 20) or 20),
        "retry_attempts": int(config.get("COMMERCE_RETRY_ATTEMPTS", 2) or 2),
        "retry_backoff_ms": int(config.get("COMMERCE_RETRY_BACKOFF_MS", 300) or 0),
        "verify_ssl": bool(config.get("COMMERCE_VERIFY_SSL", True)),
    }
    return ChannelCommerceGateway(
        {
            "shopify": ShopifyCommerceGateway(vault, **client_options),
            "woocommerce": WooCommerceGateway(vault, **client_options),
        }
    )


class SyncEngine:
    """Owns every sync service of one Flask app.

    Built once by ``create_app`` and stored in ``app.extensions["fulfillsync"]``.
    Nothing here is process-global: two apps get two independent engines.
    """

    def __init__(
        self,
        app: Flask,
        *,
        vault: CredentialVault | None = None,
        gateway_for: GatewayFactory | None = None,
        commerce_gateway: CommerceGateway | None = None,
    ) -> None:
        config = app.config
        self.app = app
        self.event_bus = EventBus()
        self.job_queue = JobQueue.from_config(config, event_bus=self.event_bus)
        self.circuit_breaker = CircuitBreaker.from_config(config)
        self.vault = vault or ConfigCredentialVault(config)
        self.gateway_for = gateway_for or build_gateway_factory(config, self.vault)
        self.commerce_gateway = commerce_gateway or build_commerce_gateway(config, self.vault)
        self.resolver = ShippingMethodResolver()
        self.orchestrator = SyncOrchestrator(
            job_queue=self.job_queue,
            resolver=self.resolver,
            event_bus=self.event_bus,
            stress_test_sync=bool(config.get("STRESS_TEST_SYNC_TO_FFN", False)),
        )
        self.adapter = FulfillmentSyncAdapter(
            gateway_for=self.gateway_for,
            circuit_breaker=self.circuit_breaker,
            orchestrator=self.orchestrator,
            event_bus=self.event_bus,
            poll_window_hours=int(config.get("FFN_POLL_WINDOW_HOURS", 24) or 24),
        )
        self.returns = ReturnService(self.orchestrator)
        self.sync_back = CommerceSyncBack(self.commerce_gateway)
        self.batch = BatchUpsertEngine.from_config(config)
        self.ingestor = WebhookIngestor(self.orchestrator, self.vault)
        self.worker_pool = WorkerPool(
            app,
            self.job_queue,
            poll_interval_seconds=float(config.get("WORKER_POLL_INTERVAL_SECONDS", 5.0)),
            default_timeout_seconds=float(config.get("JOB_HANDLER_TIMEOUT_SECONDS", 120)),
        )
        self.scheduler = PollScheduler(app, self.adapter)
        self._register_handlers(config)
        self._register_audit_subscribers()

    def _register_handlers(self, config) -> None:
        handlers = build_job_handlers(adapter=self.adapter, sync_back=self.sync_back, returns=self.returns)
        sizes = _batch_sizes(config)
        for queue_name, handler in handlers.items():
            self.worker_pool.register(queue_name, handler, batch_size=sizes[queue_name])

    def _register_audit_subscribers(self) -> None:
        def _on_hold(event: OrderPlacedOnHold) -> None:
            self.app.logger.warning(
                "order_placed_on_hold",
                extra={"client_id": event.client_id, "order_id": event.order_id, "reason": event.reason},
            )

        def _on_mismatch(event: ShippingMismatchDetected) -> None:
            self.app.logger.warning(
                "shipping_mismatch_detected",
                extra={
                    "client_id": event.client_id,
                    "order_id": event.order_id,
                    "mismatch_id": event.mismatch_id,
                    "channel_shipping_code": event.channel_shipping_code,
                    "channel_shipping_title": event.channel_shipping_title,
                },
            )

        def _on_dead_letter(event: JobDeadLettered) -> None:
            self.app.logger.error(
                "job_dead_lettered",
                extra={
                    "client_id": event.client_id,
                    "job_id": event.job_id,
                    "queue": event.queue_name,
                    "attempts": event.attempts,
                    "error": event.error[:200],
                },
            )

        self.event_bus.subscribe(OrderPlacedOnHold, _on_hold)
        self.event_bus.subscribe(ShippingMismatchDetected, _on_mismatch)
        self.event_bus.subscribe(JobDeadLettered, _on_dead_letter)

    def start(self, *, workers: bool = False, poller: bool = False) -> None:
        self.job_queue.start()
        if workers:
            self.worker_pool.start()
        if poller:
            self.scheduler.start()
        self.app.logger.info("sync_engine_started", extra={"workers": workers, "poller": poller})

    def stop(self, timeout: float | None = 5.0) -> None:
        self.scheduler.stop(timeout)
        self.worker_pool.stop(timeout)
        self.job_queue.stop()
        self.app.logger.info("sync_engine_stopped")


def get_engine(app: Flask) -> SyncEngine:
    return app.extensions[EXTENSION_KEY]
