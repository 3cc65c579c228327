import unittest

from fulfillsync.contexts.queue.domain.jobs import ORDER_SYNC_TO_COMMERCE
from fulfillsync.contexts.sync.domain.events import ProductChangeEvent
from fulfillsync.contexts.sync.infrastructure.sync_log_repository import SyncLogRepository
from fulfillsync.core import OutboundCreated
from tests.helpers.app_case import CLIENT_ID, SyncAppTestCase


class FulfillmentAdapterTestBase(SyncAppTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.adapter = self.engine.adapter
        self.simulator = self.engine.gateway_for(CLIENT_ID)
        self.add_mapping("standard", self.dhl_id, client_id=CLIENT_ID)

    def _ready_order(self, external_id: str = "1001") -> int:
        result = self.engine.orchestrator.process(self.db, self.order_event(external_id))
        self.assertEqual(result.outcome, "created")
        return int(result.entity_id)


class FulfillmentAdapterOrderTest(FulfillmentAdapterTestBase):
    sandbox_prefix = "ffn_adapter"

    def test_order_is_sent_once(self) -> None:
        order_id = self._ready_order()
        created = []
        self.engine.event_bus.subscribe(OutboundCreated, created.append)

        first = self.adapter.sync_order(self.db, CLIENT_ID, order_id)
        second = self.adapter.sync_order(self.db, CLIENT_ID, order_id)

        self.assertTrue(first.success)
        self.assertEqual(first.state, "synced")
        self.assertTrue(first.outbound_id.startswith("SIM-OB-"))
        self.assertTrue(second.success)
        self.assertEqual(second.outbound_id, first.outbound_id)
        self.assertEqual(second.message, "already synced")
        self.assertEqual(self.simulator.calls.count("create_outbound"), 1)
        self.assertEqual([event.outbound_id for event in created], [first.outbound_id])

        order = self.order_row(order_id)
        self.assertEqual(order["outbound_id"], first.outbound_id)
        self.assertEqual(order["sync_status"], "synced")
        self.assertEqual(order["fulfillment_state"], "awaiting_stock")

    def test_outbound_request_carries_order_data(self) -> None:
        order_id = self._ready_order()

        self.adapter.sync_order(self.db, CLIENT_ID, order_id)

        request = self.simulator.outbound(str(order_id))["request"]
        self.assertEqual(request.merchant_outbound_number, str(order_id))
        self.assertEqual(request.shipping_method_id, "FFN-DHL-PAKET")
        self.assertEqual(request.ship_to.country_code, "DE")
        self.assertEqual(request.ship_to.street, "Hauptstrasse 5")
        self.assertEqual([(item.merchant_sku, item.quantity) for item in request.items], [("SKU-1", 2)])

    def test_outbound_created_before_a_lost_response_is_reused(self) -> None:
        order_id = self._ready_order()
        self.adapter.sync_order(self.db, CLIENT_ID, order_id)
        outbound_id = self.order_row(order_id)["outbound_id"]
        with self.db.transaction():
            self.db.execute("UPDATE orders SET outbound_id = NULL, sync_status = 'unsynced' WHERE id = ?", (order_id,))

        result = self.adapter.sync_order(self.db, CLIENT_ID, order_id)

        self.assertEqual(result.outbound_id, outbound_id)

    def test_order_on_hold_is_not_sent(self) -> None:
        result = self.engine.orchestrator.process(self.db, self.order_event(payment_status="pending"))

        outcome = self.adapter.sync_order(self.db, CLIENT_ID, int(result.entity_id))

        self.assertFalse(outcome.success)
        self.assertEqual(outcome.code, "order_on_hold")
        self.assertFalse(outcome.retryable)
        self.assertNotIn("create_outbound", self.simulator.calls)

    def test_unknown_order_is_rejected(self) -> None:
        result = self.adapter.sync_order(self.db, CLIENT_ID, 999)

        self.assertEqual(result.code, "order_not_found")

    def test_transient_failure_is_retryable(self) -> None:
        order_id = self._ready_order()
        self.simulator.fail_next(1)

        result = self.adapter.sync_order(self.db, CLIENT_ID, order_id)

        self.assertFalse(result.success)
        self.assertTrue(result.retryable)
        self.assertEqual(result.state, "unsynced")
        order = self.order_row(order_id)
        self.assertEqual(order["sync_status"], "unsynced")
        self.assertIn("503", order["last_error"])

        retried = self.adapter.sync_order(self.db, CLIENT_ID, order_id)
        self.assertTrue(retried.success)

    def test_definitive_rejection_marks_error(self) -> None:
        order_id = self._ready_order()
        self.simulator.fail_next(1, definitive=True, message="FFN HTTP 422: invalid")

        result = self.adapter.sync_order(self.db, CLIENT_ID, order_id)

        self.assertFalse(result.retryable)
        self.assertEqual(result.state, "error")
        self.assertEqual(self.order_row(order_id)["sync_status"], "error")
        entries = SyncLogRepository(client_id=CLIENT_ID).list_for(self.db, "order", order_id)
        self.assertEqual(entries[-1]["action"], "outbound_create")
        self.assertEqual(entries[-1]["success"], 0)

    def test_cancel_outbound(self) -> None:
        order_id = self._ready_order()
        synced = self.adapter.sync_order(self.db, CLIENT_ID, order_id)

        result = self.adapter.cancel_order(self.db, CLIENT_ID, order_id, reason="customer request")

        self.assertTrue(result.success)
        self.assertEqual(result.state, "cancelled")
        self.assertEqual(self.simulator.outbound(str(order_id))["status"], "CANCELLED")
        order = self.order_row(order_id)
        self.assertEqual(order["sync_status"], "cancelled")
        self.assertEqual(order["fulfillment_state"], "cancelled")
        self.assertEqual(order["outbound_id"], synced.outbound_id)

        again = self.adapter.cancel_order(self.db, CLIENT_ID, order_id)
        self.assertEqual(again.message, "already cancelled")

    def test_cancel_without_outbound_is_a_no_op(self) -> None:
        order_id = self._ready_order()

        result = self.adapter.cancel_order(self.db, CLIENT_ID, order_id)

        self.assertTrue(result.success)
        self.assertEqual(result.state, "unsynced")
        self.assertNotIn("cancel_outbound", self.simulator.calls)

    def test_shipped_outbound_cannot_be_cancelled(self) -> None:
        order_id = self._ready_order()
        self.adapter.sync_order(self.db, CLIENT_ID, order_id)
        self.simulator.advance(str(order_id), "SHIPPED")

        result = self.adapter.cancel_order(self.db, CLIENT_ID, order_id)

        self.assertFalse(result.success)
        self.assertFalse(result.retryable)
        self.assertEqual(self.order_row(order_id)["sync_status"], "error")


class FulfillmentAdapterPollTest(FulfillmentAdapterTestBase):
    sandbox_prefix = "ffn_adapter_poll"

    def test_shipped_update_is_applied_and_written_back(self) -> None:
        order_id = self._ready_order()
        self.adapter.sync_order(self.db, CLIENT_ID, order_id)
        self.simulator.advance(str(order_id), "PICKED")
        self.simulator.advance(str(order_id), "SHIPPED", tracking_number="00340434161094042557")

        summary = self.adapter.poll_updates(self.db, CLIENT_ID)

        self.assertEqual(summary.received, 2)
        self.assertEqual(summary.applied, 1)
        self.assertEqual(summary.skipped, 1)
        self.assertEqual(summary.failed, 0)
        order = self.order_row(order_id)
        self.assertEqual(order["fulfillment_state"], "shipped")
        self.assertEqual(order["tracking_number"], "00340434161094042557")
        self.assertIsNotNone(order["shipped_at"])
        self.assertEqual(len(self.jobs(ORDER_SYNC_TO_COMMERCE)), 1)

        repeated = self.adapter.poll_updates(self.db, CLIENT_ID)
        self.assertEqual(repeated.received, 2)
        self.assertEqual(repeated.skipped, 2)
        self.assertEqual(repeated.applied, 0)

    def test_unknown_status_is_counted(self) -> None:
        order_id = self._ready_order()
        self.adapter.sync_order(self.db, CLIENT_ID, order_id)
        self.simulator.advance(str(order_id), "TELEPORTED")

        summary = self.adapter.poll_updates(self.db, CLIENT_ID)

        self.assertEqual(summary.unknown, 1)
        self.assertIn("TELEPORTED", summary.errors[0])
        self.assertEqual(self.order_row(order_id)["fulfillment_state"], "awaiting_stock")

    def test_delivered_order_cannot_be_edited_by_platform(self) -> None:
        order_id = self._ready_order()
        self.adapter.sync_order(self.db, CLIENT_ID, order_id)
        self.simulator.advance(str(order_id), "DELIVERED")
        self.adapter.poll_updates(self.db, CLIENT_ID)

        result = self.engine.orchestrator.update_operational_fields(
            self.db, CLIENT_ID, order_id, {"warehouse_notes": "fragile"}, actor="ops"
        )

        self.assertEqual(self.order_row(order_id)["fulfillment_state"], "delivered")
        self.assertEqual(result.code, "order_terminal")


class FulfillmentAdapterMasterDataTest(FulfillmentAdapterTestBase):
    sandbox_prefix = "ffn_adapter_master"

    def test_shipping_methods_are_upserted(self) -> None:
        summary = self.adapter.sync_shipping_methods(self.db, CLIENT_ID)

        self.assertEqual(summary, {"total": 4, "created": 2, "updated": 2})
        count = self.db.execute("SELECT COUNT(*) AS total FROM shipping_methods").fetchone()["total"]
        self.assertEqual(count, 4)

    def test_product_gets_fulfillment_id(self) -> None:
        created = self.engine.orchestrator.process(
            self.db,
            ProductChangeEvent(client_id=CLIENT_ID, sku="MUG-1", source="platform", fields={"name": "Mug", "weight": 0.4}),
        )

        result = self.adapter.sync_product(self.db, CLIENT_ID, int(created.entity_id))

        self.assertTrue(result.success)
        stored = self.db.execute(
            "SELECT fulfillment_product_id FROM products WHERE id = ?", (created.entity_id,)
        ).fetchone()["fulfillment_product_id"]
        self.assertEqual(stored, result.message)
        self.assertTrue(stored.startswith("SIM-"))


class FulfillmentAdapterCircuitTest(FulfillmentAdapterTestBase):
    sandbox_prefix = "ffn_adapter_circuit"
    config_overrides = {
        "FFN_CIRCUIT_MIN_SAMPLES": 2,
        "FFN_CIRCUIT_ERROR_RATE_THRESHOLD": 0.5,
        "FFN_CIRCUIT_OPEN_SECONDS": 600,
    }

    def test_repeated_failures_open_the_circuit(self) -> None:
        order_id = self._ready_order()
        self.simulator.fail_next(2)
        self.adapter.sync_order(self.db, CLIENT_ID, order_id)
        self.adapter.sync_order(self.db, CLIENT_ID, order_id)
        calls_before = len(self.simulator.calls)

        result = self.adapter.sync_order(self.db, CLIENT_ID, order_id)

        self.assertEqual(self.engine.circuit_breaker.state, "open")
        self.assertEqual(result.code, "ffn_circuit_open")
        self.assertTrue(result.retryable)
        self.assertEqual(len(self.simulator.calls), calls_before)

    def test_definitive_rejections_do_not_open_the_circuit(self) -> None:
        order_id = self._ready_order()
        self.simulator.fail_next(3, definitive=True, message="FFN HTTP 422: invalid")
        for _ in range(3):
            self.adapter.sync_order(self.db, CLIENT_ID, order_id)

        self.assertEqual(self.engine.circuit_breaker.state, "closed")


if __name__ == "__main__":
    unittest.main()
