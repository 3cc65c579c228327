import unittest

from fulfillsync.contexts.queue.domain.jobs import (
    ORDER_CANCEL_SYNC,
    ORDER_SYNC_TO_COMMERCE,
    ORDER_SYNC_TO_FFN,
    PRODUCT_SYNC_TO_COMMERCE,
    PRODUCT_SYNC_TO_FFN,
    RETURN_RESTOCK_SYNC,
    RETURN_SYNC_TO_COMMERCE,
)
from fulfillsync.contexts.sync.domain.events import LineItem, OrderChangeEvent, ProductChangeEvent, ReturnChangeEvent
from fulfillsync.contexts.sync.domain.results import HOLD_AWAITING_PAYMENT, HOLD_SHIPPING_METHOD_MISMATCH
from fulfillsync.contexts.sync.infrastructure.sync_log_repository import SyncLogRepository
from fulfillsync.core import OrderPlacedOnHold, ShippingMismatchDetected
from tests.helpers.app_case import CLIENT_ID, SHOPIFY_CHANNEL, WOO_CHANNEL, SyncAppTestCase


class SyncOrchestratorOrderTest(SyncAppTestCase):
    sandbox_prefix = "sync_orchestrator"

    def setUp(self) -> None:
        super().setUp()
        self.orchestrator = self.engine.orchestrator
        self.published = []
        self.engine.event_bus.subscribe(OrderPlacedOnHold, self.published.append)
        self.engine.event_bus.subscribe(ShippingMismatchDetected, self.published.append)

    def _create_synced_ready_order(self) -> int:
        self.add_mapping("standard", self.dhl_id, client_id=CLIENT_ID)
        result = self.orchestrator.process(self.db, self.order_event())
        self.assertEqual(result.outcome, "created")
        return int(result.entity_id)

    def test_paid_order_with_mapping_is_queued_for_fulfillment(self) -> None:
        self.add_mapping("standard", self.dhl_id, client_id=CLIENT_ID)

        result = self.orchestrator.process(self.db, self.order_event())

        self.assertEqual(result.outcome, "created")
        order = self.order_row(result.entity_id)
        self.assertEqual(order["shipping_method_id"], self.dhl_id)
        self.assertEqual(order["is_on_hold"], 0)
        self.assertEqual(order["sync_status"], "unsynced")
        jobs = self.jobs(ORDER_SYNC_TO_FFN)
        self.assertEqual(len(jobs), 1)
        self.assertEqual(jobs[0]["singleton_key"], f"order-sync:{result.entity_id}")
        self.assertEqual(jobs[0]["priority"], 1)
        self.assertEqual(result.jobs, [f"{ORDER_SYNC_TO_FFN}:{jobs[0]['id']}"])
        items = self.db.execute("SELECT sku, quantity FROM order_items WHERE order_id = ?", (result.entity_id,)).fetchall()
        self.assertEqual([(row["sku"], row["quantity"]) for row in items], [("SKU-1", 2)])

    def test_unpaid_order_waits_for_payment(self) -> None:
        self.add_mapping("standard", self.dhl_id, client_id=CLIENT_ID)

        result = self.orchestrator.process(self.db, self.order_event(payment_status="pending"))

        order = self.order_row(result.entity_id)
        self.assertEqual(order["is_on_hold"], 1)
        self.assertEqual(order["hold_reason"], HOLD_AWAITING_PAYMENT)
        self.assertEqual(self.jobs(ORDER_SYNC_TO_FFN), [])
        self.assertEqual([type(event) for event in self.published], [OrderPlacedOnHold])

        paid = self.orchestrator.process(self.db, self.order_event(payment_status="paid"))

        self.assertEqual(paid.outcome, "updated")
        order = self.order_row(result.entity_id)
        self.assertEqual(order["is_on_hold"], 0)
        self.assertIsNone(order["hold_reason"])
        self.assertEqual(len(self.jobs(ORDER_SYNC_TO_FFN)), 1)

    def test_woocommerce_processing_counts_as_paid(self) -> None:
        self.add_mapping("standard", self.dhl_id, channel_type="woocommerce")

        result = self.orchestrator.process(
            self.db,
            self.order_event("W-1", channel_id=WOO_CHANNEL, source="woocommerce", payment_status="processing"),
        )

        self.assertEqual(self.order_row(result.entity_id)["is_on_hold"], 0)
        self.assertEqual(len(self.jobs(ORDER_SYNC_TO_FFN)), 1)

    def test_unmapped_shipping_without_defaults_holds_the_order(self) -> None:
        result = self.orchestrator.process(self.db, self.order_event(shipping_code="pigeon"))

        self.assertEqual(result.outcome, "created")
        order = self.order_row(result.entity_id)
        self.assertEqual(order["is_on_hold"], 1)
        self.assertEqual(order["hold_reason"], HOLD_SHIPPING_METHOD_MISMATCH)
        self.assertIsNone(order["shipping_method_id"])
        self.assertEqual(self.jobs(ORDER_SYNC_TO_FFN), [])

        mismatches = self.engine.resolver.unresolved_mismatches(self.db, CLIENT_ID)
        self.assertEqual(len(mismatches), 1)
        self.assertEqual(mismatches[0]["order_id"], result.entity_id)
        self.assertEqual(mismatches[0]["channel_shipping_code"], "pigeon")
        self.assertEqual(
            [type(event) for event in self.published],
            [ShippingMismatchDetected, OrderPlacedOnHold],
        )
        self.assertEqual(self.published[1].reason, HOLD_SHIPPING_METHOD_MISMATCH)

    def test_client_default_resolves_without_hold_or_mismatch(self) -> None:
        self.set_client_default(self.dpd_id)

        result = self.orchestrator.process(self.db, self.order_event(shipping_code="pigeon"))

        order = self.order_row(result.entity_id)
        self.assertEqual(order["shipping_method_id"], self.dpd_id)
        self.assertEqual(order["is_on_hold"], 0)
        self.assertEqual(self.engine.resolver.unresolved_mismatches(self.db, CLIENT_ID), [])
        self.assertEqual(self.published, [])
        self.assertEqual(len(self.jobs(ORDER_SYNC_TO_FFN)), 1)

    def test_redelivered_event_is_an_echo(self) -> None:
        order_id = self._create_synced_ready_order()
        logs_before = SyncLogRepository(client_id=CLIENT_ID).count(self.db)

        result = self.orchestrator.process(self.db, self.order_event())

        self.assertEqual(result.outcome, "skipped_echo")
        self.assertEqual(result.entity_id, order_id)
        self.assertEqual(SyncLogRepository(client_id=CLIENT_ID).count(self.db), logs_before)
        self.assertEqual(len(self.jobs(ORDER_SYNC_TO_FFN)), 1)

    def test_commerce_cannot_overwrite_platform_fields(self) -> None:
        order_id = self._create_synced_ready_order()

        result = self.orchestrator.process(
            self.db,
            self.order_event(tracking_number="FAKE", priority_level=9, notes="gift wrap"),
        )

        self.assertEqual(result.outcome, "updated")
        self.assertEqual(result.changed_fields, ["notes"])
        order = self.order_row(order_id)
        self.assertIsNone(order["tracking_number"])
        self.assertEqual(order["priority_level"], 0)
        self.assertEqual(order["notes"], "gift wrap")

    def test_every_write_is_logged_with_before_and_after(self) -> None:
        order_id = self._create_synced_ready_order()
        self.orchestrator.process(self.db, self.order_event(customer_email="new@example.org"))

        entries = SyncLogRepository(client_id=CLIENT_ID).list_for(self.db, "order", order_id)

        self.assertEqual(entries[0]["action"], "create")
        update = [entry for entry in entries if entry["action"] == "update"][-1]
        self.assertEqual(update["origin"], "commerce")
        self.assertEqual(update["changed_fields"], ["customer_email"])
        self.assertEqual(update["before_state"], {"customer_email": "erika@example.org"})
        self.assertEqual(update["after_state"], {"customer_email": "new@example.org"})

    def test_fulfillment_event_for_unknown_order_fails(self) -> None:
        event = OrderChangeEvent(
            client_id=CLIENT_ID,
            channel_id=SHOPIFY_CHANNEL,
            external_order_id="404",
            source="ffn",
            fields={"fulfillment_state": "shipped"},
        )

        result = self.orchestrator.process(self.db, event)

        self.assertEqual(result.outcome, "failed")
        self.assertEqual(result.code, "order_not_found")

    def test_event_without_external_id_is_rejected(self) -> None:
        result = self.orchestrator.process(self.db, self.order_event(""))

        self.assertFalse(result.success)
        self.assertEqual(result.code, "payload_malformed")

    def test_stress_test_orders_are_not_sent_to_fulfillment(self) -> None:
        self.add_mapping("standard", self.dhl_id, client_id=CLIENT_ID)

        self.orchestrator.process(self.db, self.order_event(tags="k6, bulk"))

        self.assertEqual(self.jobs(ORDER_SYNC_TO_FFN), [])

    def test_tracking_update_queues_commerce_write_back(self) -> None:
        order_id = self._create_synced_ready_order()
        with self.db.transaction():
            self.db.execute("UPDATE orders SET outbound_id = 'OB-1' WHERE id = ?", (order_id,))

        result = self.orchestrator.apply_fulfillment_update(
            self.db,
            CLIENT_ID,
            order_id,
            {"fulfillment_state": "shipped", "tracking_number": "TRACK-1"},
        )

        self.assertEqual(result.outcome, "updated")
        self.assertEqual(sorted(result.changed_fields), ["fulfillment_state", "tracking_number"])
        self.assertEqual(len(self.jobs(ORDER_SYNC_TO_COMMERCE)), 1)
        self.assertEqual(self.order_row(order_id)["tracking_number"], "TRACK-1")

    def test_platform_edit_of_commerce_field_is_ignored(self) -> None:
        order_id = self._create_synced_ready_order()

        result = self.orchestrator.update_operational_fields(
            self.db, CLIENT_ID, order_id, {"customer_email": "ops@example.org"}, actor="ops"
        )

        self.assertEqual(result.outcome, "skipped_echo")
        self.assertEqual(self.order_row(order_id)["customer_email"], "erika@example.org")

    def test_cancel_before_outbound_is_local(self) -> None:
        order_id = self._create_synced_ready_order()

        result = self.orchestrator.cancel_order(self.db, CLIENT_ID, order_id, actor="ops", reason="customer request")

        self.assertEqual(result.outcome, "updated")
        order = self.order_row(order_id)
        self.assertEqual(order["is_cancelled"], 1)
        self.assertEqual(order["fulfillment_state"], "cancelled")
        self.assertEqual(self.jobs(ORDER_CANCEL_SYNC), [])

        again = self.orchestrator.cancel_order(self.db, CLIENT_ID, order_id, actor="ops")
        self.assertEqual(again.outcome, "skipped_echo")

    def test_cancel_after_outbound_queues_cancellation(self) -> None:
        order_id = self._create_synced_ready_order()
        with self.db.transaction():
            self.db.execute("UPDATE orders SET outbound_id = 'OB-9' WHERE id = ?", (order_id,))

        result = self.orchestrator.cancel_order(self.db, CLIENT_ID, order_id, actor="ops", reason="fraud")

        jobs = self.jobs(ORDER_CANCEL_SYNC)
        self.assertEqual(len(jobs), 1)
        self.assertEqual(jobs[0]["priority"], 2)
        self.assertEqual(jobs[0]["singleton_key"], f"order-cancel:{order_id}")
        self.assertEqual(result.jobs, [f"{ORDER_CANCEL_SYNC}:{jobs[0]['id']}"])
        self.assertEqual(self.order_row(order_id)["fulfillment_state"], "pending")

    def test_refunded_payment_cancels_the_order(self) -> None:
        order_id = self._create_synced_ready_order()

        self.orchestrator.process(self.db, self.order_event(payment_status="refunded"))

        order = self.order_row(order_id)
        self.assertEqual(order["is_cancelled"], 1)
        self.assertEqual(order["cancelled_by"], "commerce")

    def test_platform_cannot_edit_terminal_order(self) -> None:
        order_id = self._create_synced_ready_order()
        with self.db.transaction():
            self.db.execute("UPDATE orders SET fulfillment_state = 'delivered' WHERE id = ?", (order_id,))

        result = self.orchestrator.update_operational_fields(
            self.db, CLIENT_ID, order_id, {"warehouse_notes": "late"}, actor="ops"
        )

        self.assertEqual(result.outcome, "failed")
        self.assertEqual(result.code, "order_terminal")

    def test_release_hold_requires_shipping_method(self) -> None:
        result = self.orchestrator.process(self.db, self.order_event(shipping_code="pigeon"))
        order_id = int(result.entity_id)

        blocked = self.orchestrator.release_hold(self.db, CLIENT_ID, order_id, actor="ops")
        self.assertEqual(blocked.code, "shipping_method_unresolved")

        assigned = self.orchestrator.update_operational_fields(
            self.db, CLIENT_ID, order_id, {"shipping_method_id": self.dpd_id}, actor="ops"
        )
        self.assertEqual(assigned.jobs, [])

        released = self.orchestrator.release_hold(self.db, CLIENT_ID, order_id, actor="ops")

        self.assertEqual(released.outcome, "updated")
        self.assertEqual(self.order_row(order_id)["is_on_hold"], 0)
        self.assertEqual(len(self.jobs(ORDER_SYNC_TO_FFN)), 1)

    def test_replacement_order_copies_original(self) -> None:
        order_id = self._create_synced_ready_order()

        result = self.orchestrator.create_replacement_order(
            self.db,
            CLIENT_ID,
            order_id,
            [LineItem(sku="SKU-1", quantity=1)],
            actor="ops",
            reason="damaged in transit",
        )

        self.assertEqual(result.outcome, "created")
        replacement = self.order_row(result.entity_id)
        self.assertEqual(replacement["is_replacement"], 1)
        self.assertEqual(replacement["original_order_id"], order_id)
        self.assertIsNone(replacement["external_order_id"])
        self.assertEqual(replacement["order_number"], "#1001-R")
        self.assertEqual(replacement["shipping_method_id"], self.dhl_id)
        self.assertEqual(replacement["origin"], "platform")
        self.assertEqual(len(self.jobs(ORDER_SYNC_TO_FFN)), 2)

    def test_replacement_for_unknown_order_fails(self) -> None:
        result = self.orchestrator.create_replacement_order(self.db, CLIENT_ID, 999, actor="ops")

        self.assertEqual(result.outcome, "failed")
        self.assertEqual(result.code, "not_found")

    def test_process_many_keeps_going_after_failure(self) -> None:
        self.add_mapping("standard", self.dhl_id, client_id=CLIENT_ID)
        events = [self.order_event("A"), self.order_event(""), self.order_event("B")]

        results = self.orchestrator.process_many(self.db, events)

        self.assertEqual([result.outcome for result in results], ["created", "failed", "created"])
        self.assertEqual(len(self.jobs(ORDER_SYNC_TO_FFN)), 2)

    def test_orders_are_isolated_per_client(self) -> None:
        order_id = self._create_synced_ready_order()

        result = self.orchestrator.update_operational_fields(
            self.db, "client-b", order_id, {"warehouse_notes": "x"}, actor="ops"
        )

        self.assertEqual(result.outcome, "failed")
        self.assertEqual(result.code, "not_found")


class SyncOrchestratorProductReturnTest(SyncAppTestCase):
    sandbox_prefix = "sync_orchestrator_catalog"

    def test_product_from_commerce_is_queued_for_fulfillment(self) -> None:
        event = ProductChangeEvent(
            client_id=CLIENT_ID,
            sku="MUG-1",
            source="shopify",
            fields={"name": "Mug", "net_sales_price": 12.5, "weight": 3.0},
            channel_id=SHOPIFY_CHANNEL,
            external_id="gid-1",
        )

        result = self.engine.orchestrator.process(self.db, event)

        self.assertEqual(result.outcome, "created")
        product = self.db.execute("SELECT * FROM products WHERE id = ?", (result.entity_id,)).fetchone()
        self.assertEqual(product["net_sales_price"], 12.5)
        self.assertIsNone(product["weight"])
        self.assertEqual(len(self.jobs(PRODUCT_SYNC_TO_FFN)), 1)

    def test_stock_from_fulfillment_is_pushed_to_commerce(self) -> None:
        created = self.engine.orchestrator.process(
            self.db, ProductChangeEvent(client_id=CLIENT_ID, sku="MUG-1", source="platform", fields={"name": "Mug"})
        )

        result = self.engine.orchestrator.process(
            self.db,
            ProductChangeEvent(client_id=CLIENT_ID, sku="MUG-1", source="ffn", fields={"available_quantity": 40}),
        )

        self.assertEqual(result.outcome, "updated")
        self.assertEqual(result.entity_id, created.entity_id)
        self.assertEqual(len(self.jobs(PRODUCT_SYNC_TO_COMMERCE)), 1)
        self.assertEqual(len(self.jobs(PRODUCT_SYNC_TO_FFN)), 1)

    def test_commerce_stock_write_is_ignored(self) -> None:
        self.engine.orchestrator.process(
            self.db, ProductChangeEvent(client_id=CLIENT_ID, sku="MUG-1", source="shopify", fields={"name": "Mug"})
        )

        result = self.engine.orchestrator.process(
            self.db,
            ProductChangeEvent(client_id=CLIENT_ID, sku="MUG-1", source="shopify", fields={"available_quantity": 3}),
        )

        self.assertEqual(result.outcome, "skipped_echo")

    def test_identical_product_from_second_channel_is_linked(self) -> None:
        fields = {"name": "Mug", "net_sales_price": 12.5}
        first = self.engine.orchestrator.process(
            self.db,
            ProductChangeEvent(
                client_id=CLIENT_ID, sku="MUG-1", source="shopify", fields=fields, channel_id=SHOPIFY_CHANNEL, external_id="gid-1"
            ),
        )

        second = self.engine.orchestrator.process(
            self.db,
            ProductChangeEvent(
                client_id=CLIENT_ID, sku="MUG-1", source="woocommerce", fields=fields, channel_id=WOO_CHANNEL, external_id="77"
            ),
        )

        self.assertEqual(second.outcome, "skipped_echo")
        rows = self.db.execute(
            "SELECT channel_id, external_id FROM product_channel_links WHERE product_id = ? ORDER BY id",
            (first.entity_id,),
        ).fetchall()
        self.assertEqual([(row["channel_id"], row["external_id"]) for row in rows], [(SHOPIFY_CHANNEL, "gid-1"), (WOO_CHANNEL, "77")])
        self.assertEqual(len(self.jobs(PRODUCT_SYNC_TO_FFN)), 1)

    def _announce_return(self) -> int:
        event = ReturnChangeEvent(
            client_id=CLIENT_ID,
            channel_id=SHOPIFY_CHANNEL,
            external_return_id="R-1",
            source="shopify",
            fields={"reason": "too small", "restock_eligible": True},
            items=[LineItem(sku="SKU-1", quantity=1)],
        )
        result = self.engine.orchestrator.process(self.db, event)
        self.assertEqual(result.outcome, "created")
        return int(result.entity_id)

    def test_return_from_commerce_is_announced(self) -> None:
        return_id = self._announce_return()

        row = self.db.execute("SELECT * FROM returns WHERE id = ?", (return_id,)).fetchone()
        self.assertEqual(row["status"], "announced")
        self.assertEqual(row["reason"], "too small")
        self.assertEqual(row["restock_eligible"], 0)

    def test_platform_return_decisions_queue_followups(self) -> None:
        return_id = self._announce_return()

        result = self.engine.orchestrator.update_return_fields(
            self.db,
            CLIENT_ID,
            return_id,
            {"restock_eligible": True, "status": "checked"},
            actor="ops",
        )

        self.assertEqual(result.outcome, "updated")
        self.assertEqual(len(self.jobs(RETURN_RESTOCK_SYNC)), 1)
        self.assertEqual(len(self.jobs(RETURN_SYNC_TO_COMMERCE)), 1)


if __name__ == "__main__":
    unittest.main()
