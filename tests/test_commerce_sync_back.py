import logging
import unittest

from fulfillsync.contexts.commerce.domain.gateway import LoggingCommerceGateway
from fulfillsync.contexts.sync.domain.events import ProductChangeEvent
from fulfillsync.engine import build_commerce_gateway
from fulfillsync.errors import NotFoundError
from tests.helpers.app_case import CLIENT_ID, SHOPIFY_CHANNEL, WOO_CHANNEL, SyncAppTestCase


class CommerceSyncBackTest(SyncAppTestCase):
    sandbox_prefix = "commerce_sync_back"

    def setUp(self) -> None:
        super().setUp()
        self.sync_back = self.engine.sync_back
        self.gateway = self.engine.commerce_gateway
        self.add_mapping("standard", self.dhl_id, client_id=CLIENT_ID)

    def test_order_status_is_pushed_to_its_channel(self) -> None:
        order_id = int(self.engine.orchestrator.process(self.db, self.order_event()).entity_id)
        with self.db.transaction():
            self.db.execute(
                "UPDATE orders SET fulfillment_state = 'shipped', tracking_number = 'T-1' WHERE id = ?", (order_id,)
            )

        result = self.sync_back.push_order(self.db, CLIENT_ID, order_id)

        self.assertEqual(result, {"pushed": True, "channel_id": SHOPIFY_CHANNEL})
        call = self.gateway.calls[-1]
        self.assertEqual(call["event"], "commerce_order_status_pushed")
        self.assertEqual(call["external_order_id"], "1001")
        self.assertEqual(call["fulfillment_state"], "shipped")
        self.assertEqual(call["tracking_number"], "T-1")

    def test_replacement_order_is_not_pushed(self) -> None:
        order_id = int(self.engine.orchestrator.process(self.db, self.order_event()).entity_id)
        replacement = self.engine.orchestrator.create_replacement_order(self.db, CLIENT_ID, order_id, actor="ops")

        result = self.sync_back.push_order(self.db, CLIENT_ID, int(replacement.entity_id))

        self.assertEqual(result, {"pushed": False})
        self.assertEqual(self.gateway.calls, [])

    def test_inactive_channel_is_skipped(self) -> None:
        order_id = int(self.engine.orchestrator.process(self.db, self.order_event()).entity_id)
        with self.db.transaction():
            self.db.execute("UPDATE channels SET is_active = 0 WHERE id = ?", (SHOPIFY_CHANNEL,))

        self.assertEqual(self.sync_back.push_order(self.db, CLIENT_ID, order_id), {"pushed": False})

    def test_unknown_records_raise(self) -> None:
        with self.assertRaises(NotFoundError):
            self.sync_back.push_order(self.db, CLIENT_ID, 404)
        with self.assertRaises(NotFoundError):
            self.sync_back.push_return(self.db, CLIENT_ID, 404)
        with self.assertRaises(NotFoundError):
            self.sync_back.push_stock(self.db, CLIENT_ID, 404)

    def test_stock_is_pushed_to_every_linked_channel(self) -> None:
        for channel_id, external_id in ((SHOPIFY_CHANNEL, "p-1"), (WOO_CHANNEL, "w-1")):
            created = self.engine.orchestrator.process(
                self.db,
                ProductChangeEvent(
                    client_id=CLIENT_ID,
                    sku="MUG-1",
                    source="shopify" if channel_id == SHOPIFY_CHANNEL else "woocommerce",
                    fields={"name": f"Mug {external_id}"},
                    channel_id=channel_id,
                    external_id=external_id,
                ),
            )
        product_id = int(created.entity_id)
        self.engine.orchestrator.process(
            self.db,
            ProductChangeEvent(client_id=CLIENT_ID, sku="MUG-1", source="ffn", fields={"available_quantity": 7}),
        )

        result = self.sync_back.push_stock(self.db, CLIENT_ID, product_id)

        self.assertEqual(result, {"pushed": 2})
        self.assertEqual(
            [(call["external_id"], call["quantity"]) for call in self.gateway.calls], [("p-1", 7), ("w-1", 7)]
        )


class CommerceGatewayConfigTest(unittest.TestCase):
    def test_logging_gateway_is_the_default(self) -> None:
        self.assertIsInstance(build_commerce_gateway({}), LoggingCommerceGateway)

    def test_unknown_mode_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            build_commerce_gateway({"COMMERCE_MODE": "carrier-pigeon"})

    def test_calls_are_logged(self) -> None:
        gateway = LoggingCommerceGateway(logging.getLogger("fulfillsync.commerce"))

        with self.assertLogs("fulfillsync.commerce", level="INFO") as captured:
            gateway.push_stock({"id": "shop-a", "channel_type": "shopify"}, "p-1", "MUG-1", 3)

        self.assertIn("commerce_stock_pushed", captured.output[0])
        self.assertEqual(gateway.calls[0]["quantity"], 3)


if __name__ == "__main__":
    unittest.main()
