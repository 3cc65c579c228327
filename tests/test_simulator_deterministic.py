import unittest
from datetime import datetime, timedelta, timezone

from fulfillsync.contexts.fulfillment.domain.contracts import (
    OutboundItemV1,
    OutboundRequestV1,
    ProductRequestV1,
    ShipToV1,
)
from fulfillsync.contexts.fulfillment.domain.gateway import FulfillmentGatewayError
from fulfillsync.contexts.fulfillment.infrastructure.simulator import DeterministicFulfillmentSimulator
from fulfillsync.core.clock import iso_utc


def _request(number: str = "17", quantity: int = 1, country: str = "DE") -> OutboundRequestV1:
    return OutboundRequestV1(
        merchant_outbound_number=number,
        ship_to=ShipToV1(name="Erika Muster", street="Hauptstrasse 5", city="Berlin", zip="10115", country_code=country),
        items=[OutboundItemV1(merchant_sku="SKU-1", quantity=quantity)],
        shipping_method_id="FFN-DHL-PAKET",
    )


class _StepClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 10, 1, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class DeterministicSimulatorTest(unittest.TestCase):
    def test_same_seed_gives_same_outbound_ids(self) -> None:
        first = DeterministicFulfillmentSimulator(seed=7).create_outbound(_request())
        second = DeterministicFulfillmentSimulator(seed=7).create_outbound(_request())
        other = DeterministicFulfillmentSimulator(seed=8).create_outbound(_request())

        self.assertEqual(first.outbound_id, second.outbound_id)
        self.assertNotEqual(first.outbound_id, other.outbound_id)
        self.assertRegex(first.outbound_id, r"^SIM-OB-[0-9A-F]{10}$")

    def test_create_is_idempotent_by_merchant_number(self) -> None:
        simulator = DeterministicFulfillmentSimulator()

        first = simulator.create_outbound(_request())
        again = simulator.create_outbound(_request())

        self.assertEqual(first.outbound_id, again.outbound_id)
        self.assertEqual(simulator.find_outbound("17").outbound_id, first.outbound_id)
        self.assertIsNone(simulator.find_outbound("18"))

    def test_invalid_outbound_is_rejected_definitively(self) -> None:
        simulator = DeterministicFulfillmentSimulator()

        with self.assertRaises(FulfillmentGatewayError) as bad_items:
            simulator.create_outbound(_request(quantity=0))
        with self.assertRaises(FulfillmentGatewayError) as bad_address:
            simulator.create_outbound(_request(number="18", country=""))

        self.assertTrue(bad_items.exception.definitive)
        self.assertTrue(bad_address.exception.definitive)

    def test_fail_next_raises_queued_failures_in_order(self) -> None:
        simulator = DeterministicFulfillmentSimulator()
        simulator.fail_next(1)
        simulator.fail_next(1, definitive=True, message="FFN HTTP 400: rejected")

        with self.assertRaises(FulfillmentGatewayError) as transient:
            simulator.create_outbound(_request())
        with self.assertRaises(FulfillmentGatewayError) as definitive:
            simulator.create_outbound(_request())
        created = simulator.create_outbound(_request())

        self.assertFalse(transient.exception.definitive)
        self.assertTrue(definitive.exception.definitive)
        self.assertTrue(created.outbound_id)
        self.assertEqual(simulator.calls, ["create_outbound"] * 3)

    def test_updates_are_filtered_by_window(self) -> None:
        clock = _StepClock()
        simulator = DeterministicFulfillmentSimulator(clock=clock)
        simulator.create_outbound(_request())
        clock.now += timedelta(hours=1)
        simulator.advance("17", "picked")
        clock.now += timedelta(hours=1)
        simulator.advance("17", "SHIPPED", tracking_number="T-1")

        updates = simulator.outbound_updates(iso_utc(clock.now - timedelta(minutes=30)))
        everything = simulator.outbound_updates(iso_utc(clock.now - timedelta(days=1)), iso_utc(clock.now))

        self.assertEqual([update.status for update in updates], ["SHIPPED"])
        self.assertEqual(updates[0].tracking_number, "T-1")
        self.assertEqual(updates[0].shipped_at, iso_utc(clock.now))
        self.assertEqual([update.status for update in everything], ["PICKED", "SHIPPED"])

    def test_cancel_rules(self) -> None:
        simulator = DeterministicFulfillmentSimulator()
        open_outbound = simulator.create_outbound(_request("1"))
        shipped_outbound = simulator.create_outbound(_request("2"))
        simulator.advance("2", "SHIPPED")

        simulator.cancel_outbound(open_outbound.outbound_id)
        simulator.cancel_outbound(open_outbound.outbound_id)

        self.assertEqual(simulator.outbound("1")["status"], "CANCELLED")
        with self.assertRaises(FulfillmentGatewayError):
            simulator.cancel_outbound(shipped_outbound.outbound_id)
        with self.assertRaises(FulfillmentGatewayError):
            simulator.cancel_outbound("SIM-OB-MISSING")

    def test_advance_unknown_outbound_raises(self) -> None:
        with self.assertRaises(KeyError):
            DeterministicFulfillmentSimulator().advance("404", "SHIPPED")

    def test_products_and_shipping_methods(self) -> None:
        simulator = DeterministicFulfillmentSimulator()

        product = simulator.upsert_product(ProductRequestV1(merchant_sku="MUG-1", name="Mug"))
        again = simulator.upsert_product(ProductRequestV1(merchant_sku="MUG-1", name="Mug v2"))

        self.assertEqual(product.fulfillment_product_id, again.fulfillment_product_id)
        self.assertEqual(len(simulator.shipping_methods()), 4)
        with self.assertRaises(FulfillmentGatewayError):
            simulator.upsert_product(ProductRequestV1(merchant_sku="", name="Nameless"))


if __name__ == "__main__":
    unittest.main()
