import unittest

from fulfillsync.contexts.sync.domain.events import Address, LineItem, Origin
from fulfillsync.contexts.sync.domain.ownership import (
    OWNER_COMMERCE,
    OWNER_PLATFORM,
    OWNER_SHARED,
    FieldOwnershipPolicy,
    normalize_value,
)


class FieldOwnershipPolicyTest(unittest.TestCase):
    def setUp(self) -> None:
        self.policy = FieldOwnershipPolicy()

    def test_commerce_cannot_write_platform_controls(self) -> None:
        writable, rejected = self.policy.filter_writable(
            "order",
            "shopify",
            {"payment_status": "paid", "is_on_hold": False, "shipping_method_id": 7, "tracking_number": "T1"},
        )

        self.assertEqual(writable, {"payment_status": "paid"})
        self.assertEqual(rejected, ["is_on_hold", "shipping_method_id", "tracking_number"])

    def test_platform_cannot_overwrite_commercial_data(self) -> None:
        self.assertFalse(self.policy.can_write("order", Origin.PLATFORM, "customer_email"))
        self.assertTrue(self.policy.can_write("order", Origin.PLATFORM, "warehouse_notes"))
        self.assertTrue(self.policy.can_write("order", Origin.PLATFORM, "tracking_number"))

    def test_fulfillment_writes_progress_but_not_controls(self) -> None:
        self.assertTrue(self.policy.can_write("order", "ffn", "fulfillment_state"))
        self.assertTrue(self.policy.can_write("order", "warehouse", "tracking_url"))
        self.assertFalse(self.policy.can_write("order", "ffn", "is_on_hold"))
        self.assertFalse(self.policy.can_write("order", "ffn", "total"))

    def test_product_field_groups(self) -> None:
        self.assertEqual(self.policy.owner_of("product", "net_sales_price"), OWNER_COMMERCE)
        self.assertEqual(self.policy.owner_of("product", "weight"), OWNER_PLATFORM)
        self.assertEqual(self.policy.owner_of("product", "name"), OWNER_SHARED)
        self.assertIsNone(self.policy.owner_of("product", "unknown_column"))

        self.assertTrue(self.policy.can_write("product", "ffn", "available_quantity"))
        self.assertFalse(self.policy.can_write("product", "shopify", "available_quantity"))
        self.assertFalse(self.policy.can_write("product", "platform", "available_quantity"))
        for origin in Origin:
            self.assertTrue(self.policy.can_write("product", origin, "description"))

    def test_return_groups(self) -> None:
        self.assertTrue(self.policy.can_write("return", "woocommerce", "reason"))
        self.assertFalse(self.policy.can_write("return", "woocommerce", "restock_eligible"))
        self.assertTrue(self.policy.can_write("return", "platform", "refund_amount"))

    def test_diff_ignores_equal_values_in_other_representations(self) -> None:
        stored = {
            "total": 29.9,
            "currency": "EUR",
            "shipping_address": Address(city="Berlin", country="DE", zip="10115"),
            "tags": "vip",
        }
        incoming = {
            "total": 29.90,
            "currency": " EUR ",
            "shipping_address": Address.from_dict({"city": "Berlin", "country": "de", "zip": "10115"}),
            "tags": "vip",
            "is_on_hold": True,
        }

        self.assertTrue(self.policy.is_echo("order", "shopify", stored, incoming))

    def test_diff_reports_before_and_after(self) -> None:
        diff = self.policy.diff("order", "shopify", {"payment_status": "pending"}, {"payment_status": "paid"})

        self.assertEqual(diff.changed_fields, ["payment_status"])
        self.assertEqual(diff.before(), {"payment_status": "pending"})
        self.assertEqual(diff.after(), {"payment_status": "paid"})
        self.assertTrue(diff.touches("payment_status", "total"))

    def test_line_items_compare_by_sku_quantity_and_price(self) -> None:
        stored = {"items": [LineItem(sku="A", quantity=1, unit_price=5.0, external_line_id="x")]}
        same = {"items": [LineItem(sku="A", quantity=1, unit_price=5.0, external_line_id="y")]}
        changed = {"items": [LineItem(sku="A", quantity=2, unit_price=5.0)]}

        self.assertTrue(self.policy.is_echo("order", "shopify", stored, same))
        self.assertFalse(self.policy.is_echo("order", "shopify", stored, changed))

    def test_normalize_value_treats_blank_strings_as_missing(self) -> None:
        self.assertIsNone(normalize_value("   "))
        self.assertIsNone(normalize_value(Address()))
        self.assertEqual(normalize_value(True), 1)

    def test_unknown_entity_type_is_an_error(self) -> None:
        with self.assertRaises(ValueError):
            self.policy.can_write("invoice", "shopify", "total")

    def test_unknown_source_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            Origin.from_source("ebay")


if __name__ == "__main__":
    unittest.main()
