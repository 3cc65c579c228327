import unittest

from fulfillsync.contexts.shipping.domain.resolution import (
    OUTCOME_RESOLVED,
    OUTCOME_RESOLVED_VIA_FALLBACK,
    OUTCOME_UNRESOLVED,
    SOURCE_CHANNEL,
    SOURCE_CHANNEL_DEFAULT,
    SOURCE_CLIENT,
    SOURCE_CLIENT_DEFAULT,
    SOURCE_GLOBAL,
)
from fulfillsync.errors import NotFoundError, ValidationError
from tests.helpers.app_case import CLIENT_ID, SHOPIFY_CHANNEL, SyncAppTestCase


class ShippingMethodResolverTest(SyncAppTestCase):
    sandbox_prefix = "shipping_resolver"

    def _resolve(self, code: str | None = "express", title: str | None = None):
        return self.engine.resolver.resolve(
            self.db,
            client_id=CLIENT_ID,
            channel_id=SHOPIFY_CHANNEL,
            channel_type="shopify",
            code=code,
            title=title,
        )

    def test_channel_mapping_beats_client_and_global(self) -> None:
        self.add_mapping("express", self.dpd_id)
        self.add_mapping("express", self.dpd_id, client_id=CLIENT_ID)
        self.add_mapping("express", self.dhl_id, client_id=CLIENT_ID, channel_id=SHOPIFY_CHANNEL)

        resolution = self._resolve("EXPRESS")

        self.assertTrue(resolution.success)
        self.assertEqual(resolution.shipping_method_id, self.dhl_id)
        self.assertEqual(resolution.source, SOURCE_CHANNEL)
        self.assertEqual(resolution.outcome, OUTCOME_RESOLVED)
        self.assertFalse(resolution.used_fallback)

    def test_client_mapping_beats_global(self) -> None:
        self.add_mapping("express", self.dpd_id)
        self.add_mapping("express", self.dhl_id, client_id=CLIENT_ID)

        resolution = self._resolve()

        self.assertEqual(resolution.shipping_method_id, self.dhl_id)
        self.assertEqual(resolution.source, SOURCE_CLIENT)

    def test_global_mapping_and_title_match(self) -> None:
        self.engine.resolver.upsert_mapping(
            self.db,
            channel_type="shopify",
            channel_shipping_code="dhl_paket",
            channel_shipping_title="DHL Paket Standard",
            shipping_method_id=self.dhl_id,
        )

        resolution = self._resolve(code=None, title="paket")

        self.assertEqual(resolution.shipping_method_id, self.dhl_id)
        self.assertEqual(resolution.source, SOURCE_GLOBAL)

    def test_mapping_for_another_channel_type_is_ignored(self) -> None:
        self.add_mapping("express", self.dhl_id, channel_type="woocommerce")

        resolution = self._resolve()

        self.assertFalse(resolution.success)

    def test_channel_default_then_client_default(self) -> None:
        self.set_client_default(self.dpd_id)
        resolution = self._resolve("unknown")
        self.assertEqual(resolution.shipping_method_id, self.dpd_id)
        self.assertEqual(resolution.source, SOURCE_CLIENT_DEFAULT)
        self.assertEqual(resolution.outcome, OUTCOME_RESOLVED_VIA_FALLBACK)
        self.assertTrue(resolution.used_fallback)
        self.assertFalse(resolution.should_hold_order)
        self.assertFalse(resolution.mismatch)

        self.set_channel_default(SHOPIFY_CHANNEL, self.dhl_id)
        resolution = self._resolve("unknown")
        self.assertEqual(resolution.shipping_method_id, self.dhl_id)
        self.assertEqual(resolution.source, SOURCE_CHANNEL_DEFAULT)

    def test_no_mapping_and_no_default_asks_for_a_hold(self) -> None:
        resolution = self._resolve("pigeon", "Carrier Pigeon")

        self.assertFalse(resolution.success)
        self.assertTrue(resolution.should_hold_order)
        self.assertTrue(resolution.mismatch)
        self.assertFalse(resolution.used_fallback)
        self.assertEqual(resolution.outcome, OUTCOME_UNRESOLVED)
        self.assertIn("Carrier Pigeon", resolution.reason)

    def test_inactive_method_is_not_used(self) -> None:
        self.add_mapping("express", self.dhl_id)
        with self.db.transaction():
            self.db.execute("UPDATE shipping_methods SET is_active = 0 WHERE id = ?", (self.dhl_id,))

        self.assertFalse(self._resolve().success)

    def test_mismatch_is_recorded_once_per_order_and_resolvable(self) -> None:
        resolver = self.engine.resolver
        with self.db.transaction():
            first_id, created = resolver.record_mismatch(
                self.db, client_id=CLIENT_ID, order_id=5, channel_id=SHOPIFY_CHANNEL, code="pigeon", title=None
            )
            second_id, created_again = resolver.record_mismatch(
                self.db, client_id=CLIENT_ID, order_id=5, channel_id=SHOPIFY_CHANNEL, code="pigeon", title=None
            )
        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(first_id, second_id)
        self.assertEqual(len(resolver.unresolved_mismatches(self.db, CLIENT_ID)), 1)

        resolved = resolver.resolve_mismatch(self.db, first_id, resolved_by="ops", shipping_method_id=self.dhl_id)

        self.assertTrue(resolved["is_resolved"])
        self.assertEqual(resolved["resolved_method_id"], self.dhl_id)
        self.assertEqual(resolver.unresolved_mismatches(self.db, CLIENT_ID), [])

    def test_resolve_unknown_mismatch_raises(self) -> None:
        with self.assertRaises(NotFoundError):
            self.engine.resolver.resolve_mismatch(self.db, 999, resolved_by="ops")

    def test_upsert_mapping_updates_existing_row(self) -> None:
        first = self.add_mapping("Express", self.dpd_id)
        second = self.add_mapping("express", self.dhl_id)

        self.assertEqual(first, second)
        self.assertEqual(self._resolve().shipping_method_id, self.dhl_id)

    def test_upsert_mapping_validates_input(self) -> None:
        with self.assertRaises(ValidationError):
            self.add_mapping("", self.dhl_id)
        with self.assertRaises(ValidationError):
            self.add_mapping("express", 4242)


if __name__ == "__main__":
    unittest.main()
