from __future__ import annotations

import unittest

from fulfillsync import create_app
from fulfillsync.config import Config
from fulfillsync.contexts.sync.domain.events import Address, LineItem, OrderChangeEvent
from fulfillsync.contexts.shipping.infrastructure.repository import ShippingRepository
from fulfillsync.db import close_db, get_db
from fulfillsync.engine import get_engine
from fulfillsync.observability import reset_metrics_for_tests
from tests.helpers.temp_db import TempDbSandbox


CLIENT_ID = "client-a"
SHOPIFY_CHANNEL = "shop-a"
WOO_CHANNEL = "woo-a"


class SyncAppTestCase(unittest.TestCase):
    """Temp SQLite app with one client, a Shopify and a WooCommerce channel."""

    sandbox_prefix = "fulfillsync_tests"
    config_overrides: dict = {}

    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix=self.sandbox_prefix)
        TempConfig = self._temp_db.make_config(
            Config,
            TESTING=True,
            CHANNEL_SECRETS={SHOPIFY_CHANNEL: "shop-secret", WOO_CHANNEL: "woo-secret"},
            **self.config_overrides,
        )
        self.app = create_app(TempConfig)
        self.engine = get_engine(self.app)
        self._ctx = self.app.app_context()
        self._ctx.push()
        self.db = get_db()
        reset_metrics_for_tests()
        self.shipping = ShippingRepository()
        with self.db.transaction():
            self.db.execute("INSERT INTO clients (id, name) VALUES (?, ?)", (CLIENT_ID, "Client A"))
            self.db.execute(
                "INSERT INTO channels (id, client_id, channel_type, name) VALUES (?, ?, ?, ?)",
                (SHOPIFY_CHANNEL, CLIENT_ID, "shopify", "Shop A"),
            )
            self.db.execute(
                "INSERT INTO channels (id, client_id, channel_type, name) VALUES (?, ?, ?, ?)",
                (WOO_CHANNEL, CLIENT_ID, "woocommerce", "Woo A"),
            )
            self.dhl_id, _created = self.shipping.upsert_method(
                self.db, external_id="FFN-DHL-PAKET", name="DHL Paket", carrier_code="DHL"
            )
            self.dpd_id, _created = self.shipping.upsert_method(
                self.db, external_id="FFN-DPD-CLASSIC", name="DPD Classic", carrier_code="DPD"
            )

    def tearDown(self) -> None:
        self.engine.stop(timeout=1.0)
        close_db()
        self._ctx.pop()
        self._temp_db.cleanup()
        reset_metrics_for_tests()

    # -- fixtures ---------------------------------------------------------

    def add_mapping(self, code: str, method_id: int, *, channel_type: str = "shopify", client_id=None, channel_id=None) -> int:
        return self.engine.resolver.upsert_mapping(
            self.db,
            channel_type=channel_type,
            channel_shipping_code=code,
            shipping_method_id=method_id,
            client_id=client_id,
            channel_id=channel_id,
        )

    def set_client_default(self, method_id: int | None) -> None:
        with self.db.transaction():
            self.db.execute("UPDATE clients SET default_shipping_method_id = ? WHERE id = ?", (method_id, CLIENT_ID))

    def set_channel_default(self, channel_id: str, method_id: int | None) -> None:
        with self.db.transaction():
            self.db.execute("UPDATE channels SET default_shipping_method_id = ? WHERE id = ?", (method_id, channel_id))

    def order_event(
        self,
        external_id: str = "1001",
        *,
        channel_id: str = SHOPIFY_CHANNEL,
        source: str = "shopify",
        payment_status: str = "paid",
        shipping_code: str | None = "standard",
        items: list | None = None,
        **fields,
    ) -> OrderChangeEvent:
        values = {
            "order_number": f"#{external_id}",
            "currency": "EUR",
            "total": 29.9,
            "payment_status": payment_status,
            "customer_name": "Erika Muster",
            "customer_email": "erika@example.org",
            "shipping_address": Address(
                first_name="Erika",
                last_name="Muster",
                street="Hauptstrasse",
                house_number="5",
                city="Berlin",
                zip="10115",
                country="de",
            ),
            "shipping_method_code": shipping_code,
            "shipping_method_title": shipping_code.title() if shipping_code else None,
        }
        values.update(fields)
        return OrderChangeEvent(
            client_id=CLIENT_ID,
            channel_id=channel_id,
            external_order_id=external_id,
            source=source,
            fields={key: value for key, value in values.items() if value is not None},
            items=items if items is not None else [LineItem(sku="SKU-1", quantity=2, name="Mug", unit_price=9.95)],
        )

    def order_row(self, order_id: int) -> dict:
        row = self.db.execute("SELECT * FROM orders WHERE id = ?", (int(order_id),)).fetchone()
        return dict(row) if row else {}

    def jobs(self, queue_name: str | None = None) -> list[dict]:
        if queue_name:
            rows = self.db.execute(
                "SELECT * FROM sync_jobs WHERE queue_name = ? ORDER BY id", (queue_name,)
            ).fetchall()
        else:
            rows = self.db.execute("SELECT * FROM sync_jobs ORDER BY id").fetchall()
        return [dict(row) for row in rows]
