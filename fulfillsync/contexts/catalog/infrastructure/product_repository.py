from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping

from fulfillsync.contexts.catalog.domain.products import ProductRef
from fulfillsync.contexts.sync.domain.ownership import (
    PRODUCT_COMMERCE_FIELDS,
    PRODUCT_OPS_FIELDS,
    PRODUCT_SHARED_FIELDS,
    PRODUCT_STOCK_FIELDS,
)
from fulfillsync.core.clock import iso_utc
from fulfillsync.infrastructure.repositories.base import BaseRepository


PRODUCT_COLUMNS = frozenset(
    PRODUCT_COMMERCE_FIELDS
    | PRODUCT_OPS_FIELDS
    | PRODUCT_STOCK_FIELDS
    | PRODUCT_SHARED_FIELDS
    | {"sku", "origin", "fulfillment_product_id", "updated_at"}
)


class ProductRepository(BaseRepository):
    table = "products"
    columns = PRODUCT_COLUMNS

    def get(self, db, product_id: int) -> dict | None:
        row = db.execute(
            "SELECT * FROM products WHERE id = ? AND client_id = ? LIMIT 1",
            self.scoped_params((int(product_id),)),
        ).fetchone()
        return dict(row) if row else None

    def get_by_sku(self, db, sku: str) -> dict | None:
        row = db.execute(
            "SELECT * FROM products WHERE sku = ? AND client_id = ? LIMIT 1",
            self.scoped_params((sku,)),
        ).fetchone()
        return dict(row) if row else None

    def list_refs(self, db) -> List[ProductRef]:
        rows = db.execute(
            """
            SELECT id, sku, fulfillment_product_id, name
            FROM products
            WHERE client_id = ?
            ORDER BY id
            """,
            (self.client_id,),
        ).fetchall()
        return [
            ProductRef(
                id=int(row["id"]),
                sku=str(row["sku"]),
                fulfillment_product_id=row["fulfillment_product_id"],
                name=row["name"],
            )
            for row in rows
        ]

    def fetch_by_skus(self, db, skus: Iterable[str]) -> Dict[str, dict]:
        keys = sorted({str(sku) for sku in skus if sku})
        if not keys:
            return {}
        placeholders = ", ".join("?" for _ in keys)
        rows = db.execute(
            f"""
            SELECT *
            FROM products
            WHERE sku IN ({placeholders}) AND client_id = ?
            """,
            self.scoped_params(keys),
        ).fetchall()
        return {str(row["sku"]): dict(row) for row in rows}

    def insert(self, db, values: Mapping[str, Any]) -> int | None:
        return self.insert_row(db, values, conflict_columns=("client_id", "sku"))

    def update(self, db, product_id: int, values: Mapping[str, Any]) -> None:
        if not values:
            return
        payload = dict(values)
        payload["updated_at"] = iso_utc()
        clause, params = self.assignments(payload)
        db.execute(
            f"UPDATE products SET {clause} WHERE id = ? AND client_id = ?",
            self.scoped_params((*params, int(product_id))),
        )

    def set_fulfillment_id(self, db, product_id: int, fulfillment_product_id: str) -> None:
        db.execute(
            """
            UPDATE products
            SET fulfillment_product_id = ?, updated_at = ?
            WHERE id = ? AND client_id = ?
            """,
            self.scoped_params((fulfillment_product_id, iso_utc(), int(product_id))),
        )

    def increment_stock(self, db, product_id: int, quantity: int) -> None:
        db.execute(
            """
            UPDATE products
            SET available_quantity = available_quantity + ?, updated_at = ?
            WHERE id = ? AND client_id = ?
            """,
            self.scoped_params((int(quantity), iso_utc(), int(product_id))),
        )

    def link_channel(self, db, product_id: int, channel_id: str, external_id: str) -> None:
        db.execute(
            """
            INSERT INTO product_channel_links (client_id, product_id, channel_id, external_id)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (channel_id, external_id) DO NOTHING
            """,
            (self.client_id, int(product_id), channel_id, external_id),
        )

    def channel_links(self, db, product_id: int) -> List[dict]:
        rows = db.execute(
            """
            SELECT channel_id, external_id
            FROM product_channel_links
            WHERE product_id = ? AND client_id = ?
            ORDER BY id
            """,
            self.scoped_params((int(product_id),)),
        ).fetchall()
        return self.rows_to_dicts(rows)
