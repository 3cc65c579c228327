from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Mapping

from fulfillsync.contexts.sync.domain.events import Address, LineItem
from fulfillsync.contexts.sync.domain.ownership import ORDER_COMMERCE_FIELDS, ORDER_OPERATIONAL_FIELDS
from fulfillsync.core.clock import iso_utc
from fulfillsync.infrastructure.repositories.base import BaseRepository


ADDRESS_COLUMNS = ("shipping_address", "billing_address", "original_shipping_address")

ORDER_COLUMNS = frozenset(
    (ORDER_COMMERCE_FIELDS - {"items"})
    | ORDER_OPERATIONAL_FIELDS
    | {
        "channel_id",
        "external_order_id",
        "origin",
        "is_replacement",
        "original_order_id",
        "outbound_id",
        "sync_status",
        "last_synced_at",
        "last_error",
        "updated_at",
    }
)


def order_to_row(values: Mapping[str, Any]) -> Dict[str, Any]:
    row = dict(values)
    for column in ADDRESS_COLUMNS:
        if column in row and isinstance(row[column], Address):
            row[column] = None if row[column].is_empty() else row[column].to_json()
    for column, value in list(row.items()):
        if isinstance(value, bool):
            row[column] = 1 if value else 0
    return row


def order_from_row(row) -> Dict[str, Any]:
    data = dict(row)
    for column in ADDRESS_COLUMNS:
        if column in data:
            data[column] = Address.from_json(data[column])
    return data


class OrderRepository(BaseRepository):
    table = "orders"
    columns = ORDER_COLUMNS

    def get(self, db, order_id: int) -> dict | None:
        row = db.execute(
            "SELECT * FROM orders WHERE id = ? AND client_id = ? LIMIT 1",
            self.scoped_params((int(order_id),)),
        ).fetchone()
        return order_from_row(row) if row else None

    def get_by_external(self, db, channel_id: str | None, external_order_id: str) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM orders
            WHERE COALESCE(channel_id, '') = ? AND external_order_id = ? AND client_id = ?
            LIMIT 1
            """,
            self.scoped_params((channel_id or "", external_order_id)),
        ).fetchone()
        return order_from_row(row) if row else None

    def get_by_outbound(self, db, outbound_id: str) -> dict | None:
        row = db.execute(
            "SELECT * FROM orders WHERE outbound_id = ? AND client_id = ? LIMIT 1",
            self.scoped_params((outbound_id,)),
        ).fetchone()
        return order_from_row(row) if row else None

    def insert(self, db, values: Mapping[str, Any]) -> int | None:
        """Returns ``None`` when another writer already created the same external order."""
        return self.insert_row(db, order_to_row(values), conflict_columns=("channel_id", "external_order_id"))

    def update(self, db, order_id: int, values: Mapping[str, Any]) -> None:
        if not values:
            return
        payload = order_to_row(values)
        payload["updated_at"] = iso_utc()
        clause, params = self.assignments(payload)
        db.execute(
            f"UPDATE orders SET {clause} WHERE id = ? AND client_id = ?",
            self.scoped_params((*params, int(order_id))),
        )

    def set_outbound_id(self, db, order_id: int, outbound_id: str) -> bool:
        """Store the outbound id unless one is already set."""
        now = iso_utc()
        cursor = db.execute(
            """
            UPDATE orders
            SET outbound_id = ?, sync_status = 'synced', fulfillment_state = 'awaiting_stock',
                last_synced_at = ?, last_error = NULL, updated_at = ?
            WHERE id = ? AND client_id = ? AND outbound_id IS NULL
            """,
            (outbound_id, now, now, int(order_id), self.client_id),
        )
        return int(getattr(cursor, "rowcount", 0) or 0) > 0

    def items(self, db, order_id: int) -> List[LineItem]:
        rows = db.execute(
            """
            SELECT sku, quantity, name, unit_price, external_line_id
            FROM order_items
            WHERE order_id = ? AND client_id = ?
            ORDER BY id
            """,
            self.scoped_params((int(order_id),)),
        ).fetchall()
        return [LineItem.from_dict(dict(row)) for row in rows]

    def item_rows(self, db, order_id: int) -> List[dict]:
        rows = db.execute(
            "SELECT * FROM order_items WHERE order_id = ? AND client_id = ? ORDER BY id",
            self.scoped_params((int(order_id),)),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def replace_items(
        self,
        db,
        order_id: int,
        items: Iterable[LineItem],
        product_id_for: Callable[[str], int | None],
    ) -> None:
        db.execute(
            "DELETE FROM order_items WHERE order_id = ? AND client_id = ?",
            self.scoped_params((int(order_id),)),
        )
        for item in items:
            db.execute(
                """
                INSERT INTO order_items (client_id, order_id, sku, product_id, name, quantity, unit_price, external_line_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    self.client_id,
                    int(order_id),
                    item.sku,
                    product_id_for(item.sku),
                    item.name,
                    int(item.quantity),
                    item.unit_price,
                    item.external_line_id,
                ),
            )

    def list_with_outbound(self, db, *, include_terminal: bool = False) -> List[dict]:
        terminal_clause = "" if include_terminal else "AND fulfillment_state NOT IN ('delivered', 'cancelled', 'returned_to_sender')"
        rows = db.execute(
            f"""
            SELECT *
            FROM orders
            WHERE client_id = ? AND outbound_id IS NOT NULL {terminal_clause}
            ORDER BY id
            """,
            (self.client_id,),
        ).fetchall()
        return [order_from_row(row) for row in rows]
