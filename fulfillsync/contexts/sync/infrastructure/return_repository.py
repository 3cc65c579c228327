from __future__ import annotations

from typing import Any, Callable, Iterable, List, Mapping

from fulfillsync.contexts.sync.domain.events import LineItem
from fulfillsync.contexts.sync.domain.ownership import RETURN_COMMERCE_FIELDS, RETURN_PLATFORM_FIELDS
from fulfillsync.core.clock import iso_utc
from fulfillsync.infrastructure.repositories.base import BaseRepository


RETURN_COLUMNS = frozenset(
    RETURN_COMMERCE_FIELDS
    | RETURN_PLATFORM_FIELDS
    | {"channel_id", "external_return_id", "external_order_id", "order_id", "origin", "updated_at"}
)


class ReturnRepository(BaseRepository):
    table = "returns"
    columns = RETURN_COLUMNS

    def get(self, db, return_id: int) -> dict | None:
        row = db.execute(
            "SELECT * FROM returns WHERE id = ? AND client_id = ? LIMIT 1",
            self.scoped_params((int(return_id),)),
        ).fetchone()
        return dict(row) if row else None

    def get_by_external(self, db, channel_id: str | None, external_return_id: str) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM returns
            WHERE COALESCE(channel_id, '') = ? AND external_return_id = ? AND client_id = ?
            LIMIT 1
            """,
            self.scoped_params((channel_id or "", external_return_id)),
        ).fetchone()
        return dict(row) if row else None

    def insert(self, db, values: Mapping[str, Any]) -> int | None:
        return self.insert_row(db, _to_row(values), conflict_columns=("channel_id", "external_return_id"))

    def update(self, db, return_id: int, values: Mapping[str, Any]) -> None:
        if not values:
            return
        payload = _to_row(values)
        payload["updated_at"] = iso_utc()
        clause, params = self.assignments(payload)
        db.execute(
            f"UPDATE returns SET {clause} WHERE id = ? AND client_id = ?",
            self.scoped_params((*params, int(return_id))),
        )

    def mark_restocked(self, db, return_id: int, status: str) -> bool:
        now = iso_utc()
        cursor = db.execute(
            """
            UPDATE returns
            SET restocked_at = ?, status = ?, updated_at = ?
            WHERE id = ? AND client_id = ? AND restocked_at IS NULL
            """,
            (now, status, now, int(return_id), self.client_id),
        )
        return int(getattr(cursor, "rowcount", 0) or 0) > 0

    def items(self, db, return_id: int) -> List[dict]:
        rows = db.execute(
            "SELECT * FROM return_items WHERE return_id = ? AND client_id = ? ORDER BY id",
            self.scoped_params((int(return_id),)),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def insert_items(
        self,
        db,
        return_id: int,
        items: Iterable[LineItem],
        product_id_for: Callable[[str], int | None],
    ) -> None:
        for item in items:
            db.execute(
                """
                INSERT INTO return_items (client_id, return_id, sku, product_id, quantity)
                VALUES (?, ?, ?, ?, ?)
                """,
                (self.client_id, int(return_id), item.sku, product_id_for(item.sku), int(item.quantity)),
            )

    def update_item_inspection(
        self,
        db,
        item_id: int,
        *,
        restockable_quantity: int,
        item_condition: str | None,
    ) -> None:
        db.execute(
            """
            UPDATE return_items
            SET restockable_quantity = ?, item_condition = ?
            WHERE id = ? AND client_id = ?
            """,
            (int(restockable_quantity), item_condition, int(item_id), self.client_id),
        )


def _to_row(values: Mapping[str, Any]) -> dict:
    row = dict(values)
    for column, value in list(row.items()):
        if isinstance(value, bool):
            row[column] = 1 if value else 0
    return row
