from __future__ import annotations

from typing import Any, Dict, List

from fulfillsync.core.clock import iso_utc


class ShippingRepository:
    """Shipping methods are global; mappings may be global, per client or per channel."""

    def get_method(self, db, shipping_method_id: int | None, *, active_only: bool = True) -> dict | None:
        if shipping_method_id is None:
            return None
        row = db.execute(
            """
            SELECT id, external_id, name, carrier_code, carrier_name, shipping_type, is_active
            FROM shipping_methods
            WHERE id = ?
            LIMIT 1
            """,
            (int(shipping_method_id),),
        ).fetchone()
        if not row:
            return None
        if active_only and not int(row["is_active"] or 0):
            return None
        return dict(row)

    def get_method_by_external_id(self, db, external_id: str) -> dict | None:
        row = db.execute(
            "SELECT * FROM shipping_methods WHERE external_id = ? LIMIT 1",
            (str(external_id),),
        ).fetchone()
        return dict(row) if row else None

    def upsert_method(
        self,
        db,
        *,
        external_id: str,
        name: str,
        carrier_code: str | None = None,
        carrier_name: str | None = None,
        shipping_type: str | None = None,
        is_active: bool = True,
    ) -> tuple[int, bool]:
        now = iso_utc()
        existing = self.get_method_by_external_id(db, external_id)
        if existing:
            db.execute(
                """
                UPDATE shipping_methods
                SET name = ?, carrier_code = ?, carrier_name = ?, shipping_type = ?, is_active = ?, updated_at = ?
                WHERE id = ?
                """,
                (name, carrier_code, carrier_name, shipping_type, 1 if is_active else 0, now, int(existing["id"])),
            )
            return int(existing["id"]), False
        cursor = db.execute(
            """
            INSERT INTO shipping_methods (external_id, name, carrier_code, carrier_name, shipping_type, is_active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (str(external_id), name, carrier_code, carrier_name, shipping_type, 1 if is_active else 0, now, now),
        )
        row = cursor.fetchone()
        return int(row["id"] if isinstance(row, dict) else row[0]), True

    def candidate_mappings(self, db, *, channel_type: str, client_id: str, channel_id: str | None) -> List[dict]:
        rows = db.execute(
            """
            SELECT m.id, m.client_id, m.channel_id, m.channel_shipping_code, m.channel_shipping_title,
                   m.shipping_method_id
            FROM shipping_method_mappings m
            JOIN shipping_methods s ON s.id = m.shipping_method_id
            WHERE m.channel_type = ?
              AND m.is_active = 1
              AND s.is_active = 1
              AND (
                    (m.channel_id IS NOT NULL AND m.channel_id = ?)
                 OR (m.channel_id IS NULL AND m.client_id = ?)
                 OR (m.channel_id IS NULL AND m.client_id IS NULL)
              )
            ORDER BY m.id ASC
            """,
            (channel_type, channel_id or "", client_id),
        ).fetchall()
        return [dict(row) for row in rows]

    def channel_default_method_id(self, db, channel_id: str | None) -> int | None:
        if not channel_id:
            return None
        row = db.execute(
            "SELECT default_shipping_method_id FROM channels WHERE id = ? LIMIT 1",
            (channel_id,),
        ).fetchone()
        if not row or row["default_shipping_method_id"] is None:
            return None
        return int(row["default_shipping_method_id"])

    def client_default_method_id(self, db, client_id: str) -> int | None:
        row = db.execute(
            "SELECT default_shipping_method_id FROM clients WHERE id = ? LIMIT 1",
            (client_id,),
        ).fetchone()
        if not row or row["default_shipping_method_id"] is None:
            return None
        return int(row["default_shipping_method_id"])

    def find_mapping(
        self,
        db,
        *,
        channel_type: str,
        channel_shipping_code: str,
        client_id: str | None,
        channel_id: str | None,
    ) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM shipping_method_mappings
            WHERE channel_type = ?
              AND channel_shipping_code = ?
              AND COALESCE(client_id, '') = ?
              AND COALESCE(channel_id, '') = ?
            ORDER BY id ASC
            LIMIT 1
            """,
            (channel_type, channel_shipping_code, client_id or "", channel_id or ""),
        ).fetchone()
        return dict(row) if row else None

    def insert_mapping(self, db, values: Dict[str, Any]) -> int:
        now = iso_utc()
        cursor = db.execute(
            """
            INSERT INTO shipping_method_mappings (
                client_id, channel_id, channel_type, channel_shipping_code, channel_shipping_title,
                shipping_method_id, is_active, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                values.get("client_id"),
                values.get("channel_id"),
                values["channel_type"],
                values.get("channel_shipping_code"),
                values.get("channel_shipping_title"),
                int(values["shipping_method_id"]),
                1 if values.get("is_active", True) else 0,
                now,
                now,
            ),
        )
        row = cursor.fetchone()
        return int(row["id"] if isinstance(row, dict) else row[0])

    def update_mapping(self, db, mapping_id: int, *, channel_shipping_title: str | None, shipping_method_id: int) -> None:
        db.execute(
            """
            UPDATE shipping_method_mappings
            SET channel_shipping_title = ?, shipping_method_id = ?, is_active = 1, updated_at = ?
            WHERE id = ?
            """,
            (channel_shipping_title, int(shipping_method_id), iso_utc(), int(mapping_id)),
        )

    def open_mismatch_for_order(self, db, client_id: str, order_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT *
            FROM shipping_method_mismatches
            WHERE client_id = ? AND order_id = ? AND is_resolved = 0
            ORDER BY id DESC
            LIMIT 1
            """,
            (client_id, int(order_id)),
        ).fetchone()
        return dict(row) if row else None

    def insert_mismatch(self, db, values: Dict[str, Any]) -> int:
        cursor = db.execute(
            """
            INSERT INTO shipping_method_mismatches (
                client_id, channel_id, order_id, channel_shipping_code, channel_shipping_title,
                used_fallback, fallback_method_id, is_resolved, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                values["client_id"],
                values.get("channel_id"),
                values.get("order_id"),
                values.get("channel_shipping_code"),
                values.get("channel_shipping_title"),
                1 if values.get("used_fallback") else 0,
                values.get("fallback_method_id"),
                1 if values.get("is_resolved") else 0,
                iso_utc(),
            ),
        )
        row = cursor.fetchone()
        return int(row["id"] if isinstance(row, dict) else row[0])

    def get_mismatch(self, db, mismatch_id: int) -> dict | None:
        row = db.execute(
            "SELECT * FROM shipping_method_mismatches WHERE id = ? LIMIT 1",
            (int(mismatch_id),),
        ).fetchone()
        return dict(row) if row else None

    def mark_mismatch_resolved(
        self,
        db,
        mismatch_id: int,
        *,
        resolved_by: str,
        note: str | None,
        shipping_method_id: int | None,
    ) -> bool:
        cursor = db.execute(
            """
            UPDATE shipping_method_mismatches
            SET is_resolved = 1, resolved_at = ?, resolved_by = ?, resolution_note = ?, resolved_method_id = ?
            WHERE id = ? AND is_resolved = 0
            """,
            (iso_utc(), resolved_by, note, shipping_method_id, int(mismatch_id)),
        )
        return int(getattr(cursor, "rowcount", 0) or 0) > 0

    def list_unresolved(self, db, client_id: str | None = None, *, limit: int = 200) -> List[dict]:
        clauses = ["is_resolved = 0"]
        params: List[object] = []
        if client_id:
            clauses.append("client_id = ?")
            params.append(client_id)
        rows = db.execute(
            f"""
            SELECT *
            FROM shipping_method_mismatches
            WHERE {' AND '.join(clauses)}
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (*params, max(1, int(limit))),
        ).fetchall()
        return [dict(row) for row in rows]
