from __future__ import annotations

from typing import List


class ChannelRepository:
    def get_channel(self, db, channel_id: str | None) -> dict | None:
        if not channel_id:
            return None
        row = db.execute(
            """
            SELECT id, client_id, channel_type, name, default_shipping_method_id, is_active
            FROM channels
            WHERE id = ?
            LIMIT 1
            """,
            (channel_id,),
        ).fetchone()
        return dict(row) if row else None

    def list_client_ids(self, db) -> List[str]:
        rows = db.execute("SELECT id FROM clients ORDER BY id").fetchall()
        return [str(row["id"]) for row in rows]
