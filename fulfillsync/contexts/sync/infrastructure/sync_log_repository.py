from __future__ import annotations

from typing import Any, Iterable, List, Mapping

from fulfillsync.core.clock import iso_utc, json_dumps, json_loads
from fulfillsync.infrastructure.repositories.base import BaseRepository


class SyncLogRepository(BaseRepository):
    """Append-only audit trail. Rows are never updated or deleted."""

    table = "sync_logs"

    def append(
        self,
        db,
        *,
        entity_type: str,
        entity_id: int | None,
        origin: str,
        action: str,
        actor: str | None = None,
        changed_fields: Iterable[str] = (),
        before: Mapping[str, Any] | None = None,
        after: Mapping[str, Any] | None = None,
        success: bool = True,
        error_message: str | None = None,
    ) -> None:
        db.execute(
            """
            INSERT INTO sync_logs (
                client_id, entity_type, entity_id, origin, action, actor, changed_fields,
                before_state, after_state, success, error_message, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                self.client_id,
                entity_type,
                entity_id,
                origin,
                action,
                actor,
                ",".join(sorted(changed_fields)),
                json_dumps(_snapshot(before)) if before is not None else None,
                json_dumps(_snapshot(after)) if after is not None else None,
                1 if success else 0,
                str(error_message)[:1000] if error_message else None,
                iso_utc(),
            ),
        )

    def list_for(self, db, entity_type: str, entity_id: int) -> List[dict]:
        rows = db.execute(
            """
            SELECT *
            FROM sync_logs
            WHERE entity_type = ? AND entity_id = ? AND client_id = ?
            ORDER BY id ASC
            """,
            self.scoped_params((entity_type, int(entity_id))),
        ).fetchall()
        entries = []
        for row in rows:
            entry = dict(row)
            entry["changed_fields"] = [name for name in str(entry.get("changed_fields") or "").split(",") if name]
            entry["before_state"] = json_loads(entry.get("before_state"))
            entry["after_state"] = json_loads(entry.get("after_state"))
            entries.append(entry)
        return entries

    def count(self, db) -> int:
        row = db.execute("SELECT COUNT(*) AS total FROM sync_logs WHERE client_id = ?", (self.client_id,)).fetchone()
        return int(row["total"] or 0)


def _snapshot(values: Mapping[str, Any] | None) -> dict:
    snapshot = {}
    for name, value in dict(values or {}).items():
        to_dict = getattr(value, "to_dict", None)
        if callable(to_dict):
            snapshot[name] = to_dict()
        elif isinstance(value, list):
            snapshot[name] = [item.to_dict() if hasattr(item, "to_dict") else item for item in value]
        else:
            snapshot[name] = value
    return snapshot
