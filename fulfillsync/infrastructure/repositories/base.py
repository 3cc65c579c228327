from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Tuple


class ClientScopeRequiredError(ValueError):
    """Raised when a repository is instantiated without a client scope."""


class BaseRepository:
    table: str = ""
    columns: frozenset = frozenset()

    def __init__(self, *, client_id: str | None = None) -> None:
        scope = str(client_id or "").strip()
        if not scope:
            raise ClientScopeRequiredError("client_id is required for repository access")
        self.client_id = scope

    def scoped_params(self, params: Iterable[Any] | None = None) -> tuple[Any, ...]:
        values = tuple(params or ())
        return (*values, self.client_id)

    def assignments(self, values: Mapping[str, Any]) -> Tuple[str, list]:
        """Build a ``SET`` clause restricted to known columns."""
        unknown = sorted(name for name in values if name not in self.columns)
        if unknown:
            raise ValueError(f"unknown {self.table} columns: {', '.join(unknown)}")
        names = sorted(values)
        return ", ".join(f"{name} = ?" for name in names), [values[name] for name in names]

    def insert_row(self, db, values: Mapping[str, Any], *, conflict_columns: Tuple[str, ...] = ()) -> int | None:
        """Insert and return the new id.

        With ``conflict_columns`` a row violating that unique key is skipped
        and ``None`` is returned, so the caller can switch to its update path.
        """
        unknown = sorted(name for name in values if name not in self.columns)
        if unknown:
            raise ValueError(f"unknown {self.table} columns: {', '.join(unknown)}")
        names = sorted(values)
        placeholders = ", ".join("?" for _ in names)
        conflict = f"ON CONFLICT ({', '.join(conflict_columns)}) DO NOTHING" if conflict_columns else ""
        cursor = db.execute(
            f"""
            INSERT INTO {self.table} ({', '.join(names)}, client_id)
            VALUES ({placeholders}, ?)
            {conflict}
            RETURNING id
            """,
            self.scoped_params(values[name] for name in names),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return int(row["id"] if isinstance(row, dict) else row[0])

    @staticmethod
    def rows_to_dicts(rows: Iterable[Any]) -> list[Dict[str, Any]]:
        return [dict(row) for row in rows]
