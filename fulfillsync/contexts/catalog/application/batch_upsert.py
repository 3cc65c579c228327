from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple

from flask import current_app

from fulfillsync.contexts.catalog.application.entity_cache import EntityCache
from fulfillsync.contexts.catalog.domain.products import BatchError, BatchResult, ItemResult, ProductRef
from fulfillsync.contexts.catalog.infrastructure.product_repository import PRODUCT_COLUMNS
from fulfillsync.contexts.sync.domain.ownership import ORDER_COMMERCE_FIELDS, ORDER_OPERATIONAL_FIELDS
from fulfillsync.core.clock import iso_utc
from fulfillsync.errors import SystemError
from fulfillsync.observability import observe_batch_items


@dataclass(frozen=True)
class BatchEntityDefinition:
    """How one table is bulk-upserted: natural key, writable columns, chunking."""

    entity_type: str
    table: str
    key_columns: Tuple[str, ...]
    columns: frozenset
    batch_size: int
    timeout_seconds: float
    insert_defaults: Mapping[str, Any] = field(default_factory=dict)
    touch_updated_at: bool = True


PRODUCTS = BatchEntityDefinition(
    entity_type="product",
    table="products",
    key_columns=("sku",),
    columns=PRODUCT_COLUMNS - {"updated_at"},
    batch_size=50,
    timeout_seconds=30.0,
    insert_defaults={"origin": "platform"},
)

ORDERS = BatchEntityDefinition(
    entity_type="order",
    table="orders",
    key_columns=("external_order_id", "channel_id"),
    columns=frozenset((ORDER_COMMERCE_FIELDS - {"items"}) | ORDER_OPERATIONAL_FIELDS | {"origin"}),
    batch_size=20,
    timeout_seconds=60.0,
    insert_defaults={"origin": "commerce"},
)

RETURNS = BatchEntityDefinition(
    entity_type="return",
    table="returns",
    key_columns=("external_return_id", "channel_id"),
    columns=frozenset(
        {
            "order_id",
            "external_order_id",
            "origin",
            "status",
            "reason",
            "customer_note",
            "requested_items",
            "inspection_result",
            "restock_eligible",
            "refund_amount",
        }
    ),
    batch_size=25,
    timeout_seconds=45.0,
    insert_defaults={"origin": "platform"},
)

MAPPINGS = BatchEntityDefinition(
    entity_type="shipping_mapping",
    table="shipping_method_mappings",
    key_columns=("channel_shipping_code", "channel_type", "channel_id"),
    columns=frozenset({"channel_shipping_title", "shipping_method_id", "is_active"}),
    batch_size=100,
    timeout_seconds=20.0,
)

BATCH_DEFINITIONS = {definition.entity_type: definition for definition in (PRODUCTS, ORDERS, RETURNS, MAPPINGS)}


def _chunks(items: Sequence, size: int) -> Iterable[Tuple[int, Sequence]]:
    for index, start in enumerate(range(0, len(items), size)):
        yield index, items[start : start + size]


def _key_label(key: Tuple[Any, ...]) -> str:
    return ":".join("" if part is None else str(part) for part in key)


class BatchUpsertEngine:
    """Chunked bulk insert/update with one pre-fetch query per chunk.

    Each chunk commits in its own bounded transaction; a failing chunk marks
    its own items failed and leaves committed chunks alone.
    """

    def __init__(self, *, cache: EntityCache | None = None, batch_sizes: Mapping[str, int] | None = None) -> None:
        self.cache = cache
        self._batch_sizes = {key: max(1, int(value)) for key, value in (batch_sizes or {}).items() if value}

    @classmethod
    def from_config(cls, config, *, cache: EntityCache | None = None) -> "BatchUpsertEngine":
        return cls(
            cache=cache,
            batch_sizes={
                "product": config.get("BATCH_SIZE_PRODUCTS"),
                "order": config.get("BATCH_SIZE_ORDERS"),
                "return": config.get("BATCH_SIZE_RETURNS"),
                "shipping_mapping": config.get("BATCH_SIZE_MAPPINGS"),
            },
        )

    def upsert_products(self, db, client_id: str, items: Sequence[Mapping[str, Any]], *, batch_size: int | None = None) -> BatchResult:
        return self.upsert(db, PRODUCTS, client_id, items, batch_size=batch_size)

    def upsert_orders(self, db, client_id: str, items: Sequence[Mapping[str, Any]], *, batch_size: int | None = None) -> BatchResult:
        return self.upsert(db, ORDERS, client_id, items, batch_size=batch_size)

    def upsert_returns(self, db, client_id: str, items: Sequence[Mapping[str, Any]], *, batch_size: int | None = None) -> BatchResult:
        return self.upsert(db, RETURNS, client_id, items, batch_size=batch_size)

    def upsert_mappings(self, db, client_id: str, items: Sequence[Mapping[str, Any]], *, batch_size: int | None = None) -> BatchResult:
        return self.upsert(db, MAPPINGS, client_id, items, batch_size=batch_size)

    def upsert(
        self,
        db,
        definition: BatchEntityDefinition,
        client_id: str,
        items: Sequence[Mapping[str, Any]],
        *,
        batch_size: int | None = None,
    ) -> BatchResult:
        """Upsert ``items`` chunk by chunk; every input item gets one ``ItemResult``.

        Must run outside any open transaction: each chunk commits or rolls back
        on its own, which a surrounding transaction would silently undo.
        """
        if db.in_transaction:
            raise SystemError(
                code="batch_inside_transaction",
                details=f"entity_type={definition.entity_type} client_id={client_id}",
            )
        result = BatchResult()
        size = max(1, int(batch_size or self._batch_sizes.get(definition.entity_type) or definition.batch_size))

        # Last occurrence of a key wins so the same row is never inserted twice.
        merged: Dict[Tuple[Any, ...], Dict[str, Any]] = {}
        for item in items:
            key = tuple(item.get(column) for column in definition.key_columns)
            if key[0] in (None, ""):
                result.failed += 1
                result.details.append(ItemResult(key="", status="failed", error="missing natural key"))
                continue
            if key in merged:
                result.skipped += 1
                result.details.append(
                    ItemResult(key=_key_label(key), status="skipped", error="duplicate key superseded by a later item")
                )
            merged[key] = dict(item)

        pending = list(merged.items())
        for batch_index, chunk in _chunks(pending, size):
            try:
                with db.transaction(timeout_seconds=definition.timeout_seconds):
                    details, refs = self._apply_chunk(db, definition, client_id, chunk)
            except Exception as exc:  # noqa: BLE001
                labels = [_key_label(key) for key, _item in chunk]
                result.failed += len(chunk)
                result.errors.append(
                    BatchError(batch_index=batch_index, batch_size=len(chunk), error=str(exc) or type(exc).__name__, items=labels)
                )
                result.details.extend(ItemResult(key=label, status="failed", error=str(exc)) for label in labels)
                current_app.logger.warning(
                    "batch_chunk_failed",
                    extra={
                        "entity_type": definition.entity_type,
                        "client_id": client_id,
                        "batch_index": batch_index,
                        "batch_size": len(chunk),
                        "error": str(exc)[:200],
                    },
                )
                continue

            for detail in details:
                if detail.status == "inserted":
                    result.inserted += 1
                else:
                    result.updated += 1
            result.details.extend(details)
            if self.cache is not None and self.cache.client_id == client_id:
                for ref in refs:
                    self.cache.add(ref)

        observe_batch_items(definition.entity_type, "inserted", result.inserted)
        observe_batch_items(definition.entity_type, "updated", result.updated)
        observe_batch_items(definition.entity_type, "failed", result.failed)
        observe_batch_items(definition.entity_type, "skipped", result.skipped)
        current_app.logger.info(
            "batch_upsert_completed",
            extra={
                "entity_type": definition.entity_type,
                "client_id": client_id,
                "inserted": result.inserted,
                "updated": result.updated,
                "failed": result.failed,
                "skipped": result.skipped,
                "chunks_failed": len(result.errors),
            },
        )
        return result

    def _prefetch(self, db, definition: BatchEntityDefinition, client_id: str, keys: List[Tuple[Any, ...]]) -> Dict[Tuple[Any, ...], dict]:
        lead_values = sorted({str(key[0]) for key in keys})
        placeholders = ", ".join("?" for _ in lead_values)
        rows = db.execute(
            f"""
            SELECT id, {', '.join(definition.key_columns)}
            FROM {definition.table}
            WHERE {definition.key_columns[0]} IN ({placeholders}) AND client_id = ?
            """,
            (*lead_values, client_id),
        ).fetchall()
        existing: Dict[Tuple[Any, ...], dict] = {}
        for row in rows:
            data = dict(row)
            existing[tuple(data.get(column) for column in definition.key_columns)] = data
        return existing

    def _apply_chunk(
        self,
        db,
        definition: BatchEntityDefinition,
        client_id: str,
        chunk: Sequence[Tuple[Tuple[Any, ...], Dict[str, Any]]],
    ) -> Tuple[List[ItemResult], List[ProductRef]]:
        existing = self._prefetch(db, definition, client_id, [key for key, _item in chunk])
        details: List[ItemResult] = []
        refs: List[ProductRef] = []
        now = iso_utc()
        for key, item in chunk:
            values = {name: item[name] for name in item if name in definition.columns and name not in definition.key_columns}
            label = _key_label(key)
            current = existing.get(key)
            if current is not None:
                entity_id = int(current["id"])
                if definition.touch_updated_at:
                    values["updated_at"] = now
                if values:
                    names = sorted(values)
                    db.execute(
                        f"""
                        UPDATE {definition.table}
                        SET {', '.join(f'{name} = ?' for name in names)}
                        WHERE id = ? AND client_id = ?
                        """,
                        (*[values[name] for name in names], entity_id, client_id),
                    )
                details.append(ItemResult(key=label, status="updated", entity_id=entity_id))
            else:
                row = dict(definition.insert_defaults)
                row.update(values)
                row.update(dict(zip(definition.key_columns, key)))
                names = sorted(row)
                cursor = db.execute(
                    f"""
                    INSERT INTO {definition.table} ({', '.join(names)}, client_id)
                    VALUES ({', '.join('?' for _ in names)}, ?)
                    RETURNING id
                    """,
                    (*[row[name] for name in names], client_id),
                )
                inserted = cursor.fetchone()
                entity_id = int(inserted["id"] if isinstance(inserted, dict) else inserted[0])
                existing[key] = {"id": entity_id}
                details.append(ItemResult(key=label, status="inserted", entity_id=entity_id))
                if definition.table == "products":
                    refs.append(ProductRef(id=entity_id, sku=str(key[0]), name=item.get("name")))
        return details, refs
