from __future__ import annotations

import logging
from dataclasses import replace
from threading import RLock
from typing import Dict, Iterable

from fulfillsync.contexts.catalog.domain.products import ProductRef
from fulfillsync.contexts.catalog.infrastructure.product_repository import ProductRepository


logger = logging.getLogger("fulfillsync.catalog")


class EntityCache:
    """SKU to product lookup for a single client, built once per sync run."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._client_id: str | None = None
        self._by_sku: Dict[str, ProductRef] = {}
        self._initialized = False

    @property
    def client_id(self) -> str | None:
        return self._client_id

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self, db, client_id: str) -> int:
        refs = ProductRepository(client_id=client_id).list_refs(db)
        with self._lock:
            self._client_id = client_id
            self._by_sku = {ref.sku: ref for ref in refs}
            self._initialized = True
            size = len(self._by_sku)
        logger.debug("entity_cache_initialized", extra={"client_id": client_id, "products": size})
        return size

    def get(self, sku: str | None) -> ProductRef | None:
        if not sku:
            return None
        with self._lock:
            return self._by_sku.get(str(sku))

    def get_id(self, sku: str | None) -> int | None:
        ref = self.get(sku)
        return ref.id if ref else None

    def get_many(self, skus: Iterable[str]) -> Dict[str, ProductRef]:
        with self._lock:
            return {sku: self._by_sku[sku] for sku in skus if sku in self._by_sku}

    def add(self, ref: ProductRef) -> None:
        with self._lock:
            self._by_sku[ref.sku] = ref

    def has(self, sku: str) -> bool:
        with self._lock:
            return sku in self._by_sku

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._by_sku)

    def invalidate(self, sku: str | None = None) -> None:
        """Drop one SKU, or everything (forcing the next run to re-initialize)."""
        with self._lock:
            if sku is not None:
                self._by_sku.pop(sku, None)
                return
            self._by_sku = {}
            self._initialized = False

    def update_fulfillment_id(self, sku: str, fulfillment_product_id: str) -> bool:
        with self._lock:
            ref = self._by_sku.get(sku)
            if ref is None:
                return False
            self._by_sku[sku] = replace(ref, fulfillment_product_id=fulfillment_product_id)
            return True
