from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass(frozen=True)
class ProductRef:
    id: int
    sku: str
    fulfillment_product_id: str | None = None
    name: str | None = None


@dataclass
class BatchError:
    batch_index: int
    batch_size: int
    error: str
    items: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_index": self.batch_index,
            "batch_size": self.batch_size,
            "error": self.error,
            "items": list(self.items),
        }


@dataclass
class ItemResult:
    key: str
    status: str
    entity_id: int | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status != "failed"


@dataclass
class BatchResult:
    inserted: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[BatchError] = field(default_factory=list)
    details: List[ItemResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.inserted + self.updated + self.failed + self.skipped

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "inserted": self.inserted,
            "updated": self.updated,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": [error.to_dict() for error in self.errors],
        }
