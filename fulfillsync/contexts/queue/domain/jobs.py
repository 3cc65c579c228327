from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict

from fulfillsync.errors import PermanentError


ORDER_SYNC_TO_FFN = "order-sync-to-ffn"
ORDER_CANCEL_SYNC = "order-cancel-sync"
ORDER_SYNC_TO_COMMERCE = "order-sync-to-commerce"
RETURN_SYNC_TO_COMMERCE = "return-sync-to-commerce"
RETURN_RESTOCK_SYNC = "return-restock-sync"
PRODUCT_SYNC_TO_FFN = "product-sync-to-ffn"
PRODUCT_SYNC_TO_COMMERCE = "product-sync-to-commerce"

QUEUE_NAMES = (
    ORDER_SYNC_TO_FFN,
    ORDER_CANCEL_SYNC,
    ORDER_SYNC_TO_COMMERCE,
    RETURN_SYNC_TO_COMMERCE,
    RETURN_RESTOCK_SYNC,
    PRODUCT_SYNC_TO_FFN,
    PRODUCT_SYNC_TO_COMMERCE,
)

JOB_STATE_CREATED = "created"
JOB_STATE_ACTIVE = "active"
JOB_STATE_FAILED = "failed"
JOB_STATE_CANCELLED = "cancelled"


class PermanentJobError(PermanentError):
    """Raised by a handler when retrying cannot change the result."""

    default_code = "job_permanent_failure"


@dataclass(frozen=True)
class JobOptions:
    priority: int = 0
    retry_limit: int | None = None
    retry_delay: int | None = None
    retry_backoff: bool = True
    expire_in_seconds: int | None = None
    singleton_key: str | None = None
    start_after: datetime | None = None


@dataclass(frozen=True)
class EnqueueResult:
    job_id: int
    queue_name: str
    deduplicated: bool = False


@dataclass
class SyncJob:
    id: int
    queue_name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    client_id: str | None = None
    priority: int = 0
    state: str = JOB_STATE_CREATED
    retry_count: int = 0
    retry_limit: int = 3
    retry_delay: int = 60
    retry_backoff: bool = True
    start_after: str | None = None
    expire_in_seconds: int = 3600
    singleton_key: str | None = None
    last_error: str | None = None
    started_at: str | None = None
    created_at: str | None = None

    @property
    def attempt(self) -> int:
        return int(self.retry_count) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "queue_name": self.queue_name,
            "payload": dict(self.payload),
            "client_id": self.client_id,
            "priority": self.priority,
            "state": self.state,
            "retry_count": self.retry_count,
            "retry_limit": self.retry_limit,
            "retry_delay": self.retry_delay,
            "retry_backoff": self.retry_backoff,
            "start_after": self.start_after,
            "expire_in_seconds": self.expire_in_seconds,
            "singleton_key": self.singleton_key,
            "last_error": self.last_error,
            "started_at": self.started_at,
            "created_at": self.created_at,
        }


def compute_retry_delay(retry_delay: int, retry_count: int, *, backoff: bool, max_delay: int) -> float:
    """Delay before the next attempt; never decreases as ``retry_count`` grows."""
    base = max(0, int(retry_delay))
    if not backoff:
        return float(base)
    exponent = max(0, int(retry_count))
    return float(min(max(base, int(max_delay)), base * (2**exponent)))
