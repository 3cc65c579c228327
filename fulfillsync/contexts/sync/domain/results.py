from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List


OUTCOME_CREATED = "created"
OUTCOME_UPDATED = "updated"
OUTCOME_SKIPPED_ECHO = "skipped_echo"
OUTCOME_FAILED = "failed"


@dataclass
class SyncResult:
    outcome: str
    entity_type: str
    entity_id: int | None = None
    changed_fields: List[str] = field(default_factory=list)
    jobs: List[str] = field(default_factory=list)
    message: str | None = None
    code: str | None = None

    @property
    def success(self) -> bool:
        return self.outcome != OUTCOME_FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "outcome": self.outcome,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "changed_fields": list(self.changed_fields),
            "jobs": list(self.jobs),
            "message": self.message,
            "code": self.code,
        }

    @staticmethod
    def failed(entity_type: str, message: str, *, code: str = "sync_failed", entity_id: int | None = None) -> "SyncResult":
        return SyncResult(
            outcome=OUTCOME_FAILED,
            entity_type=entity_type,
            entity_id=entity_id,
            message=message,
            code=code,
        )


# Holds placed by the platform on an order.
HOLD_AWAITING_PAYMENT = "AWAITING_PAYMENT"
HOLD_SHIPPING_METHOD_MISMATCH = "SHIPPING_METHOD_MISMATCH"

TERMINAL_FULFILLMENT_STATES = frozenset({"cancelled", "delivered", "returned_to_sender"})

RETURN_STATUS_ANNOUNCED = "announced"
RETURN_STATUS_RECEIVED = "received"
RETURN_STATUS_CHECKED = "checked"
RETURN_STATUS_RESTOCKED = "restocked"
RETURN_STATUS_NOT_RESTOCKED = "not_restocked"
RETURN_STATUS_COMPLETED = "completed"
RETURN_STATUS_CANCELLED = "cancelled"
