from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List


SYNC_STATE_UNSYNCED = "unsynced"
SYNC_STATE_SYNCED = "synced"
SYNC_STATE_CANCEL_REQUESTED = "cancel_requested"
SYNC_STATE_CANCELLED = "cancelled"
SYNC_STATE_ERROR = "error"


@dataclass(frozen=True)
class FulfillmentResult:
    success: bool
    state: str
    outbound_id: str | None = None
    code: str | None = None
    message: str | None = None
    retryable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "state": self.state,
            "outbound_id": self.outbound_id,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }

    @staticmethod
    def ok(state: str, outbound_id: str | None = None, *, message: str | None = None) -> "FulfillmentResult":
        return FulfillmentResult(success=True, state=state, outbound_id=outbound_id, message=message)

    @staticmethod
    def rejected(state: str, code: str, message: str, *, retryable: bool = False, outbound_id: str | None = None) -> "FulfillmentResult":
        return FulfillmentResult(
            success=False,
            state=state,
            outbound_id=outbound_id,
            code=code,
            message=message,
            retryable=retryable,
        )


@dataclass
class PollSummary:
    client_id: str
    since: str
    until: str
    received: int = 0
    applied: int = 0
    skipped: int = 0
    unknown: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "client_id": self.client_id,
            "since": self.since,
            "until": self.until,
            "received": self.received,
            "applied": self.applied,
            "skipped": self.skipped,
            "unknown": self.unknown,
            "failed": self.failed,
            "errors": list(self.errors),
        }
