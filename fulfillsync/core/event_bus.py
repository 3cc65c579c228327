from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
from typing import Callable, Dict, List, Type

from fulfillsync.observability import observe_domain_event_emitted


EventHandler = Callable[["DomainEvent"], None]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, kw_only=True)
class DomainEvent:
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    occurred_at: datetime = field(default_factory=_utc_now)
    client_id: str = ""

    def __post_init__(self) -> None:
        normalized_event_id = str(self.event_id or "").strip() or uuid.uuid4().hex
        normalized_occurred_at = self.occurred_at if isinstance(self.occurred_at, datetime) else _utc_now()
        if normalized_occurred_at.tzinfo is None:
            normalized_occurred_at = normalized_occurred_at.replace(tzinfo=timezone.utc)
        object.__setattr__(self, "event_id", normalized_event_id)
        object.__setattr__(self, "occurred_at", normalized_occurred_at.astimezone(timezone.utc))
        object.__setattr__(self, "client_id", str(self.client_id or "").strip() or "unknown")


@dataclass(frozen=True, kw_only=True)
class OrderPlacedOnHold(DomainEvent):
    order_id: int
    reason: str


@dataclass(frozen=True, kw_only=True)
class ShippingMismatchDetected(DomainEvent):
    order_id: int | None
    mismatch_id: int
    channel_shipping_code: str | None = None
    channel_shipping_title: str | None = None


@dataclass(frozen=True, kw_only=True)
class OutboundCreated(DomainEvent):
    order_id: int
    outbound_id: str


@dataclass(frozen=True, kw_only=True)
class JobDeadLettered(DomainEvent):
    job_id: int
    queue_name: str
    attempts: int
    error: str = ""


class EventBus:
    """In-process fan-out to audit and notification subscribers.

    Handler errors are logged and swallowed so a broken subscriber never
    undoes the write that produced the event.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._handlers: Dict[Type[DomainEvent], List[EventHandler]] = {}
        self._logger = logging.getLogger("fulfillsync")

    def subscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.setdefault(event_type, [])
            handlers.append(handler)

    def publish(self, event: DomainEvent) -> None:
        observe_domain_event_emitted(type(event).__name__)
        with self._lock:
            handlers = list(self._handlers.get(type(event), []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:  # noqa: BLE001
                self._logger.exception("event_handler_failed", extra={"event_type": type(event).__name__})

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()
