from fulfillsync.core.event_bus import (
    DomainEvent,
    EventBus,
    JobDeadLettered,
    OrderPlacedOnHold,
    OutboundCreated,
    ShippingMismatchDetected,
)

__all__ = [
    "DomainEvent",
    "EventBus",
    "JobDeadLettered",
    "OrderPlacedOnHold",
    "OutboundCreated",
    "ShippingMismatchDetected",
]
