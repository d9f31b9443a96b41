from portal.core.event_bus import (
    CommentAdded,
    DomainEvent,
    EventBus,
    OrderAdjudicated,
    OrderCreated,
    OrderStatusChanged,
    QuoteSubmitted,
    get_event_bus,
)

__all__ = [
    "DomainEvent",
    "EventBus",
    "OrderCreated",
    "OrderStatusChanged",
    "QuoteSubmitted",
    "OrderAdjudicated",
    "CommentAdded",
    "get_event_bus",
]
