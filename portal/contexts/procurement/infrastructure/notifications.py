from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Tuple, Type

from portal.core import (
    CommentAdded,
    DomainEvent,
    EventBus,
    OrderAdjudicated,
    OrderCreated,
    OrderStatusChanged,
    QuoteSubmitted,
    get_event_bus,
)
from portal.core.event_schemas import validate_event


EVENT_KINDS: Dict[str, Type[DomainEvent]] = {
    "order_created": OrderCreated,
    "order_status_changed": OrderStatusChanged,
    "quote_submitted": QuoteSubmitted,
    "order_adjudicated": OrderAdjudicated,
    "comment_added": CommentAdded,
}


class NotificationEmitter(ABC):
    """Fire-and-forget sink for lifecycle notifications. `emit` never raises."""

    @abstractmethod
    def emit(self, event_kind: str, payload: Mapping[str, Any]) -> None:
        raise NotImplementedError


class EventBusNotificationEmitter(NotificationEmitter):
    def __init__(self, event_bus: EventBus | None = None) -> None:
        self.event_bus = event_bus or get_event_bus()
        self._logger = logging.getLogger("portal")

    def emit(self, event_kind: str, payload: Mapping[str, Any]) -> None:
        event_type = EVENT_KINDS.get(event_kind)
        if event_type is None:
            self._logger.warning("notification_kind_unknown", extra={"event_kind": event_kind})
            return
        try:
            event = event_type(**dict(payload))
        except TypeError:
            self._logger.exception("notification_payload_invalid", extra={"event_kind": event_kind})
            return
        if not validate_event(event):
            return
        self.event_bus.publish(event)


class RecordingNotificationEmitter(NotificationEmitter):
    """Keeps emitted notifications in memory; used by tests and local tooling."""

    def __init__(self) -> None:
        self.emitted: List[Tuple[str, Dict[str, Any]]] = []

    def emit(self, event_kind: str, payload: Mapping[str, Any]) -> None:
        self.emitted.append((event_kind, dict(payload)))

    def kinds(self) -> List[str]:
        return [kind for kind, _payload in self.emitted]
