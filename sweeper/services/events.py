"""
Dispatch events and the in-process observer registry.

Events are handed to the notification collaborator; how they get delivered
(email, SMS, push) is its concern. The bus has no global instance: whoever
wires the application creates one and passes it to the services.
"""
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

import structlog

from ..models.enums import EventType
from .time_rules import utc_now

logger = structlog.get_logger(__name__)

ALL_ENTITIES = "*"


@dataclass(frozen=True)
class DispatchEvent:
    type: EventType
    booking_id: uuid.UUID
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "bookingId": str(self.booking_id),
            "payload": self.payload,
            "occurredAt": self.occurred_at.isoformat(),
        }


class EventPublisher(Protocol):
    def publish(self, event: DispatchEvent) -> None:
        ...


Callback = Callable[[DispatchEvent], None]


class EventBus:
    """
    Fan-out of dispatch events to subscribers and sinks.

    ``subscribe(entity_id, callback)`` registers interest in one booking (or
    ``"*"`` for every booking) and returns a handle that unsubscribes when
    called. Sinks receive every event and are where durable transports such
    as the notification outbox plug in.
    """

    def __init__(self, sinks: Optional[List[EventPublisher]] = None):
        self._subscribers: Dict[str, List[Callback]] = {}
        self._sinks: List[EventPublisher] = list(sinks or [])
        self._lock = threading.Lock()

    def subscribe(self, entity_id, callback: Callback) -> Callable[[], None]:
        key = str(entity_id)
        with self._lock:
            self._subscribers.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(key, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._subscribers.pop(key, None)

        return unsubscribe

    def subscriber_count(self, entity_id=ALL_ENTITIES) -> int:
        with self._lock:
            return len(self._subscribers.get(str(entity_id), []))

    def publish(self, event: DispatchEvent) -> None:
        for sink in self._sinks:
            try:
                sink.publish(event)
            except Exception as e:
                logger.error(
                    "event_sink_failed",
                    sink=type(sink).__name__,
                    event_type=event.type.value,
                    booking_id=str(event.booking_id),
                    error=str(e),
                )

        with self._lock:
            callbacks = list(self._subscribers.get(str(event.booking_id), []))
            callbacks += self._subscribers.get(ALL_ENTITIES, [])

        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                # One broken observer must not starve the others
                logger.warning("event_subscriber_failed", event_type=event.type.value, error=str(e))


def emit(publisher: Optional[EventPublisher], event: DispatchEvent) -> bool:
    """
    Fire-and-forget publication.

    Returns False (after logging) instead of raising, so a notification
    outage never changes the outcome of the operation that produced the event.
    """
    if publisher is None:
        return False
    try:
        publisher.publish(event)
        return True
    except Exception as e:
        logger.error(
            "event_publish_failed",
            event_type=event.type.value,
            booking_id=str(event.booking_id),
            error=str(e),
        )
        return False
