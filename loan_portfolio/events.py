"""
Event System Module

Publish/subscribe dispatcher for portfolio notifications (payment recorded,
schedule created, balance update failed, ...). A dispatcher is always passed
explicitly to the components that publish; there is no process-wide bus.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class DomainEvent(Enum):
    """Domain events that can occur in the portfolio"""

    LOAN_CREATED = "loan.created"
    LOAN_DELETED = "loan.deleted"
    LOAN_RESYNCED = "loan.resynced"
    LOAN_COMPLETED = "loan.completed"

    SCHEDULE_CREATED = "schedule.created"
    SCHEDULE_REGENERATED = "schedule.regenerated"

    PAYMENT_RECORDED = "payment.recorded"

    BALANCE_UPDATE_FAILED = "balance.update_failed"
    BALANCE_REPAIRED = "balance.repaired"

    INTEGRITY_ANOMALY = "integrity.anomaly"


EventHandler = Callable[['EventPayload'], None]


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }


class EventDispatcher:
    """Event dispatcher - publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[EventHandler]] = {}
        self._global_handlers: List[EventHandler] = []
        self._lock = RLock()
        self.logger = logging.getLogger("loan_portfolio.events")

    @staticmethod
    def _name(handler: EventHandler) -> str:
        return getattr(handler, '__name__', repr(handler))

    def subscribe(self, event_type: DomainEvent, handler: EventHandler) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {self._name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: EventHandler) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {self._name(handler)}")

    def unsubscribe(self, event_type: DomainEvent, handler: EventHandler) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {self._name(handler)} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload, observers: Optional[List[EventHandler]] = None) -> None:
        """
        Publish event to all subscribers, then to any per-call observers.
        Handler errors are logged and never propagate to the publisher.
        """
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, []))
            handlers.extend(self._global_handlers)

        handlers.extend(observers or [])
        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(f"Error in event handler {self._name(handler)} for {event.event_type.value}: {e}")

    def emit(self, event_type: DomainEvent, entity_type: str, entity_id: str,
             data: Dict[str, Any], observers: Optional[List[EventHandler]] = None) -> EventPayload:
        """Build and publish an event in one call"""
        event = EventPayload(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            data=data
        )
        self.publish(event, observers)
        return event

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)
