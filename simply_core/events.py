"""
Event System Module

Publish/subscribe dispatcher for domain events. Engines publish after their
unit of work commits, so subscribers (notification delivery, analytics) only
ever see state that is durable. A failing subscriber never affects the
operation that published the event.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
from threading import RLock

from .logging_config import get_logger
from .storage import to_storable


class DomainEvent(Enum):
    """Domain events that can occur in the ledger"""
    
    # Account events
    ACCOUNT_CREATED = "account.created"
    ACCOUNT_ALIAS_UPDATED = "account.alias_updated"
    ACCOUNT_STATUS_CHANGED = "account.status_changed"
    
    # Investment events
    INVESTMENT_CREATED = "investment.created"
    INVESTMENT_LIQUIDATED = "investment.liquidated"
    INVESTMENT_RETURN_ACCRUED = "investment.return_accrued"
    
    # Financing events
    FINANCING_CREATED = "financing.created"
    FINANCING_COMPLETED = "financing.completed"
    FINANCING_DROPPED = "financing.dropped"
    INSTALLMENT_PAID = "installment.paid"
    INSTALLMENT_OVERDUE = "installment.overdue"
    
    # Transfer events
    TRANSFER_COMPLETED = "transfer.completed"
    TRANSFER_PROCESSING = "transfer.processing"
    TRANSFER_SETTLED = "transfer.settled"
    TRANSFER_FAILED = "transfer.failed"
    TRANSFER_RECEIVED = "transfer.received"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    user_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    
    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'user_id': self.user_id,
            'data': to_storable(self.data),
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        """Create from dictionary"""
        return cls(
            event_type=DomainEvent(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            user_id=data.get('user_id'),
            data=data['data'],
            timestamp=datetime.fromisoformat(data['timestamp']) if isinstance(data['timestamp'], str) else data['timestamp'],
            event_id=data['event_id']
        )


def _handler_name(handler: Callable) -> str:
    return getattr(handler, '__name__', repr(handler))


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""
    
    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []  # catch-all handlers
        self._lock = RLock()
        self.logger = get_logger("simply.events")
    
    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")
    
    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_handler_name(handler)}")
    
    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")
    
    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)
        
        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(
                    f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}",
                    exc_info=True
                )
    
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


class EventPublisherMixin:
    """Gives an engine an optional dispatcher and a publish helper"""
    
    _event_dispatcher: Optional[EventDispatcher] = None
    
    def set_event_dispatcher(self, event_dispatcher: Optional[EventDispatcher]) -> None:
        self._event_dispatcher = event_dispatcher
    
    def publish_event(self, event_type: DomainEvent, entity_type: str, entity_id: str,
                      data: Dict[str, Any], user_id: Optional[str] = None) -> None:
        """Publish a domain event if a dispatcher is attached"""
        if self._event_dispatcher is None:
            return
        self._event_dispatcher.publish(EventPayload(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            data=data,
            user_id=user_id
        ))
