"""
Event bus for connection change notifications.

Provides a pub/sub system so presentation and scene collaborators can
follow registry and transport state without polling.
"""

from typing import Callable, Dict, List, Any, Optional
from enum import Enum, auto
import asyncio
from dataclasses import dataclass, field

from ..logging_config import get_logger

logger = get_logger(__name__)


class EventType(Enum):
    """Connection manager event types."""
    # Registry events
    CONNECTION_ADDED = auto()
    CONNECTION_REMOVED = auto()
    STATUS_CHANGED = auto()
    STATISTICS_UPDATED = auto()
    RECONNECTION_FAILED = auto()
    HISTORY_CLEARED = auto()
    FRAME_RECEIVED = auto()

    # Transport events
    REACHABILITY_CHANGED = auto()
    LATENCY_MEASURED = auto()
    STREAM_OPENED = auto()
    STREAM_CLOSED = auto()


@dataclass
class Event:
    """Event data structure."""
    type: EventType
    data: Dict[str, Any] = field(default_factory=dict)
    source: Optional[str] = None


class EventBus:
    """Central event bus for connection notifications."""

    def __init__(self):
        self._handlers: Dict[EventType, List[Callable]] = {}
        self._once_handlers: Dict[EventType, List[Callable]] = {}

    def subscribe(self, event_type: EventType, handler: Callable[[Event], None]) -> None:
        """Subscribe a handler to an event type."""
        if event_type not in self._handlers:
            self._handlers[event_type] = []
        self._handlers[event_type].append(handler)

    def subscribe_once(self, event_type: EventType, handler: Callable[[Event], None]) -> None:
        """Subscribe a handler that will be called only once."""
        if event_type not in self._once_handlers:
            self._once_handlers[event_type] = []
        self._once_handlers[event_type].append(handler)

    def unsubscribe(self, event_type: EventType, handler: Callable[[Event], None]) -> None:
        """Unsubscribe a handler from an event type."""
        if event_type in self._handlers and handler in self._handlers[event_type]:
            self._handlers[event_type].remove(handler)

        if event_type in self._once_handlers and handler in self._once_handlers[event_type]:
            self._once_handlers[event_type].remove(handler)

    def _dispatch(self, handler: Callable, event: Event) -> None:
        if asyncio.iscoroutinefunction(handler):
            # Schedule async handler as a task
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.warning(f"Async handler {handler} registered but no event loop running")
                return
            loop.create_task(handler(event))
        else:
            handler(event)

    def emit(self, event_type: EventType, data: Optional[Dict[str, Any]] = None, source: Optional[str] = None) -> None:
        """
        Emit an event to all subscribers.

        Note: Async handlers will be scheduled as tasks on the running event loop.
        For guaranteed async execution, use emit_async() instead.
        """
        event = Event(type=event_type, data=data or {}, source=source)

        for handler in list(self._handlers.get(event_type, [])):
            try:
                self._dispatch(handler, event)
            except Exception as e:
                logger.error(f"Error in event handler for {event_type.name}: {e}")

        once_handlers = self._once_handlers.pop(event_type, [])
        for handler in once_handlers:
            try:
                self._dispatch(handler, event)
            except Exception as e:
                logger.error(f"Error in once handler for {event_type.name}: {e}")

    async def emit_async(self, event_type: EventType, data: Optional[Dict[str, Any]] = None, source: Optional[str] = None) -> None:
        """Emit an event, awaiting async handlers in subscription order."""
        event = Event(type=event_type, data=data or {}, source=source)

        handlers = list(self._handlers.get(event_type, []))
        handlers.extend(self._once_handlers.pop(event_type, []))
        for handler in handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    handler(event)
            except Exception as e:
                logger.error(f"Error in async event handler for {event_type.name}: {e}")

    def clear(self, event_type: Optional[EventType] = None) -> None:
        """Clear all handlers for an event type, or all handlers if None."""
        if event_type:
            self._handlers.pop(event_type, None)
            self._once_handlers.pop(event_type, None)
        else:
            self._handlers.clear()
            self._once_handlers.clear()
