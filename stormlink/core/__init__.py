"""Core systems for the connection manager."""

from .event_bus import EventBus, EventType, Event
from .state_machine import ConnectionStateMachine, StatusTransition

__all__ = [
    "EventBus",
    "EventType",
    "Event",
    "ConnectionStateMachine",
    "StatusTransition",
]
