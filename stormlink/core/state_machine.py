"""
Connection status state machine.

Owns the transition graph for connection records and notifies listeners
on every accepted transition. Illegal transitions are rejected with a
warning and leave the record unchanged.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..logging_config import get_logger
from ..models import ConnectionStatus

logger = get_logger(__name__)


@dataclass
class StatusTransition:
    """Represents an accepted status transition."""
    record: Any
    from_status: ConnectionStatus
    to_status: ConnectionStatus
    data: Optional[dict]

    @property
    def world_id(self) -> str:
        return self.record.world.id


class ConnectionStateMachine:
    """Applies status transitions to connection records."""

    # Valid status transitions
    VALID_TRANSITIONS: Dict[ConnectionStatus, List[ConnectionStatus]] = {
        ConnectionStatus.DISCONNECTED: [ConnectionStatus.CONNECTING],
        ConnectionStatus.CONNECTING: [ConnectionStatus.CONNECTED, ConnectionStatus.ERROR, ConnectionStatus.DISCONNECTED],
        ConnectionStatus.CONNECTED: [ConnectionStatus.RECONNECTING, ConnectionStatus.DISCONNECTED],
        ConnectionStatus.RECONNECTING: [ConnectionStatus.CONNECTED, ConnectionStatus.ERROR, ConnectionStatus.DISCONNECTED],
        ConnectionStatus.ERROR: [ConnectionStatus.RECONNECTING, ConnectionStatus.DISCONNECTED],
    }

    def __init__(self):
        self._transition_listeners: Dict[ConnectionStatus, List[Callable]] = {}
        self._any_transition_listeners: List[Callable] = []

    @classmethod
    def can_transition(cls, from_status: ConnectionStatus, to_status: ConnectionStatus) -> bool:
        """Check if a transition is part of the graph."""
        return to_status in cls.VALID_TRANSITIONS.get(from_status, [])

    def transition(self, record: Any, to_status: ConnectionStatus, data: Optional[dict] = None) -> bool:
        """
        Move a record to a new status.

        Args:
            record: Connection record exposing ``status`` and ``world``
            to_status: The status to transition to
            data: Optional data passed to listeners

        Returns:
            True if the transition was applied, False otherwise
        """
        from_status = record.status
        if not self.can_transition(from_status, to_status):
            logger.warning(
                f"Ignoring illegal transition {from_status.value} -> {to_status.value} "
                f"for world {record.world.name}"
            )
            return False

        record.status = to_status

        transition = StatusTransition(
            record=record,
            from_status=from_status,
            to_status=to_status,
            data=data,
        )

        for listener in self._transition_listeners.get(to_status, []):
            try:
                listener(transition)
            except Exception as e:
                logger.error(f"Error in status transition listener: {e}")

        for listener in self._any_transition_listeners:
            try:
                listener(transition)
            except Exception as e:
                logger.error(f"Error in any-transition listener: {e}")

        return True

    def on_transition_to(self, status: ConnectionStatus, callback: Callable[[StatusTransition], None]) -> None:
        """Register a callback for transitions to a specific status."""
        if status not in self._transition_listeners:
            self._transition_listeners[status] = []
        self._transition_listeners[status].append(callback)

    def on_any_transition(self, callback: Callable[[StatusTransition], None]) -> None:
        """Register a callback for any status transition."""
        self._any_transition_listeners.append(callback)
