"""
Connection records and health classification.
"""

import time
import uuid
from typing import List, Optional

from pydantic import BaseModel, Field

from ..models import (
    ConnectionHealth,
    ConnectionHistoryEntry,
    ConnectionStatistics,
    ConnectionStatus,
    OverallStatistics,
    WorldDescriptor,
)

# Latency boundaries (seconds) between health classes
POOR_LATENCY = 0.3
FAIR_LATENCY = 0.15
GOOD_LATENCY = 0.05

DEFAULT_IDLE_THRESHOLD = 60.0


def classify_latency(latency: float) -> ConnectionHealth:
    """Map an average latency to a health class."""
    if latency > POOR_LATENCY:
        return ConnectionHealth.POOR
    if latency > FAIR_LATENCY:
        return ConnectionHealth.FAIR
    if latency > GOOD_LATENCY:
        return ConnectionHealth.GOOD
    return ConnectionHealth.EXCELLENT


class ConnectionRecord(BaseModel):
    """
    State of one connection attempt or live connection.

    Owned and mutated exclusively by the connection registry; callers only
    ever see snapshots.
    """
    world: WorldDescriptor
    connection_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    created_at: float = Field(default_factory=time.time)
    connected_at: Optional[float] = None
    last_activity: float = Field(default_factory=time.time)
    statistics: ConnectionStatistics = Field(default_factory=ConnectionStatistics)
    failed_reconnects: int = 0

    @property
    def world_id(self) -> str:
        return self.world.id

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    @property
    def ever_connected(self) -> bool:
        return self.connected_at is not None

    def duration(self, now: float) -> float:
        """Seconds since the connection first opened (or was attempted)."""
        start = self.connected_at if self.connected_at is not None else self.created_at
        return max(0.0, now - start)

    def idle_for(self, now: float) -> float:
        return max(0.0, now - self.last_activity)

    def health(self, now: float, idle_threshold: float = DEFAULT_IDLE_THRESHOLD) -> ConnectionHealth:
        """Derive a health label from status, activity recency and latency."""
        if self.status == ConnectionStatus.DISCONNECTED:
            return ConnectionHealth.DISCONNECTED
        if self.status in (ConnectionStatus.CONNECTING, ConnectionStatus.RECONNECTING):
            return ConnectionHealth.CONNECTING
        if self.status == ConnectionStatus.ERROR:
            return ConnectionHealth.ERROR
        if self.idle_for(now) > idle_threshold:
            return ConnectionHealth.POOR
        return classify_latency(self.statistics.average_latency)

    def snapshot(self) -> "ConnectionRecord":
        return self.model_copy(deep=True)


class ConnectionExport(BaseModel):
    """Serializable dump of live connections, history and totals."""
    connections: List[ConnectionRecord] = Field(default_factory=list)
    history: List[ConnectionHistoryEntry] = Field(default_factory=list)
    statistics: OverallStatistics = Field(default_factory=OverallStatistics)
    export_date: float = Field(default_factory=time.time)
