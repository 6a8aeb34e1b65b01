"""
StormLink - client-side connection manager for virtual worlds.

A ``TransportClient`` performs request/response exchanges and owns duplex
streams; a ``ConnectionRegistry`` built on top of it tracks one connection
per world, with health, statistics, reconnection and history.
"""

from .config import StormLinkConfig
from .manager import build_registry, open_manager
from .core import EventBus, EventType
from .errors import StormLinkError
from .models import ConnectionStatus, ProtocolKind, StatisticsDelta, WorldDescriptor
from .network import TransportClient
from .registry import ConnectionRegistry

__version__ = "0.1.0"

__all__ = [
    "StormLinkConfig",
    "EventBus",
    "EventType",
    "StormLinkError",
    "ConnectionStatus",
    "ProtocolKind",
    "StatisticsDelta",
    "WorldDescriptor",
    "TransportClient",
    "ConnectionRegistry",
    "build_registry",
    "open_manager",
]
