"""
Connection manager entrypoint.

Wires configuration, logging, durable storage, the transport client and the
connection registry together for applications that want a ready-made stack.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from .config import StormLinkConfig
from .core.event_bus import EventBus
from .logging_config import get_logger, setup_logging
from .network import TransportClient
from .network.reachability import PathProbe
from .registry import ConnectionRegistry
from .storage import FileKeyValueStore

logger = get_logger(__name__)


def build_registry(
    config: StormLinkConfig,
    *,
    event_bus: Optional[EventBus] = None,
    path_probe: Optional[PathProbe] = None,
) -> ConnectionRegistry:
    """Create a transport and a registry sharing one event bus. Nothing is started."""
    bus = event_bus or EventBus()
    transport = TransportClient(config.transport, event_bus=bus, path_probe=path_probe)
    store = FileKeyValueStore(config.storage.data_dir)
    return ConnectionRegistry(transport, config.registry, event_bus=bus, store=store)


@asynccontextmanager
async def open_manager(
    config: Optional[StormLinkConfig] = None,
    *,
    configure_logging: bool = True,
    path_probe: Optional[PathProbe] = None,
) -> AsyncIterator[ConnectionRegistry]:
    """
    Run a connection registry for the duration of the block.

    The transport is started before the registry and closed after it, so
    every world is disconnected before the HTTP session goes away.
    """
    config = config or StormLinkConfig.from_yaml()
    if configure_logging:
        setup_logging(config.debug)

    registry = build_registry(config, path_probe=path_probe)
    transport = registry.transport

    logger.info("Connection manager starting")
    await transport.start()
    try:
        await registry.start()
        try:
            yield registry
        finally:
            await registry.close()
    finally:
        await transport.close()
        logger.info("Connection manager stopped")
