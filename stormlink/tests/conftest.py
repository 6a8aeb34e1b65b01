"""
Shared fixtures.

Registry tests run against ``FakeTransport``, an in-memory transport that
lets each test script handshake outcomes, push frames and drop streams.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from stormlink.config import RegistryConfig
from stormlink.core.event_bus import EventBus
from stormlink.errors import ConnectionNotFound
from stormlink.models import WorldDescriptor
from stormlink.registry import ConnectionRegistry
from stormlink.storage import MemoryKeyValueStore
from stormlink.tests.utils.time_mock import FrozenTime


class FakeStream:
    """A scripted duplex channel."""

    def __init__(self, transport: "FakeTransport", connection_id: str, on_message, on_close):
        self.transport = transport
        self.channel_id = connection_id
        self.on_message = on_message
        self.on_close = on_close
        self.last_activity: Optional[float] = None
        self.closed = False

    def deliver(self, frame: bytes, at: Optional[float] = None) -> None:
        if at is not None:
            self.last_activity = at
        self.on_message(frame)

    def drop(self, reason: str = "closed by remote") -> None:
        """Simulate the remote end going away."""
        self.closed = True
        self.transport.streams.pop(self.channel_id, None)
        self.on_close(reason)


class FakeTransport:
    """In-memory stand-in for TransportClient."""

    def __init__(self):
        self.event_bus = EventBus()
        self.default_response = b"welcome"
        self.request_results: List[Any] = []
        self.requests: List[Dict[str, Any]] = []
        # (ok, error) per open_stream call; None means the handshake never reports
        self.stream_outcomes: List[Optional[Tuple[bool, Any]]] = []
        self.streams: Dict[str, FakeStream] = {}
        self.opened: List[str] = []
        self.closed: List[str] = []
        self.sent: List[Tuple[str, bytes]] = []
        self.probes: List[str] = []
        self.latency: Optional[float] = 0.02

    async def request(self, url, method="GET", body=None, headers=None, timeout=None) -> bytes:
        self.requests.append({
            "url": url,
            "method": method,
            "body": body,
            "headers": headers or {},
            "timeout": timeout,
        })
        await asyncio.sleep(0)
        result = self.request_results.pop(0) if self.request_results else self.default_response
        if isinstance(result, BaseException):
            raise result
        return result

    def open_stream(self, url, connection_id, on_message, on_close, on_connect=None, timeout=None):
        stream = FakeStream(self, connection_id, on_message, on_close)
        self.streams[connection_id] = stream
        self.opened.append(connection_id)
        outcome = self.stream_outcomes.pop(0) if self.stream_outcomes else (True, None)
        if outcome is not None and on_connect is not None:
            asyncio.get_running_loop().call_soon(on_connect, *outcome)
        return stream

    async def send_stream(self, connection_id: str, payload: bytes) -> None:
        if connection_id not in self.streams:
            raise ConnectionNotFound(connection_id)
        self.sent.append((connection_id, payload))

    async def close_stream(self, connection_id: str) -> None:
        stream = self.streams.pop(connection_id, None)
        if stream is not None:
            stream.closed = True
            self.closed.append(connection_id)

    def get_stream(self, connection_id: str) -> Optional[FakeStream]:
        return self.streams.get(connection_id)

    def has_stream(self, connection_id: str) -> bool:
        return connection_id in self.streams

    async def probe_latency(self, target: Optional[str] = None) -> Optional[float]:
        self.probes.append(target)
        return self.latency


@pytest.fixture
def frozen_time():
    return FrozenTime(1000.0)


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def registry_config():
    """Zero reconnect delay; sweeps are driven manually by tests."""
    return RegistryConfig(
        reconnect_delay=0.0,
        handshake_grace=0.1,
        activity_interval=3600.0,
        staleness_interval=3600.0,
    )


@pytest.fixture
def memory_store():
    return MemoryKeyValueStore()


@pytest_asyncio.fixture
async def registry(fake_transport, registry_config, memory_store, frozen_time):
    registry = ConnectionRegistry(
        fake_transport,
        registry_config,
        store=memory_store,
        clock=frozen_time,
    )
    await registry.start()
    yield registry
    await registry.close()


@pytest.fixture
def stream_world():
    return WorldDescriptor.duplex_stream("Alpha", "wss://alpha.example.com/stream", api_key="alpha-key")


@pytest.fixture
def http_world():
    return WorldDescriptor.request_response("Beta", "https://beta.example.com/login", "avatar", "secret")


@pytest.fixture
def local_world():
    return WorldDescriptor.local("Sandbox")
