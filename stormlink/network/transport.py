"""
Transport client.

Performs request/response exchanges over a pooled aiohttp session, owns the
table of duplex streaming channels, and exposes network reachability and
latency sampling. Carries no world-specific semantics and never retries.
"""

import asyncio
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union
from urllib.parse import urlparse

import aiohttp

from ..config import TransportConfig
from ..core.event_bus import EventBus, EventType
from ..errors import (
    ConnectionNotFound,
    HttpError,
    InvalidURL,
    NetworkUnavailable,
    ProtocolError,
    StormLinkError,
    Timeout,
)
from ..logging_config import get_logger
from ..models import NetworkDiagnostics, Reachability
from .channel import CloseHandler, ConnectHandler, MessageHandler, StreamChannel, StreamConnector
from .reachability import PathProbe, ReachabilityHandler, ReachabilityMonitor, make_socket_probe

logger = get_logger(__name__)

PROBE_TIMEOUT_CAP = 5.0

DEFAULT_LATENCY_TARGETS = ("https://www.google.com", "https://1.1.1.1")

RequestBody = Union[bytes, str, Mapping[str, Any], None]


def validate_http_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidURL(url)


def validate_stream_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in ("ws", "wss") or not parsed.netloc:
        raise InvalidURL(url)


class TransportClient:
    """
    Network requests, streams and low-level network health.

    Use as an async context manager, or call ``start()`` and ``close()``.
    """

    def __init__(
        self,
        config: Optional[TransportConfig] = None,
        *,
        event_bus: Optional[EventBus] = None,
        session: Optional[aiohttp.ClientSession] = None,
        stream_connector: Optional[StreamConnector] = None,
        path_probe: Optional[PathProbe] = None,
    ):
        self.config = config or TransportConfig()
        self.event_bus = event_bus or EventBus()
        self._session = session
        self._owns_session = session is None
        self._stream_connector = stream_connector
        self._channels: Dict[str, StreamChannel] = {}
        self._background: Set[asyncio.Task] = set()

        probe = path_probe or make_socket_probe(
            self.config.probe_host,
            self.config.probe_port,
            self.config.probe_timeout,
        )
        self._monitor = ReachabilityMonitor(probe, self.config.reachability_interval)
        self._monitor.subscribe(self._on_reachability_changed)

        self.latency: Optional[float] = None

    async def __aenter__(self) -> "TransportClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def start(self) -> None:
        """Open the HTTP session and begin monitoring the network path."""
        await self._get_session()
        await self._monitor.start()

    async def close(self) -> None:
        """Close all streams, stop monitoring and release the HTTP session."""
        await self.close_all()
        await self._monitor.stop()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout)
            )
            self._owns_session = True
        return self._session

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # =========================================================================
    # REACHABILITY AND LATENCY
    # =========================================================================

    @property
    def reachability(self) -> Reachability:
        return self._monitor.current

    def subscribe_reachability(self, handler: ReachabilityHandler) -> None:
        self._monitor.subscribe(handler)

    def unsubscribe_reachability(self, handler: ReachabilityHandler) -> None:
        self._monitor.unsubscribe(handler)

    async def refresh_reachability(self) -> Reachability:
        return await self._monitor.refresh()

    def _on_reachability_changed(self, reachability: Reachability) -> None:
        self.event_bus.emit(
            EventType.REACHABILITY_CHANGED,
            {
                "is_reachable": reachability.is_reachable,
                "interface_kind": reachability.interface_kind.value,
            },
            "transport",
        )
        if reachability.is_reachable:
            self._spawn(self.probe_latency())

    async def probe_latency(self, target: Optional[str] = None) -> Optional[float]:
        """
        Measure round-trip time to a reference endpoint.

        Returns:
            Elapsed seconds, or None when the probe failed or timed out
        """
        target = target or self.config.probe_target
        timeout = min(self.config.probe_timeout, PROBE_TIMEOUT_CAP)
        start = time.perf_counter()
        try:
            await self.request(target, "HEAD", timeout=timeout)
        except HttpError:
            # Any HTTP answer is a completed round trip
            pass
        except StormLinkError as e:
            logger.debug(f"Latency probe to {target} failed: {e}")
            return None

        elapsed = time.perf_counter() - start
        self.latency = elapsed
        self.event_bus.emit(EventType.LATENCY_MEASURED, {"target": target, "latency": elapsed}, "transport")
        return elapsed

    async def check_reachability(self, url: str) -> bool:
        """Check whether a service answers without a server-side error."""
        try:
            await self.request(url, "HEAD", timeout=self.config.reachability_timeout)
        except HttpError as e:
            return e.status < 500
        except StormLinkError:
            return False
        return True

    async def run_diagnostics(
        self,
        latency_targets: Iterable[str] = DEFAULT_LATENCY_TARGETS,
        service_targets: Iterable[str] = (),
    ) -> NetworkDiagnostics:
        """Run a one-shot network diagnostics pass."""
        reachability = await self.refresh_reachability()
        latency_targets = list(latency_targets)
        service_targets = list(service_targets)

        latencies = await asyncio.gather(*(self.probe_latency(t) for t in latency_targets))
        reachable = await asyncio.gather(*(self.check_reachability(t) for t in service_targets))

        return NetworkDiagnostics(
            is_connected=reachability.is_reachable,
            connection_type=reachability.interface_kind,
            latencies=dict(zip(latency_targets, latencies)),
            service_reachability=dict(zip(service_targets, reachable)),
        )

    # =========================================================================
    # REQUEST / RESPONSE
    # =========================================================================

    async def request(
        self,
        url: str,
        method: str = "GET",
        body: RequestBody = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> bytes:
        """
        Perform one request/response exchange.

        Args:
            url: http(s) URL
            method: HTTP method
            body: Raw bytes/str, or a mapping sent as JSON
            headers: Extra request headers
            timeout: Deadline in seconds (defaults to the configured request timeout)

        Returns:
            Response payload for 2xx responses

        Raises:
            InvalidURL, Timeout, HttpError, NetworkUnavailable, ProtocolError
        """
        validate_http_url(url)
        timeout = timeout or self.config.request_timeout
        session = await self._get_session()

        kwargs: Dict[str, Any] = {
            "headers": headers or {},
            "timeout": aiohttp.ClientTimeout(total=timeout),
        }
        if isinstance(body, (bytes, bytearray, str)):
            kwargs["data"] = body
        elif body is not None:
            kwargs["json"] = dict(body)

        logger.debug(f"{method} {url}")
        try:
            async with session.request(method, url, **kwargs) as response:
                payload = await response.read()
                if not 200 <= response.status < 300:
                    raise HttpError(response.status, payload)
        except (asyncio.TimeoutError, TimeoutError):
            raise Timeout(timeout) from None
        except aiohttp.InvalidURL:
            raise InvalidURL(url) from None
        except aiohttp.ClientConnectorError as e:
            raise NetworkUnavailable(str(e)) from e
        except aiohttp.ClientError as e:
            raise ProtocolError(str(e)) from e

        logger.debug(f"Fetched {len(payload)} bytes from {url}")
        return payload

    # =========================================================================
    # DUPLEX STREAMS
    # =========================================================================

    def open_stream(
        self,
        url: str,
        connection_id: str,
        on_message: MessageHandler,
        on_close: CloseHandler,
        on_connect: Optional[ConnectHandler] = None,
        timeout: Optional[float] = None,
    ) -> StreamChannel:
        """
        Open a duplex channel keyed by ``connection_id``.

        Returns immediately; the handshake proceeds in the background and
        its outcome is reported once through ``on_connect``. Any channel
        already registered under the id is closed first.
        """
        validate_stream_url(url)

        existing = self._channels.pop(connection_id, None)
        if existing is not None:
            self._spawn(existing.close())

        def handle_connect(ok: bool, error: Optional[StormLinkError]) -> None:
            if ok:
                self.event_bus.emit(EventType.STREAM_OPENED, {"connection_id": connection_id}, "transport")
            if on_connect is not None:
                on_connect(ok, error)

        async def handle_close(reason: str) -> None:
            self.event_bus.emit(
                EventType.STREAM_CLOSED,
                {"connection_id": connection_id, "reason": reason},
                "transport",
            )
            result = on_close(reason)
            if asyncio.iscoroutine(result):
                await result

        channel = StreamChannel(
            connection_id,
            url,
            on_message,
            handle_close,
            handle_connect,
            connector=self._stream_connector,
            open_timeout=timeout or self.config.stream_timeout,
            confirm_delay=self.config.handshake_confirm_delay,
            on_release=self._release_channel,
        )
        self._channels[connection_id] = channel
        channel.start()
        return channel

    def _release_channel(self, channel: StreamChannel) -> None:
        if self._channels.get(channel.channel_id) is channel:
            del self._channels[channel.channel_id]

    async def send_stream(self, connection_id: str, payload: bytes) -> None:
        """
        Queue a frame on a channel.

        Raises:
            ConnectionNotFound: No channel is registered under the id
            ProtocolError: The payload is not bytes
        """
        channel = self._channels.get(connection_id)
        if channel is None:
            raise ConnectionNotFound(connection_id)
        channel.send(payload)

    async def close_stream(self, connection_id: str) -> None:
        """Close a channel. Unknown ids are ignored."""
        channel = self._channels.pop(connection_id, None)
        if channel is None:
            return
        await channel.close()
        logger.info(f"Closed stream connection: {connection_id}")

    async def close_all(self) -> None:
        """Close every registered channel."""
        channels = list(self._channels.values())
        self._channels.clear()
        if channels:
            await asyncio.gather(*(channel.close() for channel in channels))
        for channel in channels:
            logger.info(f"Closed stream connection: {channel.channel_id}")

    def has_stream(self, connection_id: str) -> bool:
        return connection_id in self._channels

    def get_stream(self, connection_id: str) -> Optional[StreamChannel]:
        return self._channels.get(connection_id)

    def stream_ids(self) -> List[str]:
        return list(self._channels)
