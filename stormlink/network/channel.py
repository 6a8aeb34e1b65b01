"""
Duplex streaming channel.

Wraps one WebSocket connection: the handshake, an ordered receive loop and
a writer task draining an outbound queue.
"""

import asyncio
import time
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

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

logger = get_logger(__name__)

MessageHandler = Callable[[bytes], Any]
CloseHandler = Callable[[str], Any]
ConnectHandler = Callable[[bool, Optional[StormLinkError]], None]
StreamConnector = Callable[[str, float], Awaitable[Any]]


class ChannelState(Enum):
    """Stream channel lifecycle states."""
    PENDING = auto()
    OPEN = auto()
    CLOSED = auto()
    FAILED = auto()


async def websocket_connector(url: str, open_timeout: float) -> Any:
    """Open a WebSocket connection with the websockets library."""
    return await websockets.connect(url, open_timeout=open_timeout)


def map_connect_error(error: BaseException, url: str, open_timeout: float) -> StormLinkError:
    """Translate a handshake failure into the error taxonomy."""
    if isinstance(error, StormLinkError):
        return error
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return Timeout(open_timeout)
    if isinstance(error, InvalidURI):
        return InvalidURL(url)
    if isinstance(error, InvalidHandshake):
        # Rejected upgrades carry the HTTP status on the exception or its response
        status = getattr(error, "status_code", None)
        if status is None:
            status = getattr(getattr(error, "response", None), "status_code", None)
        if status is not None:
            return HttpError(int(status))
        return ProtocolError(str(error))
    if isinstance(error, OSError):
        return NetworkUnavailable(str(error))
    return ProtocolError(str(error))


class StreamChannel:
    """
    One duplex streaming channel.

    Frames are delivered to ``on_message`` one at a time in arrival order.
    ``on_connect`` fires exactly once: when the channel has stayed open for
    the confirmation delay, or when the handshake fails. Closing a channel
    locally before it is confirmed fails the handshake at once. ``on_close``
    fires exactly once when a confirmed channel is closed by the remote side
    or fails while receiving or sending, and never after a local close.
    """

    def __init__(
        self,
        channel_id: str,
        url: str,
        on_message: MessageHandler,
        on_close: CloseHandler,
        on_connect: Optional[ConnectHandler] = None,
        *,
        connector: Optional[StreamConnector] = None,
        open_timeout: float = 15.0,
        confirm_delay: float = 2.0,
        on_release: Optional[Callable[["StreamChannel"], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.channel_id = channel_id
        self.url = url
        self.open_timeout = open_timeout
        self.confirm_delay = confirm_delay
        self._on_message = on_message
        self._on_close = on_close
        self._on_connect = on_connect
        self._on_release = on_release
        self._connector = connector or websocket_connector
        self._clock = clock

        self._state = ChannelState.PENDING
        self._websocket: Optional[Any] = None
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._run_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._confirm_task: Optional[asyncio.Task] = None
        self._connect_reported = False
        self._close_reported = False
        self._closing = False
        self._send_error: Optional[str] = None

        self.opened_at: Optional[float] = None
        self.last_activity: Optional[float] = None
        self.frames_received = 0
        self.bytes_received = 0
        self.frames_sent = 0
        self.bytes_sent = 0

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == ChannelState.OPEN

    @property
    def is_confirmed(self) -> bool:
        return self._connect_reported and self._state == ChannelState.OPEN

    def start(self) -> None:
        """Begin the handshake in the background."""
        if self._run_task is None:
            self._run_task = asyncio.create_task(self._run(), name=f"stream:{self.channel_id}")

    def send(self, payload: bytes) -> None:
        """
        Queue a frame for sending. Frames queued before open are sent once open.

        Raises:
            ConnectionNotFound: The channel is closed
            ProtocolError: The payload is not bytes
        """
        if self._closing or self._state in (ChannelState.CLOSED, ChannelState.FAILED):
            raise ConnectionNotFound(self.channel_id)
        if not isinstance(payload, (bytes, bytearray, memoryview)):
            raise ProtocolError(f"frame must be bytes, not {type(payload).__name__}")
        self._outbox.put_nowait(payload)

    async def close(self) -> None:
        """Close the channel locally. Safe to call more than once."""
        if self._closing:
            return
        self._closing = True
        self._state = ChannelState.CLOSED

        current = asyncio.current_task()
        tasks = [
            task for task in (self._confirm_task, self._writer_task, self._run_task)
            if task is not None and not task.done() and task is not current
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if not self._connect_reported:
            logger.info(f"Stream {self.channel_id} closed before it was confirmed")
            self._report_connect(False, ProtocolError("stream closed locally"))

        if self._websocket is not None:
            try:
                await self._websocket.close()
            except Exception as e:
                logger.warning(f"Error closing stream {self.channel_id}: {e}")
            self._websocket = None

        logger.debug(f"Stream {self.channel_id} closed locally")

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _run(self) -> None:
        logger.info(f"Connecting stream {self.channel_id} to {self.url}")
        try:
            self._websocket = await asyncio.wait_for(
                self._connector(self.url, self.open_timeout),
                timeout=self.open_timeout,
            )
        except Exception as e:
            self._fail(map_connect_error(e, self.url, self.open_timeout))
            return

        if self._closing:
            # Closed while the handshake was completing
            await self._websocket.close()
            return

        self._state = ChannelState.OPEN
        self.opened_at = self._clock()
        self.last_activity = self.opened_at
        self._writer_task = asyncio.create_task(self._write_frames())
        self._confirm_task = asyncio.create_task(self._confirm())

        reason = await self._read_frames()
        if not self._closing:
            await self._finish(self._send_error or reason)

    async def _confirm(self) -> None:
        await asyncio.sleep(self.confirm_delay)
        if self._state == ChannelState.OPEN and not self._closing:
            logger.info(f"Stream {self.channel_id} connected successfully")
            self._report_connect(True, None)

    async def _read_frames(self) -> str:
        """Receive until the connection ends; returns the close reason."""
        try:
            async for frame in self._websocket:
                if isinstance(frame, str):
                    frame = frame.encode("utf-8")
                self.last_activity = self._clock()
                self.frames_received += 1
                self.bytes_received += len(frame)
                await self._deliver(frame)
        except ConnectionClosed as e:
            return f"connection lost: {e}"
        except Exception as e:
            logger.error(f"Stream {self.channel_id} receive error: {e}")
            return f"receive error: {e}"
        return "closed by remote"

    async def _deliver(self, frame: bytes) -> None:
        try:
            if asyncio.iscoroutinefunction(self._on_message):
                await self._on_message(frame)
            else:
                self._on_message(frame)
        except Exception as e:
            logger.error(f"Error in message handler for stream {self.channel_id}: {e}")

    async def _write_frames(self) -> None:
        while True:
            frame = await self._outbox.get()
            try:
                await self._websocket.send(frame)
            except ConnectionClosed:
                logger.debug(f"Stream {self.channel_id} closed while sending")
                return
            except Exception as e:
                # Fail the channel; the reader ends and reports the send error
                logger.error(f"Failed to send frame on stream {self.channel_id}: {e}")
                self._send_error = f"send error: {e}"
                await self._websocket.close()
                return
            self.frames_sent += 1
            self.bytes_sent += len(frame)

    async def _finish(self, reason: str) -> None:
        self._state = ChannelState.CLOSED
        for task in (self._confirm_task, self._writer_task):
            if task is not None and not task.done():
                task.cancel()
        if self._websocket is not None:
            try:
                await self._websocket.close()
            except Exception as e:
                logger.debug(f"Error closing finished stream {self.channel_id}: {e}")
        self._release()

        if not self._connect_reported:
            logger.error(f"Stream {self.channel_id} closed before it was confirmed: {reason}")
            self._report_connect(False, ProtocolError(reason))
            return

        logger.warning(f"Stream {self.channel_id} ended: {reason}")
        if not self._close_reported:
            self._close_reported = True
            try:
                result = self._on_close(reason)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Error in close handler for stream {self.channel_id}: {e}")

    def _fail(self, error: StormLinkError) -> None:
        self._state = ChannelState.FAILED
        logger.error(f"Stream {self.channel_id} connection failed: {error}")
        self._release()
        self._report_connect(False, error)

    def _report_connect(self, ok: bool, error: Optional[StormLinkError]) -> None:
        if self._connect_reported:
            return
        self._connect_reported = True
        if self._on_connect is None:
            return
        try:
            self._on_connect(ok, error)
        except Exception as e:
            logger.error(f"Error in connect handler for stream {self.channel_id}: {e}")

    def _release(self) -> None:
        if self._on_release is not None:
            self._on_release(self)
