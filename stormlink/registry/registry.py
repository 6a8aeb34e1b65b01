"""
Connection registry.

Tracks one connection record per world, drives each record through the
status graph, and keeps statistics, health and a bounded history.

All mutation happens on the event loop that owns the registry. Transport
callbacks never touch records directly: they post events to an inbox that
a single worker drains in order, so record state only changes between
awaits. Background handshake and reconnection tasks re-check that the
record they were started for is still registered before every transition.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse, urlunparse

from ..config import RegistryConfig
from ..core.event_bus import EventBus, EventType
from ..core.state_machine import ConnectionStateMachine, StatusTransition
from ..errors import (
    AuthenticationFailed,
    ConnectionAlreadyExists,
    ConnectionNotFound,
    HttpError,
    ProtocolError,
    StormLinkError,
    Timeout,
)
from ..logging_config import get_logger, log_with_context
from ..models import (
    ConnectionHealth,
    ConnectionHistoryEntry,
    ConnectionReport,
    ConnectionStatus,
    OverallStatistics,
    ProtocolKind,
    ProtocolStatistics,
    StatisticsDelta,
    WorldDescriptor,
)
from ..storage import KeyValueStore
from .history import ConnectionHistory
from .record import ConnectionExport, ConnectionRecord
from .retry import FlatDelay, RetryPolicy

logger = get_logger(__name__)

AUTH_FAILURE_STATUSES = (401, 403)

HandshakePayload = Callable[[WorldDescriptor], Any]


class RegistryEventKind(Enum):
    FRAME_RECEIVED = auto()
    STREAM_CLOSED = auto()


@dataclass
class RegistryEvent:
    """Transport notification queued for the registry worker."""
    kind: RegistryEventKind
    world_id: str
    connection_id: str
    frame: bytes = b""
    reason: str = ""


def probe_url_for(world: WorldDescriptor) -> Optional[str]:
    """HTTP URL used to sample latency for a world, if it has one."""
    if world.protocol == ProtocolKind.LOCAL_ONLY:
        return None
    parsed = urlparse(world.url)
    scheme = {"ws": "http", "wss": "https"}.get(parsed.scheme, parsed.scheme)
    if scheme not in ("http", "https") or not parsed.netloc:
        return None
    return urlunparse(parsed._replace(scheme=scheme))


class ConnectionRegistry:
    """
    Registry of world connections.

    Use as an async context manager, or call ``start()`` and ``close()``.
    Every query returns snapshots; records are never handed out for
    mutation.
    """

    def __init__(
        self,
        transport,
        config: Optional[RegistryConfig] = None,
        *,
        event_bus: Optional[EventBus] = None,
        store: Optional[KeyValueStore] = None,
        retry_policy: Optional[RetryPolicy] = None,
        handshake_payload: Optional[HandshakePayload] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or RegistryConfig()
        self.transport = transport
        self.event_bus = event_bus or getattr(transport, "event_bus", None) or EventBus()
        self.retry_policy = retry_policy or FlatDelay(self.config.reconnect_delay)
        self._handshake_payload = handshake_payload
        self._clock = clock

        self._history = ConnectionHistory(store, self.config.history_key, self.config.history_limit)
        self._records: Dict[str, ConnectionRecord] = {}
        self._handshakes: Dict[str, asyncio.Task] = {}
        self._reconnections: Dict[str, asyncio.Task] = {}

        self._state_machine = ConnectionStateMachine()
        self._state_machine.on_any_transition(self._on_transition)
        self._state_machine.on_transition_to(ConnectionStatus.ERROR, self._on_error)

        self._inbox: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._sweeps: List[asyncio.Task] = []

    async def __aenter__(self) -> "ConnectionRegistry":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """Start the inbox worker and the periodic sweeps."""
        if self._worker is None:
            self._worker = asyncio.create_task(self._process_events())
        if not self._sweeps:
            self._sweeps = [
                asyncio.create_task(self._sweep(self.config.activity_interval, self.refresh_activity)),
                asyncio.create_task(self._sweep(self.config.staleness_interval, self.check_stale_connections)),
            ]
        logger.info("Connection registry started")

    async def stop(self) -> None:
        """Stop background work. Records are left in place."""
        tasks = list(self._sweeps)
        tasks.extend(self._handshakes.values())
        tasks.extend(self._reconnections.values())
        if self._worker is not None:
            tasks.append(self._worker)

        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._sweeps = []
        self._handshakes.clear()
        self._reconnections.clear()
        self._worker = None

    async def close(self) -> None:
        """Disconnect every world and stop background work."""
        await self.disconnect_all()
        await self.stop()
        logger.info("Connection registry closed")

    async def wait_idle(self) -> None:
        """Wait until every queued transport event has been applied."""
        if self._worker is not None and not self._worker.done():
            await self._inbox.join()

    async def _sweep(self, interval: float, action: Callable[[], Any]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                action()
            except Exception as e:
                logger.error(f"Error in periodic sweep {action.__name__}: {e}")

    # =========================================================================
    # INBOX
    # =========================================================================

    def _post(self, event: RegistryEvent) -> None:
        if self._worker is not None and not self._worker.done():
            self._inbox.put_nowait(event)
        else:
            self._apply_event(event)

    async def _process_events(self) -> None:
        while True:
            event = await self._inbox.get()
            try:
                self._apply_event(event)
            except Exception as e:
                logger.error(f"Error applying {event.kind.name} for world {event.world_id}: {e}")
            finally:
                self._inbox.task_done()

    def _apply_event(self, event: RegistryEvent) -> None:
        record = self._records.get(event.world_id)
        if record is None or record.connection_id != event.connection_id:
            logger.debug(f"Dropping {event.kind.name} for retired connection {event.connection_id}")
            return

        if event.kind == RegistryEventKind.FRAME_RECEIVED:
            self._apply_delta(record, StatisticsDelta.received(len(event.frame)))
            self.event_bus.emit(
                EventType.FRAME_RECEIVED,
                {"world_id": record.world_id, "frame": event.frame},
                "registry",
            )
        elif event.kind == RegistryEventKind.STREAM_CLOSED:
            if record.status != ConnectionStatus.CONNECTED:
                return
            logger.warning(f"Stream for {record.world.name} closed: {event.reason}")
            record.statistics.last_error = f"Stream closed: {event.reason}"
            self._begin_reconnection(record, explicit=False, reason="stream closed")

    # =========================================================================
    # NOTIFICATIONS
    # =========================================================================

    def _emit(self, event_type: EventType, record: ConnectionRecord, **extra) -> None:
        data = {"world_id": record.world_id, "record": record.snapshot()}
        data.update(extra)
        self.event_bus.emit(event_type, data, "registry")

    def _on_transition(self, transition: StatusTransition) -> None:
        record = transition.record
        log_with_context(
            logger,
            logging.INFO,
            f"Connection to {record.world.name} is {transition.to_status.value}",
            world_id=record.world_id,
            from_status=transition.from_status.value,
            to_status=transition.to_status.value,
        )
        self._emit(
            EventType.STATUS_CHANGED,
            record,
            from_status=transition.from_status,
            to_status=transition.to_status,
            details=transition.data or {},
        )

    def _on_error(self, transition: StatusTransition) -> None:
        record = transition.record
        logger.error(f"Connection to {record.world.name} failed: {record.statistics.last_error}")

    def _transition(self, record: ConnectionRecord, status: ConnectionStatus, **data) -> bool:
        return self._state_machine.transition(record, status, data or None)

    def _is_current(self, record: ConnectionRecord) -> bool:
        return self._records.get(record.world_id) is record

    # =========================================================================
    # CONNECTION LIFECYCLE
    # =========================================================================

    async def add_connection(self, world: WorldDescriptor) -> ConnectionRecord:
        """
        Register a world and start connecting to it.

        Returns as soon as the record is in ``connecting``; the handshake
        runs in the background. Use ``wait_for_handshake`` to await it.

        Raises:
            ConnectionAlreadyExists: The world already has a record
        """
        if world.id in self._records:
            raise ConnectionAlreadyExists(world.id)

        now = self._clock()
        record = ConnectionRecord(world=world, created_at=now, last_activity=now)
        self._records[world.id] = record
        logger.info(f"Adding connection to {world.name} ({world.protocol.value})")

        self._emit(EventType.CONNECTION_ADDED, record)
        self._transition(record, ConnectionStatus.CONNECTING)
        self._handshakes[world.id] = asyncio.create_task(self._run_initial_handshake(record))
        return record.snapshot()

    async def wait_for_handshake(self, world_id: str) -> Optional[ConnectionStatus]:
        """Wait for an in-flight initial handshake; returns the resulting status."""
        task = self._handshakes.get(world_id)
        if task is not None:
            await asyncio.wait({task})
        record = self._records.get(world_id)
        return record.status if record else None

    async def remove_connection(self, world_id: str) -> bool:
        """
        Tear down a world's connection and record it in history.

        Idempotent: returns False when the world has no record.
        """
        record = self._records.pop(world_id, None)
        if record is None:
            return False

        await self._cancel_tasks(world_id)
        if record.world.protocol == ProtocolKind.DUPLEX_STREAM:
            await self.transport.close_stream(record.connection_id)

        final_status = record.status
        self._transition(record, ConnectionStatus.DISCONNECTED, reason="removed")
        self._record_history(record, final_status)
        logger.info(f"Removed connection to {record.world.name}")
        self._emit(EventType.CONNECTION_REMOVED, record, removed=True)
        return True

    async def disconnect_all(self) -> None:
        """Remove every connection."""
        for world_id in list(self._records):
            await self.remove_connection(world_id)

    async def _cancel_tasks(self, world_id: str) -> None:
        current = asyncio.current_task()
        tasks = []
        for table in (self._handshakes, self._reconnections):
            task = table.pop(world_id, None)
            if task is not None and task is not current:
                task.cancel()
                tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _record_history(self, record: ConnectionRecord, final_status: ConnectionStatus) -> None:
        now = self._clock()
        entry = ConnectionHistoryEntry(
            world=record.world.redacted(),
            connected_at=record.connected_at if record.connected_at is not None else record.created_at,
            disconnected_at=now,
            duration=record.duration(now),
            success=record.ever_connected,
            status=final_status,
            error_message=record.statistics.last_error,
            statistics=record.statistics.model_copy(deep=True),
        )
        self._history.append(entry)

    # =========================================================================
    # HANDSHAKE
    # =========================================================================

    async def _run_initial_handshake(self, record: ConnectionRecord) -> None:
        try:
            await self._handshake(record)
        except StormLinkError as e:
            if self._is_current(record):
                record.statistics.last_error = str(e)
                self._transition(record, ConnectionStatus.ERROR)
        else:
            if self._is_current(record):
                self._mark_connected(record)
                self._transition(record, ConnectionStatus.CONNECTED)
        finally:
            if self._handshakes.get(record.world_id) is asyncio.current_task():
                del self._handshakes[record.world_id]

    def _mark_connected(self, record: ConnectionRecord) -> None:
        now = self._clock()
        if record.connected_at is None:
            record.connected_at = now
        record.last_activity = now

    async def _handshake(self, record: ConnectionRecord) -> None:
        """Run the protocol handshake; any failure surfaces as a StormLinkError."""
        try:
            if record.world.protocol == ProtocolKind.REQUEST_RESPONSE:
                await self._request_handshake(record)
            elif record.world.protocol == ProtocolKind.DUPLEX_STREAM:
                await self._stream_handshake(record)
        except HttpError as e:
            if e.status in AUTH_FAILURE_STATUSES:
                raise AuthenticationFailed(f"Authentication failed: HTTP {e.status}") from e
            raise
        except StormLinkError:
            raise
        except Exception as e:
            raise ProtocolError(str(e)) from e

    async def _request_handshake(self, record: ConnectionRecord) -> None:
        world = record.world
        payload = self._handshake_payload(world) if self._handshake_payload else None
        method = "POST" if payload is not None else "GET"
        response = await self.transport.request(
            world.url,
            method,
            body=payload,
            headers=world.auth_headers(),
            timeout=world.settings.timeout,
        )
        sent = len(payload) if isinstance(payload, (bytes, bytearray, str)) else 0
        record.statistics.apply(StatisticsDelta(
            bytes_sent=sent,
            packets_sent=1,
            bytes_received=len(response),
            packets_received=1,
        ))

    async def _stream_handshake(self, record: ConnectionRecord) -> None:
        world = record.world
        world_id, connection_id = record.world_id, record.connection_id
        outcome = asyncio.get_running_loop().create_future()

        def on_connect(ok: bool, error: Optional[StormLinkError]) -> None:
            if not outcome.done():
                outcome.set_result((ok, error))

        def on_message(frame: bytes) -> None:
            self._post(RegistryEvent(RegistryEventKind.FRAME_RECEIVED, world_id, connection_id, frame=frame))

        def on_close(reason: str) -> None:
            self._post(RegistryEvent(RegistryEventKind.STREAM_CLOSED, world_id, connection_id, reason=reason))

        self.transport.open_stream(
            world.url,
            connection_id,
            on_message,
            on_close,
            on_connect,
            timeout=world.settings.timeout,
        )

        try:
            ok, error = await asyncio.wait_for(
                outcome,
                timeout=world.settings.timeout + self.config.handshake_grace,
            )
        except asyncio.TimeoutError:
            await self.transport.close_stream(connection_id)
            raise Timeout(world.settings.timeout) from None

        if not ok:
            raise error or ProtocolError("stream handshake failed")

    # =========================================================================
    # RECONNECTION
    # =========================================================================

    async def attempt_reconnection(self, world_id: str) -> bool:
        """
        Reconnect a world now, bypassing its auto-reconnect setting.

        Runs at least one attempt. Returns True if the world ends up
        connected.

        Raises:
            ConnectionNotFound: The world has no record
        """
        record = self._records.get(world_id)
        if record is None:
            raise ConnectionNotFound(world_id)

        task = self._begin_reconnection(record, explicit=True, reason="requested")
        if task is None:
            return False

        await asyncio.wait({task})
        if task.cancelled() or task.exception() is not None:
            return False
        return task.result()

    def _begin_reconnection(self, record: ConnectionRecord, explicit: bool, reason: str) -> Optional[asyncio.Task]:
        existing = self._reconnections.get(record.world_id)
        if existing is not None and not existing.done():
            return existing

        if not self._transition(record, ConnectionStatus.RECONNECTING, reason=reason):
            return None

        settings = record.world.settings
        if explicit:
            attempts = max(1, settings.max_reconnect_attempts)
        else:
            attempts = settings.max_reconnect_attempts if settings.auto_reconnect else 0

        record.failed_reconnects = 0
        task = asyncio.create_task(self._reconnect(record, attempts))
        self._reconnections[record.world_id] = task
        return task

    async def _reconnect(self, record: ConnectionRecord, max_attempts: int) -> bool:
        world = record.world
        try:
            for attempt in range(1, max_attempts + 1):
                delay = self.retry_policy.delay(attempt)
                logger.info(
                    f"Reconnecting to {world.name} in {delay:g}s "
                    f"(attempt {attempt}/{max_attempts})"
                )
                await asyncio.sleep(delay)
                if not self._is_current(record):
                    return False

                try:
                    await self._handshake(record)
                except StormLinkError as e:
                    if not self._is_current(record):
                        return False
                    record.failed_reconnects += 1
                    record.statistics.last_error = str(e)
                    logger.warning(f"Reconnection attempt {attempt} to {world.name} failed: {e}")
                    continue

                if not self._is_current(record):
                    return False
                self._mark_connected(record)
                record.failed_reconnects = 0
                record.statistics.reconnect_count += 1
                self._transition(record, ConnectionStatus.CONNECTED, attempt=attempt)
                return True

            if not self._is_current(record):
                return False
            if max_attempts == 0:
                record.statistics.last_error = record.statistics.last_error or "Automatic reconnection disabled"
            self._transition(record, ConnectionStatus.ERROR, attempts=max_attempts)
            self._emit(EventType.RECONNECTION_FAILED, record, attempts=max_attempts)
            return False
        finally:
            if self._reconnections.get(world.id) is asyncio.current_task():
                del self._reconnections[world.id]

    # =========================================================================
    # STATISTICS AND ACTIVITY
    # =========================================================================

    def _apply_delta(self, record: ConnectionRecord, delta: StatisticsDelta) -> None:
        record.statistics.apply(delta)
        record.last_activity = self._clock()
        self._emit(EventType.STATISTICS_UPDATED, record)

    def update_statistics(self, world_id: str, delta: StatisticsDelta) -> bool:
        """Merge a traffic delta into a world's statistics. Unknown worlds are ignored."""
        record = self._records.get(world_id)
        if record is None:
            logger.debug(f"Ignoring statistics for unknown world {world_id}")
            return False
        self._apply_delta(record, delta)
        return True

    def record_latency(self, world_id: str, sample: float) -> bool:
        return self.update_statistics(world_id, StatisticsDelta(latency=sample))

    async def measure_latency(self, world_id: str) -> Optional[float]:
        """Probe a world's endpoint and fold the sample into its statistics."""
        record = self._records.get(world_id)
        if record is None:
            return None
        target = probe_url_for(record.world)
        if target is None:
            return None

        sample = await self.transport.probe_latency(target)
        if sample is not None:
            self.record_latency(world_id, sample)
        return sample

    async def send(self, world_id: str, payload: bytes) -> None:
        """
        Send a frame on a world's stream.

        Raises:
            ConnectionNotFound: No record, or no open stream for it
            ProtocolError: The payload is not bytes
        """
        record = self._records.get(world_id)
        if record is None:
            raise ConnectionNotFound(world_id)
        await self.transport.send_stream(record.connection_id, payload)
        self._apply_delta(record, StatisticsDelta.sent(len(payload)))

    def refresh_activity(self) -> None:
        """Pull transport activity into connected records and publish fresh snapshots."""
        for record in list(self._records.values()):
            if record.status != ConnectionStatus.CONNECTED:
                continue

            if record.world.protocol == ProtocolKind.LOCAL_ONLY:
                record.last_activity = self._clock()
            elif record.world.protocol == ProtocolKind.DUPLEX_STREAM:
                channel = self.transport.get_stream(record.connection_id)
                if channel is None:
                    logger.debug(f"No open stream for {record.world.name}")
                elif channel.last_activity and channel.last_activity > record.last_activity:
                    record.last_activity = channel.last_activity

            self._emit(EventType.STATISTICS_UPDATED, record)

    def check_stale_connections(self) -> List[str]:
        """Start reconnection for connected records idle past the stale threshold."""
        now = self._clock()
        stale = []
        for record in list(self._records.values()):
            if record.status != ConnectionStatus.CONNECTED:
                continue
            if now - record.last_activity <= self.config.stale_threshold:
                continue
            logger.warning(f"Connection to {record.world.name} appears stale")
            stale.append(record.world_id)
            self._begin_reconnection(record, explicit=False, reason="stale")
        return stale

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_connection(self, world_id: str) -> Optional[ConnectionRecord]:
        record = self._records.get(world_id)
        return record.snapshot() if record else None

    @property
    def connections(self) -> List[ConnectionRecord]:
        return [record.snapshot() for record in self._records.values()]

    def get_active_connections(self) -> List[ConnectionRecord]:
        return self.get_connections_by_status(ConnectionStatus.CONNECTED)

    def get_connections_by_status(self, status: ConnectionStatus) -> List[ConnectionRecord]:
        return [record.snapshot() for record in self._records.values() if record.status == status]

    def get_connections_for_protocol(self, protocol: ProtocolKind) -> List[ConnectionRecord]:
        return [record.snapshot() for record in self._records.values() if record.world.protocol == protocol]

    def has_active_connections(self) -> bool:
        return bool(self._records)

    def connected_worlds_count(self) -> int:
        return sum(1 for record in self._records.values() if record.status == ConnectionStatus.CONNECTED)

    def health_of(self, world_id: str) -> ConnectionHealth:
        record = self._records.get(world_id)
        if record is None:
            return ConnectionHealth.DISCONNECTED
        return record.health(self._clock(), self.config.idle_health_threshold)

    def overall_statistics(self) -> OverallStatistics:
        """Totals across every registered record."""
        records = list(self._records.values())
        now = self._clock()
        sampled = [r.statistics.average_latency for r in records if r.statistics.latency_samples]
        return OverallStatistics(
            active_connections=len(records),
            total_bytes_received=sum(r.statistics.bytes_received for r in records),
            total_bytes_sent=sum(r.statistics.bytes_sent for r in records),
            total_packets_received=sum(r.statistics.packets_received for r in records),
            total_packets_sent=sum(r.statistics.packets_sent for r in records),
            average_latency=sum(sampled) / len(sampled) if sampled else 0.0,
            connection_uptime=sum(r.duration(now) for r in records if r.ever_connected),
        )

    def generate_report(self, window: Optional[float] = None) -> ConnectionReport:
        """Summarize history entries that started within ``window`` seconds."""
        window = self.config.report_window if window is None else window
        now = self._clock()
        recent = self._history.since(now - window)
        successful = sum(1 for entry in recent if entry.success)

        grouped: Dict[ProtocolKind, List[ConnectionHistoryEntry]] = {}
        for entry in recent:
            grouped.setdefault(entry.world.protocol, []).append(entry)

        protocol_statistics = {
            protocol: ProtocolStatistics(
                connection_count=len(entries),
                success_rate=sum(1 for e in entries if e.success) / len(entries),
                average_duration=sum(e.duration for e in entries) / len(entries),
            )
            for protocol, entries in grouped.items()
        }

        return ConnectionReport(
            report_date=now,
            window=window,
            total_connections=len(recent),
            successful_connections=successful,
            failed_connections=len(recent) - successful,
            average_connection_duration=sum(e.duration for e in recent) / len(recent) if recent else 0.0,
            protocol_statistics=protocol_statistics,
            currently_active=len(self._records),
        )

    def export_data(self) -> ConnectionExport:
        """Snapshot of live connections, history and totals with secrets removed."""
        connections = []
        for record in self._records.values():
            snapshot = record.snapshot()
            snapshot.world = snapshot.world.redacted()
            connections.append(snapshot)
        return ConnectionExport(
            connections=connections,
            history=self._history.entries,
            statistics=self.overall_statistics(),
            export_date=self._clock(),
        )

    # =========================================================================
    # HISTORY
    # =========================================================================

    @property
    def history(self) -> List[ConnectionHistoryEntry]:
        """History entries, oldest first."""
        return self._history.entries

    def clear_history(self) -> None:
        self._history.clear()
        logger.info("Connection history cleared")
        self.event_bus.emit(EventType.HISTORY_CLEARED, {}, "registry")
