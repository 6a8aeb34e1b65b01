"""
Unit tests for reconnection and staleness handling in the connection registry.
"""

import asyncio

import pytest

from stormlink.core.event_bus import EventType
from stormlink.errors import ConnectionNotFound, NetworkUnavailable
from stormlink.models import ConnectionStatus


async def wait_for_status(registry, world_id, status, timeout=1.0):
    """Poll until a world reaches ``status``."""
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        record = registry.get_connection(world_id)
        if record is not None and record.status == status:
            return record
        await asyncio.sleep(0.005)
    raise AssertionError(f"world {world_id} never reached {status.value}")


async def connect(registry, world):
    record = await registry.add_connection(world)
    await registry.wait_for_handshake(world.id)
    return record


class TestAttemptReconnection:
    """Tests for explicit reconnection."""

    @pytest.mark.asyncio
    async def test_unknown_world_raises(self, registry):
        with pytest.raises(ConnectionNotFound):
            await registry.attempt_reconnection("missing")

    @pytest.mark.asyncio
    async def test_successful_reconnection(self, registry, fake_transport, http_world):
        """A reconnection that succeeds returns True and counts the reconnect."""
        await connect(registry, http_world)

        result = await registry.attempt_reconnection(http_world.id)

        assert result is True
        record = registry.get_connection(http_world.id)
        assert record.status == ConnectionStatus.CONNECTED
        assert record.statistics.reconnect_count == 1
        assert len(fake_transport.requests) == 2

    @pytest.mark.asyncio
    async def test_attempts_are_bounded(self, registry, fake_transport, http_world):
        """Failed reconnection stops after max_reconnect_attempts and reports once."""
        failures = []
        registry.event_bus.subscribe(EventType.RECONNECTION_FAILED, failures.append)
        await connect(registry, http_world)
        fake_transport.request_results = [NetworkUnavailable() for _ in range(10)]

        result = await registry.attempt_reconnection(http_world.id)

        assert result is False
        record = registry.get_connection(http_world.id)
        assert record.status == ConnectionStatus.ERROR
        assert record.failed_reconnects == http_world.settings.max_reconnect_attempts
        assert len(fake_transport.requests) == 1 + http_world.settings.max_reconnect_attempts
        assert len(failures) == 1

        # No further attempts once in error
        await asyncio.sleep(0.02)
        assert len(fake_transport.requests) == 1 + http_world.settings.max_reconnect_attempts

    @pytest.mark.asyncio
    async def test_recovers_from_error(self, registry, fake_transport, http_world):
        """A world in error can be reconnected explicitly."""
        fake_transport.request_results = [NetworkUnavailable()]
        await connect(registry, http_world)
        assert registry.get_connection(http_world.id).status == ConnectionStatus.ERROR

        assert await registry.attempt_reconnection(http_world.id) is True
        assert registry.get_connection(http_world.id).connected_at is not None

    @pytest.mark.asyncio
    async def test_explicit_attempt_ignores_disabled_auto_reconnect(self, registry, frozen_time, local_world):
        """Explicit reconnection runs at least once even with zero configured attempts."""
        await connect(registry, local_world)
        frozen_time.advance(registry.config.stale_threshold + 1)
        registry.check_stale_connections()
        await wait_for_status(registry, local_world.id, ConnectionStatus.ERROR)

        assert await registry.attempt_reconnection(local_world.id) is True

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_attempt(self, registry, fake_transport, http_world):
        """Overlapping reconnection requests join the reconnection already running."""
        await connect(registry, http_world)

        results = await asyncio.gather(
            registry.attempt_reconnection(http_world.id),
            registry.attempt_reconnection(http_world.id),
        )

        assert results == [True, True]
        assert len(fake_transport.requests) == 2

    @pytest.mark.asyncio
    async def test_not_allowed_while_connecting(self, registry, fake_transport, stream_world):
        """Reconnection is refused while the first handshake is still running."""
        fake_transport.stream_outcomes = [None]
        await registry.add_connection(stream_world)

        assert await registry.attempt_reconnection(stream_world.id) is False
        assert registry.get_connection(stream_world.id).status == ConnectionStatus.CONNECTING

    @pytest.mark.asyncio
    async def test_removal_cancels_reconnection(self, registry, fake_transport, http_world):
        """Removing a world stops its reconnection without further transitions."""
        registry.retry_policy.seconds = 10.0
        await connect(registry, http_world)
        attempt = asyncio.create_task(registry.attempt_reconnection(http_world.id))
        await asyncio.sleep(0)

        await registry.remove_connection(http_world.id)

        assert await attempt is False
        assert len(fake_transport.requests) == 1
        assert registry.history[0].status == ConnectionStatus.RECONNECTING


class TestStreamClose:
    """Tests for remote stream closure."""

    @pytest.mark.asyncio
    async def test_remote_close_triggers_reconnection(self, registry, fake_transport, stream_world):
        """A connected stream that drops is reconnected automatically."""
        record = await connect(registry, stream_world)

        fake_transport.streams[record.connection_id].drop("connection lost")
        await registry.wait_idle()

        reconnected = await wait_for_status(registry, stream_world.id, ConnectionStatus.CONNECTED)
        assert reconnected.statistics.reconnect_count == 1
        assert reconnected.statistics.last_error == "Stream closed: connection lost"
        assert fake_transport.opened == [record.connection_id, record.connection_id]

    @pytest.mark.asyncio
    async def test_remote_close_without_auto_reconnect(self, registry, fake_transport, stream_world):
        """With auto-reconnect disabled a dropped stream goes straight to error."""
        settings = stream_world.settings.model_copy(update={"auto_reconnect": False})
        world = stream_world.model_copy(update={"settings": settings})
        record = await connect(registry, world)

        fake_transport.streams[record.connection_id].drop()
        await registry.wait_idle()

        await wait_for_status(registry, world.id, ConnectionStatus.ERROR)
        assert fake_transport.opened == [record.connection_id]


class TestStaleness:
    """Tests for the staleness sweep."""

    @pytest.mark.asyncio
    async def test_idle_connection_is_reconnected(self, registry, fake_transport, frozen_time, http_world):
        """Connections idle past the threshold are reconnected."""
        await connect(registry, http_world)
        frozen_time.advance(registry.config.stale_threshold + 1)

        stale = registry.check_stale_connections()

        assert stale == [http_world.id]
        record = await wait_for_status(registry, http_world.id, ConnectionStatus.CONNECTED)
        assert record.statistics.reconnect_count == 1
        assert len(fake_transport.requests) == 2

    @pytest.mark.asyncio
    async def test_recent_activity_is_not_stale(self, registry, frozen_time, http_world):
        await connect(registry, http_world)
        frozen_time.advance(registry.config.stale_threshold - 1)

        assert registry.check_stale_connections() == []

    @pytest.mark.asyncio
    async def test_statistics_update_refreshes_activity(self, registry, frozen_time, http_world):
        """Traffic reported through update_statistics keeps a connection fresh."""
        await connect(registry, http_world)
        frozen_time.advance(200)
        registry.record_latency(http_world.id, 0.01)
        frozen_time.advance(200)

        assert registry.check_stale_connections() == []

    @pytest.mark.asyncio
    async def test_activity_sweep_reads_stream_activity(self, registry, fake_transport, frozen_time, stream_world):
        """The activity sweep pulls the channel's last activity into the record."""
        record = await connect(registry, stream_world)
        frozen_time.advance(250)
        fake_transport.streams[record.connection_id].last_activity = frozen_time() - 10
        registry.refresh_activity()
        frozen_time.advance(100)

        assert registry.get_connection(stream_world.id).last_activity == 1240
        assert registry.check_stale_connections() == []

    @pytest.mark.asyncio
    async def test_activity_sweep_without_traffic(self, registry, frozen_time, stream_world):
        """A silent stream still goes stale; the sweep never invents activity."""
        await connect(registry, stream_world)
        frozen_time.advance(registry.config.stale_threshold + 1)
        registry.refresh_activity()

        assert registry.check_stale_connections() == [stream_world.id]

    @pytest.mark.asyncio
    async def test_local_world_kept_alive(self, registry, frozen_time, local_world):
        await connect(registry, local_world)
        frozen_time.advance(400)
        registry.refresh_activity()

        assert registry.check_stale_connections() == []

    @pytest.mark.asyncio
    async def test_stale_world_without_auto_reconnect_errors(self, registry, frozen_time, local_world):
        """Worlds that do not auto-reconnect go to error when stale."""
        failures = []
        registry.event_bus.subscribe(EventType.RECONNECTION_FAILED, failures.append)
        await connect(registry, local_world)
        frozen_time.advance(registry.config.stale_threshold + 1)

        registry.check_stale_connections()

        record = await wait_for_status(registry, local_world.id, ConnectionStatus.ERROR)
        assert record.statistics.last_error == "Automatic reconnection disabled"
        assert len(failures) == 1
