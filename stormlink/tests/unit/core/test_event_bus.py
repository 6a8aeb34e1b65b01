"""
Unit tests for the EventBus.
"""

import asyncio

import pytest

from stormlink.core.event_bus import EventBus, EventType


class TestEventBus:
    """Tests for subscription and dispatch."""

    def test_emit_reaches_subscribers(self):
        bus = EventBus()
        received = []
        bus.subscribe(EventType.CONNECTION_ADDED, received.append)

        bus.emit(EventType.CONNECTION_ADDED, {"world_id": "w1"}, "registry")

        assert len(received) == 1
        assert received[0].data == {"world_id": "w1"}
        assert received[0].source == "registry"

    def test_other_event_types_not_delivered(self):
        bus = EventBus()
        received = []
        bus.subscribe(EventType.CONNECTION_ADDED, received.append)

        bus.emit(EventType.CONNECTION_REMOVED)

        assert received == []

    def test_subscribe_once(self):
        bus = EventBus()
        received = []
        bus.subscribe_once(EventType.HISTORY_CLEARED, received.append)

        bus.emit(EventType.HISTORY_CLEARED)
        bus.emit(EventType.HISTORY_CLEARED)

        assert len(received) == 1

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        bus.subscribe(EventType.STATUS_CHANGED, received.append)
        bus.unsubscribe(EventType.STATUS_CHANGED, received.append)

        bus.emit(EventType.STATUS_CHANGED)

        assert received == []

    def test_failing_handler_does_not_stop_others(self):
        """A handler that raises is logged and the next one still runs."""
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(EventType.STATISTICS_UPDATED, broken)
        bus.subscribe(EventType.STATISTICS_UPDATED, received.append)

        bus.emit(EventType.STATISTICS_UPDATED)

        assert len(received) == 1

    def test_clear(self):
        bus = EventBus()
        received = []
        bus.subscribe(EventType.STATUS_CHANGED, received.append)
        bus.subscribe(EventType.CONNECTION_ADDED, received.append)

        bus.clear(EventType.STATUS_CHANGED)
        bus.emit(EventType.STATUS_CHANGED)
        bus.emit(EventType.CONNECTION_ADDED)
        assert len(received) == 1

        bus.clear()
        bus.emit(EventType.CONNECTION_ADDED)
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_async_handler_scheduled(self):
        bus = EventBus()
        received = []

        async def handler(event):
            received.append(event.type)

        bus.subscribe(EventType.LATENCY_MEASURED, handler)
        bus.emit(EventType.LATENCY_MEASURED)
        await asyncio.sleep(0)

        assert received == [EventType.LATENCY_MEASURED]

    @pytest.mark.asyncio
    async def test_emit_async_awaits_handlers(self):
        bus = EventBus()
        received = []

        async def handler(event):
            await asyncio.sleep(0)
            received.append("async")

        bus.subscribe(EventType.STREAM_OPENED, handler)
        bus.subscribe(EventType.STREAM_OPENED, lambda event: received.append("sync"))

        await bus.emit_async(EventType.STREAM_OPENED)

        assert received == ["async", "sync"]
