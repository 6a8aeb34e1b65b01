"""
Unit tests for network path monitoring.
"""

from types import SimpleNamespace
from unittest.mock import patch

import pytest

from stormlink.core.event_bus import EventType
from stormlink.models import InterfaceKind, Reachability
from stormlink.network import TransportClient
from stormlink.network.reachability import ReachabilityMonitor, classify_interface, interface_for_address


class ScriptedProbe:
    """Returns queued readings, repeating the last one."""

    def __init__(self, *readings: Reachability):
        self.readings = list(readings)
        self.calls = 0

    async def __call__(self) -> Reachability:
        self.calls += 1
        if len(self.readings) > 1:
            return self.readings.pop(0)
        return self.readings[0]


ONLINE = Reachability(is_reachable=True, interface_kind=InterfaceKind.WIFI)
OFFLINE = Reachability(is_reachable=False)


class TestClassifyInterface:

    @pytest.mark.parametrize("name,kind", [
        ("lo", InterfaceKind.LOOPBACK),
        ("lo0", InterfaceKind.LOOPBACK),
        ("wlan0", InterfaceKind.WIFI),
        ("wlp3s0", InterfaceKind.WIFI),
        ("eth0", InterfaceKind.WIRED_ETHERNET),
        ("en0", InterfaceKind.WIRED_ETHERNET),
        ("enp0s31f6", InterfaceKind.WIRED_ETHERNET),
        ("wwan0", InterfaceKind.CELLULAR),
        ("pdp_ip0", InterfaceKind.CELLULAR),
        ("docker0", InterfaceKind.OTHER),
    ])
    def test_names(self, name, kind):
        assert classify_interface(name) == kind

    def test_interface_for_address(self):
        addresses = {
            "lo": [SimpleNamespace(address="127.0.0.1")],
            "wlan0": [SimpleNamespace(address="192.168.1.20"), SimpleNamespace(address="fe80::1%wlan0")],
        }
        with patch("stormlink.network.reachability.psutil.net_if_addrs", return_value=addresses):
            assert interface_for_address("192.168.1.20") == InterfaceKind.WIFI
            assert interface_for_address("fe80::1") == InterfaceKind.WIFI
            assert interface_for_address("10.0.0.9") == InterfaceKind.UNKNOWN


class TestReachabilityMonitor:
    """Tests for change-only notification."""

    @pytest.mark.asyncio
    async def test_notifies_only_on_change(self):
        probe = ScriptedProbe(ONLINE, ONLINE, OFFLINE, OFFLINE, ONLINE)
        monitor = ReachabilityMonitor(probe, interval=3600)
        seen = []
        monitor.subscribe(seen.append)

        for _ in range(5):
            await monitor.refresh()

        assert seen == [ONLINE, OFFLINE, ONLINE]
        assert monitor.current == ONLINE

    @pytest.mark.asyncio
    async def test_start_takes_initial_reading(self):
        probe = ScriptedProbe(ONLINE)
        monitor = ReachabilityMonitor(probe, interval=3600)

        await monitor.start()
        try:
            assert monitor.is_running
            assert monitor.current == ONLINE
            assert probe.calls == 1
        finally:
            await monitor.stop()

        assert not monitor.is_running

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        monitor = ReachabilityMonitor(ScriptedProbe(ONLINE), interval=3600)
        seen = []
        monitor.subscribe(seen.append)
        monitor.unsubscribe(seen.append)

        await monitor.refresh()

        assert seen == []


class TestTransportReachability:
    """Tests for reachability relayed through the transport client."""

    @pytest.mark.asyncio
    async def test_unsubscribed_handler_not_called(self):
        transport = TransportClient(path_probe=ScriptedProbe(ONLINE, OFFLINE))
        relayed = []
        transport.event_bus.subscribe(EventType.REACHABILITY_CHANGED, relayed.append)
        kept, dropped = [], []
        transport.subscribe_reachability(kept.append)
        transport.subscribe_reachability(dropped.append)

        await transport.refresh_reachability()
        transport.unsubscribe_reachability(dropped.append)
        await transport.refresh_reachability()

        assert kept == [ONLINE, OFFLINE]
        assert dropped == [ONLINE]
        assert len(relayed) == 2
