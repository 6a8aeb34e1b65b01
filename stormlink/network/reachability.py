"""
Network path monitoring.

Periodically checks whether the default network path is usable and which
kind of interface carries it. Subscribers are notified only on change.
"""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional

import psutil

from ..logging_config import get_logger
from ..models import InterfaceKind, Reachability

logger = get_logger(__name__)

PathProbe = Callable[[], Awaitable[Reachability]]
ReachabilityHandler = Callable[[Reachability], Any]

_INTERFACE_PREFIXES = (
    (("lo",), InterfaceKind.LOOPBACK),
    (("wl", "wifi", "ath"), InterfaceKind.WIFI),
    (("wwan", "rmnet", "ppp", "pdp_ip", "ccmni"), InterfaceKind.CELLULAR),
    (("en", "eth", "em"), InterfaceKind.WIRED_ETHERNET),
)


def classify_interface(name: str) -> InterfaceKind:
    """Guess the interface kind from its OS name."""
    lowered = name.lower()
    for prefixes, kind in _INTERFACE_PREFIXES:
        if lowered.startswith(prefixes):
            return kind
    return InterfaceKind.OTHER


def interface_for_address(address: str) -> InterfaceKind:
    """Find the interface owning a local address."""
    for name, addresses in psutil.net_if_addrs().items():
        for entry in addresses:
            if entry.address.split("%", 1)[0] == address:
                return classify_interface(name)
    return InterfaceKind.UNKNOWN


def make_socket_probe(host: str, port: int, timeout: float) -> PathProbe:
    """
    Build a probe that opens a TCP connection to a reference host.

    The local address the OS picks for that connection identifies the
    interface carrying the default path.
    """

    async def probe() -> Reachability:
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
        except (OSError, asyncio.TimeoutError, TimeoutError):
            return Reachability(is_reachable=False)

        try:
            local_address = writer.get_extra_info("sockname")[0]
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

        return Reachability(is_reachable=True, interface_kind=interface_for_address(local_address))

    return probe


class ReachabilityMonitor:
    """Tracks network path state and notifies subscribers on change."""

    def __init__(self, probe: PathProbe, interval: float = 10.0):
        self._probe = probe
        self.interval = interval
        self.current = Reachability()
        self._subscribers: List[ReachabilityHandler] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, handler: ReachabilityHandler) -> None:
        self._subscribers.append(handler)

    def unsubscribe(self, handler: ReachabilityHandler) -> None:
        if handler in self._subscribers:
            self._subscribers.remove(handler)

    async def start(self) -> None:
        """Take an initial reading and start periodic checks."""
        if self.is_running:
            return
        await self.refresh()
        self._task = asyncio.create_task(self._run(), name="reachability-monitor")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def refresh(self) -> Reachability:
        """Probe the path now; notify subscribers if the state changed."""
        result = await self._probe()
        if result != self.current:
            self.current = result
            if result.is_reachable:
                logger.info(f"Network connection established ({result.interface_kind.value})")
            else:
                logger.warning("Network connection lost")
            self._notify(result)
        return result

    def _notify(self, reachability: Reachability) -> None:
        for handler in list(self._subscribers):
            try:
                if asyncio.iscoroutinefunction(handler):
                    asyncio.get_running_loop().create_task(handler(reachability))
                else:
                    handler(reachability)
            except Exception as e:
                logger.error(f"Error in reachability handler: {e}")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.refresh()
            except Exception as e:
                logger.error(f"Reachability check failed: {e}")
