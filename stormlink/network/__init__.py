"""Network layer: request/response, duplex streams and path monitoring."""

from .channel import ChannelState, StreamChannel
from .reachability import ReachabilityMonitor
from .transport import TransportClient

__all__ = [
    "ChannelState",
    "StreamChannel",
    "ReachabilityMonitor",
    "TransportClient",
]
