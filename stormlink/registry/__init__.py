"""Connection registry: records, history and reconnection policy."""

from .history import ConnectionHistory
from .record import ConnectionExport, ConnectionRecord, classify_latency
from .registry import ConnectionRegistry
from .retry import ExponentialBackoff, FlatDelay, RetryPolicy

__all__ = [
    "ConnectionHistory",
    "ConnectionExport",
    "ConnectionRecord",
    "classify_latency",
    "ConnectionRegistry",
    "ExponentialBackoff",
    "FlatDelay",
    "RetryPolicy",
]
