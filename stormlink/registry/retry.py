"""
Reconnection delay policies.

The registry asks its policy how long to wait before each reconnection
attempt. Attempts are numbered from 1.
"""

from typing import Protocol


class RetryPolicy(Protocol):
    def delay(self, attempt: int) -> float:
        ...


class FlatDelay:
    """Same delay before every attempt."""

    def __init__(self, seconds: float = 2.0):
        self.seconds = seconds

    def delay(self, attempt: int) -> float:
        return self.seconds


class ExponentialBackoff:
    """Exponential backoff: base, base*2, base*4, ... capped at ``maximum``."""

    def __init__(self, base: float = 1.0, factor: float = 2.0, maximum: float = 60.0):
        self.base = base
        self.factor = factor
        self.maximum = maximum

    def delay(self, attempt: int) -> float:
        return min(self.maximum, self.base * (self.factor ** (attempt - 1)))
