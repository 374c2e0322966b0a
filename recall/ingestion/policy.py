"""Flush and retry timing decisions over an injected clock value."""

from typing import Optional


class FlushPolicy:
    """When a terminal session's buffer should be flushed.

    A buffer is due when it holds ``max_batch_size`` chunks, or when its oldest
    chunk has waited ``flush_interval`` seconds.
    """

    def __init__(self, flush_interval: float = 2.0, max_batch_size: int = 100):
        if flush_interval <= 0:
            raise ValueError("flush_interval must be positive")
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        self.flush_interval = flush_interval
        self.max_batch_size = max_batch_size

    def is_due(self, size: int, oldest_at: Optional[float], now: float) -> bool:
        if size >= self.max_batch_size:
            return True
        if size == 0 or oldest_at is None:
            return False
        return now - oldest_at >= self.flush_interval


class Backoff:
    """Consecutive-failure tracker with capped exponential delay.

    The first ``threshold - 1`` failures retry immediately. From the
    ``threshold``-th failure on, the next attempt waits
    ``base * 2 ** (failures - threshold)`` seconds, capped at ``maximum``.
    """

    def __init__(self, threshold: int = 3, base: float = 1.0, maximum: float = 60.0):
        self.threshold = threshold
        self.base = base
        self.maximum = maximum
        self.failures = 0
        self.retry_at: Optional[float] = None

    @property
    def degraded(self) -> bool:
        return self.failures >= self.threshold

    def delay(self) -> float:
        if not self.degraded:
            return 0.0
        return min(self.base * 2 ** (self.failures - self.threshold), self.maximum)

    def record_failure(self, now: float) -> float:
        """Count a failure and return the delay before the next attempt."""
        self.failures += 1
        delay = self.delay()
        self.retry_at = now + delay if delay else None
        return delay

    def record_success(self) -> None:
        self.failures = 0
        self.retry_at = None

    def ready(self, now: float) -> bool:
        return self.retry_at is None or now >= self.retry_at
