"""Counter store interface.

The governor depends on this abstraction (not a concrete backend) so the
in-memory store and the shared Redis store can be swapped by configuration.

Implementations raise ``StoreUnavailableError`` when the backing store cannot
be reached; they never raise backend-specific exceptions.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class CounterUpdate:
    """Result of a bounded increment.

    Attributes:
        count: Counter value after the operation.
        ttl_ms: Remaining lifetime of the window in milliseconds, if known.
        accepted: False when the counter was already at the limit and was left
            untouched.
    """

    count: int
    ttl_ms: int | None
    accepted: bool


class AbstractCounterStore(ABC):
    """Interface for windowed counters with store-managed expiry."""

    @abstractmethod
    def get(self, key: str) -> int | None:
        """Return the current count for key, or None if absent/expired."""
        raise NotImplementedError

    @abstractmethod
    def increment_with_ttl(self, key: str, ttl_ms: int) -> int:
        """Atomically increment key and return the new count.

        The TTL is applied only when the counter is created, so the window is
        fixed from the first request rather than sliding.
        """
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete key; return True if a counter existed."""
        raise NotImplementedError

    @abstractmethod
    def ttl_remaining(self, key: str) -> int | None:
        """Return remaining lifetime of key in milliseconds, or None if absent."""
        raise NotImplementedError

    def increment_below(self, key: str, limit: int, ttl_ms: int) -> CounterUpdate:
        """Increment key only while its count is below limit.

        Backends override this with a single atomic operation. This fallback
        uses separate read and write calls, so two concurrent callers at
        ``limit - 1`` may both be accepted.

        Args:
            key: Counter key.
            limit: Count at which further increments are refused.
            ttl_ms: Window length applied when the counter is created.

        Returns:
            CounterUpdate describing the resulting counter.
        """
        current = self.get(key) or 0
        if current >= limit:
            return CounterUpdate(count=current, ttl_ms=self.ttl_remaining(key), accepted=False)
        count = self.increment_with_ttl(key, ttl_ms)
        return CounterUpdate(count=count, ttl_ms=self.ttl_remaining(key), accepted=True)

    def close(self) -> None:
        """Release backend resources. No-op by default."""
