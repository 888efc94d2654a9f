"""In-memory counter store used when no shared store is configured.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: uses a lock around shared state.
- Expiry is lazy: entries are dropped when read after their deadline, and a
  full sweep runs once the store grows past ``max_entries``.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

from app.adapters.counter_store.base import AbstractCounterStore, CounterUpdate


@dataclass
class _CounterEntry:
    count: int
    expires_at: float


class InMemoryCounterStore(AbstractCounterStore):
    """Fixed-window counters kept in a process-local dict."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        max_entries: int = 100_000,
    ) -> None:
        """Initialize the in-memory store.

        Args:
            clock: Time source function returning UNIX time in seconds.
            max_entries: Size after which expired entries are swept on write.

        Raises:
            ValueError: If max_entries is invalid.
        """
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")

        self._clock = clock
        self._max_entries = max_entries
        self._lock = threading.RLock()
        self._entries: dict[str, _CounterEntry] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _live_entry(self, key: str, now: float) -> _CounterEntry | None:
        """Return the entry for key, dropping it if expired. Caller holds the lock."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= now:
            del self._entries[key]
            return None
        return entry

    def _remaining_ms(self, entry: _CounterEntry, now: float) -> int:
        return max(0, int(math.ceil((entry.expires_at - now) * 1000)))

    def _increment(self, key: str, ttl_ms: int, now: float) -> _CounterEntry:
        if ttl_ms < 1:
            raise ValueError("ttl_ms must be >= 1")
        if not key:
            raise ValueError("key must be a non-empty string")

        entry = self._live_entry(key, now)
        if entry is None:
            if len(self._entries) >= self._max_entries:
                self.purge_expired()
            entry = _CounterEntry(count=0, expires_at=now + ttl_ms / 1000)
            self._entries[key] = entry
        entry.count += 1
        return entry

    def get(self, key: str) -> int | None:
        with self._lock:
            entry = self._live_entry(key, self._clock())
            return entry.count if entry else None

    def increment_with_ttl(self, key: str, ttl_ms: int) -> int:
        with self._lock:
            return self._increment(key, ttl_ms, self._clock()).count

    def increment_below(self, key: str, limit: int, ttl_ms: int) -> CounterUpdate:
        now = self._clock()
        with self._lock:
            entry = self._live_entry(key, now)
            if entry is not None and entry.count >= limit:
                return CounterUpdate(
                    count=entry.count,
                    ttl_ms=self._remaining_ms(entry, now),
                    accepted=False,
                )
            entry = self._increment(key, ttl_ms, now)
            return CounterUpdate(
                count=entry.count,
                ttl_ms=self._remaining_ms(entry, now),
                accepted=True,
            )

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def ttl_remaining(self, key: str) -> int | None:
        now = self._clock()
        with self._lock:
            entry = self._live_entry(key, now)
            return self._remaining_ms(entry, now) if entry else None

    def purge_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)
