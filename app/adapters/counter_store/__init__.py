"""Counter store adapters.

The rate governor depends on the abstract store only, so the in-memory
fallback and the shared Redis store are interchangeable.
"""

from app.adapters.counter_store.base import AbstractCounterStore, CounterUpdate
from app.adapters.counter_store.factory import create_counter_store
from app.adapters.counter_store.in_memory import InMemoryCounterStore
from app.adapters.counter_store.redis_store import RedisCounterStore

__all__ = [
    "AbstractCounterStore",
    "CounterUpdate",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "create_counter_store",
]
