"""Redis-backed counter store shared across workers.

Both increment operations run as Lua scripts so the read, increment and
expiry happen as one atomic command on the server. Every Redis failure
(connection refused, socket timeout, script error) is converted to
``StoreUnavailableError``.
"""

from __future__ import annotations

import logging

import redis

from app.adapters.counter_store.base import AbstractCounterStore, CounterUpdate
from app.core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

# KEYS[1] = counter key
# ARGV[1] = window length (milliseconds)
# Returns: [count, pttl]
INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
    redis.call('PEXPIRE', KEYS[1], ARGV[1])
    ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

# KEYS[1] = counter key
# ARGV[1] = window length (milliseconds)
# ARGV[2] = limit
# Returns: [count, pttl, accepted (0/1)]
INCREMENT_BELOW_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current >= tonumber(ARGV[2]) then
    return {current, redis.call('PTTL', KEYS[1]), 0}
end
local count = redis.call('INCR', KEYS[1])
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
    redis.call('PEXPIRE', KEYS[1], ARGV[1])
    ttl = tonumber(ARGV[1])
end
return {count, ttl, 1}
"""


def _ttl_or_none(pttl: int) -> int | None:
    # PTTL returns -2 for a missing key and -1 for a key without expiry
    return int(pttl) if int(pttl) >= 0 else None


class RedisCounterStore(AbstractCounterStore):
    """Counter store using Redis strings with PEXPIRE-managed windows."""

    def __init__(self, client: redis.Redis, *, key_prefix: str = "rl:") -> None:
        self._redis = client
        self._prefix = key_prefix
        self._increment = client.register_script(INCREMENT_SCRIPT)
        self._increment_below = client.register_script(INCREMENT_BELOW_SCRIPT)

    @classmethod
    def from_url(cls, url: str, *, timeout_ms: int = 100, key_prefix: str = "rl:") -> "RedisCounterStore":
        """Build a store with bounded socket timeouts.

        Args:
            url: Redis connection URL.
            timeout_ms: Connect and read timeout applied to every call.
            key_prefix: Namespace prepended to every counter key.
        """
        timeout_s = timeout_ms / 1000
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout_s,
            socket_connect_timeout=timeout_s,
        )
        return cls(client, key_prefix=key_prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _unavailable(self, operation: str, exc: redis.RedisError) -> StoreUnavailableError:
        logger.debug(
            "counter_store.redis_error",
            extra={"operation": operation, "error_type": type(exc).__name__},
        )
        return StoreUnavailableError(
            code="COUNTER_STORE_UNAVAILABLE",
            message=f"Redis counter store failed during {operation}",
            details={"error_type": type(exc).__name__},
        )

    def get(self, key: str) -> int | None:
        try:
            value = self._redis.get(self._key(key))
        except redis.RedisError as exc:
            raise self._unavailable("get", exc) from exc
        return int(value) if value is not None else None

    def increment_with_ttl(self, key: str, ttl_ms: int) -> int:
        try:
            count, _ttl = self._increment(keys=[self._key(key)], args=[ttl_ms])
        except redis.RedisError as exc:
            raise self._unavailable("increment_with_ttl", exc) from exc
        return int(count)

    def increment_below(self, key: str, limit: int, ttl_ms: int) -> CounterUpdate:
        try:
            count, ttl, accepted = self._increment_below(
                keys=[self._key(key)],
                args=[ttl_ms, limit],
            )
        except redis.RedisError as exc:
            raise self._unavailable("increment_below", exc) from exc
        return CounterUpdate(count=int(count), ttl_ms=_ttl_or_none(ttl), accepted=bool(int(accepted)))

    def delete(self, key: str) -> bool:
        try:
            deleted = self._redis.delete(self._key(key))
        except redis.RedisError as exc:
            raise self._unavailable("delete", exc) from exc
        return int(deleted) > 0

    def ttl_remaining(self, key: str) -> int | None:
        try:
            pttl = self._redis.pttl(self._key(key))
        except redis.RedisError as exc:
            raise self._unavailable("ttl_remaining", exc) from exc
        return _ttl_or_none(pttl)

    def close(self) -> None:
        try:
            self._redis.close()
        except redis.RedisError as exc:
            logger.warning("counter_store.close_failed", extra={"error_type": type(exc).__name__})
