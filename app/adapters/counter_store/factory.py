"""Factory for creating the configured counter store."""

from __future__ import annotations

import logging

from app.adapters.counter_store.base import AbstractCounterStore
from app.adapters.counter_store.in_memory import InMemoryCounterStore
from app.adapters.counter_store.redis_store import RedisCounterStore
from app.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


def create_counter_store(config: Settings | None = None) -> AbstractCounterStore:
    """Instantiate the counter store selected by ``RATE_LIMIT_BACKEND``.

    A ``redis`` backend without ``REDIS_URL`` falls back to the in-memory store
    with a warning, so a missing Redis never prevents startup.

    Args:
        config: Settings to read; defaults to the global settings.

    Returns:
        AbstractCounterStore: Configured store instance.
    """
    cfg = config or default_settings
    backend = cfg.rate_limit.backend

    if backend == "redis":
        if cfg.redis.url:
            logger.info(
                "counter_store.selected",
                extra={"backend": "redis", "timeout_ms": cfg.redis.timeout_ms},
            )
            return RedisCounterStore.from_url(
                cfg.redis.url,
                timeout_ms=cfg.redis.timeout_ms,
                key_prefix=cfg.redis.key_prefix,
            )
        logger.warning(
            "counter_store.redis_not_configured",
            extra={"fallback": "memory"},
        )

    logger.info("counter_store.selected", extra={"backend": "memory"})
    return InMemoryCounterStore()
