"""
State store abstraction for RewardGuard.

Every component receives a StateStore and keeps its per-identity state
in it, so the same engine runs against:

- Memory (default; tests, development, single instance)
- Redis (shared across instances, survives restarts)

Usage:
    from storage import get_state_store

    store = get_state_store()
    with store.lock("identity:abc"):
        record = store.get("daily:abc")
        store.set("daily:abc", record)
"""

import logging
import os
from typing import TYPE_CHECKING

from storage.base import (
    StateStore,
    StorageConnectionError,
    StorageError,
    StorageReadError,
    StorageWriteError,
    identity_lock_name,
)
from storage.memory import MemoryStateStore

# Lazy import for Redis to avoid requiring the redis package
if TYPE_CHECKING:
    from storage.redis_store import RedisStateStore

logger = logging.getLogger(__name__)

__all__ = [
    "MemoryStateStore",
    "StateStore",
    "StorageConnectionError",
    "StorageError",
    "StorageReadError",
    "StorageWriteError",
    "get_state_store",
    "identity_lock_name",
]


def get_state_store() -> StateStore:
    """
    Get the configured state store based on environment variables.

    Environment variables:
        STATE_BACKEND: Backend type ("memory", "redis")
        REDIS_URL: Redis connection URL
        STATE_REDIS_PREFIX: Key prefix for Redis (default: rewardguard:)
        STATE_FALLBACK: Fall back to memory when Redis is unreachable

    Returns:
        Configured StateStore instance
    """
    backend_type = os.getenv("STATE_BACKEND", "memory").lower()

    if backend_type == "memory":
        return MemoryStateStore()

    if backend_type == "redis":
        redis_url = os.getenv("REDIS_URL")
        if not redis_url:
            raise StorageError("REDIS_URL environment variable required for Redis backend")
        fallback = os.getenv("STATE_FALLBACK", "false").lower() == "true"

        from storage.redis_store import RedisStateStore

        store = RedisStateStore(
            redis_url,
            key_prefix=os.getenv("STATE_REDIS_PREFIX", "rewardguard:"),
        )
        try:
            store.ping()
        except StorageConnectionError as e:
            if not fallback:
                raise
            logger.warning(f"{e}; falling back to in-memory state store")
            return MemoryStateStore()
        logger.info(f"State store: Redis at {redis_url}")
        return store

    raise StorageError(f"Unknown state backend: {backend_type}")
