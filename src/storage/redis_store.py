"""
Redis state store.

Shares RewardGuard state across load-balanced API instances and keeps it
across restarts. Values are stored as JSON strings under a key prefix;
locks are Redis SET NX locks so every instance sees the same ownership.

Requires redis package: pip install rewardguard[redis]
"""

import json
import logging
import re
import time
from collections.abc import Callable
from typing import Any

from scaling.locking import LockManager, RedisLockManager
from storage.base import (
    StateStore,
    StorageConnectionError,
    StorageReadError,
    StorageWriteError,
)

logger = logging.getLogger(__name__)

_GLOB_SPECIAL = re.compile(r"([\[\]*?\\])")


class RedisStateStore(StateStore):
    """Redis-backed state store for multi-instance deployments."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        key_prefix: str = "rewardguard:",
        timeout: float = 1.0,
        client=None,
        lock_manager: LockManager | None = None,
        clock: Callable[[], float] = time.time,
        **kwargs,
    ):
        """
        Initialize Redis state store.

        Args:
            redis_url: Redis connection URL
            key_prefix: Prefix for every key this store writes
            timeout: Socket timeout in seconds
            client: Pre-built Redis client (takes precedence over redis_url)
            lock_manager: Lock manager; defaults to Redis locks on the same client
        """
        if client is None:
            try:
                import redis
            except ImportError:
                raise ImportError("redis package required: pip install rewardguard[redis]")
            client = redis.from_url(
                redis_url,
                socket_timeout=timeout,
                socket_connect_timeout=timeout,
                decode_responses=True,
            )

        self._redis = client
        self._key_prefix = key_prefix
        lock_manager = lock_manager or RedisLockManager(
            client=client, key_prefix=f"{key_prefix}lock:"
        )
        super().__init__(lock_manager, clock=clock, **kwargs)

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def get(self, key: str, default: Any = None) -> Any:
        try:
            data = self._redis.get(self._key(key))
        except Exception as e:
            raise StorageReadError(f"Redis get failed for '{key}': {e}") from e

        if data is None:
            return default
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            return json.loads(data)
        except json.JSONDecodeError:
            logger.warning(f"Discarding undecodable value at '{key}'")
            return default

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        try:
            data = json.dumps(value)
        except TypeError as e:
            raise StorageWriteError(f"Value for '{key}' is not JSON-serializable: {e}") from e

        try:
            if ttl is not None:
                self._redis.set(self._key(key), data, px=max(1, int(ttl * 1000)))
            else:
                self._redis.set(self._key(key), data)
        except Exception as e:
            raise StorageWriteError(f"Redis set failed for '{key}': {e}") from e

    def delete(self, key: str) -> bool:
        try:
            return self._redis.delete(self._key(key)) > 0
        except Exception as e:
            raise StorageWriteError(f"Redis delete failed for '{key}': {e}") from e

    def keys(self, prefix: str = "") -> list[str]:
        pattern = _GLOB_SPECIAL.sub(r"\\\1", self._key(prefix)) + "*"
        strip = len(self._key_prefix)
        lock_prefix = f"{self._key_prefix}lock:"
        result = []
        try:
            for raw in self._redis.scan_iter(match=pattern, count=200):
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8")
                if raw.startswith(lock_prefix):
                    continue
                result.append(raw[strip:])
        except Exception as e:
            raise StorageReadError(f"Redis scan failed for '{prefix}': {e}") from e
        return result

    def is_available(self) -> bool:
        try:
            return bool(self._redis.ping())
        except Exception:
            return False

    def ping(self) -> None:
        """Raise StorageConnectionError if Redis cannot be reached."""
        try:
            self._redis.ping()
        except Exception as e:
            raise StorageConnectionError(f"Redis not reachable: {e}") from e

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        info["key_prefix"] = self._key_prefix
        return info
