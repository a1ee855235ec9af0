"""
Named locks for RewardGuard state mutations.

Every read-modify-write against the state store runs under a named lock:
- LocalLockManager: striped thread locks for single-instance deployments
- RedisLockManager: SET NX locks shared by every API instance

Usage:
    from scaling import get_lock_manager

    lock_manager = get_lock_manager()

    with lock_manager.lock("identity:abc", timeout=5):
        update_identity_state()

    if lock_manager.try_acquire("identity:abc"):
        try:
            sweep_entry()
        finally:
            lock_manager.release("identity:abc")
"""

import threading
import time
import uuid
import zlib
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass


@dataclass
class LockInfo:
    """Information about a held lock."""

    name: str
    holder_id: str
    acquired_at: float
    ttl: float | None = None
    expires_at: float | None = None


class LockManager(ABC):
    """
    Abstract base class for lock managers.

    Locks are not reentrant at this level; reentrancy is layered on top
    by the state store, which tracks per-thread hold depth.
    """

    @abstractmethod
    def acquire(
        self,
        name: str,
        timeout: float = 30.0,
        ttl: float = 60.0,
    ) -> bool:
        """
        Acquire a named lock.

        Args:
            name: Lock identifier
            timeout: Maximum time to wait for lock (seconds)
            ttl: Lock time-to-live (auto-release after this time)

        Returns:
            True if lock acquired, False if timeout
        """
        pass

    @abstractmethod
    def try_acquire(self, name: str, ttl: float = 60.0) -> bool:
        """Acquire a named lock only if it is free right now."""
        pass

    @abstractmethod
    def release(self, name: str) -> bool:
        """
        Release a named lock.

        Returns:
            True if lock was held and released, False otherwise
        """
        pass

    @abstractmethod
    def is_locked(self, name: str) -> bool:
        """Check if a lock is currently held."""
        pass

    @contextmanager
    def lock(self, name: str, timeout: float = 30.0, ttl: float = 60.0):
        """
        Context manager for acquiring a lock.

        Raises:
            TimeoutError: If lock cannot be acquired within timeout
        """
        if not self.acquire(name, timeout=timeout, ttl=ttl):
            raise TimeoutError(f"Could not acquire lock '{name}' within {timeout}s")
        try:
            yield
        finally:
            self.release(name)

    def get_info(self, name: str) -> LockInfo | None:
        """Get information about a lock (if held)."""
        return None

    def close(self) -> None:
        pass


class LocalLockManager(LockManager):
    """
    Thread-based lock manager for single-instance deployments.

    Names hash onto a fixed pool of locks so memory stays bounded no matter
    how many identities pass through. Two names sharing a stripe only
    contend, they never deadlock, as long as callers do not nest locks on
    different names.
    """

    def __init__(self, stripes: int = 1024):
        self._stripes = [threading.RLock() for _ in range(stripes)]
        self._lock_info: dict[str, LockInfo] = {}
        self._meta_lock = threading.Lock()
        self._instance_id = str(uuid.uuid4())[:8]

    def _get_lock(self, name: str) -> threading.RLock:
        return self._stripes[zlib.crc32(name.encode()) % len(self._stripes)]

    def _record(self, name: str, ttl: float) -> None:
        now = time.time()
        with self._meta_lock:
            self._lock_info[name] = LockInfo(
                name=name,
                holder_id=f"{self._instance_id}:{threading.current_thread().name}",
                acquired_at=now,
                ttl=ttl,
                expires_at=now + ttl if ttl else None,
            )

    def acquire(
        self,
        name: str,
        timeout: float = 30.0,
        ttl: float = 60.0,
    ) -> bool:
        """Acquire a named lock."""
        acquired = self._get_lock(name).acquire(timeout=timeout)
        if acquired:
            self._record(name, ttl)
        return acquired

    def try_acquire(self, name: str, ttl: float = 60.0) -> bool:
        acquired = self._get_lock(name).acquire(blocking=False)
        if acquired:
            self._record(name, ttl)
        return acquired

    def release(self, name: str) -> bool:
        """Release a named lock."""
        try:
            self._get_lock(name).release()
        except RuntimeError:
            # Lock not held by this thread
            return False
        with self._meta_lock:
            self._lock_info.pop(name, None)
        return True

    def is_locked(self, name: str) -> bool:
        """Check if a lock is currently held."""
        with self._meta_lock:
            return name in self._lock_info

    def get_info(self, name: str) -> LockInfo | None:
        with self._meta_lock:
            return self._lock_info.get(name)

    def get_all_locks(self) -> list[LockInfo]:
        """Get information about all held locks."""
        with self._meta_lock:
            return list(self._lock_info.values())


class RedisLockManager(LockManager):
    """
    Distributed lock manager using Redis.

    Uses SET NX PX for atomic acquire and a compare-and-delete script for
    release, so an instance can only release locks it holds. The TTL
    bounds how long a crashed holder can block others.

    Requires redis package: pip install rewardguard[redis]
    """

    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    def __init__(
        self,
        redis_url: str | None = None,
        key_prefix: str = "rewardguard:lock:",
        client=None,
    ):
        """
        Initialize Redis lock manager.

        Args:
            redis_url: Redis connection URL
            key_prefix: Prefix for lock keys in Redis
            client: Pre-built Redis client (takes precedence over redis_url)
        """
        if client is None:
            try:
                import redis
            except ImportError:
                raise ImportError("redis package required: pip install rewardguard[redis]")
            client = redis.from_url(redis_url)

        self._redis = client
        self._key_prefix = key_prefix
        self._instance_id = str(uuid.uuid4())
        self._held_locks: dict[str, str] = {}  # name -> lock_value
        self._held_lock = threading.Lock()

    def _key(self, name: str) -> str:
        return f"{self._key_prefix}{name}"

    def _set_nx(self, name: str, ttl: float) -> bool:
        lock_value = f"{self._instance_id}:{threading.get_ident()}:{time.time()}"
        if self._redis.set(self._key(name), lock_value, nx=True, px=int(ttl * 1000)):
            with self._held_lock:
                self._held_locks[name] = lock_value
            return True
        return False

    def acquire(
        self,
        name: str,
        timeout: float = 30.0,
        ttl: float = 60.0,
    ) -> bool:
        """Acquire a distributed lock, polling with backoff until timeout."""
        deadline = time.time() + timeout
        retry_delay = 0.05

        while True:
            if self._set_nx(name, ttl):
                return True
            if time.time() >= deadline:
                return False
            time.sleep(retry_delay)
            retry_delay = min(retry_delay * 1.5, 0.5)

    def try_acquire(self, name: str, ttl: float = 60.0) -> bool:
        return self._set_nx(name, ttl)

    def release(self, name: str) -> bool:
        with self._held_lock:
            lock_value = self._held_locks.get(name)
        if not lock_value:
            return False

        result = self._redis.eval(self.RELEASE_SCRIPT, 1, self._key(name), lock_value)
        with self._held_lock:
            self._held_locks.pop(name, None)
        return bool(result)

    def is_locked(self, name: str) -> bool:
        return self._redis.exists(self._key(name)) > 0

    def get_info(self, name: str) -> LockInfo | None:
        key = self._key(name)
        value = self._redis.get(key)
        if not value:
            return None
        if isinstance(value, bytes):
            value = value.decode()

        ttl = self._redis.ttl(key)
        holder_id, _, acquired_str = value.rpartition(":")
        try:
            acquired_at = float(acquired_str)
        except ValueError:
            holder_id, acquired_at = value, 0.0

        return LockInfo(
            name=name,
            holder_id=holder_id,
            acquired_at=acquired_at,
            ttl=float(ttl) if ttl and ttl > 0 else None,
        )

    def close(self) -> None:
        """Close the Redis connection."""
        self._redis.close()
