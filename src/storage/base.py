"""
Abstract base class for state stores.

Every RewardGuard component keeps its per-identity state in a StateStore
injected at construction time. A store is a flat key/value namespace of
JSON-compatible values plus named locks for atomic read-modify-write.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from integrity_errors import ErrorSeverity, RewardGuardError
from scaling.locking import LockManager

logger = logging.getLogger(__name__)


def identity_lock_name(identity: str) -> str:
    """Lock shared by every component that mutates one identity's state."""
    return f"identity:{identity}"


class StorageError(RewardGuardError):
    """Base exception for storage-related errors."""

    def __init__(self, message: str, action: str = "access", cause: Exception | None = None):
        super().__init__(
            message=message,
            component="storage",
            action=action,
            severity=ErrorSeverity.HIGH,
            cause=cause,
        )


class StorageConnectionError(StorageError):
    """Raised when connection to storage backend fails."""
    pass


class StorageReadError(StorageError):
    """Raised when reading from storage fails."""
    pass


class StorageWriteError(StorageError):
    """Raised when writing to storage fails."""
    pass


class StateStore(ABC):
    """
    Abstract base class for state store backends.

    Subclasses implement the raw key/value operations. Locking, reentrancy
    and sweeping are shared here so every backend behaves the same way.
    """

    def __init__(
        self,
        lock_manager: LockManager,
        clock: Callable[[], float] = time.time,
        lock_timeout: float = 10.0,
        lock_ttl: float = 30.0,
    ):
        self._lock_manager = lock_manager
        self._clock = clock
        self._lock_timeout = lock_timeout
        self._lock_ttl = lock_ttl
        self._held = threading.local()

    # Raw key/value operations

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a value.

        Returns:
            A private copy of the stored value, or default if the key is
            missing or expired

        Raises:
            StorageReadError: If reading fails
        """
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """
        Store a value.

        Args:
            key: Store key
            value: JSON-compatible value
            ttl: Seconds until the entry expires (None = never)

        Raises:
            StorageWriteError: If writing fails
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""
        pass

    @abstractmethod
    def keys(self, prefix: str = "") -> list[str]:
        """List live keys starting with prefix."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the backend is reachable."""
        pass

    def clear(self) -> None:
        """Delete every key owned by this store."""
        for key in self.keys():
            self.delete(key)

    def close(self) -> None:
        self._lock_manager.close()

    def get_info(self) -> dict[str, Any]:
        """
        Get information about the store backend.

        Returns:
            Dictionary with backend type, status, and key count
        """
        return {
            "backend_type": self.__class__.__name__,
            "lock_manager": self._lock_manager.__class__.__name__,
            "available": self.is_available(),
        }

    # Locking

    def _depths(self) -> dict[str, int]:
        if not hasattr(self._held, "depths"):
            self._held.depths = {}
        return self._held.depths

    def holds_lock(self, name: str) -> bool:
        """True if the calling thread currently holds the named lock."""
        return self._depths().get(name, 0) > 0

    @contextmanager
    def lock(self, name: str, timeout: float | None = None) -> Iterator[None]:
        """
        Hold a named lock for an atomic read-modify-write.

        Reentrant per thread: nested calls with the same name from the
        thread that already holds it do not touch the lock manager.

        Raises:
            TimeoutError: If the lock is not acquired within timeout
        """
        depths = self._depths()
        if depths.get(name, 0) > 0:
            depths[name] += 1
            try:
                yield
            finally:
                depths[name] -= 1
            return

        with self._lock_manager.lock(
            name,
            timeout=self._lock_timeout if timeout is None else timeout,
            ttl=self._lock_ttl,
        ):
            depths[name] = 1
            try:
                yield
            finally:
                del depths[name]

    @contextmanager
    def try_lock(self, name: str) -> Iterator[bool]:
        """
        Take a named lock only if nobody holds it.

        Yields True when the lock is held for the block, False when it was
        busy and the caller should skip the guarded work.
        """
        depths = self._depths()
        if depths.get(name, 0) > 0:
            depths[name] += 1
            try:
                yield True
            finally:
                depths[name] -= 1
            return

        if not self._lock_manager.try_acquire(name, ttl=self._lock_ttl):
            yield False
            return

        depths[name] = 1
        try:
            yield True
        finally:
            del depths[name]
            self._lock_manager.release(name)

    # Sweeping

    def sweep(
        self,
        prefix: str,
        predicate: Callable[[Any], bool],
        lock_for: Callable[[str, Any], str] | None = None,
    ) -> int:
        """
        Delete entries under prefix whose value matches predicate.

        Each candidate is re-read under its lock before deletion. Entries
        whose lock is busy are skipped and left for the next sweep.

        Args:
            prefix: Key prefix to scan
            predicate: Returns True for values that should be removed
            lock_for: Maps (key, value) to the lock name guarding the entry;
                defaults to the key itself

        Returns:
            Number of entries removed
        """
        removed = 0
        skipped = 0
        for key in self.keys(prefix):
            value = self.get(key)
            if value is None or not predicate(value):
                continue

            name = lock_for(key, value) if lock_for else key
            with self.try_lock(name) as acquired:
                if not acquired:
                    skipped += 1
                    continue
                value = self.get(key)
                if value is not None and predicate(value):
                    self.delete(key)
                    removed += 1

        if skipped:
            logger.debug(f"Sweep of '{prefix}' skipped {skipped} busy entries")
        return removed

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
