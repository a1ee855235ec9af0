"""
In-memory state store.

Keeps all state in process memory, useful for:
- Unit testing
- Development
- Single-instance deployments that accept losing state on restart
"""

import copy
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from scaling.locking import LocalLockManager, LockManager
from storage.base import StateStore


@dataclass
class StoreEntry:
    """A stored value with optional expiration."""

    value: Any
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class MemoryStateStore(StateStore):
    """
    In-memory state store.

    All data is lost when the process exits. Values are deep-copied on the
    way in and out so callers never share mutable state with the store.
    """

    def __init__(
        self,
        lock_manager: LockManager | None = None,
        clock: Callable[[], float] = time.time,
        **kwargs,
    ):
        super().__init__(lock_manager or LocalLockManager(), clock=clock, **kwargs)
        self._data: dict[str, StoreEntry] = {}
        self._lock = threading.RLock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return default
            if entry.is_expired(self._clock()):
                del self._data[key]
                return default
            return copy.deepcopy(entry.value)

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        with self._lock:
            self._data[key] = StoreEntry(value=copy.deepcopy(value), expires_at=expires_at)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> list[str]:
        now = self._clock()
        with self._lock:
            expired = [k for k, v in self._data.items() if v.is_expired(now)]
            for key in expired:
                del self._data[key]
            return [k for k in self._data if k.startswith(prefix)]

    def is_available(self) -> bool:
        """Memory store is always available."""
        return True

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        with self._lock:
            info["key_count"] = len(self._data)
        return info
