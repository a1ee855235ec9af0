"""
Lock coordination for RewardGuard.

Provides the named locks that make per-key state mutations atomic, both
inside one process and across load-balanced API instances.

Usage:
    from scaling import get_lock_manager

    lock_manager = get_lock_manager()
    with lock_manager.lock("identity:abc"):
        mutate_identity_state()
"""

import logging
import os
from typing import TYPE_CHECKING

from scaling.locking import LocalLockManager, LockInfo, LockManager

if TYPE_CHECKING:
    from scaling.locking import RedisLockManager

logger = logging.getLogger(__name__)

__all__ = [
    "LockInfo",
    "LockManager",
    "LocalLockManager",
    "get_lock_manager",
]

_lock_manager: LockManager | None = None


def get_lock_manager() -> LockManager:
    """
    Get the configured lock manager.

    Uses Redis for distributed locking if REDIS_URL is set,
    otherwise falls back to local threading locks.
    """
    global _lock_manager
    if _lock_manager is None:
        redis_url = os.getenv("REDIS_URL")
        if redis_url:
            try:
                from scaling.locking import RedisLockManager

                _lock_manager = RedisLockManager(redis_url)
            except ImportError:
                logger.warning("redis package not installed, using local locks")
                _lock_manager = LocalLockManager()
        else:
            _lock_manager = LocalLockManager()
    return _lock_manager
