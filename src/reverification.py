"""
RewardGuard - Re-verification Coordinator

Escalates a suspicious identity to a fresh proof-of-personhood check.

Each reason maps to its own oracle action namespace, so the pseudonym
returned by the re-verification cannot be linked to the flagged one by
anybody but this service.

Environment Variables:
    REVERIFY_EXPIRY_SECONDS=600
    REVERIFY_ACTION_PREFIX=adwatch-
"""

import logging
import os
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from monitoring import metrics
from storage.base import StateStore, identity_lock_name

logger = logging.getLogger(__name__)


class ReVerificationReason(str, Enum):
    SUSPICIOUS_BEHAVIOR = "suspicious_behavior"
    HIGH_VALUE_ACTION = "high_value_action"
    PERIODIC_CHECK = "periodic_check"
    ADMIN_REQUEST = "admin_request"


ACTION_SUFFIXES = {
    ReVerificationReason.SUSPICIOUS_BEHAVIOR: "behavior-check",
    ReVerificationReason.HIGH_VALUE_ACTION: "withdrawal",
    ReVerificationReason.PERIODIC_CHECK: "periodic-verify",
    ReVerificationReason.ADMIN_REQUEST: "behavior-check",
}

MESSAGES = {
    ReVerificationReason.SUSPICIOUS_BEHAVIOR: {
        "title": "Verification required",
        "description": "We noticed unusual activity. Please verify again to keep earning rewards.",
    },
    ReVerificationReason.HIGH_VALUE_ACTION: {
        "title": "Confirm it's you",
        "description": "This action needs a fresh verification before it can continue.",
    },
    ReVerificationReason.PERIODIC_CHECK: {
        "title": "Routine check",
        "description": "Please verify again. This is a periodic check for all users.",
    },
    ReVerificationReason.ADMIN_REQUEST: {
        "title": "Verification required",
        "description": "Your account needs to be verified again before you can continue.",
    },
}


@dataclass
class ReVerificationConfig:
    expiry_seconds: float = 600.0
    action_prefix: str = "adwatch-"
    key_prefix: str = "reverify:"

    @classmethod
    def from_env(cls) -> "ReVerificationConfig":
        return cls(
            expiry_seconds=float(os.getenv("REVERIFY_EXPIRY_SECONDS", "600")),
            action_prefix=os.getenv("REVERIFY_ACTION_PREFIX", "adwatch-"),
        )


@dataclass
class ReVerificationRequest:
    identity: str
    action: str
    reason: ReVerificationReason
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["reason"] = self.reason.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReVerificationRequest":
        return cls(**{**data, "reason": ReVerificationReason(data["reason"])})


class ReVerificationCoordinator:
    """Holds at most one pending re-verification request per identity."""

    def __init__(
        self,
        store: StateStore,
        config: ReVerificationConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config or ReVerificationConfig.from_env()
        self._clock = clock

    def _key(self, identity: str) -> str:
        return f"{self.config.key_prefix}{identity}"

    def action_for(self, reason: ReVerificationReason | str) -> str:
        return f"{self.config.action_prefix}{ACTION_SUFFIXES[ReVerificationReason(reason)]}"

    def request(
        self, identity: str, reason: ReVerificationReason | str
    ) -> ReVerificationRequest:
        """Create the pending request for identity, replacing any existing one."""
        reason = ReVerificationReason(reason)
        now = self._clock()
        req = ReVerificationRequest(
            identity=identity,
            action=self.action_for(reason),
            reason=reason,
            created_at=now,
            expires_at=now + self.config.expiry_seconds,
        )
        with self.store.lock(identity_lock_name(identity)):
            self.store.set(self._key(identity), req.to_dict(), ttl=self.config.expiry_seconds)

        metrics.increment("reverifications_requested_total", labels={"reason": reason.value})
        logger.warning(f"Re-verification requested for {identity}: {reason.value}")
        return req

    def get_pending(self, identity: str) -> ReVerificationRequest | None:
        with self.store.lock(identity_lock_name(identity)):
            data = self.store.get(self._key(identity))
            if data is None:
                return None
            req = ReVerificationRequest.from_dict(data)
            if req.is_expired(self._clock()):
                self.store.delete(self._key(identity))
                logger.info(f"Re-verification request for {identity} expired")
                return None
            return req

    def complete(self, identity: str) -> bool:
        """Clear the pending request; returns whether one was pending."""
        if self.get_pending(identity) is None:
            return False
        with self.store.lock(identity_lock_name(identity)):
            self.store.delete(self._key(identity))
        logger.info(f"Re-verification completed for {identity}")
        return True

    @staticmethod
    def get_message(reason: ReVerificationReason | str) -> dict[str, str]:
        return dict(MESSAGES[ReVerificationReason(reason)])

    def cleanup_expired(self) -> int:
        now = self._clock()
        return self.store.sweep(
            self.config.key_prefix,
            lambda req: now > req["expires_at"],
            lock_for=lambda _key, req: identity_lock_name(req["identity"]),
        )
