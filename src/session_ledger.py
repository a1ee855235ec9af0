"""
RewardGuard - Session Ledger

Single-use view tokens that bind a claimed ad view to an identity, a piece
of content and a time window. A reward is only eligible once the token is
redeemed after enough wall-clock time has passed.

Validation order on completion:
    token exists -> identity matches -> content matches -> not already
    completed -> cooldown not active -> elapsed >= minimum watch time

Environment Variables:
    SESSION_TTL_SECONDS=600
    SESSION_COOLDOWN_SECONDS=60
    SESSION_MIN_WATCH_FRACTION=0.8
    SESSION_MAX_EXPECTED_DURATION=300
"""

import logging
import os
import secrets
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

from integrity_errors import ErrorKind
from storage.base import StateStore, identity_lock_name

logger = logging.getLogger(__name__)


@dataclass
class SessionConfig:
    """Session lifetime and watch-time rules."""

    session_ttl_seconds: float = 600.0
    cooldown_seconds: float = 60.0
    min_watch_fraction: float = 0.8
    max_expected_duration_seconds: float = 300.0
    key_prefix: str = "session:"

    @classmethod
    def from_env(cls) -> "SessionConfig":
        return cls(
            session_ttl_seconds=float(os.getenv("SESSION_TTL_SECONDS", "600")),
            cooldown_seconds=float(os.getenv("SESSION_COOLDOWN_SECONDS", "60")),
            min_watch_fraction=float(os.getenv("SESSION_MIN_WATCH_FRACTION", "0.8")),
            max_expected_duration_seconds=float(
                os.getenv("SESSION_MAX_EXPECTED_DURATION", "300")
            ),
        )


@dataclass
class ViewSession:
    """An issued view token and what it was issued for."""

    token: str
    identity: str
    content_id: str
    expected_duration_seconds: float
    started_at: float
    completed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ViewSession":
        return cls(**data)


@dataclass
class StartSessionResult:
    success: bool
    token: str | None = None
    expires_at: float | None = None
    error_kind: ErrorKind | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "view_token": self.token,
            "expires_at": self.expires_at,
            "error": self.error_kind.value if self.error_kind else None,
            "detail": self.detail,
        }


@dataclass
class CompleteSessionResult:
    success: bool
    xp_awarded: int = 0
    error_kind: ErrorKind | None = None
    detail: str | None = None
    elapsed_seconds: float | None = None
    minimum_seconds: float | None = None
    cooldown_remaining_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        result = {
            "success": self.success,
            "xp_awarded": self.xp_awarded,
            "error": self.error_kind.value if self.error_kind else None,
            "detail": self.detail,
        }
        if self.elapsed_seconds is not None:
            result["elapsed_seconds"] = round(self.elapsed_seconds, 3)
            result["minimum_seconds"] = round(self.minimum_seconds, 3)
        if self.cooldown_remaining_seconds is not None:
            result["cooldown_remaining_seconds"] = round(self.cooldown_remaining_seconds, 3)
        return result


def _failure(kind: ErrorKind, **kwargs) -> CompleteSessionResult:
    return CompleteSessionResult(success=False, xp_awarded=0, error_kind=kind, **kwargs)


class SessionLedger:
    """
    Issues and redeems single-use view tokens.

    A redeemed token is removed from the live set and replaced by a
    short-lived tombstone so a replay reports ALREADY_COMPLETED rather
    than INVALID_TOKEN. Cooldowns are tracked per (identity, content).
    """

    def __init__(
        self,
        store: StateStore,
        config: SessionConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config or SessionConfig.from_env()
        self._clock = clock

    def _live_key(self, token: str) -> str:
        return f"{self.config.key_prefix}live:{token}"

    def _consumed_key(self, token: str) -> str:
        return f"{self.config.key_prefix}consumed:{token}"

    def _cooldown_key(self, identity: str, content_id: str) -> str:
        return f"{self.config.key_prefix}cooldown:{identity}:{content_id}"

    def start(
        self, identity: str, content_id: str, expected_duration_seconds: float
    ) -> StartSessionResult:
        """Issue a fresh view token for identity watching content_id."""
        if not (0 < expected_duration_seconds <= self.config.max_expected_duration_seconds):
            return StartSessionResult(
                success=False,
                error_kind=ErrorKind.INVALID_DURATION,
                detail=(
                    f"expected duration must be in (0, "
                    f"{self.config.max_expected_duration_seconds:g}] seconds"
                ),
            )

        token = f"vt_{secrets.token_urlsafe(24)}"
        now = self._clock()
        session = ViewSession(
            token=token,
            identity=identity,
            content_id=content_id,
            expected_duration_seconds=float(expected_duration_seconds),
            started_at=now,
        )

        with self.store.lock(identity_lock_name(identity)):
            self.store.set(
                self._live_key(token), session.to_dict(), ttl=self.config.session_ttl_seconds
            )

        logger.debug(f"Started view session {token} for content {content_id}")
        return StartSessionResult(
            success=True, token=token, expires_at=now + self.config.session_ttl_seconds
        )

    def get_session(self, token: str) -> ViewSession | None:
        data = self.store.get(self._live_key(token))
        return ViewSession.from_dict(data) if data else None

    def complete(
        self, identity: str, content_id: str, token: str, claimed_xp: int
    ) -> CompleteSessionResult:
        """
        Redeem a view token.

        On success the token is consumed, the cooldown starts and
        claimed_xp is reported as awarded. A too-short watch leaves the
        token valid so the view can be completed later.
        """
        if claimed_xp < 0:
            return _failure(
                ErrorKind.INVALID_XP, detail=f"claimed_xp must not be negative, got {claimed_xp}"
            )
        cfg = self.config

        with self.store.lock(identity_lock_name(identity)):
            now = self._clock()
            consumed = False
            data = self.store.get(self._live_key(token))
            if data is None:
                data = self.store.get(self._consumed_key(token))
                consumed = data is not None
            if data is None:
                return _failure(ErrorKind.INVALID_TOKEN)

            session = ViewSession.from_dict(data)
            if not consumed and now - session.started_at > cfg.session_ttl_seconds:
                self.store.delete(self._live_key(token))
                return _failure(ErrorKind.INVALID_TOKEN, detail="session expired")

            if session.identity != identity:
                logger.warning(f"View token presented by a different identity than {session.identity}")
                return _failure(ErrorKind.USER_MISMATCH)

            if session.content_id != content_id:
                return _failure(ErrorKind.CONTENT_MISMATCH)

            if consumed or session.completed:
                return _failure(ErrorKind.ALREADY_COMPLETED)

            cooldown = self.store.get(self._cooldown_key(identity, content_id))
            if cooldown is not None:
                since = now - cooldown["last_completed_at"]
                if since < cfg.cooldown_seconds:
                    return _failure(
                        ErrorKind.COOLDOWN_ACTIVE,
                        cooldown_remaining_seconds=cfg.cooldown_seconds - since,
                    )

            elapsed = now - session.started_at
            minimum = session.expected_duration_seconds * cfg.min_watch_fraction
            if elapsed < minimum:
                return _failure(
                    ErrorKind.WATCH_TIME_TOO_SHORT,
                    detail=f"{elapsed:.1f}s/{minimum:.1f}s",
                    elapsed_seconds=elapsed,
                    minimum_seconds=minimum,
                )

            session.completed = True
            self.store.delete(self._live_key(token))
            self.store.set(
                self._consumed_key(token), session.to_dict(), ttl=cfg.session_ttl_seconds
            )
            self.store.set(
                self._cooldown_key(identity, content_id),
                {"identity": identity, "content_id": content_id, "last_completed_at": now},
                ttl=cfg.cooldown_seconds * 2,
            )

        return CompleteSessionResult(
            success=True,
            xp_awarded=claimed_xp,
            elapsed_seconds=elapsed,
            minimum_seconds=minimum,
        )

    def sweep(self) -> dict[str, int]:
        """Evict expired sessions, tombstones and cooldowns."""
        now = self._clock()
        cfg = self.config

        def by_owner(_key: str, value: dict[str, Any]) -> str:
            return identity_lock_name(value["identity"])

        def session_expired(value: dict[str, Any]) -> bool:
            return now - value["started_at"] > cfg.session_ttl_seconds

        removed = {
            "sessions": self.store.sweep(
                f"{cfg.key_prefix}live:", session_expired, lock_for=by_owner
            ),
            # Tombstones are written on completion; their age is bounded by the store TTL
            "tombstones": self.store.sweep(
                f"{cfg.key_prefix}consumed:",
                lambda value: now - value["started_at"] > 2 * cfg.session_ttl_seconds,
                lock_for=by_owner,
            ),
            "cooldowns": self.store.sweep(
                f"{cfg.key_prefix}cooldown:",
                lambda value: now - value["last_completed_at"] > cfg.cooldown_seconds * 2,
                lock_for=by_owner,
            ),
        }
        if any(removed.values()):
            logger.debug(f"Session sweep removed {removed}")
        return removed

    def get_stats(self) -> dict[str, int]:
        return {
            "active_sessions": len(self.store.keys(f"{self.config.key_prefix}live:")),
            "active_cooldowns": len(self.store.keys(f"{self.config.key_prefix}cooldown:")),
        }
