"""
RewardGuard - Daily Quota Tracker

Per-identity, per-calendar-day ceilings on XP, ad views and quiz answers.

Checking and committing are separate steps: check_daily_limit() only
answers whether a proposed reward fits, and record_earned() commits it
once the whole reward pipeline has succeeded. Records reset wholesale at
the day boundary; they are never decayed.

Environment Variables:
    DAILY_MAX_XP=500
    DAILY_MAX_AD_VIEWS=50
    DAILY_MAX_QUIZ_ANSWERS=20
    DAILY_QUOTA_TIMEZONE=UTC
"""

import logging
import os
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from integrity_errors import ConfigurationError, ErrorKind
from storage.base import StateStore, identity_lock_name

logger = logging.getLogger(__name__)

# Records outlive their day by a margin so late sweeps still find them
RECORD_TTL_SECONDS = 2 * 24 * 3600


class ActionType(str, Enum):
    """Reward-earning actions counted against the daily quota."""

    AD = "ad"
    QUIZ = "quiz"


@dataclass
class DailyLimitConfig:
    """Daily ceilings and the timezone that defines a day."""

    max_xp_per_day: int = 500
    max_ad_views_per_day: int = 50
    max_quiz_answers_per_day: int = 20
    timezone: str = "UTC"
    key_prefix: str = "daily:"

    def __post_init__(self):
        try:
            self._tz = ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigurationError(
                f"Unknown timezone '{self.timezone}'", setting="DAILY_QUOTA_TIMEZONE", cause=e
            )
        for name in ("max_xp_per_day", "max_ad_views_per_day", "max_quiz_answers_per_day"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative", setting=name)

    @property
    def tzinfo(self) -> ZoneInfo:
        return self._tz

    @classmethod
    def from_env(cls) -> "DailyLimitConfig":
        return cls(
            max_xp_per_day=int(os.getenv("DAILY_MAX_XP", "500")),
            max_ad_views_per_day=int(os.getenv("DAILY_MAX_AD_VIEWS", "50")),
            max_quiz_answers_per_day=int(os.getenv("DAILY_MAX_QUIZ_ANSWERS", "20")),
            timezone=os.getenv("DAILY_QUOTA_TIMEZONE", "UTC"),
        )


@dataclass
class DailyRecord:
    """One identity's rewarded activity for one day."""

    identity: str
    date: str
    xp_earned: int = 0
    ad_views: int = 0
    quiz_answers: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DailyRecord":
        return cls(**data)


@dataclass
class DailyLimitResult:
    """Whether a proposed reward fits within today's ceilings."""

    allowed: bool
    current_xp: int
    remaining_xp: int
    current_ad_views: int
    remaining_ad_views: int
    current_quiz_answers: int
    remaining_quiz_answers: int
    reason: ErrorKind | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value if self.reason else None,
            "detail": self.detail,
            "current_xp": self.current_xp,
            "remaining_xp": self.remaining_xp,
            "current_ad_views": self.current_ad_views,
            "remaining_ad_views": self.remaining_ad_views,
            "current_quiz_answers": self.current_quiz_answers,
            "remaining_quiz_answers": self.remaining_quiz_answers,
        }


class DailyQuotaTracker:
    """
    Tracks daily reward totals per identity.

    All reads and writes of a record happen under the identity's lock, so
    a check followed by a commit from the engine is atomic as long as the
    engine holds that lock around both.
    """

    def __init__(
        self,
        store: StateStore,
        config: DailyLimitConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config or DailyLimitConfig.from_env()
        self._clock = clock

    def today(self) -> str:
        """Current calendar date (ISO format) in the configured timezone."""
        return datetime.fromtimestamp(self._clock(), tz=self.config.tzinfo).date().isoformat()

    def _key(self, identity: str) -> str:
        return f"{self.config.key_prefix}{identity}"

    def _load(self, identity: str) -> DailyRecord:
        """Load today's record, rolling over a stale one."""
        today = self.today()
        data = self.store.get(self._key(identity))
        if data is not None:
            record = DailyRecord.from_dict(data)
            if record.date == today:
                return record
            logger.debug(f"Daily record for {identity} rolled over from {record.date}")
        record = DailyRecord(identity=identity, date=today)
        self.store.set(self._key(identity), record.to_dict(), ttl=RECORD_TTL_SECONDS)
        return record

    def _result(self, record: DailyRecord, allowed: bool, reason=None, detail=None):
        cfg = self.config
        return DailyLimitResult(
            allowed=allowed,
            reason=reason,
            detail=detail,
            current_xp=record.xp_earned,
            remaining_xp=max(0, cfg.max_xp_per_day - record.xp_earned),
            current_ad_views=record.ad_views,
            remaining_ad_views=max(0, cfg.max_ad_views_per_day - record.ad_views),
            current_quiz_answers=record.quiz_answers,
            remaining_quiz_answers=max(0, cfg.max_quiz_answers_per_day - record.quiz_answers),
        )

    def check_daily_limit(
        self, identity: str, proposed_xp: int, action_type: ActionType | str
    ) -> DailyLimitResult:
        """
        Check whether proposed_xp for one more action fits today's ceilings.

        Nothing is committed; call record_earned() once the reward is granted.
        """
        action_type = ActionType(action_type)
        cfg = self.config

        with self.store.lock(identity_lock_name(identity)):
            record = self._load(identity)

        if record.xp_earned + proposed_xp > cfg.max_xp_per_day:
            return self._result(
                record, False,
                ErrorKind.DAILY_XP_LIMIT_REACHED,
                f"{record.xp_earned}/{cfg.max_xp_per_day}",
            )

        if action_type == ActionType.AD and record.ad_views >= cfg.max_ad_views_per_day:
            return self._result(
                record, False,
                ErrorKind.DAILY_AD_VIEW_LIMIT_REACHED,
                f"{record.ad_views}/{cfg.max_ad_views_per_day}",
            )

        if action_type == ActionType.QUIZ and record.quiz_answers >= cfg.max_quiz_answers_per_day:
            return self._result(
                record, False,
                ErrorKind.DAILY_QUIZ_LIMIT_REACHED,
                f"{record.quiz_answers}/{cfg.max_quiz_answers_per_day}",
            )

        return self._result(record, True)

    def record_earned(
        self, identity: str, xp: int, action_type: ActionType | str
    ) -> DailyRecord:
        """
        Commit one rewarded action and its XP.

        XP beyond the daily maximum is clamped, never stored.

        Raises:
            ValueError: If xp is negative
        """
        if xp < 0:
            raise ValueError(f"XP must not be negative, got {xp}")
        action_type = ActionType(action_type)

        with self.store.lock(identity_lock_name(identity)):
            record = self._load(identity)

            total = record.xp_earned + xp
            if total > self.config.max_xp_per_day:
                logger.warning(
                    f"Clamping daily XP for {identity}: {total} exceeds "
                    f"{self.config.max_xp_per_day}"
                )
                total = self.config.max_xp_per_day
            record.xp_earned = total

            if action_type == ActionType.AD:
                record.ad_views += 1
            else:
                record.quiz_answers += 1

            self.store.set(self._key(identity), record.to_dict(), ttl=RECORD_TTL_SECONDS)
            return record

    def revert_earned(
        self, identity: str, xp: int, action_type: ActionType | str
    ) -> DailyRecord:
        """Undo a record_earned() whose reward never reached the ledger."""
        if xp < 0:
            raise ValueError(f"XP must not be negative, got {xp}")
        action_type = ActionType(action_type)

        with self.store.lock(identity_lock_name(identity)):
            record = self._load(identity)
            record.xp_earned = max(0, record.xp_earned - xp)
            if action_type == ActionType.AD:
                record.ad_views = max(0, record.ad_views - 1)
            else:
                record.quiz_answers = max(0, record.quiz_answers - 1)
            self.store.set(self._key(identity), record.to_dict(), ttl=RECORD_TTL_SECONDS)

        logger.info(f"Reverted {xp} XP ({action_type.value}) for {identity}")
        return record

    def get_daily_stats(self, identity: str) -> dict[str, Any]:
        """Today's totals and limits for an identity."""
        with self.store.lock(identity_lock_name(identity)):
            record = self._load(identity)
        return {
            **record.to_dict(),
            "limits": {
                "max_xp_per_day": self.config.max_xp_per_day,
                "max_ad_views_per_day": self.config.max_ad_views_per_day,
                "max_quiz_answers_per_day": self.config.max_quiz_answers_per_day,
            },
            "timezone": self.config.timezone,
        }

    def cleanup_old_records(self) -> int:
        """Delete records from previous days."""
        today = self.today()
        removed = self.store.sweep(
            self.config.key_prefix,
            lambda record: record["date"] != today,
            lock_for=lambda _key, record: identity_lock_name(record["identity"]),
        )
        if removed:
            logger.info(f"Removed {removed} stale daily records")
        return removed
