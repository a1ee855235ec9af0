"""
RewardGuard - Quiz Ledger

One answer per quiz per identity per day. The correct option is held
server-side from the moment the quiz is shown, so the client never learns
the answer before submitting.
"""

import logging
import os
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

from integrity_errors import ErrorKind
from storage.base import StateStore, identity_lock_name

logger = logging.getLogger(__name__)

ANSWERED_TTL_SECONDS = 2 * 24 * 3600


@dataclass
class QuizConfig:
    session_ttl_seconds: float = 600.0
    key_prefix: str = "quiz:"

    @classmethod
    def from_env(cls) -> "QuizConfig":
        return cls(session_ttl_seconds=float(os.getenv("QUIZ_SESSION_TTL_SECONDS", "600")))


@dataclass
class QuizSession:
    identity: str
    quiz_id: str
    correct_index: int
    xp_reward: int
    started_at: float
    answered: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QuizSession":
        return cls(**data)


@dataclass
class QuizAnswerResult:
    success: bool
    correct: bool = False
    xp_awarded: int = 0
    error_kind: ErrorKind | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "correct": self.correct,
            "xp_awarded": self.xp_awarded,
            "error": self.error_kind.value if self.error_kind else None,
        }


class QuizLedger:
    """Tracks open quiz sessions and which quizzes were answered today."""

    def __init__(
        self,
        store: StateStore,
        config: QuizConfig | None = None,
        clock: Callable[[], float] = time.time,
        today: Callable[[], str] | None = None,
    ):
        self.store = store
        self.config = config or QuizConfig.from_env()
        self._clock = clock
        self._today = today or (
            lambda: datetime.fromtimestamp(self._clock(), tz=UTC).date().isoformat()
        )

    def _session_key(self, identity: str, quiz_id: str) -> str:
        return f"{self.config.key_prefix}session:{identity}:{quiz_id}"

    def _answered_key(self, identity: str, day: str) -> str:
        return f"{self.config.key_prefix}answered:{identity}:{day}"

    def answered_today(self, identity: str) -> list[str]:
        data = self.store.get(self._answered_key(identity, self._today()))
        return list(data["quiz_ids"]) if data else []

    def start_quiz(
        self, identity: str, quiz_id: str, correct_index: int, xp_reward: int
    ) -> ErrorKind | None:
        """
        Open a quiz session.

        Returns:
            None on success, INVALID_XP for a negative reward,
            QUIZ_ALREADY_ANSWERED_TODAY if the quiz was answered earlier today
        """
        if xp_reward < 0:
            return ErrorKind.INVALID_XP
        with self.store.lock(identity_lock_name(identity)):
            if quiz_id in self.answered_today(identity):
                return ErrorKind.QUIZ_ALREADY_ANSWERED_TODAY

            session = QuizSession(
                identity=identity,
                quiz_id=quiz_id,
                correct_index=correct_index,
                xp_reward=xp_reward,
                started_at=self._clock(),
            )
            # Kept past expiry so a late answer reports QUIZ_SESSION_EXPIRED
            self.store.set(
                self._session_key(identity, quiz_id),
                session.to_dict(),
                ttl=self.config.session_ttl_seconds * 2,
            )
        return None

    def peek_reward(self, identity: str, quiz_id: str) -> int | None:
        """XP the open session would award for a correct answer, if any."""
        data = self.store.get(self._session_key(identity, quiz_id))
        if data is None or data["answered"]:
            return None
        return data["xp_reward"]

    def submit_answer(self, identity: str, quiz_id: str, selected_index: int) -> QuizAnswerResult:
        """Record the single answer allowed for an open quiz session."""
        with self.store.lock(identity_lock_name(identity)):
            key = self._session_key(identity, quiz_id)
            data = self.store.get(key)
            if data is None:
                return QuizAnswerResult(success=False, error_kind=ErrorKind.NO_ACTIVE_QUIZ_SESSION)

            session = QuizSession.from_dict(data)
            if session.answered:
                return QuizAnswerResult(success=False, error_kind=ErrorKind.QUIZ_ALREADY_ANSWERED)

            now = self._clock()
            if now - session.started_at > self.config.session_ttl_seconds:
                self.store.delete(key)
                return QuizAnswerResult(success=False, error_kind=ErrorKind.QUIZ_SESSION_EXPIRED)

            session.answered = True
            remaining = self.config.session_ttl_seconds - (now - session.started_at)
            self.store.set(key, session.to_dict(), ttl=max(1.0, remaining))

            day = self._today()
            day_key = self._answered_key(identity, day)
            answered = self.store.get(day_key) or {"identity": identity, "date": day, "quiz_ids": []}
            if quiz_id not in answered["quiz_ids"]:
                answered["quiz_ids"].append(quiz_id)
            self.store.set(day_key, answered, ttl=ANSWERED_TTL_SECONDS)

        correct = selected_index == session.correct_index
        return QuizAnswerResult(
            success=True,
            correct=correct,
            xp_awarded=session.xp_reward if correct else 0,
        )

    def cleanup_old_sessions(self) -> int:
        """Drop expired sessions and answered-sets from earlier days."""
        now = self._clock()
        today = self._today()
        prefix = self.config.key_prefix

        def by_owner(_key: str, value: dict[str, Any]) -> str:
            return identity_lock_name(value["identity"])

        removed = self.store.sweep(
            f"{prefix}session:",
            lambda s: now - s["started_at"] > self.config.session_ttl_seconds,
            lock_for=by_owner,
        )
        removed += self.store.sweep(
            f"{prefix}answered:",
            lambda answered: answered["date"] != today,
            lock_for=by_owner,
        )
        return removed
