"""
RewardGuard - Integrity Engine

The single place that decides whether an identity may earn right now.
evaluate() folds the behavior analysis, the challenge lockout, any pending
re-verification and the active challenge into one Decision; the reward
pipelines call it before and after the ledgers run.

State precedence, highest first:

    RETIRED > BLOCKED > REVERIFY_PENDING > LOCKED > CHALLENGED > NORMAL

BLOCKED is a soft block: it raises a re-verification request, and only a
completed re-verification (a fresh pseudonym) clears it. The flagged
identity is then RETIRED and never earns again; its successor starts
clean.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from behavior_analyzer import (
    BehaviorAnalysis,
    BehaviorThresholds,
    BehaviorTracker,
    Recommendation,
    ViewEvent,
)
from challenge_engine import (
    Challenge,
    ChallengeConfig,
    ChallengeEngine,
    ChallengeStatus,
    ChallengeVerifyResult,
)
from daily_quota import ActionType, DailyLimitConfig, DailyLimitResult, DailyQuotaTracker, DailyRecord
from integrity_errors import ErrorKind
from monitoring import metrics
from quiz_ledger import QuizConfig, QuizLedger
from rate_limiter import RateLimitConfig, RateLimiter, RateLimitResult
from reverification import (
    ReVerificationConfig,
    ReVerificationCoordinator,
    ReVerificationReason,
    ReVerificationRequest,
)
from session_ledger import SessionConfig, SessionLedger, StartSessionResult
from storage.base import StateStore, identity_lock_name

logger = logging.getLogger(__name__)


class IdentityState(str, Enum):
    NORMAL = "NORMAL"
    CHALLENGED = "CHALLENGED"
    LOCKED = "LOCKED"
    REVERIFY_PENDING = "REVERIFY_PENDING"
    BLOCKED = "BLOCKED"
    RETIRED = "RETIRED"


@dataclass
class EngineConfig:
    """Configuration for every component the engine owns."""

    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    daily: DailyLimitConfig = field(default_factory=DailyLimitConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    quiz: QuizConfig = field(default_factory=QuizConfig)
    behavior: BehaviorThresholds = field(default_factory=BehaviorThresholds)
    challenges: ChallengeConfig = field(default_factory=ChallengeConfig)
    reverification: ReVerificationConfig = field(default_factory=ReVerificationConfig)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            rate_limits=RateLimitConfig.from_env(),
            daily=DailyLimitConfig.from_env(),
            sessions=SessionConfig.from_env(),
            quiz=QuizConfig.from_env(),
            behavior=BehaviorThresholds.from_env(),
            challenges=ChallengeConfig.from_env(),
            reverification=ReVerificationConfig.from_env(),
        )


@dataclass
class Decision:
    """Outcome of evaluate(): the identity's state and what it must do next."""

    state: IdentityState
    allowed: bool
    analysis: BehaviorAnalysis
    error_kind: ErrorKind | None = None
    challenge: Challenge | None = None
    reverification: ReVerificationRequest | None = None
    lock_remaining_ms: int | None = None

    def next_step(self) -> dict[str, Any] | None:
        """Client-facing instructions; never includes a challenge answer."""
        if self.allowed:
            return None
        step: dict[str, Any] = {"state": self.state.value}
        if self.challenge is not None:
            step["challenge"] = self.challenge.to_public_dict()
        if self.reverification is not None:
            step["reverification"] = {
                "action": self.reverification.action,
                "reason": self.reverification.reason.value,
                "expires_at": self.reverification.expires_at,
                **ReVerificationCoordinator.get_message(self.reverification.reason),
            }
        if self.lock_remaining_ms is not None:
            step["lock_remaining_ms"] = self.lock_remaining_ms
        return step

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "allowed": self.allowed,
            "error": self.error_kind.value if self.error_kind else None,
            "analysis": self.analysis.to_dict(),
            "next_step": self.next_step(),
        }


@dataclass
class PipelineResult:
    """Result of a reward pipeline, ready to be rendered by the API."""

    success: bool
    xp_awarded: int = 0
    error_kind: ErrorKind | None = None
    detail: str | None = None
    decision: Decision | None = None
    rate_limit: RateLimitResult | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result = {
            "success": self.success,
            "xp_awarded": self.xp_awarded,
            "error": self.error_kind.value if self.error_kind else None,
        }
        if self.detail:
            result["detail"] = self.detail
        if self.decision is not None and not self.decision.allowed:
            result["next_step"] = self.decision.next_step()
        if self.rate_limit is not None and not self.rate_limit.allowed:
            result["retry_after"] = self.rate_limit.retry_after
        result.update(self.data)
        return result


class IntegrityEngine:
    """
    Owns every integrity component over one shared StateStore.

    Pipelines take the rate-limit buckets first and then hold the identity
    lock for the rest of the run, so the pre-check, the ledger update and
    the daily commit are atomic per identity.
    """

    def __init__(
        self,
        store: StateStore,
        config: EngineConfig | None = None,
        clock: Callable[[], float] = time.time,
        rng=None,
    ):
        self.store = store
        self.config = config or EngineConfig.from_env()
        self._clock = clock

        cfg = self.config
        self.rate_limiter = RateLimiter(store, cfg.rate_limits, clock=clock)
        self.quota = DailyQuotaTracker(store, cfg.daily, clock=clock)
        self.sessions = SessionLedger(store, cfg.sessions, clock=clock)
        self.quizzes = QuizLedger(store, cfg.quiz, clock=clock, today=self.quota.today)
        self.behavior = BehaviorTracker(store, cfg.behavior, clock=clock)
        self.challenges = ChallengeEngine(store, cfg.challenges, clock=clock, rng=rng)
        self.reverification = ReVerificationCoordinator(store, cfg.reverification, clock=clock)

    # ============================================================
    # State machine
    # ============================================================

    def is_retired(self, identity: str) -> bool:
        return self.store.get(f"retired:{identity}") is not None

    def evaluate(
        self, identity: str, analysis: BehaviorAnalysis | None = None, issue: bool = True
    ) -> Decision:
        """
        Decide the identity's current state.

        May raise a re-verification request (BLOCKED, or a reverify
        recommendation with none pending) or issue a challenge when one
        is due. With issue=False the decision reports what the identity
        would face without raising a request or issuing a challenge.
        """
        with self.store.lock(identity_lock_name(identity)):
            if analysis is None:
                analysis = self.behavior.get_analysis(identity)

            if self.is_retired(identity):
                return Decision(
                    state=IdentityState.RETIRED,
                    allowed=False,
                    analysis=analysis,
                    error_kind=ErrorKind.IDENTITY_RETIRED,
                )

            recommendation = analysis.recommendation
            pending = self.reverification.get_pending(identity)

            if recommendation is Recommendation.BLOCK:
                if pending is None and issue:
                    pending = self.reverification.request(
                        identity, ReVerificationReason.SUSPICIOUS_BEHAVIOR
                    )
                return Decision(
                    state=IdentityState.BLOCKED,
                    allowed=False,
                    analysis=analysis,
                    error_kind=ErrorKind.ACCOUNT_RESTRICTED,
                    reverification=pending,
                )

            reverify_due = pending is None and recommendation is Recommendation.REVERIFY
            if reverify_due and issue:
                pending = self.reverification.request(
                    identity, ReVerificationReason.SUSPICIOUS_BEHAVIOR
                )
            if pending is not None or reverify_due:
                return Decision(
                    state=IdentityState.REVERIFY_PENDING,
                    allowed=False,
                    analysis=analysis,
                    error_kind=ErrorKind.RE_VERIFICATION_REQUIRED,
                    reverification=pending,
                )

            if issue:
                status = self.challenges.get_status(identity, analysis)
            else:
                status = self.challenges.peek_status(identity, analysis)
            if status.is_locked:
                return Decision(
                    state=IdentityState.LOCKED,
                    allowed=False,
                    analysis=analysis,
                    error_kind=ErrorKind.USER_LOCKED,
                    lock_remaining_ms=status.lock_remaining_ms,
                )
            if status.needs_challenge:
                return Decision(
                    state=IdentityState.CHALLENGED,
                    allowed=False,
                    analysis=analysis,
                    error_kind=ErrorKind.CHALLENGE_REQUIRED,
                    challenge=status.challenge,
                )

            return Decision(state=IdentityState.NORMAL, allowed=True, analysis=analysis)

    # ============================================================
    # Helpers
    # ============================================================

    def _rate_limited(
        self, identity: str, ip: str | None, limit_class: str
    ) -> PipelineResult | None:
        result = self.rate_limiter.check_combined(identity, ip, limit_class)
        if result.allowed:
            return None
        return PipelineResult(
            success=False,
            error_kind=ErrorKind.RATE_LIMIT_EXCEEDED,
            rate_limit=result,
        )

    def _withhold(self, identity: str, decision: Decision, stage: str) -> PipelineResult:
        reason = decision.error_kind.value
        metrics.increment("rewards_withheld_total", labels={"reason": reason})
        logger.warning(
            f"Reward withheld for {identity} at {stage}: {decision.state.value} "
            f"(score {decision.analysis.suspicion_score})"
        )
        return PipelineResult(success=False, error_kind=decision.error_kind, decision=decision)

    def _over_quota(self, identity: str, daily: DailyLimitResult) -> PipelineResult:
        metrics.increment("rewards_withheld_total", labels={"reason": daily.reason.value})
        logger.warning(f"Reward withheld for {identity}: {daily.reason.value} ({daily.detail})")
        return PipelineResult(
            success=False,
            error_kind=daily.reason,
            detail=daily.detail,
            data={"daily": daily.to_dict()},
        )

    # ============================================================
    # Ad view pipeline
    # ============================================================

    def start_session(
        self,
        identity: str,
        content_id: str,
        expected_duration_seconds: float,
        ip: str | None = None,
    ) -> PipelineResult:
        limited = self._rate_limited(identity, ip, "ad_view")
        if limited:
            return limited

        with self.store.lock(identity_lock_name(identity)):
            decision = self.evaluate(identity)
            if not decision.allowed:
                return self._withhold(identity, decision, "session start")

            started: StartSessionResult = self.sessions.start(
                identity, content_id, expected_duration_seconds
            )

        if not started.success:
            return PipelineResult(
                success=False, error_kind=started.error_kind, detail=started.detail
            )
        metrics.increment("sessions_started_total")
        return PipelineResult(
            success=True,
            data={"view_token": started.token, "expires_at": started.expires_at},
        )

    def complete_session(
        self,
        identity: str,
        content_id: str,
        token: str,
        claimed_xp: int,
        ip: str | None = None,
        duration_ms: int | None = None,
        client_timestamp_ms: int | None = None,
        user_agent: str | None = None,
        fingerprint_hash: str | None = None,
    ) -> PipelineResult:
        """
        Redeem a view token and, if nothing intercepts, commit the reward.

        Steps: rate limit, pre-evaluate, ledger, behavior, view counter,
        post-evaluate, daily check, daily commit. The caller credits the
        external ledger only when the result is successful.
        """
        limited = self._rate_limited(identity, ip, "ad_view")
        if limited:
            return limited

        with self.store.lock(identity_lock_name(identity)):
            pre = self.evaluate(identity)
            if not pre.allowed:
                return self._withhold(identity, pre, "pre-check")

            completed = self.sessions.complete(identity, content_id, token, claimed_xp)
            if not completed.success:
                return PipelineResult(
                    success=False,
                    error_kind=completed.error_kind,
                    detail=completed.detail,
                    data={
                        k: v
                        for k, v in completed.to_dict().items()
                        if k.endswith("_seconds")
                    },
                )

            event = ViewEvent(
                timestamp_ms=int(self._clock() * 1000),
                duration_ms=(
                    duration_ms
                    if duration_ms is not None
                    else int(completed.elapsed_seconds * 1000)
                ),
                content_id=content_id,
                client_timestamp_ms=client_timestamp_ms,
                user_agent=user_agent,
                fingerprint_hash=fingerprint_hash,
            )
            analysis = self.behavior.record_view(identity, event)
            self.challenges.record_view(identity)

            post = self.evaluate(identity, analysis)
            if not post.allowed:
                return self._withhold(identity, post, "post-check")

            daily = self.quota.check_daily_limit(identity, completed.xp_awarded, ActionType.AD)
            if not daily.allowed:
                return self._over_quota(identity, daily)

            self.quota.record_earned(identity, completed.xp_awarded, ActionType.AD)

        metrics.increment("rewards_granted_total", labels={"source": "ad"})
        logger.info(f"Granted {completed.xp_awarded} XP to {identity} for content {content_id}")
        return PipelineResult(
            success=True,
            xp_awarded=completed.xp_awarded,
            data={"suspicion_score": analysis.suspicion_score},
        )

    # ============================================================
    # Quiz pipeline
    # ============================================================

    def start_quiz(
        self,
        identity: str,
        quiz_id: str,
        correct_index: int,
        xp_reward: int,
        ip: str | None = None,
    ) -> PipelineResult:
        if xp_reward < 0:
            return PipelineResult(
                success=False,
                error_kind=ErrorKind.INVALID_XP,
                detail=f"xp_reward must not be negative, got {xp_reward}",
            )
        limited = self._rate_limited(identity, ip, "earn_credits")
        if limited:
            return limited

        with self.store.lock(identity_lock_name(identity)):
            decision = self.evaluate(identity)
            if not decision.allowed:
                return self._withhold(identity, decision, "quiz start")

            daily = self.quota.check_daily_limit(identity, xp_reward, ActionType.QUIZ)
            if not daily.allowed:
                return self._over_quota(identity, daily)

            error = self.quizzes.start_quiz(identity, quiz_id, correct_index, xp_reward)

        if error is not None:
            return PipelineResult(success=False, error_kind=error)
        return PipelineResult(success=True, data={"quiz_id": quiz_id})

    def answer_quiz(
        self,
        identity: str,
        quiz_id: str,
        selected_index: int,
        ip: str | None = None,
    ) -> PipelineResult:
        limited = self._rate_limited(identity, ip, "earn_credits")
        if limited:
            return limited

        with self.store.lock(identity_lock_name(identity)):
            decision = self.evaluate(identity)
            if not decision.allowed:
                return self._withhold(identity, decision, "quiz answer")

            reward = self.quizzes.peek_reward(identity, quiz_id)
            if reward is not None:
                daily = self.quota.check_daily_limit(identity, reward, ActionType.QUIZ)
                if not daily.allowed:
                    return self._over_quota(identity, daily)

            answer = self.quizzes.submit_answer(identity, quiz_id, selected_index)
            if not answer.success:
                return PipelineResult(success=False, error_kind=answer.error_kind)

            if answer.xp_awarded > 0:
                self.quota.record_earned(identity, answer.xp_awarded, ActionType.QUIZ)

        if answer.xp_awarded > 0:
            metrics.increment("rewards_granted_total", labels={"source": "quiz"})
        return PipelineResult(
            success=True,
            xp_awarded=answer.xp_awarded,
            data={"correct": answer.correct},
        )

    # ============================================================
    # Behavior, challenges, re-verification
    # ============================================================

    def record_behavior_event(
        self,
        identity: str,
        duration_ms: int,
        content_id: str,
        timestamp_ms: int | None = None,
        **signals: Any,
    ) -> BehaviorAnalysis:
        """Feed a client-reported view event into the identity's buffer."""
        event = ViewEvent(
            timestamp_ms=timestamp_ms if timestamp_ms is not None else int(self._clock() * 1000),
            duration_ms=duration_ms,
            content_id=content_id,
            **signals,
        )
        return self.behavior.record_view(identity, event)

    def record_honeypot(self, identity: str) -> BehaviorAnalysis:
        return self.behavior.record_honeypot_trigger(identity)

    def get_challenge_status(self, identity: str) -> ChallengeStatus:
        return self.challenges.get_status(identity, self.behavior.get_analysis(identity))

    def verify_challenge(
        self, identity: str, challenge_id: str | None, answer: Any = None, skip: bool = False
    ) -> ChallengeVerifyResult:
        if skip:
            return self.challenges.skip(identity)
        return self.challenges.verify(identity, challenge_id, answer)

    def get_pending_reverification(self, identity: str) -> ReVerificationRequest | None:
        return self.reverification.get_pending(identity)

    def request_reverification(
        self, identity: str, reason: ReVerificationReason | str
    ) -> ReVerificationRequest:
        return self.reverification.request(identity, reason)

    def complete_reverification(self, identity: str, verified_pseudonym: str) -> ErrorKind | None:
        """
        Close a pending re-verification once the oracle issued a new pseudonym.

        The flagged identity is retired: its behavior buffer and challenge
        state are cleared, and a pseudonym that was already retired (or is
        the flagged one) is rejected.

        Returns:
            None on success, otherwise the reason it was refused
        """
        if not verified_pseudonym or not verified_pseudonym.strip():
            return ErrorKind.VERIFICATION_FAILED

        with self.store.lock(identity_lock_name(identity)):
            if self.reverification.get_pending(identity) is None:
                return ErrorKind.NO_PENDING_REVERIFICATION
            if verified_pseudonym == identity or self.store.get(f"retired:{verified_pseudonym}"):
                logger.warning(f"Re-verification for {identity} returned a reused pseudonym")
                return ErrorKind.PSEUDONYM_REUSED

            self.reverification.complete(identity)
            self.behavior.clear_identity(identity)
            self.challenges.reset_identity(identity)
            self.store.set(
                f"retired:{identity}",
                {"identity": identity, "successor": verified_pseudonym, "retired_at": self._clock()},
            )

        logger.info(f"Identity {identity} re-verified")
        return None

    # ============================================================
    # Daily quota passthrough
    # ============================================================

    def check_daily_limit(
        self, identity: str, proposed_xp: int, action_type: ActionType | str
    ) -> DailyLimitResult:
        return self.quota.check_daily_limit(identity, proposed_xp, action_type)

    def record_earned(self, identity: str, xp: int, action_type: ActionType | str) -> DailyRecord:
        return self.quota.record_earned(identity, xp, action_type)

    def revert_earned(self, identity: str, xp: int, action_type: ActionType | str) -> DailyRecord:
        return self.quota.revert_earned(identity, xp, action_type)

    def get_daily_stats(self, identity: str) -> dict[str, Any]:
        return self.quota.get_daily_stats(identity)

    def get_stats(self) -> dict[str, Any]:
        return {
            "sessions": self.sessions.get_stats(),
            "active_challenges": len(self.store.keys(f"{self.config.challenges.key_prefix}active:")),
            "pending_reverifications": len(self.store.keys(self.config.reverification.key_prefix)),
            "tracked_identities": len(self.store.keys(self.behavior.key_prefix)),
            "store": self.store.get_info(),
            "rate_limiter": self.rate_limiter.is_healthy(),
        }
