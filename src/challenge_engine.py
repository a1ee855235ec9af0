"""
RewardGuard - Challenge Engine

Short interactive puzzles that a human solves in seconds and a replay
script cannot: tap a button N times, answer a small sum, swipe in a given
direction, or repeat a colour sequence.

A challenge is issued every N consecutive rewarded views, or sooner when
the behavior analysis asks for one. Timeouts, skips and wrong answers all
count as failures; after max_failed_attempts the identity is locked out
of every challenge interaction for lock_duration_ms. Passing resets the
counters and satisfies the behavior trigger: it stays quiet until the
analysis recommends allow again, so only the periodic trigger fires while
the score sits in the challenge band.

Environment Variables:
    CHALLENGE_VIEWS_BEFORE=5
    CHALLENGE_TIMEOUT_MS=30000
    CHALLENGE_HARD_TIMEOUT_MS=15000
    CHALLENGE_HARD_MODE_SCORE=70
    CHALLENGE_MAX_FAILED_ATTEMPTS=3
    CHALLENGE_LOCK_DURATION_MS=300000
"""

import logging
import os
import random
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ClassVar

from behavior_analyzer import BehaviorAnalysis, Recommendation
from integrity_errors import ErrorKind
from monitoring import metrics
from storage.base import StateStore, identity_lock_name

logger = logging.getLogger(__name__)

STATE_TTL_SECONDS = 24 * 3600


class ChallengeType(str, Enum):
    TAP = "tap"
    MATH = "math"
    SWIPE = "swipe"
    SEQUENCE = "sequence"


class Difficulty(str, Enum):
    NORMAL = "normal"
    HARD = "hard"


class SwipeDirection(str, Enum):
    UP = "UP"
    DOWN = "DOWN"
    LEFT = "LEFT"
    RIGHT = "RIGHT"


class Color(str, Enum):
    RED = "RED"
    BLUE = "BLUE"
    GREEN = "GREEN"
    YELLOW = "YELLOW"
    PURPLE = "PURPLE"
    ORANGE = "ORANGE"


NORMAL_PALETTE = [Color.RED, Color.BLUE, Color.GREEN, Color.YELLOW]
HARD_PALETTE = NORMAL_PALETTE + [Color.PURPLE, Color.ORANGE]


def normalize_answer(answer: Any) -> str:
    """
    Canonical answer form: upper case, trimmed, comma-joined for sequences.

    Accepts ints for counts and sums, and either a list or a
    comma-separated string for colour sequences.
    """
    if isinstance(answer, (list, tuple)):
        parts = [str(getattr(p, "value", p)) for p in answer]
    else:
        parts = str(answer).split(",")
    return ",".join(p.strip().upper() for p in parts)


# ============================================================
# Challenge payloads
# ============================================================

@dataclass
class Challenge:
    """Fields shared by every challenge variant."""

    id: str
    created_at: float
    expires_at: float
    difficulty: Difficulty

    type: ClassVar[ChallengeType]
    registry: ClassVar[dict[ChallengeType, type["Challenge"]]] = {}

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        Challenge.registry[cls.type] = cls

    @property
    def expected_answer(self) -> str:
        raise NotImplementedError

    def instructions(self) -> str:
        raise NotImplementedError

    def _payload(self) -> dict[str, Any]:
        """Type-specific fields that are safe to show the client."""
        return {}

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def check(self, answer: Any) -> bool:
        return normalize_answer(answer) == self.expected_answer

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "difficulty": self.difficulty.value,
            "instructions": self.instructions(),
            "timeout_ms": int(round((self.expires_at - self.created_at) * 1000)),
            "expires_at": self.expires_at,
            **self._payload(),
        }

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Challenge":
        data = dict(data)
        cls = Challenge.registry[ChallengeType(data.pop("type"))]
        data["difficulty"] = Difficulty(data["difficulty"])
        return cls._decode(data)

    @classmethod
    def _decode(cls, data: dict[str, Any]) -> "Challenge":
        return cls(**data)


@dataclass
class TapChallenge(Challenge):
    target_taps: int = 0

    type: ClassVar[ChallengeType] = ChallengeType.TAP

    @property
    def expected_answer(self) -> str:
        return str(self.target_taps)

    def instructions(self) -> str:
        return f"Tap the button {self.target_taps} times"

    def _payload(self) -> dict[str, Any]:
        return {"target_taps": self.target_taps}


@dataclass
class MathChallenge(Challenge):
    left: int = 0
    operator: str = "+"
    right: int = 0
    options: list[int] = field(default_factory=list)

    type: ClassVar[ChallengeType] = ChallengeType.MATH

    @property
    def result(self) -> int:
        return self.left + self.right if self.operator == "+" else self.left - self.right

    @property
    def expected_answer(self) -> str:
        return str(self.result)

    def instructions(self) -> str:
        return f"{self.left} {self.operator} {self.right} = ?"

    def _payload(self) -> dict[str, Any]:
        return {"question": self.instructions(), "options": [str(o) for o in self.options]}


@dataclass
class SwipeChallenge(Challenge):
    direction: SwipeDirection = SwipeDirection.UP

    type: ClassVar[ChallengeType] = ChallengeType.SWIPE

    @property
    def expected_answer(self) -> str:
        return self.direction.value

    def instructions(self) -> str:
        return f"Swipe {self.direction.value.lower()}"

    def _payload(self) -> dict[str, Any]:
        return {"direction": self.direction.value}

    @classmethod
    def _decode(cls, data: dict[str, Any]) -> "SwipeChallenge":
        data["direction"] = SwipeDirection(data["direction"])
        return cls(**data)


@dataclass
class SequenceChallenge(Challenge):
    sequence: list[Color] = field(default_factory=list)
    palette: list[Color] = field(default_factory=list)

    type: ClassVar[ChallengeType] = ChallengeType.SEQUENCE

    @property
    def expected_answer(self) -> str:
        return ",".join(c.value for c in self.sequence)

    def instructions(self) -> str:
        return f"Repeat the sequence of {len(self.sequence)} colours"

    def _payload(self) -> dict[str, Any]:
        return {
            "sequence": [c.value for c in self.sequence],
            "options": [c.value for c in self.palette],
        }

    @classmethod
    def _decode(cls, data: dict[str, Any]) -> "SequenceChallenge":
        data["sequence"] = [Color(c) for c in data["sequence"]]
        data["palette"] = [Color(c) for c in data["palette"]]
        return cls(**data)


# ============================================================
# Engine
# ============================================================

@dataclass
class ChallengeConfig:
    views_before_challenge: int = 5
    challenge_timeout_ms: int = 30000
    hard_timeout_ms: int = 15000
    hard_mode_score: int = 70
    max_failed_attempts: int = 3
    lock_duration_ms: int = 300000
    key_prefix: str = "challenge:"

    @classmethod
    def from_env(cls) -> "ChallengeConfig":
        return cls(
            views_before_challenge=int(os.getenv("CHALLENGE_VIEWS_BEFORE", "5")),
            challenge_timeout_ms=int(os.getenv("CHALLENGE_TIMEOUT_MS", "30000")),
            hard_timeout_ms=int(os.getenv("CHALLENGE_HARD_TIMEOUT_MS", "15000")),
            hard_mode_score=int(os.getenv("CHALLENGE_HARD_MODE_SCORE", "70")),
            max_failed_attempts=int(os.getenv("CHALLENGE_MAX_FAILED_ATTEMPTS", "3")),
            lock_duration_ms=int(os.getenv("CHALLENGE_LOCK_DURATION_MS", "300000")),
        )

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "views_before_challenge": self.views_before_challenge,
            "challenge_timeout_ms": self.challenge_timeout_ms,
            "hard_timeout_ms": self.hard_timeout_ms,
            "max_failed_attempts": self.max_failed_attempts,
            "lock_duration_ms": self.lock_duration_ms,
        }


@dataclass
class ChallengeState:
    consecutive_views: int = 0
    failed_attempts: int = 0
    locked_until: float = 0.0
    last_challenge_at: float = 0.0
    behavior_cleared: bool = False

    def is_locked(self, now: float) -> bool:
        return self.locked_until > now

    def lock_remaining_ms(self, now: float) -> int:
        return max(0, int(round((self.locked_until - now) * 1000)))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChallengeState":
        return cls(**data)


@dataclass
class ChallengeStatus:
    is_locked: bool = False
    lock_remaining_ms: int = 0
    needs_challenge: bool = False
    challenge: Challenge | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_locked": self.is_locked,
            "lock_remaining_ms": self.lock_remaining_ms,
            "needs_challenge": self.needs_challenge,
            "challenge": self.challenge.to_public_dict() if self.challenge else None,
        }


@dataclass
class ChallengeVerifyResult:
    success: bool
    error_kind: ErrorKind | None = None
    is_locked: bool = False
    lock_remaining_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error_kind.value if self.error_kind else None,
            "is_locked": self.is_locked,
            "lock_remaining_ms": self.lock_remaining_ms,
        }


class ChallengeEngine:
    """
    Issues and verifies challenges and enforces the failure lockout.

    At most one challenge is active per identity. Expired challenges are
    found lazily on access or by cleanup_expired(), and either way they
    count as a timeout failure.
    """

    def __init__(
        self,
        store: StateStore,
        config: ChallengeConfig | None = None,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.config = config or ChallengeConfig.from_env()
        self._clock = clock
        self._rng = rng or random.SystemRandom()

    # Keys and persistence

    def _state_key(self, identity: str) -> str:
        return f"{self.config.key_prefix}state:{identity}"

    def _active_key(self, identity: str) -> str:
        return f"{self.config.key_prefix}active:{identity}"

    def _load_state(self, identity: str, now: float) -> ChallengeState:
        data = self.store.get(self._state_key(identity))
        state = ChallengeState.from_dict(data) if data else ChallengeState()
        if state.locked_until and state.locked_until <= now:
            logger.info(f"Challenge lock expired for {identity}")
            state.locked_until = 0.0
            state.failed_attempts = 0
            self._save_state(identity, state)
        return state

    def _save_state(self, identity: str, state: ChallengeState) -> None:
        self.store.set(self._state_key(identity), state.to_dict(), ttl=STATE_TTL_SECONDS)

    def _load_active(self, identity: str) -> Challenge | None:
        data = self.store.get(self._active_key(identity))
        return Challenge.from_dict(data) if data else None

    def _register_failure(self, identity: str, state: ChallengeState, now: float, reason: str) -> bool:
        """Count a failure; returns True if it triggered the lockout."""
        state.failed_attempts += 1
        metrics.increment("challenge_failures_total", labels={"reason": reason})
        locked = state.failed_attempts >= self.config.max_failed_attempts
        if locked:
            state.locked_until = now + self.config.lock_duration_ms / 1000
            self.store.delete(self._active_key(identity))
            metrics.increment("challenge_lockouts_total")
            logger.warning(
                f"Identity {identity} locked for {self.config.lock_duration_ms}ms after "
                f"{state.failed_attempts} failed challenges ({reason})"
            )
        self._save_state(identity, state)
        return locked

    def _expire_active(self, identity: str, state: ChallengeState, now: float) -> tuple[Challenge | None, bool]:
        """
        Return the live active challenge, timing out an expired one.

        Returns:
            (active challenge or None, whether a timeout just caused a lock)
        """
        active = self._load_active(identity)
        if active is None or not active.is_expired(now):
            return active, False
        self.store.delete(self._active_key(identity))
        return None, self._register_failure(identity, state, now, "timeout")

    # Generation

    def generate(self, suspicion_score: int = 0) -> Challenge:
        """Build a random challenge; harder above hard_mode_score."""
        hard = suspicion_score >= self.config.hard_mode_score
        difficulty = Difficulty.HARD if hard else Difficulty.NORMAL
        timeout_ms = self.config.hard_timeout_ms if hard else self.config.challenge_timeout_ms
        now = self._clock()
        common = {
            "id": uuid.uuid4().hex[:12],
            "created_at": now,
            "expires_at": now + timeout_ms / 1000,
            "difficulty": difficulty,
        }
        rng = self._rng
        kind = rng.choice(list(ChallengeType))

        if kind is ChallengeType.TAP:
            taps = rng.randint(5, 8) if hard else rng.randint(2, 4)
            return TapChallenge(**common, target_taps=taps)

        if kind is ChallengeType.MATH:
            low, high, spread = (10, 50, 10) if hard else (1, 10, 5)
            left, right = rng.randint(low, high), rng.randint(low, high)
            operator = rng.choice(["+", "-"])
            result = left + right if operator == "+" else left - right
            options = {result}
            while len(options) < 4:
                options.add(result + rng.randint(-spread, spread))
            shuffled = list(options)
            rng.shuffle(shuffled)
            return MathChallenge(**common, left=left, operator=operator, right=right, options=shuffled)

        if kind is ChallengeType.SWIPE:
            return SwipeChallenge(**common, direction=rng.choice(list(SwipeDirection)))

        palette = HARD_PALETTE if hard else NORMAL_PALETTE
        length = 5 if hard else 3
        return SequenceChallenge(
            **common,
            sequence=[rng.choice(palette) for _ in range(length)],
            palette=list(palette),
        )

    # Public operations

    def record_view(self, identity: str) -> int:
        """Count a rewarded view toward the next periodic challenge."""
        with self.store.lock(identity_lock_name(identity)):
            state = self._load_state(identity, self._clock())
            state.consecutive_views += 1
            self._save_state(identity, state)
            return state.consecutive_views

    def get_state(self, identity: str) -> ChallengeState:
        with self.store.lock(identity_lock_name(identity)):
            return self._load_state(identity, self._clock())

    def get_active(self, identity: str) -> Challenge | None:
        """The live active challenge, timing out an expired one."""
        with self.store.lock(identity_lock_name(identity)):
            now = self._clock()
            state = self._load_state(identity, now)
            active, _ = self._expire_active(identity, state, now)
            return active

    def _due(self, state: ChallengeState, analysis: BehaviorAnalysis | None) -> bool:
        if state.consecutive_views >= self.config.views_before_challenge:
            return True
        if analysis is None:
            return False
        if analysis.recommendation is Recommendation.REVERIFY:
            return True
        return analysis.recommendation is Recommendation.CHALLENGE and not state.behavior_cleared

    def should_issue(self, identity: str, analysis: BehaviorAnalysis | None = None) -> bool:
        with self.store.lock(identity_lock_name(identity)):
            now = self._clock()
            state = self._load_state(identity, now)
        if state.is_locked(now):
            return False
        if state.behavior_cleared and analysis is not None:
            state.behavior_cleared = analysis.recommendation is not Recommendation.ALLOW
        return self._due(state, analysis)

    def get_status(self, identity: str, analysis: BehaviorAnalysis | None = None) -> ChallengeStatus:
        """
        Report lock state or the challenge the identity must answer.

        Issues a new challenge when one is due and none is active.
        """
        with self.store.lock(identity_lock_name(identity)):
            now = self._clock()
            state = self._load_state(identity, now)
            if state.is_locked(now):
                return ChallengeStatus(is_locked=True, lock_remaining_ms=state.lock_remaining_ms(now))

            active, locked = self._expire_active(identity, state, now)
            if locked:
                return ChallengeStatus(is_locked=True, lock_remaining_ms=state.lock_remaining_ms(now))
            if active is not None:
                return ChallengeStatus(needs_challenge=True, challenge=active)

            if (
                state.behavior_cleared
                and analysis is not None
                and analysis.recommendation is Recommendation.ALLOW
            ):
                state.behavior_cleared = False
                self._save_state(identity, state)

            if not self._due(state, analysis):
                return ChallengeStatus()

            score = analysis.suspicion_score if analysis else 0
            challenge = self.generate(score)
            self.store.set(self._active_key(identity), challenge.to_dict(), ttl=STATE_TTL_SECONDS)
            state.last_challenge_at = now
            self._save_state(identity, state)

        metrics.increment("challenges_issued_total", labels={"type": challenge.type.value})
        logger.info(f"Issued {challenge.difficulty.value} {challenge.type.value} challenge to {identity}")
        return ChallengeStatus(needs_challenge=True, challenge=challenge)

    def peek_status(self, identity: str, analysis: BehaviorAnalysis | None = None) -> ChallengeStatus:
        """Like get_status() but never issues a challenge or counts a timeout."""
        with self.store.lock(identity_lock_name(identity)):
            now = self._clock()
            state = self._load_state(identity, now)
            if state.is_locked(now):
                return ChallengeStatus(is_locked=True, lock_remaining_ms=state.lock_remaining_ms(now))
            active = self._load_active(identity)
            if active is not None and not active.is_expired(now):
                return ChallengeStatus(needs_challenge=True, challenge=active)
        if state.behavior_cleared and analysis is not None:
            state.behavior_cleared = analysis.recommendation is not Recommendation.ALLOW
        return ChallengeStatus(needs_challenge=self._due(state, analysis))

    def lock_remaining_ms(self, identity: str) -> int:
        now = self._clock()
        return self.get_state(identity).lock_remaining_ms(now)

    def verify(self, identity: str, challenge_id: str, answer: Any) -> ChallengeVerifyResult:
        with self.store.lock(identity_lock_name(identity)):
            now = self._clock()
            state = self._load_state(identity, now)
            if state.is_locked(now):
                return ChallengeVerifyResult(
                    success=False,
                    error_kind=ErrorKind.USER_LOCKED,
                    is_locked=True,
                    lock_remaining_ms=state.lock_remaining_ms(now),
                )

            active = self._load_active(identity)
            if active is None:
                return ChallengeVerifyResult(success=False, error_kind=ErrorKind.NO_ACTIVE_CHALLENGE)
            if active.id != challenge_id:
                return ChallengeVerifyResult(success=False, error_kind=ErrorKind.INVALID_CHALLENGE_ID)

            if active.is_expired(now):
                self.store.delete(self._active_key(identity))
                if self._register_failure(identity, state, now, "timeout"):
                    return self._locked_result(ErrorKind.CHALLENGE_TIMEOUT_LOCKED)
                return ChallengeVerifyResult(success=False, error_kind=ErrorKind.CHALLENGE_EXPIRED)

            if not active.check(answer):
                if self._register_failure(identity, state, now, "wrong_answer"):
                    return self._locked_result(ErrorKind.WRONG_ANSWER_LOCKED)
                return ChallengeVerifyResult(success=False, error_kind=ErrorKind.WRONG_ANSWER)

            state.consecutive_views = 0
            state.failed_attempts = 0
            state.last_challenge_at = now
            state.behavior_cleared = True
            self.store.delete(self._active_key(identity))
            self._save_state(identity, state)

        metrics.increment("challenges_passed_total")
        logger.info(f"Challenge {challenge_id} passed by {identity}")
        return ChallengeVerifyResult(success=True)

    def skip(self, identity: str) -> ChallengeVerifyResult:
        """Give up on the active challenge, which counts as a failure."""
        with self.store.lock(identity_lock_name(identity)):
            now = self._clock()
            state = self._load_state(identity, now)
            if state.is_locked(now):
                return ChallengeVerifyResult(
                    success=False,
                    error_kind=ErrorKind.USER_LOCKED,
                    is_locked=True,
                    lock_remaining_ms=state.lock_remaining_ms(now),
                )
            if self._load_active(identity) is None:
                return ChallengeVerifyResult(success=False, error_kind=ErrorKind.NO_ACTIVE_CHALLENGE)

            self.store.delete(self._active_key(identity))
            locked = self._register_failure(identity, state, now, "skipped")

        logger.warning(f"Identity {identity} skipped a challenge")
        if locked:
            return self._locked_result(ErrorKind.CHALLENGE_SKIPPED_LOCKED)
        return ChallengeVerifyResult(success=False, error_kind=ErrorKind.CHALLENGE_SKIPPED)

    def _locked_result(self, kind: ErrorKind) -> ChallengeVerifyResult:
        return ChallengeVerifyResult(
            success=False,
            error_kind=kind,
            is_locked=True,
            lock_remaining_ms=self.config.lock_duration_ms,
        )

    def reset_identity(self, identity: str) -> None:
        """Forget all challenge state for an identity."""
        with self.store.lock(identity_lock_name(identity)):
            self.store.delete(self._active_key(identity))
            self.store.delete(self._state_key(identity))

    def cleanup_expired(self) -> int:
        """Time out expired challenges, skipping identities that are busy."""
        prefix = f"{self.config.key_prefix}active:"
        expired = 0
        for key in self.store.keys(prefix):
            identity = key[len(prefix):]
            with self.store.try_lock(identity_lock_name(identity)) as acquired:
                if not acquired:
                    continue
                now = self._clock()
                active = self._load_active(identity)
                if active is None or not active.is_expired(now):
                    continue
                state = self._load_state(identity, now)
                self._expire_active(identity, state, now)
                expired += 1
        if expired:
            logger.debug(f"Timed out {expired} expired challenges")
        return expired
