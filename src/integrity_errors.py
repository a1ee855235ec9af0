"""
RewardGuard - Error Vocabulary

Integrity outcomes (a short watch, a replayed token, a wrong challenge
answer) are ordinary results, reported through ErrorKind values on result
objects. Exceptions are reserved for faults: bad configuration, an
unreachable store, a failing ledger or identity oracle.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Every non-success outcome a reward pipeline can report."""

    # Session ledger
    INVALID_TOKEN = "INVALID_TOKEN"
    USER_MISMATCH = "USER_MISMATCH"
    CONTENT_MISMATCH = "CONTENT_MISMATCH"
    ALREADY_COMPLETED = "ALREADY_COMPLETED"
    COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
    WATCH_TIME_TOO_SHORT = "WATCH_TIME_TOO_SHORT"
    INVALID_DURATION = "INVALID_DURATION"
    INVALID_XP = "INVALID_XP"

    # Quiz ledger
    QUIZ_ALREADY_ANSWERED_TODAY = "QUIZ_ALREADY_ANSWERED_TODAY"
    NO_ACTIVE_QUIZ_SESSION = "NO_ACTIVE_QUIZ_SESSION"
    QUIZ_ALREADY_ANSWERED = "QUIZ_ALREADY_ANSWERED"
    QUIZ_SESSION_EXPIRED = "QUIZ_SESSION_EXPIRED"

    # Daily quota
    DAILY_XP_LIMIT_REACHED = "DAILY_XP_LIMIT_REACHED"
    DAILY_AD_VIEW_LIMIT_REACHED = "DAILY_AD_VIEW_LIMIT_REACHED"
    DAILY_QUIZ_LIMIT_REACHED = "DAILY_QUIZ_LIMIT_REACHED"

    # Rate limiting
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # Challenge engine
    CHALLENGE_REQUIRED = "CHALLENGE_REQUIRED"
    USER_LOCKED = "USER_LOCKED"
    NO_ACTIVE_CHALLENGE = "NO_ACTIVE_CHALLENGE"
    INVALID_CHALLENGE_ID = "INVALID_CHALLENGE_ID"
    CHALLENGE_EXPIRED = "CHALLENGE_EXPIRED"
    CHALLENGE_TIMEOUT_LOCKED = "CHALLENGE_TIMEOUT_LOCKED"
    WRONG_ANSWER = "WRONG_ANSWER"
    WRONG_ANSWER_LOCKED = "WRONG_ANSWER_LOCKED"
    CHALLENGE_SKIPPED = "CHALLENGE_SKIPPED"
    CHALLENGE_SKIPPED_LOCKED = "CHALLENGE_SKIPPED_LOCKED"

    # Re-verification and restriction
    RE_VERIFICATION_REQUIRED = "RE_VERIFICATION_REQUIRED"
    NO_PENDING_REVERIFICATION = "NO_PENDING_REVERIFICATION"
    PSEUDONYM_REUSED = "PSEUDONYM_REUSED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    ACCOUNT_RESTRICTED = "ACCOUNT_RESTRICTED"
    IDENTITY_RETIRED = "IDENTITY_RETIRED"

    @property
    def is_next_step(self) -> bool:
        """True for kinds that ask the client to do something, not report a fault."""
        return self in NEXT_STEP_KINDS

    @property
    def is_throttle(self) -> bool:
        return self in THROTTLE_KINDS


NEXT_STEP_KINDS = frozenset({
    ErrorKind.CHALLENGE_REQUIRED,
    ErrorKind.RE_VERIFICATION_REQUIRED,
    ErrorKind.ACCOUNT_RESTRICTED,
    ErrorKind.IDENTITY_RETIRED,
})

THROTTLE_KINDS = frozenset({
    ErrorKind.RATE_LIMIT_EXCEEDED,
    ErrorKind.USER_LOCKED,
    ErrorKind.CHALLENGE_TIMEOUT_LOCKED,
    ErrorKind.WRONG_ANSWER_LOCKED,
    ErrorKind.CHALLENGE_SKIPPED_LOCKED,
})


class ErrorSeverity(Enum):
    """Severity levels for RewardGuard faults."""
    LOW = "low"           # Informational, no action needed
    MEDIUM = "medium"     # Warning, should be monitored
    HIGH = "high"         # Error, requires attention
    CRITICAL = "critical" # Critical, may require immediate intervention


@dataclass
class ErrorContext:
    """Structured context for error tracking and debugging."""
    component: str
    action: str
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    details: dict[str, Any] = field(default_factory=dict)
    severity: ErrorSeverity = ErrorSeverity.MEDIUM

    def to_dict(self) -> dict[str, Any]:
        return {
            "component": self.component,
            "action": self.action,
            "timestamp": self.timestamp,
            "details": self.details,
            "severity": self.severity.value,
        }


class RewardGuardError(Exception):
    """
    Base exception for RewardGuard faults.

    Carries structured context so the API layer and logs can report which
    component failed and while doing what.
    """

    def __init__(
        self,
        message: str,
        component: str = "unknown",
        action: str = "unknown",
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = ErrorContext(
            component=component,
            action=action,
            severity=severity,
            details=details or {},
        )
        self.cause = cause
        if cause:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        result = {
            "error_type": type(self).__name__,
            "message": self.message,
            **self.context.to_dict(),
        }
        if self.cause:
            result["cause"] = {
                "type": type(self.cause).__name__,
                "message": str(self.cause),
            }
        return result

    def __str__(self) -> str:
        base = f"[{self.context.component}:{self.context.action}] {self.message}"
        if self.cause:
            base += f" (caused by: {self.cause})"
        return base


class ConfigurationError(RewardGuardError):
    """Raised when configuration values are missing or inconsistent."""

    def __init__(self, message: str, setting: str | None = None, cause: Exception | None = None):
        super().__init__(
            message=message,
            component="config",
            action="load",
            severity=ErrorSeverity.HIGH,
            details={"setting": setting} if setting else {},
            cause=cause,
        )


class LedgerError(RewardGuardError):
    """Raised when the external XP ledger rejects or fails a call."""

    def __init__(
        self,
        message: str,
        action: str = "credit_xp",
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(
            message=message,
            component="ledger",
            action=action,
            severity=ErrorSeverity.HIGH,
            details=details,
            cause=cause,
        )


class VerificationFailedError(RewardGuardError):
    """Raised when the identity oracle does not confirm a proof."""

    def __init__(
        self,
        message: str,
        action: str = "verify",
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(
            message=message,
            component="identity_oracle",
            action=action,
            severity=ErrorSeverity.MEDIUM,
            details=details,
            cause=cause,
        )
