"""
RewardGuard - Behavior Analyzer

Scores how automated an identity's recent viewing looks. Bots tend to be
too regular: the same watch duration and the same gap between views,
over and over. Humans jitter.

The score is built from:
- Coefficient of variation (population stdev / mean) of watch durations
  and of inter-view intervals
- The share of very short views
- Views per minute across the rolling window
- Client signals: clock drift, automation user agents, fingerprint churn,
  off-hours bursts and honeypot hits

Usage:
    tracker = BehaviorTracker(store)
    analysis = tracker.record_view("user_abc", ViewEvent(now_ms, 5200, "ad_7"))
    if analysis.recommendation is Recommendation.CHALLENGE:
        ...
"""

import logging
import os
import statistics
import time
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo

from monitoring import metrics
from storage.base import StateStore, identity_lock_name

logger = logging.getLogger(__name__)

SUSPICIOUS_USER_AGENT_PATTERNS = (
    "HeadlessChrome",
    "PhantomJS",
    "Selenium",
    "WebDriver",
    "Puppeteer",
    "Playwright",
    "Nightmare",
    "bot",
    "crawler",
    "spider",
)


class BehaviorFlag(str, Enum):
    FAST_VIEWING = "fast_viewing"
    CONSISTENT_INTERVALS = "consistent_intervals"
    CONSISTENT_DURATION = "consistent_duration"
    SESSION_BOMBING = "session_bombing"
    PERFECT_TIMING = "perfect_timing"
    LINEAR_PROGRESSION = "linear_progression"
    TIMESTAMP_MANIPULATION = "timestamp_manipulation"
    SUSPICIOUS_USER_AGENT = "suspicious_user_agent"
    FINGERPRINT_CHANGE = "fingerprint_change"
    OFF_HOURS_ACTIVITY = "off_hours_activity"
    HONEYPOT_TRIGGERED = "honeypot_triggered"


class Recommendation(str, Enum):
    """Escalation bands, in increasing order of severity."""

    ALLOW = "allow"
    CHALLENGE = "challenge"
    REVERIFY = "reverify"
    BLOCK = "block"


@dataclass
class BehaviorThresholds:
    """Every tunable number the analyzer uses."""

    min_events: int = 3
    buffer_size: int = 50

    # Variance bands
    cov_low: float = 0.1
    cov_medium: float = 0.5
    cov_perfect: float = 0.05
    score_consistent: int = 30
    score_variable: int = 15
    score_perfect_timing: int = 20

    # Speed
    min_view_duration_ms: int = 3000
    fast_view_fraction: float = 0.3
    score_fast_viewing: int = 20
    max_views_per_minute: float = 4.0
    score_session_bombing: int = 25

    # Client signals
    timestamp_drift_ms: int = 5000
    score_timestamp_drift: int = 25
    score_user_agent: int = 30
    fingerprint_window: int = 10
    max_fingerprints: int = 3
    score_fingerprint_change: int = 20
    off_hours_start: int = 2
    off_hours_end: int = 5  # inclusive
    max_off_hours_views: int = 5
    score_off_hours: int = 15
    score_honeypot: int = 40
    timezone: str = "UTC"

    # Recommendation bands
    challenge_score: int = 50
    reverify_score: int = 70
    block_score: int = 90
    max_score: int = 100

    def __post_init__(self):
        if not (0 <= self.challenge_score < self.reverify_score < self.block_score <= self.max_score):
            raise ValueError(
                "Suspicion bands must satisfy 0 <= challenge < reverify < block <= max, got "
                f"{self.challenge_score}/{self.reverify_score}/{self.block_score}/{self.max_score}"
            )
        if not (0 <= self.cov_perfect <= self.cov_low <= self.cov_medium):
            raise ValueError("Variance bands must satisfy perfect <= low <= medium")
        if self.buffer_size < self.min_events:
            raise ValueError("buffer_size must hold at least min_events events")
        self._tz = ZoneInfo(self.timezone)

    @property
    def tzinfo(self) -> ZoneInfo:
        return self._tz

    def recommend(self, score: int) -> Recommendation:
        if score >= self.block_score:
            return Recommendation.BLOCK
        if score >= self.reverify_score:
            return Recommendation.REVERIFY
        if score >= self.challenge_score:
            return Recommendation.CHALLENGE
        return Recommendation.ALLOW

    @classmethod
    def from_env(cls) -> "BehaviorThresholds":
        return cls(
            buffer_size=int(os.getenv("BEHAVIOR_BUFFER_SIZE", "50")),
            cov_low=float(os.getenv("BEHAVIOR_COV_LOW", "0.1")),
            cov_medium=float(os.getenv("BEHAVIOR_COV_MEDIUM", "0.5")),
            min_view_duration_ms=int(os.getenv("BEHAVIOR_MIN_VIEW_MS", "3000")),
            max_views_per_minute=float(os.getenv("BEHAVIOR_MAX_VIEWS_PER_MINUTE", "4")),
            challenge_score=int(os.getenv("SUSPICION_CHALLENGE", "50")),
            reverify_score=int(os.getenv("SUSPICION_REVERIFY", "70")),
            block_score=int(os.getenv("SUSPICION_BLOCK", "90")),
            timezone=os.getenv("BEHAVIOR_TIMEZONE", "UTC"),
        )


@dataclass
class ViewEvent:
    """One completed view, as observed by the server."""

    timestamp_ms: int
    duration_ms: int
    content_id: str
    client_timestamp_ms: int | None = None
    user_agent: str | None = None
    fingerprint_hash: str | None = None
    honeypot_triggered: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ViewEvent":
        return cls(**data)


@dataclass
class BehaviorAnalysis:
    suspicion_score: int
    recommendation: Recommendation
    view_time_variance: float = 1.0
    interval_variance: float = 1.0
    flags: list[BehaviorFlag] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)
    event_count: int = 0

    @classmethod
    def clean(cls, event_count: int = 0) -> "BehaviorAnalysis":
        return cls(suspicion_score=0, recommendation=Recommendation.ALLOW, event_count=event_count)

    def to_dict(self) -> dict[str, Any]:
        return {
            "suspicion_score": self.suspicion_score,
            "recommendation": self.recommendation.value,
            "view_time_variance": round(self.view_time_variance, 4),
            "interval_variance": round(self.interval_variance, 4),
            "flags": [f.value for f in self.flags],
            "reasons": list(self.reasons),
            "event_count": self.event_count,
        }


def coefficient_of_variation(values: Sequence[float]) -> float:
    """
    Population standard deviation divided by the mean.

    Fewer than two values carry no signal and read as fully variable (1.0).
    A non-positive mean reads as 0.0.
    """
    if len(values) < 2:
        return 1.0
    mean = statistics.fmean(values)
    if mean <= 0:
        return 0.0
    return statistics.pstdev(values, mu=mean) / mean


def _variance_score(
    cov: float, flag: BehaviorFlag, thresholds: BehaviorThresholds, flags: list, reasons: list
) -> int:
    if cov < thresholds.cov_low:
        flags.append(flag)
        reasons.append(f"{flag.value}: variation {cov:.3f}")
        return thresholds.score_consistent
    if cov < thresholds.cov_medium:
        return thresholds.score_variable
    return 0


def analyze_view_behavior(
    events: Sequence[ViewEvent],
    thresholds: BehaviorThresholds | None = None,
    honeypot_count: int = 0,
) -> BehaviorAnalysis:
    """
    Score a chronological list of view events.

    Pure function: the same events always give the same analysis.
    """
    t = thresholds or BehaviorThresholds()
    flags: list[BehaviorFlag] = []
    reasons: list[str] = []
    score = 0
    duration_cov = 1.0
    interval_cov = 1.0

    if len(events) >= t.min_events:
        durations = [e.duration_ms for e in events]
        intervals = [b.timestamp_ms - a.timestamp_ms for a, b in zip(events, events[1:])]
        duration_cov = coefficient_of_variation(durations)
        interval_cov = coefficient_of_variation(intervals)

        score += _variance_score(duration_cov, BehaviorFlag.CONSISTENT_DURATION, t, flags, reasons)
        score += _variance_score(interval_cov, BehaviorFlag.CONSISTENT_INTERVALS, t, flags, reasons)

        fast = sum(1 for d in durations if d < t.min_view_duration_ms)
        if fast > len(durations) * t.fast_view_fraction:
            flags.append(BehaviorFlag.FAST_VIEWING)
            reasons.append(f"{fast}/{len(durations)} views under {t.min_view_duration_ms}ms")
            score += t.score_fast_viewing

        span_ms = events[-1].timestamp_ms - events[0].timestamp_ms
        views_per_minute = len(events) / span_ms * 60000 if span_ms > 0 else float("inf")
        if views_per_minute > t.max_views_per_minute:
            flags.append(BehaviorFlag.SESSION_BOMBING)
            reasons.append(f"{views_per_minute:.1f} views per minute")
            score += t.score_session_bombing

        if duration_cov < t.cov_perfect and interval_cov < t.cov_perfect:
            flags.extend([BehaviorFlag.LINEAR_PROGRESSION, BehaviorFlag.PERFECT_TIMING])
            reasons.append("duration and interval variation both near zero")
            score += t.score_perfect_timing

    if events:
        score += _client_signal_score(events, t, flags, reasons)

    if honeypot_count > 0 or (events and events[-1].honeypot_triggered):
        flags.append(BehaviorFlag.HONEYPOT_TRIGGERED)
        reasons.append(f"Honeypot triggered {max(honeypot_count, 1)} times")
        score += t.score_honeypot

    score = min(score, t.max_score)
    return BehaviorAnalysis(
        suspicion_score=score,
        recommendation=t.recommend(score),
        view_time_variance=duration_cov,
        interval_variance=interval_cov,
        flags=flags,
        reasons=reasons,
        event_count=len(events),
    )


def _client_signal_score(
    events: Sequence[ViewEvent],
    t: BehaviorThresholds,
    flags: list[BehaviorFlag],
    reasons: list[str],
) -> int:
    score = 0
    latest = events[-1]

    if latest.client_timestamp_ms is not None:
        drift = abs(latest.client_timestamp_ms - latest.timestamp_ms)
        if drift > t.timestamp_drift_ms:
            flags.append(BehaviorFlag.TIMESTAMP_MANIPULATION)
            reasons.append(f"Timestamp drift: {drift}ms")
            score += t.score_timestamp_drift

    if latest.user_agent is not None:
        agent = latest.user_agent.lower()
        match = next((p for p in SUSPICIOUS_USER_AGENT_PATTERNS if p.lower() in agent), None)
        if match or not agent.strip():
            flags.append(BehaviorFlag.SUSPICIOUS_USER_AGENT)
            reasons.append(f"Suspicious pattern: {match}" if match else "Empty user agent")
            score += t.score_user_agent

    recent = [e.fingerprint_hash for e in events[-t.fingerprint_window:] if e.fingerprint_hash]
    distinct = len(set(recent))
    if distinct > t.max_fingerprints:
        flags.append(BehaviorFlag.FINGERPRINT_CHANGE)
        reasons.append(f"{distinct} fingerprints in last {t.fingerprint_window} views")
        score += t.score_fingerprint_change

    off_hours = 0
    for e in events:
        hour = datetime.fromtimestamp(e.timestamp_ms / 1000, tz=t.tzinfo).hour
        if t.off_hours_start <= hour <= t.off_hours_end:
            off_hours += 1
    if off_hours > t.max_off_hours_views:
        flags.append(BehaviorFlag.OFF_HOURS_ACTIVITY)
        reasons.append(f"{off_hours} views during off-hours")
        score += t.score_off_hours

    return score


class BehaviorTracker:
    """
    Rolling per-identity event buffers in the state store.

    Analyses are derived on demand from the buffer and never stored, so a
    threshold change applies to every identity immediately.
    """

    def __init__(
        self,
        store: StateStore,
        thresholds: BehaviorThresholds | None = None,
        clock: Callable[[], float] = time.time,
        idle_ttl_seconds: float = 24 * 3600,
        key_prefix: str = "behavior:",
    ):
        self.store = store
        self.thresholds = thresholds or BehaviorThresholds.from_env()
        self._clock = clock
        self.idle_ttl_seconds = idle_ttl_seconds
        self.key_prefix = key_prefix

    def _key(self, identity: str) -> str:
        return f"{self.key_prefix}{identity}"

    def _load(self, identity: str) -> dict[str, Any]:
        return self.store.get(self._key(identity)) or {
            "identity": identity,
            "events": [],
            "honeypot_count": 0,
            "updated_at": self._clock(),
        }

    def _save(self, identity: str, record: dict[str, Any]) -> None:
        record["updated_at"] = self._clock()
        self.store.set(self._key(identity), record, ttl=self.idle_ttl_seconds)

    def record_view(self, identity: str, event: ViewEvent) -> BehaviorAnalysis:
        """Append an event (evicting the oldest past buffer_size) and rescore."""
        with self.store.lock(identity_lock_name(identity)):
            record = self._load(identity)
            record["events"].append(event.to_dict())
            overflow = len(record["events"]) - self.thresholds.buffer_size
            if overflow > 0:
                del record["events"][:overflow]
            self._save(identity, record)

        analysis = self._analyze(record)
        metrics.observe(
            "suspicion_score", analysis.suspicion_score, bounds=[10, 25, 50, 70, 90, 100]
        )
        if analysis.recommendation is not Recommendation.ALLOW:
            logger.info(
                f"Behavior for {identity} scored {analysis.suspicion_score} "
                f"({analysis.recommendation.value}): {', '.join(f.value for f in analysis.flags)}"
            )
        return analysis

    def record_honeypot_trigger(self, identity: str) -> BehaviorAnalysis:
        with self.store.lock(identity_lock_name(identity)):
            record = self._load(identity)
            record["honeypot_count"] += 1
            self._save(identity, record)
        logger.warning(f"Honeypot triggered by {identity}")
        return self._analyze(record)

    def _analyze(self, record: dict[str, Any]) -> BehaviorAnalysis:
        events = [ViewEvent.from_dict(e) for e in record["events"]]
        return analyze_view_behavior(events, self.thresholds, record["honeypot_count"])

    def get_analysis(self, identity: str) -> BehaviorAnalysis:
        record = self.store.get(self._key(identity))
        if record is None:
            return BehaviorAnalysis.clean()
        return self._analyze(record)

    def get_events(self, identity: str) -> list[ViewEvent]:
        record = self.store.get(self._key(identity))
        return [ViewEvent.from_dict(e) for e in record["events"]] if record else []

    def clear_identity(self, identity: str) -> None:
        with self.store.lock(identity_lock_name(identity)):
            self.store.delete(self._key(identity))

    def cleanup_idle(self) -> int:
        """Drop buffers that have not seen an event for idle_ttl_seconds."""
        cutoff = self._clock() - self.idle_ttl_seconds
        return self.store.sweep(
            self.key_prefix,
            lambda record: record["updated_at"] < cutoff,
            lock_for=lambda _key, record: identity_lock_name(record["identity"]),
        )
