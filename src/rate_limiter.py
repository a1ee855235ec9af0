"""
RewardGuard - Fixed-Window Rate Limiting

Rate limiting keyed by (identity or IP, limit class):
- Fixed windows, reset lazily on first access after expiry
- Rejected requests do not consume the window
- Combined checks evaluate the IP bucket before the identity bucket
- Buckets live in the shared state store, so limits hold across instances
- Rate limit headers (X-RateLimit-*)

Usage:
    from rate_limiter import RateLimiter, RateLimitConfig

    limiter = RateLimiter(store, RateLimitConfig.from_env())

    result = limiter.check_combined("user_abc", "203.0.113.7", "ad_view")
    if result.exceeded:
        return create_rate_limit_response(result)

Environment Variables:
    RATE_LIMIT_ENABLED=true
    RATE_LIMIT_<CLASS>_MAX=60
    RATE_LIMIT_<CLASS>_IP_MAX=60
    RATE_LIMIT_<CLASS>_WINDOW=60
"""

import logging
import math
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from monitoring import metrics
from storage.base import StateStore, StorageError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LimitClass:
    """A named request budget, applied separately per identity and per IP."""

    name: str
    max_requests: int
    window_seconds: int
    ip_max_requests: int | None = None

    @property
    def ip_limit(self) -> int:
        return self.ip_max_requests if self.ip_max_requests is not None else self.max_requests


DEFAULT_LIMIT_CLASSES: dict[str, LimitClass] = {
    "claim_signature": LimitClass("claim_signature", 5, 60, ip_max_requests=10),
    "earn_credits": LimitClass("earn_credits", 60, 60),
    "redemption": LimitClass("redemption", 5, 3600),
    "ad_view": LimitClass("ad_view", 100, 60),
    "read_api": LimitClass("read_api", 100, 60),
    "auth": LimitClass("auth", 10, 60),
    "challenge": LimitClass("challenge", 30, 60),
}


@dataclass
class RateLimitConfig:
    """Configuration for rate limiting."""

    enabled: bool = True
    key_prefix: str = "ratelimit:"
    limit_classes: dict[str, LimitClass] = field(
        default_factory=lambda: dict(DEFAULT_LIMIT_CLASSES)
    )

    @classmethod
    def from_env(cls) -> "RateLimitConfig":
        """Create configuration from environment variables."""
        classes = {}
        for name, default in DEFAULT_LIMIT_CLASSES.items():
            env = f"RATE_LIMIT_{name.upper()}"
            ip_max = os.getenv(f"{env}_IP_MAX")
            classes[name] = replace(
                default,
                max_requests=int(os.getenv(f"{env}_MAX", str(default.max_requests))),
                window_seconds=int(os.getenv(f"{env}_WINDOW", str(default.window_seconds))),
                ip_max_requests=int(ip_max) if ip_max else default.ip_max_requests,
            )
        return cls(
            enabled=os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true",
            limit_classes=classes,
        )

    def get_class(self, name: str) -> LimitClass:
        try:
            return self.limit_classes[name]
        except KeyError:
            raise ValueError(f"Unknown rate limit class: {name}") from None


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    remaining: int
    limit: int
    reset_at: float  # Unix timestamp when window resets
    retry_after: int  # Seconds until retry allowed (0 if allowed)
    limit_class: str = ""
    scope: str = "identity"  # "identity" or "ip"

    @property
    def exceeded(self) -> bool:
        return not self.allowed

    def to_headers(self) -> dict[str, str]:
        """Convert to rate limit response headers."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "limit": self.limit,
            "reset_at": self.reset_at,
            "retry_after": self.retry_after,
            "limit_class": self.limit_class,
            "scope": self.scope,
        }


class RateLimiter:
    """
    Fixed-window rate limiter over a StateStore.

    Each bucket is read, reset if its window has passed, and incremented
    under the bucket's own lock. Store failures fail open: rate limiting is
    a backstop, the integrity checks behind it still run.
    """

    def __init__(
        self,
        store: StateStore,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config or RateLimitConfig.from_env()
        self._clock = clock

    def _bucket_key(self, key: str, limit_class: str) -> str:
        return f"{self.config.key_prefix}{limit_class}:{key}"

    def _allow_all(self, limit_class: LimitClass, limit: int, scope: str) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            remaining=limit,
            limit=limit,
            reset_at=self._clock() + limit_class.window_seconds,
            retry_after=0,
            limit_class=limit_class.name,
            scope=scope,
        )

    def check(
        self,
        key: str,
        limit_class: str,
        limit: int | None = None,
        scope: str = "identity",
    ) -> RateLimitResult:
        """
        Count one request against key's bucket for limit_class.

        Args:
            key: Bucket owner (identity or IP address)
            limit_class: Name of a configured LimitClass
            limit: Override for the class maximum
            scope: Label for the result ("identity" or "ip")

        Returns:
            RateLimitResult; a rejected request leaves the count unchanged
        """
        lc = self.config.get_class(limit_class)
        effective_limit = limit if limit is not None else lc.max_requests
        if not self.config.enabled:
            return self._allow_all(lc, effective_limit, scope)

        bucket_key = self._bucket_key(key, limit_class)
        try:
            with self.store.lock(bucket_key):
                now = self._clock()
                bucket = self.store.get(bucket_key)
                if bucket is None or bucket["window_start"] + lc.window_seconds <= now:
                    bucket = {"window_start": now, "window_seconds": lc.window_seconds, "count": 0}

                reset_at = bucket["window_start"] + lc.window_seconds
                if bucket["count"] >= effective_limit:
                    metrics.increment(
                        "rate_limit_rejections_total",
                        labels={"limit_class": limit_class, "scope": scope},
                    )
                    return RateLimitResult(
                        allowed=False,
                        remaining=0,
                        limit=effective_limit,
                        reset_at=reset_at,
                        retry_after=max(1, math.ceil(reset_at - now)),
                        limit_class=limit_class,
                        scope=scope,
                    )

                bucket["count"] += 1
                self.store.set(bucket_key, bucket, ttl=reset_at - now)

                return RateLimitResult(
                    allowed=True,
                    remaining=effective_limit - bucket["count"],
                    limit=effective_limit,
                    reset_at=reset_at,
                    retry_after=0,
                    limit_class=limit_class,
                    scope=scope,
                )

        except (StorageError, TimeoutError) as e:
            logger.error(f"Rate limit check failed for {limit_class}: {e}")
            return self._allow_all(lc, effective_limit, scope)

    def check_combined(
        self, identity: str | None, ip: str | None, limit_class: str
    ) -> RateLimitResult:
        """
        Check the IP bucket first, then the identity bucket.

        A request rejected at the IP stage never touches the identity
        bucket. Either key may be None, in which case that stage is skipped.
        """
        lc = self.config.get_class(limit_class)
        result = None

        if ip:
            result = self.check(f"ip:{ip}", limit_class, limit=lc.ip_limit, scope="ip")
            if result.exceeded:
                logger.warning(f"IP rate limit hit for {limit_class}")
                return result

        if identity:
            result = self.check(f"user:{identity}", limit_class, scope="identity")
            if result.exceeded:
                logger.warning(f"Identity rate limit hit for {limit_class}")

        return result or self._allow_all(lc, lc.max_requests, "identity")

    def get_status(self, key: str, limit_class: str) -> RateLimitResult:
        """
        Get current rate limit status without incrementing counter.
        """
        lc = self.config.get_class(limit_class)
        now = self._clock()
        try:
            bucket = self.store.get(self._bucket_key(key, limit_class))
        except StorageError as e:
            logger.error(f"Rate limit status check failed: {e}")
            bucket = None

        if bucket is None or bucket["window_start"] + lc.window_seconds <= now:
            return self._allow_all(lc, lc.max_requests, "identity")

        reset_at = bucket["window_start"] + lc.window_seconds
        exceeded = bucket["count"] >= lc.max_requests
        return RateLimitResult(
            allowed=not exceeded,
            remaining=max(0, lc.max_requests - bucket["count"]),
            limit=lc.max_requests,
            reset_at=reset_at,
            retry_after=max(1, math.ceil(reset_at - now)) if exceeded else 0,
            limit_class=limit_class,
        )

    def cleanup_expired(self) -> int:
        """Remove buckets whose window has passed."""
        now = self._clock()

        def expired(bucket: dict[str, Any]) -> bool:
            return bucket["window_start"] + bucket.get("window_seconds", 0) <= now

        removed = self.store.sweep(self.config.key_prefix, expired)
        if removed:
            logger.debug(f"Removed {removed} expired rate limit buckets")
        return removed

    def is_healthy(self) -> dict[str, Any]:
        """Check health of the backing store."""
        available = self.store.is_available()
        return {
            "enabled": self.config.enabled,
            "store": self.store.__class__.__name__,
            "available": available,
            "fail_mode": "open",
        }


# Flask integration helper
def create_rate_limit_response(result: RateLimitResult) -> tuple[dict, int, dict]:
    """
    Create a Flask-compatible rate limit exceeded response.

    Returns:
        Tuple of (body, status_code, headers)
    """
    body = {
        "success": False,
        "error": "RATE_LIMIT_EXCEEDED",
        "message": f"Too many requests. Please retry after {result.retry_after} seconds.",
        "retry_after": result.retry_after,
        "limit_class": result.limit_class,
    }

    headers = result.to_headers()
    headers["Retry-After"] = str(result.retry_after)

    return body, 429, headers
