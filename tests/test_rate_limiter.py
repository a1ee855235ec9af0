"""
Tests for the fixed-window rate limiter.
"""

import os
import sys
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from rate_limiter import (
    DEFAULT_LIMIT_CLASSES,
    LimitClass,
    RateLimitConfig,
    RateLimiter,
    create_rate_limit_response,
)
from storage import MemoryStateStore, StorageReadError


@pytest.fixture
def limiter(store, clock):
    return RateLimiter(store, RateLimitConfig(), clock=clock)


class TestFixedWindow:
    def test_exactly_max_requests_succeed(self, limiter):
        results = [limiter.check("user:u1", "claim_signature") for _ in range(6)]
        assert [r.allowed for r in results] == [True] * 5 + [False]
        assert results[4].remaining == 0
        assert results[5].retry_after == 60

    def test_rejections_do_not_consume_window(self, limiter, store):
        for _ in range(8):
            limiter.check("user:u1", "claim_signature")
        bucket = store.get("ratelimit:claim_signature:user:u1")
        assert bucket["count"] == 5

    def test_window_resets_after_expiry(self, limiter, clock):
        for _ in range(5):
            limiter.check("user:u1", "claim_signature")
        assert limiter.check("user:u1", "claim_signature").exceeded

        clock.advance(60)
        result = limiter.check("user:u1", "claim_signature")
        assert result.allowed
        assert result.remaining == 4

    def test_retry_after_counts_down(self, limiter, clock):
        for _ in range(5):
            limiter.check("user:u1", "claim_signature")
        clock.advance(45)
        assert limiter.check("user:u1", "claim_signature").retry_after == 15

    def test_buckets_are_per_key_and_class(self, limiter):
        for _ in range(5):
            limiter.check("user:u1", "claim_signature")
        assert limiter.check("user:u2", "claim_signature").allowed
        assert limiter.check("user:u1", "auth").allowed

    def test_unknown_class_raises(self, limiter):
        with pytest.raises(ValueError):
            limiter.check("user:u1", "nonexistent")

    def test_limit_override(self, limiter):
        assert limiter.check("k", "auth", limit=1).allowed
        assert limiter.check("k", "auth", limit=1).exceeded

    def test_disabled_allows_everything(self, store, clock):
        limiter = RateLimiter(store, RateLimitConfig(enabled=False), clock=clock)
        for _ in range(20):
            assert limiter.check("user:u1", "claim_signature").allowed
        assert store.keys("ratelimit:") == []


class TestCombined:
    def test_ip_checked_first(self, limiter, store):
        for _ in range(10):
            assert limiter.check_combined(None, "203.0.113.7", "claim_signature").allowed

        result = limiter.check_combined("u1", "203.0.113.7", "claim_signature")
        assert result.exceeded
        assert result.scope == "ip"
        assert store.get("ratelimit:claim_signature:user:u1") is None

    def test_identity_limit_applies_across_ips(self, limiter):
        for i in range(5):
            assert limiter.check_combined("u1", f"10.0.0.{i}", "claim_signature").allowed
        result = limiter.check_combined("u1", "10.0.0.99", "claim_signature")
        assert result.exceeded
        assert result.scope == "identity"

    def test_no_keys_allows(self, limiter):
        assert limiter.check_combined(None, None, "auth").allowed


class TestFailOpen:
    def test_store_failure_allows(self, clock):
        store = MemoryStateStore(clock=clock)
        store.get = MagicMock(side_effect=StorageReadError("down"))
        limiter = RateLimiter(store, RateLimitConfig(), clock=clock)
        assert limiter.check("user:u1", "auth").allowed


class TestStatusAndCleanup:
    def test_status_does_not_increment(self, limiter, store):
        limiter.check("user:u1", "auth")
        status = limiter.get_status("user:u1", "auth")
        assert status.remaining == 9
        assert store.get("ratelimit:auth:user:u1")["count"] == 1

    def test_cleanup_removes_expired(self, limiter, store, clock):
        limiter.check("user:u1", "auth")
        limiter.check("user:u1", "redemption")
        clock.advance(61)
        assert limiter.cleanup_expired() == 1
        assert store.keys("ratelimit:") == ["ratelimit:redemption:user:u1"]

    def test_health(self, limiter):
        health = limiter.is_healthy()
        assert health["available"] is True
        assert health["fail_mode"] == "open"


class TestConfig:
    def test_defaults(self):
        assert DEFAULT_LIMIT_CLASSES["claim_signature"].ip_limit == 10
        assert DEFAULT_LIMIT_CLASSES["redemption"].window_seconds == 3600
        assert DEFAULT_LIMIT_CLASSES["ad_view"].ip_limit == 100

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_AUTH_MAX", "3")
        monkeypatch.setenv("RATE_LIMIT_AUTH_IP_MAX", "7")
        monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
        config = RateLimitConfig.from_env()
        assert config.enabled is False
        assert config.get_class("auth") == LimitClass("auth", 3, 60, ip_max_requests=7)

    def test_response(self, limiter):
        for _ in range(6):
            result = limiter.check("user:u1", "claim_signature")
        body, status, headers = create_rate_limit_response(result)
        assert status == 429
        assert body["error"] == "RATE_LIMIT_EXCEEDED"
        assert headers["Retry-After"] == "60"
        assert headers["X-RateLimit-Remaining"] == "0"
