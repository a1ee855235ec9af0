"""
Tests for view sessions and single-use view tokens.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from integrity_errors import ErrorKind
from session_ledger import SessionConfig, SessionLedger


@pytest.fixture
def ledger(store, clock):
    return SessionLedger(store, SessionConfig(), clock=clock)


def start(ledger, identity="u1", content_id="ad-1", duration=30):
    result = ledger.start(identity, content_id, duration)
    assert result.success
    return result.token


class TestStart:
    def test_issues_unique_tokens(self, ledger, clock):
        first = ledger.start("u1", "ad-1", 30)
        second = ledger.start("u1", "ad-1", 30)
        assert first.token != second.token
        assert first.token.startswith("vt_")
        assert first.expires_at == clock() + 600

    @pytest.mark.parametrize("duration", [0, -5, 301])
    def test_invalid_duration(self, ledger, duration):
        result = ledger.start("u1", "ad-1", duration)
        assert not result.success
        assert result.error_kind == ErrorKind.INVALID_DURATION

    def test_maximum_duration_accepted(self, ledger):
        assert ledger.start("u1", "ad-1", 300).success


class TestComplete:
    def test_successful_completion(self, ledger, clock):
        token = start(ledger)
        clock.advance(24)
        result = ledger.complete("u1", "ad-1", token, 10)
        assert result.success
        assert result.xp_awarded == 10
        assert ledger.get_session(token) is None

    def test_unknown_token(self, ledger):
        result = ledger.complete("u1", "ad-1", "vt_nope", 10)
        assert result.error_kind == ErrorKind.INVALID_TOKEN

    def test_user_mismatch_checked_before_content(self, ledger, clock):
        token = start(ledger)
        clock.advance(30)
        result = ledger.complete("u2", "ad-2", token, 10)
        assert result.error_kind == ErrorKind.USER_MISMATCH

    def test_content_mismatch(self, ledger, clock):
        token = start(ledger)
        clock.advance(30)
        result = ledger.complete("u1", "ad-2", token, 10)
        assert result.error_kind == ErrorKind.CONTENT_MISMATCH

    def test_replay_reports_already_completed(self, ledger, clock):
        token = start(ledger)
        clock.advance(30)
        assert ledger.complete("u1", "ad-1", token, 10).success
        clock.advance(120)
        result = ledger.complete("u1", "ad-1", token, 10)
        assert not result.success
        assert result.error_kind == ErrorKind.ALREADY_COMPLETED
        assert result.xp_awarded == 0

    def test_too_short_keeps_token(self, ledger, clock):
        token = start(ledger, duration=30)
        clock.advance(23.9)
        result = ledger.complete("u1", "ad-1", token, 10)
        assert result.error_kind == ErrorKind.WATCH_TIME_TOO_SHORT
        assert result.minimum_seconds == pytest.approx(24.0)
        assert ledger.get_session(token) is not None

        clock.advance(1)
        assert ledger.complete("u1", "ad-1", token, 10).success

    def test_cooldown_per_content(self, ledger, clock):
        first = start(ledger)
        clock.advance(30)
        assert ledger.complete("u1", "ad-1", first, 10).success

        second = start(ledger)
        other = start(ledger, content_id="ad-2")
        clock.advance(25)
        result = ledger.complete("u1", "ad-1", second, 10)
        assert result.error_kind == ErrorKind.COOLDOWN_ACTIVE
        assert result.cooldown_remaining_seconds == pytest.approx(35)
        assert ledger.complete("u1", "ad-2", other, 10).success

        clock.advance(35)
        assert ledger.complete("u1", "ad-1", second, 10).success

    def test_expired_session(self, ledger, clock):
        token = start(ledger)
        clock.advance(601)
        result = ledger.complete("u1", "ad-1", token, 10)
        assert result.error_kind == ErrorKind.INVALID_TOKEN

    def test_negative_claim_rejected(self, ledger, clock):
        token = start(ledger)
        clock.advance(25)
        result = ledger.complete("u1", "ad-1", token, -1)
        assert not result.success
        assert result.error_kind == ErrorKind.INVALID_XP
        assert ledger.complete("u1", "ad-1", token, 10).success

    def test_result_dict(self, ledger, clock):
        token = start(ledger, duration=10)
        clock.advance(2)
        data = ledger.complete("u1", "ad-1", token, 10).to_dict()
        assert data["error"] == "WATCH_TIME_TOO_SHORT"
        assert data["elapsed_seconds"] == 2.0
        assert data["minimum_seconds"] == 8.0


class TestSweep:
    def test_stats(self, ledger, clock):
        done = start(ledger, content_id="ad-1")
        start(ledger, content_id="ad-2")
        clock.advance(30)
        ledger.complete("u1", "ad-1", done, 10)
        assert ledger.get_stats() == {"active_sessions": 1, "active_cooldowns": 1}

    def test_sweep_evicts_entries_without_ttl(self, ledger, store, clock):
        # Entries written without a TTL are only ever removed by the sweep
        store.set("session:live:vt_old", {
            "token": "vt_old", "identity": "u1", "content_id": "ad-1",
            "expected_duration_seconds": 30.0, "started_at": clock() - 700, "completed": False,
        })
        store.set("session:cooldown:u1:ad-1", {
            "identity": "u1", "content_id": "ad-1", "last_completed_at": clock() - 500,
        })
        fresh = start(ledger, content_id="ad-2")

        removed = ledger.sweep()
        assert removed == {"sessions": 1, "tombstones": 0, "cooldowns": 1}
        assert ledger.get_session(fresh) is not None
