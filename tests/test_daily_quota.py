"""
Tests for the daily quota tracker.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from daily_quota import ActionType, DailyLimitConfig, DailyQuotaTracker
from integrity_errors import ConfigurationError, ErrorKind


@pytest.fixture
def tracker(store, clock):
    return DailyQuotaTracker(store, DailyLimitConfig(), clock=clock)


class TestCheck:
    def test_fresh_identity_allowed(self, tracker):
        result = tracker.check_daily_limit("u1", 10, ActionType.AD)
        assert result.allowed
        assert result.remaining_xp == 500
        assert result.remaining_ad_views == 50

    def test_check_commits_nothing(self, tracker):
        tracker.check_daily_limit("u1", 10, ActionType.AD)
        assert tracker.get_daily_stats("u1")["xp_earned"] == 0

    def test_xp_ceiling(self, tracker):
        tracker.record_earned("u1", 480, ActionType.QUIZ)
        result = tracker.check_daily_limit("u1", 30, ActionType.AD)
        assert not result.allowed
        assert result.reason == ErrorKind.DAILY_XP_LIMIT_REACHED
        assert result.remaining_xp == 20
        assert tracker.check_daily_limit("u1", 20, ActionType.AD).allowed

    def test_ad_view_ceiling(self, store, clock):
        tracker = DailyQuotaTracker(store, DailyLimitConfig(max_ad_views_per_day=2), clock=clock)
        tracker.record_earned("u1", 1, "ad")
        tracker.record_earned("u1", 1, "ad")
        result = tracker.check_daily_limit("u1", 0, "ad")
        assert result.reason == ErrorKind.DAILY_AD_VIEW_LIMIT_REACHED
        assert tracker.check_daily_limit("u1", 0, "quiz").allowed

    def test_quiz_ceiling(self, store, clock):
        tracker = DailyQuotaTracker(store, DailyLimitConfig(max_quiz_answers_per_day=1), clock=clock)
        tracker.record_earned("u1", 5, ActionType.QUIZ)
        result = tracker.check_daily_limit("u1", 5, ActionType.QUIZ)
        assert result.reason == ErrorKind.DAILY_QUIZ_LIMIT_REACHED

    def test_unknown_action_type(self, tracker):
        with pytest.raises(ValueError):
            tracker.check_daily_limit("u1", 1, "video")


class TestRecord:
    def test_record_increments_counters(self, tracker):
        tracker.record_earned("u1", 10, ActionType.AD)
        record = tracker.record_earned("u1", 15, ActionType.QUIZ)
        assert record.xp_earned == 25
        assert record.ad_views == 1
        assert record.quiz_answers == 1

    def test_xp_clamped_at_maximum(self, tracker):
        tracker.record_earned("u1", 490, ActionType.AD)
        record = tracker.record_earned("u1", 50, ActionType.AD)
        assert record.xp_earned == 500
        assert record.ad_views == 2

    def test_negative_xp_rejected(self, tracker):
        with pytest.raises(ValueError):
            tracker.record_earned("u1", -1, ActionType.AD)

    def test_zero_xp_counts_action(self, tracker):
        record = tracker.record_earned("u1", 0, ActionType.QUIZ)
        assert record.quiz_answers == 1

    def test_revert_undoes_one_action(self, tracker):
        tracker.record_earned("u1", 10, ActionType.AD)
        tracker.record_earned("u1", 15, ActionType.QUIZ)
        record = tracker.revert_earned("u1", 10, ActionType.AD)
        assert record.xp_earned == 15
        assert record.ad_views == 0
        assert record.quiz_answers == 1
        assert tracker.check_daily_limit("u1", 485, ActionType.AD).allowed

    def test_revert_never_goes_negative(self, tracker):
        record = tracker.revert_earned("u1", 10, "quiz")
        assert record.xp_earned == 0
        assert record.quiz_answers == 0


class TestDayBoundary:
    def test_rollover_resets_record(self, tracker, clock):
        tracker.record_earned("u1", 500, ActionType.AD)
        assert not tracker.check_daily_limit("u1", 1, ActionType.AD).allowed

        clock.advance(24 * 3600)
        result = tracker.check_daily_limit("u1", 1, ActionType.AD)
        assert result.allowed
        assert result.current_xp == 0

    def test_timezone_defines_the_day(self, store, clock):
        # 22:13 UTC is already the next day in Tokyo
        utc = DailyQuotaTracker(store, DailyLimitConfig(), clock=clock)
        tokyo = DailyQuotaTracker(store, DailyLimitConfig(timezone="Asia/Tokyo"), clock=clock)
        assert utc.today() == "2023-11-14"
        assert tokyo.today() == "2023-11-15"

    def test_cleanup_old_records(self, tracker, clock):
        tracker.record_earned("u1", 10, ActionType.AD)
        clock.advance(24 * 3600)
        tracker.record_earned("u2", 10, ActionType.AD)
        assert tracker.cleanup_old_records() == 1
        assert tracker.get_daily_stats("u2")["xp_earned"] == 10


class TestConfig:
    def test_unknown_timezone(self):
        with pytest.raises(ConfigurationError):
            DailyLimitConfig(timezone="Mars/Olympus")

    def test_negative_limit(self):
        with pytest.raises(ConfigurationError):
            DailyLimitConfig(max_xp_per_day=-1)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("DAILY_MAX_XP", "100")
        monkeypatch.setenv("DAILY_QUOTA_TIMEZONE", "Europe/Berlin")
        config = DailyLimitConfig.from_env()
        assert config.max_xp_per_day == 100
        assert config.timezone == "Europe/Berlin"

    def test_stats_include_limits(self, tracker):
        stats = tracker.get_daily_stats("u1")
        assert stats["limits"]["max_xp_per_day"] == 500
        assert stats["timezone"] == "UTC"
        assert stats["date"] == "2023-11-14"
