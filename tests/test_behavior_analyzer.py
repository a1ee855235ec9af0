"""
Tests for behavior scoring and per-identity event buffers.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from behavior_analyzer import (
    BehaviorFlag,
    BehaviorThresholds,
    BehaviorTracker,
    Recommendation,
    ViewEvent,
    analyze_view_behavior,
    coefficient_of_variation,
)
from storage import MemoryStateStore

# 2023-11-14 22:13:20 UTC
BASE_MS = 1_700_000_000_000


def bot_events(count=10, duration_ms=5000, gap_ms=10000, **signals):
    return [
        ViewEvent(BASE_MS + i * gap_ms, duration_ms, f"ad-{i}", **signals)
        for i in range(count)
    ]


def human_events():
    durations = [4200, 5800, 4900, 5300, 4600]
    offsets = [0, 8000, 38000, 50000, 95000]
    return [
        ViewEvent(BASE_MS + offset, duration, f"ad-{i}")
        for i, (offset, duration) in enumerate(zip(offsets, durations))
    ]


class TestCoefficientOfVariation(unittest.TestCase):
    def test_constant_values(self):
        self.assertEqual(coefficient_of_variation([5, 5, 5]), 0.0)

    def test_too_few_values(self):
        self.assertEqual(coefficient_of_variation([5]), 1.0)
        self.assertEqual(coefficient_of_variation([]), 1.0)

    def test_non_positive_mean(self):
        self.assertEqual(coefficient_of_variation([0, 0]), 0.0)

    def test_population_stdev(self):
        # pstdev of [2, 4] is 1, mean 3
        self.assertAlmostEqual(coefficient_of_variation([2, 4]), 1 / 3)


class TestAnalyzeViewBehavior(unittest.TestCase):
    def test_replay_bot_is_blocked(self):
        analysis = analyze_view_behavior(bot_events())
        self.assertEqual(analysis.suspicion_score, 100)
        self.assertEqual(analysis.recommendation, Recommendation.BLOCK)
        for flag in (
            BehaviorFlag.CONSISTENT_DURATION,
            BehaviorFlag.CONSISTENT_INTERVALS,
            BehaviorFlag.SESSION_BOMBING,
            BehaviorFlag.PERFECT_TIMING,
            BehaviorFlag.LINEAR_PROGRESSION,
        ):
            self.assertIn(flag, analysis.flags)

    def test_human_is_allowed(self):
        analysis = analyze_view_behavior(human_events())
        self.assertEqual(analysis.suspicion_score, 15)
        self.assertEqual(analysis.recommendation, Recommendation.ALLOW)
        self.assertEqual(analysis.flags, [])
        self.assertAlmostEqual(analysis.view_time_variance, 0.112, places=2)

    def test_below_minimum_events(self):
        analysis = analyze_view_behavior(bot_events(count=2))
        self.assertEqual(analysis.suspicion_score, 0)
        self.assertEqual(analysis.view_time_variance, 1.0)

    def test_empty(self):
        analysis = analyze_view_behavior([])
        self.assertEqual(analysis.suspicion_score, 0)
        self.assertEqual(analysis.recommendation, Recommendation.ALLOW)

    def test_pure_function(self):
        events = human_events()
        self.assertEqual(
            analyze_view_behavior(events).to_dict(),
            analyze_view_behavior(events).to_dict(),
        )

    def test_fast_viewing(self):
        events = human_events()
        events[0].duration_ms = 1000
        events[1].duration_ms = 1500
        analysis = analyze_view_behavior(events)
        self.assertIn(BehaviorFlag.FAST_VIEWING, analysis.flags)

    def test_timestamp_drift(self):
        events = human_events()
        events[-1].client_timestamp_ms = events[-1].timestamp_ms - 6000
        analysis = analyze_view_behavior(events)
        self.assertIn(BehaviorFlag.TIMESTAMP_MANIPULATION, analysis.flags)
        self.assertEqual(analysis.suspicion_score, 40)

    def test_small_drift_ignored(self):
        events = human_events()
        events[-1].client_timestamp_ms = events[-1].timestamp_ms + 5000
        self.assertEqual(analyze_view_behavior(events).suspicion_score, 15)

    def test_automation_user_agent(self):
        events = human_events()
        events[-1].user_agent = "Mozilla/5.0 HeadlessChrome/119.0"
        analysis = analyze_view_behavior(events)
        self.assertIn(BehaviorFlag.SUSPICIOUS_USER_AGENT, analysis.flags)
        self.assertEqual(analysis.suspicion_score, 45)

    def test_empty_user_agent(self):
        events = human_events()
        events[-1].user_agent = "  "
        self.assertIn(BehaviorFlag.SUSPICIOUS_USER_AGENT, analyze_view_behavior(events).flags)

    def test_fingerprint_churn(self):
        events = human_events()
        for i, event in enumerate(events):
            event.fingerprint_hash = f"fp-{i}"
        analysis = analyze_view_behavior(events)
        self.assertIn(BehaviorFlag.FINGERPRINT_CHANGE, analysis.flags)

    def test_stable_fingerprint(self):
        events = human_events()
        for event in events:
            event.fingerprint_hash = "fp"
        self.assertNotIn(BehaviorFlag.FINGERPRINT_CHANGE, analyze_view_behavior(events).flags)

    def test_off_hours_burst(self):
        # 2023-11-15 03:00 UTC, views a few minutes apart
        start = 1_700_017_200_000
        events = [ViewEvent(start + i * 180_000 + (i % 2) * 37_000, 4000 + i * 700, f"ad-{i}") for i in range(6)]
        analysis = analyze_view_behavior(events)
        self.assertIn(BehaviorFlag.OFF_HOURS_ACTIVITY, analysis.flags)

    def test_honeypot(self):
        analysis = analyze_view_behavior(human_events(), honeypot_count=1)
        self.assertIn(BehaviorFlag.HONEYPOT_TRIGGERED, analysis.flags)
        self.assertEqual(analysis.suspicion_score, 55)
        self.assertEqual(analysis.recommendation, Recommendation.CHALLENGE)

    def test_score_is_capped(self):
        events = bot_events(user_agent="selenium", client_timestamp_ms=0)
        self.assertEqual(analyze_view_behavior(events, honeypot_count=3).suspicion_score, 100)


class TestThresholds(unittest.TestCase):
    def test_recommendation_bands(self):
        t = BehaviorThresholds()
        self.assertEqual(t.recommend(49), Recommendation.ALLOW)
        self.assertEqual(t.recommend(50), Recommendation.CHALLENGE)
        self.assertEqual(t.recommend(70), Recommendation.REVERIFY)
        self.assertEqual(t.recommend(90), Recommendation.BLOCK)

    def test_bands_must_increase(self):
        with self.assertRaises(ValueError):
            BehaviorThresholds(challenge_score=70, reverify_score=70)
        with self.assertRaises(ValueError):
            BehaviorThresholds(block_score=101)

    def test_buffer_must_hold_minimum(self):
        with self.assertRaises(ValueError):
            BehaviorThresholds(buffer_size=2)


class TestBehaviorTracker(unittest.TestCase):
    def setUp(self):
        self.now = 1_700_000_000.0
        self.store = MemoryStateStore(clock=lambda: self.now)
        self.tracker = BehaviorTracker(
            self.store, BehaviorThresholds(buffer_size=5), clock=lambda: self.now
        )

    def test_buffer_is_bounded(self):
        for event in bot_events(count=8):
            self.tracker.record_view("u1", event)
        events = self.tracker.get_events("u1")
        self.assertEqual(len(events), 5)
        self.assertEqual(events[0].content_id, "ad-3")

    def test_record_returns_analysis(self):
        analysis = None
        for event in bot_events(count=3):
            analysis = self.tracker.record_view("u1", event)
        self.assertEqual(analysis.recommendation, Recommendation.BLOCK)
        self.assertEqual(self.tracker.get_analysis("u1").suspicion_score, 100)

    def test_identities_are_isolated(self):
        for event in bot_events(count=3):
            self.tracker.record_view("u1", event)
        self.assertEqual(self.tracker.get_analysis("u2").suspicion_score, 0)

    def test_honeypot_counter(self):
        self.tracker.record_honeypot_trigger("u1")
        analysis = self.tracker.get_analysis("u1")
        self.assertIn(BehaviorFlag.HONEYPOT_TRIGGERED, analysis.flags)

    def test_clear_identity(self):
        self.tracker.record_view("u1", bot_events(count=1)[0])
        self.tracker.clear_identity("u1")
        self.assertEqual(self.tracker.get_events("u1"), [])

    def test_cleanup_idle(self):
        self.tracker.record_view("u1", bot_events(count=1)[0])
        self.tracker.idle_ttl_seconds = 100
        self.now += 101
        # Written with the old TTL, so only the sweep removes it
        self.assertEqual(self.tracker.cleanup_idle(), 1)


if __name__ == '__main__':
    unittest.main()
