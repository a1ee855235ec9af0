"""
Tests for challenge issuance, verification and the failure lockout.
"""

import os
import random
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from behavior_analyzer import BehaviorAnalysis, Recommendation
from challenge_engine import (
    HARD_PALETTE,
    NORMAL_PALETTE,
    Challenge,
    ChallengeConfig,
    ChallengeEngine,
    ChallengeType,
    Difficulty,
    MathChallenge,
    SequenceChallenge,
    SwipeChallenge,
    SwipeDirection,
    TapChallenge,
    normalize_answer,
)
from integrity_errors import ErrorKind
from monitoring import metrics


@pytest.fixture
def challenges(store, clock):
    return ChallengeEngine(store, ChallengeConfig(), clock=clock, rng=random.Random(42))


def issue(challenges, identity="u1"):
    for _ in range(5):
        challenges.record_view(identity)
    status = challenges.get_status(identity)
    assert status.needs_challenge
    return status.challenge


def analysis(score, recommendation):
    return BehaviorAnalysis(suspicion_score=score, recommendation=recommendation)


class TestNormalizeAnswer:
    def test_strings_are_trimmed_and_upper_cased(self):
        assert normalize_answer(" up ") == "UP"

    def test_sequence_forms_match(self):
        assert normalize_answer("red, Blue ,GREEN") == "RED,BLUE,GREEN"
        assert normalize_answer(["red", "blue", "green"]) == "RED,BLUE,GREEN"

    def test_numbers(self):
        assert normalize_answer(7) == "7"


class TestChallengeTypes:
    def _common(self):
        return {"id": "c1", "created_at": 100.0, "expires_at": 130.0, "difficulty": Difficulty.NORMAL}

    def test_tap(self):
        challenge = TapChallenge(**self._common(), target_taps=3)
        assert challenge.check(3)
        assert challenge.check("3")
        assert not challenge.check(4)

    def test_math(self):
        challenge = MathChallenge(**self._common(), left=7, operator="-", right=9, options=[-2, 1, 3, -5])
        assert challenge.result == -2
        assert challenge.check("-2")
        public = challenge.to_public_dict()
        assert public["question"] == "7 - 9 = ?"
        assert public["options"] == ["-2", "1", "3", "-5"]

    def test_swipe(self):
        challenge = SwipeChallenge(**self._common(), direction=SwipeDirection.LEFT)
        assert challenge.check("left")
        assert not challenge.check("RIGHT")

    def test_sequence(self):
        challenge = SequenceChallenge(
            **self._common(), sequence=list(NORMAL_PALETTE[:3]), palette=list(NORMAL_PALETTE)
        )
        assert challenge.check("red,blue,green")
        assert not challenge.check("RED,GREEN,BLUE")

    def test_public_dict_hides_nothing_it_should_not(self):
        challenge = TapChallenge(**self._common(), target_taps=3)
        public = challenge.to_public_dict()
        assert public["type"] == "tap"
        assert public["timeout_ms"] == 30000
        assert "target_taps" in public

    def test_serialization_round_trip(self):
        for challenge in (
            TapChallenge(**self._common(), target_taps=3),
            SwipeChallenge(**self._common(), direction=SwipeDirection.DOWN),
            SequenceChallenge(**self._common(), sequence=list(HARD_PALETTE[:5]), palette=list(HARD_PALETTE)),
        ):
            restored = Challenge.from_dict(challenge.to_dict())
            assert restored == challenge

    def test_expiry_is_strict(self):
        challenge = TapChallenge(**self._common(), target_taps=3)
        assert not challenge.is_expired(130.0)
        assert challenge.is_expired(130.001)


class TestGenerate:
    def test_normal_ranges(self, challenges):
        for _ in range(200):
            challenge = challenges.generate(0)
            assert challenge.difficulty == Difficulty.NORMAL
            assert challenge.expires_at - challenge.created_at == pytest.approx(30)
            if isinstance(challenge, TapChallenge):
                assert 2 <= challenge.target_taps <= 4
            elif isinstance(challenge, MathChallenge):
                assert 1 <= challenge.left <= 10 and 1 <= challenge.right <= 10
                assert len(set(challenge.options)) == 4
                assert challenge.result in challenge.options
            elif isinstance(challenge, SequenceChallenge):
                assert len(challenge.sequence) == 3
                assert set(challenge.sequence) <= set(NORMAL_PALETTE)

    def test_hard_ranges(self, challenges):
        for _ in range(200):
            challenge = challenges.generate(70)
            assert challenge.difficulty == Difficulty.HARD
            assert challenge.expires_at - challenge.created_at == pytest.approx(15)
            if isinstance(challenge, TapChallenge):
                assert 5 <= challenge.target_taps <= 8
            elif isinstance(challenge, MathChallenge):
                assert 10 <= challenge.left <= 50
                assert all(abs(o - challenge.result) <= 10 for o in challenge.options)
            elif isinstance(challenge, SequenceChallenge):
                assert len(challenge.sequence) == 5
                assert challenge.palette == HARD_PALETTE

    def test_all_types_generated(self, challenges):
        kinds = {challenges.generate(0).type for _ in range(200)}
        assert kinds == set(ChallengeType)


class TestIssuance:
    def test_no_challenge_before_threshold(self, challenges):
        for _ in range(4):
            challenges.record_view("u1")
        assert not challenges.get_status("u1").needs_challenge

    def test_challenge_after_threshold(self, challenges):
        challenge = issue(challenges)
        assert metrics.get_counter("challenges_issued_total", {"type": challenge.type.value}) == 1

    def test_active_challenge_is_reused(self, challenges):
        challenge = issue(challenges)
        assert challenges.get_status("u1").challenge.id == challenge.id

    def test_analysis_triggers_challenge(self, challenges):
        status = challenges.get_status("u1", analysis(55, Recommendation.CHALLENGE))
        assert status.needs_challenge
        assert status.challenge.difficulty == Difficulty.NORMAL

    def test_high_score_gets_hard_challenge(self, challenges):
        status = challenges.get_status("u1", analysis(75, Recommendation.REVERIFY))
        assert status.challenge.difficulty == Difficulty.HARD

    def test_allow_does_not_trigger(self, challenges):
        assert not challenges.should_issue("u1", analysis(20, Recommendation.ALLOW))

    def test_pass_satisfies_behavior_trigger(self, challenges):
        flagged = analysis(55, Recommendation.CHALLENGE)
        challenge = challenges.get_status("u1", flagged).challenge
        assert challenges.verify("u1", challenge.id, challenge.expected_answer).success
        assert challenges.get_state("u1").behavior_cleared
        assert not challenges.should_issue("u1", flagged)
        assert not challenges.get_status("u1", flagged).needs_challenge

    def test_behavior_trigger_rearms_after_allow(self, challenges):
        flagged = analysis(55, Recommendation.CHALLENGE)
        challenge = challenges.get_status("u1", flagged).challenge
        challenges.verify("u1", challenge.id, challenge.expected_answer)

        assert not challenges.get_status("u1", analysis(20, Recommendation.ALLOW)).needs_challenge
        assert not challenges.get_state("u1").behavior_cleared
        assert challenges.get_status("u1", flagged).needs_challenge

    def test_pass_keeps_periodic_trigger(self, challenges):
        flagged = analysis(55, Recommendation.CHALLENGE)
        challenge = challenges.get_status("u1", flagged).challenge
        challenges.verify("u1", challenge.id, challenge.expected_answer)
        for _ in range(5):
            challenges.record_view("u1")
        assert challenges.get_status("u1", flagged).needs_challenge

    def test_pass_does_not_clear_reverify_trigger(self, challenges):
        challenge = issue(challenges)
        challenges.verify("u1", challenge.id, challenge.expected_answer)
        assert challenges.should_issue("u1", analysis(75, Recommendation.REVERIFY))


class TestPeekStatus:
    def test_reports_due_without_issuing(self, challenges):
        status = challenges.peek_status("u1", analysis(55, Recommendation.CHALLENGE))
        assert status.needs_challenge
        assert status.challenge is None
        assert challenges.get_active("u1") is None

    def test_returns_active_challenge(self, challenges):
        challenge = issue(challenges)
        assert challenges.peek_status("u1").challenge.id == challenge.id

    def test_expired_challenge_not_counted(self, challenges, clock):
        issue(challenges)
        clock.advance(31)
        assert not challenges.peek_status("u1").challenge
        assert challenges.get_state("u1").failed_attempts == 0

    def test_locked(self, challenges):
        challenge = issue(challenges)
        for _ in range(3):
            challenges.verify("u1", challenge.id, "WRONG")
        status = challenges.peek_status("u1")
        assert status.is_locked
        assert status.lock_remaining_ms == 300000


class TestVerify:
    def test_correct_answer_resets_counters(self, challenges):
        challenge = issue(challenges)
        result = challenges.verify("u1", challenge.id, challenge.expected_answer)
        assert result.success
        state = challenges.get_state("u1")
        assert state.consecutive_views == 0
        assert state.failed_attempts == 0
        assert challenges.get_active("u1") is None

    def test_no_active_challenge(self, challenges):
        result = challenges.verify("u1", "nope", "1")
        assert result.error_kind == ErrorKind.NO_ACTIVE_CHALLENGE

    def test_wrong_id(self, challenges):
        issue(challenges)
        result = challenges.verify("u1", "other-id", "1")
        assert result.error_kind == ErrorKind.INVALID_CHALLENGE_ID
        assert challenges.get_state("u1").failed_attempts == 0

    def test_wrong_answer_keeps_challenge(self, challenges):
        challenge = issue(challenges)
        result = challenges.verify("u1", challenge.id, "WRONG")
        assert result.error_kind == ErrorKind.WRONG_ANSWER
        assert challenges.get_state("u1").failed_attempts == 1
        assert challenges.verify("u1", challenge.id, challenge.expected_answer).success

    def test_expired_challenge(self, challenges, clock):
        challenge = issue(challenges)
        clock.advance(31)
        result = challenges.verify("u1", challenge.id, challenge.expected_answer)
        assert result.error_kind == ErrorKind.CHALLENGE_EXPIRED
        assert challenges.get_state("u1").failed_attempts == 1

    def test_answer_at_deadline_accepted(self, challenges, clock):
        challenge = issue(challenges)
        clock.advance(30)
        assert challenges.verify("u1", challenge.id, challenge.expected_answer).success


class TestLockout:
    def test_three_failures_lock_for_five_minutes(self, challenges, clock):
        challenge = issue(challenges)
        assert challenges.verify("u1", challenge.id, "WRONG").error_kind == ErrorKind.WRONG_ANSWER
        assert challenges.verify("u1", challenge.id, "WRONG").error_kind == ErrorKind.WRONG_ANSWER
        result = challenges.verify("u1", challenge.id, "WRONG")
        assert result.error_kind == ErrorKind.WRONG_ANSWER_LOCKED
        assert result.is_locked
        assert result.lock_remaining_ms == 300000
        assert metrics.get_counter("challenge_lockouts_total") == 1

        clock.advance(299)
        fourth = challenges.verify("u1", challenge.id, challenge.expected_answer)
        assert fourth.error_kind == ErrorKind.USER_LOCKED
        assert fourth.lock_remaining_ms == 1000
        assert challenges.get_status("u1").is_locked

        clock.advance(1)
        assert not challenges.get_status("u1").is_locked
        assert challenges.get_state("u1").failed_attempts == 0

    def test_lock_expiry_keeps_view_count(self, challenges, clock):
        challenge = issue(challenges)
        for _ in range(3):
            challenges.verify("u1", challenge.id, "WRONG")
        clock.advance(300)
        status = challenges.get_status("u1")
        assert status.needs_challenge
        assert status.challenge.id != challenge.id

    def test_mixed_failures_lock(self, challenges, clock):
        challenge = issue(challenges)
        challenges.verify("u1", challenge.id, "WRONG")
        assert challenges.skip("u1").error_kind == ErrorKind.CHALLENGE_SKIPPED

        challenge = challenges.get_status("u1").challenge
        clock.advance(31)
        result = challenges.verify("u1", challenge.id, challenge.expected_answer)
        assert result.error_kind == ErrorKind.CHALLENGE_TIMEOUT_LOCKED
        assert challenges.lock_remaining_ms("u1") == 300000

    def test_skip_lock(self, challenges):
        for _ in range(3):
            issue(challenges)
            result = challenges.skip("u1")
        assert result.error_kind == ErrorKind.CHALLENGE_SKIPPED_LOCKED
        assert challenges.skip("u1").error_kind == ErrorKind.USER_LOCKED

    def test_skip_without_challenge(self, challenges):
        assert challenges.skip("u1").error_kind == ErrorKind.NO_ACTIVE_CHALLENGE
        assert challenges.get_state("u1").failed_attempts == 0

    def test_lockout_is_per_identity(self, challenges):
        challenge = issue(challenges)
        for _ in range(3):
            challenges.verify("u1", challenge.id, "WRONG")
        assert not challenges.get_status("u2").is_locked


class TestMaintenance:
    def test_cleanup_times_out_expired(self, challenges, store, clock):
        issue(challenges, "u1")
        issue(challenges, "u2")
        clock.advance(31)
        assert challenges.cleanup_expired() == 2
        assert store.keys("challenge:active:") == []
        assert challenges.get_state("u1").failed_attempts == 1

    def test_cleanup_leaves_live_challenges(self, challenges):
        issue(challenges)
        assert challenges.cleanup_expired() == 0

    def test_reset_identity(self, challenges):
        issue(challenges)
        challenges.reset_identity("u1")
        assert challenges.get_active("u1") is None
        assert challenges.get_state("u1").consecutive_views == 0

    def test_config_from_env(self, monkeypatch):
        monkeypatch.setenv("CHALLENGE_VIEWS_BEFORE", "3")
        monkeypatch.setenv("CHALLENGE_LOCK_DURATION_MS", "60000")
        config = ChallengeConfig.from_env()
        assert config.views_before_challenge == 3
        assert config.to_public_dict()["lock_duration_ms"] == 60000
