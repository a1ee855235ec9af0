"""
Tests for the maintenance sweeper.
"""

import os
import sys
import threading

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from monitoring import metrics
from sweeper import MaintenanceSweeper, SweeperConfig


def make_sweeper(engine, clock, **config):
    return MaintenanceSweeper(engine, SweeperConfig(**config), clock=clock)


class TestMaintenanceSweeper:
    def test_default_tasks(self, engine, clock):
        sweeper = make_sweeper(engine, clock)
        assert set(sweeper.tasks) == {
            "sessions", "quiz_sessions", "challenges", "reverification",
            "rate_limits", "behavior", "daily_records",
        }

    def test_run_once_respects_intervals(self, engine, clock):
        sweeper = make_sweeper(engine, clock, interval_seconds=60, daily_interval_seconds=3600)
        assert len(sweeper.run_once()) == 7

        clock.advance(61)
        assert set(sweeper.run_once()) == {
            "sessions", "quiz_sessions", "challenges", "reverification", "rate_limits",
        }
        assert sweeper.run_once() == {}
        assert len(sweeper.run_once(force=True)) == 7

    def test_sweeps_engine_state(self, engine, clock, store):
        store.set("ratelimit:auth:user:u1", {
            "window_start": clock() - 120, "window_seconds": 60, "count": 3,
        })
        engine.rate_limiter.check("user:u2", "auth")
        results = make_sweeper(engine, clock).run_once()
        assert results["rate_limits"] == 1
        assert store.keys("ratelimit:") == ["ratelimit:auth:user:u2"]

    def test_failing_task_is_isolated(self, engine, clock):
        sweeper = make_sweeper(engine, clock)

        def boom():
            raise RuntimeError("boom")

        sweeper.add_task("broken", boom, 1)
        results = sweeper.run_once()
        assert "broken" not in results
        assert "sessions" in results
        assert sweeper.tasks["broken"].errors == 1
        assert metrics.get_counter("sweep_errors_total", {"task": "broken"}) == 1

    def test_background_thread(self, engine):
        ran = threading.Event()
        sweeper = MaintenanceSweeper(engine, SweeperConfig(tick_seconds=0.01))
        sweeper.add_task("probe", ran.set, 0)
        sweeper.start()
        try:
            assert ran.wait(2)
            assert sweeper.is_running
        finally:
            sweeper.stop()
        assert not sweeper.is_running

    def test_status(self, engine, clock):
        sweeper = make_sweeper(engine, clock)
        sweeper.run_once()
        status = sweeper.get_status()
        assert status["running"] is False
        assert status["tasks"]["sessions"]["runs"] == 1
