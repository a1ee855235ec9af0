"""
RewardGuard - Maintenance Sweeper

Runs the engine's periodic cleanups on a background daemon thread:
expired sessions and tombstones, stale daily records, idle behavior
buffers, timed-out challenges, expired re-verification requests and
rate-limit buckets.

Every deadline is also enforced lazily on access, so the sweeper only
bounds memory; a stopped sweeper never changes a decision.

Environment Variables:
    SWEEP_INTERVAL_SECONDS=60
    SWEEP_DAILY_INTERVAL_SECONDS=3600
"""

import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from integrity_engine import IntegrityEngine
from monitoring import metrics

logger = logging.getLogger(__name__)


@dataclass
class SweepTask:
    name: str
    func: Callable[[], Any]
    interval_seconds: float
    last_run: float = 0.0
    runs: int = 0
    errors: int = 0
    last_result: Any = None

    def is_due(self, now: float) -> bool:
        return now - self.last_run >= self.interval_seconds


@dataclass
class SweeperConfig:
    interval_seconds: float = 60.0
    daily_interval_seconds: float = 3600.0
    tick_seconds: float = 1.0

    @classmethod
    def from_env(cls) -> "SweeperConfig":
        return cls(
            interval_seconds=float(os.getenv("SWEEP_INTERVAL_SECONDS", "60")),
            daily_interval_seconds=float(os.getenv("SWEEP_DAILY_INTERVAL_SECONDS", "3600")),
        )


@dataclass
class MaintenanceSweeper:
    """
    Schedules cleanup tasks and runs them when due.

    run_once() is the whole schedule; start() just calls it on a daemon
    thread until stop() is called. A failing task is logged and counted
    but never stops the others.
    """

    engine: IntegrityEngine
    config: SweeperConfig = field(default_factory=SweeperConfig.from_env)
    clock: Callable[[], float] = time.time
    tasks: dict[str, SweepTask] = field(default_factory=dict)

    def __post_init__(self):
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        if not self.tasks:
            self._register_defaults()

    def _register_defaults(self) -> None:
        engine = self.engine
        every = self.config.interval_seconds
        self.add_task("sessions", engine.sessions.sweep, every)
        self.add_task("quiz_sessions", engine.quizzes.cleanup_old_sessions, every)
        self.add_task("challenges", engine.challenges.cleanup_expired, every)
        self.add_task("reverification", engine.reverification.cleanup_expired, every)
        self.add_task("rate_limits", engine.rate_limiter.cleanup_expired, every)
        self.add_task("behavior", engine.behavior.cleanup_idle, self.config.daily_interval_seconds)
        self.add_task("daily_records", engine.quota.cleanup_old_records, self.config.daily_interval_seconds)

    def add_task(self, name: str, func: Callable[[], Any], interval_seconds: float) -> None:
        self.tasks[name] = SweepTask(name=name, func=func, interval_seconds=interval_seconds)

    def run_once(self, force: bool = False) -> dict[str, Any]:
        """Run every due task (or all of them with force) and return their results."""
        now = self.clock()
        results = {}
        for task in self.tasks.values():
            if not force and not task.is_due(now):
                continue
            task.last_run = now
            task.runs += 1
            try:
                task.last_result = task.func()
                results[task.name] = task.last_result
            except Exception:
                task.errors += 1
                metrics.increment("sweep_errors_total", labels={"task": task.name})
                logger.exception(f"Sweep task '{task.name}' failed")
        return results

    def _loop(self) -> None:
        logger.info(f"Maintenance sweeper started with {len(self.tasks)} tasks")
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self.config.tick_seconds)
        logger.info("Maintenance sweeper stopped")

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="rewardguard-sweeper")
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Signal the loop to exit and wait for the current pass to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "tasks": {
                t.name: {
                    "interval_seconds": t.interval_seconds,
                    "last_run": t.last_run,
                    "runs": t.runs,
                    "errors": t.errors,
                }
                for t in self.tasks.values()
            },
        }
