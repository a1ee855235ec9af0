#!/usr/bin/env python3
"""
RewardGuard Quickstart Example

This example walks two identities through the ad-view reward pipeline:
1. A human-like viewer with natural variation in watch time and pacing
2. A replay script that watches every ad for exactly the same time

Run this example:
    python examples/quickstart.py

Everything runs in-process on the memory store with a simulated clock.
"""

import os
import sys

# Add src to path so we can import the engine
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from integrity_engine import EngineConfig, IntegrityEngine
from storage import MemoryStateStore


class SimulatedClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def watch(engine, clock, identity, content_id, watch_seconds, gap_seconds):
    started = engine.start_session(identity, content_id, expected_duration_seconds=watch_seconds)
    if not started.success:
        return started
    clock.advance(watch_seconds)
    result = engine.complete_session(
        identity,
        content_id,
        started.data["view_token"],
        claimed_xp=10,
        duration_ms=int(watch_seconds * 1000),
    )
    clock.advance(gap_seconds)
    return result


def main():
    print("=" * 60)
    print("RewardGuard Quickstart")
    print("=" * 60)
    print()

    clock = SimulatedClock()
    store = MemoryStateStore(clock=clock)
    engine = IntegrityEngine(store, EngineConfig(), clock=clock)

    # ==========================================================================
    # Step 1: A human viewer
    # ==========================================================================
    print("Step 1: Human-like viewer")
    human_views = [(4.2, 8), (5.8, 30), (4.9, 12), (5.3, 45)]
    for i, (watch_seconds, gap) in enumerate(human_views):
        result = watch(engine, clock, "human-1", f"ad-{i}", watch_seconds, gap)
        print(f"  view {i + 1}: success={result.success} xp={result.xp_awarded} "
              f"error={result.error_kind.value if result.error_kind else None}")
    decision = engine.evaluate("human-1")
    print(f"  state: {decision.state.value}, score {decision.analysis.suspicion_score}")
    print()

    # ==========================================================================
    # Step 2: A replay bot
    # ==========================================================================
    print("Step 2: Replay bot (5.0s watch, 5.0s gap, every time)")
    for i in range(10):
        result = watch(engine, clock, "bot-1", f"ad-{i}", 5.0, 5.0)
        print(f"  view {i + 1}: success={result.success} xp={result.xp_awarded} "
              f"error={result.error_kind.value if result.error_kind else None}")
        if result.error_kind is not None and result.error_kind.is_next_step:
            break
    decision = engine.evaluate("bot-1")
    print(f"  state: {decision.state.value}, score {decision.analysis.suspicion_score}")
    print(f"  flags: {', '.join(f.value for f in decision.analysis.flags)}")
    print()

    # ==========================================================================
    # Step 3: Daily totals
    # ==========================================================================
    print("Step 3: Daily totals")
    for identity in ("human-1", "bot-1"):
        stats = engine.get_daily_stats(identity)
        print(f"  {identity}: {stats['xp_earned']} XP from {stats['ad_views']} ads")


if __name__ == "__main__":
    main()
