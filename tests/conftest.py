"""
Pytest configuration and shared fixtures for RewardGuard tests.

This module provides shared fixtures and test configuration including:
- A manually advanced clock shared by the store and the engine
- Memory state store and engine instances
- Flask app with in-process oracle and ledger doubles
- API authentication headers
"""

import os
import random
import sys

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

# Set up test environment before any imports
os.environ["REWARDGUARD_API_KEY"] = "test-api-key-12345"
os.environ["REWARDGUARD_REQUIRE_AUTH"] = "false"
os.environ["REWARDGUARD_DEV_MODE"] = "true"
os.environ["SWEEPER_ENABLED"] = "false"
os.environ["STATE_BACKEND"] = "memory"

# 2023-11-14 22:13:20 UTC, well clear of the off-hours window
START_TIME = 1_700_000_000.0


class FakeClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    from storage import MemoryStateStore

    return MemoryStateStore(clock=clock)


@pytest.fixture
def engine_config():
    from integrity_engine import EngineConfig

    return EngineConfig()


@pytest.fixture
def engine(store, clock, engine_config):
    from integrity_engine import IntegrityEngine

    return IntegrityEngine(store, engine_config, clock=clock, rng=random.Random(7))


@pytest.fixture
def ledger():
    from external_services import InMemoryLedgerService

    return InMemoryLedgerService()


@pytest.fixture
def oracle():
    from external_services import DevIdentityOracle

    return DevIdentityOracle(seed="tests")


@pytest.fixture(autouse=True)
def reset_metrics():
    from monitoring import metrics

    metrics.reset()
    yield


@pytest.fixture(scope="function")
def flask_app(engine, oracle, ledger):
    """Create Flask test app around the test's engine."""
    from api import create_app

    app = create_app(engine=engine, identity_oracle=oracle, ledger=ledger, start_sweeper=False)
    app.config['TESTING'] = True
    return app


@pytest.fixture(scope="function")
def flask_client(flask_app):
    """Create Flask test client."""
    return flask_app.test_client()


@pytest.fixture
def test_auth_headers():
    """Headers for authenticated requests."""
    return {
        "Content-Type": "application/json",
        "X-API-Key": "test-api-key-12345"
    }
