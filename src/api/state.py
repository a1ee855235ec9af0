"""
Shared state for the RewardGuard API.

Holds the engine and the external collaborators used by every blueprint.
create_app() fills the registry; blueprints read it through `services`.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any

from external_services import (
    IdentityOracle,
    LedgerService,
    get_identity_oracle,
    get_ledger_service,
)
from integrity_engine import EngineConfig, IntegrityEngine
from storage import get_state_store
from sweeper import MaintenanceSweeper

logger = logging.getLogger(__name__)


@dataclass
class ServiceRegistry:
    engine: IntegrityEngine | None = None
    identity_oracle: IdentityOracle | None = None
    ledger: LedgerService | None = None
    sweeper: MaintenanceSweeper | None = None
    started_at: float = 0.0

    def require_engine(self) -> IntegrityEngine:
        if self.engine is None:
            raise RuntimeError("RewardGuard services are not initialized; call create_app() first")
        return self.engine

    def describe(self) -> dict[str, Any]:
        return {
            "engine": self.engine is not None,
            "identity_oracle": type(self.identity_oracle).__name__ if self.identity_oracle else None,
            "ledger": type(self.ledger).__name__ if self.ledger else None,
            "sweeper": self.sweeper.is_running if self.sweeper else False,
        }


services = ServiceRegistry()


def init_services(
    engine: IntegrityEngine | None = None,
    identity_oracle: IdentityOracle | None = None,
    ledger: LedgerService | None = None,
) -> ServiceRegistry:
    """
    Populate the registry, building anything not supplied from the environment.
    """
    if services.sweeper is not None:
        services.sweeper.stop()

    services.engine = engine or IntegrityEngine(get_state_store(), EngineConfig.from_env())
    services.identity_oracle = identity_oracle or get_identity_oracle()
    services.ledger = ledger or get_ledger_service()
    services.sweeper = MaintenanceSweeper(services.engine)
    services.started_at = time.time()

    logger.info(
        f"Services initialized: store={services.engine.store.__class__.__name__}, "
        f"oracle={type(services.identity_oracle).__name__}, ledger={type(services.ledger).__name__}"
    )
    return services
