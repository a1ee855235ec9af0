"""
RewardGuard - External Services

Interfaces for the two collaborators the engine never talks to directly:

- IdentityOracle: verifies a proof-of-personhood and returns the
  pseudonym (nullifier) for the given action namespace.
- LedgerService: credits XP and reports balances.

The API layer calls these only after the engine's checks pass. HTTP
implementations use a pooled requests.Session; the in-process doubles
back development mode and tests.

Environment Variables:
    IDENTITY_ORACLE_URL=https://...
    IDENTITY_ORACLE_APP_ID=app_...
    LEDGER_URL=https://...
    LEDGER_API_KEY=...
    EXTERNAL_TIMEOUT=10
    REWARDGUARD_DEV_MODE=false
"""

import hashlib
import itertools
import logging
import os
import secrets
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import requests

from integrity_errors import ConfigurationError, LedgerError, VerificationFailedError

logger = logging.getLogger(__name__)

USER_AGENT = "RewardGuard/0.1"


# ============================================================
# Identity oracle
# ============================================================

class IdentityOracle(ABC):
    """Proof-of-personhood verifier."""

    @abstractmethod
    def verify(self, action: str, proof: dict[str, Any]) -> str:
        """
        Verify a proof for the given action namespace.

        Returns:
            The pseudonym issued for this (person, action) pair

        Raises:
            VerificationFailedError: If the proof is rejected or the
                oracle cannot be reached
        """
        pass


class HttpIdentityOracle(IdentityOracle):
    """Posts proofs to a remote verification endpoint."""

    def __init__(
        self,
        verify_url: str,
        app_id: str | None = None,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ):
        self.verify_url = verify_url
        self.app_id = app_id
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers["Content-Type"] = "application/json"
        self._session.headers["User-Agent"] = USER_AGENT

    def verify(self, action: str, proof: dict[str, Any]) -> str:
        payload = {**proof, "action": action}
        if self.app_id:
            payload["app_id"] = self.app_id

        try:
            response = self._session.post(self.verify_url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise VerificationFailedError(
                "Identity oracle unreachable", action=action, cause=e
            ) from e

        if response.status_code != 200:
            raise VerificationFailedError(
                f"Identity oracle rejected proof (HTTP {response.status_code})",
                action=action,
                details={"status_code": response.status_code},
            )

        try:
            body = response.json()
        except ValueError as e:
            raise VerificationFailedError(
                "Identity oracle returned invalid JSON", action=action, cause=e
            ) from e

        pseudonym = body.get("nullifier_hash") or body.get("pseudonym")
        if not body.get("success", True) or not pseudonym:
            raise VerificationFailedError(
                body.get("detail") or "Proof not verified",
                action=action,
                details={"code": body.get("code")},
            )
        return pseudonym


class DevIdentityOracle(IdentityOracle):
    """
    Accepts any proof and issues a fresh pseudonym per call.

    Pseudonyms are deterministic for a given seed so test runs are
    reproducible.
    """

    def __init__(self, seed: str | None = None):
        self.seed = seed or secrets.token_hex(8)
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def verify(self, action: str, proof: dict[str, Any]) -> str:
        if proof.get("reject"):
            raise VerificationFailedError("Proof rejected by development oracle", action=action)
        with self._lock:
            n = next(self._counter)
        digest = hashlib.sha256(f"{self.seed}:{action}:{n}".encode()).hexdigest()
        logger.debug(f"Development oracle issued pseudonym #{n} for {action}")
        return f"0x{digest}"


# ============================================================
# Ledger
# ============================================================

@dataclass
class CreditReceipt:
    identity: str
    amount: int
    new_balance: int
    transaction_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "amount": self.amount,
            "new_balance": self.new_balance,
            "transaction_id": self.transaction_id,
        }


class LedgerService(ABC):
    """XP ledger owned by another service."""

    @abstractmethod
    def credit_xp(
        self, identity: str, amount: int, source_type: str, source_id: str | None = None
    ) -> CreditReceipt:
        """
        Raises:
            LedgerError: If the credit could not be recorded
        """
        pass

    @abstractmethod
    def get_balance(self, identity: str) -> int:
        pass


class HttpLedgerService(LedgerService):
    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        if api_key:
            self._session.headers["Authorization"] = f"Bearer {api_key}"
        self._session.headers["Content-Type"] = "application/json"
        self._session.headers["User-Agent"] = USER_AGENT

    def _call(self, method: str, path: str, action: str, **kwargs) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.HTTPError as e:
            raise LedgerError(
                f"Ledger returned HTTP {e.response.status_code}",
                action=action,
                details={"status_code": e.response.status_code},
                cause=e,
            ) from e
        except (requests.RequestException, ValueError) as e:
            raise LedgerError("Ledger request failed", action=action, cause=e) from e

    def credit_xp(
        self, identity: str, amount: int, source_type: str, source_id: str | None = None
    ) -> CreditReceipt:
        body = self._call(
            "POST",
            "/credits/earn",
            "credit_xp",
            json={
                "nullifier_hash": identity,
                "amount": amount,
                "type": source_type,
                "reference_id": source_id,
            },
        )
        if not body.get("success", False):
            raise LedgerError(body.get("error") or "Credit rejected", details={"identity": identity})
        return CreditReceipt(
            identity=identity,
            amount=body.get("credits_earned", amount),
            new_balance=body["new_balance"],
            transaction_id=body["transaction_id"],
        )

    def get_balance(self, identity: str) -> int:
        body = self._call("GET", f"/credits/balance/{identity}", "get_balance")
        return int(body["credits"])


class InMemoryLedgerService(LedgerService):
    """Process-local ledger for development and tests."""

    def __init__(self):
        self._balances: dict[str, int] = {}
        self._transactions: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def credit_xp(
        self, identity: str, amount: int, source_type: str, source_id: str | None = None
    ) -> CreditReceipt:
        if amount < 0:
            raise LedgerError(f"Cannot credit a negative amount ({amount})")
        with self._lock:
            balance = self._balances.get(identity, 0) + amount
            self._balances[identity] = balance
            tx_id = f"tx_{len(self._transactions) + 1:06d}"
            self._transactions.append({
                "id": tx_id,
                "identity": identity,
                "amount": amount,
                "source_type": source_type,
                "source_id": source_id,
                "created_at": datetime.now(UTC).isoformat(),
            })
        return CreditReceipt(identity, amount, balance, tx_id)

    def get_balance(self, identity: str) -> int:
        with self._lock:
            return self._balances.get(identity, 0)

    def transactions(self, identity: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            return [t for t in self._transactions if identity is None or t["identity"] == identity]


# ============================================================
# Factories
# ============================================================

def _dev_mode() -> bool:
    return os.getenv("REWARDGUARD_DEV_MODE", "false").lower() == "true"


def get_identity_oracle() -> IdentityOracle:
    """Oracle configured by IDENTITY_ORACLE_URL, or the dev oracle in dev mode."""
    url = os.getenv("IDENTITY_ORACLE_URL")
    if url:
        return HttpIdentityOracle(
            url,
            app_id=os.getenv("IDENTITY_ORACLE_APP_ID"),
            timeout=float(os.getenv("EXTERNAL_TIMEOUT", "10")),
        )
    if _dev_mode():
        logger.warning("Using development identity oracle: every proof is accepted")
        return DevIdentityOracle()
    raise ConfigurationError(
        "IDENTITY_ORACLE_URL is required unless REWARDGUARD_DEV_MODE=true",
        setting="IDENTITY_ORACLE_URL",
    )


def get_ledger_service() -> LedgerService:
    url = os.getenv("LEDGER_URL")
    if url:
        return HttpLedgerService(
            url,
            api_key=os.getenv("LEDGER_API_KEY"),
            timeout=float(os.getenv("EXTERNAL_TIMEOUT", "10")),
        )
    if _dev_mode():
        logger.warning("Using in-memory ledger: balances are lost on restart")
        return InMemoryLedgerService()
    raise ConfigurationError(
        "LEDGER_URL is required unless REWARDGUARD_DEV_MODE=true", setting="LEDGER_URL"
    )
