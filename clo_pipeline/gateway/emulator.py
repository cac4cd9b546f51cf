"""In-memory ledger emulator gateway.

Simulates the wallet / ledger side of the pipeline (deterministic test
addresses, lovelace balances, a period-stepped clock, native asset minting)
and delegates contract and checkpoint persistence to ``Database``.

Network modes:
- emulator: wallets are funded to their required balance at creation and
  by ``fund_wallets``
- preview: wallets start empty and are funded externally; ``deposit``
  plays the faucet
"""
import hashlib
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from clo_pipeline.core.config import settings
from clo_pipeline.core.exceptions import GatewayFailure, GatewayUnavailable
from clo_pipeline.core.models import MintReceipt, RunSnapshot, WalletHandle
from clo_pipeline.gateway.base import ExternalGateway, with_retry
from clo_pipeline.storage.database import Database

logger = structlog.get_logger(__name__)

# Emulator clock origin (2024-01-01T00:00:00Z)
GENESIS_TIME_MS = 1_704_067_200_000


class EmulatorGateway(ExternalGateway):
    """
    Ledger emulator with optional database-backed persistence.

    Attributes:
        database: Persistence backend; records are kept in memory without one
        network: ``emulator`` or ``preview``
        period_ms: Clock advance per simulated period
        balances: Lovelace balance per address
        messages: Every (level, message) narrated through ``log``
        minted: Receipts of every mint, in order
    """

    def __init__(
        self,
        database: Optional[Database] = None,
        network: Optional[str] = None,
        period_ms: Optional[int] = None,
        start_time: int = GENESIS_TIME_MS,
    ):
        self.database = database
        self.network = network or settings.network.network
        self.period_ms = period_ms or settings.network.period_ms
        self.now = start_time

        self.balances: Dict[str, int] = {}
        self.messages: List[Tuple[str, str]] = []
        self.minted: List[MintReceipt] = []

        # Used when no database is attached
        self.wallets: List[WalletHandle] = []
        self.records: Dict[str, Dict[str, Any]] = {}
        self.checkpoints: List[Dict[str, Any]] = []

        self._tx_counter = 0

    @property
    def is_emulator(self) -> bool:
        return self.network == "emulator"

    # Wallet / ledger
    def derive_address(self, identity_id: str) -> str:
        """Deterministic test address for an identity."""
        digest = hashlib.sha224(f"{self.network}:{identity_id}".encode()).hexdigest()
        return f"addr_test1{digest[:50]}"

    async def create_wallets(self, specs: List[WalletHandle]) -> List[WalletHandle]:
        handles = []
        for spec in specs:
            handle = spec.model_copy(update={"address": self.derive_address(spec.identity_id)})
            if self.is_emulator:
                self.balances[handle.address] = handle.required_balance
            else:
                self.balances.setdefault(handle.address, 0)
            handles.append(handle)

        if self.database is not None:
            await self._call_database("save_wallets", self.database.save_wallets, handles,
                                      essential=True)
        else:
            self.wallets = list(handles)

        logger.info("gateway.wallets_created", count=len(handles), network=self.network)
        return handles

    async def fund_wallets(self, handles: List[WalletHandle]) -> None:
        if not self.is_emulator:
            logger.info("gateway.funding_external", count=len(handles), network=self.network)
            return

        for handle in handles:
            self.balances[handle.address] = handle.required_balance
        logger.info("gateway.wallets_funded", count=len(handles))

    async def list_wallets(self) -> List[WalletHandle]:
        if self.database is not None:
            return await self._call_database("get_wallets", self.database.get_wallets,
                                             essential=True)
        return list(self.wallets)

    async def query_balance(self, address: str) -> int:
        return self.balances.get(address, 0)

    def deposit(self, address: str, amount: int) -> None:
        """Credit an address from outside the pipeline (test faucet)."""
        if amount < 0:
            raise ValueError(f"Deposit amount must be non-negative, got {amount}")
        self.balances[address] = self.balances.get(address, 0) + amount
        logger.info("gateway.deposit", address=address, amount=amount)

    async def mint_asset(self, address: str, asset_name: str, quantity: int) -> MintReceipt:
        if quantity <= 0:
            raise GatewayFailure(f"Cannot mint {quantity} {asset_name}")

        policy_id = hashlib.sha224(f"policy:{address}:{asset_name}".encode()).hexdigest()
        receipt = MintReceipt(
            policy_id=policy_id,
            asset_name=asset_name,
            quantity=quantity,
            tx_hash=self._next_tx_hash(f"mint:{policy_id}:{quantity}"),
        )
        self.minted.append(receipt)
        logger.info("gateway.asset_minted", asset_name=asset_name, quantity=quantity,
                    policy_id=policy_id)
        return receipt

    async def advance_time(self, periods: int) -> None:
        if periods < 0:
            raise ValueError(f"Cannot move the clock backwards ({periods} periods)")
        self.now += periods * self.period_ms
        logger.debug("gateway.time_advanced", periods=periods, now=self.now)

    async def advance_time_to(self, timestamp: int) -> None:
        if timestamp < self.now:
            raise ValueError(f"Cannot move the clock backwards (now {self.now}, asked for {timestamp})")
        self.now = timestamp
        logger.debug("gateway.time_advanced", now=self.now)

    async def current_time(self) -> int:
        return self.now

    # Persistence
    async def persist_contract(self, record: Dict[str, Any]) -> str:
        if self.database is not None:
            return await self._call_database("save_contract", self.database.save_contract, record)

        remote_id = record.get("id") or f"record-{len(self.records) + 1}"
        self.records[remote_id] = dict(record)
        return remote_id

    async def update_contract_state(self, remote_id: str, patch: Dict[str, Any]) -> None:
        if self.database is not None:
            await self._call_database("update_contract", self.database.update_contract,
                                      remote_id, patch)
            return

        if remote_id not in self.records:
            raise GatewayFailure(f"Contract not found: {remote_id}", essential=False)
        self.records[remote_id].update(patch)

    async def save_checkpoint(self, snapshot: RunSnapshot) -> Optional[int]:
        payload = snapshot.model_dump(mode="json")
        if self.database is not None:
            return await self._call_database(
                "save_checkpoint",
                self.database.save_checkpoint,
                snapshot.run_id,
                snapshot.current_phase,
                snapshot.state.value,
                payload,
            )

        self.checkpoints.append(payload)
        return len(self.checkpoints)

    async def log(self, message: str, level: str = "info") -> None:
        self.messages.append((level, message))

    # Helpers
    def messages_at(self, level: str) -> List[str]:
        return [message for lvl, message in self.messages if lvl == level]

    def _next_tx_hash(self, payload: str) -> str:
        self._tx_counter += 1
        return hashlib.sha256(f"{self._tx_counter}:{payload}".encode()).hexdigest()

    @with_retry(retryable_exceptions=(GatewayUnavailable,))
    async def _call_database(self, operation: str, func, *args, essential: bool = False):
        """Run a database call, mapping storage errors onto gateway failures."""
        try:
            return await func(*args)
        except OperationalError as e:
            raise GatewayUnavailable(f"{operation} failed: {e}", essential=essential, cause=e) from e
        except (SQLAlchemyError, KeyError) as e:
            raise GatewayFailure(f"{operation} failed: {e}", essential=essential, cause=e) from e
