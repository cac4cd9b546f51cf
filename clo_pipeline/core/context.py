"""Per-run state: the entity registry, identity index and run context.

A ``RunContext`` is built for each engine and passed explicitly to every
phase and step. Nothing here is module-level, so independent engines never
share state.
"""
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog

from clo_pipeline.core.config import PipelineSettings, settings as default_settings
from clo_pipeline.core.exceptions import GatewayFailure, MissingIdentityError
from clo_pipeline.core.models import (
    CLOContract,
    Identity,
    LoanContract,
    LoanStatus,
    LogLevel,
    Role,
    RunConfig,
)
from clo_pipeline.finance.amortization import format_duration

logger = structlog.get_logger(__name__)


class IdentityIndex:
    """Bidirectional lookup of identities by id, name, address and role."""

    def __init__(self, identities: Optional[List[Identity]] = None):
        self.by_id: Dict[str, Identity] = {}
        self.by_name: Dict[str, Identity] = {}
        self.by_address: Dict[str, Identity] = {}
        self.by_role: Dict[Role, List[Identity]] = {}
        for identity in identities or []:
            self.add(identity)

    def add(self, identity: Identity) -> None:
        if identity.id in self.by_id:
            raise ValueError(f"Duplicate identity id: {identity.id}")
        self.by_id[identity.id] = identity
        self.by_name[identity.name] = identity
        self.by_address[identity.address] = identity
        self.by_role.setdefault(identity.role, []).append(identity)

    def get(self, ref: Optional[str]) -> Optional[Identity]:
        """Identity by id, display name or address."""
        if ref is None:
            return None
        return self.by_id.get(ref) or self.by_name.get(ref) or self.by_address.get(ref)

    def resolve(self, ref: Optional[str], role: Optional[Role] = None) -> Identity:
        """Like ``get`` but raising MissingIdentityError when nothing matches."""
        identity = self.get(ref)
        if identity is None:
            raise MissingIdentityError(f"Identity not found: {ref}")
        if role is not None and identity.role != role:
            raise MissingIdentityError(
                f"Identity {identity.id} is a {identity.role.value}, expected {role.value}"
            )
        return identity

    def with_role(self, role: Role) -> List[Identity]:
        return list(self.by_role.get(role, []))

    def first_with_role(self, role: Role) -> Optional[Identity]:
        members = self.by_role.get(role)
        return members[0] if members else None

    def name_of(self, identity_id: Optional[str]) -> str:
        identity = self.by_id.get(identity_id) if identity_id else None
        return identity.name if identity else str(identity_id)

    def __len__(self) -> int:
        return len(self.by_id)

    def __contains__(self, ref: str) -> bool:
        return self.get(ref) is not None


class EntityRegistry:
    """Plain mutable store of identities and contracts, written only by the engine."""

    def __init__(self):
        self.identities: List[Identity] = []
        self.loan_contracts: List[LoanContract] = []
        self.clo_contracts: List[CLOContract] = []
        self.index = IdentityIndex()

    def set_identities(self, identities: List[Identity]) -> None:
        self.identities = list(identities)
        self.index = IdentityIndex(self.identities)

    def reset(self) -> None:
        """Zero balances and holdings, drop every contract."""
        for identity in self.identities:
            identity.reset()
        self.loan_contracts = []
        self.clo_contracts = []

    def find_loan(self, loan_index: int) -> Optional[LoanContract]:
        for loan in self.loan_contracts:
            if loan.loan_index == loan_index:
                return loan
        return None

    def active_loans(self) -> List[LoanContract]:
        return [l for l in self.loan_contracts if l.state.is_active and not l.is_terminal]

    def running_borrowers(self) -> List[str]:
        return [
            l.borrower for l in self.loan_contracts
            if l.status == LoanStatus.RUNNING and l.borrower
        ]

    def total_asset_quantity(self, asset_name: str, policy_id: Optional[str] = None) -> int:
        """Quantity of an asset across all wallets plus contract escrow."""
        held = sum(
            wallet.asset_quantity(asset_name, policy_id)
            for identity in self.identities
            for wallet in identity.wallets
        )
        escrowed = sum(
            loan.collateral.quantity
            for loan in self.loan_contracts
            if not loan.state.collateral_released and loan.collateral.matches(asset_name, policy_id)
        )
        return held + escrowed


class RunContext:
    """
    Everything a step needs, passed explicitly.

    Attributes:
        config: Run configuration
        settings: Process settings
        gateway: External gateway
        registry: Entity registry owned by this run
        run_id: Unique id of this engine's run
        period: Furthest timing period reached, in terms of the loan acted on
        epoch: Ledger clock when the run started (ms); timing periods count from here
        now: Ledger clock at the last sync (ms)
        stats: Free-form run counters
        clo_bundle: Loan ids selected by the last bundle step
    """

    def __init__(
        self,
        config: RunConfig,
        gateway,
        settings: Optional[PipelineSettings] = None,
        registry: Optional[EntityRegistry] = None,
        run_id: Optional[str] = None,
    ):
        self.config = config
        self.gateway = gateway
        self.settings = settings or default_settings
        self.registry = registry or EntityRegistry()
        self.run_id = run_id or f"run-{uuid4().hex[:12]}"
        self.period = 0
        self.epoch = 0
        self.now = 0
        self.stats: Dict[str, Any] = {}
        self.clo_bundle: List[str] = []

    @property
    def index(self):
        return self.registry.index

    @property
    def is_emulator(self) -> bool:
        return self.config.network == "emulator"

    def reset(self) -> None:
        self.registry.reset()
        self.period = 0
        self.stats = {}
        self.clo_bundle = []

    async def log(self, message: str, level: str = LogLevel.INFO.value) -> None:
        """Narrate progress to structured logs and to the gateway."""
        logger.info("pipeline.progress", run_id=self.run_id, level=level, message=message)
        try:
            await self.gateway.log(message, level)
        except GatewayFailure as e:
            logger.warning("pipeline.progress_not_delivered", run_id=self.run_id, error=str(e))

    async def sync_clock(self) -> int:
        self.now = await self.gateway.current_time()
        return self.now

    async def start_clock(self) -> int:
        """Pin the run's time origin to the current ledger clock."""
        self.epoch = await self.sync_clock()
        return self.epoch

    async def advance_to(self, period: int, term_length: Optional[int] = None) -> None:
        """Move the ledger clock to ``period`` terms after the run started.

        ``term_length`` is one term of the loan being acted on (ms) and
        defaults to the ledger period. A target already behind the clock runs
        at the current time.
        """
        term_length = term_length or self.settings.network.period_ms
        target = self.epoch + period * term_length
        await self.sync_clock()
        if target > self.now:
            await self.log(f"  Advancing time to T+{period} ({format_duration(target - self.epoch)} in)")
            await self.gateway.advance_time_to(target)
        self.period = max(self.period, period)
        await self.sync_clock()

    def count(self, key: str, amount: int = 1) -> None:
        self.stats[key] = self.stats.get(key, 0) + amount
