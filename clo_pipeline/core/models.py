"""Data models for the loan / CLO pipeline.

This module defines the structures shared by every phase of a run:
- Participants: identities, their wallets and asset holdings
- Contracts: asset-backed loans and the CLOs that bundle them
- Run control: phases, the step variants they are made of, step results
- Run configuration: wallets, loans and tranches to simulate

Lovelace amounts are integers; display (ADA) amounts are Decimal.
Simulated timestamps are integer milliseconds from the ledger clock.
"""

import re
from datetime import datetime
from decimal import ROUND_CEILING, Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from clo_pipeline.core.exceptions import (
    AssetTransferError,
    InsufficientBalanceError,
    LoanStateError,
)
from clo_pipeline.finance.amortization import (
    late_window,
    nominal_payment,
    term_length_for_frequency,
)
from clo_pipeline.finance.fees import to_ada, to_lovelace
from clo_pipeline.finance.waterfall import allocation_issues


# =============================================================================
# Enums
# =============================================================================

class Role(str, Enum):
    """Participant role. Immutable once an identity is created."""
    ORIGINATOR = "Originator"     # Owns assets, originates loans
    BORROWER = "Borrower"         # Accepts loans and pays installments
    AGENT = "Agent"
    ANALYST = "Analyst"           # Bundles loans into CLOs
    INVESTOR = "Investor"         # Receives tranche tokens


class StepStatus(str, Enum):
    """Status of a phase or a step."""
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    DISABLED = "disabled"


class LoanStatus(str, Enum):
    """Loan contract status."""
    PENDING = "pending"           # Created, awaiting acceptance
    RUNNING = "running"           # Accepted, payments in progress
    PASSED = "passed"             # Paid off
    FAILED = "failed"             # Cancelled or defaulted


class CLOStatus(str, Enum):
    """CLO contract status."""
    DEPLOYED = "deployed"
    DISTRIBUTED = "distributed"


class RunState(str, Enum):
    """Global run state of the pipeline engine."""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"             # Halted at a breakpoint, resumable
    COMPLETE = "complete"
    FAILED = "failed"


class LogLevel(str, Enum):
    """Progress narration level."""
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"
    PHASE = "phase"


class ContractAction(str, Enum):
    """Actions available against an existing loan contract."""
    ACCEPT = "accept"
    PAY = "pay"
    COLLECT = "collect"
    COMPLETE = "complete"
    CANCEL = "cancel"
    DEFAULT = "default"
    UPDATE = "update"


class LifecycleCase(str, Enum):
    """Scenario driven for a loan during contract execution."""
    ACCEPT = "accept"             # Accept only; loan stays active for bundling
    CANCEL = "T1"
    DEFAULT = "T2"
    ZERO_RATE_PAYOFF = "T3"
    NOMINAL_PAYOFF = "T4"
    LATE_FEE = "T5"
    RESERVATION_GUARD = "T6"
    UPDATE_THEN_ACCEPT = "T7"


ROLE_ID_PREFIX = {
    Role.ORIGINATOR: "orig",
    Role.BORROWER: "bor",
    Role.AGENT: "agent",
    Role.ANALYST: "analyst",
    Role.INVESTOR: "inv",
}


def slugify(name: str) -> str:
    """Lowercase slug of a display name (``Alice Doe`` -> ``alice-doe``)."""
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


# =============================================================================
# Participant Models
# =============================================================================

class Asset(BaseModel):
    """A quantity of one native asset."""
    policy_id: str = Field(..., description="Minting policy id")
    asset_name: str = Field(..., description="Asset name")
    quantity: int = Field(..., ge=0, description="Quantity held")

    def matches(self, asset_name: str, policy_id: Optional[str] = None) -> bool:
        if self.asset_name != asset_name:
            return False
        return policy_id is None or self.policy_id == policy_id


class Wallet(BaseModel):
    """Wallet owned by exactly one identity.

    Balance never goes negative: every debit is checked before it is applied.
    """
    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(..., description="Wallet id")
    address: str = Field(..., description="Ledger address")
    balance: int = Field(default=0, ge=0, description="Balance in lovelace")
    assets: List[Asset] = Field(default_factory=list, description="Native assets held")

    def debit(self, amount: int, owner: str) -> None:
        if amount < 0:
            raise ValueError(f"Debit amount must be non-negative, got {amount}")
        if amount > self.balance:
            raise InsufficientBalanceError(owner, amount, self.balance)
        self.balance -= amount

    def credit(self, amount: int) -> None:
        if amount < 0:
            raise ValueError(f"Credit amount must be non-negative, got {amount}")
        self.balance += amount

    def find_asset(self, asset_name: str, policy_id: Optional[str] = None) -> Optional[Asset]:
        for asset in self.assets:
            if asset.matches(asset_name, policy_id):
                return asset
        return None

    def asset_quantity(self, asset_name: str, policy_id: Optional[str] = None) -> int:
        return sum(a.quantity for a in self.assets if a.matches(asset_name, policy_id))

    def add_asset(self, asset: Asset) -> None:
        held = self.find_asset(asset.asset_name, asset.policy_id)
        if held is not None:
            held.quantity += asset.quantity
        else:
            self.assets.append(asset.model_copy())

    def remove_asset(self, asset_name: str, quantity: int, policy_id: Optional[str] = None) -> Asset:
        """Take ``quantity`` of an asset out of the wallet.

        Raises AssetTransferError, leaving the wallet untouched, when the
        wallet holds less than requested.
        """
        if quantity <= 0:
            raise AssetTransferError(f"Transfer quantity must be positive, got {quantity}")
        held = self.find_asset(asset_name, policy_id)
        if held is None or held.quantity < quantity:
            available = held.quantity if held else 0
            raise AssetTransferError(
                f"Wallet {self.id} holds {available} {asset_name}, cannot transfer {quantity}"
            )
        held.quantity -= quantity
        if held.quantity == 0:
            self.assets.remove(held)
        return Asset(policy_id=held.policy_id, asset_name=asset_name, quantity=quantity)


class Identity(BaseModel):
    """A simulated participant.

    Attributes:
        id: Stable slug unique within a run (e.g. ``bor-alice``)
        name: Display name
        role: Participant role
        address: Primary ledger address
        required_balance: Lovelace the participant must hold after funding
        wallets: Owned wallets, the first is the primary one
    """
    id: str = Field(..., description="Identity slug")
    name: str = Field(..., description="Display name")
    role: Role = Field(..., description="Participant role")
    address: str = Field(..., description="Primary address")
    required_balance: int = Field(default=0, ge=0, description="Required funding (lovelace)")
    wallets: List[Wallet] = Field(default_factory=list, description="Owned wallets")

    @property
    def wallet(self) -> Wallet:
        return self.wallets[0]

    @property
    def balance(self) -> int:
        return sum(w.balance for w in self.wallets)

    def reset(self) -> None:
        """Clear balances and holdings back to their pre-funding state."""
        for wallet in self.wallets:
            wallet.balance = 0
            wallet.assets = []


class WalletHandle(BaseModel):
    """Wallet record as known to the external gateway."""
    identity_id: str
    name: str
    role: Role
    address: str = ""
    required_balance: int = Field(default=0, ge=0)


class MintReceipt(BaseModel):
    """Result of minting an asset through the gateway."""
    policy_id: str
    asset_name: str
    quantity: int
    tx_hash: str


# =============================================================================
# Contract Models
# =============================================================================

class LoanState(BaseModel):
    """Mutable lifecycle state of a loan contract.

    ``balance`` is the outstanding obligation (principal plus scheduled
    interest). ``accumulated`` holds payments sitting in the contract until
    the originator collects them.
    """
    balance: int = Field(default=0, description="Outstanding obligation (lovelace)")
    is_active: bool = False
    is_paid_off: bool = False
    is_defaulted: bool = False
    is_cancelled: bool = False
    is_completed: bool = False
    start_time: Optional[int] = Field(default=None, description="Acceptance time (ms)")
    payment_count: int = Field(default=0, ge=0)
    last_payment_time: Optional[int] = None
    total_paid: int = Field(default=0, ge=0)
    accumulated: int = Field(default=0, ge=0, description="Uncollected payments")
    collected: int = Field(default=0, ge=0)
    late_fees_paid: int = Field(default=0, ge=0)
    fees_paid: int = Field(default=0, ge=0, description="Transfer fees paid")
    seller_fee_owed: int = Field(default=0, ge=0, description="Deferred seller fee")
    collateral_released: bool = False


class LoanContract(BaseModel):
    """Asset-backed loan contract.

    The collateral is escrowed in the contract from creation until the loan
    is completed (to the borrower) or cancelled / defaulted (back to the
    originator). Paid-off, defaulted and cancelled loans are terminal.
    """
    id: str = Field(..., description="Contract id")
    loan_index: int = Field(..., ge=0, description="Position in the run configuration")
    alias: str = Field(..., description="Human readable name")
    originator: str = Field(..., description="Originator identity id")
    borrower: Optional[str] = Field(default=None, description="Bound borrower identity id")
    reserved_buyer: bool = Field(default=False, description="Only the bound borrower may accept")
    collateral: Asset = Field(..., description="Escrowed collateral")

    principal: int = Field(..., gt=0, description="Principal (lovelace)")
    apr: int = Field(..., ge=0, description="APR in basis points")
    frequency: int = Field(default=12, gt=0, description="Payments per year")
    installments: int = Field(..., gt=0, description="Number of payments")
    late_fee: int = Field(default=0, ge=0, description="Late fee (lovelace)")
    transfer_fee_buyer_percent: int = Field(default=50, ge=0, le=100)
    defer_fee: bool = Field(default=False, description="Seller fee deferred to first collection")
    lifecycle_case: LifecycleCase = Field(default=LifecycleCase.ACCEPT)

    status: LoanStatus = Field(default=LoanStatus.PENDING)
    state: LoanState = Field(default_factory=LoanState)
    remote_id: Optional[str] = Field(default=None, description="Persisted record id")

    @property
    def subtype(self) -> str:
        return "Reserved" if self.reserved_buyer else "Open-Market"

    @property
    def principal_ada(self) -> Decimal:
        return to_ada(self.principal)

    @property
    def payment_amount(self) -> int:
        """Installment in lovelace, rounded up to a whole lovelace."""
        payment = nominal_payment(self.principal_ada, self.apr, self.frequency, self.installments)
        return to_lovelace(payment, rounding=ROUND_CEILING)

    @property
    def total_obligation(self) -> int:
        return self.payment_amount * self.installments

    @property
    def total_interest(self) -> int:
        return self.total_obligation - self.principal

    @property
    def term_length(self) -> int:
        return term_length_for_frequency(self.frequency)

    @property
    def remaining_installments(self) -> int:
        return max(0, self.installments - self.state.payment_count)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_paid_off or self.state.is_defaulted or self.state.is_cancelled

    def next_due_time(self) -> Optional[int]:
        """When the next installment falls due, or None if not accepted / paid off."""
        if self.state.start_time is None or self.state.is_paid_off:
            return None
        return self.state.start_time + self.state.payment_count * self.term_length

    def is_payment_late(self, now: int) -> bool:
        due = self.next_due_time()
        if due is None or not self.state.is_active:
            return False
        return now > due + late_window(self.term_length)

    def is_payment_defaulted(self, now: int, grace_periods: int = 1) -> bool:
        due = self.next_due_time()
        if due is None or not self.state.is_active:
            return False
        return now > due + grace_periods * self.term_length

    def reset_obligation(self) -> None:
        """Recompute the outstanding obligation from the current terms."""
        self.state.balance = self.total_obligation

    def require_pending(self, action: str) -> None:
        if self.status != LoanStatus.PENDING or self.is_terminal:
            raise LoanStateError(
                f"Cannot {action} loan {self.alias}: status is {self.status.value}, expected pending"
            )

    def require_active(self, action: str) -> None:
        if self.state.is_paid_off:
            raise LoanStateError(f"Cannot {action} loan {self.alias}: already paid off")
        if self.is_terminal or not self.state.is_active:
            raise LoanStateError(f"Cannot {action} loan {self.alias}: loan is not active")

    def apply_payment(self, amount: int, now: int) -> None:
        """Record an installment already debited from the buyer."""
        self.state.balance -= amount
        self.state.payment_count += 1
        self.state.total_paid += amount
        self.state.accumulated += amount
        self.state.last_payment_time = now
        if self.state.balance <= 0:
            self.state.is_paid_off = True
            self.state.is_active = False
            self.status = LoanStatus.PASSED


class Tranche(BaseModel):
    """One risk slice of a deployed CLO."""
    name: str
    allocation: Decimal = Field(..., ge=0, le=100, description="Share of pool value (%)")
    yield_modifier: int = Field(default=100, ge=0, description="Yield multiplier x100")
    token_quantity: int = Field(default=0, ge=0, description="Tranche tokens to issue")
    investor_id: Optional[str] = None
    token_policy_id: Optional[str] = None
    distributed: bool = False


class CLOContract(BaseModel):
    """Collateralized loan obligation built from the active loans of a run.

    ``total_value`` is a snapshot of the constituent principals at creation
    and is never recomputed.
    """
    id: str
    name: str
    manager: str = Field(..., description="Manager identity id")
    manager_policy_id: Optional[str] = None
    tranches: List[Tranche] = Field(default_factory=list)
    total_value: int = Field(..., ge=0, description="Pool principal (lovelace)")
    collateral_count: int = Field(..., ge=0)
    collateral_ids: List[str] = Field(default_factory=list)
    status: CLOStatus = CLOStatus.DEPLOYED
    created_at: Optional[int] = None
    remote_id: Optional[str] = None


# =============================================================================
# Step Variants
# =============================================================================

class StepBase(BaseModel):
    """Fields shared by every step kind."""
    id: str
    name: str
    status: StepStatus = StepStatus.PENDING
    disabled: bool = False
    message: Optional[str] = None


class SetupStep(StepBase):
    kind: Literal["setup"] = "setup"
    operation: Literal["create_wallets", "fund_wallets"]


class MintStep(StepBase):
    kind: Literal["mint"] = "mint"
    originator_id: str
    asset_name: str
    quantity: int = Field(..., gt=0)


class LoanStep(StepBase):
    kind: Literal["loan"] = "loan"
    loan_index: int = Field(..., ge=0)


class ActionStep(StepBase):
    """Contract action against the loan created from ``loan_index``.

    ``timing_period`` counts whole terms of the loan acted on from the start
    of the run. ``expect_failure`` marks a guard step: it passes only when
    the action is rejected, and with ``expected_error`` set only when the
    rejection is that exception class.
    """
    kind: Literal["action"] = "action"
    loan_index: int = Field(..., ge=0)
    action: ContractAction
    timing_period: int = Field(default=0, ge=0, description="Loan terms after the run started")
    borrower_id: Optional[str] = None
    amount: Optional[int] = Field(default=None, gt=0, description="Override amount (lovelace)")
    expect_failure: bool = False
    expected_error: Optional[str] = None
    update_terms: Dict[str, Any] = Field(default_factory=dict)


class CLOStep(StepBase):
    kind: Literal["clo"] = "clo"
    operation: Literal["bundle", "deploy", "distribute"]


Step = Annotated[
    Union[SetupStep, MintStep, LoanStep, ActionStep, CLOStep],
    Field(discriminator="kind"),
]

STEP_TYPES = (SetupStep, MintStep, LoanStep, ActionStep, CLOStep)


class Phase(BaseModel):
    """One of the five ordered pipeline phases."""
    id: int = Field(..., ge=1, le=5)
    name: str
    status: StepStatus = StepStatus.PENDING
    steps: List[Step] = Field(default_factory=list)

    def reset(self) -> None:
        self.status = StepStatus.PENDING
        for step in self.steps:
            step.status = StepStatus.DISABLED if step.disabled else StepStatus.PENDING
            step.message = None


# =============================================================================
# Step Results
# =============================================================================

class ActionResult(BaseModel):
    """Outcome of a single step.

    Attributes:
        success: True if the step achieved its purpose
        message: Human readable outcome
        data: Step specific output (amounts, ids, shortfalls)
        error: Exception class name when the step failed
        skipped: True if the step was skipped rather than executed
        warnings: Non-fatal problems met along the way
    """
    success: bool
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    skipped: bool = False
    warnings: List[str] = Field(default_factory=list)

    @classmethod
    def ok(cls, message: str, **kwargs) -> "ActionResult":
        return cls(success=True, message=message, **kwargs)

    @classmethod
    def fail(cls, message: str, **kwargs) -> "ActionResult":
        return cls(success=False, message=message, **kwargs)

    @classmethod
    def skip(cls, message: str, **kwargs) -> "ActionResult":
        return cls(success=True, message=message, skipped=True, **kwargs)


# =============================================================================
# Run Configuration
# =============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AssetConfig(_CamelModel):
    name: str
    quantity: int = Field(..., gt=0)


class WalletConfig(_CamelModel):
    """Participant to create during setup.

    ``initial_funding`` is the required balance in ADA; the role default from
    settings applies when it is left out.
    """
    name: str
    role: Role
    initial_funding: Optional[Decimal] = Field(default=None, ge=0)
    assets: List[AssetConfig] = Field(default_factory=list)
    id: Optional[str] = None

    @property
    def wallet_id(self) -> str:
        if self.id:
            return self.id
        return f"{ROLE_ID_PREFIX[self.role]}-{slugify(self.name)}"


class LoanConfig(_CamelModel):
    """Loan to originate. ``apr`` is a percentage (6 = 600 basis points)."""
    borrower_id: Optional[str] = None
    originator_id: str
    asset: str
    quantity: int = Field(..., gt=0)
    principal: Decimal = Field(..., gt=0, description="Principal (ADA)")
    apr: Decimal = Field(default=Decimal("0"), ge=0, description="APR (%)")
    frequency: Optional[int] = Field(default=None, gt=0)
    term_months: int = Field(..., gt=0, description="Number of installments")
    reserved_buyer: bool = False
    lifecycle_case: LifecycleCase = LifecycleCase.ACCEPT
    late_fee: Optional[Decimal] = Field(default=None, ge=0, description="Late fee (ADA)")
    transfer_fee_buyer_percent: Optional[int] = Field(default=None, ge=0, le=100)
    defer_fee: bool = False

    @field_validator("lifecycle_case", mode="before")
    @classmethod
    def default_lifecycle(cls, v: Any) -> Any:
        return LifecycleCase.ACCEPT if v is None else v

    @property
    def apr_basis_points(self) -> int:
        return int((self.apr * 100).to_integral_value())

    @property
    def installments(self) -> int:
        return self.term_months


class TrancheConfig(_CamelModel):
    """Tranche definition; ``yield_modifier`` is a multiplier x100 (80 = 0.8x)."""
    name: str
    allocation: Decimal = Field(..., description="Share of pool value (%)")
    yield_modifier: int = Field(default=100)
    investor_id: Optional[str] = None


class CLOConfig(_CamelModel):
    name: str = "MintMatrix CLO Series 1"
    tranches: List[TrancheConfig] = Field(default_factory=list)


class RunConfig(_CamelModel):
    """Complete input of one pipeline run."""
    network: Literal["emulator", "preview"] = "emulator"
    wallets: List[WalletConfig] = Field(default_factory=list)
    loans: List[LoanConfig] = Field(default_factory=list)
    clo: Optional[CLOConfig] = None

    def find_wallet(self, ref: str) -> Optional[WalletConfig]:
        """Wallet config by id slug or display name."""
        for wallet in self.wallets:
            if wallet.wallet_id == ref or wallet.name == ref:
                return wallet
        return None

    def validate_run(self) -> List[str]:
        """Cross-field validation; returns every issue found, empty when valid."""
        issues = []

        if not self.wallets:
            issues.append("At least one wallet is required")

        roles = {w.role for w in self.wallets}
        if Role.ORIGINATOR not in roles:
            issues.append("At least one Originator wallet is required")
        if Role.BORROWER not in roles:
            issues.append("At least one Borrower wallet is required")

        ids = [w.wallet_id for w in self.wallets]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            issues.append(f"Duplicate wallet ids: {', '.join(duplicates)}")

        requested: Dict[tuple, int] = {}
        for index, loan in enumerate(self.loans):
            label = f"Loan {index + 1}"
            originator = self.find_wallet(loan.originator_id)
            if originator is None:
                issues.append(f"{label} references unknown originator: {loan.originator_id}")
            elif originator.role != Role.ORIGINATOR:
                issues.append(f"{label} originator {loan.originator_id} is a {originator.role.value}")
            else:
                key = (originator.wallet_id, loan.asset)
                requested[key] = requested.get(key, 0) + loan.quantity

            if loan.borrower_id is not None:
                borrower = self.find_wallet(loan.borrower_id)
                if borrower is None:
                    issues.append(f"{label} references unknown borrower: {loan.borrower_id}")
                elif borrower.role != Role.BORROWER:
                    issues.append(f"{label} borrower {loan.borrower_id} is a {borrower.role.value}")
            elif loan.reserved_buyer:
                issues.append(f"{label} is reserved but names no borrower")

        for (wallet_id, asset_name), quantity in requested.items():
            wallet = self.find_wallet(wallet_id)
            minted = sum(a.quantity for a in wallet.assets if a.name == asset_name)
            if quantity > minted:
                issues.append(
                    f"Loans escrow {quantity} {asset_name} from {wallet_id}, which mints only {minted}"
                )

        if self.clo is not None:
            issues.extend(allocation_issues(self.clo.tranches))
            for tranche in self.clo.tranches:
                if tranche.investor_id and self.find_wallet(tranche.investor_id) is None:
                    issues.append(
                        f"Tranche {tranche.name} references unknown investor: {tranche.investor_id}"
                    )

        return issues


# =============================================================================
# Run Snapshot
# =============================================================================

class RunSnapshot(BaseModel):
    """Full state of a run, persisted as a checkpoint after each phase."""
    run_id: str
    state: RunState
    network: str
    current_phase: int = Field(default=0, ge=0, description="Phases completed")
    period: int = 0
    now: int = 0
    phases: List[Phase] = Field(default_factory=list)
    identities: List[Identity] = Field(default_factory=list)
    loan_contracts: List[LoanContract] = Field(default_factory=list)
    clo_contracts: List[CLOContract] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
