"""Unit tests for data models."""
from decimal import Decimal

import pytest
from pydantic import TypeAdapter, ValidationError

from clo_pipeline.core.exceptions import (
    AssetTransferError,
    InsufficientBalanceError,
    LoanStateError,
)
from clo_pipeline.core.models import (
    ActionResult,
    ActionStep,
    Asset,
    ContractAction,
    LifecycleCase,
    LoanConfig,
    LoanContract,
    LoanStatus,
    Phase,
    Role,
    RunConfig,
    SetupStep,
    Step,
    StepStatus,
    Wallet,
    WalletConfig,
    slugify,
)

from conftest import make_run_config, make_tranches

MONTH_MS = 2_629_743_000


def make_loan(**overrides) -> LoanContract:
    fields = dict(
        id="LOAN-001",
        loan_index=0,
        alias="Diamond Loan #1",
        originator="orig-jewelry",
        borrower="bor-alice",
        reserved_buyer=True,
        collateral=Asset(policy_id="p" * 56, asset_name="Diamond", quantity=1),
        principal=500_000_000,
        apr=600,
        frequency=12,
        installments=12,
        late_fee=10_000_000,
    )
    fields.update(overrides)
    loan = LoanContract(**fields)
    loan.reset_obligation()
    return loan


# =============================================================================
# Wallet Tests
# =============================================================================

class TestWallet:
    """Test balance and asset bookkeeping."""

    def test_debit_and_credit(self):
        wallet = Wallet(id="w", address="addr", balance=10_000_000)

        wallet.debit(4_000_000, "Alice")
        wallet.credit(1_000_000)

        assert wallet.balance == 7_000_000

    def test_overdraft_rejected_without_mutation(self):
        wallet = Wallet(id="w", address="addr", balance=3_000_000)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            wallet.debit(5_000_000, "Alice")

        assert exc_info.value.shortfall == 2_000_000
        assert wallet.balance == 3_000_000

    def test_balance_cannot_be_assigned_negative(self):
        wallet = Wallet(id="w", address="addr")
        with pytest.raises(ValidationError):
            wallet.balance = -1

    def test_add_asset_merges_same_policy(self):
        wallet = Wallet(id="w", address="addr")
        wallet.add_asset(Asset(policy_id="a", asset_name="Diamond", quantity=1))
        wallet.add_asset(Asset(policy_id="a", asset_name="Diamond", quantity=2))
        wallet.add_asset(Asset(policy_id="b", asset_name="Diamond", quantity=5))

        assert len(wallet.assets) == 2
        assert wallet.asset_quantity("Diamond") == 8
        assert wallet.asset_quantity("Diamond", "a") == 3

    def test_remove_asset(self):
        wallet = Wallet(id="w", address="addr")
        wallet.add_asset(Asset(policy_id="a", asset_name="Diamond", quantity=2))

        moved = wallet.remove_asset("Diamond", 2)

        assert moved.quantity == 2
        assert moved.policy_id == "a"
        assert wallet.assets == []

    def test_remove_more_than_held_is_all_or_nothing(self):
        wallet = Wallet(id="w", address="addr")
        wallet.add_asset(Asset(policy_id="a", asset_name="Diamond", quantity=2))

        with pytest.raises(AssetTransferError):
            wallet.remove_asset("Diamond", 3)

        assert wallet.asset_quantity("Diamond") == 2


# =============================================================================
# Loan Contract Tests
# =============================================================================

class TestLoanContract:
    """Test loan obligation and lifecycle state."""

    def test_obligation(self):
        loan = make_loan()

        assert loan.payment_amount == 43_030_000
        assert loan.total_obligation == 516_360_000
        assert loan.total_interest == 16_360_000
        assert loan.state.balance == loan.total_obligation
        assert loan.subtype == "Reserved"

    def test_zero_rate_payment(self):
        loan = make_loan(apr=0, principal=1_200_000_000)
        assert loan.payment_amount == 100_000_000
        assert loan.total_interest == 0

    def test_paid_off_exactly_when_balance_reaches_zero(self):
        loan = make_loan()
        loan.status = LoanStatus.RUNNING
        loan.state.is_active = True
        loan.state.start_time = 0

        for _ in range(11):
            loan.apply_payment(loan.payment_amount, 0)
            assert not loan.state.is_paid_off

        loan.apply_payment(loan.payment_amount, 0)

        assert loan.state.balance == 0
        assert loan.state.is_paid_off
        assert not loan.state.is_active
        assert loan.status == LoanStatus.PASSED
        assert loan.state.accumulated == loan.total_obligation

    def test_paid_off_loan_rejects_further_activity(self):
        loan = make_loan(installments=1)
        loan.state.is_active = True
        loan.apply_payment(loan.payment_amount, 0)

        with pytest.raises(LoanStateError, match="paid off"):
            loan.require_active("pay")
        with pytest.raises(LoanStateError):
            loan.require_pending("accept")

    def test_pending_loan_is_not_active(self):
        with pytest.raises(LoanStateError, match="not active"):
            make_loan().require_active("pay")

    def test_late_and_default_windows(self):
        loan = make_loan()
        loan.state.is_active = True
        loan.state.start_time = 0
        loan.state.payment_count = 1  # next installment due after one term

        assert loan.next_due_time() == MONTH_MS
        assert not loan.is_payment_late(MONTH_MS)
        assert not loan.is_payment_late(MONTH_MS + MONTH_MS // 10)
        assert loan.is_payment_late(MONTH_MS + MONTH_MS // 10 + 1)

        assert not loan.is_payment_defaulted(2 * MONTH_MS)
        assert loan.is_payment_defaulted(2 * MONTH_MS + 1)
        assert not loan.is_payment_defaulted(2 * MONTH_MS + 1, grace_periods=2)

    def test_unaccepted_loan_is_never_late(self):
        loan = make_loan()
        assert loan.next_due_time() is None
        assert not loan.is_payment_late(10 * MONTH_MS)

    def test_principal_must_be_positive(self):
        with pytest.raises(ValidationError):
            make_loan(principal=0)


# =============================================================================
# Step and Result Tests
# =============================================================================

class TestSteps:
    """Test the step variants and results."""

    def test_discriminated_parse(self):
        adapter = TypeAdapter(Step)
        step = adapter.validate_python({
            "kind": "action",
            "id": "4.1",
            "name": "Accept",
            "loan_index": 0,
            "action": "accept",
        })

        assert isinstance(step, ActionStep)
        assert step.action == ContractAction.ACCEPT

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError):
            TypeAdapter(Step).validate_python({"kind": "bogus", "id": "x", "name": "x"})

    def test_phase_reset_respects_disabled(self):
        phase = Phase(id=1, name="Setup", steps=[
            SetupStep(id="1.1", name="Create", operation="create_wallets", status=StepStatus.PASSED),
            SetupStep(id="1.2", name="Fund", operation="fund_wallets", disabled=True),
        ])
        phase.status = StepStatus.FAILED

        phase.reset()

        assert phase.status == StepStatus.PENDING
        assert phase.steps[0].status == StepStatus.PENDING
        assert phase.steps[1].status == StepStatus.DISABLED

    def test_action_result_helpers(self):
        assert ActionResult.ok("done").success
        assert not ActionResult.fail("nope", error="LoanStateError").success
        skipped = ActionResult.skip("later")
        assert skipped.success and skipped.skipped


# =============================================================================
# Run Configuration Tests
# =============================================================================

class TestRunConfig:
    """Test run configuration parsing and cross-field validation."""

    def test_camel_case_json(self):
        config = RunConfig.model_validate_json("""
        {
            "network": "preview",
            "wallets": [{"name": "Alice Doe", "role": "Borrower", "initialFunding": 5}],
            "loans": [{"borrowerId": null, "originatorId": "orig-x", "asset": "Home",
                       "quantity": 1, "principal": 100, "apr": 6.5, "termMonths": 12,
                       "reservedBuyer": false, "lifecycleCase": null}]
        }
        """)

        assert config.network == "preview"
        assert config.wallets[0].initial_funding == Decimal("5")
        loan = config.loans[0]
        assert loan.apr_basis_points == 650
        assert loan.installments == 12
        assert loan.lifecycle_case == LifecycleCase.ACCEPT

    def test_wallet_id_derivation(self):
        assert WalletConfig(name="Alice Doe", role=Role.BORROWER).wallet_id == "bor-alice-doe"
        assert WalletConfig(name="X", role=Role.ANALYST, id="analyst").wallet_id == "analyst"
        assert slugify("  Super Fast Cargo!! ") == "super-fast-cargo"

    def test_valid_configuration(self):
        assert make_run_config().validate_run() == []

    def test_missing_roles(self):
        config = RunConfig(wallets=[WalletConfig(name="A", role=Role.ANALYST)])
        issues = config.validate_run()

        assert any("Originator" in issue for issue in issues)
        assert any("Borrower" in issue for issue in issues)

    def test_no_wallets(self):
        assert "At least one wallet is required" in RunConfig().validate_run()

    def test_unknown_originator(self):
        config = make_run_config()
        config.loans[0].originator_id = "orig-nobody"
        assert any("unknown originator" in issue for issue in config.validate_run())

    def test_borrower_with_wrong_role(self):
        config = make_run_config()
        config.loans[0].borrower_id = "analyst"
        assert any("is a Analyst" in issue for issue in config.validate_run())

    def test_escrow_exceeding_minted_quantity(self):
        config = make_run_config()
        config.loans[0].quantity = 3
        assert any("mints only 2" in issue for issue in config.validate_run())

    def test_tranche_allocation_must_sum_to_hundred(self):
        config = make_run_config(tranches=make_tranches(60, 25, 10))
        assert any("sum to 100%" in issue for issue in config.validate_run())

    def test_loan_config_rejects_bad_shapes(self):
        with pytest.raises(ValidationError):
            LoanConfig(originator_id="o", asset="Home", quantity=0, principal=Decimal("1"), term_months=1)
