"""Phase 4: drive loan contracts through their lifecycle.

Every action checks all balances and holdings it needs before it mutates
anything, so a rejected action leaves wallets, escrow and loan state exactly
as they were.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from pydantic import ValidationError

from clo_pipeline.core.context import RunContext
from clo_pipeline.core.exceptions import (
    InsufficientBalanceError,
    InvalidTermsError,
    LoanStateError,
    ReservationViolation,
    StepSkipped,
)
from clo_pipeline.core.models import (
    ActionResult,
    ActionStep,
    ContractAction,
    Identity,
    LoanContract,
    LoanStatus,
    Role,
    RunConfig,
)
from clo_pipeline.finance.amortization import format_duration
from clo_pipeline.finance.fees import format_ada, to_lovelace, transfer_fees
from clo_pipeline.phases.base import BasePhase
from clo_pipeline.phases.scenarios import build_execution_steps

logger = structlog.get_logger(__name__)

UPDATABLE_TERMS = (
    "principal",
    "apr",
    "frequency",
    "installments",
    "late_fee",
    "transfer_fee_buyer_percent",
    "defer_fee",
    "borrower_id",
    "reserved_buyer",
)


class ContractExecutionPhase(BasePhase):
    """
    Contract actions against pending and running loans.

    Steps come from each loan's lifecycle scenario and are ordered by
    simulated time. Before each step the ledger clock is moved to the step's
    timing period measured in the term length of its own loan.
    """

    phase_id = 4
    name = "Contract Execution"
    step_types = (ActionStep,)

    def build_steps(self, config: RunConfig) -> List[ActionStep]:
        loans = self.settings.loans
        return build_execution_steps(config, loans.default_grace_periods, loans.frequency)

    async def execute(self, step: ActionStep, ctx: RunContext) -> ActionResult:
        loan = ctx.registry.find_loan(step.loan_index)
        if loan is None:
            raise LoanStateError(f"No loan contract was created for loan {step.loan_index + 1}")
        await ctx.advance_to(step.timing_period, loan.term_length)

        handlers = {
            ContractAction.ACCEPT: lambda: self.accept(ctx, loan, step.borrower_id),
            ContractAction.PAY: lambda: self.pay(ctx, loan, step.amount),
            ContractAction.COLLECT: lambda: self.collect(ctx, loan, step.amount),
            ContractAction.COMPLETE: lambda: self.complete(ctx, loan),
            ContractAction.CANCEL: lambda: self.cancel(ctx, loan),
            ContractAction.DEFAULT: lambda: self.claim_default(ctx, loan),
            ContractAction.UPDATE: lambda: self.update_terms(ctx, loan, step.update_terms),
        }
        result = await handlers[step.action]()

        if result.success and not result.skipped:
            patch = {
                "status": loan.status.value,
                "contract_data": loan.model_dump(mode="json", exclude={"state"}),
                "contract_datum": loan.state.model_dump(mode="json"),
            }
            await self.sync_contract(ctx, loan.remote_id, patch, result.warnings)
        return result

    # =========================================================================
    # Actions
    # =========================================================================

    async def accept(self, ctx: RunContext, loan: LoanContract, buyer_id: Optional[str] = None) -> ActionResult:
        """Bind the buyer, charge transfer fees and the first installment."""
        loan.require_pending("accept")
        buyer = self._select_buyer(ctx, loan, buyer_id)
        originator = ctx.index.resolve(loan.originator, Role.ORIGINATOR)

        defaults = self.settings.loans
        fees = transfer_fees(
            loan.principal_ada,
            loan.transfer_fee_buyer_percent,
            rate=defaults.transfer_fee_rate,
            min_ada=defaults.transfer_fee_min_ada,
            max_ada=defaults.transfer_fee_max_ada,
        )
        first_payment = min(loan.payment_amount, loan.state.balance)
        buyer_total = first_payment + fees.buyer
        seller_due = 0 if loan.defer_fee else fees.seller

        if buyer.wallet.balance < buyer_total:
            raise InsufficientBalanceError(buyer.name, buyer_total, buyer.wallet.balance)
        if originator.wallet.balance < seller_due:
            raise InsufficientBalanceError(originator.name, seller_due, originator.wallet.balance)

        buyer.wallet.debit(buyer_total, buyer.name)
        originator.wallet.debit(seller_due, originator.name)

        loan.borrower = buyer.id
        loan.status = LoanStatus.RUNNING
        loan.state.is_active = True
        loan.state.start_time = ctx.now
        loan.state.fees_paid = fees.buyer + seller_due
        loan.state.seller_fee_owed = fees.seller - seller_due
        loan.apply_payment(first_payment, ctx.now)
        ctx.count("fees_collected", fees.buyer + seller_due)

        await ctx.log(
            f"  ✓ {buyer.name} accepted {loan.alias}: paid {format_ada(first_payment)} ADA "
            f"+ {format_ada(fees.buyer)} ADA fee",
            "success",
        )
        logger.info("execution.accepted", loan_id=loan.id, buyer=buyer.id,
                    first_payment=first_payment, buyer_fee=fees.buyer, seller_fee=fees.seller,
                    deferred=loan.defer_fee)
        return ActionResult.ok(
            f"{buyer.name} accepted {loan.alias}",
            data={
                "borrower": buyer.id,
                "first_payment": first_payment,
                "buyer_fee": fees.buyer,
                "seller_fee": fees.seller,
                "balance": loan.state.balance,
            },
        )

    async def pay(self, ctx: RunContext, loan: LoanContract, amount: Optional[int] = None) -> ActionResult:
        """Pay one installment, plus the late fee when past the late window."""
        loan.require_active("pay")
        buyer = ctx.index.resolve(loan.borrower, Role.BORROWER)

        installment = min(amount or loan.payment_amount, loan.state.balance)
        late = loan.is_payment_late(ctx.now)
        late_fee = loan.late_fee if late else 0
        total = installment + late_fee

        buyer.wallet.debit(total, buyer.name)
        loan.apply_payment(installment, ctx.now)
        if late_fee:
            loan.state.late_fees_paid += late_fee
            loan.state.accumulated += late_fee

        suffix = f" (incl. {format_ada(late_fee)} ADA late fee)" if late_fee else ""
        await ctx.log(
            f"  ✓ {buyer.name} paid {format_ada(total)} ADA on {loan.alias}{suffix}, "
            f"{format_ada(max(loan.state.balance, 0))} ADA remaining",
            "success",
        )
        if loan.state.is_paid_off:
            await ctx.log(f"  ✓ {loan.alias} paid off after {loan.state.payment_count} payments", "success")

        logger.info("execution.paid", loan_id=loan.id, amount=installment, late_fee=late_fee,
                    balance=loan.state.balance, payment_count=loan.state.payment_count)
        return ActionResult.ok(
            f"Payment {loan.state.payment_count}/{loan.installments} on {loan.alias}",
            data={
                "amount": installment,
                "late_fee": late_fee,
                "balance": loan.state.balance,
                "paid_off": loan.state.is_paid_off,
            },
        )

    async def collect(self, ctx: RunContext, loan: LoanContract, amount: Optional[int] = None) -> ActionResult:
        """Move accumulated payments to the originator, settling a deferred seller fee first."""
        if loan.state.start_time is None:
            raise LoanStateError(f"Cannot collect on loan {loan.alias}: it was never accepted")
        originator = ctx.index.resolve(loan.originator, Role.ORIGINATOR)

        available = loan.state.accumulated
        if not amount and available == 0:
            await ctx.log(f"  ⚠ Nothing to collect on {loan.alias}", "warning")
            return ActionResult.ok(
                f"Nothing to collect on {loan.alias}",
                data={"collected": 0},
                warnings=[f"No payments accumulated in {loan.alias}"],
            )

        amount = amount or available
        if amount > available:
            raise InsufficientBalanceError(f"{loan.alias} contract", amount, available)

        fee = min(loan.state.seller_fee_owed, amount)
        net = amount - fee

        loan.state.accumulated -= amount
        loan.state.collected += amount
        loan.state.seller_fee_owed -= fee
        loan.state.fees_paid += fee
        originator.wallet.credit(net)
        if fee:
            ctx.count("fees_collected", fee)

        fee_note = f" after {format_ada(fee)} ADA deferred fee" if fee else ""
        await ctx.log(
            f"  ✓ {originator.name} collected {format_ada(net)} ADA from {loan.alias}{fee_note}",
            "success",
        )
        logger.info("execution.collected", loan_id=loan.id, amount=amount, fee=fee, net=net)
        return ActionResult.ok(
            f"Collected {format_ada(net)} ADA from {loan.alias}",
            data={"collected": amount, "fee": fee, "net": net},
        )

    async def complete(self, ctx: RunContext, loan: LoanContract) -> ActionResult:
        """Release the escrowed collateral of a paid-off loan to its borrower."""
        if not loan.state.is_paid_off:
            raise LoanStateError(
                f"Cannot complete loan {loan.alias}: {format_ada(loan.state.balance)} ADA still owed"
            )
        if loan.state.is_completed:
            raise LoanStateError(f"Loan {loan.alias} is already completed")

        borrower = ctx.index.resolve(loan.borrower, Role.BORROWER)
        borrower.wallet.add_asset(loan.collateral)
        loan.state.collateral_released = True
        loan.state.is_completed = True

        await ctx.log(
            f"  ✓ {loan.collateral.quantity} {loan.collateral.asset_name} released to {borrower.name}",
            "success",
        )
        logger.info("execution.completed", loan_id=loan.id, borrower=borrower.id)
        return ActionResult.ok(
            f"Completed {loan.alias}",
            data={"borrower": borrower.id, "collateral": loan.collateral.model_dump()},
        )

    async def cancel(self, ctx: RunContext, loan: LoanContract) -> ActionResult:
        """Withdraw a pending loan; the collateral returns to the originator."""
        loan.require_pending("cancel")
        originator = self._release_to_originator(ctx, loan)
        loan.state.is_cancelled = True
        loan.status = LoanStatus.FAILED

        await ctx.log(f"  ✓ {originator.name} cancelled {loan.alias}", "success")
        logger.info("execution.cancelled", loan_id=loan.id)
        return ActionResult.ok(f"Cancelled {loan.alias}", data={"originator": originator.id})

    async def claim_default(self, ctx: RunContext, loan: LoanContract) -> ActionResult:
        """Seize the collateral of a loan whose next installment is overdue past the grace periods."""
        loan.require_active("claim default on")
        grace = self.settings.loans.default_grace_periods
        if not loan.is_payment_defaulted(ctx.now, grace):
            due = loan.next_due_time()
            raise LoanStateError(
                f"Loan {loan.alias} is not in default: next payment due in "
                f"{format_duration(max(due - ctx.now, 0))}, grace is {grace} term(s)"
            )

        outstanding = loan.state.balance
        originator = self._release_to_originator(ctx, loan)
        loan.state.is_defaulted = True
        loan.state.is_active = False
        loan.status = LoanStatus.FAILED

        await ctx.log(
            f"  ✓ {originator.name} claimed default on {loan.alias}, "
            f"{format_ada(outstanding)} ADA unpaid",
            "success",
        )
        logger.info("execution.defaulted", loan_id=loan.id, outstanding=outstanding)
        return ActionResult.ok(
            f"Claimed default on {loan.alias}",
            data={"outstanding": outstanding, "payments_made": loan.state.payment_count},
        )

    async def update_terms(self, ctx: RunContext, loan: LoanContract, terms: Dict[str, Any]) -> ActionResult:
        """Replace terms of a pending loan and recompute its obligation.

        Amounts are display units as in the run configuration: ``principal``
        and ``late_fee`` in ADA, ``apr`` in percent.
        """
        loan.require_pending("update")
        unknown = sorted(set(terms) - set(UPDATABLE_TERMS))
        if unknown:
            raise InvalidTermsError(f"Unknown loan terms: {', '.join(unknown)}")

        patch = self._terms_patch(ctx, terms)
        candidate = loan.model_dump()
        candidate.update(patch)
        try:
            updated = LoanContract.model_validate(candidate)
        except ValidationError as e:
            raise InvalidTermsError(f"Invalid terms for {loan.alias}: {e}") from e
        if updated.reserved_buyer and not updated.borrower:
            raise InvalidTermsError(f"Reserved loan {loan.alias} needs a borrower")
        payment = updated.payment_amount

        for field, value in patch.items():
            setattr(loan, field, value)
        loan.reset_obligation()

        changed = ", ".join(sorted(patch))
        await ctx.log(
            f"  ✓ Updated {loan.alias} ({changed}): {loan.installments} payments of "
            f"{format_ada(payment)} ADA",
            "success",
        )
        logger.info("execution.updated", loan_id=loan.id, fields=sorted(patch), payment=payment)
        return ActionResult.ok(
            f"Updated {loan.alias}",
            data={"changed": sorted(patch), "payment": payment, "balance": loan.state.balance},
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _select_buyer(self, ctx: RunContext, loan: LoanContract, buyer_id: Optional[str]) -> Identity:
        candidate = ctx.index.resolve(buyer_id) if buyer_id else None

        if loan.borrower:
            if candidate is not None and candidate.id != loan.borrower:
                raise ReservationViolation(
                    f"Loan {loan.alias} is reserved for {ctx.index.name_of(loan.borrower)}; "
                    f"{candidate.name} cannot accept it"
                )
            return candidate or ctx.index.resolve(loan.borrower, Role.BORROWER)

        if candidate is not None:
            if candidate.role != Role.BORROWER:
                raise ReservationViolation(
                    f"{candidate.name} is a {candidate.role.value}, only borrowers accept loans"
                )
            return candidate

        busy = set(ctx.registry.running_borrowers())
        for borrower in ctx.index.with_role(Role.BORROWER):
            if borrower.id not in busy:
                return borrower
        raise StepSkipped(f"No available borrower for open-market loan {loan.alias}")

    def _release_to_originator(self, ctx: RunContext, loan: LoanContract) -> Identity:
        originator = ctx.index.resolve(loan.originator, Role.ORIGINATOR)
        originator.wallet.add_asset(loan.collateral)
        loan.state.collateral_released = True
        return originator

    def _terms_patch(self, ctx: RunContext, terms: Dict[str, Any]) -> Dict[str, Any]:
        patch: Dict[str, Any] = {}
        for key, value in terms.items():
            if key == "principal":
                patch["principal"] = to_lovelace(Decimal(str(value)))
            elif key == "apr":
                patch["apr"] = int((Decimal(str(value)) * 100).to_integral_value())
            elif key == "late_fee":
                patch["late_fee"] = to_lovelace(Decimal(str(value)))
            elif key == "borrower_id":
                if value is None:
                    patch["borrower"] = None
                    patch["reserved_buyer"] = False
                else:
                    patch["borrower"] = ctx.index.resolve(value, Role.BORROWER).id
                    patch["reserved_buyer"] = True
            else:
                patch[key] = value
        return patch
