"""Phase 3: escrow collateral and create pending loan contracts."""
from typing import List

import structlog

from clo_pipeline.core.context import RunContext
from clo_pipeline.core.exceptions import AssetTransferError, LoanStateError
from clo_pipeline.core.models import (
    ActionResult,
    Asset,
    LoanConfig,
    LoanContract,
    LoanStep,
    Role,
    RunConfig,
)
from clo_pipeline.finance.amortization import nominal_payment
from clo_pipeline.finance.fees import format_ada, to_lovelace
from clo_pipeline.phases.base import BasePhase

logger = structlog.get_logger(__name__)


class LoanInitPhase(BasePhase):
    """
    Loan origination.

    Each step moves the configured collateral out of the originator's
    wallet into the new contract's escrow. Reserved loans bind their borrower
    immediately but stay pending until accepted; open-market loans leave the
    borrower unbound.
    """

    phase_id = 3
    name = "Loan Initialization"
    step_types = (LoanStep,)

    def build_steps(self, config: RunConfig) -> List[LoanStep]:
        steps = []
        for index, loan in enumerate(config.loans):
            kind = "reserved" if loan.reserved_buyer else "open market"
            originator = config.find_wallet(loan.originator_id)
            owner = originator.name if originator else loan.originator_id
            steps.append(LoanStep(
                id=f"3.{index + 1}",
                name=f"{owner}: Create {kind} loan on {loan.quantity} {loan.asset}",
                loan_index=index,
            ))
        return steps

    async def execute(self, step: LoanStep, ctx: RunContext) -> ActionResult:
        if step.loan_index >= len(ctx.config.loans):
            raise LoanStateError(f"No loan definition at index {step.loan_index}")
        if ctx.registry.find_loan(step.loan_index) is not None:
            raise LoanStateError(f"Loan {step.loan_index + 1} has already been created")

        loan = self.create_loan(ctx, step.loan_index, ctx.config.loans[step.loan_index])

        warnings: List[str] = []
        await self.persist_loan(ctx, loan, warnings)

        await ctx.log(
            f"  ✓ {loan.alias}: {format_ada(loan.principal)} ADA at {loan.apr / 100:.2f}% "
            f"over {loan.installments} payments of {format_ada(loan.payment_amount)} ADA",
            "success",
        )
        if loan.borrower:
            await ctx.log(f"    Reserved for {ctx.index.name_of(loan.borrower)}")

        return ActionResult.ok(
            f"Created {loan.subtype} loan {loan.alias}",
            data={
                "loan_id": loan.id,
                "remote_id": loan.remote_id,
                "payment": loan.payment_amount,
                "total_interest": loan.total_interest,
            },
            warnings=warnings,
        )

    def create_loan(self, ctx: RunContext, loan_index: int, cfg: LoanConfig) -> LoanContract:
        """Build the contract and move the collateral into escrow, all or nothing."""
        originator = ctx.index.resolve(cfg.originator_id, Role.ORIGINATOR)
        borrower = None
        if cfg.reserved_buyer:
            borrower = ctx.index.resolve(cfg.borrower_id, Role.BORROWER).id

        defaults = self.settings.loans
        frequency = cfg.frequency or defaults.frequency
        late_fee = cfg.late_fee if cfg.late_fee is not None else defaults.late_fee_ada
        buyer_percent = (
            cfg.transfer_fee_buyer_percent
            if cfg.transfer_fee_buyer_percent is not None
            else defaults.transfer_fee_buyer_percent
        )

        # Terms are checked before anything moves
        nominal_payment(cfg.principal, cfg.apr_basis_points, frequency, cfg.installments)

        held = originator.wallet.find_asset(cfg.asset)
        if held is None or held.quantity < cfg.quantity:
            available = held.quantity if held else 0
            raise AssetTransferError(
                f"{originator.name} holds {available} {cfg.asset}, loan needs {cfg.quantity}"
            )

        loan = LoanContract(
            id=f"LOAN-{loan_index + 1:03d}",
            loan_index=loan_index,
            alias=f"{cfg.asset} Loan #{loan_index + 1}",
            originator=originator.id,
            borrower=borrower,
            reserved_buyer=cfg.reserved_buyer,
            collateral=Asset(policy_id=held.policy_id, asset_name=cfg.asset, quantity=cfg.quantity),
            principal=to_lovelace(cfg.principal),
            apr=cfg.apr_basis_points,
            frequency=frequency,
            installments=cfg.installments,
            late_fee=to_lovelace(late_fee),
            transfer_fee_buyer_percent=buyer_percent,
            defer_fee=cfg.defer_fee,
            lifecycle_case=cfg.lifecycle_case,
        )
        loan.reset_obligation()

        originator.wallet.remove_asset(cfg.asset, cfg.quantity, held.policy_id)
        ctx.registry.loan_contracts.append(loan)

        logger.info("loans.created", run_id=ctx.run_id, loan_id=loan.id, originator=originator.id,
                    borrower=borrower, principal=loan.principal, apr=loan.apr)
        return loan
