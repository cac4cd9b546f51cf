"""Lifecycle scenarios driven during contract execution.

Each loan's ``lifecycle_case`` expands into a list of contract actions
pinned to timing periods counted in terms of that loan. Period 0 is the
start of the run; a loan accepted at period 0 has installment ``k`` due
``k`` of its own terms later, whatever its payment frequency.

Cases:
    accept  accept only; the loan stays active for CLO bundling
    T1      cancel before acceptance
    T2      accept, one payment, then claim default once overdue
    T3      switch to a zero rate, then pay off
    T4      pay off on schedule, collect, complete
    T5      one late payment (late fee), then pay off
    T6      a wrong buyer is rejected, then the reserved buyer accepts
    T7      defer the seller fee, accept, pay once, collect
"""
from typing import List, Optional

from clo_pipeline.core.models import (
    ActionStep,
    ContractAction,
    LifecycleCase,
    LoanConfig,
    Role,
    RunConfig,
)
from clo_pipeline.finance.amortization import term_length_for_frequency


def _step(loan_index: int, label: str, action: ContractAction, period: int, **kwargs) -> ActionStep:
    name = f"{label}: {action.value.capitalize()} @ T+{period}"
    return ActionStep(
        id="",
        name=name,
        loan_index=loan_index,
        action=action,
        timing_period=period,
        **kwargs,
    )


def _payoff(loan_index: int, label: str, pay_periods: List[int]) -> List[ActionStep]:
    steps = [_step(loan_index, label, ContractAction.PAY, p) for p in pay_periods]
    final = pay_periods[-1] if pay_periods else 0
    steps.append(_step(loan_index, label, ContractAction.COLLECT, final))
    steps.append(_step(loan_index, label, ContractAction.COMPLETE, final))
    return steps


def _wrong_buyer(config: RunConfig, loan: LoanConfig) -> Optional[str]:
    reserved = config.find_wallet(loan.borrower_id) if loan.borrower_id else None
    for wallet in config.wallets:
        if wallet.role == Role.BORROWER and wallet is not reserved:
            return wallet.wallet_id
    return None


def lifecycle_steps(
    loan_index: int,
    loan: LoanConfig,
    config: RunConfig,
    default_grace_periods: int = 1,
) -> List[ActionStep]:
    """Actions for one loan; step ids are assigned by the caller."""
    label = f"Loan {loan_index + 1} ({loan.asset})"
    n = loan.installments
    case = loan.lifecycle_case
    accept = _step(loan_index, label, ContractAction.ACCEPT, 0, borrower_id=loan.borrower_id)

    if case == LifecycleCase.CANCEL:
        return [_step(loan_index, label, ContractAction.CANCEL, 0)]

    if case == LifecycleCase.DEFAULT:
        steps = [accept]
        if n > 1:
            steps.append(_step(loan_index, label, ContractAction.PAY, 1))
            # Next installment due at period 2; default once overdue by the grace periods
            steps.append(_step(loan_index, label, ContractAction.DEFAULT, 3 + default_grace_periods))
        return steps

    if case == LifecycleCase.ZERO_RATE_PAYOFF:
        update = _step(loan_index, label, ContractAction.UPDATE, 0, update_terms={"apr": 0})
        return [update, accept] + _payoff(loan_index, label, list(range(1, n)))

    if case == LifecycleCase.NOMINAL_PAYOFF:
        return [accept] + _payoff(loan_index, label, list(range(1, n)))

    if case == LifecycleCase.LATE_FEE:
        if n == 1:
            return [accept] + _payoff(loan_index, label, [])
        # Installment 1 paid a period late, the rest on schedule
        return [accept] + _payoff(loan_index, label, sorted([2] + list(range(2, n))))

    if case == LifecycleCase.RESERVATION_GUARD:
        steps = []
        wrong = _wrong_buyer(config, loan)
        if loan.reserved_buyer and wrong is not None:
            steps.append(_step(loan_index, label, ContractAction.ACCEPT, 0,
                               borrower_id=wrong, expect_failure=True,
                               expected_error="ReservationViolation"))
        steps.append(accept)
        return steps

    if case == LifecycleCase.UPDATE_THEN_ACCEPT:
        steps = [
            _step(loan_index, label, ContractAction.UPDATE, 0, update_terms={"defer_fee": True}),
            accept,
        ]
        if n > 1:
            steps.append(_step(loan_index, label, ContractAction.PAY, 1))
            steps.append(_step(loan_index, label, ContractAction.COLLECT, 1))
        return steps

    return [accept]


def build_execution_steps(
    config: RunConfig,
    default_grace_periods: int = 1,
    default_frequency: int = 12,
) -> List[ActionStep]:
    """All loans' actions ordered by simulated time, keeping per-loan order."""
    steps = []
    term_lengths = {}
    for index, loan in enumerate(config.loans):
        term_lengths[index] = term_length_for_frequency(loan.frequency or default_frequency)
        steps.extend(lifecycle_steps(index, loan, config, default_grace_periods))

    steps.sort(key=lambda s: s.timing_period * term_lengths[s.loan_index])
    for number, step in enumerate(steps, start=1):
        step.id = f"4.{number}"
    return steps
