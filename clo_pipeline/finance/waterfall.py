"""CLO tranche waterfall.

Distributes pool-level cash flows across tranches in strict priority order
(Senior, then Mezzanine, then Junior) and absorbs losses in the reverse
order. Amounts are integer lovelace; allocations are percentages that must
sum to exactly 100; yield modifiers are multipliers scaled by 100
(80 = 0.8x).

Yield and loss are separate operations. A negative yield is rejected rather
than interpreted as a loss.
"""
from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, Decimal
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from clo_pipeline.core.exceptions import InvalidAllocationError

# Lower value = paid first. Unknown names sit between Mezzanine and Junior,
# in configuration order.
TRANCHE_PRIORITY = {
    "Senior": 0,
    "Mezzanine": 1,
    "Junior": 1_000,
}
_CUSTOM_PRIORITY_BASE = 100


class TrancheLike(Protocol):
    name: str
    allocation: Decimal
    yield_modifier: int


@dataclass
class YieldDistribution:
    """Per-tranche yield payouts.

    ``shortfall`` is the part of the higher tranches' modified claims that
    could not be paid because the pool ran out before the remainder tranche.
    """
    payouts: Dict[str, int] = field(default_factory=dict)
    shortfall: int = 0

    @property
    def total(self) -> int:
        return sum(self.payouts.values())

    def __getitem__(self, name: str) -> int:
        return self.payouts[name]


@dataclass
class LossAllocation:
    """Per-tranche loss absorption.

    ``unabsorbed`` is loss exceeding the whole capital structure, i.e. the
    pool is in liquidation.
    """
    absorbed: Dict[str, int] = field(default_factory=dict)
    remaining_principal: Dict[str, int] = field(default_factory=dict)
    unabsorbed: int = 0

    @property
    def is_liquidation(self) -> bool:
        return self.unabsorbed > 0 or (
            bool(self.remaining_principal)
            and all(v == 0 for v in self.remaining_principal.values())
        )


@dataclass
class RedemptionValue:
    gross: int
    fee: int
    net: int


def priority_order(tranches: Sequence[TrancheLike]) -> List[TrancheLike]:
    """Tranches sorted by payment priority, highest first."""
    ranked = []
    for index, tranche in enumerate(tranches):
        rank = TRANCHE_PRIORITY.get(tranche.name, _CUSTOM_PRIORITY_BASE + index)
        ranked.append((rank, index, tranche))
    return [t for _, _, t in sorted(ranked, key=lambda item: (item[0], item[1]))]


def total_allocation(tranches: Sequence[TrancheLike]) -> Decimal:
    return sum((Decimal(t.allocation) for t in tranches), Decimal("0"))


def allocation_issues(tranches: Sequence[TrancheLike]) -> List[str]:
    """Every problem with a tranche configuration; empty when valid."""
    issues = []
    if not tranches:
        return ["At least one tranche is required"]

    names = [t.name for t in tranches]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        issues.append(f"Duplicate tranche names: {', '.join(duplicates)}")

    for tranche in tranches:
        if not Decimal("0") <= Decimal(tranche.allocation) <= Decimal("100"):
            issues.append(
                f"Tranche {tranche.name} allocation must be within 0-100, got {tranche.allocation}"
            )
        if tranche.yield_modifier < 0:
            issues.append(
                f"Tranche {tranche.name} yield modifier must be non-negative, got {tranche.yield_modifier}"
            )

    total = total_allocation(tranches)
    if total != Decimal("100"):
        issues.append(f"CLO tranche allocations must sum to 100%, got {total}%")
    return issues


def validate_allocations(tranches: Sequence[TrancheLike]) -> None:
    """Reject any configuration whose allocations are not exactly 100."""
    issues = allocation_issues(tranches)
    if issues:
        raise InvalidAllocationError("; ".join(issues))


def _share(amount: int, allocation: Decimal) -> int:
    value = Decimal(amount) * Decimal(allocation) / Decimal(100)
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def tranche_principals(total_principal: int, tranches: Sequence[TrancheLike]) -> Dict[str, int]:
    """Principal per tranche; the lowest-priority tranche takes rounding dust."""
    validate_allocations(tranches)
    ordered = priority_order(tranches)
    principals: Dict[str, int] = {}
    for tranche in ordered[:-1]:
        principals[tranche.name] = _share(total_principal, tranche.allocation)
    last = ordered[-1]
    principals[last.name] = total_principal - sum(principals.values())
    return principals


def distribute_yield(total_amount: int, tranches: Sequence[TrancheLike]) -> YieldDistribution:
    """Allocate a pool-level yield across tranches.

    Each tranche above the lowest claims ``amount x allocation x modifier``.
    Claims are paid in priority order out of what is left, so a senior claim
    is never reduced to pay a junior one. The lowest-priority tranche receives
    the remainder, absorbing surplus or shortfall, never below zero. Payouts
    always sum to ``total_amount``.
    """
    if total_amount < 0:
        raise InvalidAllocationError(
            f"Yield amount must be non-negative, got {total_amount}; use allocate_losses for losses"
        )
    validate_allocations(tranches)

    ordered = priority_order(tranches)
    distribution = YieldDistribution()
    remaining = total_amount

    for tranche in ordered[:-1]:
        base = _share(total_amount, tranche.allocation)
        claim = base * tranche.yield_modifier // 100
        paid = max(0, min(claim, remaining))
        distribution.payouts[tranche.name] = paid
        distribution.shortfall += claim - paid
        remaining -= paid

    distribution.payouts[ordered[-1].name] = max(0, remaining)
    return distribution


def allocate_losses(
    loss_amount: int,
    tranches: Sequence[TrancheLike],
    total_principal: int,
) -> LossAllocation:
    """Absorb a pool loss from the lowest-priority tranche upwards.

    Each tranche absorbs up to its own principal before the next more senior
    tranche is touched. Loss beyond the whole structure is reported as
    ``unabsorbed``.
    """
    if loss_amount < 0:
        raise InvalidAllocationError(f"Loss amount must be non-negative, got {loss_amount}")

    principals = tranche_principals(total_principal, tranches)
    allocation = LossAllocation(remaining_principal=dict(principals))
    remaining = loss_amount

    for tranche in reversed(priority_order(tranches)):
        capacity = principals[tranche.name]
        absorbed = min(capacity, remaining)
        allocation.absorbed[tranche.name] = absorbed
        allocation.remaining_principal[tranche.name] = capacity - absorbed
        remaining -= absorbed

    allocation.unabsorbed = remaining
    return allocation


def effective_rate(tranche_yield: int, tranche_principal: int) -> int:
    """Yield over principal in basis points; 0 for an empty tranche."""
    if tranche_principal == 0:
        return 0
    return tranche_yield * 10_000 // tranche_principal


def redemption_value(
    tranche: TrancheLike,
    token_amount: int,
    total_tokens: int,
    bond_value: int,
    redemption_fee_basis_points: int,
) -> RedemptionValue:
    """Pro-rata value of ``token_amount`` tranche tokens, net of the redemption fee."""
    if total_tokens <= 0:
        raise InvalidAllocationError(f"Total tranche tokens must be positive, got {total_tokens}")

    tranche_value = _share(bond_value, tranche.allocation)
    gross = tranche_value * token_amount // total_tokens
    fee = gross * redemption_fee_basis_points // 10_000
    return RedemptionValue(gross=gross, fee=fee, net=gross - fee)


def coverage_ratio(
    collateral_value: int,
    target_tranche: str,
    tranches: Sequence[TrancheLike],
    total_principal: int,
) -> int:
    """Collateral cover of a tranche and everything senior to it, times 100.

    150 means 1.5x coverage. Returns 0 when there is nothing to cover.
    """
    principals = tranche_principals(total_principal, tranches)
    if target_tranche not in principals:
        raise InvalidAllocationError(f"Unknown tranche: {target_tranche}")

    target_value = 0
    for tranche in priority_order(tranches):
        target_value += principals[tranche.name]
        if tranche.name == target_tranche:
            break

    if target_value == 0:
        return 0
    return collateral_value * 100 // target_value


def weighted_average_yield(collateral: Sequence[Tuple[int, int]]) -> int:
    """Principal-weighted APR (basis points) of ``(principal, apr_bp)`` pairs."""
    total_principal = sum(principal for principal, _ in collateral)
    if total_principal == 0:
        return 0
    weighted = sum(principal * apr for principal, apr in collateral)
    return weighted // total_principal


def find_tranche(tranches: Sequence[TrancheLike], name: str) -> Optional[TrancheLike]:
    for tranche in tranches:
        if tranche.name == name:
            return tranche
    return None
