"""Loan fee calculations (transfer and late fees)."""
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal

from clo_pipeline.core.exceptions import InvalidTermsError

LOVELACE_PER_ADA = 1_000_000

TRANSFER_FEE_RATE = Decimal("0.01")
TRANSFER_FEE_MIN_ADA = Decimal("5")
TRANSFER_FEE_MAX_ADA = Decimal("25000")


@dataclass
class TransferFees:
    """Transfer fee split, in lovelace."""
    buyer: int
    seller: int

    @property
    def total(self) -> int:
        return self.buyer + self.seller


def to_lovelace(ada: Decimal, rounding: str = ROUND_FLOOR) -> int:
    """Convert a display amount to lovelace, truncating sub-lovelace dust by default."""
    return int((Decimal(ada) * LOVELACE_PER_ADA).to_integral_value(rounding=rounding))


def to_ada(lovelace: int) -> Decimal:
    return Decimal(lovelace) / LOVELACE_PER_ADA


def transfer_fees(
    principal_ada: Decimal,
    buyer_percent: int = 50,
    rate: Decimal = TRANSFER_FEE_RATE,
    min_ada: Decimal = TRANSFER_FEE_MIN_ADA,
    max_ada: Decimal = TRANSFER_FEE_MAX_ADA,
) -> TransferFees:
    """Transfer fee of ``rate`` x principal clamped to [min, max], split by buyer share.

    The seller pays whatever the buyer share leaves, so the two parts always
    add up to the total fee.
    """
    if not 0 <= buyer_percent <= 100:
        raise InvalidTermsError(f"Buyer fee share must be within 0-100, got {buyer_percent}")

    total_ada = max(min_ada, min(max_ada, Decimal(principal_ada) * rate))
    total = to_lovelace(total_ada)
    buyer = total * buyer_percent // 100
    return TransferFees(buyer=buyer, seller=total - buyer)


def format_ada(lovelace: int) -> str:
    """Lovelace as an ADA display string, e.g. ``1,234.50``."""
    return f"{to_ada(lovelace):,.2f}"
