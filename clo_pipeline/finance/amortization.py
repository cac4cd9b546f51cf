"""Loan amortization calculations.

Pure, stateless functions deriving payment schedule quantities from loan
terms. Monetary inputs and outputs are Decimal amounts in the display unit
(ADA); durations are integer milliseconds.

Terms:
    principal: amount borrowed (display unit)
    apr_basis_points: annual rate, 600 = 6%
    frequency: payments per year (12 = monthly)
    installments: number of payments
"""
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal, localcontext
from typing import List

from clo_pipeline.core.exceptions import InvalidTermsError

YEAR_MS = 31_556_926_000

# Calendar-accurate term lengths for the common frequencies
TERM_LENGTH_MS = {
    4: 7_889_231_000,      # quarterly
    12: 2_629_743_000,     # monthly
    52: 604_800_000,       # weekly
    365: 86_400_000,       # daily
    8760: 3_600_000,       # hourly
}

PAYMENT_UNITS = {
    4: "Quarters",
    12: "Months",
    52: "Weeks",
    365: "Days",
}

LATE_WINDOW_FRACTION = Decimal("0.1")
CENT = Decimal("0.01")


def _validate_frequency(frequency: int) -> None:
    if frequency <= 0:
        raise InvalidTermsError(f"Payment frequency must be positive, got {frequency}")


def _validate_installments(installments: int) -> None:
    if installments <= 0:
        raise InvalidTermsError(f"Installments must be positive, got {installments}")


def term_length_for_frequency(frequency: int) -> int:
    """Length of one payment period in milliseconds."""
    _validate_frequency(frequency)
    if frequency in TERM_LENGTH_MS:
        return TERM_LENGTH_MS[frequency]
    return YEAR_MS // frequency


def period_rate(apr_basis_points: int, frequency: int) -> Decimal:
    """Interest rate per period as a fraction."""
    _validate_frequency(frequency)
    return (Decimal(apr_basis_points) / Decimal(10_000)) / Decimal(frequency)


def nominal_payment(
    principal: Decimal,
    apr_basis_points: int,
    frequency: int,
    installments: int,
) -> Decimal:
    """Payment due each period under standard amortization.

    ``P * r(1+r)^n / ((1+r)^n - 1)`` rounded to cents. A zero rate gives the
    unrounded ``P / n``. The result never sums to less than the principal
    over all installments.
    """
    _validate_frequency(frequency)
    _validate_installments(installments)
    principal = Decimal(principal)
    n = installments
    r = period_rate(apr_basis_points, frequency)

    if r == 0:
        with localcontext() as ctx:
            ctx.rounding = ROUND_CEILING
            return principal / Decimal(n)

    growth = (1 + r) ** n
    payment = principal * (r * growth) / (growth - 1)
    rounded = payment.quantize(CENT, rounding=ROUND_HALF_UP)
    if rounded * n < principal:
        rounded = payment.quantize(CENT, rounding=ROUND_CEILING)
    return rounded


def total_interest(principal: Decimal, payment: Decimal, installments: int) -> Decimal:
    """Interest paid over the life of the loan, rounded to cents."""
    _validate_installments(installments)
    total = Decimal(payment) * installments - Decimal(principal)
    return total.quantize(CENT, rounding=ROUND_HALF_UP)


def late_window(term_length_ms: int) -> int:
    """Grace period before a missed payment is late: 10% of one term."""
    return int(Decimal(term_length_ms) * LATE_WINDOW_FRACTION)


def term_in_years(frequency: int, installments: int) -> Decimal:
    """Total contract duration in years."""
    _validate_frequency(frequency)
    return Decimal(installments) / Decimal(frequency)


def payment_unit_label(frequency: int) -> str:
    return PAYMENT_UNITS.get(frequency, "Payments")


def format_duration(ms: int) -> str:
    """Human readable duration, e.g. ``1 year, 2 months`` or ``30 days``."""
    seconds = ms // 1000
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24
    months = int(days / 30.44)
    years = int(days / 365.25)

    def plural(value: int, unit: str) -> str:
        return f"{value} {unit}{'s' if value != 1 else ''}"

    if years >= 1:
        remaining_months = int((days - years * 365.25) / 30.44)
        if remaining_months > 0:
            return f"{plural(years, 'year')}, {plural(remaining_months, 'month')}"
        return plural(years, "year")
    if months >= 1:
        return plural(months, "month")
    if days >= 1:
        return plural(days, "day")
    if hours >= 1:
        return plural(hours, "hour")
    if minutes >= 1:
        return plural(minutes, "minute")
    return plural(seconds, "second")


@dataclass
class ScheduleRow:
    """One period of an amortization schedule (display unit)."""
    period: int
    payment: Decimal
    interest: Decimal
    principal: Decimal
    balance: Decimal


def amortization_schedule(
    principal: Decimal,
    apr_basis_points: int,
    frequency: int,
    installments: int,
) -> List[ScheduleRow]:
    """Period-by-period split of each payment into interest and principal.

    The final row absorbs rounding so the closing balance is exactly zero.
    """
    payment = nominal_payment(principal, apr_basis_points, frequency, installments)
    r = period_rate(apr_basis_points, frequency)
    balance = Decimal(principal)
    rows: List[ScheduleRow] = []

    for period in range(1, installments + 1):
        interest = (balance * r).quantize(CENT, rounding=ROUND_HALF_UP)
        if period == installments:
            principal_part = balance
            amount = balance + interest
        else:
            principal_part = min(payment - interest, balance)
            amount = payment
        balance = balance - principal_part
        rows.append(ScheduleRow(
            period=period,
            payment=amount,
            interest=interest,
            principal=principal_part,
            balance=balance,
        ))

    return rows
