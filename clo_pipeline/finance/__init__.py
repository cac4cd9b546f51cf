"""Pure numeric subsystems: loan amortization, fees and the tranche waterfall."""

from clo_pipeline.finance.amortization import (
    ScheduleRow,
    amortization_schedule,
    format_duration,
    late_window,
    nominal_payment,
    payment_unit_label,
    period_rate,
    term_in_years,
    term_length_for_frequency,
    total_interest,
)
from clo_pipeline.finance.fees import (
    LOVELACE_PER_ADA,
    TransferFees,
    format_ada,
    to_ada,
    to_lovelace,
    transfer_fees,
)
from clo_pipeline.finance.waterfall import (
    LossAllocation,
    RedemptionValue,
    YieldDistribution,
    allocate_losses,
    allocation_issues,
    coverage_ratio,
    distribute_yield,
    effective_rate,
    priority_order,
    redemption_value,
    tranche_principals,
    validate_allocations,
    weighted_average_yield,
)

__all__ = [
    "ScheduleRow",
    "amortization_schedule",
    "format_duration",
    "late_window",
    "nominal_payment",
    "payment_unit_label",
    "period_rate",
    "term_in_years",
    "term_length_for_frequency",
    "total_interest",
    "LOVELACE_PER_ADA",
    "TransferFees",
    "format_ada",
    "to_ada",
    "to_lovelace",
    "transfer_fees",
    "LossAllocation",
    "RedemptionValue",
    "YieldDistribution",
    "allocate_losses",
    "allocation_issues",
    "coverage_ratio",
    "distribute_yield",
    "effective_rate",
    "priority_order",
    "redemption_value",
    "tranche_principals",
    "validate_allocations",
    "weighted_average_yield",
]
