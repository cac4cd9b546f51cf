"""Error taxonomy for the loan / CLO pipeline.

Configuration problems are fatal and detected before any state is touched.
Step-level problems (``RecoverableStepFailure`` and its subclasses) are caught
at the step boundary by the engine and turned into a failed ``ActionResult``.
Gateway problems carry an ``essential`` flag telling the caller whether the
step can still pass with a warning.
"""
from typing import List, Optional


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""


# =============================================================================
# Configuration
# =============================================================================

class ConfigurationError(PipelineError):
    """Run configuration failed validation. Never retried."""

    def __init__(self, issues: List[str]):
        self.issues = list(issues)
        super().__init__("Invalid run configuration: " + "; ".join(self.issues))


# =============================================================================
# Step failures
# =============================================================================

class RecoverableStepFailure(PipelineError):
    """A step could not be performed; no state was mutated."""


class InsufficientBalanceError(RecoverableStepFailure):
    """A wallet does not hold enough lovelace for a debit."""

    def __init__(self, owner: str, required: int, available: int):
        self.owner = owner
        self.required = required
        self.available = available
        self.shortfall = required - available
        super().__init__(
            f"Insufficient balance for {owner}: has {available / 1_000_000:.2f} ADA, "
            f"needs {required / 1_000_000:.2f} ADA"
        )


class MissingIdentityError(RecoverableStepFailure):
    """An identity reference could not be resolved."""


class ReservationViolation(RecoverableStepFailure):
    """A reserved loan was accepted by someone other than its reserved buyer."""


class LoanStateError(RecoverableStepFailure):
    """The loan is not in a lifecycle state that allows the action."""


class AssetTransferError(RecoverableStepFailure):
    """An asset could not be moved between holders."""


# =============================================================================
# Gateway
# =============================================================================

class GatewayFailure(PipelineError):
    """The external wallet / ledger / persistence collaborator failed."""

    def __init__(self, message: str, essential: bool = True, cause: Optional[Exception] = None):
        self.essential = essential
        self.cause = cause
        super().__init__(message)


class GatewayUnavailable(GatewayFailure):
    """Transient gateway failure; eligible for retry."""


# =============================================================================
# Numeric modules
# =============================================================================

class InvalidTermsError(PipelineError):
    """Loan terms cannot be amortized (non-positive frequency or installments)."""


class InvalidAllocationError(PipelineError):
    """Tranche allocations are malformed or do not sum to exactly 100."""


# =============================================================================
# Control flow
# =============================================================================

class StepSkipped(PipelineError):
    """Signal that a step should be reported as skipped rather than failed."""
