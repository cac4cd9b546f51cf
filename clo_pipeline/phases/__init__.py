"""
Pipeline phases, in execution order:

1. Setup: create and fund participant wallets
2. Tokenization: mint originator assets
3. Loan Initialization: escrow collateral, create pending loans
4. Contract Execution: drive each loan's lifecycle scenario
5. CLO Bundling: bundle active loans, deploy the CLO, issue tranche tokens
"""

from typing import List, Optional

from clo_pipeline.core.config import PipelineSettings
from clo_pipeline.phases.base import BasePhase
from clo_pipeline.phases.clo import CLOBundlingPhase
from clo_pipeline.phases.execution import ContractExecutionPhase
from clo_pipeline.phases.loans import LoanInitPhase
from clo_pipeline.phases.scenarios import build_execution_steps, lifecycle_steps
from clo_pipeline.phases.setup import SetupPhase
from clo_pipeline.phases.tokenization import TokenizationPhase


def create_phases(settings: Optional[PipelineSettings] = None) -> List[BasePhase]:
    """The five phases in their fixed order."""
    return [
        SetupPhase(settings),
        TokenizationPhase(settings),
        LoanInitPhase(settings),
        ContractExecutionPhase(settings),
        CLOBundlingPhase(settings),
    ]


__all__ = [
    "BasePhase",
    "SetupPhase",
    "TokenizationPhase",
    "LoanInitPhase",
    "ContractExecutionPhase",
    "CLOBundlingPhase",
    "build_execution_steps",
    "lifecycle_steps",
    "create_phases",
]
