"""Base class for the five pipeline phases."""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import structlog

from clo_pipeline.core.config import PipelineSettings, settings as default_settings
from clo_pipeline.core.context import RunContext
from clo_pipeline.core.exceptions import GatewayFailure
from clo_pipeline.core.models import (
    ActionResult,
    CLOContract,
    LoanContract,
    Phase,
    RunConfig,
    Step,
)

logger = structlog.get_logger(__name__)


class BasePhase(ABC):
    """
    Abstract base class for pipeline phases.

    A phase turns the run configuration into an ordered list of steps and
    knows how to execute each of them. Phases never catch step failures
    themselves: a step either returns an ``ActionResult`` or raises, and the
    engine's step boundary turns the exception into a failed result.

    Subclasses MUST implement:
    - build_steps(): Steps derived from the run configuration
    - execute(): Perform one step against the run context
    """

    phase_id: int = 0
    name: str = ""
    step_types: tuple = ()

    def __init__(self, settings: Optional[PipelineSettings] = None):
        self.settings = settings or default_settings

    def build(self, config: RunConfig) -> Phase:
        return Phase(id=self.phase_id, name=self.name, steps=self.build_steps(config))

    @abstractmethod
    def build_steps(self, config: RunConfig) -> List[Step]:
        pass

    @abstractmethod
    async def execute(self, step: Step, ctx: RunContext) -> ActionResult:
        pass

    # Persistence helpers
    async def persist_loan(self, ctx: RunContext, loan: LoanContract, warnings: List[str]) -> None:
        record = {
            "run_id": ctx.run_id,
            "contract_type": "LOAN",
            "subtype": loan.subtype,
            "alias": loan.alias,
            "status": loan.status.value,
            "contract_data": loan.model_dump(mode="json", exclude={"state"}),
            "contract_datum": loan.state.model_dump(mode="json"),
        }
        loan.remote_id = await self._persist(ctx, record, warnings)

    async def persist_clo(self, ctx: RunContext, clo: CLOContract, warnings: List[str]) -> None:
        record = {
            "run_id": ctx.run_id,
            "contract_type": "CLO",
            "subtype": "CLO",
            "alias": clo.name,
            "status": clo.status.value,
            "contract_data": clo.model_dump(mode="json"),
        }
        clo.remote_id = await self._persist(ctx, record, warnings)

    async def sync_contract(
        self,
        ctx: RunContext,
        remote_id: Optional[str],
        patch: Dict[str, Any],
        warnings: List[str],
    ) -> None:
        """Push a state change to the persisted record; failures only warn."""
        if remote_id is None:
            return
        try:
            await ctx.gateway.update_contract_state(remote_id, patch)
        except GatewayFailure as e:
            if e.essential:
                raise
            warnings.append(f"Contract state not persisted: {e}")
            await ctx.log(f"  ⚠ Contract state not persisted: {e}", "warning")

    async def _persist(self, ctx: RunContext, record: Dict[str, Any], warnings: List[str]) -> Optional[str]:
        try:
            return await ctx.gateway.persist_contract(record)
        except GatewayFailure as e:
            if e.essential:
                raise
            logger.warning("phase.persist_failed", phase=self.name, alias=record.get("alias"),
                           error=str(e))
            warnings.append(f"Contract record not persisted: {e}")
            await ctx.log(f"  ⚠ Contract record not persisted: {e}", "warning")
            return None
