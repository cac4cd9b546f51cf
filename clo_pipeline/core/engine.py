"""Pipeline engine - drives the five phases of a loan / CLO run."""
import asyncio
from typing import Dict, List, Optional

import structlog

from clo_pipeline.core.config import PipelineSettings, settings as default_settings
from clo_pipeline.core.context import RunContext
from clo_pipeline.core.defaults import default_run_config
from clo_pipeline.core.exceptions import (
    ConfigurationError,
    GatewayFailure,
    InvalidAllocationError,
    InvalidTermsError,
    RecoverableStepFailure,
    StepSkipped,
)
from clo_pipeline.core.models import (
    STEP_TYPES,
    ActionResult,
    ActionStep,
    Phase,
    RunConfig,
    RunSnapshot,
    RunState,
    Step,
    StepStatus,
)
from clo_pipeline.gateway.base import ExternalGateway
from clo_pipeline.phases import BasePhase, create_phases

logger = structlog.get_logger(__name__)


class PipelineEngine:
    """
    Resumable state machine over the five pipeline phases.

    Phases run strictly in order and their steps strictly in sequence.
    A failed step fails its phase and halts the run. After every phase a
    checkpoint of the full run state is saved through the gateway.

    Entry points:
    - run_to_completion(): drive every remaining phase
    - run_to_breakpoint(n): drive phases before ``n``, then pause
    - execute_step(step): drive exactly one step
    """

    def __init__(
        self,
        gateway: ExternalGateway,
        config: Optional[RunConfig] = None,
        settings: Optional[PipelineSettings] = None,
        run_id: Optional[str] = None,
    ):
        self.settings = settings or default_settings
        self.config = config or default_run_config(self.settings.network.network)
        self.gateway = gateway
        self.ctx = RunContext(self.config, gateway, settings=self.settings, run_id=run_id)

        self.phase_handlers: List[BasePhase] = create_phases(self.settings)
        self.phases: List[Phase] = [handler.build(self.config) for handler in self.phase_handlers]

        # Step kind -> phase that executes it
        self._handlers: Dict[type, BasePhase] = {}
        for handler in self.phase_handlers:
            for step_type in handler.step_types:
                self._handlers[step_type] = handler
        missing = [t.__name__ for t in STEP_TYPES if t not in self._handlers]
        if missing:
            raise RuntimeError(f"No phase handles step kinds: {', '.join(missing)}")

        self.state = RunState.IDLE
        self._next_phase_index = 0

    @property
    def run_id(self) -> str:
        return self.ctx.run_id

    @property
    def registry(self):
        return self.ctx.registry

    @property
    def current_phase(self) -> Optional[Phase]:
        if self._next_phase_index < len(self.phases):
            return self.phases[self._next_phase_index]
        return None

    # =========================================================================
    # Run control
    # =========================================================================

    async def run_to_completion(self) -> RunState:
        """Drive all remaining phases; a paused run resumes where it stopped."""
        if self.state != RunState.PAUSED:
            await self.start()
        return await self._run_phases(len(self.phases))

    async def run_to_breakpoint(self, phase_number: int) -> RunState:
        """Drive phases up to ``phase_number - 1`` and pause before ``phase_number``."""
        if not 1 <= phase_number <= len(self.phases):
            raise ValueError(f"Breakpoint must be a phase number 1-{len(self.phases)}, got {phase_number}")
        if self.state == RunState.PAUSED and phase_number <= self._next_phase_index:
            raise ValueError(
                f"Run is paused before phase {self._next_phase_index + 1}; "
                f"phase {phase_number} has already run"
            )
        if self.state != RunState.PAUSED:
            await self.start()

        state = await self._run_phases(phase_number - 1)
        if state == RunState.RUNNING:
            self.state = RunState.PAUSED
            await self.ctx.log(f"⏸ Paused before phase {phase_number}", "phase")
            logger.info("engine.paused", run_id=self.run_id, before_phase=phase_number)
            await self._checkpoint()
        return self.state

    async def start(self) -> None:
        """Validate the configuration and reset all run state."""
        issues = self.config.validate_run()
        if issues:
            self.state = RunState.FAILED
            logger.error("engine.invalid_configuration", run_id=self.run_id, issues=issues)
            raise ConfigurationError(issues)

        self.ctx.reset()
        for phase in self.phases:
            phase.reset()
        self._next_phase_index = 0
        self.state = RunState.RUNNING
        await self.ctx.start_clock()

        logger.info("engine.run_started", run_id=self.run_id, network=self.config.network,
                    wallets=len(self.config.wallets), loans=len(self.config.loans))
        await self.ctx.log(f"Starting pipeline run {self.run_id} on {self.config.network}", "phase")

    async def _run_phases(self, stop_index: int) -> RunState:
        self.state = RunState.RUNNING
        while self._next_phase_index < stop_index:
            phase_number = self._next_phase_index + 1
            passed = await self.execute_phase(phase_number)
            self._next_phase_index += 1
            await self._checkpoint()
            if not passed:
                self.state = RunState.FAILED
                await self.ctx.log(f"✗ Run halted at phase {phase_number}", "error")
                logger.warning("engine.run_failed", run_id=self.run_id, phase=phase_number)
                return self.state

        if self._next_phase_index >= len(self.phases):
            self.state = RunState.COMPLETE
            await self.ctx.log("✓ Pipeline complete", "success")
            logger.info("engine.run_complete", run_id=self.run_id, stats=self.ctx.stats)
            await self._checkpoint()
        return self.state

    # =========================================================================
    # Phase / step execution
    # =========================================================================

    async def execute_phase(self, phase_number: int) -> bool:
        """Run every step of one phase; returns True when the phase passed."""
        phase = self.phases[phase_number - 1]
        phase.status = StepStatus.RUNNING
        await self.ctx.log(f"Phase {phase.id}: {phase.name}", "phase")
        logger.info("engine.phase_started", run_id=self.run_id, phase=phase.id, name=phase.name,
                    steps=len(phase.steps))

        try:
            for step in phase.steps:
                result = await self.execute_step(step)
                if not result.success:
                    phase.status = StepStatus.FAILED
                    break
            else:
                phase.status = StepStatus.PASSED
        except Exception as e:
            phase.status = StepStatus.FAILED
            logger.exception("engine.phase_error", run_id=self.run_id, phase=phase.id, error=str(e))
            await self.ctx.log(f"✗ Phase {phase.id} aborted: {e}", "error")

        if phase.status == StepStatus.PASSED:
            await self.ctx.log(f"✓ Phase {phase.id} passed", "success")
        else:
            await self.ctx.log(f"✗ Phase {phase.id} failed", "error")
        logger.info("engine.phase_finished", run_id=self.run_id, phase=phase.id,
                    status=phase.status.value)
        return phase.status == StepStatus.PASSED

    async def execute_step(self, step: Step) -> ActionResult:
        """Execute a single step and record its outcome on the step."""
        if step.disabled:
            step.status = StepStatus.SKIPPED
            step.message = "Disabled"
            await self.ctx.log(f"  ○ {step.id} {step.name}: disabled", "info")
            return ActionResult.skip("Step disabled")

        handler = self._handlers[type(step)]
        step.status = StepStatus.RUNNING
        logger.debug("engine.step_started", run_id=self.run_id, step=step.id, kind=step.kind)

        result = await self._guarded(handler, step)

        if isinstance(step, ActionStep) and step.expect_failure:
            result = self._expected_failure(step, result)

        if result.skipped:
            step.status = StepStatus.SKIPPED
        elif result.success:
            step.status = StepStatus.PASSED
        else:
            step.status = StepStatus.FAILED
        step.message = result.message

        await self._report_step(step, result)

        delay = self.settings.network.step_delay_seconds
        if delay > 0:
            await asyncio.sleep(delay)
        return result

    async def _guarded(self, handler: BasePhase, step: Step) -> ActionResult:
        """Step boundary: every step-level error becomes a failed result."""
        try:
            return await handler.execute(step, self.ctx)
        except StepSkipped as e:
            return ActionResult.skip(str(e), warnings=[str(e)])
        except RecoverableStepFailure as e:
            return ActionResult.fail(str(e), error=type(e).__name__)
        except GatewayFailure as e:
            if not e.essential:
                logger.warning("engine.gateway_warning", run_id=self.run_id, step=step.id, error=str(e))
                return ActionResult.ok(f"{step.name} (with warnings)", warnings=[str(e)])
            logger.error("engine.gateway_failure", run_id=self.run_id, step=step.id, error=str(e))
            return ActionResult.fail(str(e), error=type(e).__name__)
        except (InvalidTermsError, InvalidAllocationError) as e:
            return ActionResult.fail(str(e), error=type(e).__name__)
        except Exception as e:
            logger.exception("engine.step_error", run_id=self.run_id, step=step.id, error=str(e))
            return ActionResult.fail(f"Unexpected error: {e}", error=type(e).__name__)

    @staticmethod
    def _expected_failure(step: ActionStep, result: ActionResult) -> ActionResult:
        """Invert a guard step: it passes only on the rejection it names."""
        if result.success:
            return ActionResult.fail(
                f"Expected rejection but the action succeeded: {result.message}",
                data=result.data,
                error="UnexpectedSuccess",
            )
        if step.expected_error and result.error != step.expected_error:
            return ActionResult.fail(
                f"Expected {step.expected_error} but the action failed with {result.error}: {result.message}",
                data={"rejected_with": result.error},
                error=result.error,
            )
        return ActionResult.ok(f"Rejected as expected: {result.message}", data={"rejected_with": result.error})

    async def _report_step(self, step: Step, result: ActionResult) -> None:
        for warning in result.warnings:
            logger.warning("engine.step_warning", run_id=self.run_id, step=step.id, warning=warning)

        if step.status == StepStatus.PASSED:
            await self.ctx.log(f"  ✓ {step.id} {step.name}: {result.message}", "success")
        elif step.status == StepStatus.SKIPPED:
            await self.ctx.log(f"  ○ {step.id} {step.name}: skipped, {result.message}", "warning")
        else:
            await self.ctx.log(f"  ✗ {step.id} {step.name}: {result.message}", "error")
            logger.warning("engine.step_failed", run_id=self.run_id, step=step.id,
                           error=result.error, message=result.message)

    # =========================================================================
    # Snapshots
    # =========================================================================

    def snapshot(self) -> RunSnapshot:
        return RunSnapshot(
            run_id=self.run_id,
            state=self.state,
            network=self.config.network,
            current_phase=self._next_phase_index,
            period=self.ctx.period,
            now=self.ctx.now,
            phases=[p.model_copy(deep=True) for p in self.phases],
            identities=[i.model_copy(deep=True) for i in self.registry.identities],
            loan_contracts=[l.model_copy(deep=True) for l in self.registry.loan_contracts],
            clo_contracts=[c.model_copy(deep=True) for c in self.registry.clo_contracts],
        )

    async def _checkpoint(self) -> Optional[int]:
        try:
            checkpoint_id = await self.gateway.save_checkpoint(self.snapshot())
        except GatewayFailure as e:
            logger.warning("engine.checkpoint_failed", run_id=self.run_id, error=str(e))
            await self.ctx.log(f"  ⚠ Checkpoint not saved: {e}", "warning")
            return None
        logger.debug("engine.checkpoint_saved", run_id=self.run_id, checkpoint_id=checkpoint_id,
                     phase=self._next_phase_index)
        return checkpoint_id
