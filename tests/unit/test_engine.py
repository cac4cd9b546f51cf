"""Unit tests for the pipeline engine state machine."""
from unittest.mock import AsyncMock

import pytest

from clo_pipeline.core.engine import PipelineEngine
from clo_pipeline.core.exceptions import ConfigurationError, GatewayFailure
from clo_pipeline.core.models import (
    ActionStep,
    ContractAction,
    LifecycleCase,
    RunState,
    StepStatus,
)

from conftest import find_step, make_run_config, make_tranches


# =============================================================================
# Construction Tests
# =============================================================================

class TestEngineSetup:
    """Test engine construction."""

    def test_initial_state(self, engine):
        assert engine.state == RunState.IDLE
        assert [p.id for p in engine.phases] == [1, 2, 3, 4, 5]
        assert engine.current_phase.id == 1
        assert engine.run_id == "run-test"

    def test_every_step_kind_has_a_handler(self, engine):
        for phase, handler in zip(engine.phases, engine.phase_handlers):
            for step in phase.steps:
                assert engine._handlers[type(step)] is handler

    def test_steps_derived_from_configuration(self, engine):
        assert [s.id for s in engine.phases[1].steps] == ["2.1"]
        assert [s.id for s in engine.phases[2].steps] == ["3.1"]
        assert [s.action for s in engine.phases[3].steps] == [ContractAction.ACCEPT]
        assert [s.operation for s in engine.phases[4].steps] == ["bundle", "deploy", "distribute"]

    def test_engines_do_not_share_state(self, gateway, run_config, test_settings):
        first = PipelineEngine(gateway, config=run_config, settings=test_settings)
        second = PipelineEngine(gateway, config=run_config, settings=test_settings)

        assert first.registry is not second.registry
        assert first.run_id != second.run_id


# =============================================================================
# Run Control Tests
# =============================================================================

class TestRunControl:
    """Test completion, breakpoints and checkpoints."""

    @pytest.mark.asyncio
    async def test_run_to_completion(self, engine, gateway):
        state = await engine.run_to_completion()

        assert state == RunState.COMPLETE
        assert all(p.status == StepStatus.PASSED for p in engine.phases)
        assert engine.current_phase is None
        assert "✓ Pipeline complete" in gateway.messages_at("success")

    @pytest.mark.asyncio
    async def test_checkpoint_after_every_phase(self, engine, gateway):
        await engine.run_to_completion()

        # One per phase plus the completion checkpoint
        assert len(gateway.checkpoints) == 6
        assert gateway.checkpoints[-1]["state"] == "complete"
        assert gateway.checkpoints[0]["current_phase"] == 1

    @pytest.mark.asyncio
    async def test_breakpoint_pauses_and_resumes(self, engine, gateway):
        state = await engine.run_to_breakpoint(3)

        assert state == RunState.PAUSED
        assert engine.current_phase.id == 3
        assert engine.registry.loan_contracts == []
        assert gateway.checkpoints[-1]["state"] == "paused"
        assert "⏸ Paused before phase 3" in gateway.messages_at("phase")

        state = await engine.run_to_completion()

        assert state == RunState.COMPLETE
        assert len(engine.registry.loan_contracts) == 1
        assert len(engine.registry.identities) == 3

    @pytest.mark.asyncio
    async def test_breakpoint_at_first_phase_runs_nothing(self, engine):
        assert await engine.run_to_breakpoint(1) == RunState.PAUSED
        assert engine.phases[0].status == StepStatus.PENDING

    @pytest.mark.asyncio
    @pytest.mark.parametrize("phase_number", [0, 6])
    async def test_breakpoint_out_of_range(self, engine, phase_number):
        with pytest.raises(ValueError):
            await engine.run_to_breakpoint(phase_number)

    @pytest.mark.asyncio
    async def test_breakpoint_behind_paused_run_rejected(self, engine, gateway):
        await engine.run_to_breakpoint(4)
        paused = gateway.messages_at("phase")

        with pytest.raises(ValueError, match="paused before phase 4"):
            await engine.run_to_breakpoint(2)

        assert engine.state == RunState.PAUSED
        assert engine.current_phase.id == 4
        assert gateway.messages_at("phase") == paused

    @pytest.mark.asyncio
    async def test_restart_resets_state(self, engine):
        await engine.run_to_completion()
        await engine.run_to_completion()

        assert engine.state == RunState.COMPLETE
        assert len(engine.registry.loan_contracts) == 1
        assert len(engine.registry.clo_contracts) == 1

    @pytest.mark.asyncio
    async def test_invalid_configuration_rejected_before_any_step(self, gateway, test_settings):
        config = make_run_config(tranches=make_tranches(60, 25, 10))
        engine = PipelineEngine(gateway, config=config, settings=test_settings)

        with pytest.raises(ConfigurationError, match="sum to 100%"):
            await engine.run_to_completion()

        assert engine.state == RunState.FAILED
        assert gateway.wallets == []
        assert gateway.records == {}
        assert gateway.minted == []

    @pytest.mark.asyncio
    async def test_failed_step_halts_run(self, engine, gateway, monkeypatch):
        monkeypatch.setattr(gateway, "mint_asset", AsyncMock(side_effect=GatewayFailure("ledger down")))

        state = await engine.run_to_completion()

        assert state == RunState.FAILED
        assert engine.phases[0].status == StepStatus.PASSED
        assert engine.phases[1].status == StepStatus.FAILED
        assert engine.phases[2].status == StepStatus.PENDING
        assert find_step(engine, "2.1").message == "ledger down"
        assert "✗ Run halted at phase 2" in gateway.messages_at("error")

    @pytest.mark.asyncio
    async def test_checkpoint_failure_only_warns(self, engine, gateway, monkeypatch):
        monkeypatch.setattr(gateway, "save_checkpoint", AsyncMock(side_effect=GatewayFailure("disk full")))

        assert await engine.run_to_completion() == RunState.COMPLETE
        assert any("Checkpoint not saved" in m for m in gateway.messages_at("warning"))


# =============================================================================
# Step Boundary Tests
# =============================================================================

class TestStepBoundary:
    """Test how step outcomes are recorded."""

    @pytest.mark.asyncio
    async def test_disabled_step_skipped(self, engine):
        find_step(engine, "5.3").disabled = True

        state = await engine.run_to_completion()

        assert state == RunState.COMPLETE
        assert find_step(engine, "5.3").status == StepStatus.SKIPPED
        assert engine.registry.clo_contracts[0].tranches[0].distributed is False

    @pytest.mark.asyncio
    async def test_recoverable_failure_becomes_failed_result(self, engine):
        await engine.run_to_breakpoint(4)
        step = ActionStep(id="4.9", name="Analyst accepts", loan_index=0,
                          action=ContractAction.ACCEPT, borrower_id="analyst")

        result = await engine.execute_step(step)

        assert not result.success
        assert result.error == "ReservationViolation"
        assert step.status == StepStatus.FAILED
        assert engine.registry.find_loan(0).borrower == "bor-alice"

    @pytest.mark.asyncio
    async def test_expected_rejection_passes(self, engine):
        await engine.run_to_breakpoint(4)
        step = ActionStep(id="4.9", name="Wrong buyer", loan_index=0, action=ContractAction.ACCEPT,
                          borrower_id="analyst", expect_failure=True)

        result = await engine.execute_step(step)

        assert result.success
        assert step.status == StepStatus.PASSED
        assert result.data["rejected_with"] == "ReservationViolation"

    @pytest.mark.asyncio
    async def test_unexpected_success_fails(self, engine):
        await engine.run_to_breakpoint(4)
        step = ActionStep(id="4.9", name="Accept", loan_index=0, action=ContractAction.ACCEPT,
                          expect_failure=True)

        result = await engine.execute_step(step)

        assert not result.success
        assert result.error == "UnexpectedSuccess"

    @pytest.mark.asyncio
    async def test_guard_fails_on_a_different_rejection(self, engine):
        await engine.run_to_breakpoint(4)
        step = ActionStep(id="4.9", name="Wrong buyer", loan_index=7, action=ContractAction.ACCEPT,
                          borrower_id="bor-bob", expect_failure=True,
                          expected_error="ReservationViolation")

        result = await engine.execute_step(step)

        assert not result.success
        assert step.status == StepStatus.FAILED
        assert result.error == "LoanStateError"
        assert "Expected ReservationViolation" in result.message

    @pytest.mark.asyncio
    async def test_guard_passes_on_the_named_rejection(self, engine):
        await engine.run_to_breakpoint(4)
        step = ActionStep(id="4.9", name="Wrong buyer", loan_index=0, action=ContractAction.ACCEPT,
                          borrower_id="analyst", expect_failure=True,
                          expected_error="ReservationViolation")

        result = await engine.execute_step(step)

        assert result.success
        assert step.status == StepStatus.PASSED

    @pytest.mark.asyncio
    async def test_scenario_guard_names_its_rejection(self, gateway, test_settings):
        config = make_run_config(lifecycle_case=LifecycleCase.RESERVATION_GUARD, extra_borrower=True)
        engine = PipelineEngine(gateway, config=config, settings=test_settings)

        guard = engine.phases[3].steps[0]

        assert guard.expect_failure
        assert guard.expected_error == "ReservationViolation"

    @pytest.mark.asyncio
    async def test_non_essential_persistence_failure_warns(self, engine, gateway, monkeypatch):
        monkeypatch.setattr(
            gateway,
            "persist_contract",
            AsyncMock(side_effect=GatewayFailure("records offline", essential=False)),
        )

        state = await engine.run_to_completion()

        assert state == RunState.COMPLETE
        assert find_step(engine, "3.1").status == StepStatus.PASSED
        assert engine.registry.find_loan(0).remote_id is None
        assert any("not persisted" in m for m in gateway.messages_at("warning"))

    @pytest.mark.asyncio
    async def test_unexpected_exception_contained(self, engine, gateway, monkeypatch):
        monkeypatch.setattr(gateway, "mint_asset", AsyncMock(side_effect=RuntimeError("boom")))
        await engine.run_to_breakpoint(2)

        result = await engine.execute_step(find_step(engine, "2.1"))

        assert not result.success
        assert result.message == "Unexpected error: boom"
        assert result.error == "RuntimeError"


# =============================================================================
# Snapshot Tests
# =============================================================================

class TestSnapshot:
    """Test run snapshots."""

    @pytest.mark.asyncio
    async def test_snapshot_is_detached(self, engine):
        await engine.run_to_breakpoint(4)

        snapshot = engine.snapshot()
        engine.registry.find_loan(0).state.balance = 0

        assert snapshot.state == RunState.PAUSED
        assert snapshot.current_phase == 3
        assert snapshot.loan_contracts[0].state.balance > 0
        assert len(snapshot.identities) == 3
