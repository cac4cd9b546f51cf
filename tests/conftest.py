"""Pytest fixtures and utilities for the CLO pipeline test suite."""
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio

from clo_pipeline.core.config import PipelineSettings
from clo_pipeline.core.context import RunContext
from clo_pipeline.core.engine import PipelineEngine
from clo_pipeline.core.models import (
    AssetConfig,
    CLOConfig,
    LifecycleCase,
    LoanConfig,
    Role,
    RunConfig,
    TrancheConfig,
    WalletConfig,
)
from clo_pipeline.gateway.emulator import EmulatorGateway
from clo_pipeline.storage.database import Database


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def test_settings():
    """Fresh settings with no simulated step delay."""
    settings = PipelineSettings()
    settings.network.step_delay_seconds = 0
    return settings


def make_tranches(senior=60, mezzanine=25, junior=15):
    return [
        TrancheConfig(name="Senior", allocation=Decimal(senior), yield_modifier=80),
        TrancheConfig(name="Mezzanine", allocation=Decimal(mezzanine), yield_modifier=100),
        TrancheConfig(name="Junior", allocation=Decimal(junior), yield_modifier=150),
    ]


def make_run_config(
    network: str = "emulator",
    lifecycle_case: Optional[LifecycleCase] = None,
    reserved: bool = True,
    tranches=None,
    extra_borrower: bool = False,
    frequency: int = 12,
    term_months: int = 12,
) -> RunConfig:
    """Three-participant scenario: one originator, one borrower, one analyst.

    A single reserved 500 ADA loan at 6% over 12 monthly payments (unless
    ``frequency`` / ``term_months`` say otherwise), bundled into a 60/25/15 CLO.
    """
    wallets = [
        WalletConfig(
            id="orig-jewelry",
            name="Jewelry Originator",
            role=Role.ORIGINATOR,
            initial_funding=Decimal("10000"),
            assets=[AssetConfig(name="Diamond", quantity=2)],
        ),
        WalletConfig(id="bor-alice", name="Alice", role=Role.BORROWER, initial_funding=Decimal("1000")),
        WalletConfig(id="analyst", name="CLO Analyst", role=Role.ANALYST, initial_funding=Decimal("1000")),
    ]
    if extra_borrower:
        wallets.append(
            WalletConfig(id="bor-bob", name="Bob", role=Role.BORROWER, initial_funding=Decimal("1000"))
        )

    loan = LoanConfig(
        borrower_id="bor-alice" if reserved else None,
        originator_id="orig-jewelry",
        asset="Diamond",
        quantity=1,
        principal=Decimal("500"),
        apr=Decimal("6"),
        frequency=frequency,
        term_months=term_months,
        reserved_buyer=reserved,
        lifecycle_case=lifecycle_case,
    )
    return RunConfig(
        network=network,
        wallets=wallets,
        loans=[loan],
        clo=CLOConfig(name="Test CLO", tranches=tranches or make_tranches()),
    )


@pytest.fixture
def run_config():
    """Happy path run configuration."""
    return make_run_config()


# =============================================================================
# Gateway / Storage Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def test_database():
    """Create an in-memory test database."""
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def gateway():
    """Emulator gateway keeping records in memory."""
    return EmulatorGateway(network="emulator", period_ms=2_629_743_000)


@pytest.fixture
def preview_gateway():
    """Gateway whose wallets are funded externally."""
    return EmulatorGateway(network="preview", period_ms=2_629_743_000)


# =============================================================================
# Engine Fixtures
# =============================================================================

@pytest.fixture
def engine(gateway, run_config, test_settings):
    """Pipeline engine over the happy path configuration."""
    return PipelineEngine(gateway, config=run_config, settings=test_settings, run_id="run-test")


@pytest.fixture
def context(gateway, run_config, test_settings):
    """Bare run context for driving phases directly."""
    return RunContext(run_config, gateway, settings=test_settings, run_id="run-ctx")


def find_step(engine: PipelineEngine, step_id: str):
    """Step of the engine by id."""
    for phase in engine.phases:
        for step in phase.steps:
            if step.id == step_id:
                return step
    raise KeyError(step_id)
