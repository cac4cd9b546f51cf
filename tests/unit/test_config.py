"""Unit tests for pipeline settings."""
from decimal import Decimal

import pytest
from pydantic import ValidationError

from clo_pipeline.core.config import (
    CLODefaultsConfig,
    DatabaseConfig,
    FundingConfig,
    LoanDefaultsConfig,
    LoggingConfig,
    NetworkConfig,
    PipelineSettings,
    SystemConfig,
)


# =============================================================================
# Section Tests
# =============================================================================

class TestSystemConfig:
    """Test SystemConfig configuration."""

    def test_defaults(self):
        config = SystemConfig()

        assert config.app_name == "CLO Pipeline"
        assert config.log_level in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

    def test_invalid_environment(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "qa")
        with pytest.raises(ValidationError):
            SystemConfig()


class TestNetworkConfig:
    """Test NetworkConfig configuration."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("PIPELINE_NETWORK", raising=False)
        monkeypatch.delenv("PERIOD_MS", raising=False)
        config = NetworkConfig()

        assert config.network == "emulator"
        assert config.period_ms == 2_629_743_000

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("PIPELINE_NETWORK", "preview")
        assert NetworkConfig().network == "preview"

    def test_unknown_network_rejected(self, monkeypatch):
        monkeypatch.setenv("PIPELINE_NETWORK", "mainnet")
        with pytest.raises(ValidationError):
            NetworkConfig()


class TestFundingConfig:
    """Test per-role funding defaults."""

    def test_for_role(self):
        config = FundingConfig()

        assert config.for_role("Originator") == config.originator_ada
        assert config.for_role("investor") == config.investor_ada
        assert config.for_role("unknown") == Decimal("0")


class TestLoanDefaultsConfig:
    """Test loan default terms."""

    def test_defaults(self, monkeypatch):
        for name in ("LOAN_FREQUENCY", "TRANSFER_FEE_MIN_ADA", "TRANSFER_FEE_MAX_ADA", "DEFAULT_GRACE_PERIODS"):
            monkeypatch.delenv(name, raising=False)
        config = LoanDefaultsConfig()

        assert config.frequency == 12
        assert config.transfer_fee_min_ada == Decimal("5")
        assert config.transfer_fee_max_ada == Decimal("25000")
        assert config.default_grace_periods == 1

    def test_buyer_percent_bounds(self, monkeypatch):
        monkeypatch.setenv("TRANSFER_FEE_BUYER_PERCENT", "150")
        with pytest.raises(ValidationError):
            LoanDefaultsConfig()


class TestCLODefaultsConfig:
    """Test CLO token defaults."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("CLO_TRANCHE_TOKEN_SUFFIX", raising=False)
        config = CLODefaultsConfig()

        assert config.tranche_token_suffix == "-Tranche"
        assert config.lovelace_per_token == 1_000_000


class TestDatabaseConfig:
    """Test DatabaseConfig configuration."""

    def test_plain_sqlite_url_upgraded(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite:///./test.db")
        assert DatabaseConfig().database_url == "sqlite+aiosqlite:///./test.db"

    def test_async_url_untouched(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
        assert DatabaseConfig().database_url == "sqlite+aiosqlite:///:memory:"


class TestLoggingConfig:
    """Test LoggingConfig configuration."""

    def test_json_switch(self, monkeypatch):
        monkeypatch.setenv("LOG_JSON", "true")
        assert LoggingConfig().json_logs is True


# =============================================================================
# Aggregate Tests
# =============================================================================

class TestPipelineSettings:
    """Test the aggregate settings and validation."""

    def test_sections(self):
        settings = PipelineSettings()

        assert isinstance(settings.network, NetworkConfig)
        assert isinstance(settings.loans, LoanDefaultsConfig)
        assert isinstance(settings.clo, CLODefaultsConfig)

    def test_default_configuration_is_valid(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        result = PipelineSettings().validate_configuration()

        assert result["valid"] is True
        assert result["issues"] == []

    def test_fee_bounds_inverted(self, monkeypatch):
        monkeypatch.setenv("TRANSFER_FEE_MIN_ADA", "100")
        monkeypatch.setenv("TRANSFER_FEE_MAX_ADA", "10")

        result = PipelineSettings().validate_configuration()

        assert result["valid"] is False
        assert any("Transfer fee minimum" in issue for issue in result["issues"])

    def test_sync_database_driver_flagged(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/clo")
        result = PipelineSettings().validate_configuration()
        assert any("async driver" in issue for issue in result["issues"])

    def test_is_emulator(self, monkeypatch):
        monkeypatch.setenv("PIPELINE_NETWORK", "preview")
        assert PipelineSettings().is_emulator is False
