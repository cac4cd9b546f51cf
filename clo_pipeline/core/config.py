"""Configuration management for the loan / CLO pipeline."""

from decimal import Decimal
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# System Configuration
# =============================================================================


class SystemConfig(BaseSettings):
    """System-level configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development", validation_alias="ENVIRONMENT"
    )
    app_name: str = Field(default="CLO Pipeline", validation_alias="APP_NAME")
    app_version: str = Field(default="1.0.0", validation_alias="APP_VERSION")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )


# =============================================================================
# Network Configuration
# =============================================================================


class NetworkConfig(BaseSettings):
    """Ledger network and simulated clock."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    # emulator: in-memory ledger, funded by construction
    # preview: public test network, funded externally
    network: Literal["emulator", "preview"] = Field(
        default="emulator", validation_alias="PIPELINE_NETWORK"
    )

    # One simulated period (calendar month)
    period_ms: int = Field(default=2_629_743_000, gt=0, validation_alias="PERIOD_MS")

    # Simulated processing delay awaited after each step
    step_delay_seconds: float = Field(
        default=0.0, ge=0, validation_alias="STEP_DELAY_SECONDS"
    )


# =============================================================================
# Funding Configuration
# =============================================================================


class FundingConfig(BaseSettings):
    """Required funding per role (ADA) when a wallet declares none."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    originator_ada: Decimal = Field(
        default=Decimal("10000"), ge=0, validation_alias="FUNDING_ORIGINATOR_ADA"
    )
    borrower_ada: Decimal = Field(
        default=Decimal("5000"), ge=0, validation_alias="FUNDING_BORROWER_ADA"
    )
    analyst_ada: Decimal = Field(
        default=Decimal("1000"), ge=0, validation_alias="FUNDING_ANALYST_ADA"
    )
    investor_ada: Decimal = Field(
        default=Decimal("50000"), ge=0, validation_alias="FUNDING_INVESTOR_ADA"
    )
    agent_ada: Decimal = Field(
        default=Decimal("1000"), ge=0, validation_alias="FUNDING_AGENT_ADA"
    )

    def for_role(self, role: str) -> Decimal:
        """Default funding for a role name (case-insensitive)."""
        return {
            "originator": self.originator_ada,
            "borrower": self.borrower_ada,
            "analyst": self.analyst_ada,
            "investor": self.investor_ada,
            "agent": self.agent_ada,
        }.get(role.lower(), Decimal("0"))


# =============================================================================
# Loan Defaults
# =============================================================================


class LoanDefaultsConfig(BaseSettings):
    """Loan terms applied when a loan definition leaves them out."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    frequency: int = Field(default=12, gt=0, validation_alias="LOAN_FREQUENCY")
    late_fee_ada: Decimal = Field(
        default=Decimal("10"), ge=0, validation_alias="LOAN_LATE_FEE_ADA"
    )
    transfer_fee_buyer_percent: int = Field(
        default=50, ge=0, le=100, validation_alias="TRANSFER_FEE_BUYER_PERCENT"
    )
    transfer_fee_rate: Decimal = Field(
        default=Decimal("0.01"), ge=0, validation_alias="TRANSFER_FEE_RATE"
    )
    transfer_fee_min_ada: Decimal = Field(
        default=Decimal("5"), ge=0, validation_alias="TRANSFER_FEE_MIN_ADA"
    )
    transfer_fee_max_ada: Decimal = Field(
        default=Decimal("25000"), ge=0, validation_alias="TRANSFER_FEE_MAX_ADA"
    )

    # Missed periods past the due date before a default can be claimed
    default_grace_periods: int = Field(
        default=1, ge=1, validation_alias="DEFAULT_GRACE_PERIODS"
    )


# =============================================================================
# CLO Defaults
# =============================================================================


class CLODefaultsConfig(BaseSettings):
    """CLO token naming and redemption."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    manager_nft_name: str = Field(
        default="CLO-Manager-NFT", validation_alias="CLO_MANAGER_NFT_NAME"
    )
    tranche_token_suffix: str = Field(
        default="-Tranche", validation_alias="CLO_TRANCHE_TOKEN_SUFFIX"
    )
    # Lovelace per tranche token (1 token per ADA)
    lovelace_per_token: int = Field(
        default=1_000_000, gt=0, validation_alias="CLO_LOVELACE_PER_TOKEN"
    )
    redemption_fee_basis_points: int = Field(
        default=50, ge=0, le=10_000, validation_alias="CLO_REDEMPTION_FEE_BP"
    )


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/clo_pipeline.db",
        validation_alias="DATABASE_URL",
    )

    @field_validator("database_url")
    @classmethod
    def use_async_driver(cls, v: str) -> str:
        """Upgrade plain sqlite URLs to the aiosqlite driver."""
        if v.startswith("sqlite:///"):
            return v.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
        return v


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_file: str = Field(default="", validation_alias="LOG_FILE")
    json_logs: bool = Field(default=False, validation_alias="LOG_JSON")


# =============================================================================
# Aggregate Configuration
# =============================================================================


class PipelineSettings:
    """
    Container for all pipeline configurations.

    Usage:
        from clo_pipeline.core.config import settings

        if settings.network.network == "preview":
            ...
    """

    def __init__(self):
        self.system = SystemConfig()
        self.network = NetworkConfig()
        self.funding = FundingConfig()
        self.loans = LoanDefaultsConfig()
        self.clo = CLODefaultsConfig()
        self.database = DatabaseConfig()
        self.logging = LoggingConfig()

    @property
    def is_emulator(self) -> bool:
        return self.network.network == "emulator"

    def validate_configuration(self) -> dict:
        """
        Validate the complete configuration and return any issues.

        Returns:
            Dictionary with 'valid' boolean and 'issues' list
        """
        issues = []

        if self.loans.transfer_fee_min_ada > self.loans.transfer_fee_max_ada:
            issues.append(
                f"Transfer fee minimum ({self.loans.transfer_fee_min_ada}) exceeds "
                f"maximum ({self.loans.transfer_fee_max_ada})"
            )

        if self.loans.transfer_fee_rate > 1:
            issues.append(
                f"Transfer fee rate ({self.loans.transfer_fee_rate}) must not exceed 1"
            )

        if not self.clo.tranche_token_suffix:
            issues.append("Tranche token suffix must not be empty")

        if not self.database.database_url.startswith(("sqlite+aiosqlite://", "postgresql+asyncpg://")):
            issues.append(
                f"Database URL must use an async driver: {self.database.database_url}"
            )

        return {"valid": len(issues) == 0, "issues": issues}


# =============================================================================
# Global Configuration Instance
# =============================================================================

settings = PipelineSettings()


__all__ = [
    "PipelineSettings",
    "settings",
    "SystemConfig",
    "NetworkConfig",
    "FundingConfig",
    "LoanDefaultsConfig",
    "CLODefaultsConfig",
    "DatabaseConfig",
    "LoggingConfig",
]
