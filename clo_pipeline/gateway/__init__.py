"""External gateway: wallet / ledger operations and persistence."""

from clo_pipeline.gateway.base import ExternalGateway, RetryConfig, with_retry
from clo_pipeline.gateway.emulator import EmulatorGateway

__all__ = [
    "ExternalGateway",
    "EmulatorGateway",
    "RetryConfig",
    "with_retry",
]
