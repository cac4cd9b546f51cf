"""External gateway interface.

The pipeline core reaches the outside world (wallet/ledger operations,
contract persistence, progress narration) only through ``ExternalGateway``.
Every operation is asynchronous and may raise ``GatewayFailure``.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import structlog

from clo_pipeline.core.exceptions import GatewayUnavailable
from clo_pipeline.core.models import MintReceipt, RunSnapshot, WalletHandle

logger = structlog.get_logger(__name__)


class RetryConfig:
    """Configuration for retry logic."""
    DEFAULT_MAX_RETRIES = 3
    DEFAULT_BASE_DELAY = 0.5  # seconds
    DEFAULT_MAX_DELAY = 10.0  # seconds
    DEFAULT_EXPONENTIAL_BASE = 2.0


def with_retry(
    max_retries: int = RetryConfig.DEFAULT_MAX_RETRIES,
    base_delay: float = RetryConfig.DEFAULT_BASE_DELAY,
    max_delay: float = RetryConfig.DEFAULT_MAX_DELAY,
    exponential_base: float = RetryConfig.DEFAULT_EXPONENTIAL_BASE,
    retryable_exceptions: tuple = (GatewayUnavailable,)
):
    """Decorator for adding retry logic with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        retryable_exceptions: Tuple of exceptions that should trigger a retry
    """
    def decorator(func):
        async def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    last_exception = e
                    if attempt < max_retries:
                        delay = min(
                            base_delay * (exponential_base ** attempt),
                            max_delay
                        )
                        logger.warning(
                            f"{func.__name__}.retry_attempt",
                            attempt=attempt + 1,
                            max_retries=max_retries,
                            delay=delay,
                            error=str(e)
                        )
                        await asyncio.sleep(delay)

            # All retries exhausted
            logger.error(
                f"{func.__name__}.max_retries_exceeded",
                max_retries=max_retries,
                last_error=str(last_exception)
            )
            raise last_exception

        return wrapper
    return decorator


class ExternalGateway(ABC):
    """
    Abstract capability set consumed by the pipeline engine.

    Wallet / ledger:
    - create_wallets(), fund_wallets(), list_wallets()
    - query_balance(), mint_asset()
    - advance_time(), advance_time_to(), current_time()

    Persistence:
    - persist_contract(), update_contract_state(), save_checkpoint()

    Narration:
    - log()
    """

    network: str = "emulator"

    @abstractmethod
    async def create_wallets(self, specs: List[WalletHandle]) -> List[WalletHandle]:
        """Create one wallet per spec and return the handles with addresses."""
        pass

    @abstractmethod
    async def fund_wallets(self, handles: List[WalletHandle]) -> None:
        """Bring each wallet up to its required balance where the network allows it."""
        pass

    @abstractmethod
    async def list_wallets(self) -> List[WalletHandle]:
        """Wallets already known to the external store."""
        pass

    @abstractmethod
    async def query_balance(self, address: str) -> int:
        """Ledger balance of an address in lovelace."""
        pass

    @abstractmethod
    async def mint_asset(self, address: str, asset_name: str, quantity: int) -> MintReceipt:
        """Mint ``quantity`` of a native asset into ``address``."""
        pass

    @abstractmethod
    async def advance_time(self, periods: int) -> None:
        """Move the ledger clock forward by whole periods."""
        pass

    @abstractmethod
    async def advance_time_to(self, timestamp: int) -> None:
        """Move the ledger clock forward to ``timestamp`` (ms); never backwards."""
        pass

    @abstractmethod
    async def current_time(self) -> int:
        """Ledger clock in milliseconds."""
        pass

    @abstractmethod
    async def persist_contract(self, record: Dict[str, Any]) -> str:
        """Durably store a contract record; returns its remote id."""
        pass

    @abstractmethod
    async def update_contract_state(self, remote_id: str, patch: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def save_checkpoint(self, snapshot: RunSnapshot) -> Optional[int]:
        pass

    @abstractmethod
    async def log(self, message: str, level: str = "info") -> None:
        pass
