"""Shared retry policy for provider calls."""
import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from .errors import OperationInProgressError, TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Exponential backoff with jitter for transient provider failures.

    Only TransientProviderError is retried. OperationInProgressError (the
    remote is busy with another long operation) waits a fixed
    in_progress_delay instead of the backoff delay. Everything else is
    raised on the first failure.
    """
    attempts: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 10.0
    jitter: float = 0.3
    in_progress_delay: float = 90.0
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> "RetryPolicy":
        """Build a policy from the optional `retry` section of the settings file."""
        section = (config or {}).get("retry") or {}
        policy = cls()
        for key in ("attempts", "initial_delay", "max_delay", "in_progress_delay"):
            if key in section:
                setattr(policy, key, type(getattr(policy, key))(section[key]))
        return policy

    def backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        base = self.initial_delay * (self.multiplier ** attempt)
        return min(base + random.random() * self.jitter * base, self.max_delay)

    async def run(self, operation: Callable[[], Awaitable[T]], description: str = "operation") -> T:
        attempt = 0
        while True:
            try:
                return await operation()
            except TransientProviderError as e:
                attempt += 1
                if attempt >= self.attempts:
                    logger.error(f"{description} failed after {attempt} attempt(s): {e}")
                    raise
                if isinstance(e, OperationInProgressError):
                    delay = self.in_progress_delay
                    logger.warning(f"  Operation still in progress, waiting {delay:.0f}s before retry...")
                else:
                    delay = self.backoff(attempt - 1)
                    logger.warning(f"  Attempt {attempt}/{self.attempts} of {description} failed: {e}")
                    logger.info(f"  Retrying in {delay:.1f}s...")
                await self.sleep(delay)
