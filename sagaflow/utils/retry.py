from __future__ import annotations

import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from ..config import RetryConfig
from ..constants import (
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_INITIAL_DELAY,
    DEFAULT_RETRY_MAX_DELAY,
    DEFAULT_RETRY_MULTIPLIER,
)
from ..context import ExecutionContext
from ..errors import CancellationError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff(
    attempt: int,
    initial_delay: float = DEFAULT_RETRY_INITIAL_DELAY,
    multiplier: float = DEFAULT_RETRY_MULTIPLIER,
    max_delay: float = DEFAULT_RETRY_MAX_DELAY,
    jitter: float = 0.0,
) -> float:
    """Compute exponential backoff for the zero-based ``attempt`` with jitter."""
    delay = min(initial_delay * multiplier**attempt, max_delay)
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


class RetryPolicy(BaseModel):
    """Bounded retry with exponential backoff."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=DEFAULT_RETRY_ATTEMPTS, ge=1)
    initial_delay: float = Field(default=DEFAULT_RETRY_INITIAL_DELAY, ge=0)
    max_delay: float = Field(default=DEFAULT_RETRY_MAX_DELAY, ge=0)
    multiplier: float = Field(default=DEFAULT_RETRY_MULTIPLIER, ge=1)
    jitter: float = Field(default=0.0, ge=0)
    retry_on: Optional[Callable[[BaseException], bool]] = None

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(**config.model_dump())

    def delay_for(self, attempt: int) -> float:
        return compute_backoff(
            attempt,
            initial_delay=self.initial_delay,
            multiplier=self.multiplier,
            max_delay=self.max_delay,
            jitter=self.jitter,
        )

    def should_retry(self, exc: BaseException) -> bool:
        if isinstance(exc, CancellationError):
            return False
        return self.retry_on is None or self.retry_on(exc)

    async def run(
        self,
        ctx: ExecutionContext,
        fn: Callable[[int], Awaitable[T]],
    ) -> T:
        """Call ``fn(attempt_number)`` until it succeeds or attempts run out.

        Errors rejected by ``retry_on`` propagate unchanged. Backoff sleeps end
        early with :class:`CancellationError` when ``ctx`` is cancelled.

        Raises:
            RetryExhaustedError: If every attempt failed with a retryable error.
        """
        attempt = 0
        while True:
            ctx.raise_if_cancelled()
            try:
                return await fn(attempt + 1)
            except Exception as exc:
                if not self.should_retry(exc):
                    raise
                if attempt >= self.max_attempts - 1:
                    raise RetryExhaustedError(self.max_attempts, exc) from exc
                delay = self.delay_for(attempt)
                logger.debug(
                    f"Attempt {attempt + 1}/{self.max_attempts} failed ({exc}); retrying in {delay:.2f}s"
                )
            await ctx.sleep(delay)
            attempt += 1
