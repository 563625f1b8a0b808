"""
Retry policy with capped exponential backoff.

This module provides:
- RetryPolicy deciding whether a classified error is retried
- Exponential delays with optional jitter, capped at a maximum
- RetryState tracking the delays of a single fetch
- execute() running an async operation under the policy
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, TypeVar

import structlog

from .errors import ScrapingError, classify_exception

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryState:
    """Retry bookkeeping for one fetch. Never persisted."""
    attempt: int = 0
    next_delay: float = 0.0
    cumulative_delay: float = 0.0
    delays: List[float] = field(default_factory=list)


class RetryPolicy:
    """Bounded retry with exponential backoff."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 2.0,
        max_delay: float = 30.0,
        backoff_multiplier: float = 2.0,
        jitter: float = 0.0,
        rng: Optional[random.Random] = None,
        logger=None,
    ):
        """
        Initialize the retry policy.

        Args:
            max_retries: Retries allowed after the first attempt
            base_delay: Delay before the first retry, in seconds
            max_delay: Upper bound for any single delay
            backoff_multiplier: Growth factor between consecutive delays
            jitter: Random spread as a ratio of the delay (0 disables)
            rng: Random source, injectable for deterministic tests
            logger: structlog logger
        """
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if base_delay < 0 or max_delay < 0:
            raise ValueError("delays must be >= 0")
        if backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier
        self.jitter = jitter
        self.rng = rng or random.Random()
        self.logger = (logger or structlog.get_logger(__name__)).bind(component="retry_policy")

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            backoff_multiplier=settings.retry_backoff_multiplier,
            jitter=settings.retry_jitter,
            **kwargs
        )

    def should_retry(self, attempt: int, error: ScrapingError) -> bool:
        """
        Decide whether a failed attempt is retried.

        Args:
            attempt: Number of retries already performed
            error: Classified failure of the latest attempt

        Returns:
            True when the error is recoverable and the bound is not reached
        """
        return attempt < self.max_retries and bool(error.recoverable)

    def next_delay(self, attempt: int) -> float:
        """Un-jittered delay before retry number `attempt` (0-based)."""
        return min(self.base_delay * (self.backoff_multiplier ** attempt), self.max_delay)

    def advance(self, state: RetryState) -> float:
        """
        Compute the next delay and record it on the state.

        Delays never decrease within one fetch and never exceed max_delay,
        whatever the jitter draws.
        """
        delay = self.next_delay(state.attempt)
        if self.jitter:
            delay = delay * (1 + self.rng.uniform(-self.jitter, self.jitter))
        if state.delays:
            delay = max(delay, state.delays[-1])
        delay = min(max(delay, 0.0), self.max_delay)

        state.attempt += 1
        state.next_delay = delay
        state.cumulative_delay += delay
        state.delays.append(delay)
        return delay

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        state: Optional[RetryState] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        label: str = "operation",
    ) -> T:
        """
        Run an async operation under the policy.

        Args:
            operation: Zero-argument coroutine factory
            state: RetryState to update, a fresh one when None
            sleep: Awaitable sleep used between attempts
            label: Name used in log entries

        Returns:
            Result of the first successful attempt

        Raises:
            ScrapingError: Classified error of the last attempt
        """
        state = state if state is not None else RetryState()

        while True:
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = classify_exception(e)
                if not self.should_retry(state.attempt, error):
                    if error is e:
                        raise
                    raise error from e

                delay = self.advance(state)
                self.logger.warning(
                    "Retrying after recoverable error",
                    operation=label,
                    attempt=state.attempt,
                    max_retries=self.max_retries,
                    delay_seconds=round(delay, 3),
                    classification=error.classification.value,
                    error=str(e)
                )
                await sleep(delay)
