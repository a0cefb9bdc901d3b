"""
Bounded retry with exponential backoff for transient infrastructure errors.

Only TransientInfraError (and subclasses) is retried. Anything else, including
ConfigurationError, propagates on the first attempt.

    policy = RetryPolicy(RetryConfig(max_attempts=3, initial_delay=1.0))
    result = await policy.run("push vote", registry.promote, image, "latest")
    result.value, result.attempts
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from pydantic import BaseModel, Field

from controller.src.errors import RetryExhaustedError, TransientInfraError

logger = logging.getLogger(__name__)

T = TypeVar("T")

class RetryConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)  # Total attempts, including the first
    initial_delay: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=30.0, ge=0)
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings) -> "RetryConfig":
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay,
            backoff_multiplier=settings.retry_backoff_multiplier,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
        )

@dataclass
class RetryResult(Generic[T]):
    value: T
    attempts: int

class RetryPolicy:
    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or RetryConfig()
        self._sleep = sleep

    def calculate_delay(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-indexed), capped at max_delay."""
        delay = self.config.initial_delay * (self.config.backoff_multiplier ** (attempt - 1))
        delay = min(delay, self.config.max_delay)
        if self.config.jitter and delay > 0:
            # +-20%
            delay += random.uniform(-0.2 * delay, 0.2 * delay)
        return max(delay, 0.0)

    async def run(self, operation: str, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> RetryResult[T]:
        last_error: Optional[TransientInfraError] = None

        for attempt in range(1, self.config.max_attempts + 1):
            try:
                value = await fn(*args, **kwargs)
                if attempt > 1:
                    logger.info(f"{operation} succeeded on attempt {attempt}")
                return RetryResult(value=value, attempts=attempt)
            except TransientInfraError as e:
                last_error = e
                if attempt == self.config.max_attempts:
                    break
                delay = self.calculate_delay(attempt)
                logger.warning(
                    f"{operation} failed (attempt {attempt}/{self.config.max_attempts}): {e}; "
                    f"retrying in {delay:.2f}s"
                )
                await self._sleep(delay)

        logger.error(f"{operation} gave up after {self.config.max_attempts} attempt(s)")
        raise RetryExhaustedError(operation, self.config.max_attempts, last_error)
