"""
Retry with exponential backoff for transient failures.

Only exceptions listed in retry_on are retried; anything else propagates
on the first attempt. An exception carrying a retry_after attribute
(seconds) overrides the computed delay, still capped at max_delay.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class RetryPolicy:
    """
    Policy for retrying failed calls.

    Controls max attempts and backoff strategy.
    """
    max_attempts: int = 3                   # Total attempts, including the first
    initial_delay: float = 1.0              # Initial delay in seconds
    max_delay: float = 30.0                 # Maximum delay in seconds
    backoff_multiplier: float = 2.0         # Exponential backoff multiplier
    jitter: bool = True                     # Add randomization to prevent thundering herd

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Delay before the next attempt.

        Args:
            attempt: 1-based number of the attempt that just failed
            retry_after: Server-provided delay, used instead of the backoff
        """
        if retry_after is not None and retry_after >= 0:
            return min(float(retry_after), self.max_delay)

        delay = min(
            self.initial_delay * (self.backoff_multiplier ** (attempt - 1)),
            self.max_delay
        )
        if self.jitter:
            delay *= (0.5 + random.random())  # 0.5x - 1.5x jitter
        return min(delay, self.max_delay)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...],
    description: str = "call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> T:
    """
    Await fn() until it succeeds or the policy runs out of attempts.

    Raises:
        The last retryable exception once attempts are exhausted, or any
        non-retryable exception immediately.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except retry_on as e:
            if attempt >= policy.max_attempts:
                logger.warning(f"{description} failed after {attempt} attempts: {e}")
                raise

            delay = policy.delay_for(attempt, getattr(e, 'retry_after', None))
            logger.info(
                f"Retrying {description} after {delay:.2f}s "
                f"(attempt {attempt}/{policy.max_attempts}, error: {e})"
            )
            await sleep(delay)
