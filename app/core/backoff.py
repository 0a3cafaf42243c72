"""
Exponential backoff with jitter.

Usage:
    backoff = ExponentialBackoff(base_delay=1.0, max_delay=30.0, max_retries=3)

    await backoff.execute(
        lambda attempt: source.connect(),
        on_retry=lambda err, attempt, delay: logger.warning("retrying", attempt=attempt),
        should_retry=lambda err, attempt: is_connection_error(err),
    )
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")

RetryCallback = Callable[[BaseException, int, float], Any]  # (error, next_attempt, delay)
RetryPredicate = Callable[[BaseException, int], bool]  # (error, attempt)


class ExponentialBackoff:
    """Delays are in seconds; attempts are 0-indexed."""

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_retries: int = 5,
        multiplier: float = 2.0,
        jitter: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_retries = max_retries
        self.multiplier = multiplier
        self.jitter = jitter
        self._sleep = sleep

    def get_delay(self, attempt: int) -> float:
        delay = min(self.max_delay, self.base_delay * (self.multiplier**attempt))
        if self.jitter:
            delay *= random.uniform(0.8, 1.2)  # ±20%
        return delay

    async def execute(
        self,
        fn: Callable[[int], Awaitable[T]],
        on_retry: Optional[RetryCallback] = None,
        should_retry: Optional[RetryPredicate] = None,
    ) -> T:
        """
        Await fn(attempt) until it succeeds or retries are exhausted.

        Total attempts are max_retries + 1. The last error propagates unchanged.
        """
        attempt = 0
        while True:
            try:
                return await fn(attempt)
            except Exception as error:
                if should_retry is not None and not should_retry(error, attempt):
                    raise
                if attempt >= self.max_retries:
                    raise

                delay = self.get_delay(attempt)
                if on_retry is not None:
                    on_retry(error, attempt + 1, delay)
                await self._sleep(delay)
                attempt += 1

    async def sleep(self, attempt: int) -> float:
        """Sleep for the delay of the given attempt. Returns the delay used."""
        delay = self.get_delay(attempt)
        await self._sleep(delay)
        return delay
