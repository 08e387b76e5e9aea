# retry.py — Bounded retry with an injectable sleep
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger("aerelion.retry")

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def linear_backoff(base_delay: float) -> Callable[[int], float]:
    """delay(attempt) = base_delay x attempt, attempt counted from 1."""
    def _delay(attempt: int) -> float:
        return base_delay * attempt
    return _delay


class RetryPolicy:
    """Re-run an async lookup until it yields a value or retries run out.

    ``max_retries`` counts retries after the first attempt, so the operation
    runs at most ``max_retries + 1`` times. The sleep function is injected so
    tests can record delays instead of waiting. Cancellation of the awaiting
    task propagates out of the sleep unchanged.
    """

    def __init__(
        self,
        max_retries: int,
        delay: Callable[[int], float],
        sleep: Optional[Sleep] = None,
    ):
        self.max_retries = max_retries
        self.delay = delay
        self.sleep = sleep or asyncio.sleep

    async def until_found(
        self,
        operation: Callable[[], Awaitable[Optional[T]]],
        label: str = "operation",
    ) -> Optional[T]:
        result = await operation()
        attempt = 0
        while result is None and attempt < self.max_retries:
            attempt += 1
            wait = self.delay(attempt)
            logger.debug(f"{label}: not found, retry {attempt}/{self.max_retries} in {wait:.2f}s")
            await self.sleep(wait)
            result = await operation()
        return result
