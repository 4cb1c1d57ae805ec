"""Bounded retry combinator for async operations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhausted(Exception):
    """Raised when every attempt failed or the give-up condition fired."""

    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Fixed-delay retry policy.

    ``max_attempts`` <= 0 means retry until ``give_up`` says stop.
    """

    max_attempts: int = 3
    delay: float = 0.5

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts > 0 and attempt >= self.max_attempts


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    give_up: Callable[[], bool] | None = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    label: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds, the policy is exhausted, or ``give_up()`` is true.

    ``give_up`` is checked before every retry sleep, so a caller can stop a long
    retry sequence as soon as its reason for retrying disappears. Cancellation
    propagates immediately.
    """
    attempt = 0
    last_error: BaseException | None = None
    while True:
        attempt += 1
        try:
            return await operation()
        except retry_on as e:
            last_error = e
            logger.warning("%s attempt %d failed: %s", label, attempt, e)

        if policy.exhausted(attempt):
            logger.error("%s failed after %d attempts", label, attempt)
            raise RetryExhausted(attempt, last_error)
        if give_up is not None and give_up():
            logger.info("%s abandoned after %d attempts", label, attempt)
            raise RetryExhausted(attempt, last_error)
        await asyncio.sleep(policy.delay)
