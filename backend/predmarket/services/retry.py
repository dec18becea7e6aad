"""Bounded retry helper for ledger round-trips."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from loguru import logger

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


class RetryError(Exception):
    """Raised once every attempt of a retried operation has failed."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def exponential_backoff(base: float = 1.0, *, cap: float | None = None) -> Callable[[int], float]:
    """Return ``attempt -> delay`` doubling from ``base`` (attempt numbers start at 1)."""

    def _delay(attempt: int) -> float:
        delay = base * (2 ** (attempt - 1))
        return min(delay, cap) if cap is not None else delay

    return _delay


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    backoff: Callable[[int], float],
    is_retryable: Callable[[BaseException], bool] = lambda exc: True,
    sleep: Sleep = asyncio.sleep,
    description: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or ``max_attempts`` is exhausted.

    Errors for which ``is_retryable`` returns False propagate immediately.
    There is no pause after the final attempt.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: BaseException | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except Exception as exc:
            if not is_retryable(exc):
                raise
            last_error = exc
            if attempt == max_attempts:
                break
            delay = backoff(attempt)
            logger.warning(
                "{} attempt {}/{} failed: {}; retrying in {:.2f}s",
                description,
                attempt,
                max_attempts,
                exc,
                delay,
            )
            await sleep(delay)

    assert last_error is not None
    raise RetryError(max_attempts, last_error) from last_error


__all__ = ["RetryError", "Sleep", "exponential_backoff", "retry_async"]
