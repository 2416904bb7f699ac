"""
Retry Combinator.

Explicit retry policies consumed by a generic ``retry_async`` helper.
The delay ladder is ``min(base_delay * 2 ** attempt, max_delay)`` with an
optional proportional jitter, the same exponential scheme the background
workers use for consecutive failures.
"""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


class RetryPolicy(BaseModel):
    """How many times, and how far apart, a fallible operation is retried.

    Attributes
    ----------
    max_retries:
        Additional attempts after the first one.  ``0`` disables retrying.
    base_delay:
        Delay in seconds before the first retry.
    max_delay:
        Upper bound in seconds for any single delay.
    jitter:
        Proportional jitter; ``0.1`` spreads each delay by +/- 10 %.
    """

    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=10.0, ge=0.0)
    jitter: float = Field(default=0.1, ge=0.0, le=1.0)

    model_config = ConfigDict(frozen=True)


def backoff_delay(
    policy: RetryPolicy,
    attempt: int,
    rng: Optional[random.Random] = None,
) -> float:
    """Return the sleep before retry number *attempt* (zero-based)."""
    delay: float = min(policy.base_delay * (2 ** attempt), policy.max_delay)
    if policy.jitter:
        spread: float = delay * policy.jitter
        delay += (rng or random).uniform(-spread, spread)
    return max(delay, 0.0)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    should_retry: Callable[[Exception], bool] = lambda exc: True,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    sleep: SleepFn = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> T:
    """Run *operation* until it succeeds or *policy* is exhausted.

    The last exception is re-raised when every attempt fails, or
    immediately when *should_retry* rejects it.  ``asyncio.CancelledError``
    is never caught.
    """
    attempt: int = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            if attempt >= policy.max_retries or not should_retry(exc):
                raise
            delay: float = backoff_delay(policy, attempt, rng)
            if on_retry is not None:
                on_retry(attempt + 1, exc, delay)
            await sleep(delay)
            attempt += 1
