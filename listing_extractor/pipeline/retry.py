"""
Retry policy and backoff helpers.

`RetryPolicy` is the per-step declaration consulted by the runner between
provider attempts. `with_retries` wraps short infrastructure operations
(Job Store writes) with the same exponential backoff.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Max attempts plus a capped exponential backoff schedule."""

    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.1  # 0.1 = ±10%

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        """Seconds to wait after the given (1-based) attempt failed."""
        delay = retry_after or min(
            self.backoff_base * (self.multiplier ** (attempt - 1)), self.backoff_max
        )
        if self.jitter:
            delay *= 1 + random.uniform(-self.jitter, self.jitter)
        return max(delay, 0.0)

    def schedule(self) -> list[float]:
        """Nominal delays between attempts, without jitter."""
        return [
            min(self.backoff_base * (self.multiplier ** (n - 1)), self.backoff_max)
            for n in range(1, self.max_attempts)
        ]


DEFAULT_RETRY = RetryPolicy()
# Slow, quota-bound providers (AI generation, review scrapers)
PATIENT_RETRY = RetryPolicy(max_attempts=4, backoff_base=2.0, backoff_max=60.0)
NO_RETRY = RetryPolicy(max_attempts=1)


async def with_retries(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = 3,
    backoff_base: float = 0.5,
    backoff_max: float = 10.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    **kwargs: Any,
) -> T:
    """
    Execute an async function with exponential backoff retries.

    Raises:
        Last exception if all attempts fail
    """
    policy = RetryPolicy(
        max_attempts=max_attempts, backoff_base=backoff_base, backoff_max=backoff_max
    )
    log = logger.bind(func=getattr(func, "__name__", repr(func)), max_attempts=max_attempts)

    for attempt in range(1, max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except retry_on as e:
            if attempt >= max_attempts:
                log.error("All retry attempts failed", error=str(e), attempts=max_attempts)
                raise
            delay = policy.delay_for(attempt)
            log.warning("Retry after exception", error=str(e), attempt=attempt, delay=round(delay, 2))
            await asyncio.sleep(delay)

    raise RuntimeError("Unexpected retry loop exit")
