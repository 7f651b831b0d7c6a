"""
Per-provider concurrency caps.

One limiter is shared by every job running in the process, so the number of
in-flight calls to a third-party provider stays under its quota no matter how
many jobs are active.
"""

import asyncio
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager

import structlog

logger = structlog.get_logger()


class ProviderRateLimiter:
    """Caps simultaneous in-flight calls per provider."""

    def __init__(self, default_limit: int = 4, limits: Mapping[str, int] | None = None):
        if default_limit < 1:
            raise ValueError("default_limit must be >= 1")
        self.default_limit = default_limit
        self.limits = dict(limits or {})
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._in_flight: dict[str, int] = {}
        self.log = logger.bind(component="ProviderRateLimiter")

    def limit_for(self, provider: str) -> int:
        return max(1, self.limits.get(provider, self.default_limit))

    def _semaphore(self, provider: str) -> asyncio.Semaphore:
        if provider not in self._semaphores:
            self._semaphores[provider] = asyncio.Semaphore(self.limit_for(provider))
        return self._semaphores[provider]

    def in_flight(self, provider: str) -> int:
        return self._in_flight.get(provider, 0)

    @asynccontextmanager
    async def slot(self, provider: str) -> AsyncIterator[None]:
        """Hold one call slot for `provider` for the duration of the block."""
        semaphore = self._semaphore(provider)
        if semaphore.locked():
            self.log.debug("Waiting for provider slot", provider=provider, limit=self.limit_for(provider))
        async with semaphore:
            self._in_flight[provider] = self._in_flight.get(provider, 0) + 1
            try:
                yield
            finally:
                self._in_flight[provider] -= 1
