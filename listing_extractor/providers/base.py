"""
Provider Client contract.

A provider is an external data source (places search, web search, review
aggregator, image source, AI text service). The pipeline only knows this
contract: `fetch(payload)` returns the raw payload or raises one of the
ProviderError subclasses.
"""

from abc import ABC, abstractmethod
from typing import Any


class ProviderClient(ABC):
    """One external data source."""

    name: str = "provider"

    @abstractmethod
    async def fetch(self, payload: dict[str, Any]) -> Any:
        """
        Call the provider.

        Returns:
            The unmodified provider payload (JSON-serialisable).

        Raises:
            ProviderUnavailable / RateLimited: transient, retried per step policy.
            NotFound: nothing to return for this entity.
        """

    async def close(self) -> None:
        """Release connections held by the client."""
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
