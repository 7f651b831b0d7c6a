"""
HTTP JSON provider adapter.

Posts the step input as JSON to a configured endpoint and returns the decoded
body. HTTP failures are translated into the pipeline's error taxonomy so the
runner can decide whether to retry.
"""

import contextlib
from typing import Any

import httpx
import structlog

from listing_extractor.core.config import Settings
from listing_extractor.core.exceptions import NotFound, ProviderError, ProviderUnavailable, RateLimited
from listing_extractor.providers.base import ProviderClient

logger = structlog.get_logger()

STATUS_NOT_FOUND = 404
STATUS_REQUEST_TIMEOUT = 408
STATUS_TOO_MANY_REQUESTS = 429
STATUS_INTERNAL_SERVER_ERROR = 500

# Transport failures that are worth another attempt
TRANSIENT_EXCEPTIONS = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


class HttpJsonProvider(ProviderClient):
    """Provider backed by a JSON-over-HTTP endpoint."""

    def __init__(
        self,
        name: str,
        endpoint: str,
        client: httpx.AsyncClient,
        api_key: str | None = None,
    ):
        self.name = name
        self.endpoint = endpoint
        self.client = client
        self.api_key = api_key
        self.log = logger.bind(provider=name)

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def fetch(self, payload: dict[str, Any]) -> Any:
        try:
            response = await self.client.post(self.endpoint, json=payload, headers=self._headers())
        except TRANSIENT_EXCEPTIONS as e:
            raise ProviderUnavailable(f"{self.name} unreachable: {e}", provider=self.name) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.name} request failed: {e}", provider=self.name) from e

        status = response.status_code
        if status == STATUS_TOO_MANY_REQUESTS:
            retry_after = None
            with contextlib.suppress(TypeError, ValueError):
                retry_after = float(response.headers.get("retry-after"))
            self.log.warning("Provider rate limited", retry_after=retry_after)
            raise RateLimited(f"{self.name} rate limited", provider=self.name, retry_after=retry_after)
        if status == STATUS_NOT_FOUND:
            raise NotFound(f"{self.name} found nothing for this entity", provider=self.name)
        if status == STATUS_REQUEST_TIMEOUT or status >= STATUS_INTERNAL_SERVER_ERROR:
            raise ProviderUnavailable(f"{self.name} returned HTTP {status}", provider=self.name)
        if status >= 400:
            raise ProviderError(
                f"{self.name} rejected the request with HTTP {status}",
                provider=self.name,
                details={"status": status, "body": response.text[:500]},
            )

        try:
            return response.json()
        except ValueError:
            # Keep the body verbatim; the step's mapping decides whether it is usable
            return response.text


def build_http_providers(settings: Settings, client: httpx.AsyncClient) -> dict[str, ProviderClient]:
    """One HttpJsonProvider per configured endpoint."""
    providers: dict[str, ProviderClient] = {
        name: HttpJsonProvider(name, endpoint, client, api_key=settings.provider_api_key)
        for name, endpoint in settings.provider_endpoints.items()
    }
    logger.info("Providers configured", providers=sorted(providers))
    return providers


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.provider_timeout),
        headers={"User-Agent": f"{settings.app_name}/{settings.app_version}"},
    )
