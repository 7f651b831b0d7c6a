"""
Provider clients.
"""

from listing_extractor.providers.base import ProviderClient
from listing_extractor.providers.http import HttpJsonProvider, build_http_client, build_http_providers

__all__ = ["ProviderClient", "HttpJsonProvider", "build_http_client", "build_http_providers"]
