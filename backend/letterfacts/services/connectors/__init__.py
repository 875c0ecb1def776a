from __future__ import annotations

from functools import lru_cache

from .base import (
    BaseConnector,
    ConnectorError,
    ConnectorNotConfiguredError,
    ConnectorResult,
    SearchConnector,
)
from .google_search import GoogleSearchConnector
from .web_page import (
    FetchError,
    FetchResponse,
    FetchTimeoutError,
    ResponseTooLargeError,
    UnsafeUrlError,
    WebPageFetcher,
)

__all__ = [
    "BaseConnector",
    "ConnectorError",
    "ConnectorNotConfiguredError",
    "ConnectorResult",
    "FetchError",
    "FetchResponse",
    "FetchTimeoutError",
    "GoogleSearchConnector",
    "ResponseTooLargeError",
    "SearchConnector",
    "UnsafeUrlError",
    "WebPageFetcher",
    "get_search_connector",
    "get_web_fetcher",
]


# Connectors hold no per-request state, so one instance per process is enough.

@lru_cache(maxsize=1)
def get_web_fetcher() -> WebPageFetcher:
    return WebPageFetcher()


@lru_cache(maxsize=1)
def get_search_connector() -> SearchConnector:
    return GoogleSearchConnector()
