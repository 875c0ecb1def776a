# backend/letterfacts/services/connectors/google_search.py
from __future__ import annotations

import logging
from typing import Any, Dict, List

import httpx

from .base import ConnectorError, ConnectorNotConfiguredError, ConnectorResult, SearchConnector
from ...core.config import get_settings

logger = logging.getLogger(__name__)


class GoogleSearchConnector(SearchConnector):
    """
    Google Custom Search JSON API.

    Results are normalised to {"title", "snippet", "link"} dicts. Japanese
    results are preferred (`lr=lang_ja`) since the letters are written in Japanese.
    """

    name = "google_search"

    def __init__(self, timeout: float = 10.0) -> None:
        self.search_url = "https://www.googleapis.com/customsearch/v1"
        self.timeout = timeout

    def _params(self, query: str) -> Dict[str, Any]:
        settings = get_settings()
        if not settings.GOOGLE_SEARCH_API_KEY or not settings.GOOGLE_SEARCH_ENGINE_ID:
            raise ConnectorNotConfiguredError("Search configuration is missing")
        return {
            "key": settings.GOOGLE_SEARCH_API_KEY,
            "cx": settings.GOOGLE_SEARCH_ENGINE_ID,
            "q": query,
            "num": settings.GOOGLE_SEARCH_NUM_RESULTS,
            "lr": "lang_ja",
        }

    @staticmethod
    def _parse_items(data: Dict[str, Any]) -> List[Dict[str, str]]:
        items = data.get("items")
        if not isinstance(items, list):
            return []
        return [
            {
                "title": item.get("title") or "",
                "snippet": item.get("snippet") or "",
                "link": item.get("link") or "",
            }
            for item in items
            if isinstance(item, dict)
        ]

    async def fetch(self, query: str = "", **kwargs) -> ConnectorResult:
        params = self._params(query)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(self.search_url, params=params)
        except httpx.HTTPError as exc:
            raise ConnectorError(f"Google Search request failed: {exc}") from exc

        if resp.status_code != 200:
            raise ConnectorError(f"Google Search API failed with status {resp.status_code}")

        items = self._parse_items(resp.json())
        logger.info(
            "Google search returned %d items",
            len(items),
            extra={"connector": self.name},
        )
        return ConnectorResult({"items": items})
