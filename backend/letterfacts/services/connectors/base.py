from abc import ABC, abstractmethod
from typing import Any, Dict, List


class ConnectorError(RuntimeError):
    """Upstream call failed; callers record it and carry on."""


class ConnectorNotConfiguredError(ConnectorError):
    """Required credentials for a connector are missing."""


class ConnectorResult(dict):
    """Light wrapper, but can add metadata later."""


class BaseConnector(ABC):
    name: str

    @abstractmethod
    async def fetch(self, **kwargs) -> ConnectorResult:
        ...


class SearchConnector(BaseConnector):
    """
    Web search collaborator. `fetch(query=...)` returns
    ConnectorResult({"items": [{"title", "snippet", "link"}, ...]}).
    """

    async def search(self, query: str) -> List[Dict[str, Any]]:
        result = await self.fetch(query=query)
        return list(result.get("items") or [])
