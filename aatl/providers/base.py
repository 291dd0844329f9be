from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx


class Provider(ABC):
    """Base provider interface"""

    name: str
    timeout_s: float = 10

    @abstractmethod
    async def ready(self) -> bool:
        """Check if provider is ready to serve requests"""
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Return provider health status"""
        pass


class JsonRpcProvider(Provider):
    """Provider speaking JSON-RPC 2.0 over HTTP POST with a lazily created client"""

    def __init__(self, rpc_url: str, client: Optional[httpx.AsyncClient] = None) -> None:
        self.rpc_url = rpc_url
        self._client = client
        self._request_id = 0

    def _get_client(self) -> httpx.AsyncClient:
        if not self._client or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)
        return self._client

    def _envelope(self, method: str, params: List[Any]) -> Dict[str, Any]:
        self._request_id += 1
        return {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

    async def aclose(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
