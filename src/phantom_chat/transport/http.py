"""
REST client for the local P2P node's command API.
"""

from typing import Any, Optional

import httpx

from phantom_chat.errors import TransportError

DEFAULT_NODE_URL = "http://127.0.0.1:7733"


class HttpClient:
    def __init__(self, base_url: str = DEFAULT_NODE_URL, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=f"{self._base_url}/api",
            headers={"User-Agent": "phantom-chat/0.1.0", "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @staticmethod
    def _unwrap(resp: httpx.Response) -> Any:
        """Unwrap ``{"ok": true, "data": ...}``; raise the node's error text otherwise."""
        try:
            body = resp.json() if resp.content else None
        except ValueError:
            body = None
        if resp.status_code >= 400 or (isinstance(body, dict) and body.get("ok") is False):
            message = body.get("error") if isinstance(body, dict) else None
            raise TransportError(message or f"HTTP {resp.status_code}: {resp.text[:200]}",
                                 {"status": resp.status_code})
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    async def get(self, path: str) -> Any:
        try:
            resp = await self._client.get(path)
        except httpx.HTTPError as e:
            raise TransportError(f"GET {path} failed: {e}") from e
        return self._unwrap(resp)

    async def post(self, path: str, body: Optional[dict[str, Any]] = None) -> Any:
        try:
            resp = await self._client.post(path, json=body)
        except httpx.HTTPError as e:
            raise TransportError(f"POST {path} failed: {e}") from e
        return self._unwrap(resp)

    async def close(self) -> None:
        await self._client.aclose()
