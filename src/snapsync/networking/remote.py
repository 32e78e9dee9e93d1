"""
Client side of the request server, used by the command line and by the
sync engine. Errors reported by the server are raised again here as the
same ``SnapsyncError`` subclass.
"""
import logging
from typing import Any, Optional

import httpx
from serde import from_dict, to_dict

from ..errors import StoreIOError, error_from_dict
from ..filesystem.models import HistoryEntry, ListingEntry, NodeInfo, Selector

logger = logging.getLogger(__name__)


class RemoteStore:
    base_url: str
    client: httpx.AsyncClient

    def __init__(self, base_url: str, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 60.0):
        self.base_url = base_url
        self.client = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)

    @classmethod
    def connect(cls, host: str, port: int, **kwargs: Any) -> "RemoteStore":
        return cls(f"http://{host}:{port}", **kwargs)

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "RemoteStore":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        params = kwargs.pop("params", None)
        if params is not None:
            params = {k: v for k, v in params.items() if v is not None}
        try:
            response = await self.client.request(method, url, params=params, **kwargs)
        except httpx.HTTPError as e:
            raise StoreIOError(f"request to {self.base_url}{url} failed: {e}") from e
        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and "kind" in body:
                raise error_from_dict(body)
            raise StoreIOError(f"{method} {url} failed with HTTP {response.status_code}: {response.text}")
        return response

    async def healthcheck(self) -> int:
        response = await self._request("GET", "/healthcheck")
        return int(response.json())

    async def insert(self, path: str, data: bytes) -> tuple[str, int]:
        response = await self._request(
            "POST", "/insert", params={"path": path}, content=data,
            headers={"content-type": "application/octet-stream"},
        )
        body = response.json()
        return body["hash"], body["version"]

    async def get(self, path: str, version: Optional[int] = None) -> bytes:
        response = await self._request("GET", "/get", params={"path": path, "version": version})
        return response.content

    async def delete(self, path: str) -> int:
        response = await self._request("POST", "/delete", params={"path": path})
        return response.json()["version"]

    async def listing(self, version: Optional[int] = None) -> list[ListingEntry]:
        response = await self._request("GET", "/listing", params={"version": version})
        return [from_dict(ListingEntry, item) for item in response.json()]

    async def node(self, path: str, version: Optional[int] = None) -> NodeInfo:
        response = await self._request("GET", "/node", params={"path": path, "version": version})
        return from_dict(NodeInfo, response.json())

    async def clear(self) -> int:
        response = await self._request("POST", "/clear")
        return response.json()["version"]

    async def rollback(self, selector: Selector) -> int:
        response = await self._request("POST", "/rollback", json=to_dict(selector))
        return response.json()["version"]

    async def history(self) -> list[HistoryEntry]:
        response = await self._request("GET", "/history")
        return [from_dict(HistoryEntry, item) for item in response.json()]
