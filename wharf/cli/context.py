"""CLI runtime context — bridges the sync CLI to the wharf daemon's HTTP API."""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine

import httpx

from wharf.config import settings
from wharf.exceptions import WharfError


class ApiError(WharfError):
    """The daemon rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: int = 0) -> None:
        super().__init__(message)
        self.status_code = status_code


class WharfClient:
    """Thin async client for the routes in ``wharf.api.app``."""

    def __init__(self, base_url: str | None = None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.base_url = base_url or f"http://{settings.api_host}:{settings.api_port}"
        self._transport = transport

    async def request(self, method: str, path: str, **kwargs: Any) -> Any:
        # Clone, install and build run inside the request; no read timeout
        timeout = httpx.Timeout(10.0, read=None)
        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=self._transport,
        ) as client:
            try:
                resp = await client.request(method, path, **kwargs)
            except httpx.ConnectError as e:
                raise ApiError(
                    f"Cannot reach wharf at {self.base_url}. Is 'wharf serve' running?"
                ) from e

        if resp.status_code >= 400:
            try:
                detail = resp.json().get("error") or resp.text
            except ValueError:
                detail = resp.text
            raise ApiError(detail, status_code=resp.status_code)
        return resp.json()

    async def get(self, path: str, **kwargs: Any) -> Any:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> Any:
        return await self.request("POST", path, **kwargs)

    async def patch(self, path: str, **kwargs: Any) -> Any:
        return await self.request("PATCH", path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> Any:
        return await self.request("DELETE", path, **kwargs)


_client: WharfClient | None = None


def get_client() -> WharfClient:
    global _client
    if _client is None:
        _client = WharfClient()
    return _client


def set_client(client: WharfClient | None) -> None:
    global _client
    _client = client


def run_async(coro: Coroutine) -> Any:
    """Run an async coroutine from sync CLI code."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        # Already inside a running loop; not expected from the CLI
        import concurrent.futures
        with concurrent.futures.ThreadPoolExecutor() as pool:
            return pool.submit(asyncio.run, coro).result()
    else:
        return asyncio.run(coro)
