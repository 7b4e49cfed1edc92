"""Shared HTTP client for all provider adapters.

Every adapter built for a process talks to its vendor through one
``HTTPConnectionPool`` so keep-alive connections survive across requests.
The underlying ``httpx.AsyncClient`` is created lazily on first use.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from ..settings import AppSettings

USER_AGENT = "conduit-ai/0.1.0"

# Connect and write budgets are independent of the per-adapter read timeout
CONNECT_TIMEOUT = 5.0
WRITE_TIMEOUT = 10.0


class HTTPConnectionPool:
    """Lazily created ``httpx.AsyncClient`` with bounded connections.

    Args:
        max_connections: Upper bound on open connections across all hosts
        max_keepalive_connections: Idle connections kept for reuse
        keepalive_expiry: Seconds an idle connection is kept
        timeout: Read timeout used when a call does not pass its own
        transport: Transport override, e.g. ``httpx.MockTransport`` in tests
    """

    def __init__(
        self,
        max_connections: int = 100,
        max_keepalive_connections: int = 20,
        keepalive_expiry: float = 5.0,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.limits = httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_keepalive_connections,
            keepalive_expiry=keepalive_expiry,
        )
        self.timeout = timeout
        self.transport = transport

        self._client: httpx.AsyncClient | None = None
        self._lock = asyncio.Lock()
        self._counters = {"requests": 0, "streams": 0, "transport_errors": 0}

    @classmethod
    def from_settings(cls, settings: AppSettings) -> HTTPConnectionPool:
        return cls(
            max_connections=settings.http_max_connections,
            max_keepalive_connections=settings.http_max_keepalive_connections,
        )

    def _timeout(self, read: float | None) -> httpx.Timeout:
        return httpx.Timeout(
            read,
            connect=CONNECT_TIMEOUT,
            write=WRITE_TIMEOUT,
            pool=CONNECT_TIMEOUT,
        )

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            async with self._lock:
                if self._client is None:
                    # HTTP/2 only against real networks; mock transports speak HTTP/1.1
                    self._client = httpx.AsyncClient(
                        limits=self.limits,
                        timeout=self._timeout(self.timeout),
                        http2=self.transport is None,
                        transport=self.transport,
                        headers={"User-Agent": USER_AGENT},
                    )
        return self._client

    def _prepare(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        """Turn a bare ``timeout`` number into a full httpx.Timeout."""
        timeout = kwargs.get("timeout")
        if timeout is not None and not isinstance(timeout, httpx.Timeout):
            kwargs["timeout"] = self._timeout(timeout)
        return kwargs

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request and read the whole response body."""
        client = await self._ensure_client()
        self._counters["requests"] += 1
        try:
            return await client.request(method, url, **self._prepare(kwargs))
        except httpx.TransportError:
            self._counters["transport_errors"] += 1
            raise

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    @asynccontextmanager
    async def stream(
        self,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> AsyncIterator[httpx.Response]:
        """Open a streamed response; the body is read incrementally.

        The connection is released when the context exits, including when the
        awaiting task is cancelled mid-stream.
        """
        client = await self._ensure_client()
        self._counters["streams"] += 1
        try:
            async with client.stream(method, url, **self._prepare(kwargs)) as response:
                yield response
        except httpx.TransportError:
            self._counters["transport_errors"] += 1
            raise

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def get_stats(self) -> dict[str, Any]:
        """Request counters and pool limits."""
        return {
            "active": self._client is not None,
            "max_connections": self.limits.max_connections,
            "max_keepalive": self.limits.max_keepalive_connections,
            **self._counters,
        }
