"""
Shared asynchronous HTTP client for networked providers.

A single lazily created httpx.AsyncClient is reused across requests to
leverage connection pooling. No retries or rate limiting happen here: a
provider reports upstream exhaustion as an ordinary failed verdict.

This module exposes a single high-level helper: async_request().
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from settings import settings

log = logging.getLogger("http_client")


# Global async client (lazy)
_client: Optional[httpx.AsyncClient] = None
_client_lock = asyncio.Lock()


def _build_timeout(default_seconds: float) -> httpx.Timeout:
    # Separate connect/read/write with a generous connect window
    connect_timeout = min(10.0, max(1.0, default_seconds))
    return httpx.Timeout(
        connect=connect_timeout,
        read=default_seconds,
        write=default_seconds,
        pool=default_seconds,
    )


async def get_async_client() -> httpx.AsyncClient:
    """Return the shared AsyncClient instance.

    It should not be closed by callers; use close_async_client() at shutdown.
    """
    global _client
    if _client is not None and not _client.is_closed:
        return _client

    async with _client_lock:
        if _client is None or _client.is_closed:
            timeout = _build_timeout(settings.HTTP_DEFAULT_TIMEOUT)
            _client = httpx.AsyncClient(timeout=timeout, http2=True)
    return _client


async def close_async_client() -> None:
    """Close the shared AsyncClient if it exists."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


async def async_request(
    method: str,
    url: str,
    *,
    headers: Optional[dict[str, str]] = None,
    params: Optional[dict[str, Any]] = None,
    timeout: Optional[float] = None,
) -> httpx.Response:
    """Perform one HTTP request and return the response whatever its status.

    Callers map non-2xx statuses to their own domain-specific reasons.
    Transport failures propagate as httpx exceptions.
    """
    client = await get_async_client()
    default_timeout = settings.HTTP_DEFAULT_TIMEOUT if timeout is None else timeout

    log.debug("%s %s", method.upper(), url)
    return await client.request(
        method=method.upper(),
        url=url,
        headers=headers,
        params=params,
        timeout=_build_timeout(default_timeout),
    )


__all__ = [
    "async_request",
    "get_async_client",
    "close_async_client",
]
