"""Base provider class for cyberlens with shared fail-open functionality."""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

import httpx

from http_client import async_request
from ioc_types import IocType
from provider_interface import NormalizedVerdict, failed_verdict

log = logging.getLogger("providers")


class BaseProvider(ABC):
    """Base provider class with shared functionality.

    Subclasses implement ``_query`` and may raise freely inside it; ``query``
    converts every failure into a fail-open verdict.
    """

    name: str = ""  # Should be overridden by subclasses
    display_name: str = ""
    supported_ioc_types: frozenset[IocType] = frozenset()
    query_failed_reason: str = "query failed"

    def __init__(self, api_key: str | None = None, base_url: str = "", timeout: float = 15.0) -> None:
        self._key = api_key
        self.base_url = base_url
        self.timeout = timeout

    @property
    def has_credentials(self) -> bool:
        return bool(self._key)

    async def query(
        self,
        ioc: str,
        ioc_type: IocType,
        context: Optional[Mapping[str, Any]] = None,
    ) -> NormalizedVerdict:
        ctx = context or {}
        if ioc_type not in self.supported_ioc_types:
            return self._fail("Unsupported IOC type")

        reason = self._precheck(ioc, ioc_type, ctx)
        if reason:
            return self._fail(reason)

        if not self._key:
            return self._fail(f"{self.display_name or self.name} API key not configured")

        try:
            return await self._query(ioc, ioc_type, ctx)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # transport errors, bad JSON, malformed payloads
            log.info("%s query for %s failed: %s: %s", self.name, ioc_type, type(exc).__name__, exc)
            return self._fail(self.query_failed_reason)

    def _precheck(self, ioc: str, ioc_type: IocType, context: Mapping[str, Any]) -> str | None:
        """Return a failure reason to short-circuit the upstream call, or None."""
        return None

    @abstractmethod
    async def _query(self, ioc: str, ioc_type: IocType, context: Mapping[str, Any]) -> NormalizedVerdict:
        """Query the upstream API. Must be implemented by subclasses."""

    async def _get(
        self,
        url: str,
        headers: Dict[str, str] | None = None,
        params: Dict[str, Any] | None = None,
    ) -> httpx.Response:
        return await async_request("GET", url, headers=headers, params=params, timeout=self.timeout)

    def _fail(self, reason: str) -> NormalizedVerdict:
        return failed_verdict(self.name, reason)


__all__ = ["BaseProvider"]
