"""
AlienVault OTX provider adapter for cyberlens.
"""
from __future__ import annotations

import urllib.parse
from typing import Any, Mapping

from ioc_types import IocType
from provider_interface import NormalizedVerdict, Verdict, failed_verdict
from providers_base import BaseProvider

DEFAULT_BASE_URL = "https://otx.alienvault.com/api/v1"

_NOT_REPORTED = "This indicator is not reported in any known threat reports."


class OTXProvider(BaseProvider):

    name = "otx"
    display_name = "OTX"
    supported_ioc_types = frozenset({IocType.IP, IocType.DOMAIN, IocType.URL, IocType.HASH})
    query_failed_reason = "OTX query failed"

    def __init__(self, api_key: str | None = None, base_url: str = DEFAULT_BASE_URL, timeout: float = 15.0) -> None:
        super().__init__(api_key, (base_url or DEFAULT_BASE_URL).rstrip("/"), timeout)

    @staticmethod
    def _endpoint(ioc: str, ioc_type: IocType, ip_version: int | None) -> str:
        if ioc_type == IocType.IP:
            section = "IPv6" if ip_version == 6 else "IPv4"
            return f"/indicators/{section}/{ioc}/general"
        if ioc_type == IocType.DOMAIN:
            return f"/indicators/domain/{ioc}/general"
        if ioc_type == IocType.HASH:
            return f"/indicators/file/{ioc}/general"
        return f"/indicators/url/{urllib.parse.quote(ioc, safe='')}/general"

    async def _query(self, ioc: str, ioc_type: IocType, context: Mapping[str, Any]) -> NormalizedVerdict:
        url = f"{self.base_url}{self._endpoint(ioc, ioc_type, context.get('ip_version'))}"
        resp = await self._get(url, headers={"X-OTX-API-KEY": self._key or "", "accept": "application/json"})

        if resp.status_code == 429:
            return self._fail("Rate limit exceeded")
        if not resp.is_success:
            return self._fail(f"API error: {resp.status_code}")

        return self._normalize(resp.json())

    def _normalize(self, data: Mapping[str, Any]) -> NormalizedVerdict:
        pulse_info = data.get("pulse_info") or {}
        pulse_count = pulse_info.get("count", 0)

        if not pulse_count:
            return NormalizedVerdict(
                provider_name=self.name,
                verdict=Verdict.BENIGN,
                score=0,
                tags=[],
                confidence=0,
                summary=_NOT_REPORTED,
            )

        verdict = Verdict.MALICIOUS if pulse_count >= 3 else Verdict.SUSPICIOUS

        tags: list[str] = []
        for pulse in pulse_info.get("pulses") or []:
            for tag in pulse.get("tags") or []:
                if tag not in tags:
                    tags.append(tag)

        score = min(100, pulse_count * 25)
        if verdict == Verdict.MALICIOUS:
            summary = f"This indicator appears in {pulse_count} threat reports and is likely dangerous."
        else:
            summary = f"This indicator appears in {pulse_count} threat reports and should be treated with caution."

        return NormalizedVerdict(
            provider_name=self.name,
            verdict=verdict,
            score=score,
            tags=tags,
            confidence=score,
            summary=summary,
        )

    def _fail(self, reason: str) -> NormalizedVerdict:
        # OTX always reports a (possibly empty) tag list
        return failed_verdict(self.name, reason, tags=[])


__all__ = ["OTXProvider"]
