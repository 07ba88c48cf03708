"""AbuseIPDB provider adapter for cyberlens (async, fail-open NormalizedVerdict)."""
from __future__ import annotations

from typing import Any, Mapping

from ioc_types import IocType
from provider_interface import NormalizedVerdict, Verdict
from providers_base import BaseProvider

DEFAULT_BASE_URL = "https://api.abuseipdb.com/api/v2/check"


def _verdict_for(score: float) -> Verdict:
    if score >= 70:
        return Verdict.MALICIOUS
    if score >= 30:
        return Verdict.SUSPICIOUS
    return Verdict.BENIGN


class AbuseIPDBProvider(BaseProvider):
    name = "abuseipdb"
    display_name = "AbuseIPDB"
    supported_ioc_types = frozenset({IocType.IP})
    query_failed_reason = "AbuseIPDB query failed"

    def __init__(self, api_key: str | None = None, base_url: str = DEFAULT_BASE_URL, timeout: float = 5.0) -> None:
        super().__init__(api_key, base_url or DEFAULT_BASE_URL, timeout)

    def _precheck(self, ioc: str, ioc_type: IocType, context: Mapping[str, Any]) -> str | None:
        if context.get("ip_version") == 6:
            return "AbuseIPDB IPv6 support depends on plan and may not be available"
        return None

    async def _query(self, ioc: str, ioc_type: IocType, context: Mapping[str, Any]) -> NormalizedVerdict:
        resp = await self._get(
            self.base_url,
            headers={"Key": self._key or "", "Accept": "application/json"},
            params={"ipAddress": ioc, "maxAgeInDays": "90", "verbose": "true"},
        )
        if not resp.is_success:
            return self._fail(f"AbuseIPDB API error ({resp.status_code})")

        data = resp.json().get("data")
        if not data:
            return self._fail("Empty response from AbuseIPDB")

        score = data.get("abuseConfidenceScore") or 0

        tags: list[str] = []
        if data.get("isTor"):
            tags.append("tor")
        if data.get("usageType"):
            tags.append(data["usageType"].lower())
        if data.get("countryCode"):
            tags.append(f"country:{data['countryCode']}")
        if data.get("isWhitelisted"):
            tags.append("whitelisted")

        summary_parts: list[str] = []
        if data.get("countryName"):
            summary_parts.append(f"Country: {data['countryName']}")
        if data.get("isp"):
            summary_parts.append(f"ISP: {data['isp']}")
        if isinstance(data.get("totalReports"), int):
            summary_parts.append(f"Reports: {data['totalReports']}")
        if data.get("lastReportedAt"):
            summary_parts.append(f"Last reported: {data['lastReportedAt']}")

        return NormalizedVerdict(
            provider_name=self.name,
            verdict=_verdict_for(score),
            score=score,
            confidence=min(100, score),
            tags=tags or None,
            summary=" | ".join(summary_parts),
        )


__all__ = ["AbuseIPDBProvider"]
