"""
Unified provider protocol for cyberlens.

Every provider answers with a ``NormalizedVerdict``; ``query`` must never
raise. Failures come back as a fail-open verdict (benign, score 0).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, AbstractSet, Mapping, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, SerializerFunctionWrapHandler, field_validator, model_serializer

from ioc_types import IocType


class Verdict(str, Enum):
    BENIGN = "benign"
    SUSPICIOUS = "suspicious"
    MALICIOUS = "malicious"

    def __str__(self) -> str:
        return self.value


class NormalizedVerdict(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    provider_name: str
    verdict: Verdict
    score: float = Field(ge=0, le=100)
    confidence: Optional[float] = Field(default=None, ge=0, le=100)
    tags: Optional[list[str]] = None
    summary: Optional[str] = None
    # Set on fail-open results; never serialized
    failed: bool = Field(default=False, exclude=True, repr=False)

    @field_validator("tags")
    @classmethod
    def _dedupe_tags(cls, tags: Optional[list[str]]) -> Optional[list[str]]:
        if tags is None:
            return None
        return list(dict.fromkeys(tags))

    @model_serializer(mode="wrap")
    def _omit_unset(self, handler: SerializerFunctionWrapHandler) -> dict[str, Any]:
        # optional fields are left out rather than sent as null
        return {k: v for k, v in handler(self).items() if v is not None}


def failed_verdict(provider_name: str, reason: str, *, tags: Optional[list[str]] = None) -> NormalizedVerdict:
    """Fail-open result: a broken provider never raises a target's risk."""
    return NormalizedVerdict(
        provider_name=provider_name,
        verdict=Verdict.BENIGN,
        score=0,
        confidence=0,
        tags=tags,
        summary=reason,
        failed=True,
    )


@runtime_checkable
class ThreatIntelProvider(Protocol):
    name: str
    supported_ioc_types: AbstractSet[IocType]

    async def query(
        self,
        ioc: str,
        ioc_type: IocType,
        context: Optional[Mapping[str, Any]] = None,
    ) -> NormalizedVerdict: ...


__all__ = ["Verdict", "NormalizedVerdict", "ThreatIntelProvider", "failed_verdict"]
