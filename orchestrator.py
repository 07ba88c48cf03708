"""Single-lookup orchestration: classify, validate, fan out, record."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, SerializerFunctionWrapHandler, model_serializer
from pydantic.alias_generators import to_camel

from history import HistoryRecorder
from ioc_types import IocType, detect_ioc_type, validate_ioc_type
from owner import OwnerContext
from provider_executor import ExecutionOutcome, ProviderExecutionResult, execute_providers
from provider_interface import ThreatIntelProvider, Verdict

log = logging.getLogger("orchestrator")

_SEVERITY = {Verdict.BENIGN: 0, Verdict.SUSPICIOUS: 1, Verdict.MALICIOUS: 2}


class _WireModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        use_enum_values=True,
    )


class _CompactWireModel(_WireModel):
    """Drops unset optional keys when serialized."""

    @model_serializer(mode="wrap")
    def _omit_none(self, handler: SerializerFunctionWrapHandler) -> dict[str, Any]:
        return {k: v for k, v in handler(self).items() if v is not None}


class ValidationInfo(_CompactWireModel):
    is_valid: bool
    user_selected_type: Optional[IocType] = None


class DetectedInfo(_CompactWireModel):
    ip_version: Optional[int] = None


class ResponseMeta(_WireModel):
    executed_at: str
    execution_time_ms: int
    detected: Optional[DetectedInfo]


class OrchestratedResponse(_WireModel):
    ioc: str
    detected_type: Optional[IocType]
    validation: ValidationInfo
    providers: list[ProviderExecutionResult]
    meta: ResponseMeta

    def to_wire(self) -> dict[str, Any]:
        """camelCase JSON-ready dict for the transport layer."""
        return self.model_dump(mode="json", by_alias=True)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def aggregate_verdict(results: Iterable[ProviderExecutionResult]) -> Optional[Verdict]:
    """Most severe verdict among providers that actually answered.

    Timeouts and errors are ignored; returns None when nobody answered.
    """
    worst: Optional[Verdict] = None
    for r in results:
        if r.outcome != ExecutionOutcome.OK or r.data.failed:
            continue
        verdict = Verdict(r.data.verdict)
        if worst is None or _SEVERITY[verdict] > _SEVERITY[worst]:
            worst = verdict
    return worst


async def orchestrate_threat_intelligence(
    ioc: str,
    providers: Iterable[ThreatIntelProvider],
    owner: OwnerContext,
    *,
    recorder: Optional[HistoryRecorder] = None,
    user_selected_type: Optional[IocType | str] = None,
    provider_options: Optional[Mapping[str, Any]] = None,
    timeout_ms: Optional[int] = None,
) -> OrchestratedResponse:
    """Run one lookup end to end.

    Unrecognised input is a valid terminal outcome: no providers run and no
    history is written. Otherwise every capable provider is queried and the
    lookup is handed to *recorder* as a detached write that can neither
    delay nor alter the response.

    Providers and history receive the trimmed value; the response echoes
    *ioc* as given. An unknown *user_selected_type* is reported as
    ``is_valid=False`` rather than raised.
    """
    started = time.perf_counter()

    detected = detect_ioc_type(ioc)
    selected: Optional[IocType] = None
    is_valid = True
    if user_selected_type:
        try:
            selected = IocType(user_selected_type)
        except ValueError:
            # a type we do not know can never match
            is_valid = False
        else:
            is_valid = validate_ioc_type(ioc, selected).is_valid
    validation = ValidationInfo(is_valid=is_valid, user_selected_type=selected)

    if detected.type is None:
        log.info("Unrecognised IOC %r; no providers queried", ioc)
        return OrchestratedResponse(
            ioc=ioc,
            detected_type=None,
            validation=validation,
            providers=[],
            meta=ResponseMeta(
                executed_at=_now_iso(),
                execution_time_ms=round((time.perf_counter() - started) * 1000),
                detected=None,
            ),
        )

    value = ioc.strip()
    results = await execute_providers(
        providers,
        value,
        detected.type,
        timeout_ms=timeout_ms,
        provider_options=provider_options,
        ip_version=detected.ip_version,
    )
    execution_time_ms = round((time.perf_counter() - started) * 1000)

    if recorder is not None:
        overall = aggregate_verdict(results)
        recorder.dispatch(owner, detected.type, value, overall.value if overall else None)

    return OrchestratedResponse(
        ioc=ioc,
        detected_type=detected.type,
        validation=validation,
        providers=results,
        meta=ResponseMeta(
            executed_at=_now_iso(),
            execution_time_ms=execution_time_ms,
            detected=DetectedInfo(ip_version=detected.ip_version),
        ),
    )


__all__ = [
    "OrchestratedResponse",
    "ValidationInfo",
    "DetectedInfo",
    "ResponseMeta",
    "aggregate_verdict",
    "orchestrate_threat_intelligence",
]
