"""Concurrent provider fan-out with per-provider timeout and failure isolation."""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ioc_types import IocType
from provider_interface import NormalizedVerdict, ThreatIntelProvider, failed_verdict

log = logging.getLogger("provider_executor")

DEFAULT_TIMEOUT_MS = 10_000

TIMED_OUT_REASON = "provider timed out"

# Timed-out tasks we stopped waiting for; kept alive until they settle.
_abandoned: set[asyncio.Task] = set()


class ExecutionOutcome(str, Enum):
    OK = "ok"
    TIMEOUT = "timeout"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value


class ProviderExecutionResult(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        use_enum_values=True,
    )

    provider_name: str
    outcome: ExecutionOutcome
    duration_ms: int
    data: NormalizedVerdict


def _elapsed_ms(loop: asyncio.AbstractEventLoop, started: float) -> int:
    return max(0, round((loop.time() - started) * 1000))


async def _run_provider(
    provider: ThreatIntelProvider,
    ioc: str,
    ioc_type: IocType,
    context: Mapping[str, Any],
) -> ProviderExecutionResult:
    loop = asyncio.get_running_loop()
    started = loop.time()
    try:
        verdict = await provider.query(ioc, ioc_type, context)
    except Exception as exc:
        log.warning("Provider %s raised %s: %s", provider.name, type(exc).__name__, exc)
        return ProviderExecutionResult(
            provider_name=provider.name,
            outcome=ExecutionOutcome.ERROR,
            duration_ms=_elapsed_ms(loop, started),
            data=failed_verdict(provider.name, f"provider error: {type(exc).__name__}"),
        )

    duration_ms = _elapsed_ms(loop, started)
    if not isinstance(verdict, NormalizedVerdict):
        log.warning("Provider %s returned %s instead of a verdict", provider.name, type(verdict).__name__)
        return ProviderExecutionResult(
            provider_name=provider.name,
            outcome=ExecutionOutcome.ERROR,
            duration_ms=duration_ms,
            data=failed_verdict(provider.name, "provider returned an invalid result"),
        )

    log.debug("Provider %s settled in %d ms (%s)", provider.name, duration_ms, verdict.verdict)
    return ProviderExecutionResult(
        provider_name=provider.name,
        outcome=ExecutionOutcome.ERROR if verdict.failed else ExecutionOutcome.OK,
        duration_ms=duration_ms,
        data=verdict,
    )


def _discard_late_result(task: asyncio.Task) -> None:
    _abandoned.discard(task)
    if not task.cancelled() and task.exception() is None:
        log.debug("Discarding late result from %s", task.get_name())


async def execute_providers(
    providers: Iterable[ThreatIntelProvider],
    ioc: str,
    ioc_type: IocType,
    *,
    timeout_ms: Optional[int] = None,
    provider_options: Optional[Mapping[str, Any]] = None,
    ip_version: Optional[int] = None,
) -> list[ProviderExecutionResult]:
    """Query every provider capable of *ioc_type* concurrently.

    Providers that do not support *ioc_type* are left out of the result
    entirely. Results keep the order of *providers*, not completion order.
    A provider still running when the deadline passes is recorded as
    ``timeout`` and cancelled best-effort; we never wait for it to
    acknowledge the cancellation. This function does not raise for any
    provider-level failure; the only exception is ``ValueError`` for a
    non-positive *timeout_ms*, which is a caller bug.
    """
    capable = [p for p in providers if ioc_type in p.supported_ioc_types]
    if not capable:
        return []

    timeout_s = (DEFAULT_TIMEOUT_MS if timeout_ms is None else timeout_ms) / 1000
    if timeout_s <= 0:
        raise ValueError("timeout_ms must be positive")

    context: dict[str, Any] = dict(provider_options or {})
    if ip_version is not None:
        context.setdefault("ip_version", ip_version)

    loop = asyncio.get_running_loop()
    started = loop.time()
    tasks = [
        asyncio.create_task(_run_provider(p, ioc, ioc_type, context), name=f"provider:{p.name}")
        for p in capable
    ]

    try:
        _, pending = await asyncio.wait(tasks, timeout=timeout_s)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        raise

    for task in pending:
        task.cancel()
        _abandoned.add(task)
        task.add_done_callback(_discard_late_result)

    results: list[ProviderExecutionResult] = []
    for provider, task in zip(capable, tasks):
        if task in pending:
            log.warning("Provider %s timed out after %d ms", provider.name, round(timeout_s * 1000))
            results.append(
                ProviderExecutionResult(
                    provider_name=provider.name,
                    outcome=ExecutionOutcome.TIMEOUT,
                    duration_ms=_elapsed_ms(loop, started),
                    data=failed_verdict(provider.name, TIMED_OUT_REASON),
                )
            )
        elif task.cancelled():
            results.append(
                ProviderExecutionResult(
                    provider_name=provider.name,
                    outcome=ExecutionOutcome.ERROR,
                    duration_ms=_elapsed_ms(loop, started),
                    data=failed_verdict(provider.name, "provider was cancelled"),
                )
            )
        else:
            results.append(task.result())
    return results


__all__ = [
    "DEFAULT_TIMEOUT_MS",
    "ExecutionOutcome",
    "ProviderExecutionResult",
    "execute_providers",
]
