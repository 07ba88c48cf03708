"""
Tests for the end-to-end lookup orchestration.
"""
import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from history import HistoryRecorder, InMemoryHistoryStore, PersistenceError
from ioc_types import IocType
from orchestrator import OrchestratedResponse, aggregate_verdict, orchestrate_threat_intelligence
from provider_executor import ExecutionOutcome, ProviderExecutionResult
from provider_interface import NormalizedVerdict, Verdict, failed_verdict


def _result(name, verdict, score, outcome=ExecutionOutcome.OK):
    return ProviderExecutionResult(
        provider_name=name,
        outcome=outcome,
        duration_ms=1,
        data=NormalizedVerdict(provider_name=name, verdict=verdict, score=score),
    )


@pytest.mark.asyncio
class TestOrchestration:
    """Classification, validation, fan-out and response shape."""

    async def test_two_providers_in_registration_order(self, stub_provider, owner):
        bad = stub_provider("first", types=[IocType.IP], verdict="malicious", score=90, delay=0.05)
        good = stub_provider("second", types=[IocType.IP], verdict="benign", score=0)

        response = await orchestrate_threat_intelligence("1.2.3.4", [bad, good], owner)

        assert isinstance(response, OrchestratedResponse)
        assert response.detected_type == IocType.IP
        assert [p.provider_name for p in response.providers] == ["first", "second"]
        assert response.providers[0].data.verdict == "malicious"
        assert response.providers[0].data.score == 90
        assert response.providers[1].data.verdict == "benign"
        assert response.providers[1].data.score == 0
        assert response.meta.detected.ip_version == 4
        assert response.validation.is_valid is True
        assert response.validation.user_selected_type is None

    async def test_unrecognised_ioc_short_circuits(self, stub_provider, owner, sample_iocs):
        prov = stub_provider("p")
        store = InMemoryHistoryStore()
        recorder = HistoryRecorder(store)

        response = await orchestrate_threat_intelligence(sample_iocs["garbage"], [prov], owner, recorder=recorder)

        assert response.detected_type is None
        assert response.providers == []
        assert response.meta.detected is None
        assert prov.calls == []
        assert recorder.pending == 0
        await recorder.drain()
        assert store.rows == []

    async def test_user_selected_type_mismatch(self, stub_provider, owner):
        response = await orchestrate_threat_intelligence(
            "example.com", [stub_provider("p")], owner, user_selected_type="ip"
        )
        assert response.detected_type == IocType.DOMAIN
        assert response.validation.is_valid is False
        assert response.validation.user_selected_type == IocType.IP
        # Validation never changes what runs
        assert len(response.providers) == 1

    async def test_user_selected_type_match(self, stub_provider, owner):
        response = await orchestrate_threat_intelligence(
            "https://example.com/x", [stub_provider("p")], owner, user_selected_type=IocType.URL
        )
        assert response.validation.is_valid is True

    async def test_unknown_user_selected_type_is_invalid(self, stub_provider, owner):
        prov = stub_provider("p")
        response = await orchestrate_threat_intelligence("8.8.8.8", [prov], owner, user_selected_type="email")
        assert response.validation.is_valid is False
        assert response.validation.user_selected_type is None
        assert response.to_wire()["validation"] == {"isValid": False}
        assert response.detected_type == IocType.IP
        assert len(prov.calls) == 1

    async def test_surrounding_whitespace_trimmed_downstream(self, stub_provider, owner):
        prov = stub_provider("p")
        store = InMemoryHistoryStore()
        recorder = HistoryRecorder(store)

        response = await orchestrate_threat_intelligence(" 8.8.8.8\n", [prov], owner, recorder=recorder)
        await recorder.drain()

        assert response.ioc == " 8.8.8.8\n"
        assert prov.calls[0][0] == "8.8.8.8"
        assert store.rows[0].ioc_value == "8.8.8.8"

    async def test_user_selected_type_on_unrecognised_ioc(self, owner):
        response = await orchestrate_threat_intelligence("???", [], owner, user_selected_type="hash")
        assert response.validation.is_valid is False
        assert response.providers == []

    async def test_ipv6_version_reaches_meta_and_providers(self, stub_provider, owner):
        prov = stub_provider("p")
        response = await orchestrate_threat_intelligence(
            "2001:db8::1", [prov], owner, provider_options={"verbose": True}
        )
        assert response.meta.detected.ip_version == 6
        assert prov.calls[0][2] == {"ip_version": 6, "verbose": True}

    async def test_all_providers_failing_is_still_a_response(self, stub_provider, owner):
        providers = [
            stub_provider("slow", delay=5),
            stub_provider("broken", raises=RuntimeError("down")),
        ]
        response = await orchestrate_threat_intelligence("8.8.8.8", providers, owner, timeout_ms=100)
        assert [p.outcome for p in response.providers] == ["timeout", "error"]
        assert all(p.data.score == 0 for p in response.providers)

    async def test_execution_time_covers_providers(self, stub_provider, owner):
        response = await orchestrate_threat_intelligence("8.8.8.8", [stub_provider("p", delay=0.1)], owner)
        assert response.meta.execution_time_ms >= 90
        assert response.meta.executed_at.endswith("Z")

    async def test_response_is_immutable(self, owner):
        response = await orchestrate_threat_intelligence("8.8.8.8", [], owner)
        with pytest.raises(Exception):
            response.ioc = "changed"


@pytest.mark.asyncio
class TestHistoryDispatch:
    """History writes are detached and can never affect the response."""

    async def test_records_lookup_with_aggregate_verdict(self, stub_provider, owner):
        store = InMemoryHistoryStore()
        recorder = HistoryRecorder(store)
        providers = [
            stub_provider("a", verdict="suspicious", score=50),
            stub_provider("b", verdict="benign", score=0),
        ]
        await orchestrate_threat_intelligence("evil.example", providers, owner, recorder=recorder)
        await recorder.drain()

        (row,) = store.rows
        assert (row.owner_type, row.owner_id) == (owner.type, owner.id)
        assert row.ioc_type == "domain"
        assert row.ioc_value == "evil.example"
        assert row.verdict == "suspicious"

    async def test_store_failure_does_not_change_response(self, stub_provider, owner, caplog):
        store = AsyncMock()
        store.insert.side_effect = PersistenceError("database unavailable")
        recorder = HistoryRecorder(store)
        providers = [stub_provider("a", verdict="malicious", score=90)]

        baseline = await orchestrate_threat_intelligence("1.2.3.4", providers, owner)
        response = await orchestrate_threat_intelligence("1.2.3.4", providers, owner, recorder=recorder)
        await recorder.drain()

        assert [(p.outcome, p.data) for p in response.providers] == [
            (p.outcome, p.data) for p in baseline.providers
        ]
        assert response.detected_type == baseline.detected_type
        store.insert.assert_awaited_once()
        assert "Failed to log IOC history" in caplog.text

    async def test_slow_store_does_not_delay_response(self, stub_provider, owner):
        async def slow_insert(*args, **kwargs):
            await asyncio.sleep(1)

        store = AsyncMock()
        store.insert.side_effect = slow_insert
        recorder = HistoryRecorder(store)

        started = time.perf_counter()
        await orchestrate_threat_intelligence("1.2.3.4", [stub_provider("a")], owner, recorder=recorder)
        assert time.perf_counter() - started < 0.5
        assert recorder.pending == 1
        await recorder.drain()
        assert recorder.pending == 0


class TestAggregateVerdict:
    """Most severe answered verdict; timeouts and errors do not count."""

    def test_most_severe_wins(self):
        results = [
            _result("a", Verdict.BENIGN, 0),
            _result("b", Verdict.MALICIOUS, 90),
            _result("c", Verdict.SUSPICIOUS, 40),
        ]
        assert aggregate_verdict(results) == Verdict.MALICIOUS

    def test_failures_ignored(self):
        results = [
            ProviderExecutionResult(
                provider_name="t",
                outcome=ExecutionOutcome.TIMEOUT,
                duration_ms=100,
                data=failed_verdict("t", "provider timed out"),
            ),
            _result("a", Verdict.SUSPICIOUS, 50),
        ]
        assert aggregate_verdict(results) == Verdict.SUSPICIOUS

    def test_nobody_answered(self):
        assert aggregate_verdict([]) is None
        only_errors = [_result("e", Verdict.BENIGN, 0, outcome=ExecutionOutcome.ERROR)]
        assert aggregate_verdict(only_errors) is None


@pytest.mark.asyncio
class TestWireFormat:
    """The transport layer receives camelCase JSON."""

    async def test_completed_response(self, stub_provider, owner):
        response = await orchestrate_threat_intelligence(
            "8.8.8.8", [stub_provider("a", verdict="malicious", score=90)], owner, user_selected_type="ip"
        )
        wire = response.to_wire()
        assert set(wire) == {"ioc", "detectedType", "validation", "providers", "meta"}
        assert wire["detectedType"] == "ip"
        assert wire["validation"] == {"isValid": True, "userSelectedType": "ip"}
        assert wire["providers"][0]["providerName"] == "a"
        assert wire["providers"][0]["data"]["verdict"] == "malicious"
        assert set(wire["meta"]) == {"executedAt", "executionTimeMs", "detected"}
        assert wire["meta"]["detected"] == {"ipVersion": 4}

    async def test_unrecognised_response(self, owner):
        wire = (await orchestrate_threat_intelligence("!!!", [], owner)).to_wire()
        assert wire["detectedType"] is None
        assert wire["providers"] == []
        assert wire["meta"]["detected"] is None
        assert wire["validation"] == {"isValid": True}

    async def test_domain_has_empty_detected_block(self, owner):
        wire = (await orchestrate_threat_intelligence("example.com", [], owner)).to_wire()
        assert wire["meta"]["detected"] == {}
