"""
Pytest configuration and shared fixtures for cyberlens tests.
"""
import asyncio
import logging
import os
import sys
from typing import Any, Mapping, Optional

import pytest

# Make the flat top-level modules importable without installing
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ioc_types import IocType
from owner import OwnerContext
from provider_interface import NormalizedVerdict, Verdict


class StubProvider:
    """Scriptable provider satisfying ThreatIntelProvider."""

    def __init__(
        self,
        name: str,
        types=(IocType.IP, IocType.DOMAIN, IocType.URL, IocType.HASH),
        *,
        verdict: str = "benign",
        score: float = 0,
        delay: float = 0.0,
        raises: Optional[BaseException] = None,
        result: Any = None,
    ) -> None:
        self.name = name
        self.supported_ioc_types = frozenset(types)
        self._verdict = verdict
        self._score = score
        self._delay = delay
        self._raises = raises
        self._result = result
        self.calls: list[tuple[str, IocType, Mapping[str, Any]]] = []
        self.finished = False

    async def query(self, ioc: str, ioc_type: IocType, context: Optional[Mapping[str, Any]] = None):
        self.calls.append((ioc, ioc_type, dict(context or {})))
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._raises is not None:
            raise self._raises
        self.finished = True
        if self._result is not None:
            return self._result
        return NormalizedVerdict(
            provider_name=self.name,
            verdict=Verdict(self._verdict),
            score=self._score,
            confidence=self._score,
        )


@pytest.fixture
def stub_provider():
    """Factory for StubProvider instances."""
    return StubProvider


@pytest.fixture
def owner():
    return OwnerContext(type="anonymous", id="6f1c2b8e-3d4a-4c5b-9e7f-0a1b2c3d4e5f")


@pytest.fixture
def sample_iocs():
    """Sample IOC data for testing."""
    return {
        "valid_ip": "8.8.8.8",
        "valid_ipv6": "2001:db8::1",
        "valid_domain": "example.com",
        "valid_url": "https://example.com/path",
        "valid_hash_md5": "d41d8cd98f00b204e9800998ecf8427e",
        "valid_hash_sha1": "da39a3ee5e6b4b0d3255bfef95601890afd80709",
        "valid_hash_sha256": "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855",
        "invalid_ip": "999.999.999.999",
        "invalid_domain": "not_a_domain",
        "invalid_hash": "d41d8cd98f",
        "garbage": "!!!not-an-ioc!!!",
    }


@pytest.fixture
def restore_logging():
    """Undo log_utils.configure(), which replaces the root handlers."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    httpx_level = logging.getLogger("httpx").level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
    logging.getLogger("httpx").setLevel(httpx_level)
