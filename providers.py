"""
Provider registry for cyberlens.

The registry is an explicit ordered value built once at start-up and passed
to the orchestrator. Its order is the order of results in every response.
"""
from __future__ import annotations

import logging
from typing import Iterable, Iterator, Sequence

from abuseipdb_api import AbuseIPDBProvider
from ioc_types import IocType
from otx_api import OTXProvider
from provider_interface import ThreatIntelProvider
from settings import Settings

log = logging.getLogger("providers")


class ProviderRegistry(Sequence[ThreatIntelProvider]):
    """Immutable, ordered set of providers with unique names."""

    def __init__(self, providers: Iterable[ThreatIntelProvider] = ()) -> None:
        items = tuple(providers)
        seen: set[str] = set()
        for provider in items:
            if provider.name in seen:
                raise ValueError(f"Duplicate provider name: {provider.name}")
            seen.add(provider.name)
        self._providers = items

    def __getitem__(self, index):  # type: ignore[override]
        return self._providers[index]

    def __len__(self) -> int:
        return len(self._providers)

    def __iter__(self) -> Iterator[ThreatIntelProvider]:
        return iter(self._providers)

    def __repr__(self) -> str:
        return f"ProviderRegistry({', '.join(self.names())})"

    def names(self) -> list[str]:
        return [p.name for p in self._providers]

    def get(self, name: str) -> ThreatIntelProvider | None:
        name = name.strip().lower()
        for provider in self._providers:
            if provider.name == name:
                return provider
        return None

    def capable_of(self, ioc_type: IocType) -> list[ThreatIntelProvider]:
        return [p for p in self._providers if ioc_type in p.supported_ioc_types]

    def select(self, names: Iterable[str]) -> "ProviderRegistry":
        """Sub-registry of *names*, keeping registration order.

        Raises KeyError for unknown names.
        """
        wanted = {n.strip().lower() for n in names if n.strip()}
        unknown = wanted - set(self.names())
        if unknown:
            raise KeyError(", ".join(sorted(unknown)))
        return ProviderRegistry(p for p in self._providers if p.name in wanted)


def build_registry(config: Settings) -> ProviderRegistry:
    """Instantiate the built-in providers from *config*."""
    registry = ProviderRegistry(
        [
            OTXProvider(config.OTX_API_KEY, config.OTX_BASE_URL, timeout=config.HTTP_DEFAULT_TIMEOUT),
            AbuseIPDBProvider(config.ABUSEIPDB_API_KEY, config.ABUSEIPDB_BASE_URL, timeout=config.HTTP_DEFAULT_TIMEOUT),
        ]
    )
    for provider in registry:
        if not getattr(provider, "has_credentials", True):
            log.warning("%s has no API key configured; it will report a fail-open verdict", provider.name)
    return registry


__all__ = ["ProviderRegistry", "build_registry"]
