"""Command line entry point: one orchestrated IOC lookup printed as JSON."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import uuid
from typing import Sequence

import log_utils
from history import HistoryRecorder, HistoryStore, InMemoryHistoryStore, PersistenceError, PostgresHistoryStore
from http_client import close_async_client
from ioc_types import IocType
from orchestrator import orchestrate_threat_intelligence
from owner import InvalidClientIdError, OwnerContext, resolve_owner
from providers import ProviderRegistry, build_registry
from settings import Settings, settings

log = logging.getLogger("ioc_lookup")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cyberlens", description="Unified threat-intelligence lookup for one IOC")
    parser.add_argument("ioc", help="IOC value to check (IP, domain, URL or hash)")
    parser.add_argument(
        "--type",
        dest="ioc_type",
        choices=[t.value for t in IocType],
        help="IOC type you expect; reported back as validation, never forced",
    )
    parser.add_argument("--providers", help="Comma-separated list of provider names to use")
    parser.add_argument("--timeout-ms", type=int, help="Per-provider timeout in milliseconds")
    parser.add_argument("--client-id", help="UUID v4 client id that owns the history record")
    return parser


def _make_store(config: Settings) -> HistoryStore:
    if config.HISTORY_DSN:
        return PostgresHistoryStore(config.HISTORY_DSN)
    return InMemoryHistoryStore()


async def run_lookup(args: argparse.Namespace, registry: ProviderRegistry, owner: OwnerContext, config: Settings) -> dict:
    store = _make_store(config)
    if isinstance(store, PostgresHistoryStore):
        try:
            await store.ensure_schema()
        except PersistenceError as exc:
            log.warning("Could not prepare history store: %s", exc)
    recorder = HistoryRecorder(store)

    try:
        response = await orchestrate_threat_intelligence(
            args.ioc,
            registry,
            owner,
            recorder=recorder,
            user_selected_type=args.ioc_type,
            timeout_ms=args.timeout_ms or config.PROVIDER_TIMEOUT_MS,
        )
        await recorder.drain()
        return response.to_wire()
    finally:
        if isinstance(store, PostgresHistoryStore):
            await store.close()
        await close_async_client()


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    # stdout carries the JSON result
    log_utils.configure(stream=sys.stderr)

    if args.timeout_ms is not None and args.timeout_ms <= 0:
        parser.error("--timeout-ms must be positive")

    registry = build_registry(settings)
    if args.providers:
        try:
            registry = registry.select(args.providers.split(","))
        except KeyError as exc:
            parser.error(f"Unknown provider {exc.args[0]}. Available: {', '.join(registry.names())}")

    try:
        owner = resolve_owner(args.client_id or str(uuid.uuid4()))
    except InvalidClientIdError as exc:
        parser.error(str(exc))

    result = asyncio.run(run_lookup(args, registry, owner, settings))

    json.dump(result, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
