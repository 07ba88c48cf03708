"""
Lookup history for cyberlens.

The write side is fire-and-forget: ``HistoryRecorder.dispatch`` schedules a
detached task whose failure is only logged. The read side groups an owner's
lookups by IOC value with the latest verdict and an averaged score.

Stores
------
InMemoryHistoryStore   process-local, used in tests and when no DSN is set
PostgresHistoryStore   asyncpg-backed ``ioc_history`` table
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, runtime_checkable

import asyncpg

from ioc_types import IocType
from owner import OwnerContext

log = logging.getLogger("history")

# Verdict -> history score. Unknown verdicts do not contribute.
VERDICT_SCORES: dict[str, int] = {
    "clean": 100,
    "benign": 100,
    "suspicious": 50,
    "malicious": 0,
}

_CANONICAL = {
    "clean": "Clean",
    "benign": "Clean",
    "suspicious": "Suspicious",
    "malicious": "Malicious",
}


class PersistenceError(Exception):
    """Raised when the history store cannot complete an operation."""


def canonical_verdict(verdict: Optional[str]) -> str:
    """Map any verdict spelling to ``Clean``/``Suspicious``/``Malicious`` (``""`` if unknown)."""
    return _CANONICAL.get((verdict or "").strip().lower(), "")


def verdict_score(verdict: Optional[str]) -> Optional[int]:
    return VERDICT_SCORES.get((verdict or "").strip().lower())


@dataclass(frozen=True)
class HistoryEntry:
    ioc_value: str
    verdict: str
    created_at: datetime
    score: Optional[int]


@runtime_checkable
class HistoryStore(Protocol):
    async def insert(
        self,
        owner_type: str,
        owner_id: str,
        ioc_type: str,
        ioc_value: str,
        verdict: Optional[str] = None,
    ) -> None: ...

    async def query_history(self, owner_type: str, owner_id: str, limit: int, offset: int) -> list[HistoryEntry]: ...

    async def migrate_owner(self, anonymous_id: str, user_id: str) -> int: ...


@dataclass
class _Row:
    owner_type: str
    owner_id: str
    ioc_type: str
    ioc_value: str
    verdict: Optional[str]
    created_at: datetime
    seq: int = field(default=0, compare=False)


class InMemoryHistoryStore:
    """Process-local history store with the same semantics as the SQL one."""

    def __init__(self) -> None:
        self._rows: list[_Row] = []
        self._seq = itertools.count()

    @property
    def rows(self) -> list[_Row]:
        return list(self._rows)

    async def insert(
        self,
        owner_type: str,
        owner_id: str,
        ioc_type: str,
        ioc_value: str,
        verdict: Optional[str] = None,
    ) -> None:
        self._rows.append(
            _Row(owner_type, owner_id, str(ioc_type), ioc_value, verdict, datetime.now(timezone.utc), next(self._seq))
        )

    async def query_history(self, owner_type: str, owner_id: str, limit: int, offset: int) -> list[HistoryEntry]:
        groups: dict[str, list[_Row]] = {}
        for row in self._rows:
            if row.owner_type == owner_type and row.owner_id == owner_id:
                groups.setdefault(row.ioc_value, []).append(row)

        entries: list[tuple[int, HistoryEntry]] = []
        for ioc_value, rows in groups.items():
            latest = max(rows, key=lambda r: (r.created_at, r.seq))
            scores = [s for s in (verdict_score(r.verdict) for r in rows) if s is not None]
            avg = round(sum(scores) / len(scores)) if scores else None
            entries.append(
                (latest.seq, HistoryEntry(ioc_value, canonical_verdict(latest.verdict), latest.created_at, avg))
            )

        entries.sort(key=lambda e: (e[1].created_at, e[0]), reverse=True)
        return [entry for _, entry in entries[offset:offset + limit]]

    async def migrate_owner(self, anonymous_id: str, user_id: str) -> int:
        moved = 0
        for row in self._rows:
            if row.owner_type == "anonymous" and row.owner_id == anonymous_id:
                row.owner_type, row.owner_id = "user", user_id
                moved += 1
        return moved


_SCHEMA = """
CREATE TABLE IF NOT EXISTS ioc_history (
    id          BIGSERIAL PRIMARY KEY,
    owner_type  TEXT NOT NULL,
    owner_id    TEXT NOT NULL,
    ioc_type    TEXT NOT NULL,
    ioc_value   TEXT NOT NULL,
    verdict     TEXT,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS ioc_history_owner_idx ON ioc_history (owner_type, owner_id, created_at DESC);
"""

_INSERT = """
INSERT INTO ioc_history (owner_type, owner_id, ioc_type, ioc_value, verdict)
VALUES ($1, $2, $3, $4, $5)
"""

_QUERY = """
SELECT
  ioc_value,
  (
    ARRAY_AGG(
      CASE
        WHEN LOWER(verdict) IN ('clean', 'benign') THEN 'Clean'
        WHEN LOWER(verdict) = 'suspicious' THEN 'Suspicious'
        WHEN LOWER(verdict) = 'malicious' THEN 'Malicious'
        ELSE ''
      END
      ORDER BY created_at DESC, id DESC
    )
  )[1] AS verdict,
  MAX(created_at) AS created_at,
  ROUND(
    AVG(
      CASE
        WHEN LOWER(verdict) IN ('clean', 'benign') THEN 100
        WHEN LOWER(verdict) = 'suspicious' THEN 50
        WHEN LOWER(verdict) = 'malicious' THEN 0
        ELSE NULL
      END
    )
  )::INT AS score
FROM ioc_history
WHERE owner_type = $1
  AND owner_id = $2
GROUP BY ioc_value
ORDER BY created_at DESC
LIMIT $3 OFFSET $4
"""

_MIGRATE = """
UPDATE ioc_history
SET owner_type = 'user', owner_id = $1
WHERE owner_type = 'anonymous' AND owner_id = $2
"""


class PostgresHistoryStore:
    """History store on an asyncpg connection pool.

    The pool is created on first use from *dsn* unless one is supplied.
    Every driver failure surfaces as ``PersistenceError``.
    """

    def __init__(self, dsn: str | None = None, *, pool: Any = None, min_size: int = 1, max_size: int = 5) -> None:
        if dsn is None and pool is None:
            raise ValueError("PostgresHistoryStore needs a DSN or a pool")
        self._dsn = dsn
        self._pool = pool
        self._min_size = min_size
        self._max_size = max_size
        self._pool_lock = asyncio.Lock()

    async def _get_pool(self) -> Any:
        if self._pool is not None:
            return self._pool
        async with self._pool_lock:
            if self._pool is None:
                try:
                    self._pool = await asyncpg.create_pool(
                        self._dsn,
                        min_size=self._min_size,
                        max_size=self._max_size,
                        command_timeout=60,
                    )
                except Exception as exc:
                    raise PersistenceError(f"Could not connect to history database: {exc}") from exc
        return self._pool

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                await conn.execute(_SCHEMA)
        except Exception as exc:
            raise PersistenceError(f"Failed to create history schema: {exc}") from exc

    async def insert(
        self,
        owner_type: str,
        owner_id: str,
        ioc_type: str,
        ioc_value: str,
        verdict: Optional[str] = None,
    ) -> None:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                await conn.execute(_INSERT, owner_type, owner_id, str(ioc_type), ioc_value, verdict)
        except Exception as exc:
            raise PersistenceError(f"Failed to insert history row: {exc}") from exc

    async def query_history(self, owner_type: str, owner_id: str, limit: int, offset: int) -> list[HistoryEntry]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(_QUERY, owner_type, owner_id, limit, offset)
        except Exception as exc:
            raise PersistenceError(f"Failed to query history: {exc}") from exc
        return [HistoryEntry(r["ioc_value"], r["verdict"], r["created_at"], r["score"]) for r in rows]

    async def migrate_owner(self, anonymous_id: str, user_id: str) -> int:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    status = await conn.execute(_MIGRATE, user_id, anonymous_id)
        except Exception as exc:
            raise PersistenceError(f"Failed to migrate owner {anonymous_id}: {exc}") from exc
        # asyncpg returns the command tag, e.g. "UPDATE 3"
        return int(status.split()[-1])

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


class HistoryRecorder:
    """Records lookups without ever blocking or failing the lookup itself."""

    def __init__(self, store: HistoryStore) -> None:
        self.store = store
        self._pending: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def record(
        self,
        owner: OwnerContext,
        ioc_type: IocType | str,
        ioc_value: str,
        verdict: Optional[str] = None,
    ) -> None:
        """Persist one lookup; raises PersistenceError on store failure."""
        try:
            await self.store.insert(owner.type, owner.id, str(ioc_type), ioc_value, verdict)
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(str(exc)) from exc

    def dispatch(
        self,
        owner: OwnerContext,
        ioc_type: IocType | str,
        ioc_value: str,
        verdict: Optional[str] = None,
    ) -> None:
        """Schedule ``record`` as a detached task. Failures are logged, never retried."""
        task = asyncio.create_task(self.record(owner, ioc_type, ioc_value, verdict), name="history:record")
        self._pending.add(task)
        task.add_done_callback(lambda t: self._settled(t, owner, ioc_type))

    def _settled(self, task: asyncio.Task, owner: OwnerContext, ioc_type: IocType | str) -> None:
        self._pending.discard(task)
        if task.cancelled():
            log.warning("History write for %s/%s was cancelled", owner.type, ioc_type)
            return
        exc = task.exception()
        if exc is not None:
            log.warning("Failed to log IOC history for %s:%s (%s): %s", owner.type, owner.id, ioc_type, exc)

    async def drain(self) -> None:
        """Wait for outstanding writes; used at shutdown, never on the request path."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


__all__ = [
    "PersistenceError",
    "HistoryEntry",
    "HistoryStore",
    "InMemoryHistoryStore",
    "PostgresHistoryStore",
    "HistoryRecorder",
    "canonical_verdict",
    "verdict_score",
    "VERDICT_SCORES",
]
