"""
Time-ordered mention store with permanent dedup indices.

Mentions are kept by id with `published_ts` as their score; the exact-URL
index (`canon`) and the id index outlive retention trimming, so a URL that
was admitted once is never admitted again.
"""

from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from bisect import bisect_left, insort
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

import asyncpg
from pydantic import ValidationError

from app.config import settings
from app.core.logging import get_logger
from app.models.mention import Mention
from services import db_service

logger = get_logger()

RETENTION_DAYS = 14


class MentionStoreError(Exception):
    """The store could not be reached or refused the operation. Aborts the run."""


@dataclass(frozen=True)
class InsertResult:
    inserted: bool
    replaced: bool = False


def retention_cutoff(now: Optional[float] = None) -> int:
    current = int(now if now is not None else time.time())
    return current - RETENTION_DAYS * 24 * 60 * 60


class MentionStore(ABC):
    @abstractmethod
    async def insert_if_new(self, mention: Mention) -> InsertResult:
        """Admit `mention` only if its canonical URL was never seen before."""

    @abstractmethod
    async def upsert(self, mention: Mention) -> InsertResult:
        """Replace the stored entry with the same id (latest snapshot wins)."""

    @abstractmethod
    async def range_by_score(self, from_ts: int, to_ts: Optional[int] = None) -> List[Mention]:
        """Mentions with from_ts <= published_ts <= to_ts (open upper bound when None)."""

    @abstractmethod
    async def trim_older_than(self, cutoff_ts: int) -> int:
        """Delete mentions scored below `cutoff_ts`; dedup indices are untouched."""

    @abstractmethod
    async def has_seen_canon(self, canon: str) -> bool: ...

    @abstractmethod
    async def has_seen_id(self, mention_id: str) -> bool: ...

    async def trim_expired(self, now: Optional[float] = None) -> int:
        return await self.trim_older_than(retention_cutoff(now))


class InMemoryMentionStore(MentionStore):
    """
    Process-local store: a map from id to Mention plus an ordered (ts, id)
    index for range queries. Used for dry runs and tests.
    """

    def __init__(self) -> None:
        self._records: Dict[str, Mention] = {}
        self._order: List[Tuple[int, str]] = []
        self._seen_canon: Set[str] = set()
        self._seen_ids: Set[str] = set()
        self._lock = asyncio.Lock()

    def _put(self, mention: Mention) -> None:
        self._records[mention.id] = mention.model_copy(deep=True)
        insort(self._order, (mention.published_ts, mention.id))

    def _drop(self, mention_id: str) -> None:
        existing = self._records.pop(mention_id, None)
        if existing is None:
            return
        key = (existing.published_ts, mention_id)
        idx = bisect_left(self._order, key)
        if idx < len(self._order) and self._order[idx] == key:
            del self._order[idx]

    async def insert_if_new(self, mention: Mention) -> InsertResult:
        async with self._lock:
            if mention.canon in self._seen_canon:
                return InsertResult(inserted=False)
            self._seen_canon.add(mention.canon)
            self._seen_ids.add(mention.id)
            if mention.id in self._records:
                # hash collision on a new URL: same identity, keep the first
                return InsertResult(inserted=False)
            self._put(mention)
            return InsertResult(inserted=True)

    async def upsert(self, mention: Mention) -> InsertResult:
        async with self._lock:
            self._seen_canon.add(mention.canon)
            self._seen_ids.add(mention.id)
            replaced = mention.id in self._records
            self._drop(mention.id)
            self._put(mention)
            return InsertResult(inserted=not replaced, replaced=replaced)

    async def range_by_score(self, from_ts: int, to_ts: Optional[int] = None) -> List[Mention]:
        async with self._lock:
            start = bisect_left(self._order, (from_ts, ""))
            result: List[Mention] = []
            for ts, mention_id in self._order[start:]:
                if to_ts is not None and ts > to_ts:
                    break
                result.append(self._records[mention_id].model_copy(deep=True))
            return result

    async def trim_older_than(self, cutoff_ts: int) -> int:
        async with self._lock:
            idx = bisect_left(self._order, (cutoff_ts, ""))
            expired = self._order[:idx]
            del self._order[:idx]
            for _, mention_id in expired:
                self._records.pop(mention_id, None)
            return len(expired)

    async def has_seen_canon(self, canon: str) -> bool:
        return canon in self._seen_canon

    async def has_seen_id(self, mention_id: str) -> bool:
        return mention_id in self._seen_ids


# --------------------------------------------------------------------
# Postgres
# --------------------------------------------------------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS mention_seen_canon (
    canon TEXT PRIMARY KEY,
    first_seen_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE TABLE IF NOT EXISTS mention_seen_ids (
    id TEXT PRIMARY KEY,
    first_seen_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE TABLE IF NOT EXISTS mentions (
    id TEXT PRIMARY KEY,
    canon TEXT NOT NULL,
    origin TEXT NOT NULL,
    published_ts BIGINT NOT NULL,
    payload JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS mentions_published_ts_idx ON mentions (published_ts);
"""

_STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError, RuntimeError)


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except _STORE_ERRORS as exc:
        logger.error("mention_store_error", operation=operation, error=str(exc))
        raise MentionStoreError(f"{operation} failed: {exc}") from exc


def _status_count(status: Optional[str]) -> int:
    # asyncpg command tags: "INSERT 0 1", "DELETE 7"
    try:
        return int((status or "").split()[-1])
    except (IndexError, ValueError):
        return 0


def _decode_payload(value: Any) -> Optional[Mention]:
    try:
        record = json.loads(value) if isinstance(value, (str, bytes)) else dict(value)
        return Mention.from_record(record)
    except (ValueError, TypeError, ValidationError) as exc:
        logger.warning("mention_store_corrupt_payload", error=str(exc))
        return None


class PostgresMentionStore(MentionStore):
    async def ensure_schema(self) -> None:
        with _store_errors("ensure_schema"):
            await db_service.execute(SCHEMA_SQL)

    async def insert_if_new(self, mention: Mention) -> InsertResult:
        payload = json.dumps(mention.to_record(), ensure_ascii=False)
        with _store_errors("insert_if_new"):
            async with db_service.run_in_transaction() as conn:
                status = await db_service.execute_with_conn(
                    conn,
                    "INSERT INTO mention_seen_canon (canon) VALUES ($1) ON CONFLICT DO NOTHING",
                    mention.canon,
                )
                if _status_count(status) != 1:
                    return InsertResult(inserted=False)
                await db_service.execute_with_conn(
                    conn,
                    "INSERT INTO mention_seen_ids (id) VALUES ($1) ON CONFLICT DO NOTHING",
                    mention.id,
                )
                status = await db_service.execute_with_conn(
                    conn,
                    """
                    INSERT INTO mentions (id, canon, origin, published_ts, payload)
                    VALUES ($1, $2, $3, $4, $5::jsonb)
                    ON CONFLICT (id) DO NOTHING
                    """,
                    mention.id,
                    mention.canon,
                    mention.origin,
                    mention.published_ts,
                    payload,
                )
                return InsertResult(inserted=_status_count(status) == 1)

    async def upsert(self, mention: Mention) -> InsertResult:
        payload = json.dumps(mention.to_record(), ensure_ascii=False)
        with _store_errors("upsert"):
            async with db_service.run_in_transaction() as conn:
                await db_service.execute_with_conn(
                    conn,
                    "INSERT INTO mention_seen_canon (canon) VALUES ($1) ON CONFLICT DO NOTHING",
                    mention.canon,
                )
                await db_service.execute_with_conn(
                    conn,
                    "INSERT INTO mention_seen_ids (id) VALUES ($1) ON CONFLICT DO NOTHING",
                    mention.id,
                )
                row = await db_service.fetchrow_with_conn(
                    conn,
                    """
                    INSERT INTO mentions (id, canon, origin, published_ts, payload)
                    VALUES ($1, $2, $3, $4, $5::jsonb)
                    ON CONFLICT (id) DO UPDATE
                    SET canon = EXCLUDED.canon,
                        origin = EXCLUDED.origin,
                        published_ts = EXCLUDED.published_ts,
                        payload = EXCLUDED.payload,
                        updated_at = NOW()
                    RETURNING (xmax = 0) AS inserted
                    """,
                    mention.id,
                    mention.canon,
                    mention.origin,
                    mention.published_ts,
                    payload,
                )
        inserted = bool(row["inserted"]) if row else False
        return InsertResult(inserted=inserted, replaced=not inserted)

    async def range_by_score(self, from_ts: int, to_ts: Optional[int] = None) -> List[Mention]:
        with _store_errors("range_by_score"):
            rows = await db_service.fetch(
                """
                SELECT payload
                FROM mentions
                WHERE published_ts >= $1
                  AND ($2::bigint IS NULL OR published_ts <= $2)
                ORDER BY published_ts ASC
                """,
                from_ts,
                to_ts,
            )
        result: List[Mention] = []
        for row in rows or []:
            mention = _decode_payload(row["payload"])
            if mention is not None:
                result.append(mention)
        return result

    async def trim_older_than(self, cutoff_ts: int) -> int:
        with _store_errors("trim_older_than"):
            status = await db_service.execute(
                "DELETE FROM mentions WHERE published_ts < $1",
                cutoff_ts,
            )
        return _status_count(status)

    async def has_seen_canon(self, canon: str) -> bool:
        with _store_errors("has_seen_canon"):
            row = await db_service.fetchrow(
                "SELECT 1 FROM mention_seen_canon WHERE canon = $1",
                canon,
            )
        return row is not None

    async def has_seen_id(self, mention_id: str) -> bool:
        with _store_errors("has_seen_id"):
            row = await db_service.fetchrow(
                "SELECT 1 FROM mention_seen_ids WHERE id = $1",
                mention_id,
            )
        return row is not None


def get_mention_store(backend: Optional[str] = None) -> MentionStore:
    choice = (backend or settings.MENTION_STORE_BACKEND or "postgres").strip().lower()
    if choice == "memory":
        return InMemoryMentionStore()
    if choice == "postgres":
        return PostgresMentionStore()
    raise ValueError(f"unknown mention store backend: {choice!r}")
