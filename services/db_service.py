# services/db_service.py
"""
Thin asyncpg layer used by PostgresMentionStore.

One lazily created pool per process; every statement goes through
`_timed`, which applies the default timeout and reports slow statements.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from time import monotonic
from typing import Any, AsyncIterator, List, Optional
from urllib.parse import urlparse

import asyncpg

from app.config import require_database_url, settings

logger = logging.getLogger(__name__)

APPLICATION_NAME = "mention-ingest"
SLOW_QUERY_THRESHOLD_MS = 1_000

_pool: asyncpg.Pool | None = None
_pool_lock = asyncio.Lock()


def normalize_database_url(raw_dsn: str) -> str:
    """
    Accept the SQLAlchemy-style scheme (postgresql+asyncpg://) some deployments
    still carry in DATABASE_URL; everything after the scheme is left alone.
    """
    raw_dsn = raw_dsn.strip()
    prefix = "postgresql+asyncpg://"
    if raw_dsn.startswith(prefix):
        return "postgresql://" + raw_dsn[len(prefix):]
    return raw_dsn


async def ensure_pool() -> asyncpg.Pool:
    global _pool
    if _pool is not None:
        return _pool

    async with _pool_lock:
        if _pool is not None:
            return _pool

        dsn = normalize_database_url(require_database_url())
        parsed = urlparse(dsn)
        logger.info(
            "mention_db_pool_initializing",
            extra={"dsn_host": parsed.hostname, "dsn_port": parsed.port},
        )
        _pool = await asyncpg.create_pool(
            dsn=dsn,
            min_size=settings.DB_POOL_MIN_SIZE,
            max_size=settings.DB_POOL_MAX_SIZE,
            command_timeout=settings.DB_QUERY_TIMEOUT_S,
            statement_cache_size=0,
            server_settings={
                "application_name": APPLICATION_NAME,
                "statement_timeout": str(settings.DB_STATEMENT_TIMEOUT_MS),
                "lock_timeout": str(settings.DB_LOCK_TIMEOUT_MS),
            },
        )
        return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def _timed(
    conn: asyncpg.Connection,
    method: str,
    query: str,
    *args: Any,
    timeout: Optional[float] = None,
) -> Any:
    started = monotonic()
    try:
        call = getattr(conn, method)
        return await call(query, *args, timeout=timeout or settings.DB_QUERY_TIMEOUT_S)
    finally:
        elapsed_ms = (monotonic() - started) * 1000
        if elapsed_ms >= SLOW_QUERY_THRESHOLD_MS:
            logger.warning(
                "mention_db_slow_query",
                extra={
                    "duration_ms": round(elapsed_ms, 2),
                    "method": method,
                    "query_snippet": query.strip().split("\n")[0][:200],
                },
            )


@asynccontextmanager
async def connection() -> AsyncIterator[asyncpg.Connection]:
    pool = await ensure_pool()
    async with pool.acquire() as conn:
        yield conn


async def fetch(query: str, *args: Any, timeout: Optional[float] = None) -> List[asyncpg.Record]:
    async with connection() as conn:
        return await _timed(conn, "fetch", query, *args, timeout=timeout)


async def fetchrow(query: str, *args: Any, timeout: Optional[float] = None) -> Optional[asyncpg.Record]:
    async with connection() as conn:
        return await _timed(conn, "fetchrow", query, *args, timeout=timeout)


async def execute(query: str, *args: Any, timeout: Optional[float] = None) -> str:
    """Returns the asyncpg command tag, e.g. "DELETE 3"."""
    async with connection() as conn:
        return await _timed(conn, "execute", query, *args, timeout=timeout)


@asynccontextmanager
async def run_in_transaction() -> AsyncIterator[asyncpg.Connection]:
    """Yield a connection inside a transaction; commit on success, roll back on error."""
    async with connection() as conn:
        async with conn.transaction():
            yield conn


async def execute_with_conn(
    conn: asyncpg.Connection,
    query: str,
    *args: Any,
    timeout: Optional[float] = None,
) -> str:
    return await _timed(conn, "execute", query, *args, timeout=timeout)


async def fetchrow_with_conn(
    conn: asyncpg.Connection,
    query: str,
    *args: Any,
    timeout: Optional[float] = None,
) -> Optional[asyncpg.Record]:
    return await _timed(conn, "fetchrow", query, *args, timeout=timeout)
