from __future__ import annotations

import argparse
import asyncio
from typing import Optional

from app.config import settings
from app.core.logging import configure_logging, get_logger
from app.core.run_context import with_run_id
from services.db_service import close_pool
from services.mention_ingest_service import ingest_all_sources
from services.mention_store import MentionStoreError, PostgresMentionStore, get_mention_store

configure_logging(service_name="worker", level=settings.LOG_LEVEL)
logger = get_logger().bind(worker="mention_ingest_bot")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="MentionIngestBot: collect feeds into the mention store.")
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Optional limit on number of sources to ingest during this run.",
    )
    parser.add_argument(
        "--store",
        choices=("postgres", "memory"),
        default=None,
        help="Store backend; defaults to MENTION_STORE_BACKEND.",
    )
    return parser.parse_args(argv)


async def run_ingest(limit: Optional[int], backend: Optional[str]) -> int:
    store = get_mention_store(backend)
    try:
        if isinstance(store, PostgresMentionStore):
            await store.ensure_schema()
        result = await ingest_all_sources(store, limit=limit)
    except MentionStoreError as exc:
        logger.error("mention_ingest_bot_failed", error=str(exc))
        return 1
    finally:
        if isinstance(store, PostgresMentionStore):
            await close_pool()

    logger.info(
        "mention_ingest_bot_finished",
        feeds=result.get("feeds"),
        stored=result.get("stored"),
        errors=len(result.get("errors") or []),
    )
    return 0


async def main_async(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    with with_run_id():
        return await run_ingest(limit=args.limit, backend=args.store)


def main() -> None:
    exit_code = asyncio.run(main_async())
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
