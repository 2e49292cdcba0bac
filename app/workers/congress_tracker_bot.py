from __future__ import annotations

import asyncio

from app.config import settings
from app.core.logging import configure_logging, get_logger
from app.core.run_context import with_run_id
from services.congress_tracker import CongressTrackerError, run_congress_tracker
from services.db_service import close_pool
from services.mention_store import MentionStoreError, PostgresMentionStore, get_mention_store

configure_logging(service_name="worker", level=settings.LOG_LEVEL)
logger = get_logger().bind(worker="congress_tracker_bot")


async def run_tracker() -> int:
    store = get_mention_store()
    try:
        if isinstance(store, PostgresMentionStore):
            await store.ensure_schema()
        result = await run_congress_tracker(store)
    except (CongressTrackerError, MentionStoreError, RuntimeError) as exc:
        logger.error("congress_tracker_bot_failed", error=str(exc))
        return 1
    finally:
        if isinstance(store, PostgresMentionStore):
            await close_pool()

    logger.info(
        "congress_tracker_bot_finished",
        bill=result.get("bill"),
        replaced=result.get("replaced"),
    )
    return 0


async def main_async() -> int:
    with with_run_id():
        return await run_tracker()


def main() -> None:
    exit_code = asyncio.run(main_async())
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
