from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from app.config import settings
from app.core.logging import get_logger
from app.models.mention import RawItem, build_mention
from app.models.mention_sources import FeedSource, get_feed_sources
from services.domain_classifiers import default_blocklist, default_international_classifier
from services.feed_reader import FeedReader, FeedResult
from services.mention_feed_rules import DEFAULT_RULES, ContentFilterChain
from services.mention_sentiment import sentiment_score
from services.mention_store import MentionStore, MentionStoreError, get_mention_store, retention_cutoff
from services.near_duplicate import NearDuplicateDetector
from services.url_canonicalizer import canonicalize, display_source, resolve_item_link

logger = get_logger()

_COUNTERS = ("seen", "found", "stored", "filtered", "duplicates", "skipped", "failed_items")


def _new_report(source: FeedSource) -> Dict[str, Any]:
    report: Dict[str, Any] = {"origin": source.origin, "url": source.url, "error": None}
    report.update({name: 0 for name in _COUNTERS})
    return report


def default_filter_chain() -> ContentFilterChain:
    return ContentFilterChain(
        DEFAULT_RULES,
        blocklist=default_blocklist(),
        international=default_international_classifier(),
    )


class MentionIngestService:
    """
    One ingestion run over a set of feed sources: fetch, resolve, filter,
    near-duplicate check, insert-if-new, trim.

    Feeds are fetched with bounded parallelism. The duplicate check and the
    insert for one origin run under that origin's lock so the 48h window and
    the exact-URL index stay consistent within a run.
    """

    def __init__(
        self,
        store: MentionStore,
        *,
        reader: Optional[FeedReader] = None,
        filter_chain: Optional[ContentFilterChain] = None,
        detector: Optional[NearDuplicateDetector] = None,
        max_concurrency: Optional[int] = None,
        feed_deadline_s: Optional[float] = None,
        enable_sentiment: Optional[bool] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self._owns_reader = reader is None
        self.reader = reader or FeedReader()
        self.filter_chain = filter_chain or default_filter_chain()
        self.detector = detector or NearDuplicateDetector(store, clock=clock)
        concurrency = max_concurrency if max_concurrency is not None else settings.MENTION_INGEST_MAX_CONCURRENCY
        self._sem = asyncio.Semaphore(max(1, concurrency))
        self.feed_deadline_s = feed_deadline_s if feed_deadline_s is not None else settings.MENTION_FEED_DEADLINE_S
        self.enable_sentiment = settings.ENABLE_SENTIMENT if enable_sentiment is None else enable_sentiment
        self.clock = clock
        self._origin_locks: Dict[str, asyncio.Lock] = {}

    async def __aenter__(self) -> "MentionIngestService":
        if self._owns_reader:
            await self.reader.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._owns_reader:
            await self.reader.__aexit__(exc_type, exc, tb)

    def _origin_lock(self, origin: str) -> asyncio.Lock:
        lock = self._origin_locks.get(origin)
        if lock is None:
            lock = self._origin_locks[origin] = asyncio.Lock()
        return lock

    def _published_ts(self, item: RawItem) -> int:
        if item.published_at is not None:
            return int(item.published_at.timestamp())
        return int(self.clock())

    async def _pull(self, source: FeedSource) -> FeedResult:
        async with self._sem:
            return await asyncio.wait_for(self.reader.parse(source.url), timeout=self.feed_deadline_s)

    async def _store(
        self,
        source: FeedSource,
        item: RawItem,
        *,
        canon: str,
        title: str,
        summary: str,
        link: str,
        source_name: str,
    ) -> bool:
        sentiment = sentiment_score(f"{title} {summary}") if self.enable_sentiment else None
        mention = build_mention(
            canon=canon,
            section=source.section,
            title=title,
            link=link,
            source=source_name,
            summary=summary,
            origin=source.origin,
            published_ts=self._published_ts(item),
            id_prefix=source.id_prefix,
            sentiment=sentiment,
            **dict(source.metadata),
        )
        result = await self.store.insert_if_new(mention)
        if not result.inserted:
            return False
        await self.store.trim_older_than(retention_cutoff(self.clock()))
        logger.info(
            "mention_stored",
            origin=source.origin,
            id=mention.id,
            title=mention.title,
            source=source_name,
        )
        return True

    async def _process_filtered(
        self,
        source: FeedSource,
        feed: FeedResult,
        item: RawItem,
        report: Dict[str, Any],
    ) -> None:
        title = item.title.strip()
        summary = item.media_description or item.summary
        link = resolve_item_link(item)
        source_name = source.source_label or display_source(link, feed.title)

        reason = self.filter_chain.rejection_reason(source.kind, title, summary, source_name, link)
        if reason:
            report["filtered"] += 1
            logger.info("mention_filtered", origin=source.origin, reason=reason, title=title, source=source_name)
            return

        async with self._origin_lock(source.origin):
            if await self.detector.is_duplicate(title, summary, source.origin):
                # counted as found, never stored
                report["found"] += 1
                report["duplicates"] += 1
                return

            canon = canonicalize(link or title)
            if not canon:
                report["skipped"] += 1
                return

            stored = await self._store(
                source, item, canon=canon, title=title, summary=summary, link=link, source_name=source_name
            )
        if stored:
            report["found"] += 1
            report["stored"] += 1
        else:
            report["skipped"] += 1

    async def _process_unfiltered(
        self,
        source: FeedSource,
        feed: FeedResult,
        item: RawItem,
        report: Dict[str, Any],
    ) -> None:
        title = item.title.strip()
        link = resolve_item_link(item)
        if not link or not title:
            report["skipped"] += 1
            return
        report["found"] += 1

        canon = canonicalize(link)
        if not canon:
            report["skipped"] += 1
            return
        source_name = source.source_label or display_source(link, feed.title)
        async with self._origin_lock(source.origin):
            stored = await self._store(
                source, item, canon=canon, title=title, summary=item.summary, link=link, source_name=source_name
            )
        if stored:
            report["stored"] += 1
        else:
            report["skipped"] += 1

    async def ingest_source(self, source: FeedSource) -> Dict[str, Any]:
        report = _new_report(source)
        try:
            feed = await self._pull(source)
        except asyncio.TimeoutError:
            report["error"] = f"timed out after {self.feed_deadline_s}s"
            logger.warning("mention_feed_failed", origin=source.origin, url=source.url, error=report["error"])
            return report
        except Exception as exc:
            report["error"] = str(exc) or type(exc).__name__
            logger.warning("mention_feed_failed", origin=source.origin, url=source.url, error=report["error"])
            return report

        report["failed_items"] = len(feed.errors)
        process = self._process_filtered if source.filtered else self._process_unfiltered
        for item in feed.items:
            report["seen"] += 1
            try:
                await process(source, feed, item, report)
            except MentionStoreError:
                raise
            except Exception as exc:
                report["failed_items"] += 1
                logger.warning(
                    "mention_item_failed",
                    origin=source.origin,
                    link=item.link or item.entry_id,
                    error=str(exc),
                )

        logger.info(
            "mention_source_done",
            origin=source.origin,
            seen=report["seen"],
            stored=report["stored"],
            filtered=report["filtered"],
            duplicates=report["duplicates"],
        )
        return report

    async def ingest_all(self, sources: Sequence[FeedSource]) -> Dict[str, Any]:
        tasks = [asyncio.ensure_future(self.ingest_source(src)) for src in sources]
        try:
            reports = await asyncio.gather(*tasks)
        except MentionStoreError:
            # the run is lost; stop the other sources before reporting it
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return summarize_reports(sources, reports)


def summarize_reports(sources: Sequence[FeedSource], reports: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    summary: Dict[str, Any] = {"ok": True, "feeds": len(sources)}
    for name in _COUNTERS:
        summary[name] = sum(int(r.get(name, 0)) for r in reports)
    summary["errors"] = [
        {"url": r["url"], "origin": r["origin"], "error": r["error"]}
        for r in reports
        if r.get("error")
    ]
    summary["entities_configured"] = len({src.origin for src in sources})
    summary["sources"] = list(reports)
    return summary


def _disabled_summary() -> Dict[str, Any]:
    summary: Dict[str, Any] = {"ok": True, "feeds": 0, "rss_disabled": True}
    summary.update({name: 0 for name in _COUNTERS})
    summary.update({"errors": [], "entities_configured": 0, "sources": []})
    return summary


async def ingest_all_sources(
    store: Optional[MentionStore] = None,
    *,
    sources: Optional[List[FeedSource]] = None,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    if sources is None:
        sources = get_feed_sources()
    if limit is not None:
        sources = sources[:limit]

    if not sources:
        logger.info("mention_ingest_no_sources_configured")
        return _disabled_summary()

    store = store or get_mention_store()
    async with MentionIngestService(store) as service:
        summary = await service.ingest_all(sources)

    logger.info(
        "mention_ingest_summary",
        feeds=summary["feeds"],
        seen=summary["seen"],
        found=summary["found"],
        stored=summary["stored"],
        filtered=summary["filtered"],
        duplicates=summary["duplicates"],
        failed_feeds=len(summary["errors"]),
    )
    return summary
