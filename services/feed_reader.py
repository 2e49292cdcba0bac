from __future__ import annotations

import calendar
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from html import unescape
from typing import Any, Dict, List, Optional

import feedparser
import httpx

from app.config import settings
from app.core.logging import get_logger
from app.models.mention import RawItem

logger = get_logger()

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
DEFAULT_ACCEPT = "application/rss+xml, application/atom+xml, application/xml;q=0.9, */*;q=0.8"

_HTML_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")


class FeedFetchError(Exception):
    """Feed could not be fetched or decoded. Recorded per source, never fatal to a run."""

    def __init__(self, url: str, message: str):
        super().__init__(message)
        self.url = url


class FeedEntryError(Exception):
    """
    Recoverable failure for a single entry. Counted, logged, and skipped;
    the rest of the feed is still processed.
    """

    def __init__(self, message: str, entry_raw: Dict[str, Any] | None = None):
        super().__init__(message)
        self.entry_raw = entry_raw or {}


@dataclass
class FeedResult:
    url: str
    title: str
    items: List[RawItem] = field(default_factory=list)
    errors: List[FeedEntryError] = field(default_factory=list)


def _struct_time_to_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        timestamp = calendar.timegm(value)
        return datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _strip_html(value: str) -> str:
    text = unescape(value or "")
    text = _HTML_TAG_RE.sub(" ", text)
    text = _WHITESPACE_RE.sub(" ", text)
    return text.strip()


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _get_first_content_value(entry: Dict[str, Any]) -> str:
    content = entry.get("content")
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict):
                val = block.get("value")
                if isinstance(val, str) and val.strip():
                    return val
    if isinstance(content, dict):
        val = content.get("value")
        if isinstance(val, str):
            return val
    return ""


def _extract_link(entry: Dict[str, Any]) -> str:
    link = entry.get("link")
    if isinstance(link, dict):
        return _text(link.get("href"))
    if isinstance(link, list) and link and isinstance(link[0], dict):
        return _text(link[0].get("href"))
    if isinstance(link, str) and link.strip():
        return link.strip()
    links = entry.get("links")
    if isinstance(links, list):
        for link_entry in links:
            if isinstance(link_entry, dict):
                href = _text(link_entry.get("href"))
                if href:
                    return href
    return ""


def _extract_media_description(entry: Dict[str, Any]) -> str:
    direct = _text(entry.get("media_description"))
    if direct:
        return direct
    for key in ("media_group", "media_content"):
        block = entry.get(key)
        if isinstance(block, list):
            block = block[0] if block else None
        if isinstance(block, dict):
            desc = _text(block.get("description"))
            if desc:
                return desc
    return ""


def _extract_summary(entry: Dict[str, Any]) -> str:
    content_value = _get_first_content_value(entry)
    if content_value:
        return _strip_html(content_value)
    summary = entry.get("summary") or entry.get("description")
    if isinstance(summary, str) and summary.strip():
        return _strip_html(summary)
    return ""


def _extract_published_at(entry: Dict[str, Any]) -> datetime | None:
    return (
        _struct_time_to_datetime(entry.get("published_parsed"))
        or _struct_time_to_datetime(entry.get("updated_parsed"))
    )


def entry_to_raw_item(entry: Dict[str, Any]) -> RawItem:
    """Map one feedparser entry onto RawItem. Raises FeedEntryError when unusable."""
    try:
        item = RawItem(
            title=_text(entry.get("title")),
            link=_extract_link(entry),
            entry_id=_text(entry.get("id")),
            video_id=_text(entry.get("yt_videoid") or entry.get("videoid")),
            summary=_extract_summary(entry),
            media_description=_extract_media_description(entry),
            published_at=_extract_published_at(entry),
            raw_metadata=dict(entry),
        )
    except Exception as exc:
        raise FeedEntryError(str(exc), entry_raw=entry if isinstance(entry, dict) else None) from exc
    if not item.title and not item.link and not item.entry_id:
        raise FeedEntryError("missing_title_and_link", entry_raw=dict(entry))
    return item


def parse_feed_document(parsed_feed: Any, url: str) -> FeedResult:
    """Turn a feedparser result into a FeedResult, collecting per-entry errors."""
    if isinstance(parsed_feed, dict):
        entries = parsed_feed.get("entries") or []
        feed_meta = parsed_feed.get("feed") or {}
    else:
        entries = getattr(parsed_feed, "entries", []) or []
        feed_meta = getattr(parsed_feed, "feed", {}) or {}
    title = _text(feed_meta.get("title")) if isinstance(feed_meta, dict) else ""

    result = FeedResult(url=url, title=title or url)
    for entry in entries:
        try:
            result.items.append(entry_to_raw_item(entry))
        except FeedEntryError as err:
            result.errors.append(err)
    return result


class FeedReader:
    """
    HTTP + feedparser front end: `parse(url)` returns the feed's raw items.
    Use as an async context manager so the connection pool is shared across feeds.
    """

    def __init__(
        self,
        *,
        timeout_s: Optional[float] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        accept: str = DEFAULT_ACCEPT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout_s = timeout_s if timeout_s is not None else settings.MENTION_FEED_TIMEOUT_S
        self.headers = {"User-Agent": user_agent, "Accept": accept}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "FeedReader":
        self._client = httpx.AsyncClient(
            timeout=self.timeout_s,
            headers=self.headers,
            follow_redirects=True,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _fetch(self, url: str) -> bytes:
        if not self._client:
            raise RuntimeError("FeedReader client not initialized")
        try:
            response = await self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise FeedFetchError(url, f"{type(exc).__name__}: {exc}") from exc
        return response.content

    async def parse(self, url: str) -> FeedResult:
        raw = await self._fetch(url)
        parsed = feedparser.parse(raw)
        entries = parsed.get("entries") or []
        if parsed.get("bozo") and not entries:
            reason = parsed.get("bozo_exception")
            raise FeedFetchError(url, f"unparseable feed: {reason}")
        result = parse_feed_document(parsed, url)
        for err in result.errors:
            entry_raw = err.entry_raw or {}
            logger.warning(
                "mention_feed_entry_error",
                url=entry_raw.get("link") or entry_raw.get("id") or url,
                error=str(err),
            )
        return result
