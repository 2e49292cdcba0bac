from __future__ import annotations

import time
from datetime import datetime, timezone

import feedparser
import httpx
import pytest

from services.feed_reader import (
    DEFAULT_USER_AGENT,
    FeedEntryError,
    FeedFetchError,
    FeedReader,
    entry_to_raw_item,
    parse_feed_document,
)

RSS_DOC = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Delta Newsroom</title>
    <link>https://news.example.com</link>
    <item>
      <title>Delta unveils redesigned cabins</title>
      <link>https://news.example.com/cabins?utm_source=rss</link>
      <guid>https://news.example.com/cabins</guid>
      <description>&lt;p&gt;New &lt;b&gt;cabins&lt;/b&gt; for long-haul fleet&lt;/p&gt;</description>
      <pubDate>Tue, 14 Nov 2023 22:13:20 GMT</pubDate>
    </item>
    <item>
      <title>Undated item</title>
      <link>https://news.example.com/undated</link>
    </item>
  </channel>
</rss>
"""

YOUTUBE_DOC = b"""<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom" xmlns:yt="http://www.youtube.com/xml/schemas/2015">
  <title>Carlos Zafarini</title>
  <entry>
    <id>yt:video:dQw4w9WgXcQ</id>
    <yt:videoId>dQw4w9WgXcQ</yt:videoId>
    <title>Keynote at the summit</title>
    <link rel="alternate" href="https://www.youtube.com/watch?v=dQw4w9WgXcQ"/>
    <published>2023-11-14T22:13:20+00:00</published>
  </entry>
</feed>
"""


def _reader(handler) -> FeedReader:
    return FeedReader(timeout_s=5, transport=httpx.MockTransport(handler))


def test_parse_feed_document_maps_rss_entries():
    result = parse_feed_document(feedparser.parse(RSS_DOC), "https://news.example.com/rss")

    assert result.title == "Delta Newsroom"
    assert result.errors == []
    first, second = result.items
    assert first.title == "Delta unveils redesigned cabins"
    assert first.link == "https://news.example.com/cabins?utm_source=rss"
    assert first.summary == "New cabins for long-haul fleet"
    assert first.published_at == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
    assert second.published_at is None


def test_parse_feed_document_maps_youtube_entries():
    result = parse_feed_document(feedparser.parse(YOUTUBE_DOC), "https://www.youtube.com/feeds")

    (item,) = result.items
    assert item.entry_id == "yt:video:dQw4w9WgXcQ"
    assert item.video_id == "dQw4w9WgXcQ"
    assert item.link == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


def test_corrupt_entries_are_collected_not_raised():
    parsed = {
        "feed": {"title": "Mixed"},
        "entries": [
            {"title": "Good", "link": "https://example.com/good", "published_parsed": time.gmtime(0)},
            object(),
            {"summary": "no title, link or id"},
        ],
    }
    result = parse_feed_document(parsed, "https://example.com/rss")

    assert [item.title for item in result.items] == ["Good"]
    assert len(result.errors) == 2
    assert all(isinstance(err, FeedEntryError) for err in result.errors)


def test_entry_to_raw_item_prefers_content_and_media_description():
    entry = {
        "title": "Clip",
        "links": [{"href": "https://example.com/clip"}],
        "content": [{"value": "<div>Full <i>body</i></div>"}],
        "summary": "Short",
        "media_group": [{"description": "Video description"}],
    }
    item = entry_to_raw_item(entry)

    assert item.link == "https://example.com/clip"
    assert item.summary == "Full body"
    assert item.media_description == "Video description"


@pytest.mark.asyncio
async def test_reader_fetches_with_browser_headers():
    seen_headers = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen_headers.update(request.headers)
        return httpx.Response(200, content=RSS_DOC, headers={"content-type": "application/rss+xml"})

    async with _reader(handler) as reader:
        result = await reader.parse("https://news.example.com/rss")

    assert len(result.items) == 2
    assert seen_headers["user-agent"] == DEFAULT_USER_AGENT
    assert "application/rss+xml" in seen_headers["accept"]


@pytest.mark.asyncio
async def test_reader_raises_fetch_error_on_http_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, content=b"unavailable")

    async with _reader(handler) as reader:
        with pytest.raises(FeedFetchError) as excinfo:
            await reader.parse("https://news.example.com/rss")

    assert excinfo.value.url == "https://news.example.com/rss"


@pytest.mark.asyncio
async def test_reader_raises_fetch_error_on_network_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _reader(handler) as reader:
        with pytest.raises(FeedFetchError):
            await reader.parse("https://news.example.com/rss")


@pytest.mark.asyncio
async def test_reader_rejects_unparseable_documents():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html><body><p>oops")

    async with _reader(handler) as reader:
        with pytest.raises(FeedFetchError):
            await reader.parse("https://news.example.com/rss")


@pytest.mark.asyncio
async def test_reader_requires_context_manager():
    reader = FeedReader(timeout_s=1)
    with pytest.raises(RuntimeError):
        await reader.parse("https://news.example.com/rss")
