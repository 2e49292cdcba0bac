from __future__ import annotations

import pytest

from app.workers import congress_tracker_bot, mention_ingest_bot
from services.mention_store import InMemoryMentionStore, MentionStoreError


@pytest.mark.asyncio
async def test_run_ingest_success(monkeypatch):
    calls = []

    async def fake_ingest_all_sources(store, limit=None):
        calls.append((store, limit))
        return {"feeds": 2, "stored": 3, "errors": [{"url": "https://x.example/rss"}]}

    monkeypatch.setattr(mention_ingest_bot, "ingest_all_sources", fake_ingest_all_sources)

    exit_code = await mention_ingest_bot.run_ingest(limit=2, backend="memory")

    assert exit_code == 0
    store, limit = calls[0]
    assert isinstance(store, InMemoryMentionStore)
    assert limit == 2


@pytest.mark.asyncio
async def test_run_ingest_store_failure_exits_non_zero(monkeypatch):
    async def fake_ingest_all_sources(store, limit=None):
        raise MentionStoreError("range_by_score failed: connection refused")

    monkeypatch.setattr(mention_ingest_bot, "ingest_all_sources", fake_ingest_all_sources)

    assert await mention_ingest_bot.run_ingest(limit=None, backend="memory") == 1


def test_parse_args():
    args = mention_ingest_bot.parse_args(["--limit", "3", "--store", "memory"])
    assert args.limit == 3
    assert args.store == "memory"


@pytest.mark.asyncio
async def test_tracker_success(monkeypatch):
    monkeypatch.setattr(congress_tracker_bot, "get_mention_store", lambda: InMemoryMentionStore())

    async def fake_run(store):
        return {"ok": True, "bill": "HR 3838", "replaced": True}

    monkeypatch.setattr(congress_tracker_bot, "run_congress_tracker", fake_run)

    assert await congress_tracker_bot.run_tracker() == 0


@pytest.mark.asyncio
async def test_tracker_missing_api_key_exits_non_zero(monkeypatch):
    monkeypatch.setattr(congress_tracker_bot, "get_mention_store", lambda: InMemoryMentionStore())

    async def fake_run(store):
        raise RuntimeError("CONGRESS_API_KEY is missing.")

    monkeypatch.setattr(congress_tracker_bot, "run_congress_tracker", fake_run)

    assert await congress_tracker_bot.run_tracker() == 1
