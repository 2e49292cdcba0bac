from __future__ import annotations

import json
from contextlib import asynccontextmanager

import pytest

from app.models.mention import Mention, build_mention
from services import db_service
from services.mention_store import (
    RETENTION_DAYS,
    InMemoryMentionStore,
    MentionStoreError,
    PostgresMentionStore,
    get_mention_store,
    retention_cutoff,
)
from services.url_canonicalizer import canonicalize

NOW = 1_700_000_000
DAY = 24 * 60 * 60


def _mention(link: str, ts: int = NOW, **overrides):
    fields = {
        "section": "Delta Air Lines",
        "title": "Delta unveils redesigned cabins",
        "source": "news.example.com",
        "summary": "Cabin refresh",
        "origin": "delta_air_lines",
    }
    fields.update(overrides)
    canon = canonicalize(link)
    return build_mention(canon=canon, link=link, published_ts=ts, **fields)


@pytest.mark.asyncio
async def test_insert_if_new_admits_a_canonical_url_once():
    store = InMemoryMentionStore()
    first = await store.insert_if_new(_mention("https://Example.com/a?utm_source=x#frag"))
    second = await store.insert_if_new(_mention("https://example.com/a", title="Different headline"))

    assert first.inserted is True
    assert second.inserted is False
    stored = await store.range_by_score(0)
    assert len(stored) == 1
    assert stored[0].title == "Delta unveils redesigned cabins"
    assert await store.has_seen_canon("https://example.com/a")
    assert await store.has_seen_id(stored[0].id)


@pytest.mark.asyncio
async def test_range_by_score_is_inclusive_and_ordered():
    store = InMemoryMentionStore()
    for offset, slug in ((30, "c"), (10, "a"), (20, "b"), (40, "d")):
        await store.insert_if_new(_mention(f"https://example.com/{slug}", ts=NOW + offset))

    result = await store.range_by_score(NOW + 10, NOW + 30)
    assert [m.link for m in result] == [
        "https://example.com/a",
        "https://example.com/b",
        "https://example.com/c",
    ]
    open_ended = await store.range_by_score(NOW + 40)
    assert [m.link for m in open_ended] == ["https://example.com/d"]


@pytest.mark.asyncio
async def test_mentions_may_share_a_timestamp():
    store = InMemoryMentionStore()
    await store.insert_if_new(_mention("https://example.com/a"))
    await store.insert_if_new(_mention("https://example.com/b"))

    assert len(await store.range_by_score(NOW, NOW)) == 2


@pytest.mark.asyncio
async def test_retention_trim_keeps_url_index():
    store = InMemoryMentionStore()
    old = _mention("https://example.com/old", ts=NOW - 15 * DAY)
    fresh = _mention("https://example.com/fresh", ts=NOW - DAY)
    await store.insert_if_new(old)
    await store.insert_if_new(fresh)

    removed = await store.trim_older_than(NOW - RETENTION_DAYS * DAY)
    assert removed == 1

    visible = await store.range_by_score(NOW - RETENTION_DAYS * DAY)
    assert [m.link for m in visible] == ["https://example.com/fresh"]
    assert await store.has_seen_canon(old.canon)
    # a trimmed URL is never admitted again
    again = await store.insert_if_new(_mention("https://example.com/old", ts=NOW))
    assert again.inserted is False


@pytest.mark.asyncio
async def test_trim_expired_uses_retention_window():
    store = InMemoryMentionStore()
    await store.insert_if_new(_mention("https://example.com/edge", ts=retention_cutoff(NOW)))
    await store.insert_if_new(_mention("https://example.com/stale", ts=retention_cutoff(NOW) - 1))

    assert await store.trim_expired(NOW) == 1
    assert [m.link for m in await store.range_by_score(0)] == ["https://example.com/edge"]


@pytest.mark.asyncio
async def test_reinsert_with_insert_if_new_drops_update():
    store = InMemoryMentionStore()
    await store.insert_if_new(_mention("https://congress.example/bill", summary="Introduced"))
    result = await store.insert_if_new(_mention("https://congress.example/bill", summary="Passed House"))

    assert result.inserted is False
    (stored,) = await store.range_by_score(0)
    assert stored.summary == "Introduced"


@pytest.mark.asyncio
async def test_upsert_replaces_tracked_entity_snapshot():
    store = InMemoryMentionStore()
    first = await store.upsert(_mention("https://congress.example/bill", summary="Introduced"))
    second = await store.upsert(
        _mention("https://congress.example/bill", ts=NOW + 60, summary="Passed House")
    )

    assert first.inserted is True and first.replaced is False
    assert second.replaced is True
    stored = await store.range_by_score(0)
    assert len(stored) == 1
    assert stored[0].summary == "Passed House"
    assert stored[0].published_ts == NOW + 60
    assert await store.range_by_score(NOW, NOW) == []


@pytest.mark.asyncio
async def test_memory_store_hands_out_copies():
    store = InMemoryMentionStore()
    original = _mention("https://congress.example/bill", summary="Introduced", milestones={"house": False})
    await store.insert_if_new(original)
    original.summary = "changed after insert"

    (first,) = await store.range_by_score(0)
    first.summary = "Passed House"
    first.model_extra["milestones"]["house"] = True

    (again,) = await store.range_by_score(0)
    assert again.summary == "Introduced"
    assert again.model_extra["milestones"] == {"house": False}


def test_extra_metadata_survives_round_trip():
    mention = _mention("https://example.com/law", provider="Law360", reach=0)
    record = mention.to_record()
    assert record["provider"] == "Law360"
    assert "sentiment" not in record
    restored = Mention.from_record(json.loads(json.dumps(record)))
    assert restored.model_extra["reach"] == 0


def test_get_mention_store_backends():
    assert isinstance(get_mention_store("memory"), InMemoryMentionStore)
    assert isinstance(get_mention_store("Postgres"), PostgresMentionStore)
    with pytest.raises(ValueError):
        get_mention_store("redis")


# --------------------------------------------------------------------
# Postgres backend against a stubbed db_service
# --------------------------------------------------------------------


def _stub_transaction(monkeypatch, statuses):
    executed: list[str] = []

    @asynccontextmanager
    async def fake_run_in_transaction():
        yield object()

    async def fake_execute_with_conn(conn, query, *args):
        executed.append(" ".join(query.split()))
        return statuses.pop(0)

    monkeypatch.setattr(db_service, "run_in_transaction", fake_run_in_transaction)
    monkeypatch.setattr(db_service, "execute_with_conn", fake_execute_with_conn)
    return executed


@pytest.mark.asyncio
async def test_postgres_insert_if_new_stops_when_canon_already_seen(monkeypatch):
    executed = _stub_transaction(monkeypatch, ["INSERT 0 0"])

    result = await PostgresMentionStore().insert_if_new(_mention("https://example.com/a"))

    assert result.inserted is False
    assert len(executed) == 1
    assert "mention_seen_canon" in executed[0]


@pytest.mark.asyncio
async def test_postgres_insert_if_new_writes_indices_and_payload(monkeypatch):
    executed = _stub_transaction(monkeypatch, ["INSERT 0 1", "INSERT 0 1", "INSERT 0 1"])

    result = await PostgresMentionStore().insert_if_new(_mention("https://example.com/a"))

    assert result.inserted is True
    assert "mention_seen_ids" in executed[1]
    assert "INSERT INTO mentions" in executed[2]


@pytest.mark.asyncio
async def test_postgres_upsert_reports_replacement(monkeypatch):
    _stub_transaction(monkeypatch, ["INSERT 0 0", "INSERT 0 0"])

    async def fake_fetchrow_with_conn(conn, query, *args):
        assert "ON CONFLICT (id) DO UPDATE" in query
        return {"inserted": False}

    monkeypatch.setattr(db_service, "fetchrow_with_conn", fake_fetchrow_with_conn)

    result = await PostgresMentionStore().upsert(_mention("https://congress.example/bill"))
    assert result.replaced is True
    assert result.inserted is False


@pytest.mark.asyncio
async def test_postgres_range_decodes_payloads_and_skips_corrupt_rows(monkeypatch):
    good = _mention("https://example.com/a")

    async def fake_fetch(query, *args):
        assert args == (NOW - DAY, None)
        return [
            {"payload": json.dumps(good.to_record())},
            {"payload": "{not json"},
        ]

    monkeypatch.setattr(db_service, "fetch", fake_fetch)

    result = await PostgresMentionStore().range_by_score(NOW - DAY)
    assert [m.id for m in result] == [good.id]


@pytest.mark.asyncio
async def test_postgres_trim_returns_deleted_count(monkeypatch):
    async def fake_execute(query, *args):
        assert "published_ts < $1" in query
        return "DELETE 3"

    monkeypatch.setattr(db_service, "execute", fake_execute)

    assert await PostgresMentionStore().trim_older_than(NOW) == 3


@pytest.mark.asyncio
async def test_postgres_failures_surface_as_store_errors(monkeypatch):
    async def fake_fetch(query, *args):
        raise OSError("connection refused")

    monkeypatch.setattr(db_service, "fetch", fake_fetch)

    with pytest.raises(MentionStoreError):
        await PostgresMentionStore().range_by_score(0)
