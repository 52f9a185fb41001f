from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import redis.exceptions

from vinylfeed.feed.domain.exceptions import ConflictAlreadyExists, NotFoundError, QueryLimitExceeded, TransientIOError
from vinylfeed.feed.domain.models import ChangeKind
from vinylfeed.infra.document_store import RedisDocumentStore

BASE = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class _TickClock:
    def __init__(self, start: datetime = BASE, step: timedelta = timedelta(seconds=1)) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        self.now += self.step
        return self.now


def _post(user_id: str) -> dict:
    return {"user_id": user_id, "type": "collection_add", "album_id": "a1", "likes_count": 0, "comments_count": 0}


@pytest.mark.asyncio
async def test_query_orders_newest_first_across_values():
    store = RedisDocumentStore(clock=_TickClock())
    first = await store.insert("posts", _post("u1"))
    second = await store.insert("posts", _post("u2"))
    third = await store.insert("posts", _post("u1"))
    await store.insert("posts", _post("u3"))

    docs = await store.query("posts", "user_id", ["u1", "u2"], limit=10)
    assert [doc["id"] for doc in docs] == [third["id"], second["id"], first["id"]]


@pytest.mark.asyncio
async def test_query_ties_break_by_id_and_start_after_is_exclusive():
    store = RedisDocumentStore(clock=_TickClock(step=timedelta(0)))
    for doc_id in ("c", "a", "b"):
        await store.insert("posts", _post("u1"), doc_id=doc_id)

    docs = await store.query("posts", "user_id", ["u1"], limit=2)
    assert [doc["id"] for doc in docs] == ["a", "b"]

    anchor = (datetime.fromisoformat(docs[-1]["created_at"]), docs[-1]["id"])
    rest = await store.query("posts", "user_id", ["u1"], limit=2, start_after=anchor)
    assert [doc["id"] for doc in rest] == ["c"]


@pytest.mark.asyncio
async def test_query_rejects_more_than_thirty_values():
    store = RedisDocumentStore()
    values = [f"u{i}" for i in range(31)]
    with pytest.raises(QueryLimitExceeded):
        await store.query("posts", "user_id", values, limit=5)
    assert await store.query("posts", "user_id", values[:30], limit=5) == []


@pytest.mark.asyncio
async def test_insert_with_existing_id_conflicts():
    store = RedisDocumentStore()
    await store.insert("likes", {"post_id": "p1", "user_id": "u1"}, doc_id="p1_u1")
    with pytest.raises(ConflictAlreadyExists):
        await store.insert("likes", {"post_id": "p1", "user_id": "u1"}, doc_id="p1_u1")


@pytest.mark.asyncio
async def test_delete_is_idempotent_and_unindexes():
    store = RedisDocumentStore()
    doc = await store.insert("comments", {"post_id": "p1", "user_id": "u1", "content": "nice"})
    assert await store.delete("comments", doc["id"]) is True
    assert await store.delete("comments", doc["id"]) is False
    assert await store.query("comments", "post_id", ["p1"]) == []
    assert await store.batch_delete("comments", [doc["id"], "missing"]) == 0


@pytest.mark.asyncio
async def test_increment_floors_at_zero_and_requires_document():
    store = RedisDocumentStore()
    post = await store.insert("posts", _post("u1"))
    assert await store.increment("posts", post["id"], "likes_count", 2) == 2
    assert await store.increment("posts", post["id"], "likes_count", -5) == 0
    assert (await store.get("posts", post["id"]))["likes_count"] == 0
    with pytest.raises(NotFoundError):
        await store.increment("posts", "missing", "likes_count", 1)


@pytest.mark.asyncio
async def test_snapshot_channel_emits_on_matching_writes_only():
    store = RedisDocumentStore()
    channel = store.on_snapshot("comments", "post_id", ["p1"], poll_interval=0.01)
    await channel.open()
    events = channel.events()

    initial = await asyncio.wait_for(events.__anext__(), timeout=1)
    assert initial.kind is ChangeKind.SNAPSHOT
    assert initial.documents == []

    await store.insert("comments", {"post_id": "p2", "user_id": "u1", "content": "elsewhere"})
    await store.insert("comments", {"post_id": "p1", "user_id": "u1", "content": "hello"})
    update = await asyncio.wait_for(events.__anext__(), timeout=1)
    assert [doc["content"] for doc in update.documents] == ["hello"]

    await channel.close()
    await events.aclose()


@pytest.mark.asyncio
async def test_failed_insert_releases_the_id(fake_redis, monkeypatch):
    store = RedisDocumentStore(clock=_TickClock())
    real_pipeline = fake_redis.pipeline

    def _broken_pipeline(*args, **kwargs):
        pipe = real_pipeline(*args, **kwargs)

        async def _fail(*_args, **_kwargs):
            raise redis.exceptions.ConnectionError("connection reset")

        pipe.execute = _fail
        return pipe

    monkeypatch.setattr(fake_redis, "pipeline", _broken_pipeline)
    with pytest.raises(TransientIOError):
        await store.insert("likes", {"post_id": "p1", "user_id": "u1"}, doc_id="p1_u1")
    monkeypatch.undo()

    assert await store.get("likes", "p1_u1") is None
    doc = await store.insert("likes", {"post_id": "p1", "user_id": "u1"}, doc_id="p1_u1")
    assert doc["post_id"] == "p1"


@pytest.mark.asyncio
async def test_batch_insert_indexes_every_document():
    store = RedisDocumentStore(clock=_TickClock())
    docs = await store.batch_insert("comments", [{"post_id": "p1", "user_id": f"u{i}", "content": "x"} for i in range(3)])

    assert len({doc["id"] for doc in docs}) == 3
    listed = await store.query("comments", "post_id", ["p1"])
    assert [doc["id"] for doc in listed] == [doc["id"] for doc in reversed(docs)]


@pytest.mark.asyncio
async def test_signal_only_channel_never_queries(monkeypatch):
    store = RedisDocumentStore()
    channel = store.on_snapshot("posts", "user_id", ["u1"], emit_initial=False, with_documents=False, poll_interval=0.05)
    await channel.open()
    events = channel.events()

    async def _no_query(*args, **kwargs):
        raise AssertionError("query ran for a signal-only channel")

    monkeypatch.setattr(store, "query", _no_query)
    await store.insert("posts", _post("u1"))
    event = await asyncio.wait_for(events.__anext__(), timeout=1)
    assert event.kind is ChangeKind.SNAPSHOT
    assert event.documents is None

    await channel.close()
    await events.aclose()
