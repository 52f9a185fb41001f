from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from itertools import count

import pytest
import redis.exceptions

from vinylfeed.feed.domain import models
from vinylfeed.feed.domain.exceptions import ForbiddenError, PartialCascadeFailure, TransientIOError
from vinylfeed.feed.services.cascade import CascadeDeleteOrchestrator
from vinylfeed.feed.services.posts_service import PostService
from vinylfeed.infra.document_store import RedisDocumentStore


class _StubNotifications:
    def __init__(self) -> None:
        self.events: list[tuple] = []

    async def record_event(self, recipient_id, actor_id, kind, *, post_id=None, comment_id=None):
        self.events.append((recipient_id, actor_id, kind, post_id, comment_id))
        return None


class _StubRepo:
    async def get_authors(self, user_ids):
        return {uid: models.Author(uid=uid, username=uid) for uid in user_ids}


class _FlakyPostService(PostService):
    def __init__(self, *args, fail_comment_ids=(), **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.fail_comment_ids = set(fail_comment_ids)

    async def delete_comment(self, comment_id: str) -> bool:
        if comment_id in self.fail_comment_ids:
            self.fail_comment_ids.discard(comment_id)
            raise TransientIOError("comment_delete_failed")
        return await super().delete_comment(comment_id)


def _tick_clock():
    base = datetime(2024, 5, 1, tzinfo=timezone.utc)
    ticks = count()
    return lambda: base + timedelta(seconds=next(ticks))


def _service(**kwargs) -> _FlakyPostService:
    return _FlakyPostService(
        store=RedisDocumentStore(clock=_tick_clock()),
        repository=_StubRepo(),
        notifications=_StubNotifications(),
        **kwargs,
    )


async def _seed(posts: PostService) -> tuple[models.Post, list[models.Comment]]:
    post = await posts.create_post("author", models.PostType.COLLECTION_ADD, "a1")
    await posts.like(post.id, "u1")
    await posts.like(post.id, "u2")
    comments = [await posts.add_comment(post.id, f"u{i}", f"comment {i}") for i in range(3)]
    return post, comments


@pytest.mark.asyncio
async def test_partial_failure_keeps_root_then_retry_succeeds():
    posts = _service()
    post, comments = await _seed(posts)
    posts.fail_comment_ids = {comments[1].id}
    cascade = CascadeDeleteOrchestrator(posts=posts)

    with pytest.raises(PartialCascadeFailure) as excinfo:
        await cascade.delete_root(post.id)

    assert excinfo.value.root_id == post.id
    assert excinfo.value.failed_steps == ("comments",)
    assert excinfo.value.failed_ids == (comments[1].id,)
    survivor = await posts.get_post(post.id)
    assert survivor.likes_count == 0
    assert survivor.comments_count == 1
    assert await posts.list_comment_ids(post.id) == [comments[1].id]

    assert await cascade.delete_root(post.id) is True
    assert await posts.store.get("posts", post.id) is None
    assert await posts.list_comment_ids(post.id) == []
    assert await posts.list_likes(post.id) == []


@pytest.mark.asyncio
async def test_delete_root_is_noop_when_already_gone():
    posts = _service()
    cascade = CascadeDeleteOrchestrator(posts=posts)
    assert await cascade.delete_root("missing") is False


@pytest.mark.asyncio
async def test_only_owner_may_delete():
    posts = _service()
    post, _ = await _seed(posts)
    with pytest.raises(ForbiddenError):
        await CascadeDeleteOrchestrator(posts=posts).delete_root(post.id, actor_id="intruder")
    assert await posts.store.get("posts", post.id) is not None


@pytest.mark.asyncio
async def test_like_once_per_user_and_counters_follow():
    posts = _service()
    post = await posts.create_post("author", models.PostType.WISHLIST_ADD, "a1")

    assert await posts.like(post.id, "u1") is not None
    assert await posts.like(post.id, "u1") is None
    assert (await posts.get_post(post.id)).likes_count == 1
    assert await posts.unlike(post.id, "u1") is True
    assert await posts.unlike(post.id, "u1") is False
    assert (await posts.get_post(post.id)).likes_count == 0
    assert [event[2] for event in posts.notifications.events] == [models.NotificationKind.LIKE]


@pytest.mark.asyncio
async def test_like_retried_after_failed_write_counts_once(fake_redis, monkeypatch):
    posts = _service()
    post = await posts.create_post("author", models.PostType.WISHLIST_ADD, "a1")
    real_pipeline = fake_redis.pipeline

    def _broken_pipeline(*args, **kwargs):
        pipe = real_pipeline(*args, **kwargs)

        async def _fail(*_args, **_kwargs):
            raise redis.exceptions.ConnectionError("connection reset")

        pipe.execute = _fail
        return pipe

    monkeypatch.setattr(fake_redis, "pipeline", _broken_pipeline)
    with pytest.raises(TransientIOError):
        await posts.like(post.id, "u1")
    monkeypatch.undo()

    assert await posts.like(post.id, "u1") is not None
    assert (await posts.get_post(post.id)).likes_count == 1
    assert await posts.unlike(post.id, "u1") is True
    assert (await posts.get_post(post.id)).likes_count == 0


@pytest.mark.asyncio
async def test_like_without_post_reference_is_removed_without_touching_counters(fake_redis):
    posts = _service()
    post = await posts.create_post("author", models.PostType.WISHLIST_ADD, "a1")
    await posts.like(post.id, "u2")
    await fake_redis.hset(f"doc:likes:{post.id}_u1", "id", json.dumps(f"{post.id}_u1"))

    assert await posts.unlike(post.id, "u1") is False
    assert await posts.store.get("likes", f"{post.id}_u1") is None
    assert (await posts.get_post(post.id)).likes_count == 1


@pytest.mark.asyncio
async def test_comments_listed_oldest_first_with_authors():
    posts = _service()
    post = await posts.create_post("author", models.PostType.COLLECTION_ADD, "a1")
    first = await posts.add_comment(post.id, "u1", "first")
    second = await posts.add_comment(post.id, "u2", "second")

    thread = await posts.list_comments(post.id)

    assert [comment.id for comment in thread] == [first.id, second.id]
    assert thread[0].user.username == "u1"
    assert (await posts.get_post(post.id)).comments_count == 2
    assert await posts.delete_comment(first.id) is True
    assert await posts.delete_comment(first.id) is False
    assert (await posts.get_post(post.id)).comments_count == 1
