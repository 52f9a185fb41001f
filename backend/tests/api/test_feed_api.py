from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient

from vinylfeed.feed.api import collections as collections_api
from vinylfeed.feed.api import feed as feed_api
from vinylfeed.feed.api import notifications as notifications_api
from vinylfeed.feed.domain import models
from vinylfeed.feed.domain.exceptions import PartialCascadeFailure
from vinylfeed.feed.services.cascade import CascadeDeleteOrchestrator
from vinylfeed.feed.services.collections_service import CollectionService
from vinylfeed.feed.services.feed_builder import FanOutFeedBuilder, feed_scope
from vinylfeed.feed.services.notifications_service import NotificationAggregator
from vinylfeed.feed.services.pager import CursorPager
from vinylfeed.feed.services.posts_service import PostService
from vinylfeed.infra.document_store import RedisDocumentStore

BASE = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class _TickClock:
    def __init__(self) -> None:
        self.now = BASE

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


class _StubRepo:
    def __init__(self) -> None:
        self.follows = {"me": ["friend"]}
        self.vinyls = [
            models.CollectionItem(
                id=f"uv{i}",
                user_id="me",
                release_id=f"r{i}",
                type=models.CollectionType.COLLECTION,
                created_at=BASE - timedelta(minutes=i),
            )
            for i in range(3)
        ]
        self.unread = 4

    async def list_followed_ids(self, user_id, *, limit):
        return self.follows.get(user_id, [])[:limit]

    async def get_author(self, user_id):
        return models.Author(uid=user_id, username=user_id)

    async def get_authors(self, user_ids):
        return {uid: models.Author(uid=uid, username=uid) for uid in user_ids}

    async def get_album(self, album_id):
        return models.Album(id=album_id, title=f"Album {album_id}")

    async def list_user_vinyls(self, user_id, kind, *, limit, after=None):
        rows = [row for row in self.vinyls if row.user_id == user_id and row.type is kind]
        return rows[:limit]

    async def count_user_vinyls(self, user_id, kind):
        return len([row for row in self.vinyls if row.user_id == user_id and row.type is kind])

    async def count_unread(self, user_id):
        return self.unread

    async def mark_all_read(self, user_id, *, before):
        updated, self.unread = self.unread, 0
        return updated

    async def insert_notification(self, **fields):
        return None


@pytest.fixture
def stub_repo():
    return _StubRepo()


@pytest.fixture
def posts(monkeypatch, stub_repo):
    store = RedisDocumentStore(clock=_TickClock())
    notifications = NotificationAggregator(repository=stub_repo, store=store)
    service = PostService(store=store, repository=stub_repo, notifications=notifications)
    monkeypatch.setattr(feed_api, "_builder", FanOutFeedBuilder(repository=stub_repo, store=store))
    monkeypatch.setattr(feed_api, "_pager", CursorPager())
    monkeypatch.setattr(feed_api, "_cascade", CascadeDeleteOrchestrator(posts=service))
    monkeypatch.setattr(notifications_api, "_service", notifications)
    monkeypatch.setattr(collections_api, "_service", CollectionService(repository=stub_repo))
    return service


HEADERS = {"X-User-Id": "me"}


@pytest.mark.asyncio
async def test_feed_requires_user(api_client: AsyncClient, posts):
    response = await api_client.get("/api/v1/feed")
    assert response.status_code == 401
    assert response.json()["detail"] == "missing_user"


@pytest.mark.asyncio
async def test_feed_pages_newest_first(api_client: AsyncClient, posts):
    for user_id in ("me", "friend", "stranger", "friend"):
        await posts.create_post(user_id, models.PostType.COLLECTION_ADD, "a1")

    first = await api_client.get("/api/v1/feed", params={"limit": 2}, headers=HEADERS)
    assert first.status_code == 200
    body = first.json()
    assert [item["user_id"] for item in body["items"]] == ["friend", "friend"]
    assert body["has_more"] is True

    second = await api_client.get(
        "/api/v1/feed", params={"limit": 2, "cursor": body["next_cursor"]}, headers=HEADERS
    )
    body = second.json()
    assert [item["user_id"] for item in body["items"]] == ["me"]
    assert body["has_more"] is False


@pytest.mark.asyncio
async def test_overlapping_feed_request_resumes_at_same_cursor(api_client: AsyncClient, posts, monkeypatch):
    for user_id in ("friend", "friend", "me"):
        await posts.create_post(user_id, models.PostType.COLLECTION_ADD, "a1")
    first = (await api_client.get("/api/v1/feed", params={"limit": 1}, headers=HEADERS)).json()
    cursor = first["next_cursor"]

    release = asyncio.Event()
    make_fetch = feed_api._builder.feed_fetcher

    def _gated_fetcher(viewer_id):
        fetch = make_fetch(viewer_id)

        async def _gated(after, page_size):
            await release.wait()
            return await fetch(after, page_size)

        return _gated

    monkeypatch.setattr(feed_api._builder, "feed_fetcher", _gated_fetcher)
    params = {"limit": 1, "cursor": cursor}
    pending = asyncio.create_task(api_client.get("/api/v1/feed", params=params, headers=HEADERS))
    for _ in range(100):
        if feed_api._pager.is_loading(feed_scope("me")):
            break
        await asyncio.sleep(0)

    repeat = await api_client.get("/api/v1/feed", params=params, headers=HEADERS)
    assert repeat.json() == {"items": [], "next_cursor": cursor, "has_more": True}

    release.set()
    loaded = (await pending).json()
    assert len(loaded["items"]) == 1
    assert loaded["next_cursor"] != cursor


@pytest.mark.asyncio
async def test_bad_cursor_is_rejected(api_client: AsyncClient, posts):
    response = await api_client.get("/api/v1/feed", params={"cursor": "%%%"}, headers=HEADERS)
    assert response.status_code == 400
    assert response.json()["detail"] == "bad_cursor"


@pytest.mark.asyncio
async def test_get_missing_post_is_404(api_client: AsyncClient, posts):
    response = await api_client.get("/api/v1/posts/nope", headers=HEADERS)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_delete_post_owner_only(api_client: AsyncClient, posts):
    post = await posts.create_post("me", models.PostType.WISHLIST_ADD, "a1")
    await posts.add_comment(post.id, "friend", "nice")

    forbidden = await api_client.delete(f"/api/v1/posts/{post.id}", headers={"X-User-Id": "friend"})
    assert forbidden.status_code == 403

    response = await api_client.delete(f"/api/v1/posts/{post.id}", headers=HEADERS)
    assert response.status_code == 200
    assert response.json() == {"post_id": post.id, "deleted": True}
    assert await posts.list_comment_ids(post.id) == []


@pytest.mark.asyncio
async def test_partial_cascade_maps_to_conflict(api_client: AsyncClient, posts, monkeypatch):
    async def _failing(post_id, *, actor_id=None):
        raise PartialCascadeFailure(post_id, failed_steps=["comments"], failed_ids=["c1"])

    monkeypatch.setattr(feed_api._cascade, "delete_root", _failing)

    response = await api_client.delete("/api/v1/posts/p1", headers=HEADERS)
    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["root_id"] == "p1"
    assert detail["failed_steps"] == ["comments"]
    assert detail["failed_ids"] == ["c1"]


@pytest.mark.asyncio
async def test_collection_page_with_total(api_client: AsyncClient, posts):
    response = await api_client.get("/api/v1/users/me/vinyls", params={"limit": 2}, headers=HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert [item["id"] for item in body["items"]] == ["uv0", "uv1"]
    assert body["total"] == 3
    assert body["has_more"] is True


@pytest.mark.asyncio
async def test_unread_then_mark_all_read(api_client: AsyncClient, posts):
    unread = await api_client.get("/api/v1/notifications/unread", headers=HEADERS)
    assert unread.json() == {"count": 4}

    marked = await api_client.post("/api/v1/notifications/read-all", headers=HEADERS)
    assert marked.json() == {"updated": 4}

    unread = await api_client.get("/api/v1/notifications/unread", headers=HEADERS)
    assert unread.json() == {"count": 0}
