"""Fan-out home feed: merge posts of the viewer and the users they follow."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

from vinylfeed.feed.domain import models
from vinylfeed.feed.domain.cursor import CursorPair, sort_rows
from vinylfeed.feed.domain.exceptions import NotFoundError, TransientIOError
from vinylfeed.feed.domain.repo import FeedRepository
from vinylfeed.feed.services.pager import CursorPager, Fetch, Page
from vinylfeed.infra.document_store import RedisDocumentStore
from vinylfeed.obs import metrics as obs_metrics
from vinylfeed.settings import settings

_LOG = logging.getLogger(__name__)

POSTS = "posts"


def feed_scope(viewer_id: str) -> str:
	return f"feed:{viewer_id}"


def profile_scope(user_id: str) -> str:
	return f"profile:{user_id}"


class FanOutFeedBuilder:
	"""Builds hydrated feed pages by querying each author batch separately.

	The author set is the viewer plus at most ``follow_cap`` followed users.
	Merging per-batch pages stays correct for any cap, but every extra batch
	is another query per page, so large follow graphs are deliberately cut.
	"""

	def __init__(
		self,
		*,
		repository: FeedRepository | None = None,
		store: RedisDocumentStore | None = None,
		follow_cap: int | None = None,
		in_clause_limit: int | None = None,
	) -> None:
		self.repo = repository or FeedRepository()
		self.store = store or RedisDocumentStore()
		self.follow_cap = follow_cap if follow_cap is not None else settings.feed_follow_cap
		self.in_clause_limit = in_clause_limit or settings.store_in_clause_limit

	async def resolve_author_set(self, viewer_id: str) -> list[str]:
		try:
			followed = await self.repo.list_followed_ids(viewer_id, limit=self.follow_cap + 1)
		except TransientIOError:
			_LOG.warning("feed.author_set_failed", extra={"user_id": viewer_id})
			raise
		authors = [viewer_id]
		for user_id in followed:
			if user_id not in authors and len(authors) <= self.follow_cap:
				authors.append(user_id)
		return authors

	def batches(self, author_ids: Sequence[str]) -> list[list[str]]:
		size = self.in_clause_limit
		return [list(author_ids[i : i + size]) for i in range(0, len(author_ids), size)]

	async def fetch_posts(
		self,
		author_ids: Sequence[str],
		after: Optional[CursorPair],
		page_size: int,
	) -> list[models.Post]:
		merged: list[models.Post] = []
		for batch in self.batches(author_ids):
			obs_metrics.feed_batch_query()
			try:
				docs = await self.store.query(POSTS, "user_id", batch, limit=page_size, start_after=after)
			except TransientIOError:
				_LOG.warning("feed.batch_query_failed", extra={"batch_size": len(batch)})
				raise
			merged.extend(models.Post.model_validate(doc) for doc in docs)
		return sort_rows(merged)[:page_size]

	async def _hydrate_one(self, post: models.Post) -> models.FeedItem | None:
		try:
			author, album = await asyncio.gather(
				self.repo.get_author(post.user_id),
				self.repo.get_album(post.album_id),
			)
		except (NotFoundError, TransientIOError) as exc:
			obs_metrics.feed_hydration_drop("lookup_failed")
			_LOG.info("feed.hydration_failed", extra={"post_id": post.id, "error": str(exc)})
			return None
		if author is None or album is None:
			reason = "author_missing" if author is None else "album_missing"
			obs_metrics.feed_hydration_drop(reason)
			_LOG.info("feed.item_dropped", extra={"post_id": post.id, "reason": reason})
			return None
		return models.FeedItem(**post.model_dump(), user=author, album=album)

	async def hydrate(self, posts: Sequence[models.Post]) -> list[models.FeedItem]:
		hydrated = await asyncio.gather(*(self._hydrate_one(post) for post in posts))
		return [item for item in hydrated if item is not None]

	def feed_fetcher(self, viewer_id: str) -> Fetch:
		async def fetch(after: Optional[CursorPair], page_size: int) -> list[models.Post]:
			authors = await self.resolve_author_set(viewer_id)
			return await self.fetch_posts(authors, after, page_size)

		return fetch

	def profile_fetcher(self, user_id: str) -> Fetch:
		async def fetch(after: Optional[CursorPair], page_size: int) -> list[models.Post]:
			return await self.fetch_posts([user_id], after, page_size)

		return fetch

	async def build_feed(
		self,
		viewer_id: str,
		page_size: int = 20,
		after: Optional[CursorPair] = None,
	) -> list[models.FeedItem]:
		try:
			posts = await self.feed_fetcher(viewer_id)(after, page_size)
		except TransientIOError:
			obs_metrics.feed_page_built("failed")
			raise
		items = await self.hydrate(posts)
		obs_metrics.feed_page_built("ok")
		return items

	async def load_feed_page(
		self,
		pager: CursorPager,
		viewer_id: str,
		*,
		cursor: Optional[str] = None,
		page_size: int | None = None,
	) -> Optional[Page]:
		page = await pager.load_page(
			feed_scope(viewer_id),
			self.feed_fetcher(viewer_id),
			cursor=cursor,
			page_size=page_size or settings.initial_page_size,
			hydrate=self.hydrate,
		)
		if page is not None:
			obs_metrics.feed_page_built("ok")
		return page

	async def get_post(self, post_id: str) -> models.FeedItem:
		doc = await self.store.get(POSTS, post_id)
		if doc is None:
			raise NotFoundError("post_not_found")
		post = models.Post.model_validate(doc)
		author, album = await asyncio.gather(
			self.repo.get_author(post.user_id),
			self.repo.get_album(post.album_id),
		)
		if author is None:
			raise NotFoundError("author_not_found")
		if album is None:
			raise NotFoundError("album_not_found")
		return models.FeedItem(**post.model_dump(), user=author, album=album)


__all__ = ["FanOutFeedBuilder", "feed_scope", "profile_scope", "POSTS"]
