"""User collection and wishlist pages."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from vinylfeed.feed.domain import models
from vinylfeed.feed.domain.exceptions import ConflictAlreadyExists, NotFoundError
from vinylfeed.feed.domain.repo import FeedRepository
from vinylfeed.feed.services.pager import CursorPager, Fetch, Page, viewer_scope
from vinylfeed.infra.pg_changes import PostgresChangeChannel
from vinylfeed.settings import settings

_LOG = logging.getLogger(__name__)


def collection_scope(user_id: str, kind: models.CollectionType) -> str:
	return f"vinyls:{user_id}:{kind.value}"


class CollectionService:
	def __init__(self, *, repository: FeedRepository | None = None) -> None:
		self.repo = repository or FeedRepository()
		self.pager = CursorPager()

	def fetcher(self, user_id: str, kind: models.CollectionType) -> Fetch:
		async def fetch(after, page_size: int) -> list[models.CollectionItem]:
			return await self.repo.list_user_vinyls(user_id, kind, limit=page_size, after=after)

		return fetch

	async def page(
		self,
		user_id: str,
		kind: models.CollectionType,
		*,
		limit: int | None = None,
		cursor: Optional[str] = None,
		viewer_id: Optional[str] = None,
		pager: CursorPager | None = None,
	) -> Optional[Page]:
		scope = collection_scope(user_id, kind)
		return await (pager or self.pager).load_page(
			viewer_scope(viewer_id, scope) if viewer_id else scope,
			self.fetcher(user_id, kind),
			cursor=cursor,
			page_size=limit or settings.initial_page_size,
		)

	async def count(self, user_id: str, kind: models.CollectionType) -> int:
		return await self.repo.count_user_vinyls(user_id, kind)

	async def stats(self, user_id: str) -> models.CollectionStats:
		collection_count, wishlist_count = await asyncio.gather(
			self.repo.count_user_vinyls(user_id, models.CollectionType.COLLECTION),
			self.repo.count_user_vinyls(user_id, models.CollectionType.WISHLIST),
		)
		return models.CollectionStats(collection_count=collection_count, wishlist_count=wishlist_count)

	async def has(self, user_id: str, release_id: str, kind: models.CollectionType) -> bool:
		return await self.repo.get_user_vinyl(user_id, release_id, kind) is not None

	async def add(self, user_id: str, release_id: str, kind: models.CollectionType) -> models.CollectionItem:
		if await self.has(user_id, release_id, kind):
			raise ConflictAlreadyExists(f"already_in_{kind.value}")
		item = await self.repo.add_user_vinyl(user_id, release_id, kind)
		_LOG.info("collections.added", extra={"user_id": user_id, "kind": kind.value})
		return item

	async def remove(self, user_id: str, release_id: str, kind: models.CollectionType) -> bool:
		return await self.repo.remove_user_vinyl(user_id, release_id, kind)

	async def move_to_collection(self, user_id: str, release_id: str) -> models.CollectionItem:
		"""Promote a wishlist entry; it must not already be in the collection."""
		if not await self.has(user_id, release_id, models.CollectionType.WISHLIST):
			raise NotFoundError("wishlist_item_not_found")
		if await self.has(user_id, release_id, models.CollectionType.COLLECTION):
			raise ConflictAlreadyExists("already_in_collection")
		return await self.repo.move_to_collection(user_id, release_id)

	def changes_channel(self, user_id: str) -> PostgresChangeChannel:
		return PostgresChangeChannel("user_vinyls", filters={"user_id": user_id})


__all__ = ["CollectionService", "collection_scope"]
