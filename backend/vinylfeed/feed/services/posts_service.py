"""Posts, likes and comments on the document store.

Counters on a post move only through ``like``/``unlike``/``delete_like`` and
``add_comment``/``delete_comment``, including when the cascade removes
dependents.
"""

from __future__ import annotations

import logging
from typing import Optional

from vinylfeed.feed.domain import models
from vinylfeed.feed.domain.exceptions import ConflictAlreadyExists, NotFoundError, TransientIOError
from vinylfeed.feed.domain.repo import FeedRepository
from vinylfeed.feed.services.notifications_service import NotificationAggregator
from vinylfeed.infra.document_store import DocumentSnapshotChannel, RedisDocumentStore

_LOG = logging.getLogger(__name__)

POSTS = "posts"
LIKES = "likes"
COMMENTS = "comments"


def like_id(post_id: str, user_id: str) -> str:
	return f"{post_id}_{user_id}"


def comments_scope(post_id: str) -> str:
	return f"comments:{post_id}"


class PostService:
	def __init__(
		self,
		*,
		store: RedisDocumentStore | None = None,
		repository: FeedRepository | None = None,
		notifications: NotificationAggregator | None = None,
	) -> None:
		self.store = store or RedisDocumentStore()
		self.repo = repository or FeedRepository()
		self.notifications = notifications or NotificationAggregator(repository=self.repo, store=self.store)

	async def create_post(self, user_id: str, post_type: models.PostType, album_id: str) -> models.Post:
		doc = await self.store.insert(
			POSTS,
			{
				"user_id": user_id,
				"type": post_type.value,
				"album_id": album_id,
				"likes_count": 0,
				"comments_count": 0,
			},
		)
		return models.Post.model_validate(doc)

	async def get_post(self, post_id: str) -> models.Post:
		doc = await self.store.get(POSTS, post_id)
		if doc is None:
			raise NotFoundError("post_not_found")
		return models.Post.model_validate(doc)

	async def delete_post_document(self, post_id: str) -> bool:
		return await self.store.delete(POSTS, post_id)

	async def _bump(self, post_id: str, field: str, amount: int) -> None:
		try:
			await self.store.increment(POSTS, post_id, field, amount)
		except NotFoundError:
			_LOG.info("posts.counter_target_missing", extra={"post_id": post_id, "field": field})

	async def _unbump(self, doc: dict, field: str) -> bool:
		# A document without post_id is a leftover of an interrupted write and never counted.
		post_id = doc.get("post_id")
		if post_id is None:
			_LOG.info("posts.orphan_removed", extra={"id": doc.get("id"), "field": field})
			return False
		await self._bump(post_id, field, -1)
		return True

	async def _notify(self, recipient_id: str, actor_id: str, kind: models.NotificationKind, **refs: Optional[str]) -> None:
		try:
			await self.notifications.record_event(recipient_id, actor_id, kind, **refs)
		except TransientIOError:
			_LOG.warning("posts.notify_failed", extra={"user_id": recipient_id, "kind": kind.value})

	# --- Likes -----------------------------------------------------------

	async def like(self, post_id: str, user_id: str) -> models.Like | None:
		"""Like a post once; a repeated like returns None and changes nothing."""
		post = await self.get_post(post_id)
		try:
			doc = await self.store.insert(LIKES, {"post_id": post_id, "user_id": user_id}, doc_id=like_id(post_id, user_id))
		except ConflictAlreadyExists:
			return None
		await self._bump(post_id, "likes_count", 1)
		await self._notify(post.user_id, user_id, models.NotificationKind.LIKE, post_id=post_id)
		return models.Like.model_validate(doc)

	async def unlike(self, post_id: str, user_id: str) -> bool:
		return await self.delete_like(like_id(post_id, user_id))

	async def delete_like(self, like_doc_id: str) -> bool:
		doc = await self.store.get(LIKES, like_doc_id)
		if doc is None:
			return False
		if not await self.store.delete(LIKES, like_doc_id):
			return False
		return await self._unbump(doc, "likes_count")

	async def list_likes(self, post_id: str) -> list[models.Like]:
		docs = await self.store.query(LIKES, "post_id", [post_id])
		return [models.Like.model_validate(doc) for doc in docs]

	# --- Comments --------------------------------------------------------

	async def add_comment(self, post_id: str, user_id: str, content: str) -> models.Comment:
		post = await self.get_post(post_id)
		doc = await self.store.insert(COMMENTS, {"post_id": post_id, "user_id": user_id, "content": content})
		comment = models.Comment.model_validate(doc)
		await self._bump(post_id, "comments_count", 1)
		await self._notify(
			post.user_id,
			user_id,
			models.NotificationKind.COMMENT,
			post_id=post_id,
			comment_id=comment.id,
		)
		return comment

	async def delete_comment(self, comment_id: str) -> bool:
		doc = await self.store.get(COMMENTS, comment_id)
		if doc is None:
			return False
		if not await self.store.delete(COMMENTS, comment_id):
			return False
		return await self._unbump(doc, "comments_count")

	async def list_comment_ids(self, post_id: str) -> list[str]:
		docs = await self.store.query(COMMENTS, "post_id", [post_id])
		return [doc["id"] for doc in docs]

	async def list_comments(self, post_id: str) -> list[models.CommentWithUser]:
		"""Thread in reading order (oldest first) with commenter profiles."""
		docs = await self.store.query(COMMENTS, "post_id", [post_id])
		comments = [models.Comment.model_validate(doc) for doc in reversed(docs)]
		authors = await self.repo.get_authors(sorted({comment.user_id for comment in comments}))
		return [
			models.CommentWithUser(**comment.model_dump(), user=authors[comment.user_id])
			for comment in comments
			if comment.user_id in authors
		]

	def comments_channel(self, post_id: str) -> DocumentSnapshotChannel:
		return self.store.on_snapshot(COMMENTS, "post_id", [post_id], emit_initial=False, with_documents=False)


__all__ = ["PostService", "like_id", "comments_scope", "POSTS", "LIKES", "COMMENTS"]
