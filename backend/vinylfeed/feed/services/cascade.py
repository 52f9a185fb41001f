"""Ordered, retryable deletion of a post and its dependents."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Sequence

from vinylfeed.feed.domain.exceptions import FeedError, ForbiddenError, PartialCascadeFailure
from vinylfeed.feed.services.posts_service import PostService
from vinylfeed.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)


class CascadeDeleteOrchestrator:
	"""Deletes likes, then comments, then the post itself.

	The post is removed only when every dependent deletion succeeded; otherwise
	``PartialCascadeFailure`` names the failing steps and ids and the post is
	left in place so the caller can retry. Already-deleted dependents count as
	success, which is what makes a retry safe.
	"""

	def __init__(self, *, posts: PostService | None = None) -> None:
		self.posts = posts or PostService()

	async def _run_step(
		self,
		step: str,
		list_ids: Callable[[], Awaitable[Sequence[str]]],
		delete_one: Callable[[str], Awaitable[bool]],
	) -> list[str]:
		try:
			ids = list(await list_ids())
		except FeedError as exc:
			_LOG.warning("cascade.enumerate_failed", extra={"step": step, "error": str(exc)})
			return [f"{step}:*"]
		results = await asyncio.gather(*(delete_one(item_id) for item_id in ids), return_exceptions=True)
		failed: list[str] = []
		for item_id, result in zip(ids, results):
			if isinstance(result, BaseException):
				if not isinstance(result, Exception):
					raise result
				_LOG.warning("cascade.delete_failed", extra={"step": step, "id": item_id, "error": str(result)})
				failed.append(item_id)
		return failed

	async def _like_ids(self, post_id: str) -> list[str]:
		return [like.id for like in await self.posts.list_likes(post_id)]

	async def delete_root(self, post_id: str, *, actor_id: str | None = None) -> bool:
		"""Delete ``post_id`` and its dependents; False when it was already gone."""
		post = await self.posts.store.get("posts", post_id)
		if post is None:
			return False
		if actor_id is not None and post.get("user_id") != actor_id:
			raise ForbiddenError("not_post_owner")

		failed_steps: list[str] = []
		failed_ids: list[str] = []
		for step, list_ids, delete_one in (
			("likes", lambda: self._like_ids(post_id), self.posts.delete_like),
			("comments", lambda: self.posts.list_comment_ids(post_id), self.posts.delete_comment),
		):
			failed = await self._run_step(step, list_ids, delete_one)
			if failed:
				failed_steps.append(step)
				failed_ids.extend(failed)

		if failed_steps:
			obs_metrics.cascade_delete("partial")
			_LOG.warning(
				"cascade.partial_failure",
				extra={"post_id": post_id, "steps": failed_steps, "failed": len(failed_ids)},
			)
			raise PartialCascadeFailure(post_id, failed_steps=failed_steps, failed_ids=failed_ids)

		deleted = await self.posts.delete_post_document(post_id)
		obs_metrics.cascade_delete("ok")
		_LOG.info("cascade.completed", extra={"post_id": post_id})
		return deleted


__all__ = ["CascadeDeleteOrchestrator"]
