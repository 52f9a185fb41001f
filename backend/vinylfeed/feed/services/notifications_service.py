"""Notification persistence, queries and the session unread counter."""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from vinylfeed.feed.domain import models
from vinylfeed.feed.domain import repo as repo_module
from vinylfeed.feed.domain.exceptions import ConflictAlreadyExists, SubscriptionLost
from vinylfeed.feed.services.pager import CursorPager, Page
from vinylfeed.feed.services.subscriptions import ChangeChannel, SubscriptionHandle, SubscriptionManager
from vinylfeed.infra.document_store import RedisDocumentStore
from vinylfeed.infra.pg_changes import PostgresChangeChannel
from vinylfeed.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)

NOTIFICATIONS_SCOPE = "notifications"

Clock = Callable[[], datetime]
CountListener = Callable[[int], Union[Awaitable[Any], None]]


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def notification_scope(user_id: str) -> str:
	return f"{NOTIFICATIONS_SCOPE}:{user_id}"


class NotificationAggregator:
	"""Encapsulates notification persistence and queries."""

	def __init__(
		self,
		*,
		repository: repo_module.FeedRepository | None = None,
		store: RedisDocumentStore | None = None,
		clock: Clock | None = None,
	) -> None:
		self.repo = repository or repo_module.FeedRepository()
		self.store = store or RedisDocumentStore()
		self._clock = clock or _utcnow
		self.pager = CursorPager()

	async def record_event(
		self,
		recipient_id: str,
		actor_id: str,
		kind: models.NotificationKind,
		*,
		post_id: str | None = None,
		comment_id: str | None = None,
	) -> models.Notification | None:
		if recipient_id == actor_id:
			obs_metrics.notification_persisted("self_skipped")
			return None
		try:
			record = await self.repo.insert_notification(
				user_id=recipient_id,
				actor_id=actor_id,
				kind=kind,
				post_id=post_id,
				comment_id=comment_id,
			)
		except ConflictAlreadyExists:
			_LOG.info("notifications.duplicate_skipped", extra={"user_id": recipient_id, "kind": kind.value})
			obs_metrics.notification_persisted("duplicate")
			return None
		obs_metrics.notification_persisted("created" if record is not None else "deduped")
		return record

	async def unread_count(self, user_id: str) -> int:
		return await self.repo.count_unread(user_id)

	async def mark_all_read(self, user_id: str) -> int:
		started_at = self._clock()
		updated = await self.repo.mark_all_read(user_id, before=started_at)
		obs_metrics.notification_persisted("read")
		return updated

	async def hydrate(self, notifications: Sequence[models.Notification]) -> list[models.NotificationWithDetails]:
		actors = await self.repo.get_authors(sorted({item.actor_id for item in notifications}))

		async def _details(item: models.Notification) -> models.NotificationWithDetails:
			post_doc, comment_doc = await asyncio.gather(
				self.store.get("posts", item.post_id) if item.post_id else _none(),
				self.store.get("comments", item.comment_id) if item.comment_id else _none(),
			)
			return models.NotificationWithDetails(
				**item.model_dump(),
				actor=actors.get(item.actor_id),
				post=models.Post.model_validate(post_doc) if post_doc else None,
				comment=models.Comment.model_validate(comment_doc) if comment_doc else None,
			)

		return list(await asyncio.gather(*(_details(item) for item in notifications)))

	async def list_notifications(
		self,
		user_id: str,
		*,
		limit: int = 20,
		cursor: Optional[str] = None,
		pager: CursorPager | None = None,
	) -> Optional[Page]:
		limit = max(1, min(limit, 50))

		async def fetch(after, page_size):
			return await self.repo.list_notifications(user_id, limit=page_size, after=after)

		return await (pager or self.pager).load_page(
			notification_scope(user_id),
			fetch,
			cursor=cursor,
			page_size=limit,
			hydrate=self.hydrate,
		)

	def inserts_channel(self, user_id: str) -> ChangeChannel:
		return PostgresChangeChannel("notifications", filters={"user_id": user_id}, events=("INSERT",))


async def _none() -> None:
	return None


class UnreadCounter:
	"""Session-scoped unread badge for one viewer.

	``init`` loads the authoritative count then follows notification inserts,
	bumping the count optimistically. ``teardown`` must run on every session
	exit path.
	"""

	def __init__(
		self,
		aggregator: NotificationAggregator,
		manager: SubscriptionManager,
		*,
		channel_factory: Callable[[str], ChangeChannel] | None = None,
		on_change: CountListener | None = None,
	) -> None:
		self.aggregator = aggregator
		self.manager = manager
		self._channel_factory = channel_factory or aggregator.inserts_channel
		self.on_change = on_change
		self.count = 0
		self.viewer_id: Optional[str] = None
		self.handle: Optional[SubscriptionHandle] = None
		self.error: Optional[SubscriptionLost] = None

	@property
	def initialized(self) -> bool:
		return self.viewer_id is not None

	async def init(self, viewer_id: str) -> None:
		if self.viewer_id == viewer_id and self.handle is not None and self.handle.is_live:
			return
		if self.initialized:
			await self.teardown()
		self.count = await self.aggregator.unread_count(viewer_id)
		self.viewer_id = viewer_id
		self.error = None
		self.handle = self.manager.subscribe(
			NOTIFICATIONS_SCOPE,
			viewer_id,
			lambda: self._channel_factory(viewer_id),
			patch=self._on_insert,
			on_error=self._on_lost,
		)
		await self._notify()

	async def _on_insert(self, event: models.ChangeEvent) -> None:
		if event.kind is not models.ChangeKind.INSERT or not event.record:
			return
		if event.record.get("read"):
			return
		self.increment()
		await self._notify()

	def _on_lost(self, error: SubscriptionLost) -> None:
		_LOG.warning("unread_counter.subscription_lost", extra={"user_id": self.viewer_id, "state": error.state})
		self.error = error

	async def _notify(self) -> None:
		if self.on_change is None:
			return
		result = self.on_change(self.count)
		if inspect.isawaitable(result):
			await result

	def increment(self, amount: int = 1) -> int:
		self.count += amount
		return self.count

	def reset(self) -> None:
		self.count = 0

	async def mark_all_read(self) -> int:
		if self.viewer_id is None:
			return 0
		updated = await self.aggregator.mark_all_read(self.viewer_id)
		self.reset()
		await self._notify()
		return updated

	async def teardown(self) -> None:
		handle, self.handle = self.handle, None
		if handle is not None:
			await handle.aclose()
		self.viewer_id = None
		self.count = 0


__all__ = ["NotificationAggregator", "UnreadCounter", "notification_scope", "NOTIFICATIONS_SCOPE"]
