"""Viewer session: owns live subscriptions, watched scopes and the unread badge."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from vinylfeed.feed.domain import models
from vinylfeed.feed.domain.exceptions import SubscriptionLost
from vinylfeed.feed.services.cascade import CascadeDeleteOrchestrator
from vinylfeed.feed.services.collections_service import CollectionService, collection_scope
from vinylfeed.feed.services.feed_builder import FanOutFeedBuilder, feed_scope, profile_scope
from vinylfeed.feed.services.notifications_service import NotificationAggregator, UnreadCounter
from vinylfeed.feed.services.posts_service import POSTS, PostService, comments_scope
from vinylfeed.feed.services.scopes import ScopeController
from vinylfeed.feed.services.subscriptions import SubscriptionHandle, SubscriptionManager

_LOG = logging.getLogger(__name__)

ReloadListener = Callable[[str, list[Any]], Union[Awaitable[Any], None]]
UnreadListener = Callable[[int], Union[Awaitable[Any], None]]


async def _call(listener: Optional[Callable[..., Any]], *args: Any) -> None:
	if listener is None:
		return
	result = listener(*args)
	if inspect.isawaitable(result):
		await result


class FeedSession:
	"""Everything live for one viewer, from ``init`` until ``teardown``.

	``teardown`` closes every subscription the session opened and must run on
	each exit path (socket disconnect, logout).
	"""

	def __init__(
		self,
		viewer_id: str,
		*,
		builder: FanOutFeedBuilder | None = None,
		posts: PostService | None = None,
		collections: CollectionService | None = None,
		notifications: NotificationAggregator | None = None,
		manager: SubscriptionManager | None = None,
		on_reload: Optional[ReloadListener] = None,
		on_unread: Optional[UnreadListener] = None,
	) -> None:
		self.viewer_id = viewer_id
		self.builder = builder or FanOutFeedBuilder()
		self.posts = posts or PostService(store=self.builder.store, repository=self.builder.repo)
		self.collections = collections or CollectionService(repository=self.builder.repo)
		self.notifications = notifications or self.posts.notifications
		self.manager = manager or SubscriptionManager()
		self.on_reload = on_reload
		self.unread = UnreadCounter(self.notifications, self.manager, on_change=on_unread)
		self.scopes: dict[str, ScopeController] = {}
		self._threads: dict[str, SubscriptionHandle] = {}
		self.closed = False

	async def init(self) -> None:
		await self.unread.init(self.viewer_id)

	async def _emit(self, controller: ScopeController) -> None:
		await _call(self.on_reload, controller.scope, controller.items)

	async def _watch(self, controller: ScopeController, channel_factory) -> ScopeController:
		existing = self.scopes.get(controller.scope)
		if existing is not None and existing.handle is not None and existing.handle.is_live:
			return existing
		if existing is not None:
			existing.stop_live()
		self.scopes[controller.scope] = controller
		# Listen first: anything written after the channel opens reaches the list.
		handle = controller.start_live(self.manager, self.viewer_id, channel_factory)
		await handle.ready()
		await controller.load_initial()
		if handle.error is not None:
			controller.error = handle.error
		return controller

	async def watch_feed(self) -> ScopeController:
		builder = self.builder
		controller = ScopeController(
			feed_scope(self.viewer_id),
			builder.feed_fetcher(self.viewer_id),
			hydrate=builder.hydrate,
			on_change=self._emit,
		)
		authors = await builder.resolve_author_set(self.viewer_id)
		if len(authors) > builder.store.in_clause_limit:
			_LOG.warning("session.feed_live_truncated", extra={"authors": len(authors)})
			authors = authors[: builder.store.in_clause_limit]
		return await self._watch(
			controller,
			lambda: builder.store.on_snapshot(POSTS, "user_id", authors, emit_initial=False, with_documents=False),
		)

	async def watch_profile(self, user_id: str) -> ScopeController:
		builder = self.builder
		controller = ScopeController(
			profile_scope(user_id),
			builder.profile_fetcher(user_id),
			hydrate=builder.hydrate,
			on_change=self._emit,
		)
		return await self._watch(
			controller,
			lambda: builder.store.on_snapshot(POSTS, "user_id", [user_id], emit_initial=False, with_documents=False),
		)

	async def watch_collection(self, user_id: str, kind: models.CollectionType) -> ScopeController:
		collections = self.collections
		controller = ScopeController(
			collection_scope(user_id, kind),
			collections.fetcher(user_id, kind),
			count=lambda: collections.count(user_id, kind),
			on_change=self._emit,
		)
		return await self._watch(controller, lambda: collections.changes_channel(user_id))

	async def watch_comments(self, post_id: str) -> SubscriptionHandle:
		"""Thread subscription: every change reloads the whole thread."""
		scope = comments_scope(post_id)
		existing = self._threads.get(scope)
		if existing is not None and existing.is_live:
			return existing

		async def reload() -> None:
			await _call(self.on_reload, scope, await self.posts.list_comments(post_id))

		handle = self.manager.subscribe(
			scope,
			self.viewer_id,
			lambda: self.posts.comments_channel(post_id),
			reload=reload,
			on_error=lambda error: self._lost(scope, error),
		)
		self._threads[scope] = handle
		await handle.ready()
		await reload()
		return handle

	def _lost(self, scope: str, error: SubscriptionLost) -> None:
		_LOG.warning("session.subscription_lost", extra={"scope": scope, "state": error.state})

	def unwatch(self, scope: str) -> bool:
		controller = self.scopes.pop(scope, None)
		if controller is not None:
			controller.stop_live()
			return True
		handle = self._threads.pop(scope, None)
		if handle is not None:
			handle.unsubscribe()
			return True
		return False

	async def load_more(self, scope: str) -> Optional[ScopeController]:
		controller = self.scopes.get(scope)
		if controller is None:
			return None
		await controller.load_more()
		return controller

	async def delete_post(self, post_id: str) -> bool:
		"""Cascade-delete then drop the row from every watched list holding it."""
		deleted = await CascadeDeleteOrchestrator(posts=self.posts).delete_root(post_id, actor_id=self.viewer_id)
		for controller in self.scopes.values():
			controller.remove_local(post_id)
		return deleted

	async def teardown(self) -> None:
		if self.closed:
			return
		self.closed = True
		for controller in self.scopes.values():
			controller.stop_live()
		self.scopes.clear()
		self._threads.clear()
		await self.unread.teardown()
		await self.manager.close_all()
		_LOG.info("session.closed", extra={"user_id": self.viewer_id})


__all__ = ["FeedSession"]
