"""Per-scope pagination controller driving one OrderedClientList."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar, Union

from vinylfeed.feed.domain.cursor import Sortable
from vinylfeed.feed.domain.exceptions import FeedError, SubscriptionLost
from vinylfeed.feed.services.pager import CursorPager, Fetch, Hydrate
from vinylfeed.feed.services.reconciler import ListState, OrderedClientList
from vinylfeed.feed.services.subscriptions import ChannelFactory, SubscriptionHandle, SubscriptionManager
from vinylfeed.settings import settings

_LOG = logging.getLogger(__name__)

ItemT = TypeVar("ItemT", bound=Sortable)

CountFn = Callable[[], Awaitable[int]]
ChangeListener = Callable[["ScopeController"], Union[Awaitable[Any], None]]


class ScopeController(Generic[ItemT]):
	"""Initial load, load-more, live refresh and local removal for one list.

	Head loads (initial and refresh) and tail loads (load more) are
	single-flight independently; the reconciler makes their results commute.
	"""

	def __init__(
		self,
		scope: str,
		fetch: Fetch,
		*,
		hydrate: Optional[Hydrate] = None,
		count: Optional[CountFn] = None,
		pager: CursorPager | None = None,
		initial_page_size: int | None = None,
		load_more_page_size: int | None = None,
		on_change: Optional[ChangeListener] = None,
	) -> None:
		self.scope = scope
		self._fetch = fetch
		self._hydrate = hydrate
		self._count = count
		self.pager = pager or CursorPager()
		self.initial_page_size = initial_page_size or settings.initial_page_size
		self.load_more_page_size = load_more_page_size or settings.load_more_page_size
		self.on_change = on_change
		self.list: OrderedClientList[ItemT] = OrderedClientList()
		self.error: Optional[Exception] = None
		self.handle: Optional[SubscriptionHandle] = None
		self._reload_pending = False

	@property
	def state(self) -> ListState[ItemT]:
		return self.list.state

	@property
	def items(self) -> list[ItemT]:
		return self.list.items

	@property
	def head_scope(self) -> str:
		return f"{self.scope}:head"

	async def _changed(self) -> None:
		if self.on_change is None:
			return
		result = self.on_change(self)
		if inspect.isawaitable(result):
			await result

	async def _load_head(self, generation: int) -> bool:
		page = await self.pager.load_page(
			self.head_scope,
			self._fetch,
			page_size=self.initial_page_size,
			hydrate=self._hydrate,
		)
		if page is None:
			return False
		applied = self.list.full_reload(
			page.items,
			next_cursor=page.next_cursor,
			has_more=page.has_more,
			generation=generation,
		)
		if applied and self._count is not None:
			self.list.set_total(await self._count(), generation=generation)
		return applied

	async def load_initial(self) -> None:
		generation = self.list.reset()
		self.list.set_flags(loading=True)
		self.error = None
		applied = False
		try:
			applied = await self._load_head(generation)
		except FeedError as exc:
			_LOG.warning("scope.initial_load_failed", extra={"scope": self.scope, "error": str(exc)})
			if generation == self.list.generation:
				self.error = exc
		finally:
			if generation == self.list.generation:
				self.list.set_flags(loading=False)
		if applied:
			await self._changed()
		await self._run_pending_reload()

	async def load_more(self) -> None:
		state = self.list.state
		if state.loading or state.loading_more or not state.has_more:
			return
		generation = state.generation
		self.list.set_flags(loading_more=True)
		try:
			page = await self.pager.load_page(
				self.scope,
				self._fetch,
				cursor=state.last_cursor,
				page_size=self.load_more_page_size,
				hydrate=self._hydrate,
			)
			applied = page is not None and self.list.append_page(
				page.items,
				next_cursor=page.next_cursor,
				has_more=page.has_more,
				generation=generation,
			)
		except FeedError as exc:
			_LOG.warning("scope.load_more_failed", extra={"scope": self.scope, "error": str(exc)})
			if generation == self.list.generation:
				self.error = exc
			return
		finally:
			if generation == self.list.generation:
				self.list.set_flags(loading_more=False)
		if applied:
			await self._changed()

	async def refresh(self) -> None:
		"""Reload the first page in place, keeping rows loaded beyond it.

		A refresh requested while a head load is in flight runs once that load
		settles, so a change reported mid-load is never lost.
		"""
		if self.pager.is_loading(self.head_scope):
			self._reload_pending = True
			return
		generation = self.list.generation
		try:
			applied = await self._load_head(generation)
		except FeedError as exc:
			_LOG.warning("scope.refresh_failed", extra={"scope": self.scope, "error": str(exc)})
			self.error = exc
		else:
			if applied:
				self.error = None
				await self._changed()
		await self._run_pending_reload()

	async def _run_pending_reload(self) -> None:
		if self._reload_pending:
			self._reload_pending = False
			await self.refresh()

	def remove_local(self, item_id: str) -> bool:
		return self.list.remove_local(item_id)

	def start_live(
		self,
		manager: SubscriptionManager,
		viewer_id: str,
		channel_factory: ChannelFactory,
	) -> SubscriptionHandle:
		self.handle = manager.subscribe(
			self.scope,
			viewer_id,
			channel_factory,
			reload=self.refresh,
			on_error=self._on_lost,
		)
		return self.handle

	def _on_lost(self, error: SubscriptionLost) -> None:
		self.error = error

	def stop_live(self) -> None:
		handle, self.handle = self.handle, None
		if handle is not None:
			handle.unsubscribe()


__all__ = ["ScopeController"]
