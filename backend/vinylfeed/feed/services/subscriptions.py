"""Live subscription lifecycle: one task-owned channel per (scope, viewer)."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol, Union

from vinylfeed.feed.domain.exceptions import ChannelTimedOut, SubscriptionLost
from vinylfeed.feed.domain.models import ChangeEvent, SubscriptionState
from vinylfeed.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)


class ChangeChannel(Protocol):
	key: str

	async def open(self) -> None: ...

	def events(self) -> AsyncIterator[ChangeEvent]: ...

	async def close(self) -> None: ...


ReloadCallback = Callable[[], Awaitable[Any]]
PatchCallback = Callable[[ChangeEvent], Union[Awaitable[Any], None]]
ErrorCallback = Callable[[SubscriptionLost], Union[Awaitable[Any], None]]
ChannelFactory = Callable[[], ChangeChannel]

_ALLOWED = {
	SubscriptionState.CONNECTING: {SubscriptionState.ACTIVE, SubscriptionState.ERROR, SubscriptionState.CLOSED},
	SubscriptionState.ACTIVE: {SubscriptionState.TIMED_OUT, SubscriptionState.ERROR, SubscriptionState.CLOSED},
}


async def _maybe_await(result: Any) -> None:
	if inspect.isawaitable(result):
		await result


class SubscriptionHandle:
	"""Caller-facing view of one live subscription."""

	def __init__(
		self,
		manager: "SubscriptionManager",
		scope: str,
		viewer_id: str,
		channel: ChangeChannel,
		*,
		reload: Optional[ReloadCallback],
		patch: Optional[PatchCallback],
		on_error: Optional[ErrorCallback],
	) -> None:
		self.scope = scope
		self.viewer_id = viewer_id
		self.channel_key = channel.key
		self.state = SubscriptionState.CONNECTING
		self.error: Optional[SubscriptionLost] = None
		self._manager = manager
		self._channel = channel
		self._reload = reload
		self._patch = patch
		self._on_error = on_error
		self._settled = asyncio.Event()
		self._task: Optional[asyncio.Task[None]] = None

	@property
	def key(self) -> tuple[str, str]:
		return self.scope, self.viewer_id

	@property
	def is_live(self) -> bool:
		return self.state in (SubscriptionState.CONNECTING, SubscriptionState.ACTIVE)

	@property
	def detached(self) -> bool:
		return self._reload is None and self._patch is None and self._on_error is None

	def _transition(self, target: SubscriptionState) -> bool:
		if target not in _ALLOWED.get(self.state, set()):
			return False
		_LOG.info(
			"subscription.state",
			extra={"scope": self.scope, "from_state": self.state.value, "to_state": target.value},
		)
		self.state = target
		obs_metrics.subscription_transition(target.value)
		if target is not SubscriptionState.CONNECTING:
			self._settled.set()
		return True

	def _detach(self) -> None:
		self._reload = None
		self._patch = None
		self._on_error = None

	async def ready(self) -> SubscriptionState:
		"""Wait until the channel open has either succeeded or failed."""
		await self._settled.wait()
		return self.state

	def unsubscribe(self) -> None:
		"""Stop delivering events now and cancel the owning task. Idempotent."""
		self._detach()
		self._transition(SubscriptionState.CLOSED)
		self._manager._forget(self)
		if self._task is not None and not self._task.done():
			self._task.cancel()

	async def aclose(self) -> None:
		self.unsubscribe()
		task = self._task
		if task is None:
			return
		try:
			await task
		except asyncio.CancelledError:
			pass

	async def _dispatch(self, event: ChangeEvent) -> None:
		if self._reload is not None:
			obs_metrics.subscription_dispatch("reload")
			await self._reload()
		elif self._patch is not None:
			obs_metrics.subscription_dispatch("patch")
			await _maybe_await(self._patch(event))

	async def _fail(self, state: SubscriptionState, exc: BaseException) -> None:
		if not self._transition(state):
			return
		self.error = SubscriptionLost(state.value, detail=str(exc) or None)
		_LOG.warning(
			"subscription.lost",
			extra={"scope": self.scope, "state": state.value, "error": str(exc)},
		)
		callback = self._on_error
		self._detach()
		if callback is not None:
			await _maybe_await(callback(self.error))

	async def _run(self) -> None:
		channel = self._channel
		obs_metrics.subscription_opened()
		try:
			try:
				await channel.open()
			except Exception as exc:
				await self._fail(SubscriptionState.ERROR, exc)
				return
			if not self._transition(SubscriptionState.ACTIVE):
				return
			try:
				async for event in channel.events():
					if self.detached:
						break
					try:
						await self._dispatch(event)
					except asyncio.CancelledError:
						raise
					except Exception:
						_LOG.exception("subscription.dispatch_failed", extra={"scope": self.scope})
			except ChannelTimedOut as exc:
				await self._fail(SubscriptionState.TIMED_OUT, exc)
			except asyncio.CancelledError:
				raise
			except Exception as exc:
				await self._fail(SubscriptionState.ERROR, exc)
			else:
				self._transition(SubscriptionState.CLOSED)
		finally:
			self._settled.set()
			obs_metrics.subscription_finished()
			await channel.close()


class SubscriptionManager:
	"""Owns every live subscription of one session.

	``subscribe`` while the (scope, viewer) handle is still CONNECTING or
	ACTIVE returns that handle; after a terminal state a fresh one is opened.
	Nothing is retried automatically.
	"""

	def __init__(self) -> None:
		self._handles: dict[tuple[str, str], SubscriptionHandle] = {}

	def subscribe(
		self,
		scope: str,
		viewer_id: str,
		channel_factory: ChannelFactory,
		*,
		reload: Optional[ReloadCallback] = None,
		patch: Optional[PatchCallback] = None,
		on_error: Optional[ErrorCallback] = None,
	) -> SubscriptionHandle:
		if (reload is None) == (patch is None):
			raise ValueError("exactly one of reload or patch is required")
		existing = self._handles.get((scope, viewer_id))
		if existing is not None and existing.is_live:
			return existing
		handle = SubscriptionHandle(
			self,
			scope,
			viewer_id,
			channel_factory(),
			reload=reload,
			patch=patch,
			on_error=on_error,
		)
		self._handles[handle.key] = handle
		handle._task = asyncio.create_task(handle._run(), name=f"subscription:{scope}:{viewer_id}")
		return handle

	def get(self, scope: str, viewer_id: str) -> Optional[SubscriptionHandle]:
		return self._handles.get((scope, viewer_id))

	def _forget(self, handle: SubscriptionHandle) -> None:
		if self._handles.get(handle.key) is handle:
			del self._handles[handle.key]

	def __len__(self) -> int:
		return len(self._handles)

	async def close_all(self) -> None:
		handles = list(self._handles.values())
		await asyncio.gather(*(handle.aclose() for handle in handles))


__all__ = [
	"ChangeChannel",
	"SubscriptionHandle",
	"SubscriptionManager",
]
