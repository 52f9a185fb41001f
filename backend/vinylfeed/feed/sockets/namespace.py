"""Socket.IO ``/feed`` namespace: one FeedSession per connection."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

import socketio

from vinylfeed.feed.domain import models
from vinylfeed.feed.domain.exceptions import FeedError
from vinylfeed.feed.services.session import FeedSession
from vinylfeed.obs import metrics as obs_metrics
from vinylfeed.obs.logging import bind_context

_LOG = logging.getLogger(__name__)

SessionFactory = Callable[..., FeedSession]


def _header(scope: dict, name: str) -> Optional[str]:
	target = name.encode().lower()
	for key, value in scope.get("headers", []):
		if key.lower() == target:
			return value.decode()
	return None


def _serialize(items: list[Any]) -> list[Any]:
	return [item.model_dump(mode="json") if hasattr(item, "model_dump") else item for item in items]


class FeedNamespace(socketio.AsyncNamespace):
	"""Live feed, profile, collection and comment scopes plus the unread badge."""

	def __init__(self, session_factory: SessionFactory | None = None) -> None:
		super().__init__("/feed")
		self._session_factory = session_factory or FeedSession
		self._sessions: Dict[str, FeedSession] = {}

	def _resolve_user(self, environ: dict, auth: Any = None) -> str:
		scope = environ.get("asgi.scope", environ)
		auth_payload = auth or environ.get("auth") or scope.get("auth") or {}
		user_id = auth_payload.get("userId") or _header(scope, "x-user-id")
		if not user_id:
			raise ConnectionRefusedError("missing user id")
		return user_id

	def get_session(self, sid: str) -> Optional[FeedSession]:
		return self._sessions.get(sid)

	async def on_connect(self, sid: str, environ: dict, auth: Any = None) -> None:
		user_id = self._resolve_user(environ, auth)
		obs_metrics.socket_connected(self.namespace)
		bind_context(user_id=user_id)

		async def push_reload(scope: str, items: list[Any]) -> None:
			obs_metrics.socket_event(self.namespace, "scope.reload")
			await self.emit("scope.reload", {"scope": scope, "items": _serialize(items)}, room=sid)

		async def push_unread(count: int) -> None:
			obs_metrics.socket_event(self.namespace, "notifications.unread")
			await self.emit("notifications.unread", {"count": count}, room=sid)

		session = self._session_factory(user_id, on_reload=push_reload, on_unread=push_unread)
		self._sessions[sid] = session
		try:
			await session.init()
		except FeedError as exc:
			_LOG.warning("feed_socket.init_failed", extra={"user_id": user_id, "error": str(exc)})
			self._sessions.pop(sid, None)
			await session.teardown()
			obs_metrics.socket_disconnected(self.namespace)
			raise ConnectionRefusedError("session_unavailable") from exc
		await self.emit("feed:ready", {"user_id": user_id}, room=sid)

	async def on_disconnect(self, sid: str, *args: Any) -> None:
		session = self._sessions.pop(sid, None)
		if session is None:
			return
		obs_metrics.socket_disconnected(self.namespace)
		await session.teardown()

	async def close_sessions(self) -> None:
		sessions = list(self._sessions.values())
		self._sessions.clear()
		for session in sessions:
			obs_metrics.socket_disconnected(self.namespace)
			await session.teardown()

	async def on_watch(self, sid: str, data: dict) -> dict:
		session = self._sessions.get(sid)
		if session is None:
			return {"ok": False, "error": "no_session"}
		kind = (data or {}).get("scope")
		try:
			if kind == "feed":
				controller = await session.watch_feed()
			elif kind == "profile":
				controller = await session.watch_profile(str(data["user_id"]))
			elif kind == "collection":
				collection_type = models.CollectionType(data.get("type", "collection"))
				controller = await session.watch_collection(str(data["user_id"]), collection_type)
			elif kind == "comments":
				handle = await session.watch_comments(str(data["post_id"]))
				return {"ok": True, "scope": handle.scope, "state": handle.state.value}
			else:
				return {"ok": False, "error": "unknown_scope"}
		except (KeyError, ValueError):
			return {"ok": False, "error": "bad_request"}
		except FeedError as exc:
			return {"ok": False, "error": exc.detail}
		state = controller.state
		return {
			"ok": controller.error is None,
			"scope": controller.scope,
			"has_more": state.has_more,
			"total": state.total,
			"error": controller.error.detail if isinstance(controller.error, FeedError) else None,
		}

	async def on_load_more(self, sid: str, data: dict) -> dict:
		session = self._sessions.get(sid)
		if session is None:
			return {"ok": False, "error": "no_session"}
		controller = await session.load_more(str((data or {}).get("scope", "")))
		if controller is None:
			return {"ok": False, "error": "unknown_scope"}
		return {"ok": True, "scope": controller.scope, "has_more": controller.state.has_more}

	async def on_unwatch(self, sid: str, data: dict) -> dict:
		session = self._sessions.get(sid)
		if session is None:
			return {"ok": False, "error": "no_session"}
		return {"ok": session.unwatch(str((data or {}).get("scope", "")))}

	async def on_mark_all_read(self, sid: str, data: Any = None) -> dict:
		session = self._sessions.get(sid)
		if session is None:
			return {"ok": False, "error": "no_session"}
		try:
			updated = await session.unread.mark_all_read()
		except FeedError as exc:
			return {"ok": False, "error": exc.detail}
		return {"ok": True, "updated": updated}


_feed_ns: Optional[FeedNamespace] = None


def register(server: socketio.AsyncServer, session_factory: SessionFactory | None = None) -> FeedNamespace:
	"""Register the feed namespace on the Socket.IO server."""
	global _feed_ns
	_feed_ns = FeedNamespace(session_factory)
	server.register_namespace(_feed_ns)
	return _feed_ns


def get_namespace() -> Optional[FeedNamespace]:
	return _feed_ns


__all__ = ["FeedNamespace", "register", "get_namespace"]
