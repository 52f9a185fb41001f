"""Row change feed over PostgreSQL LISTEN/NOTIFY.

Triggers installed by the core migration publish ``{table, op, record, old}``
JSON payloads on one channel. A single ``PostgresChangeHub`` connection, kept
outside the query pool, listens on it and fans each payload out to the
attached ``PostgresChangeChannel`` instances, which keep the rows matching
their table, ops and filters.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Mapping, Optional

import asyncpg

from vinylfeed.feed.domain.exceptions import ChannelTimedOut, TransientIOError
from vinylfeed.feed.domain.models import ChangeEvent, ChangeKind
from vinylfeed.settings import settings

_LOG = logging.getLogger(__name__)

_TERMINATED = object()

Connect = Callable[[], Awaitable[Any]]


async def _connect() -> asyncpg.Connection:
	return await asyncpg.connect(dsn=settings.postgres_url)


class PostgresChangeHub:
	"""One dedicated LISTEN connection shared by every change channel.

	The connection is opened on the first ``attach`` and closed when the last
	channel detaches. If the server drops it, every attached channel is told
	and the next ``attach`` reconnects.
	"""

	def __init__(self, *, channel: str | None = None, connect: Connect | None = None) -> None:
		self.channel = channel or settings.pg_changes_channel
		self._connect = connect or _connect
		self._conn: Any = None
		self._subscribers: set["PostgresChangeChannel"] = set()
		self._lock = asyncio.Lock()

	@property
	def connected(self) -> bool:
		return self._conn is not None

	def __len__(self) -> int:
		return len(self._subscribers)

	async def attach(self, subscriber: "PostgresChangeChannel") -> None:
		async with self._lock:
			if self._conn is None:
				self._conn = await self._listen()
			self._subscribers.add(subscriber)

	async def detach(self, subscriber: "PostgresChangeChannel") -> None:
		async with self._lock:
			self._subscribers.discard(subscriber)
			if self._subscribers or self._conn is None:
				return
			conn, self._conn = self._conn, None
			await self._release(conn)

	async def close(self) -> None:
		async with self._lock:
			self._subscribers.clear()
			conn, self._conn = self._conn, None
			if conn is not None:
				await self._release(conn)

	async def _listen(self) -> Any:
		try:
			conn = await self._connect()
		except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
			raise TransientIOError("change_channel_open_failed") from exc
		try:
			await conn.add_listener(self.channel, self._on_notify)
		except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
			await conn.close()
			raise TransientIOError("change_channel_listen_failed") from exc
		conn.add_termination_listener(self._on_terminated)
		_LOG.info("pg_changes.listening", extra={"channel": self.channel})
		return conn

	async def _release(self, conn: Any) -> None:
		conn.remove_termination_listener(self._on_terminated)
		try:
			await conn.remove_listener(self.channel, self._on_notify)
			await conn.close()
		except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError):
			_LOG.info("pg_changes.unlisten_failed", extra={"channel": self.channel})

	def _on_notify(self, _conn: Any, _pid: int, _channel: str, raw: str) -> None:
		try:
			payload = json.loads(raw)
		except ValueError:
			_LOG.warning("pg_changes.bad_payload", extra={"channel": self.channel})
			return
		for subscriber in list(self._subscribers):
			subscriber.deliver(payload)

	def _on_terminated(self, conn: Any) -> None:
		if conn is not self._conn:
			return
		_LOG.warning("pg_changes.connection_lost", extra={"channel": self.channel})
		self._conn = None
		subscribers, self._subscribers = list(self._subscribers), set()
		for subscriber in subscribers:
			subscriber.terminated()


change_hub = PostgresChangeHub()


class PostgresChangeChannel:
	def __init__(
		self,
		table: str,
		*,
		filters: Optional[Mapping[str, Any]] = None,
		events: Iterable[str] = ("INSERT", "UPDATE", "DELETE"),
		hub: PostgresChangeHub | None = None,
	) -> None:
		self.table = table
		self.filters = {name: str(value) for name, value in (filters or {}).items()}
		self.ops = frozenset(op.upper() for op in events)
		filter_part = ",".join(f"{name}={value}" for name, value in sorted(self.filters.items()))
		self.key = f"pg:{table}:{filter_part}"
		self._hub = hub
		self._attached = False
		self._queue: asyncio.Queue[Any] = asyncio.Queue()

	@property
	def hub(self) -> PostgresChangeHub:
		return self._hub if self._hub is not None else change_hub

	async def open(self) -> None:
		await self.hub.attach(self)
		self._attached = True

	def matches(self, payload: Mapping[str, Any]) -> bool:
		if payload.get("table") != self.table:
			return False
		if str(payload.get("op", "")).upper() not in self.ops:
			return False
		row = payload.get("record") or payload.get("old") or {}
		return all(str(row.get(name)) == value for name, value in self.filters.items())

	def deliver(self, payload: Mapping[str, Any]) -> None:
		if not self.matches(payload):
			return
		self._queue.put_nowait(
			ChangeEvent(
				kind=ChangeKind(str(payload["op"]).upper()),
				source=self.table,
				record=payload.get("record"),
				old=payload.get("old"),
			)
		)

	def terminated(self) -> None:
		self._queue.put_nowait(_TERMINATED)

	async def events(self) -> AsyncIterator[ChangeEvent]:
		while True:
			item = await self._queue.get()
			if item is _TERMINATED:
				raise ChannelTimedOut()
			yield item

	async def close(self) -> None:
		if not self._attached:
			return
		self._attached = False
		await self.hub.detach(self)


__all__ = ["PostgresChangeChannel", "PostgresChangeHub", "change_hub"]
