"""Redis-backed document store for posts, likes and comments.

Each document is a hash ``doc:{collection}:{id}`` whose fields hold JSON
encoded values. Indexed fields keep one sorted set per value
(``idx:{collection}:{field}:{value}``) scored by the document's server
timestamp in epoch microseconds, which is what ``query`` walks. Every write
appends to ``docs:{collection}:changes`` so snapshot listeners can re-run
their query.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Iterable, Iterator, Mapping, Optional, Sequence
from uuid import uuid4

from redis.exceptions import RedisError

from vinylfeed.feed.domain.cursor import CursorPair
from vinylfeed.feed.domain.exceptions import (
	ConflictAlreadyExists,
	NotFoundError,
	QueryLimitExceeded,
	TransientIOError,
)
from vinylfeed.feed.domain.models import ChangeEvent, ChangeKind
from vinylfeed.infra.redis import redis_client
from vinylfeed.settings import settings

_LOG = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MICRO = timedelta(microseconds=1)
_STREAM_MAXLEN = 1000

INDEXED_FIELDS: dict[str, tuple[str, ...]] = {
	"posts": ("user_id",),
	"likes": ("post_id", "user_id"),
	"comments": ("post_id",),
}

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def _micros(value: datetime) -> int:
	if value.tzinfo is None:
		value = value.replace(tzinfo=timezone.utc)
	return (value - _EPOCH) // _ONE_MICRO


def _doc_key(collection: str, doc_id: str) -> str:
	return f"doc:{collection}:{doc_id}"


def _index_key(collection: str, field: str, value: Any) -> str:
	return f"idx:{collection}:{field}:{value}"


def changes_stream(collection: str) -> str:
	return f"docs:{collection}:changes"


def _encode(doc: Mapping[str, Any]) -> dict[str, str]:
	encoded: dict[str, str] = {}
	for name, value in doc.items():
		if isinstance(value, datetime):
			value = value.isoformat()
		encoded[name] = json.dumps(value)
	return encoded


def _decode(raw: Mapping[str, str]) -> dict[str, Any]:
	return {name: json.loads(value) for name, value in raw.items()}


@contextmanager
def _redis_errors(op: str) -> Iterator[None]:
	try:
		yield
	except RedisError as exc:
		_LOG.warning("document_store.redis_error", extra={"op": op, "error": str(exc)})
		raise TransientIOError(f"document_store_{op}_failed") from exc


class RedisDocumentStore:
	"""Snapshot-style document store with per-field ``IN`` queries."""

	def __init__(
		self,
		client: Any = None,
		*,
		clock: Clock | None = None,
		in_clause_limit: int | None = None,
	) -> None:
		self._client = client
		self._clock = clock or _utcnow
		self.in_clause_limit = in_clause_limit or settings.store_in_clause_limit

	@property
	def client(self) -> Any:
		return self._client if self._client is not None else redis_client

	def _indexed(self, collection: str) -> tuple[str, ...]:
		return INDEXED_FIELDS.get(collection, ())

	# --- reads -----------------------------------------------------------

	async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
		with _redis_errors("get"):
			raw = await self.client.hgetall(_doc_key(collection, doc_id))
		return _decode(raw) if raw else None

	async def query(
		self,
		collection: str,
		field: str,
		values: Sequence[str],
		*,
		limit: Optional[int] = None,
		start_after: CursorPair | None = None,
	) -> list[dict[str, Any]]:
		"""Documents whose ``field`` is in ``values``, newest first.

		Ties on the timestamp are broken by ascending id. ``start_after``
		excludes everything up to and including that sort key.
		"""
		unique_values = list(dict.fromkeys(values))
		if len(unique_values) > self.in_clause_limit:
			raise QueryLimitExceeded()
		if field not in self._indexed(collection):
			raise ValueError(f"{collection}.{field} is not indexed")
		if not unique_values or limit == 0:
			return []

		max_score: Any = "+inf"
		anchor: tuple[int, str] | None = None
		if start_after is not None:
			anchor = (_micros(start_after[0]), start_after[1])
			max_score = anchor[0]

		candidates: dict[str, int] = {}
		with _redis_errors("query"):
			for value in unique_values:
				key = _index_key(collection, field, value)
				fetch: Optional[int] = None
				if limit is not None:
					fetch = limit
					if anchor is not None:
						fetch += await self.client.zcount(key, anchor[0], anchor[0])
				rows = await self.client.zrevrangebyscore(
					key,
					max_score,
					"-inf",
					start=0 if fetch is not None else None,
					num=fetch,
					withscores=True,
				)
				for member, score in rows:
					candidates[member] = int(score)
				# Members sharing the boundary score come back in reverse id order; take the whole group.
				if fetch is not None and rows and len(rows) == fetch:
					edge = rows[-1][1]
					for member in await self.client.zrangebyscore(key, edge, edge):
						candidates[member] = int(edge)

		ordered = sorted(candidates.items(), key=lambda pair: pair[0])
		ordered.sort(key=lambda pair: pair[1], reverse=True)
		if anchor is not None:
			ordered = [
				(doc_id, score)
				for doc_id, score in ordered
				if score < anchor[0] or (score == anchor[0] and doc_id > anchor[1])
			]
		if limit is not None:
			ordered = ordered[:limit]

		docs: list[dict[str, Any]] = []
		with _redis_errors("query"):
			for doc_id, _ in ordered:
				raw = await self.client.hgetall(_doc_key(collection, doc_id))
				if raw:
					docs.append(_decode(raw))
		return docs

	# --- writes ----------------------------------------------------------

	async def insert(
		self,
		collection: str,
		data: Mapping[str, Any],
		*,
		doc_id: str | None = None,
	) -> dict[str, Any]:
		"""Insert a document stamped with the server time.

		An explicit ``doc_id`` that already exists raises ``ConflictAlreadyExists``.
		"""
		doc_id = doc_id or uuid4().hex
		created_at = self._clock()
		doc = {**data, "id": doc_id, "created_at": created_at}
		key = _doc_key(collection, doc_id)
		with _redis_errors("insert"):
			claimed = await self.client.hsetnx(key, "id", json.dumps(doc_id))
			if not claimed:
				raise ConflictAlreadyExists(f"{collection}_exists")
			try:
				async with self.client.pipeline(transaction=True) as pipe:
					pipe.hset(key, mapping=_encode(doc))
					for field in self._indexed(collection):
						if doc.get(field) is not None:
							pipe.zadd(_index_key(collection, field, doc[field]), {doc_id: _micros(created_at)})
					pipe.xadd(
						changes_stream(collection),
						self._change_fields("INSERT", doc_id, doc, collection),
						maxlen=_STREAM_MAXLEN,
						approximate=True,
					)
					await pipe.execute()
			except RedisError:
				await self._release_claim(key)
				raise
		return _decode(_encode(doc))

	async def _release_claim(self, key: str) -> None:
		"""Drop a half-written document so a retried insert can claim the id again."""
		try:
			await self.client.delete(key)
		except RedisError as exc:
			_LOG.warning("document_store.release_claim_failed", extra={"key": key, "error": str(exc)})

	async def batch_insert(self, collection: str, docs: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
		return [await self.insert(collection, doc) for doc in docs]

	async def delete(self, collection: str, doc_id: str) -> bool:
		"""Remove a document; returns False when it was already gone."""
		key = _doc_key(collection, doc_id)
		with _redis_errors("delete"):
			raw = await self.client.hgetall(key)
			if not raw:
				return False
			doc = _decode(raw)
			async with self.client.pipeline(transaction=True) as pipe:
				pipe.delete(key)
				for field in self._indexed(collection):
					if doc.get(field) is not None:
						pipe.zrem(_index_key(collection, field, doc[field]), doc_id)
				pipe.xadd(
					changes_stream(collection),
					self._change_fields("DELETE", doc_id, doc, collection),
					maxlen=_STREAM_MAXLEN,
					approximate=True,
				)
				results = await pipe.execute()
		return bool(results[0])

	async def batch_delete(self, collection: str, doc_ids: Iterable[str]) -> int:
		deleted = 0
		for doc_id in doc_ids:
			if await self.delete(collection, doc_id):
				deleted += 1
		return deleted

	async def increment(self, collection: str, doc_id: str, field: str, amount: int) -> int:
		"""Atomically add ``amount`` to a counter field, flooring the result at zero."""
		key = _doc_key(collection, doc_id)
		with _redis_errors("increment"):
			if not await self.client.exists(key):
				raise NotFoundError(f"{collection}_not_found")
			value = int(await self.client.hincrby(key, field, amount))
			if value < 0:
				await self.client.hset(key, field, "0")
				value = 0
			doc = _decode(await self.client.hgetall(key))
			await self.client.xadd(
				changes_stream(collection),
				self._change_fields("UPDATE", doc_id, doc, collection),
				maxlen=_STREAM_MAXLEN,
				approximate=True,
			)
		return value

	def _change_fields(self, op: str, doc_id: str, doc: Mapping[str, Any], collection: str) -> dict[str, str]:
		fields = {"op": op, "id": doc_id}
		for field in self._indexed(collection):
			if doc.get(field) is not None:
				fields[f"f:{field}"] = str(doc[field])
		return fields

	# --- live ------------------------------------------------------------

	def on_snapshot(
		self,
		collection: str,
		field: str,
		values: Sequence[str],
		*,
		limit: Optional[int] = None,
		poll_interval: float | None = None,
		emit_initial: bool = True,
		with_documents: bool = True,
	) -> "DocumentSnapshotChannel":
		return DocumentSnapshotChannel(
			self,
			collection,
			field,
			values,
			limit=limit,
			poll_interval=poll_interval,
			emit_initial=emit_initial,
			with_documents=with_documents,
		)


class DocumentSnapshotChannel:
	"""Live query: emits the full result set on open and after each matching write.

	With ``with_documents=False`` the events only signal that the result set
	changed and the query is never run; subscribers that reload on their own
	paged scope use that form.
	"""

	def __init__(
		self,
		store: RedisDocumentStore,
		collection: str,
		field: str,
		values: Sequence[str],
		*,
		limit: Optional[int] = None,
		poll_interval: float | None = None,
		emit_initial: bool = True,
		with_documents: bool = True,
	) -> None:
		self.store = store
		self.collection = collection
		self.field = field
		self.values = frozenset(str(value) for value in values)
		self.limit = limit
		self.poll_interval = poll_interval if poll_interval is not None else settings.snapshot_poll_interval_seconds
		self.emit_initial = emit_initial
		self.with_documents = with_documents
		self.key = f"docs:{collection}:{field}:{','.join(sorted(self.values))}"
		self._last_id = "0-0"
		self._closed = False

	async def open(self) -> None:
		if len(self.values) > self.store.in_clause_limit:
			raise QueryLimitExceeded()
		with _redis_errors("snapshot_open"):
			latest = await self.store.client.xrevrange(changes_stream(self.collection), count=1)
		if latest:
			self._last_id = latest[0][0]

	async def _snapshot(self) -> ChangeEvent:
		if not self.with_documents:
			return ChangeEvent(kind=ChangeKind.SNAPSHOT, source=self.collection)
		docs = await self.store.query(self.collection, self.field, sorted(self.values), limit=self.limit)
		return ChangeEvent(kind=ChangeKind.SNAPSHOT, source=self.collection, documents=docs)

	def _touches(self, fields: Mapping[str, str]) -> bool:
		return fields.get(f"f:{self.field}") in self.values

	async def events(self) -> AsyncIterator[ChangeEvent]:
		if self.emit_initial:
			yield await self._snapshot()
		stream = changes_stream(self.collection)
		block_ms = max(1, int(self.poll_interval * 1000))
		while not self._closed:
			with _redis_errors("snapshot_read"):
				response = await self.store.client.xread({stream: self._last_id}, count=100, block=block_ms)
			matched = False
			for _, entries in response or []:
				for entry_id, fields in entries:
					self._last_id = entry_id
					matched = matched or self._touches(fields)
			if matched:
				yield await self._snapshot()

	async def close(self) -> None:
		self._closed = True


__all__ = ["RedisDocumentStore", "DocumentSnapshotChannel", "INDEXED_FIELDS", "changes_stream"]
