"""Async repository for the relational side of the feed core."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Optional, Sequence
from uuid import uuid4

import asyncpg

from vinylfeed.feed.domain import models
from vinylfeed.feed.domain.cursor import CursorPair
from vinylfeed.feed.domain.exceptions import ConflictAlreadyExists, NotFoundError, TransientIOError
from vinylfeed.infra.postgres import get_pool
from vinylfeed.settings import settings

_LOG = logging.getLogger(__name__)

_COLLECTION_SELECT = """
	SELECT uv.id, uv.user_id, uv.release_id, uv.type, uv.added_at AS created_at,
		v.id AS vinyl_id, v.title AS vinyl_title, v.artist AS vinyl_artist,
		v.cover_url AS vinyl_cover_url, v.album_id AS vinyl_album_id,
		a.id AS album_id, a.title AS album_title, a.artist AS album_artist,
		a.cover_url AS album_cover_url, a.year AS album_year
	FROM user_vinyls uv
	LEFT JOIN vinyls v ON v.id = uv.release_id
	LEFT JOIN albums a ON a.id = v.album_id
"""


@contextmanager
def _db_errors(op: str) -> Iterator[None]:
	try:
		yield
	except asyncpg.UniqueViolationError as exc:  # type: ignore[attr-defined]
		raise ConflictAlreadyExists(f"{op}_exists") from exc
	except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
		_LOG.warning("feed_repo.db_error", extra={"op": op, "error": str(exc)})
		raise TransientIOError(f"{op}_failed") from exc


def _rowcount(status: str) -> int:
	try:
		return int(status.split()[-1])
	except (ValueError, IndexError):
		return 0


def _collection_item(record: asyncpg.Record) -> models.CollectionItem:
	row = dict(record)
	vinyl = None
	if row.get("vinyl_id"):
		vinyl = models.Vinyl(
			id=row["vinyl_id"],
			title=row["vinyl_title"],
			artist=row["vinyl_artist"] or "Unknown artist",
			cover_url=row["vinyl_cover_url"],
			album_id=row["vinyl_album_id"],
		)
	album = None
	if row.get("album_id"):
		album = models.Album(
			id=row["album_id"],
			title=row["album_title"],
			artist=row["album_artist"] or "Unknown artist",
			cover_url=row["album_cover_url"],
			year=row["album_year"],
		)
	return models.CollectionItem(
		id=row["id"],
		user_id=row["user_id"],
		release_id=row["release_id"],
		type=row["type"],
		created_at=row["created_at"],
		vinyl=vinyl,
		album=album,
	)


class FeedRepository:
	"""Thin data-access layer around asyncpg."""

	# --- Social graph ----------------------------------------------------

	async def list_followed_ids(self, user_id: str, *, limit: int) -> list[str]:
		"""Followed user ids in follow order (oldest follow first)."""
		pool = await get_pool()
		with _db_errors("follows"):
			async with pool.acquire() as conn:
				rows = await conn.fetch(
					"""
					SELECT following_id
					FROM follows
					WHERE follower_id = $1
					ORDER BY created_at ASC, id ASC
					LIMIT $2
					""",
					user_id,
					limit,
				)
		return [row["following_id"] for row in rows]

	# --- Profiles & catalogue --------------------------------------------

	async def get_authors(self, user_ids: Sequence[str]) -> dict[str, models.Author]:
		if not user_ids:
			return {}
		pool = await get_pool()
		with _db_errors("users"):
			async with pool.acquire() as conn:
				rows = await conn.fetch(
					"""
					SELECT id AS uid, username, first_name, last_name, photo_url
					FROM users
					WHERE id = ANY($1::text[])
					""",
					list(user_ids),
				)
		return {row["uid"]: models.Author.model_validate(dict(row)) for row in rows}

	async def get_author(self, user_id: str) -> models.Author | None:
		return (await self.get_authors([user_id])).get(user_id)

	async def get_album(self, album_id: str) -> models.Album | None:
		pool = await get_pool()
		with _db_errors("albums"):
			async with pool.acquire() as conn:
				row = await conn.fetchrow(
					"SELECT id, title, artist, cover_url, year FROM albums WHERE id = $1",
					album_id,
				)
		return models.Album.model_validate(dict(row)) if row else None

	# --- Collections -----------------------------------------------------

	async def list_user_vinyls(
		self,
		user_id: str,
		kind: models.CollectionType,
		*,
		limit: int,
		after: Optional[CursorPair] = None,
	) -> list[models.CollectionItem]:
		pool = await get_pool()
		params: list[object] = [user_id, kind.value]
		cursor_clause = ""
		if after:
			cursor_clause = "AND (uv.added_at < $3 OR (uv.added_at = $3 AND uv.id > $4))"
			params.extend(after)
		params.append(limit)
		query = f"""
			{_COLLECTION_SELECT}
			WHERE uv.user_id = $1 AND uv.type = $2 {cursor_clause}
			ORDER BY uv.added_at DESC, uv.id ASC
			LIMIT ${len(params)}
		"""
		with _db_errors("user_vinyls"):
			async with pool.acquire() as conn:
				rows = await conn.fetch(query, *params)
		return [_collection_item(row) for row in rows]

	async def count_user_vinyls(self, user_id: str, kind: models.CollectionType) -> int:
		pool = await get_pool()
		with _db_errors("user_vinyls"):
			async with pool.acquire() as conn:
				count = await conn.fetchval(
					"SELECT COUNT(*) FROM user_vinyls WHERE user_id = $1 AND type = $2",
					user_id,
					kind.value,
				)
		return int(count or 0)

	async def get_user_vinyl(
		self,
		user_id: str,
		release_id: str,
		kind: models.CollectionType,
	) -> models.CollectionItem | None:
		pool = await get_pool()
		with _db_errors("user_vinyls"):
			async with pool.acquire() as conn:
				row = await conn.fetchrow(
					f"{_COLLECTION_SELECT} WHERE uv.user_id = $1 AND uv.release_id = $2 AND uv.type = $3",
					user_id,
					release_id,
					kind.value,
				)
		return _collection_item(row) if row else None

	async def add_user_vinyl(
		self,
		user_id: str,
		release_id: str,
		kind: models.CollectionType,
	) -> models.CollectionItem:
		pool = await get_pool()
		with _db_errors("user_vinyl"):
			async with pool.acquire() as conn:
				await conn.execute(
					"""
					INSERT INTO user_vinyls (id, user_id, release_id, type)
					VALUES ($1, $2, $3, $4)
					""",
					uuid4().hex,
					user_id,
					release_id,
					kind.value,
				)
				row = await conn.fetchrow(
					f"{_COLLECTION_SELECT} WHERE uv.user_id = $1 AND uv.release_id = $2 AND uv.type = $3",
					user_id,
					release_id,
					kind.value,
				)
		return _collection_item(row)

	async def remove_user_vinyl(self, user_id: str, release_id: str, kind: models.CollectionType) -> bool:
		pool = await get_pool()
		with _db_errors("user_vinyl"):
			async with pool.acquire() as conn:
				status = await conn.execute(
					"DELETE FROM user_vinyls WHERE user_id = $1 AND release_id = $2 AND type = $3",
					user_id,
					release_id,
					kind.value,
				)
		return _rowcount(status) > 0

	async def move_to_collection(self, user_id: str, release_id: str) -> models.CollectionItem:
		"""Swap a wishlist row for a collection row in one transaction."""
		pool = await get_pool()
		with _db_errors("user_vinyl"):
			async with pool.acquire() as conn:
				async with conn.transaction():
					status = await conn.execute(
						"DELETE FROM user_vinyls WHERE user_id = $1 AND release_id = $2 AND type = 'wishlist'",
						user_id,
						release_id,
					)
					if _rowcount(status) == 0:
						raise NotFoundError("wishlist_item_not_found")
					await conn.execute(
						"""
						INSERT INTO user_vinyls (id, user_id, release_id, type)
						VALUES ($1, $2, $3, 'collection')
						""",
						uuid4().hex,
						user_id,
						release_id,
					)
				row = await conn.fetchrow(
					f"{_COLLECTION_SELECT} WHERE uv.user_id = $1 AND uv.release_id = $2 AND uv.type = 'collection'",
					user_id,
					release_id,
				)
		return _collection_item(row)

	# --- Notifications ---------------------------------------------------

	async def insert_notification(
		self,
		*,
		user_id: str,
		actor_id: str,
		kind: models.NotificationKind,
		post_id: str | None = None,
		comment_id: str | None = None,
		dedupe_window_seconds: int | None = None,
	) -> models.Notification | None:
		"""Insert unless an equivalent notification exists inside the dedupe window.

		Returns None when the window check suppresses the insert; a unique
		constraint hit raises ConflictAlreadyExists.
		"""
		window = timedelta(
			seconds=dedupe_window_seconds
			if dedupe_window_seconds is not None
			else settings.notification_dedupe_window_seconds
		)
		pool = await get_pool()
		with _db_errors("notification"):
			async with pool.acquire() as conn:
				row = await conn.fetchrow(
					"""
					INSERT INTO notifications (id, user_id, actor_id, type, post_id, comment_id)
					SELECT $1::text, $2::text, $3::text, $4::text, $5::text, $6::text
					WHERE NOT EXISTS (
						SELECT 1 FROM notifications
						WHERE user_id = $2 AND actor_id = $3 AND type = $4
							AND post_id IS NOT DISTINCT FROM $5
							AND comment_id IS NOT DISTINCT FROM $6
							AND created_at > NOW() - $7::interval
					)
					RETURNING *
					""",
					uuid4().hex,
					user_id,
					actor_id,
					kind.value,
					post_id,
					comment_id,
					window,
				)
		return models.Notification.model_validate(dict(row)) if row else None

	async def list_notifications(
		self,
		user_id: str,
		*,
		limit: int,
		after: Optional[CursorPair] = None,
	) -> list[models.Notification]:
		pool = await get_pool()
		params: list[object] = [user_id]
		cursor_clause = ""
		if after:
			cursor_clause = "AND (created_at < $2 OR (created_at = $2 AND id > $3))"
			params.extend(after)
		params.append(limit)
		query = f"""
			SELECT * FROM notifications
			WHERE user_id = $1 {cursor_clause}
			ORDER BY created_at DESC, id ASC
			LIMIT ${len(params)}
		"""
		with _db_errors("notifications"):
			async with pool.acquire() as conn:
				rows = await conn.fetch(query, *params)
		return [models.Notification.model_validate(dict(row)) for row in rows]

	async def count_unread(self, user_id: str) -> int:
		pool = await get_pool()
		with _db_errors("notifications"):
			async with pool.acquire() as conn:
				count = await conn.fetchval(
					"SELECT COUNT(*) FROM notifications WHERE user_id = $1 AND read = FALSE",
					user_id,
				)
		return int(count or 0)

	async def mark_all_read(self, user_id: str, *, before: datetime) -> int:
		pool = await get_pool()
		with _db_errors("notifications"):
			async with pool.acquire() as conn:
				status = await conn.execute(
					"""
					UPDATE notifications
					SET read = TRUE
					WHERE user_id = $1 AND read = FALSE AND created_at <= $2
					""",
					user_id,
					before,
				)
		return _rowcount(status)


__all__ = ["FeedRepository"]
