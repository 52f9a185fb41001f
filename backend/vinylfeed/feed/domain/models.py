"""Domain models for feed core entities."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class PostType(str, Enum):
	COLLECTION_ADD = "collection_add"
	WISHLIST_ADD = "wishlist_add"


class NotificationKind(str, Enum):
	FOLLOW = "follow"
	FOLLOW_REQUEST = "follow_request"
	LIKE = "like"
	COMMENT = "comment"


class CollectionType(str, Enum):
	COLLECTION = "collection"
	WISHLIST = "wishlist"


class SubscriptionState(str, Enum):
	CONNECTING = "connecting"
	ACTIVE = "active"
	ERROR = "error"
	TIMED_OUT = "timed_out"
	CLOSED = "closed"

	@property
	def is_terminal(self) -> bool:
		return self in (SubscriptionState.ERROR, SubscriptionState.TIMED_OUT, SubscriptionState.CLOSED)


class ChangeKind(str, Enum):
	INSERT = "INSERT"
	UPDATE = "UPDATE"
	DELETE = "DELETE"
	SNAPSHOT = "SNAPSHOT"


class Author(BaseModel):
	"""Public profile fields used to hydrate feed rows."""

	uid: str
	username: str
	first_name: Optional[str] = None
	last_name: Optional[str] = None
	photo_url: Optional[str] = None

	model_config = ConfigDict(from_attributes=True)


class Album(BaseModel):
	"""Album a post or collection row points at."""

	id: str
	title: str
	artist: str = "Unknown artist"
	cover_url: Optional[str] = None
	year: Optional[int] = None

	model_config = ConfigDict(from_attributes=True)


class Vinyl(BaseModel):
	"""A concrete pressing (release) of an album."""

	id: str
	title: str
	artist: str = "Unknown artist"
	cover_url: Optional[str] = None
	album_id: Optional[str] = None

	model_config = ConfigDict(from_attributes=True)


class Post(BaseModel):
	"""Feed item as stored in the document store."""

	id: str
	user_id: str
	type: PostType
	album_id: str
	created_at: datetime
	likes_count: int = 0
	comments_count: int = 0

	model_config = ConfigDict(from_attributes=True)


class FeedItem(Post):
	"""Post hydrated with its author and album."""

	user: Author
	album: Album


class Like(BaseModel):
	id: str
	post_id: str
	user_id: str
	created_at: datetime


class Comment(BaseModel):
	id: str
	post_id: str
	user_id: str
	content: str
	created_at: datetime


class CommentWithUser(Comment):
	user: Author


class Notification(BaseModel):
	"""Represents a persisted notification row."""

	id: str
	user_id: str
	actor_id: str
	type: NotificationKind
	post_id: Optional[str] = None
	comment_id: Optional[str] = None
	read: bool = False
	created_at: datetime

	model_config = ConfigDict(from_attributes=True)


class NotificationWithDetails(Notification):
	actor: Optional[Author] = None
	post: Optional[Post] = None
	comment: Optional[Comment] = None


class CollectionItem(BaseModel):
	"""A user_vinyls row; created_at is the time the release was added."""

	id: str
	user_id: str
	release_id: str
	type: CollectionType
	created_at: datetime
	vinyl: Optional[Vinyl] = None
	album: Optional[Album] = None

	model_config = ConfigDict(from_attributes=True)


class CollectionStats(BaseModel):
	collection_count: int
	wishlist_count: int


class ChangeEvent(BaseModel):
	"""A raw change pushed by either store.

	Relational channels fill `record`/`old`; document snapshots fill
	`documents` with the full current result set unless opened without documents.
	"""

	kind: ChangeKind
	source: str
	record: Optional[dict[str, Any]] = None
	old: Optional[dict[str, Any]] = None
	documents: Optional[list[dict[str, Any]]] = None
	received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
