"""Response schemas for the feed HTTP surface."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

from vinylfeed.feed.domain import models


class FeedPageResponse(BaseModel):
	items: list[models.FeedItem]
	next_cursor: Optional[str] = None
	has_more: bool = False


class CollectionPageResponse(BaseModel):
	items: list[models.CollectionItem]
	next_cursor: Optional[str] = None
	has_more: bool = False
	total: int = 0


class NotificationListResponse(BaseModel):
	items: list[models.NotificationWithDetails]
	next_cursor: Optional[str] = None
	has_more: bool = False


class NotificationUnreadResponse(BaseModel):
	count: int


class NotificationMarkReadResponse(BaseModel):
	updated: int


class DeletePostResponse(BaseModel):
	post_id: str
	deleted: bool
