"""Notification endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from vinylfeed.feed.api._errors import to_http_error
from vinylfeed.feed.domain.exceptions import FeedError
from vinylfeed.feed.schemas import dto
from vinylfeed.feed.services.notifications_service import NotificationAggregator
from vinylfeed.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(tags=["notifications"])
_service = NotificationAggregator()


@router.get("/notifications", response_model=dto.NotificationListResponse)
async def list_notifications_endpoint(
	limit: int = Query(default=20, ge=1, le=50),
	cursor: str | None = Query(default=None),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> dto.NotificationListResponse:
	try:
		page = await _service.list_notifications(auth_user.id, limit=limit, cursor=cursor)
	except FeedError as exc:
		raise to_http_error(exc) from exc
	if page is None:
		return dto.NotificationListResponse(items=[], next_cursor=cursor, has_more=True)
	return dto.NotificationListResponse(items=page.items, next_cursor=page.next_cursor, has_more=page.has_more)


@router.get("/notifications/unread", response_model=dto.NotificationUnreadResponse)
async def unread_notifications_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> dto.NotificationUnreadResponse:
	try:
		count = await _service.unread_count(auth_user.id)
	except FeedError as exc:
		raise to_http_error(exc) from exc
	return dto.NotificationUnreadResponse(count=count)


@router.post("/notifications/read-all", response_model=dto.NotificationMarkReadResponse)
async def mark_all_read_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> dto.NotificationMarkReadResponse:
	try:
		updated = await _service.mark_all_read(auth_user.id)
	except FeedError as exc:
		raise to_http_error(exc) from exc
	return dto.NotificationMarkReadResponse(updated=updated)


__all__ = ["router"]
