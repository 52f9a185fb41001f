"""Collection and wishlist listing."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from vinylfeed.feed.api._errors import to_http_error
from vinylfeed.feed.domain import models
from vinylfeed.feed.domain.exceptions import FeedError
from vinylfeed.feed.schemas import dto
from vinylfeed.feed.services.collections_service import CollectionService
from vinylfeed.infra.auth import AuthenticatedUser, get_current_user
from vinylfeed.settings import settings

router = APIRouter(tags=["collections"])
_service = CollectionService()


@router.get("/users/{user_id}/vinyls", response_model=dto.CollectionPageResponse)
async def user_vinyls_endpoint(
	user_id: str,
	type: models.CollectionType = Query(default=models.CollectionType.COLLECTION),
	limit: int = Query(default=settings.initial_page_size, ge=1, le=50),
	cursor: str | None = Query(default=None),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> dto.CollectionPageResponse:
	try:
		page = await _service.page(user_id, type, limit=limit, cursor=cursor, viewer_id=auth_user.id)
		total = await _service.count(user_id, type)
	except FeedError as exc:
		raise to_http_error(exc) from exc
	if page is None:
		return dto.CollectionPageResponse(items=[], next_cursor=cursor, has_more=True, total=total)
	return dto.CollectionPageResponse(
		items=page.items,
		next_cursor=page.next_cursor,
		has_more=page.has_more,
		total=total,
	)


__all__ = ["router"]
