"""Feed, profile and post endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from vinylfeed.feed.api._errors import to_http_error
from vinylfeed.feed.domain import models
from vinylfeed.feed.domain.exceptions import FeedError
from vinylfeed.feed.schemas import dto
from vinylfeed.feed.services.cascade import CascadeDeleteOrchestrator
from vinylfeed.feed.services.feed_builder import FanOutFeedBuilder, feed_scope, profile_scope
from vinylfeed.feed.services.pager import CursorPager, Page, viewer_scope
from vinylfeed.infra.auth import AuthenticatedUser, get_current_user
from vinylfeed.settings import settings

router = APIRouter(tags=["feed"])
_builder = FanOutFeedBuilder()
_cascade = CascadeDeleteOrchestrator()
_pager = CursorPager()


def _page_response(page: Page | None, cursor: str | None) -> dto.FeedPageResponse:
	# A repeat of a request still in flight gets an empty page that resumes at the same cursor.
	if page is None:
		return dto.FeedPageResponse(items=[], next_cursor=cursor, has_more=True)
	return dto.FeedPageResponse(items=page.items, next_cursor=page.next_cursor, has_more=page.has_more)


@router.get("/feed", response_model=dto.FeedPageResponse)
async def home_feed_endpoint(
	limit: int = Query(default=settings.initial_page_size, ge=1, le=50),
	cursor: str | None = Query(default=None),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> dto.FeedPageResponse:
	try:
		page = await _pager.load_page(
			feed_scope(auth_user.id),
			_builder.feed_fetcher(auth_user.id),
			cursor=cursor,
			page_size=limit,
			hydrate=_builder.hydrate,
		)
	except FeedError as exc:
		raise to_http_error(exc) from exc
	return _page_response(page, cursor)


@router.get("/users/{user_id}/posts", response_model=dto.FeedPageResponse)
async def user_posts_endpoint(
	user_id: str,
	limit: int = Query(default=settings.initial_page_size, ge=1, le=50),
	cursor: str | None = Query(default=None),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> dto.FeedPageResponse:
	try:
		page = await _pager.load_page(
			viewer_scope(auth_user.id, profile_scope(user_id)),
			_builder.profile_fetcher(user_id),
			cursor=cursor,
			page_size=limit,
			hydrate=_builder.hydrate,
		)
	except FeedError as exc:
		raise to_http_error(exc) from exc
	return _page_response(page, cursor)


@router.get("/posts/{post_id}", response_model=models.FeedItem)
async def get_post_endpoint(
	post_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> models.FeedItem:
	try:
		return await _builder.get_post(post_id)
	except FeedError as exc:
		raise to_http_error(exc) from exc


@router.delete("/posts/{post_id}", response_model=dto.DeletePostResponse)
async def delete_post_endpoint(
	post_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> dto.DeletePostResponse:
	try:
		deleted = await _cascade.delete_root(post_id, actor_id=auth_user.id)
	except FeedError as exc:
		raise to_http_error(exc) from exc
	return dto.DeletePostResponse(post_id=post_id, deleted=deleted)


__all__ = ["router"]
