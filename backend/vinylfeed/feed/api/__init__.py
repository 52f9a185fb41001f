"""FastAPI routers for the feed core."""

from __future__ import annotations

from fastapi import APIRouter

from vinylfeed.feed.api import collections, feed, notifications

router = APIRouter(prefix="/api/v1")

router.include_router(feed.router)
router.include_router(collections.router)
router.include_router(notifications.router)

__all__ = ["router"]
