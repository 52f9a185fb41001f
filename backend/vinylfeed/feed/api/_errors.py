"""Error translation helpers for the feed API."""

from __future__ import annotations

from fastapi import HTTPException, status

from vinylfeed.feed.domain import exceptions


def to_http_error(exc: Exception) -> HTTPException:
	"""Translate domain exceptions to FastAPI HTTP errors."""
	if isinstance(exc, exceptions.PartialCascadeFailure):
		return HTTPException(
			status_code=exc.status_code,
			detail={
				"code": exc.detail,
				"root_id": exc.root_id,
				"failed_steps": list(exc.failed_steps),
				"failed_ids": list(exc.failed_ids),
			},
		)
	if isinstance(exc, exceptions.FeedError):
		return HTTPException(status_code=exc.status_code, detail=exc.detail)
	return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
