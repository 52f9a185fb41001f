"""Custom exceptions for the feed core."""

from __future__ import annotations

from typing import Sequence

from fastapi import status


class FeedError(Exception):
	"""Base class for feed related errors."""

	status_code: int = status.HTTP_400_BAD_REQUEST
	detail: str = "feed_error"

	def __init__(self, detail: str | None = None) -> None:
		super().__init__(detail or self.detail)
		if detail:
			self.detail = detail


class TransientIOError(FeedError):
	"""Backend or network failure; the same call may be retried."""

	status_code = status.HTTP_503_SERVICE_UNAVAILABLE
	detail = "backend_unavailable"


class ConflictAlreadyExists(FeedError):
	"""Raised when an insert collides with an existing row or document."""

	status_code = status.HTTP_409_CONFLICT
	detail = "already_exists"


class NotFoundError(FeedError):
	"""Raised when an explicitly requested entity is missing."""

	status_code = status.HTTP_404_NOT_FOUND
	detail = "not_found"


class InvalidCursor(FeedError):
	"""Raised when a pagination cursor cannot be decoded."""

	detail = "bad_cursor"


class QueryLimitExceeded(FeedError):
	"""Raised when an IN filter carries more values than the store accepts."""

	detail = "in_clause_limit_exceeded"


class SubscriptionLost(FeedError):
	"""Raised or reported when a live channel reaches ERROR or TIMED_OUT."""

	status_code = status.HTTP_409_CONFLICT
	detail = "subscription_lost"

	def __init__(self, state: str, detail: str | None = None) -> None:
		super().__init__(detail or f"subscription_{state}")
		self.state = state


class PartialCascadeFailure(FeedError):
	"""Dependent deletions partially failed; the root entity was kept."""

	status_code = status.HTTP_409_CONFLICT
	detail = "partial_cascade_failure"

	def __init__(
		self,
		root_id: str,
		*,
		failed_steps: Sequence[str],
		failed_ids: Sequence[str],
	) -> None:
		super().__init__(f"partial_cascade_failure:{','.join(failed_steps)}")
		self.root_id = root_id
		self.failed_steps = tuple(failed_steps)
		self.failed_ids = tuple(failed_ids)


class ChannelTimedOut(TransientIOError):
	"""Raised by a change channel when its transport stops reporting liveness."""

	detail = "channel_timed_out"


class ForbiddenError(FeedError):
	"""Raised when the caller may not mutate the entity."""

	status_code = status.HTTP_403_FORBIDDEN
	detail = "forbidden"
