"""Cursor pagination with single-flight loads per scope."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, Sequence, TypeVar

from vinylfeed.feed.domain.cursor import CursorPair, cursor_for, decode_cursor
from vinylfeed.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)

RowT = TypeVar("RowT")
ItemT = TypeVar("ItemT")

Fetch = Callable[[Optional[CursorPair], int], Awaitable[Sequence[RowT]]]
Hydrate = Callable[[Sequence[RowT]], Awaitable[Sequence[ItemT]]]


@dataclass(slots=True)
class Page(Generic[ItemT]):
	items: list[ItemT]
	next_cursor: Optional[str]
	has_more: bool


def viewer_scope(viewer_id: str, scope: str) -> str:
	"""Scope for a page request, so one viewer never blocks another on a shared list."""
	return f"{viewer_id}|{scope}"


class CursorPager:
	"""Loads cursor-bounded pages for named scopes.

	A second ``load_page`` for a scope whose previous load has not settled
	returns ``None`` without calling the backend. ``has_more`` is a heuristic:
	a full page means there may be more, so callers can see one final empty
	page.
	"""

	def __init__(self) -> None:
		self._in_flight: set[str] = set()

	def is_loading(self, scope: str) -> bool:
		return scope in self._in_flight

	async def load_page(
		self,
		scope: str,
		fetch: Fetch,
		*,
		cursor: Optional[str] = None,
		page_size: int = 20,
		hydrate: Optional[Hydrate] = None,
	) -> Optional[Page]:
		if scope in self._in_flight:
			obs_metrics.pager_suppressed()
			_LOG.debug("pager.suppressed", extra={"scope": scope})
			return None
		after = decode_cursor(cursor) if cursor else None
		self._in_flight.add(scope)
		try:
			rows = list(await fetch(after, page_size))
			items = list(await hydrate(rows)) if hydrate is not None else rows
		finally:
			self._in_flight.discard(scope)
		next_cursor = cursor_for(rows[-1]) if rows else cursor
		return Page(items=items, next_cursor=next_cursor, has_more=len(rows) == page_size)


__all__ = ["CursorPager", "Page", "viewer_scope"]
