"""Opaque cursor tokens and the shared feed ordering.

Every ordered list in the core sorts by ``created_at`` descending with ``id``
ascending as the tie-break. A cursor is the sort key of the last row a
caller has seen; rows strictly after it in that order form the next page.
"""

from __future__ import annotations

from base64 import urlsafe_b64decode, urlsafe_b64encode
from datetime import datetime, timezone
from typing import Iterable, Protocol, Sequence, TypeVar

from vinylfeed.feed.domain.exceptions import InvalidCursor

CursorPair = tuple[datetime, str]


class Sortable(Protocol):
	id: str
	created_at: datetime


RowT = TypeVar("RowT", bound=Sortable)


def _aware(value: datetime) -> datetime:
	return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def encode_cursor(value: CursorPair) -> str:
	created_at, entity_id = value
	payload = f"{_aware(created_at).isoformat()}|{entity_id}"
	return urlsafe_b64encode(payload.encode()).decode()


def decode_cursor(cursor: str) -> CursorPair:
	try:
		decoded = urlsafe_b64decode(cursor.encode()).decode()
		created_str, id_str = decoded.split("|", maxsplit=1)
		return _aware(datetime.fromisoformat(created_str)), id_str
	except (ValueError, UnicodeDecodeError) as exc:
		raise InvalidCursor() from exc


def sort_key(row: Sortable) -> CursorPair:
	return _aware(row.created_at), row.id


def cursor_for(row: Sortable) -> str:
	return encode_cursor(sort_key(row))


def precedes(left: CursorPair, right: CursorPair) -> bool:
	"""True when ``left`` is listed before ``right`` (newer, or same instant and smaller id)."""
	if left[0] != right[0]:
		return left[0] > right[0]
	return left[1] < right[1]


def is_after(row: Sortable, anchor: CursorPair) -> bool:
	return precedes(anchor, sort_key(row))


def sort_rows(rows: Iterable[RowT]) -> list[RowT]:
	by_id = sorted(rows, key=lambda row: row.id)
	return sorted(by_id, key=lambda row: _aware(row.created_at), reverse=True)


def is_ordered(rows: Sequence[Sortable]) -> bool:
	return all(precedes(sort_key(a), sort_key(b)) for a, b in zip(rows, rows[1:]))


__all__ = [
	"CursorPair",
	"encode_cursor",
	"decode_cursor",
	"sort_key",
	"cursor_for",
	"precedes",
	"is_after",
	"sort_rows",
	"is_ordered",
]
