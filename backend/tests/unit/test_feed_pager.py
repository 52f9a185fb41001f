from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from vinylfeed.feed.domain.cursor import decode_cursor, encode_cursor, is_after, is_ordered, sort_rows
from vinylfeed.feed.domain.exceptions import InvalidCursor
from vinylfeed.feed.services.pager import CursorPager

BASE = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@dataclass(frozen=True)
class _Row:
    id: str
    created_at: datetime


def _rows(count: int) -> list[_Row]:
    return [_Row(id=f"p{i:03d}", created_at=BASE - timedelta(minutes=i)) for i in range(count)]


class _MemoryBackend:
    def __init__(self, rows: list[_Row]) -> None:
        self.rows = sort_rows(rows)
        self.calls = 0

    async def fetch(self, after, page_size: int) -> list[_Row]:
        self.calls += 1
        rows = self.rows if after is None else [row for row in self.rows if is_after(row, after)]
        return rows[:page_size]


def test_cursor_roundtrip_keeps_timezone():
    created = BASE + timedelta(microseconds=17)
    created_at, item_id = decode_cursor(encode_cursor((created, "post-1")))
    assert created_at == created
    assert item_id == "post-1"


def test_decode_cursor_rejects_garbage():
    with pytest.raises(InvalidCursor):
        decode_cursor("not-a-cursor")


def test_sort_rows_breaks_ties_by_id():
    rows = [_Row("b", BASE), _Row("a", BASE), _Row("c", BASE + timedelta(seconds=1))]
    assert [row.id for row in sort_rows(rows)] == ["c", "a", "b"]
    assert is_ordered(sort_rows(rows))


@pytest.mark.asyncio
async def test_pages_of_20_15_15_cover_fifty_items():
    backend = _MemoryBackend(_rows(50))
    pager = CursorPager()

    first = await pager.load_page("feed:u1", backend.fetch, page_size=20)
    second = await pager.load_page("feed:u1", backend.fetch, cursor=first.next_cursor, page_size=15)
    third = await pager.load_page("feed:u1", backend.fetch, cursor=second.next_cursor, page_size=15)

    assert [len(first.items), len(second.items), len(third.items)] == [20, 15, 15]
    assert first.has_more and second.has_more
    assert third.has_more is True

    final = await pager.load_page("feed:u1", backend.fetch, cursor=third.next_cursor, page_size=15)
    assert final.items == []
    assert final.has_more is False
    assert final.next_cursor == third.next_cursor

    seen = [row.id for page in (first, second, third) for row in page.items]
    assert len(seen) == len(set(seen)) == 50


@pytest.mark.asyncio
async def test_same_cursor_returns_same_page():
    backend = _MemoryBackend(_rows(30))
    pager = CursorPager()
    first = await pager.load_page("s", backend.fetch, page_size=10)
    again = await pager.load_page("s", backend.fetch, cursor=first.next_cursor, page_size=10)
    repeat = await pager.load_page("s", backend.fetch, cursor=first.next_cursor, page_size=10)
    assert [row.id for row in again.items] == [row.id for row in repeat.items]


@pytest.mark.asyncio
async def test_concurrent_load_for_scope_is_suppressed():
    release = asyncio.Event()
    calls = 0

    async def slow_fetch(after, page_size):
        nonlocal calls
        calls += 1
        await release.wait()
        return _rows(page_size)

    pager = CursorPager()
    pending = asyncio.create_task(pager.load_page("feed:u1", slow_fetch, page_size=5))
    await asyncio.sleep(0)
    assert pager.is_loading("feed:u1")

    assert await pager.load_page("feed:u1", slow_fetch, page_size=5) is None
    other = asyncio.create_task(pager.load_page("feed:u2", slow_fetch, page_size=5))
    release.set()
    page = await pending
    await other

    assert len(page.items) == 5
    assert calls == 2
    assert not pager.is_loading("feed:u1")


@pytest.mark.asyncio
async def test_cursor_comes_from_fetched_rows_when_hydration_drops_items():
    backend = _MemoryBackend(_rows(10))

    async def drop_last(rows):
        return rows[:-1]

    page = await CursorPager().load_page("s", backend.fetch, page_size=5, hydrate=drop_last)
    assert len(page.items) == 4
    assert page.has_more is True
    assert decode_cursor(page.next_cursor)[1] == "p004"


@pytest.mark.asyncio
async def test_failed_fetch_releases_scope():
    async def broken(after, page_size):
        raise RuntimeError("boom")

    pager = CursorPager()
    with pytest.raises(RuntimeError):
        await pager.load_page("s", broken)
    assert not pager.is_loading("s")
