from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from vinylfeed.feed.domain.cursor import cursor_for
from vinylfeed.feed.services.reconciler import OrderedClientList

BASE = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@dataclass(frozen=True)
class _Item:
    id: str
    created_at: datetime


def _item(index: int) -> _Item:
    return _Item(id=f"i{index:03d}", created_at=BASE - timedelta(minutes=index))


def _page(start: int, stop: int) -> list[_Item]:
    return [_item(i) for i in range(start, stop)]


def _ids(client_list: OrderedClientList) -> list[str]:
    return [item.id for item in client_list.items]


def test_append_page_rejects_overlap():
    client_list = OrderedClientList()
    first = _page(0, 20)
    client_list.append_page(first, next_cursor=cursor_for(first[-1]), has_more=True)
    overlapping = _page(15, 30)
    client_list.append_page(overlapping, next_cursor=cursor_for(overlapping[-1]), has_more=True)

    assert _ids(client_list) == [item.id for item in _page(0, 30)]
    assert client_list.is_consistent()


def test_prepend_live_inserts_in_order_and_counts():
    client_list = OrderedClientList()
    client_list.append_page(_page(1, 5), next_cursor=None, has_more=False)
    client_list.set_total(4)

    assert client_list.prepend_live(_item(0)) is True
    assert client_list.prepend_live(_item(0)) is False
    assert _ids(client_list)[0] == "i000"
    assert client_list.total == 5
    assert client_list.is_consistent()


def test_remove_local_twice_decrements_once():
    client_list = OrderedClientList()
    client_list.append_page(_page(0, 3), next_cursor=None, has_more=False)
    client_list.set_total(3)

    assert client_list.remove_local("i001") is True
    assert client_list.remove_local("i001") is False
    assert client_list.total == 2
    assert "i001" not in _ids(client_list)


def test_total_never_goes_negative():
    client_list = OrderedClientList()
    client_list.append_page(_page(0, 1), next_cursor=None, has_more=False)
    assert client_list.total == 0
    client_list.remove_local("i000")
    assert client_list.total == 0
    client_list.set_total(-3)
    assert client_list.total == 0


def test_reload_and_load_more_commute():
    fresh_item = _Item(id="new", created_at=BASE + timedelta(minutes=1))
    first = _page(0, 20)
    more = _page(20, 35)
    reload_page = [fresh_item, *_page(0, 19)]

    def start() -> OrderedClientList:
        client_list = OrderedClientList()
        client_list.append_page(first, next_cursor=cursor_for(first[-1]), has_more=True)
        return client_list

    reload_then_more = start()
    reload_then_more.full_reload(reload_page, next_cursor=cursor_for(reload_page[-1]), has_more=True)
    reload_then_more.append_page(more, next_cursor=cursor_for(more[-1]), has_more=True)

    more_then_reload = start()
    more_then_reload.append_page(more, next_cursor=cursor_for(more[-1]), has_more=True)
    more_then_reload.full_reload(reload_page, next_cursor=cursor_for(reload_page[-1]), has_more=True)

    assert _ids(reload_then_more) == _ids(more_then_reload)
    assert reload_then_more.state.last_cursor == more_then_reload.state.last_cursor
    assert _ids(reload_then_more)[0] == "new"
    assert len(_ids(reload_then_more)) == 36
    assert reload_then_more.is_consistent()


def test_full_reload_drops_rows_deleted_inside_window():
    client_list = OrderedClientList()
    client_list.append_page(_page(0, 5), next_cursor=None, has_more=False)
    without_two = [item for item in _page(0, 5) if item.id != "i002"]
    client_list.full_reload(without_two, next_cursor=cursor_for(without_two[-1]), has_more=False)
    assert "i002" not in _ids(client_list)


def test_empty_reload_clears_list():
    client_list = OrderedClientList()
    client_list.append_page(_page(0, 5), next_cursor=None, has_more=True)
    client_list.full_reload([], next_cursor=None, has_more=False)
    assert client_list.items == []
    assert client_list.state.has_more is False


def test_reset_discards_late_responses():
    client_list = OrderedClientList()
    stale_generation = client_list.generation
    client_list.reset()

    applied = client_list.append_page(_page(0, 3), next_cursor=None, has_more=False, generation=stale_generation)
    assert applied is False
    assert client_list.items == []
    assert client_list.append_page(_page(0, 3), next_cursor=None, has_more=False, generation=client_list.generation)
    assert len(client_list.items) == 3
