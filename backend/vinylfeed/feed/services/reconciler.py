"""Client-held ordered list kept consistent with server-side mutations."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Generic, Iterable, Optional, Sequence, TypeVar

from vinylfeed.feed.domain.cursor import Sortable, is_after, precedes, sort_key, sort_rows

ItemT = TypeVar("ItemT", bound=Sortable)


@dataclass(frozen=True)
class ListState(Generic[ItemT]):
	items: tuple[ItemT, ...] = ()
	last_cursor: Optional[str] = None
	has_more: bool = True
	loading: bool = False
	loading_more: bool = False
	total: int = 0
	generation: int = 0

	@property
	def ids(self) -> set[str]:
		return {item.id for item in self.items}


@dataclass
class OrderedClientList(Generic[ItemT]):
	"""Ordered (``created_at`` desc, ``id`` asc), duplicate-free item list.

	Each mutation derives the next ``ListState`` and assigns it in one step.
	Responses are tagged with the generation they were requested under;
	anything from before the last ``reset`` is ignored.
	"""

	state: ListState[ItemT] = field(default_factory=ListState)

	@property
	def items(self) -> list[ItemT]:
		return list(self.state.items)

	@property
	def total(self) -> int:
		return self.state.total

	@property
	def generation(self) -> int:
		return self.state.generation

	def _stale(self, generation: Optional[int]) -> bool:
		return generation is not None and generation != self.state.generation

	def set_flags(self, **flags: bool) -> None:
		self.state = replace(self.state, **flags)

	def set_total(self, total: int, *, generation: Optional[int] = None) -> None:
		if self._stale(generation):
			return
		self.state = replace(self.state, total=max(0, total))

	def append_page(
		self,
		items: Sequence[ItemT],
		*,
		next_cursor: Optional[str],
		has_more: bool,
		generation: Optional[int] = None,
	) -> bool:
		"""Merge a later page onto the tail; ids already present are skipped."""
		if self._stale(generation):
			return False
		seen = self.state.ids
		fresh: list[ItemT] = []
		for item in items:
			if item.id not in seen:
				seen.add(item.id)
				fresh.append(item)
		merged = sort_rows([*self.state.items, *fresh])
		self.state = replace(
			self.state,
			items=tuple(merged),
			last_cursor=next_cursor if next_cursor is not None else self.state.last_cursor,
			has_more=has_more,
		)
		return True

	def prepend_live(self, item: ItemT) -> bool:
		"""Insert a pushed item at its sorted position and count it."""
		if item.id in self.state.ids:
			return False
		merged = sort_rows([*self.state.items, item])
		self.state = replace(self.state, items=tuple(merged), total=self.state.total + 1)
		return True

	def full_reload(
		self,
		items: Sequence[ItemT],
		*,
		next_cursor: Optional[str],
		has_more: bool,
		generation: Optional[int] = None,
	) -> bool:
		"""Replace the window covered by a fresh first page.

		Rows already loaded strictly beyond the fresh page's last row are kept,
		so a reload and a concurrent ``append_page`` end in the same list
		whichever lands first.
		"""
		if self._stale(generation):
			return False
		fresh = _dedupe(items)
		if not fresh:
			self.state = replace(self.state, items=(), last_cursor=None, has_more=False)
			return True
		boundary = sort_key(sort_rows(fresh)[-1])
		fresh_ids = {item.id for item in fresh}
		tail = [item for item in self.state.items if is_after(item, boundary) and item.id not in fresh_ids]
		merged = sort_rows([*fresh, *tail])
		keep_cursor = bool(tail) and self.state.last_cursor is not None
		self.state = replace(
			self.state,
			items=tuple(merged),
			last_cursor=self.state.last_cursor if keep_cursor else next_cursor,
			has_more=self.state.has_more if keep_cursor else has_more,
		)
		return True

	def remove_local(self, item_id: str) -> bool:
		"""Drop a row after a confirmed delete; repeated calls are no-ops."""
		if item_id not in self.state.ids:
			return False
		remaining = tuple(item for item in self.state.items if item.id != item_id)
		self.state = replace(self.state, items=remaining, total=max(0, self.state.total - 1))
		return True

	def reset(self) -> int:
		self.state = ListState(generation=self.state.generation + 1)
		return self.state.generation

	def is_consistent(self) -> bool:
		items = self.state.items
		unique = len({item.id for item in items}) == len(items)
		ordered = all(precedes(sort_key(a), sort_key(b)) for a, b in zip(items, items[1:]))
		return unique and ordered


def _dedupe(items: Iterable[ItemT]) -> list[ItemT]:
	seen: set[str] = set()
	result: list[ItemT] = []
	for item in items:
		if item.id not in seen:
			seen.add(item.id)
			result.append(item)
	return result


__all__ = ["OrderedClientList", "ListState"]
