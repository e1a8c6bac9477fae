"""Live query bindings for UI code.

A LiveQuery keeps the last fetched result list for one table (optionally
filtered on a single key) and re-fetches when its table, filter or the
store's readiness changes, or when the repository reports a write to its
table. filtered() and sorted() work on the last snapshot only.
"""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Any

from db.repository import ChangeEvent, Entity, EntityRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SortKey:
    key: str
    ascending: bool = True


def _compare(a: Entity, b: Entity, keys: Sequence[SortKey]) -> int:
    for sort_key in keys:
        left, right = a.get(sort_key.key), b.get(sort_key.key)
        if left == right:
            continue
        # None sorts last regardless of direction
        if left is None:
            return 1
        if right is None:
            return -1
        if left < right:
            return -1 if sort_key.ascending else 1
        return 1 if sort_key.ascending else -1
    return 0


def sort_entities(items: Sequence[Entity], keys: Sequence[SortKey]) -> list[Entity]:
    """Stable multi-key sort returning a new list."""
    return sorted(items, key=cmp_to_key(lambda a, b: _compare(a, b, keys)))


class LiveQuery:
    def __init__(
        self,
        repository: EntityRepository,
        table: str,
        *,
        filter: tuple[str, Any] | None = None,
        sort: Sequence[SortKey] | None = None,
    ) -> None:
        self.repository = repository
        self.table = table
        self.filter = filter
        self.sort = list(sort or [])
        self.results: list[Entity] = []
        self.is_loading = True
        self.error: Exception | None = None
        self._unsubscribe: Callable[[], None] | None = None

    async def refresh(self) -> list[Entity]:
        if not self.repository.is_ready:
            self.results = []
            self.is_loading = False
            return self.results

        self.is_loading = True
        try:
            if self.filter is not None:
                key, value = self.filter
                data = await self.repository.get_by_filter(self.table, key, value)
            else:
                data = await self.repository.get_all(self.table)
            if self.sort:
                data = sort_entities(data, self.sort)
            self.results = data
            self.error = None
        except Exception as e:
            logger.exception("Error fetching %s", self.table)
            self.results = []
            self.error = e
        finally:
            self.is_loading = False
        return self.results

    async def set_table(self, table: str) -> None:
        if table != self.table:
            self.table = table
            await self.refresh()

    async def set_filter(self, key: str | None, value: Any = None) -> None:
        new_filter = (key, value) if key is not None else None
        if new_filter != self.filter:
            self.filter = new_filter
            await self.refresh()

    async def _on_change(self, event: ChangeEvent) -> None:
        if event.action == "ready" or event.table == self.table:
            await self.refresh()

    async def attach(self) -> "LiveQuery":
        """Subscribe to repository changes and run the first fetch."""
        if self._unsubscribe is None:
            self._unsubscribe = self.repository.subscribe(self._on_change)
        await self.refresh()
        return self

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def filtered(self, predicate: Callable[[Entity], bool]) -> list[Entity]:
        return [item for item in self.results if predicate(item)]

    def sorted(self, keys: Sequence[SortKey]) -> list[Entity]:
        return sort_entities(self.results, keys)


class LiveObject:
    """Single entity by id, refreshed on writes to that entity."""

    def __init__(self, repository: EntityRepository, table: str, entity_id: str | None) -> None:
        self.repository = repository
        self.table = table
        self.entity_id = entity_id
        self.object: Entity | None = None
        self.is_loading = True
        self._unsubscribe: Callable[[], None] | None = None

    async def refresh(self) -> Entity | None:
        if not self.entity_id or not self.repository.is_ready:
            self.object = None
            self.is_loading = False
            return None
        try:
            self.object = await self.repository.get_by_id(self.table, self.entity_id)
        except Exception:
            logger.exception("Error fetching %s with id %s", self.table, self.entity_id)
            self.object = None
        finally:
            self.is_loading = False
        return self.object

    async def _on_change(self, event: ChangeEvent) -> None:
        if event.action == "ready" or (
            event.table == self.table and event.entity_id == self.entity_id
        ):
            await self.refresh()

    async def attach(self) -> "LiveObject":
        if self._unsubscribe is None:
            self._unsubscribe = self.repository.subscribe(self._on_change)
        await self.refresh()
        return self

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
