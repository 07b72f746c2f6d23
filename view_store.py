"""Нормалізоване сховище локального представлення.

`SortedCollection` — колекція рядків за id з підтримуваним відсортованим
індексом (bisect), тому upsert не вимагає повного пересортування.
`SequenceLedger` — монотонні номери подій та останній застосований номер
для кожної сутності; захищає від «воскресіння» видаленого рядка, коли
point-read завершується після пізнішого DELETE.
"""

from __future__ import annotations

import bisect
import itertools
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from point_reader import start_time_sort_key
from sync_metrics import PROM_COLLECTION_SIZE

Row = Dict[str, Any]
SortKey = Callable[[Row], Any]

LEDGER_COMPACT_THRESHOLD = 1024


def date_field_sort_key(field: str) -> SortKey:
    def _key(row: Row) -> Any:
        return str(row.get(field) or "")[:10]

    return _key


# Конфігурації сніданків: за часом початку, без часу в кінці.
breakfast_sort_key: SortKey = start_time_sort_key


class SortedCollection:
    """Дедуплікована за id колекція з порядком за `sort_key` (далі — за id)."""

    def __init__(self, name: str, sort_key: Optional[SortKey] = None) -> None:
        self.name = name
        self._sort_key = sort_key
        self._rows: Dict[int, Row] = {}
        self._index: List[Tuple[Any, int]] = []

    def _index_entry(self, row: Row) -> Tuple[Any, int]:
        row_id = int(row["id"])
        if self._sort_key is None:
            return ((), row_id)
        return (self._sort_key(row), row_id)

    def seed(self, rows: Iterable[Row]) -> None:
        """Повністю замінює вміст; дублікати id — перемагає останній."""

        self._rows.clear()
        self._index.clear()
        for row in rows or ():
            self.upsert(row)
        self._report_size()

    def upsert(self, row: Row) -> None:
        row_id = int(row["id"])
        previous = self._rows.get(row_id)
        if previous is not None:
            self._drop_index_entry(previous)
        self._rows[row_id] = row
        bisect.insort(self._index, self._index_entry(row))
        self._report_size()

    def remove(self, row_id: int) -> Optional[Row]:
        previous = self._rows.pop(int(row_id), None)
        if previous is not None:
            self._drop_index_entry(previous)
            self._report_size()
        return previous

    def prune(self, keep: Callable[[Row], bool]) -> List[int]:
        """Видаляє всі рядки, що не проходять `keep`; повертає їхні id."""

        evicted = [row_id for row_id, row in self._rows.items() if not keep(row)]
        for row_id in evicted:
            self.remove(row_id)
        return evicted

    def get(self, row_id: int) -> Optional[Row]:
        return self._rows.get(int(row_id))

    def ids(self) -> List[int]:
        return [row_id for _key, row_id in self._index]

    def rows(self) -> List[Row]:
        return [self._rows[row_id] for _key, row_id in self._index]

    def __contains__(self, row_id: object) -> bool:
        return row_id in self._rows

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[Row]:
        return iter(self.rows())

    def _drop_index_entry(self, row: Row) -> None:
        entry = self._index_entry(row)
        pos = bisect.bisect_left(self._index, entry)
        if pos < len(self._index) and self._index[pos] == entry:
            del self._index[pos]
            return
        # Рядок змінили на місці в обхід upsert: шукаємо лінійно.
        row_id = entry[1]
        self._index = [item for item in self._index if item[1] != row_id]

    def _report_size(self) -> None:
        PROM_COLLECTION_SIZE.labels(collection=self.name).set(len(self._rows))


class SequenceLedger:
    """Номери подій за порядком отримання та останній застосований номер на сутність.

    Номер живе у «відкритих» від `next_seq` до `settle`. Застосований номер
    потрібен лише відкритим читанням, старшим за нього, тому `settle`
    ущільнює журнал: без відкритих читань він порожніє повністю, інакше
    лишаються тільки номери, новіші за найстаріше відкрите.
    """

    def __init__(self, *, compact_threshold: int = LEDGER_COMPACT_THRESHOLD) -> None:
        self._counter = itertools.count(1)
        self._applied: Dict[Tuple[str, int], int] = {}
        self._open: Set[int] = set()
        self._compact_threshold = compact_threshold
        self._compact_at = compact_threshold

    def next_seq(self) -> int:
        seq = next(self._counter)
        self._open.add(seq)
        return seq

    def settle(self, seq: int) -> None:
        self._open.discard(seq)
        if not self._open:
            self._applied.clear()
            self._compact_at = self._compact_threshold
        elif len(self._applied) >= self._compact_at:
            floor = min(self._open)
            self._applied = {key: value for key, value in self._applied.items() if value > floor}
            self._compact_at = max(self._compact_threshold, 2 * len(self._applied))

    def last_applied(self, entity: str, entity_id: int) -> int:
        return self._applied.get((entity, int(entity_id)), 0)

    def is_stale(self, entity: str, entity_id: int, seq: int) -> bool:
        return self.last_applied(entity, entity_id) > seq

    def mark_applied(self, entity: str, entity_id: int, seq: int) -> None:
        key = (entity, int(entity_id))
        if seq > self._applied.get(key, 0):
            self._applied[key] = seq

    def open_count(self) -> int:
        return len(self._open)

    def __len__(self) -> int:
        return len(self._applied)
