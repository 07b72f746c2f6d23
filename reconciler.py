"""Реконсиляція подій каналів змін у локальні колекції.

Контракт для кожної події `{eventType, id, new?, old?}`:
    • delete — видаляємо локальний рядок з таким id (відсутність — не помилка);
    • insert/update — payload не довіряємо, робимо point-read повного рядка:
        - не знайдено / помилка читання → подію відкидаємо мовчки;
        - рядок проходить предикат вікна → upsert з підтримкою порядку;
        - не проходить → виселяємо локальну копію.

Номер події видається в момент отримання (`receive`), а предикат вікна
береться на момент застосування результату, а не на момент отримання.
Результат point-read, що «запізнився» відносно пізнішої застосованої події
тієї ж сутності, відкидається (`stale`).
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from feed_ingestor import ChangeEvent
from point_reader import (
    REL_BREAKFAST_CONFIGS,
    REL_DAY,
    REL_ENTRIES,
    REL_HOTEL_BOOKING,
    REL_POC,
    REL_VENUE_TYPE,
    PointReader,
    start_time_sort_key,
)
from schedule_schema import (
    ENTITY_BREAKFAST_CONFIG,
    ENTITY_DAY,
    ENTITY_ENTRY,
    ENTITY_HOTEL_BOOKING,
    EVENT_DELETE,
)
from sync_metrics import PROM_FEED_EVENTS
from view_store import Row, SequenceLedger, SortedCollection
from window import DateWindow

log = logging.getLogger("schedule_sync.reconciler")
if not log.handlers:
    log.addHandler(logging.NullHandler())

OUTCOME_DELETED = "deleted"
OUTCOME_ABSENT = "absent"
OUTCOME_UPSERTED = "upserted"
OUTCOME_EVICTED = "evicted"
OUTCOME_DROPPED = "dropped"
OUTCOME_STALE = "stale"

WindowSupplier = Callable[[], DateWindow]
ChangeListener = Callable[[str], None]


def parent_day_id(row: Row) -> Optional[int]:
    parent = row.get(REL_DAY)
    if isinstance(parent, dict) and parent.get("id") is not None:
        return int(parent["id"])
    day_id = row.get("dayId")
    return int(day_id) if day_id is not None else None


class EventReconciler:
    """Базовий автомат «подія → мутація колекції» для одного типу сутності."""

    entity: str = ""
    default_relations: Tuple[str, ...] = ()

    def __init__(
        self,
        *,
        reader: PointReader,
        ledger: SequenceLedger,
        window_supplier: WindowSupplier,
        on_change: Optional[ChangeListener] = None,
        relations: Optional[Sequence[str]] = None,
    ) -> None:
        self._reader = reader
        self._ledger = ledger
        self._window_supplier = window_supplier
        self._on_change = on_change
        self.relations = tuple(self.default_relations if relations is None else relations)

    def receive(self, event: ChangeEvent) -> Awaitable[str]:
        """Фіксує номер події синхронно і повертає корутину реконсиляції."""

        seq = self._ledger.next_seq()
        return self._reconcile(event, seq)

    async def _reconcile(self, event: ChangeEvent, seq: int) -> str:
        try:
            return await self._apply(event, seq)
        finally:
            self._ledger.settle(seq)

    async def _apply(self, event: ChangeEvent, seq: int) -> str:
        entity_id = event.entity_id
        if event.event_type == EVENT_DELETE:
            changed = self.apply_delete(event)
            self._ledger.mark_applied(self.entity, entity_id, seq)
            outcome = OUTCOME_DELETED if changed else OUTCOME_ABSENT
            return self._finish(event, outcome, changed)

        row = await self._reader.get(self.entity, entity_id, self.relations)
        if row is None:
            return self._finish(event, OUTCOME_DROPPED, False)
        stale_by = self.stale_by(entity_id, row, seq)
        if stale_by is not None:
            log.debug(
                "Реконсиляція %s#%s: результат seq=%s застарів через %s#%s (застосовано %s).",
                self.entity,
                entity_id,
                seq,
                stale_by[0],
                stale_by[1],
                self._ledger.last_applied(*stale_by),
            )
            return self._finish(event, OUTCOME_STALE, False)

        window = self._window_supplier()
        if self.admits(row, window):
            self.apply_upsert(row, seq)
            outcome = OUTCOME_UPSERTED
            changed = True
        else:
            changed = self.apply_evict(entity_id, row, seq)
            outcome = OUTCOME_EVICTED
        self._ledger.mark_applied(self.entity, entity_id, seq)
        return self._finish(event, outcome, changed)

    def _finish(self, event: ChangeEvent, outcome: str, changed: bool) -> str:
        PROM_FEED_EVENTS.labels(entity=self.entity, event=event.event_type, result=outcome).inc()
        log.debug("Реконсиляція %s %s#%s → %s", event.event_type, self.entity, event.entity_id, outcome)
        if changed and self._on_change is not None:
            self._on_change(self.entity)
        return outcome

    # ── Хуки конкретних сутностей ──

    def stale_by(self, entity_id: int, row: Row, seq: int) -> Optional[Tuple[str, int]]:
        """Сутність, чия пізніша застосована подія робить результат застарілим."""
        if self._ledger.is_stale(self.entity, entity_id, seq):
            return (self.entity, int(entity_id))
        return None

    def admits(self, row: Row, window: DateWindow) -> bool:
        raise NotImplementedError

    def apply_upsert(self, row: Row, seq: int) -> None:
        raise NotImplementedError

    def apply_evict(self, entity_id: int, row: Row, seq: int) -> bool:
        raise NotImplementedError

    def apply_delete(self, event: ChangeEvent) -> bool:
        raise NotImplementedError

    def prune(self, window: DateWindow) -> List[int]:
        """Виселяє все, що не проходить предикат нового вікна."""
        return []


class _SingleCollectionReconciler(EventReconciler):
    def __init__(self, collection: SortedCollection, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.collection = collection

    def apply_upsert(self, row: Row, seq: int) -> None:
        self.collection.upsert(row)

    def apply_evict(self, entity_id: int, row: Row, seq: int) -> bool:
        return self.collection.remove(entity_id) is not None

    def apply_delete(self, event: ChangeEvent) -> bool:
        return self.collection.remove(event.entity_id) is not None

    def prune(self, window: DateWindow) -> List[int]:
        return self.collection.prune(lambda row: self.admits(row, window))


class HotelBookingReconciler(_SingleCollectionReconciler):
    """Бронювання: належність за перетином [checkIn, checkOut) з вікном."""

    entity = ENTITY_HOTEL_BOOKING
    default_relations = (REL_BREAKFAST_CONFIGS,)

    def admits(self, row: Row, window: DateWindow) -> bool:
        return window.overlaps_range(row.get("checkInDate"), row.get("checkOutDate"))


class BreakfastConfigReconciler(_SingleCollectionReconciler):
    """Конфігурації сніданку: належність за `breakfastDate`.

    Якщо передано колекцію бронювань, вкладені копії конфігурацій у
    бронюваннях теж підтримуються актуальними.
    """

    entity = ENTITY_BREAKFAST_CONFIG
    default_relations = (REL_HOTEL_BOOKING,)

    def __init__(
        self,
        collection: SortedCollection,
        *,
        bookings: Optional[SortedCollection] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(collection, **kwargs)
        self._bookings = bookings

    def admits(self, row: Row, window: DateWindow) -> bool:
        return window.contains_date(row.get("breakfastDate"))

    def apply_upsert(self, row: Row, seq: int) -> None:
        super().apply_upsert(row, seq)
        self._patch_nested(row)

    def apply_evict(self, entity_id: int, row: Row, seq: int) -> bool:
        removed = super().apply_evict(entity_id, row, seq)
        return self._patch_nested(row) or removed

    def apply_delete(self, event: ChangeEvent) -> bool:
        removed = super().apply_delete(event)
        return self._patch_nested(None, drop_id=event.entity_id) or removed

    def _patch_nested(self, row: Optional[Row], *, drop_id: Optional[int] = None) -> bool:
        if self._bookings is None:
            return False
        config_id = int(row["id"]) if row is not None else drop_id
        owner_id = row.get("hotelBookingId") if row is not None else None
        nested = {k: v for k, v in row.items() if k != REL_HOTEL_BOOKING} if row is not None else None
        changed = False
        for booking in self._bookings.rows():
            configs = list(booking.get(REL_BREAKFAST_CONFIGS) or [])
            kept = [cfg for cfg in configs if cfg.get("id") != config_id]
            if nested is not None and booking.get("id") == owner_id:
                kept.append(nested)
                kept.sort(key=start_time_sort_key)
            elif len(kept) == len(configs):
                continue
            self._bookings.upsert({**booking, REL_BREAKFAST_CONFIGS: kept})
            changed = True
        return changed


class MonthDayReconciler(_SingleCollectionReconciler):
    """Дні місяця з вкладеними записами; видалення дня забирає і його записи."""

    entity = ENTITY_DAY
    default_relations = (REL_ENTRIES,)

    def admits(self, row: Row, window: DateWindow) -> bool:
        return window.contains_date(row.get("dateISO"))

    def apply_upsert(self, row: Row, seq: int) -> None:
        current = self.collection.get(int(row["id"]))
        held = {entry.get("id"): entry for entry in (current or {}).get(REL_ENTRIES) or []}
        merged: List[Row] = []
        for entry in row.get(REL_ENTRIES) or []:
            entry_id = entry.get("id")
            if entry_id is not None and self._ledger.is_stale(ENTITY_ENTRY, entry_id, seq):
                # Запис змінено пізнішою подією: лишаємо локальну версію, якщо є.
                if entry_id in held:
                    merged.append(held[entry_id])
                continue
            merged.append(entry)
        self.collection.upsert({**row, REL_ENTRIES: merged})


class _ParentDayGuard:
    """Домішка для записів: результат читання застарів і тоді, коли батьківський
    Day змінено або видалено пізнішою подією."""

    _ledger: SequenceLedger

    def stale_by(self, entity_id: int, row: Row, seq: int) -> Optional[Tuple[str, int]]:
        own = super().stale_by(entity_id, row, seq)  # type: ignore[misc]
        if own is not None:
            return own
        day_id = parent_day_id(row)
        if day_id is not None and self._ledger.is_stale(ENTITY_DAY, day_id, seq):
            return (ENTITY_DAY, day_id)
        return None


class MonthEntryReconciler(_ParentDayGuard, EventReconciler):
    """Записи у вкладених списках днів; належність — через дату батьківського Day."""

    entity = ENTITY_ENTRY
    default_relations = (REL_VENUE_TYPE, REL_POC, REL_DAY)

    def __init__(self, days: SortedCollection, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.days = days

    def admits(self, row: Row, window: DateWindow) -> bool:
        parent = row.get(REL_DAY)
        return isinstance(parent, dict) and window.contains_date(parent.get("dateISO"))

    def apply_upsert(self, row: Row, seq: int) -> None:
        entry = dict(row)
        parent = entry.pop(REL_DAY)
        parent_id = int(parent["id"])
        self._detach(int(entry["id"]), keep_day_id=parent_id)
        day = self.days.get(parent_id)
        if day is None:
            self.days.upsert(
                {
                    "id": parent_id,
                    "dateISO": parent.get("dateISO"),
                    "weekday": parent.get("weekday"),
                    REL_ENTRIES: [entry],
                }
            )
            return
        entries = list(day.get(REL_ENTRIES) or [])
        for idx, existing in enumerate(entries):
            if existing.get("id") == entry["id"]:
                entries[idx] = entry
                break
        else:
            entries.append(entry)
        self.days.upsert({**day, REL_ENTRIES: entries})

    def apply_evict(self, entity_id: int, row: Row, seq: int) -> bool:
        return self._detach(entity_id)

    def apply_delete(self, event: ChangeEvent) -> bool:
        return self._detach(event.entity_id)

    def _detach(self, entry_id: int, *, keep_day_id: Optional[int] = None) -> bool:
        changed = False
        for day in self.days.rows():
            if keep_day_id is not None and day.get("id") == keep_day_id:
                continue
            entries = day.get(REL_ENTRIES) or []
            kept = [entry for entry in entries if entry.get("id") != entry_id]
            if len(kept) != len(entries):
                self.days.upsert({**day, REL_ENTRIES: kept})
                changed = True
        return changed


class DayEntryReconciler(_ParentDayGuard, EventReconciler):
    """Записи одного дня, розкладені за видом (golf/event/reservation).

    Дата батьківського дня береться з point-read (`day`) або з індексу
    `day_dates`, який наповнюють знімок і канал днів.
    """

    entity = ENTITY_ENTRY
    default_relations = (REL_VENUE_TYPE, REL_POC, REL_DAY)

    def __init__(
        self,
        kinds: Dict[str, SortedCollection],
        day_dates: Dict[int, str],
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.kinds = kinds
        self.day_dates = day_dates

    def _parent_date(self, row: Row) -> Any:
        parent = row.get(REL_DAY)
        if isinstance(parent, dict) and parent.get("dateISO"):
            return parent.get("dateISO")
        day_id = row.get("dayId")
        return self.day_dates.get(int(day_id)) if day_id is not None else None

    def admits(self, row: Row, window: DateWindow) -> bool:
        return window.contains_date(self._parent_date(row))

    def apply_upsert(self, row: Row, seq: int) -> None:
        entry = dict(row)
        parent = entry.pop(REL_DAY, None)
        if isinstance(parent, dict) and parent.get("id") is not None:
            self.day_dates[int(parent["id"])] = str(parent.get("dateISO") or "")
        self.place(entry)

    def place(self, entry: Row) -> None:
        kind = entry.get("type")
        entry_id = int(entry["id"])
        for name, collection in self.kinds.items():
            if name == kind:
                collection.upsert(entry)
            else:
                collection.remove(entry_id)

    def apply_evict(self, entity_id: int, row: Row, seq: int) -> bool:
        return self._remove_everywhere(entity_id)

    def apply_delete(self, event: ChangeEvent) -> bool:
        kind = (event.old or {}).get("type")
        if kind in self.kinds:
            return self.kinds[kind].remove(event.entity_id) is not None
        log.debug("DELETE запису #%s з невідомим видом %r: прибираємо зі всіх списків.", event.entity_id, kind)
        return self._remove_everywhere(event.entity_id)

    def _remove_everywhere(self, entry_id: int) -> bool:
        removed = [collection.remove(entry_id) is not None for collection in self.kinds.values()]
        return any(removed)

    def evict_day(self, day_id: int, *, except_ids: Sequence[int] = (), newer_than: int = 0) -> List[int]:
        evicted: List[int] = []
        for collection in self.kinds.values():
            for entry in collection.rows():
                entry_id = int(entry["id"])
                if entry.get("dayId") != day_id or entry_id in except_ids:
                    continue
                if newer_than and self._ledger.is_stale(ENTITY_ENTRY, entry_id, newer_than):
                    continue
                collection.remove(entry_id)
                evicted.append(entry_id)
        return evicted

    def prune(self, window: DateWindow) -> List[int]:
        evicted: List[int] = []
        for collection in self.kinds.values():
            evicted.extend(collection.prune(lambda row: self.admits(row, window)))
        for day_id in [day_id for day_id, date in self.day_dates.items() if not window.contains_date(date)]:
            del self.day_dates[day_id]
        return evicted


class DayOwnerReconciler(EventReconciler):
    """Канал днів для денного вікна: каскадне виселення записів видаленого дня."""

    entity = ENTITY_DAY
    default_relations = (REL_ENTRIES,)

    def __init__(self, entries: DayEntryReconciler, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.entries = entries

    def admits(self, row: Row, window: DateWindow) -> bool:
        return window.contains_date(row.get("dateISO"))

    def apply_upsert(self, row: Row, seq: int) -> None:
        day_id = int(row["id"])
        self.entries.day_dates[day_id] = str(row.get("dateISO") or "")
        fresh_ids: List[int] = []
        for entry in row.get(REL_ENTRIES) or []:
            entry_id = int(entry["id"])
            fresh_ids.append(entry_id)
            if self._ledger.is_stale(ENTITY_ENTRY, entry_id, seq):
                continue
            self.entries.place(dict(entry))
        self.entries.evict_day(day_id, except_ids=fresh_ids, newer_than=seq)

    def apply_evict(self, entity_id: int, row: Row, seq: int) -> bool:
        self.entries.day_dates[int(entity_id)] = str(row.get("dateISO") or "")
        return bool(self.entries.evict_day(int(entity_id), newer_than=seq))

    def apply_delete(self, event: ChangeEvent) -> bool:
        self.entries.day_dates.pop(event.entity_id, None)
        return bool(self.entries.evict_day(event.entity_id))
