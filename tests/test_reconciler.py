from __future__ import annotations

import asyncio
import copy
import datetime as dt
import unittest
from typing import Any, Dict, List, Optional, Sequence, Tuple

from feed_ingestor import ChangeEvent
from reconciler import (
    OUTCOME_ABSENT,
    OUTCOME_DELETED,
    OUTCOME_DROPPED,
    OUTCOME_EVICTED,
    OUTCOME_STALE,
    OUTCOME_UPSERTED,
    BreakfastConfigReconciler,
    DayEntryReconciler,
    DayOwnerReconciler,
    HotelBookingReconciler,
    MonthDayReconciler,
    MonthEntryReconciler,
)
from view_store import SequenceLedger, SortedCollection, breakfast_sort_key, date_field_sort_key
from window import DateWindow

JANUARY = DateWindow(dt.date(2024, 1, 1), dt.date(2024, 1, 31))
FEBRUARY = DateWindow(dt.date(2024, 2, 1), dt.date(2024, 2, 29))


class FakeReader:
    """Point-read з керованими «воротами», щоб відтворювати довільний порядок завершення."""

    def __init__(self) -> None:
        self.rows: Dict[Tuple[str, int], Dict[str, Any]] = {}
        self.gates: Dict[Tuple[str, int], asyncio.Event] = {}
        self.calls: List[Tuple[str, int, Tuple[str, ...]]] = []

    def put(self, entity: str, row: Dict[str, Any]) -> None:
        self.rows[(entity, int(row["id"]))] = row

    def hold(self, entity: str, entity_id: int) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates[(entity, entity_id)] = gate
        return gate

    async def get(
        self,
        entity: str,
        entity_id: int,
        relations: Optional[Sequence[str]] = None,
    ) -> Optional[Dict[str, Any]]:
        self.calls.append((entity, entity_id, tuple(relations or ())))
        gate = self.gates.pop((entity, entity_id), None)
        if gate is not None:
            await gate.wait()
        row = self.rows.get((entity, entity_id))
        return copy.deepcopy(row) if row is not None else None


def _event(entity: str, event_type: str, entity_id: int, **images: Any) -> ChangeEvent:
    return ChangeEvent(entity=entity, event_type=event_type, entity_id=entity_id, **images)


class _ReconcilerCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.reader = FakeReader()
        self.ledger = SequenceLedger()
        self.window = JANUARY
        self.changes: List[str] = []

    def common(self) -> Dict[str, Any]:
        return dict(
            reader=self.reader,
            ledger=self.ledger,
            window_supplier=lambda: self.window,
            on_change=self.changes.append,
        )


class HotelBookingReconcilerTest(_ReconcilerCase):
    def setUp(self) -> None:
        super().setUp()
        self.bookings = SortedCollection("t.bookings", date_field_sort_key("checkInDate"))
        self.rec = HotelBookingReconciler(self.bookings, **self.common())

    async def test_insert_in_window_is_upserted_in_checkin_order(self) -> None:
        self.reader.put("hotel_booking", {"id": 2, "checkInDate": "2024-01-20", "checkOutDate": "2024-01-22"})
        self.reader.put("hotel_booking", {"id": 1, "checkInDate": "2024-01-05", "checkOutDate": "2024-01-10"})
        self.assertEqual(await self.rec.receive(_event("hotel_booking", "insert", 2)), OUTCOME_UPSERTED)
        self.assertEqual(await self.rec.receive(_event("hotel_booking", "insert", 1)), OUTCOME_UPSERTED)
        self.assertEqual(self.bookings.ids(), [1, 2])
        self.assertEqual(self.changes, ["hotel_booking", "hotel_booking"])
        self.assertEqual(self.reader.calls[0][2], ("breakfastConfigurations",))

    async def test_update_moving_out_of_window_evicts(self) -> None:
        self.bookings.seed([{"id": 1, "checkInDate": "2024-01-05", "checkOutDate": "2024-01-10"}])
        self.reader.put("hotel_booking", {"id": 1, "checkInDate": "2024-02-05", "checkOutDate": "2024-02-10"})
        self.assertEqual(await self.rec.receive(_event("hotel_booking", "update", 1)), OUTCOME_EVICTED)
        self.assertEqual(self.bookings.ids(), [])

    async def test_out_of_window_insert_is_not_added(self) -> None:
        self.reader.put("hotel_booking", {"id": 3, "checkInDate": "2024-03-01", "checkOutDate": "2024-03-02"})
        await self.rec.receive(_event("hotel_booking", "insert", 3))
        self.assertEqual(self.bookings.ids(), [])
        self.assertEqual(self.changes, [])

    async def test_not_found_drops_event(self) -> None:
        self.bookings.seed([{"id": 1, "checkInDate": "2024-01-05", "checkOutDate": "2024-01-10"}])
        self.assertEqual(await self.rec.receive(_event("hotel_booking", "update", 1)), OUTCOME_DROPPED)
        self.assertEqual(self.bookings.ids(), [1])

    async def test_delete_is_idempotent(self) -> None:
        self.bookings.seed([{"id": 1, "checkInDate": "2024-01-05", "checkOutDate": "2024-01-10"}])
        delete = _event("hotel_booking", "delete", 42, old={"id": 42})
        self.assertEqual(await self.rec.receive(delete), OUTCOME_ABSENT)
        self.assertEqual(self.bookings.ids(), [1])
        self.assertEqual(self.changes, [])

    async def test_insert_resolving_after_delete_does_not_resurrect(self) -> None:
        self.reader.put("hotel_booking", {"id": 7, "checkInDate": "2024-01-05", "checkOutDate": "2024-01-10"})
        gate = self.reader.hold("hotel_booking", 7)
        pending = asyncio.ensure_future(self.rec.receive(_event("hotel_booking", "insert", 7)))
        await asyncio.sleep(0)
        deleted = await self.rec.receive(_event("hotel_booking", "delete", 7, old={"id": 7}))
        self.assertEqual(deleted, OUTCOME_ABSENT)
        gate.set()
        self.assertEqual(await pending, OUTCOME_STALE)
        self.assertNotIn(7, self.bookings)

    async def test_late_result_uses_window_at_apply_time(self) -> None:
        self.reader.put("hotel_booking", {"id": 8, "checkInDate": "2024-01-05", "checkOutDate": "2024-01-10"})
        gate = self.reader.hold("hotel_booking", 8)
        pending = asyncio.ensure_future(self.rec.receive(_event("hotel_booking", "insert", 8)))
        await asyncio.sleep(0)
        self.window = FEBRUARY
        gate.set()
        self.assertEqual(await pending, OUTCOME_EVICTED)
        self.assertEqual(self.bookings.ids(), [])

    async def test_older_update_resolving_last_is_ignored(self) -> None:
        self.reader.put("hotel_booking", {"id": 9, "checkInDate": "2024-01-05", "checkOutDate": "2024-01-10"})
        gate = self.reader.hold("hotel_booking", 9)
        first = asyncio.ensure_future(self.rec.receive(_event("hotel_booking", "update", 9)))
        await asyncio.sleep(0)
        self.reader.put("hotel_booking", {"id": 9, "checkInDate": "2024-01-06", "checkOutDate": "2024-01-10"})
        self.assertEqual(await self.rec.receive(_event("hotel_booking", "update", 9)), OUTCOME_UPSERTED)
        self.reader.put("hotel_booking", {"id": 9, "checkInDate": "2024-01-01", "checkOutDate": "2024-01-10"})
        gate.set()
        self.assertEqual(await first, OUTCOME_STALE)
        self.assertEqual(self.bookings.get(9)["checkInDate"], "2024-01-06")

    async def test_prune_on_window_move(self) -> None:
        self.bookings.seed(
            [
                {"id": 1, "checkInDate": "2024-01-05", "checkOutDate": "2024-01-10"},
                {"id": 2, "checkInDate": "2024-01-30", "checkOutDate": "2024-02-03"},
            ]
        )
        self.assertEqual(self.rec.prune(FEBRUARY), [1])
        self.assertEqual(self.bookings.ids(), [2])


class BreakfastConfigReconcilerTest(_ReconcilerCase):
    def setUp(self) -> None:
        super().setUp()
        self.bookings = SortedCollection("t.bookings", date_field_sort_key("checkInDate"))
        self.configs = SortedCollection("t.configs", breakfast_sort_key)
        self.rec = BreakfastConfigReconciler(self.configs, bookings=self.bookings, **self.common())
        self.bookings.seed(
            [
                {
                    "id": 5,
                    "checkInDate": "2024-01-04",
                    "checkOutDate": "2024-01-08",
                    "breakfastConfigurations": [{"id": 50, "hotelBookingId": 5, "startTime": "08:00"}],
                }
            ]
        )

    async def test_sorted_by_start_time_nulls_last(self) -> None:
        self.reader.put("breakfast_config", {"id": 50, "hotelBookingId": 5, "breakfastDate": "2024-01-05", "startTime": None})
        self.reader.put("breakfast_config", {"id": 51, "hotelBookingId": 5, "breakfastDate": "2024-01-05", "startTime": "07:30"})
        await self.rec.receive(_event("breakfast_config", "update", 50))
        await self.rec.receive(_event("breakfast_config", "insert", 51))
        self.assertEqual(self.configs.ids(), [51, 50])

    async def test_nested_copy_in_booking_is_refreshed(self) -> None:
        self.reader.put(
            "breakfast_config",
            {
                "id": 52,
                "hotelBookingId": 5,
                "breakfastDate": "2024-01-06",
                "startTime": "07:00",
                "hotelBooking": {"id": 5},
            },
        )
        await self.rec.receive(_event("breakfast_config", "insert", 52))
        nested = self.bookings.get(5)["breakfastConfigurations"]
        self.assertEqual([cfg["id"] for cfg in nested], [52, 50])
        self.assertNotIn("hotelBooking", nested[0])

    async def test_delete_removes_nested_copy(self) -> None:
        outcome = await self.rec.receive(_event("breakfast_config", "delete", 50, old={"id": 50}))
        self.assertEqual(outcome, OUTCOME_DELETED)
        self.assertEqual(self.bookings.get(5)["breakfastConfigurations"], [])

    async def test_out_of_window_config_is_evicted(self) -> None:
        self.configs.seed([{"id": 50, "hotelBookingId": 5, "breakfastDate": "2024-01-05"}])
        self.reader.put("breakfast_config", {"id": 50, "hotelBookingId": 5, "breakfastDate": "2024-02-05"})
        self.assertEqual(await self.rec.receive(_event("breakfast_config", "update", 50)), OUTCOME_EVICTED)
        self.assertEqual(self.configs.ids(), [])
        # Вкладений список бронювання містить усі його конфігурації, незалежно від дати.
        self.assertEqual([cfg["id"] for cfg in self.bookings.get(5)["breakfastConfigurations"]], [50])


class MonthDayAndEntryReconcilerTest(_ReconcilerCase):
    def setUp(self) -> None:
        super().setUp()
        self.days = SortedCollection("t.days", date_field_sort_key("dateISO"))
        self.day_rec = MonthDayReconciler(self.days, **self.common())
        self.entry_rec = MonthEntryReconciler(self.days, **self.common())
        self.days.seed(
            [
                {"id": 1, "dateISO": "2024-01-10", "weekday": "Wednesday", "entries": [{"id": 10, "dayId": 1}]},
                {"id": 2, "dateISO": "2024-01-12", "weekday": "Friday", "entries": []},
            ]
        )

    async def test_day_insert_keeps_date_order(self) -> None:
        self.reader.put("day", {"id": 3, "dateISO": "2024-01-11", "weekday": "Thursday", "entries": []})
        await self.day_rec.receive(_event("day", "insert", 3))
        self.assertEqual(self.days.ids(), [1, 3, 2])
        self.assertEqual(self.reader.calls[-1][2], ("entries",))

    async def test_day_delete_cascades_nested_entries(self) -> None:
        await self.day_rec.receive(_event("day", "delete", 1, old={"id": 1}))
        self.assertEqual(self.days.ids(), [2])
        all_entries = [entry["id"] for day in self.days for entry in day["entries"]]
        self.assertNotIn(10, all_entries)

    async def test_entry_for_unknown_day_creates_stub_day(self) -> None:
        self.reader.put(
            "entry",
            {
                "id": 20,
                "dayId": 4,
                "type": "golf",
                "day": {"id": 4, "dateISO": "2024-01-11", "weekday": "Thursday"},
            },
        )
        await self.entry_rec.receive(_event("entry", "insert", 20))
        self.assertEqual(self.days.ids(), [1, 4, 2])
        stub = self.days.get(4)
        self.assertEqual(stub["weekday"], "Thursday")
        self.assertEqual([entry["id"] for entry in stub["entries"]], [20])
        self.assertNotIn("day", stub["entries"][0])

    async def test_entry_moved_between_days(self) -> None:
        self.reader.put(
            "entry",
            {"id": 10, "dayId": 2, "type": "event", "day": {"id": 2, "dateISO": "2024-01-12"}},
        )
        await self.entry_rec.receive(_event("entry", "update", 10))
        self.assertEqual(self.days.get(1)["entries"], [])
        self.assertEqual([entry["id"] for entry in self.days.get(2)["entries"]], [10])

    async def test_entry_update_replaces_in_place(self) -> None:
        self.days.upsert({**self.days.get(1), "entries": [{"id": 10, "dayId": 1}, {"id": 11, "dayId": 1}]})
        self.reader.put(
            "entry",
            {"id": 10, "dayId": 1, "title": "new", "day": {"id": 1, "dateISO": "2024-01-10"}},
        )
        await self.entry_rec.receive(_event("entry", "update", 10))
        entries = self.days.get(1)["entries"]
        self.assertEqual([entry["id"] for entry in entries], [10, 11])
        self.assertEqual(entries[0]["title"], "new")

    async def test_entry_moved_out_of_window_is_evicted(self) -> None:
        self.reader.put(
            "entry",
            {"id": 10, "dayId": 9, "day": {"id": 9, "dateISO": "2024-02-02"}},
        )
        self.assertEqual(await self.entry_rec.receive(_event("entry", "update", 10)), OUTCOME_EVICTED)
        self.assertEqual(self.days.get(1)["entries"], [])
        self.assertNotIn(9, self.days)

    async def test_entry_delete(self) -> None:
        self.assertEqual(
            await self.entry_rec.receive(_event("entry", "delete", 10, old={"id": 10, "dayId": 1})),
            OUTCOME_DELETED,
        )
        self.assertEqual(self.days.get(1)["entries"], [])

    async def test_stale_day_read_keeps_newer_entry_version(self) -> None:
        self.reader.put(
            "day",
            {"id": 1, "dateISO": "2024-01-10", "entries": [{"id": 10, "dayId": 1, "title": "old"}]},
        )
        gate = self.reader.hold("day", 1)
        pending = asyncio.ensure_future(self.day_rec.receive(_event("day", "update", 1)))
        await asyncio.sleep(0)
        self.reader.put(
            "entry",
            {"id": 10, "dayId": 1, "title": "fresh", "day": {"id": 1, "dateISO": "2024-01-10"}},
        )
        await self.entry_rec.receive(_event("entry", "update", 10))
        gate.set()
        await pending
        self.assertEqual(self.days.get(1)["entries"][0]["title"], "fresh")

    async def test_prune_on_window_move(self) -> None:
        self.window = DateWindow(dt.date(2024, 1, 11), dt.date(2024, 1, 31))
        self.assertEqual(self.day_rec.prune(self.window), [1])
        self.assertEqual(self.days.ids(), [2])


    async def test_late_entry_read_does_not_revive_deleted_day(self) -> None:
        self.reader.put(
            "entry",
            {"id": 10, "dayId": 1, "type": "golf", "day": {"id": 1, "dateISO": "2024-01-10", "weekday": "Wednesday"}},
        )
        gate = self.reader.hold("entry", 10)
        pending = asyncio.ensure_future(self.entry_rec.receive(_event("entry", "update", 10)))
        await asyncio.sleep(0)
        await self.day_rec.receive(_event("day", "delete", 1, old={"id": 1}))
        gate.set()
        self.assertEqual(await pending, OUTCOME_STALE)
        self.assertEqual(self.days.ids(), [2])

    async def test_entry_read_after_day_delete_settles_is_applied(self) -> None:
        await self.day_rec.receive(_event("day", "delete", 1, old={"id": 1}))
        self.reader.put(
            "entry",
            {"id": 10, "dayId": 1, "day": {"id": 1, "dateISO": "2024-01-10", "weekday": "Wednesday"}},
        )
        self.assertEqual(await self.entry_rec.receive(_event("entry", "insert", 10)), OUTCOME_UPSERTED)
        self.assertEqual(self.days.ids(), [1, 2])
        self.assertEqual(len(self.ledger), 0)


class DayVariantReconcilerTest(_ReconcilerCase):
    def setUp(self) -> None:
        super().setUp()
        self.window = DateWindow(dt.date(2024, 1, 10), dt.date(2024, 1, 10))
        self.kinds = {kind: SortedCollection(f"t.{kind}") for kind in ("golf", "event", "reservation")}
        self.day_dates: Dict[int, str] = {1: "2024-01-10"}
        self.entry_rec = DayEntryReconciler(self.kinds, self.day_dates, **self.common())
        self.day_rec = DayOwnerReconciler(self.entry_rec, **self.common())
        self.kinds["golf"].seed([{"id": 10, "dayId": 1, "type": "golf"}])
        self.kinds["reservation"].seed([{"id": 12, "dayId": 1, "type": "reservation"}])

    async def test_kind_change_moves_between_lists(self) -> None:
        self.reader.put(
            "entry",
            {"id": 10, "dayId": 1, "type": "event", "day": {"id": 1, "dateISO": "2024-01-10"}},
        )
        await self.entry_rec.receive(_event("entry", "update", 10))
        self.assertEqual(self.kinds["golf"].ids(), [])
        self.assertEqual(self.kinds["event"].ids(), [10])

    async def test_entry_of_other_day_is_not_added(self) -> None:
        self.reader.put(
            "entry",
            {"id": 30, "dayId": 2, "type": "golf", "day": {"id": 2, "dateISO": "2024-01-11"}},
        )
        await self.entry_rec.receive(_event("entry", "insert", 30))
        self.assertEqual(self.kinds["golf"].ids(), [10])

    async def test_membership_uses_known_day_date_without_relation(self) -> None:
        self.reader.put("entry", {"id": 31, "dayId": 1, "type": "reservation"})
        await self.entry_rec.receive(_event("entry", "insert", 31))
        self.assertEqual(self.kinds["reservation"].ids(), [12, 31])

    async def test_delete_with_known_kind(self) -> None:
        await self.entry_rec.receive(_event("entry", "delete", 12, old={"id": 12, "type": "reservation"}))
        self.assertEqual(self.kinds["reservation"].ids(), [])
        self.assertEqual(self.kinds["golf"].ids(), [10])

    async def test_delete_with_unknown_kind_clears_every_list(self) -> None:
        self.kinds["event"].upsert({"id": 12, "dayId": 1, "type": "event"})
        outcome = await self.entry_rec.receive(_event("entry", "delete", 12, old={"id": 12}))
        self.assertEqual(outcome, OUTCOME_DELETED)
        self.assertEqual(self.kinds["reservation"].ids(), [])
        self.assertEqual(self.kinds["event"].ids(), [])

    async def test_day_delete_cascades_held_entries(self) -> None:
        self.kinds["event"].upsert({"id": 40, "dayId": 2, "type": "event"})
        outcome = await self.day_rec.receive(_event("day", "delete", 1, old={"id": 1}))
        self.assertEqual(outcome, OUTCOME_DELETED)
        self.assertEqual(self.kinds["golf"].ids(), [])
        self.assertEqual(self.kinds["reservation"].ids(), [])
        self.assertEqual(self.kinds["event"].ids(), [40])
        self.assertNotIn(1, self.day_dates)

    async def test_day_date_moved_out_evicts_entries(self) -> None:
        self.reader.put("day", {"id": 1, "dateISO": "2024-01-11", "entries": []})
        self.assertEqual(await self.day_rec.receive(_event("day", "update", 1)), OUTCOME_EVICTED)
        self.assertEqual(self.kinds["golf"].ids(), [])
        self.assertEqual(self.day_dates[1], "2024-01-11")

    async def test_day_moved_into_window_brings_entries(self) -> None:
        self.reader.put(
            "day",
            {
                "id": 3,
                "dateISO": "2024-01-10",
                "entries": [{"id": 50, "dayId": 3, "type": "event"}],
            },
        )
        self.assertEqual(await self.day_rec.receive(_event("day", "update", 3)), OUTCOME_UPSERTED)
        self.assertEqual(self.kinds["event"].ids(), [50])

    async def test_prune_evicts_entries_of_other_dates(self) -> None:
        evicted = self.entry_rec.prune(DateWindow(dt.date(2024, 1, 11), dt.date(2024, 1, 11)))
        self.assertEqual(sorted(evicted), [10, 12])

    async def test_late_entry_read_does_not_return_after_day_delete(self) -> None:
        self.reader.put(
            "entry",
            {"id": 10, "dayId": 1, "type": "golf", "day": {"id": 1, "dateISO": "2024-01-10"}},
        )
        gate = self.reader.hold("entry", 10)
        pending = asyncio.ensure_future(self.entry_rec.receive(_event("entry", "update", 10)))
        await asyncio.sleep(0)
        await self.day_rec.receive(_event("day", "delete", 1, old={"id": 1}))
        gate.set()
        self.assertEqual(await pending, OUTCOME_STALE)
        self.assertEqual(self.kinds["golf"].ids(), [])
        self.assertNotIn(1, self.day_dates)

    async def test_late_entry_read_without_relation_checks_day_id(self) -> None:
        self.reader.put("entry", {"id": 31, "dayId": 1, "type": "event"})
        gate = self.reader.hold("entry", 31)
        pending = asyncio.ensure_future(self.entry_rec.receive(_event("entry", "insert", 31)))
        await asyncio.sleep(0)
        self.reader.put("day", {"id": 1, "dateISO": "2024-01-11", "entries": []})
        await self.day_rec.receive(_event("day", "update", 1))
        gate.set()
        self.assertEqual(await pending, OUTCOME_STALE)
        self.assertEqual(self.kinds["event"].ids(), [])

    async def test_prune_forgets_dates_outside_window(self) -> None:
        self.day_dates[2] = "2024-01-11"
        self.entry_rec.prune(DateWindow(dt.date(2024, 1, 11), dt.date(2024, 1, 11)))
        self.assertEqual(self.day_dates, {2: "2024-01-11"})


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
