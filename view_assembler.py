"""Складання представлення для презентаційного шару.

Представлення — чисті похідні від колекцій `view_store` та стану з'єднання.
`ViewCache` кешує останнє складене представлення до наступної зміни версії.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, TypeVar

from connection_state import ConnectionState
from view_store import Row, SortedCollection
from window import DateWindow


@dataclass(frozen=True)
class MonthSnapshot:
    """Початковий знімок місячного вікна від зовнішнього завантажувача."""

    days: Sequence[Row] = ()
    hotel_bookings: Sequence[Row] = ()
    breakfast_configs: Sequence[Row] = ()


@dataclass(frozen=True)
class DaySnapshot:
    """Початковий знімок одного дня; `day` — рядок Day цієї дати, якщо він існує."""

    day: Optional[Row] = None
    hotel_bookings: Sequence[Row] = ()
    breakfast_configs: Sequence[Row] = ()
    golf_entries: Sequence[Row] = ()
    event_entries: Sequence[Row] = ()
    reservation_entries: Sequence[Row] = ()


@dataclass(frozen=True)
class MonthScheduleView:
    window: DateWindow
    days: List[Row] = field(default_factory=list)
    hotel_bookings: List[Row] = field(default_factory=list)
    breakfast_configs: List[Row] = field(default_factory=list)
    is_connected: bool = False
    connection_error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "window": self.window.as_dict(),
            "days": self.days,
            "hotelBookings": self.hotel_bookings,
            "breakfastConfigs": self.breakfast_configs,
            "isConnected": self.is_connected,
            "connectionError": self.connection_error,
        }


@dataclass(frozen=True)
class DayScheduleView:
    window: DateWindow
    hotel_bookings: List[Row] = field(default_factory=list)
    breakfast_configs: List[Row] = field(default_factory=list)
    golf_entries: List[Row] = field(default_factory=list)
    event_entries: List[Row] = field(default_factory=list)
    reservation_entries: List[Row] = field(default_factory=list)
    is_connected: bool = False
    connection_error: Optional[str] = None

    @property
    def date(self) -> str:
        return self.window.start_str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "hotelBookings": self.hotel_bookings,
            "breakfastConfigs": self.breakfast_configs,
            "golfEntries": self.golf_entries,
            "eventEntries": self.event_entries,
            "reservationEntries": self.reservation_entries,
            "isConnected": self.is_connected,
            "connectionError": self.connection_error,
        }


def assemble_month_view(
    window: DateWindow,
    *,
    days: SortedCollection,
    hotel_bookings: SortedCollection,
    breakfast_configs: SortedCollection,
    connection: ConnectionState,
) -> MonthScheduleView:
    return MonthScheduleView(
        window=window,
        days=days.rows(),
        hotel_bookings=hotel_bookings.rows(),
        breakfast_configs=breakfast_configs.rows(),
        is_connected=connection.is_connected,
        connection_error=connection.connection_error,
    )


def assemble_day_view(
    window: DateWindow,
    *,
    hotel_bookings: SortedCollection,
    breakfast_configs: SortedCollection,
    entries_by_kind: Dict[str, SortedCollection],
    connection: ConnectionState,
) -> DayScheduleView:
    def _kind(name: str) -> List[Row]:
        collection = entries_by_kind.get(name)
        return collection.rows() if collection is not None else []

    return DayScheduleView(
        window=window,
        hotel_bookings=hotel_bookings.rows(),
        breakfast_configs=breakfast_configs.rows(),
        golf_entries=_kind("golf"),
        event_entries=_kind("event"),
        reservation_entries=_kind("reservation"),
        is_connected=connection.is_connected,
        connection_error=connection.connection_error,
    )


V = TypeVar("V")


class ViewCache(Generic[V]):
    """Мемоізація представлення за лічильником версій."""

    def __init__(self, build: Callable[[], V]) -> None:
        self._build = build
        self._version = 0
        self._built_version = -1
        self._value: Optional[V] = None

    @property
    def version(self) -> int:
        return self._version

    def invalidate(self) -> None:
        self._version += 1

    def get(self) -> V:
        if self._value is None or self._built_version != self._version:
            self._value = self._build()
            self._built_version = self._version
        return self._value
