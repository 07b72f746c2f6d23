"""Спільні TypedDict-схеми та константи для синхронізатора розкладу.

Модуль описує «контракти» рядків (як їх повертає point-read із Redis-дзеркала)
та JSON-повідомлень у каналах змін `schedule:changes:<entity>`.
TypedDict-и тут не впливають на runtime, але фіксують очікувані поля/типи.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

from typing_extensions import TypedDict

ENTITY_DAY = "day"
ENTITY_ENTRY = "entry"
ENTITY_HOTEL_BOOKING = "hotel_booking"
ENTITY_BREAKFAST_CONFIG = "breakfast_config"
ENTITY_VENUE_TYPE = "venue_type"
ENTITY_POC = "poc"

FEED_ENTITIES: tuple[str, ...] = (
    ENTITY_DAY,
    ENTITY_ENTRY,
    ENTITY_HOTEL_BOOKING,
    ENTITY_BREAKFAST_CONFIG,
)

# Назви таблиць у джерелі істини → внутрішні типи сутностей.
TABLE_TO_ENTITY: Dict[str, str] = {
    "Day": ENTITY_DAY,
    "Entry": ENTITY_ENTRY,
    "HotelBooking": ENTITY_HOTEL_BOOKING,
    "BreakfastConfiguration": ENTITY_BREAKFAST_CONFIG,
}

EVENT_INSERT = "insert"
EVENT_UPDATE = "update"
EVENT_DELETE = "delete"
EVENT_TYPES = frozenset({EVENT_INSERT, EVENT_UPDATE, EVENT_DELETE})

ENTRY_KIND_GOLF = "golf"
ENTRY_KIND_EVENT = "event"
ENTRY_KIND_RESERVATION = "reservation"
ENTRY_KINDS: tuple[str, ...] = (ENTRY_KIND_GOLF, ENTRY_KIND_EVENT, ENTRY_KIND_RESERVATION)


class VenueTypeRow(TypedDict, total=False):
    id: int
    name: str


class PointOfContactRow(TypedDict, total=False):
    id: int
    name: str
    role: Optional[str]
    phoneNumber: Optional[str]
    email: Optional[str]


class EntryRow(TypedDict, total=False):
    """Запис програми дня (golf/event/reservation).

    `venueType`, `poc` і `day` — денормалізовані зв'язки, яких немає у payload
    каналу змін; їх додає лише point-read.
    """

    id: int
    dayId: int
    type: str
    title: Optional[str]
    time: Optional[str]
    startTime: Optional[str]
    endTime: Optional[str]
    location: Optional[str]
    capacity: Optional[int]
    guestName: Optional[str]
    guestCount: Optional[int]
    notes: Optional[str]
    pocId: Optional[int]
    venueTypeId: Optional[int]
    venueType: Optional[VenueTypeRow]
    poc: Optional[PointOfContactRow]
    day: Optional["DayRow"]


class DayRow(TypedDict, total=False):
    id: int
    dateISO: str
    weekday: str
    entries: List[EntryRow]


class BreakfastConfigRow(TypedDict, total=False):
    id: int
    hotelBookingId: int
    breakfastDate: str
    tableBreakdown: List[int]
    totalGuests: int
    startTime: Optional[str]
    notes: Optional[str]
    hotelBooking: Optional["HotelBookingRow"]


class HotelBookingRow(TypedDict, total=False):
    """Бронювання з напіввідкритим інтервалом [checkInDate, checkOutDate)."""

    id: int
    guestName: Optional[str]
    roomNumber: Optional[str]
    guestCount: Optional[int]
    checkInDate: str
    checkOutDate: str
    notes: Optional[str]
    isTourOperator: Optional[bool]
    breakfastConfigurations: List[BreakfastConfigRow]


class ChangeMessagePayload(TypedDict, total=False):
    """Повідомлення каналу `schedule:changes:<entity>`."""

    type: str
    eventType: str
    table: str
    new: Optional[Dict[str, Any]]
    old: Optional[Dict[str, Any]]
    # Опційні поля:
    commit_ts: Any
    sig: str


CHANGE_ROOT_OPTIONAL_KEYS = frozenset({"type", "eventType", "table", "new", "old", "commit_ts", "sig"})


def validate_change_message_contract(payload: Mapping[str, Any]) -> None:
    """Runtime-валідація контракту повідомлення каналу змін.

    - Не дозволяє зайві root-поля (їх потрібно явно додати у schedule_schema.py).
    - Вимагає `type` або `eventType` та хоча б один з образів `new`/`old`.
    """

    if not isinstance(payload, Mapping):
        raise ValueError("Change payload має бути mapping (dict)")

    root_keys = set(payload.keys())
    extra = root_keys - CHANGE_ROOT_OPTIONAL_KEYS
    if extra:
        raise ValueError(f"Change payload: зайві root-поля (не в контракті): {sorted(extra)}")

    raw_type = payload.get("type", payload.get("eventType"))
    if not isinstance(raw_type, str) or not raw_type.strip():
        raise ValueError("Change payload: 'type' має бути непорожнім рядком")

    for key in ("new", "old"):
        image = payload.get(key)
        if image is not None and not isinstance(image, Mapping):
            raise ValueError(f"Change payload: '{key}' має бути mapping (dict) або null")

    if payload.get("new") is None and payload.get("old") is None:
        raise ValueError("Change payload: потрібен хоча б один з образів 'new'/'old'")

    table = payload.get("table")
    if table is not None and (not isinstance(table, str) or not table):
        raise ValueError("Change payload: 'table' має бути непорожнім рядком")

    sig = payload.get("sig")
    if sig is not None and not isinstance(sig, str):
        raise ValueError("Change payload: 'sig' має бути рядком")


def table_breakdown_total(breakdown: Any) -> int:
    """Сума місць за столами; некоректні елементи ігноруються."""

    if not isinstance(breakdown, Sequence) or isinstance(breakdown, (str, bytes)):
        return 0
    total = 0
    for item in breakdown:
        if isinstance(item, bool):
            continue
        if isinstance(item, (int, float)):
            total += int(item)
    return total
