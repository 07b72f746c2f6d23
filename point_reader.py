"""Point-read: авторитетне читання одного рядка разом із денормалізованими зв'язками.

Рядки лежать у Redis-дзеркалі як JSON:
    <row_prefix>:<entity>:<id>
Індекси дочірніх рядків — Redis-множини:
    <row_prefix>:day:<id>:entries
    <row_prefix>:hotel_booking:<id>:breakfast_configs

Будь-яка помилка транспорту логується і трактується як «не знайдено»:
подію, що спричинила читання, буде відкинуто без повторів.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from schedule_schema import (
    ENTITY_BREAKFAST_CONFIG,
    ENTITY_DAY,
    ENTITY_ENTRY,
    ENTITY_HOTEL_BOOKING,
    ENTITY_POC,
    ENTITY_VENUE_TYPE,
    table_breakdown_total,
)
from sync_metrics import PROM_POINT_READS

log = logging.getLogger("schedule_sync.point_reader")
if not log.handlers:
    log.addHandler(logging.NullHandler())

REL_ENTRIES = "entries"
REL_VENUE_TYPE = "venueType"
REL_POC = "poc"
REL_DAY = "day"
REL_BREAKFAST_CONFIGS = "breakfastConfigurations"
REL_HOTEL_BOOKING = "hotelBooking"

DEFAULT_RELATIONS: Dict[str, Tuple[str, ...]] = {
    ENTITY_DAY: (REL_ENTRIES,),
    ENTITY_ENTRY: (REL_VENUE_TYPE, REL_POC, REL_DAY),
    ENTITY_HOTEL_BOOKING: (REL_BREAKFAST_CONFIGS,),
    ENTITY_BREAKFAST_CONFIG: (REL_HOTEL_BOOKING,),
}

# Довідники, які майже не змінюються і можуть кешуватись окремо від рядків.
_CACHEABLE_ENTITIES = frozenset({ENTITY_VENUE_TYPE, ENTITY_POC})


class PointReader(Protocol):
    async def get(
        self,
        entity: str,
        entity_id: int,
        relations: Optional[Sequence[str]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Повертає рядок або None (не знайдено / помилка читання)."""


def start_time_sort_key(row: Dict[str, Any]) -> Tuple[int, str]:
    """Ключ сортування за `startTime`, значення None — в кінці."""

    value = row.get("startTime")
    if not value:
        return (1, "")
    return (0, str(value))


def normalize_breakfast_config(row: Dict[str, Any]) -> Dict[str, Any]:
    if row.get("totalGuests") is None:
        row["totalGuests"] = table_breakdown_total(row.get("tableBreakdown"))
    return row


class RedisPointReader:
    """Point-read поверх `redis.asyncio` клієнта (decode_responses=True)."""

    def __init__(
        self,
        client: Any,
        *,
        row_prefix: str,
        relation_cache_ttl_seconds: float = 30.0,
    ) -> None:
        self._client = client
        self._row_prefix = row_prefix.rstrip(":")
        self._cache_ttl = max(0.0, float(relation_cache_ttl_seconds))
        self._relation_cache: Dict[Tuple[str, int], Tuple[float, Optional[Dict[str, Any]]]] = {}

    def row_key(self, entity: str, entity_id: int) -> str:
        return f"{self._row_prefix}:{entity}:{entity_id}"

    def index_key(self, entity: str, entity_id: int, child: str) -> str:
        return f"{self._row_prefix}:{entity}:{entity_id}:{child}"

    async def get(
        self,
        entity: str,
        entity_id: int,
        relations: Optional[Sequence[str]] = None,
    ) -> Optional[Dict[str, Any]]:
        wanted = tuple(DEFAULT_RELATIONS.get(entity, ()) if relations is None else relations)
        try:
            row = await self._load_row(entity, entity_id)
            if row is None:
                PROM_POINT_READS.labels(entity=entity, result="not_found").inc()
                log.debug("Point-read %s#%s: рядок не знайдено.", entity, entity_id)
                return None
            await self._attach_relations(entity, entity_id, row, wanted)
        except Exception as exc:  # noqa: BLE001
            PROM_POINT_READS.labels(entity=entity, result="error").inc()
            log.warning("Point-read %s#%s неуспішний: %s", entity, entity_id, exc)
            return None
        PROM_POINT_READS.labels(entity=entity, result="ok").inc()
        return row

    def invalidate_relation_cache(self) -> None:
        self._relation_cache.clear()

    async def _load_row(self, entity: str, entity_id: Any) -> Optional[Dict[str, Any]]:
        raw = await self._client.get(self.row_key(entity, entity_id))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError(f"Рядок {entity}#{entity_id} не є JSON-об'єктом")
        if entity == ENTITY_BREAKFAST_CONFIG:
            normalize_breakfast_config(payload)
        return payload

    async def _load_lookup(self, entity: str, entity_id: Any) -> Optional[Dict[str, Any]]:
        if entity_id is None:
            return None
        key = (entity, int(entity_id))
        now = time.monotonic()
        cached = self._relation_cache.get(key)
        if cached is not None and cached[0] > now:
            return dict(cached[1]) if cached[1] is not None else None
        row = await self._load_row(entity, entity_id)
        if self._cache_ttl > 0 and entity in _CACHEABLE_ENTITIES:
            self._relation_cache[key] = (now + self._cache_ttl, row)
        return dict(row) if row is not None else None

    async def _load_children(self, entity: str, entity_id: int, child_entity: str, index: str) -> List[Dict[str, Any]]:
        members = await self._client.smembers(self.index_key(entity, entity_id, index))
        child_ids = sorted(int(member) for member in members or ())
        children: List[Dict[str, Any]] = []
        for child_id in child_ids:
            child = await self._load_row(child_entity, child_id)
            if child is not None:
                children.append(child)
        return children

    async def _attach_relations(
        self,
        entity: str,
        entity_id: int,
        row: Dict[str, Any],
        relations: Sequence[str],
    ) -> None:
        for relation in relations:
            if relation == REL_ENTRIES and entity == ENTITY_DAY:
                entries = await self._load_children(ENTITY_DAY, entity_id, ENTITY_ENTRY, "entries")
                for entry in entries:
                    await self._attach_relations(ENTITY_ENTRY, entry["id"], entry, (REL_VENUE_TYPE, REL_POC))
                row[REL_ENTRIES] = entries
            elif relation == REL_VENUE_TYPE and entity == ENTITY_ENTRY:
                row[REL_VENUE_TYPE] = await self._load_lookup(ENTITY_VENUE_TYPE, row.get("venueTypeId"))
            elif relation == REL_POC and entity == ENTITY_ENTRY:
                row[REL_POC] = await self._load_lookup(ENTITY_POC, row.get("pocId"))
            elif relation == REL_DAY and entity == ENTITY_ENTRY:
                day_id = row.get("dayId")
                row[REL_DAY] = await self._load_row(ENTITY_DAY, day_id) if day_id is not None else None
            elif relation == REL_BREAKFAST_CONFIGS and entity == ENTITY_HOTEL_BOOKING:
                configs = await self._load_children(
                    ENTITY_HOTEL_BOOKING, entity_id, ENTITY_BREAKFAST_CONFIG, "breakfast_configs"
                )
                row[REL_BREAKFAST_CONFIGS] = sorted(configs, key=start_time_sort_key)
            elif relation == REL_HOTEL_BOOKING and entity == ENTITY_BREAKFAST_CONFIG:
                booking_id = row.get("hotelBookingId")
                row[REL_HOTEL_BOOKING] = (
                    await self._load_row(ENTITY_HOTEL_BOOKING, booking_id) if booking_id is not None else None
                )
            else:
                log.debug("Point-read: зв'язок %s не підтримується для %s.", relation, entity)
