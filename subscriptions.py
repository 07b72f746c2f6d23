"""Живі підписки на канали змін (Redis Pub/Sub) з прив'язкою до вікна.

Один канал на тип сутності: `<channel_prefix>:<entity>`. Менеджер закриває
всі попередні підписки перед відкриттям нового набору, тож у кожен момент
існує не більше одного набору каналів на вікно.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Set

from connection_state import (
    DEFAULT_ERROR_MESSAGE,
    STATE_CLOSED,
    STATE_ERROR,
    STATE_IDLE,
    STATE_SUBSCRIBED,
    STATE_SUBSCRIBING,
)
from feed_ingestor import ChangeEvent, FeedIngestor, FeedValidationError
from sync_metrics import PROM_CHANNEL_STATE, PROM_FEED_REJECTED
from window import parse_row_date

log = logging.getLogger("schedule_sync.subscriptions")
if not log.handlers:
    log.addHandler(logging.NullHandler())

EventHandler = Callable[[ChangeEvent], Awaitable[Any]]
StateListener = Callable[[str, str, Optional[str]], None]


class SubscriptionError(RuntimeError):
    """Канал не вдалося відкрити або прочитати."""


class FeedChannel(Protocol):
    name: str

    async def subscribe(self) -> None:
        ...

    async def get_message(self, timeout: float) -> Optional[Any]:
        """Повертає сире тіло повідомлення або None, якщо за timeout нічого не прийшло."""

    async def close(self) -> None:
        ...


class ChangeFeed(Protocol):
    def channel(self, entity: str) -> FeedChannel:
        ...


class RedisFeedChannel:
    """Адаптер одного Pub/Sub-каналу поверх `redis.asyncio`."""

    def __init__(self, client: Any, name: str) -> None:
        self._client = client
        self.name = name
        self._pubsub: Optional[Any] = None

    async def subscribe(self) -> None:
        try:
            pubsub = self._client.pubsub(ignore_subscribe_messages=True)
            await pubsub.subscribe(self.name)
        except Exception as exc:  # noqa: BLE001
            raise SubscriptionError(f"Не вдалося підписатися на {self.name}: {exc}") from exc
        self._pubsub = pubsub

    async def get_message(self, timeout: float) -> Optional[Any]:
        pubsub = self._pubsub
        if pubsub is None:
            raise SubscriptionError(f"Канал {self.name} не підписано.")
        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
        if not message or message.get("type") != "message":
            return None
        return message.get("data")

    async def close(self) -> None:
        pubsub = self._pubsub
        self._pubsub = None
        if pubsub is None:
            return
        try:
            await pubsub.unsubscribe(self.name)
        except Exception as exc:  # noqa: BLE001
            log.debug("Відписка від %s неуспішна: %s", self.name, exc)
        closer = getattr(pubsub, "aclose", None) or getattr(pubsub, "close", None)
        if closer is None:
            return
        try:
            await closer()
        except Exception as exc:  # noqa: BLE001
            log.debug("Закриття pubsub %s неуспішне: %s", self.name, exc)


class RedisChangeFeed:
    def __init__(self, client: Any, *, channel_prefix: str) -> None:
        self._client = client
        self._channel_prefix = channel_prefix.rstrip(":")

    def channel_name(self, entity: str) -> str:
        return f"{self._channel_prefix}:{entity}"

    def channel(self, entity: str) -> FeedChannel:
        return RedisFeedChannel(self._client, self.channel_name(entity))


@dataclass(frozen=True)
class ScopeFilter:
    """Клієнтський фільтр рядків: подія проходить, якщо new або old має `field == value`.

    Значення-дата порівнюється як дата, тож `2024-01-05T00:00:00.000Z` у
    рядку збігається з фільтром `2024-01-05`.
    """

    field: str
    value: Any

    def matches(self, event: ChangeEvent) -> bool:
        target_date = parse_row_date(self.value)
        for image in (event.new, event.old):
            if image is None:
                continue
            candidate = image.get(self.field)
            if target_date is not None:
                if parse_row_date(candidate) == target_date:
                    return True
            elif str(candidate) == str(self.value):
                return True
        return False


@dataclass
class ChannelSpec:
    entity: str
    handler: EventHandler
    scope: Optional[ScopeFilter] = None


@dataclass
class _LiveChannel:
    spec: ChannelSpec
    channel: FeedChannel
    state: str = STATE_IDLE
    error: Optional[str] = None
    closing: bool = False
    reader: Optional["asyncio.Task[None]"] = None
    received: int = 0
    rejected: int = 0
    filtered: int = 0


class SubscriptionManager:
    """Відкриває/закриває набір каналів і передає події обробникам."""

    def __init__(
        self,
        feed: ChangeFeed,
        ingestor: FeedIngestor,
        *,
        poll_timeout_seconds: float = 1.0,
        on_state: Optional[StateListener] = None,
    ) -> None:
        self._feed = feed
        self._ingestor = ingestor
        self._poll_timeout = max(0.01, float(poll_timeout_seconds))
        self._on_state = on_state
        self._channels: List[_LiveChannel] = []
        self._inflight: Set["asyncio.Task[Any]"] = set()
        self._handler_errors = 0

    @property
    def active(self) -> bool:
        return bool(self._channels)

    def states(self) -> Dict[str, str]:
        return {live.spec.entity: live.state for live in self._channels}

    async def open(self, specs: Sequence[ChannelSpec]) -> None:
        """Закриває поточні канали, потім відкриває `specs` у заданому порядку."""

        await self.close_all()
        for spec in specs:
            live = _LiveChannel(spec=spec, channel=self._feed.channel(spec.entity))
            self._channels.append(live)
            self._transition(live, STATE_IDLE)
        for live in list(self._channels):
            await self._start(live)

    async def close_all(self) -> None:
        channels, self._channels = self._channels, []
        for live in channels:
            await self._stop(live)

    async def drain(self) -> None:
        """Чекає завершення всіх point-read, запущених на момент виклику."""

        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _start(self, live: _LiveChannel) -> None:
        self._transition(live, STATE_SUBSCRIBING)
        try:
            await live.channel.subscribe()
        except Exception as exc:  # noqa: BLE001
            log.warning("Підписка на канал %s неуспішна: %s", live.spec.entity, exc)
            self._transition(live, STATE_ERROR, str(exc) or DEFAULT_ERROR_MESSAGE)
            return
        if live.closing:
            return
        self._transition(live, STATE_SUBSCRIBED)
        live.reader = asyncio.create_task(self._read_loop(live), name=f"feed-{live.spec.entity}")

    async def _stop(self, live: _LiveChannel) -> None:
        live.closing = True
        reader = live.reader
        if reader is not None and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        try:
            await live.channel.close()
        except Exception as exc:  # noqa: BLE001
            log.debug("Закриття каналу %s неуспішне: %s", live.spec.entity, exc)
        self._transition(live, STATE_CLOSED)

    async def _read_loop(self, live: _LiveChannel) -> None:
        entity = live.spec.entity
        while not live.closing:
            try:
                raw = await live.channel.get_message(self._poll_timeout)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                if live.closing:
                    break
                log.warning("Помилка читання каналу %s: %s", entity, exc)
                self._transition(live, STATE_ERROR, str(exc) or DEFAULT_ERROR_MESSAGE)
                break
            if raw is None:
                continue
            live.received += 1
            try:
                event = self._ingestor.validate_json_message(entity, raw)
            except FeedValidationError as exc:
                live.rejected += 1
                PROM_FEED_REJECTED.labels(entity=entity, reason=_reject_reason(exc)).inc()
                log.warning("Канал %s: повідомлення відхилено: %s", entity, exc)
                continue
            scope = live.spec.scope
            if scope is not None and not scope.matches(event):
                live.filtered += 1
                continue
            self._dispatch(live, event)

    def _dispatch(self, live: _LiveChannel, event: ChangeEvent) -> None:
        # Обробник фіксує порядковий номер події синхронно, до першого await.
        awaitable = live.spec.handler(event)
        task = asyncio.ensure_future(awaitable)
        self._inflight.add(task)
        task.add_done_callback(self._on_handler_done)

    def _on_handler_done(self, task: "asyncio.Task[Any]") -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._handler_errors += 1
            log.error("Помилка обробки події каналу: %s", exc, exc_info=exc)

    def _transition(self, live: _LiveChannel, state: str, error: Optional[str] = None) -> None:
        live.state = state
        live.error = error if state == STATE_ERROR else None
        PROM_CHANNEL_STATE.labels(channel=live.spec.entity).set(1 if state == STATE_SUBSCRIBED else 0)
        log.debug("Канал %s → %s", live.spec.entity, state)
        if self._on_state is not None:
            self._on_state(live.spec.entity, state, live.error)

    def diagnostics_snapshot(self) -> Dict[str, Any]:
        return {
            "channels": [
                {
                    "entity": live.spec.entity,
                    "state": live.state,
                    "error": live.error,
                    "received": live.received,
                    "rejected": live.rejected,
                    "filtered": live.filtered,
                    "scope": (
                        {"field": live.spec.scope.field, "value": live.spec.scope.value}
                        if live.spec.scope is not None
                        else None
                    ),
                }
                for live in self._channels
            ],
            "inflight": len(self._inflight),
            "handler_errors": self._handler_errors,
        }


def _reject_reason(exc: Exception) -> str:
    text = str(exc).lower()
    if "hmac" in text:
        return "hmac"
    if "json" in text:
        return "json"
    if "таблиц" in text:
        return "table"
    return "contract"
