"""Оркестратор синхронізації розкладу: вікно → підписки → реконсиляція → представлення.

Два варіанти вікна:
    • `MonthScheduleSync` — місяць `YYYY-MM` (дні з записами, бронювання, сніданки);
    • `DayScheduleSync` — один день `YYYY-MM-DD` (записи за видом, бронювання, сніданки).

Запуск як CLI:
    python -m schedule_sync --month 2025-03 --seconds 60
    python -m schedule_sync --date 2025-03-14
"""

from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import logging
from collections import Counter
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import redis.asyncio as redis_async
from rich import box
from rich.console import Console
from rich.live import Live
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from config import RedisSettings, ScheduleSyncConfig, load_config
from connection_state import ConnectionStateTracker
from feed_ingestor import ChangeEvent, FeedIngestor, IngestorConfig
from point_reader import PointReader, RedisPointReader
from reconciler import (
    BreakfastConfigReconciler,
    DayEntryReconciler,
    DayOwnerReconciler,
    EventReconciler,
    HotelBookingReconciler,
    MonthDayReconciler,
    MonthEntryReconciler,
)
from schedule_schema import (
    ENTITY_BREAKFAST_CONFIG,
    ENTITY_DAY,
    ENTITY_ENTRY,
    ENTITY_HOTEL_BOOKING,
    ENTRY_KINDS,
)
from subscriptions import ChangeFeed, ChannelSpec, RedisChangeFeed, ScopeFilter, SubscriptionManager
from sync_metrics import ensure_metrics_server
from view_assembler import (
    DayScheduleView,
    DaySnapshot,
    MonthScheduleView,
    MonthSnapshot,
    ViewCache,
    assemble_day_view,
    assemble_month_view,
)
from view_store import SequenceLedger, SortedCollection, breakfast_sort_key, date_field_sort_key
from window import DEFAULT_TIMEZONE, DateWindow, day_window, month_window, today_in_zone

log = logging.getLogger("schedule_sync")

_LOGGING_CONFIGURED = False

ViewListener = Callable[[Any], None]


def setup_logging(level: Union[int, str] = logging.INFO) -> None:
    """Вішаємо RichHandler на логер `schedule_sync` (один раз за процес)."""

    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    target_logger = logging.getLogger("schedule_sync")
    for handler in target_logger.handlers:
        if isinstance(handler, RichHandler):
            _LOGGING_CONFIGURED = True
            return

    handler = RichHandler(
        console=Console(stderr=True),
        rich_tracebacks=True,
        show_path=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    target_logger.setLevel(level)
    target_logger.addHandler(handler)
    target_logger.propagate = False
    _LOGGING_CONFIGURED = True


def create_redis_client(settings: RedisSettings) -> Any:
    return redis_async.Redis(
        host=settings.host,
        port=settings.port,
        db=settings.db,
        decode_responses=True,
    )


class _ScheduleSyncBase:
    """Спільний життєвий цикл: активація вікна, канали, стан з'єднання, діагностика."""

    variant = ""

    def __init__(
        self,
        *,
        feed: ChangeFeed,
        reader: PointReader,
        ingestor: Optional[FeedIngestor] = None,
        timezone: str = DEFAULT_TIMEZONE,
        today_supplier: Optional[Callable[[], dt.date]] = None,
        poll_timeout_seconds: float = 1.0,
        secondary_errors_disconnect: bool = False,
    ) -> None:
        self._reader = reader
        self._timezone = timezone
        self._today_supplier = today_supplier
        self._ledger = SequenceLedger()
        self._tracker = ConnectionStateTracker(secondary_errors_disconnect=secondary_errors_disconnect)
        self._subscriptions = SubscriptionManager(
            feed,
            ingestor or FeedIngestor(IngestorConfig()),
            poll_timeout_seconds=poll_timeout_seconds,
            on_state=self._on_channel_state,
        )
        self._window: Optional[DateWindow] = None
        self._view_cache: ViewCache[Any] = ViewCache(self._build_view)
        self._listeners: List[ViewListener] = []
        self._outcomes: Counter = Counter()

    # ── Вікно ──

    def _today(self) -> dt.date:
        if self._today_supplier is not None:
            return self._today_supplier()
        return today_in_zone(self._timezone)

    def compute_window(self, selector: Optional[str]) -> DateWindow:
        raise NotImplementedError

    @property
    def window(self) -> Optional[DateWindow]:
        return self._window

    def _current_window(self) -> DateWindow:
        if self._window is None:
            self._window = self.compute_window(None)
        return self._window

    async def activate(self, selector: Optional[str] = None, snapshot: Any = None) -> DateWindow:
        """Перераховує вікно; при зміні меж перевідкриває канали.

        Знімок (якщо передано) засіває колекції до відкриття нових каналів.
        """

        window = self.compute_window(selector)
        changed = self._window is None or window.key != self._window.key
        if changed:
            await self._subscriptions.close_all()
            self._tracker.reset()
            self._window = window
            evicted = self._prune(window)
            log.info(
                "Вікно %s: %s..%s (виселено %d).",
                self.variant,
                window.start_str,
                window.end_str,
                evicted,
            )
        if snapshot is not None:
            self.seed(snapshot)
        if changed:
            await self._subscriptions.open(self._channel_specs(window))
        self._touch()
        return window

    def _prune(self, window: DateWindow) -> int:
        return sum(len(reconciler.prune(window)) for reconciler in self._reconcilers())

    # ── Життєвий цикл ──

    async def close(self) -> None:
        await self._subscriptions.close_all()
        self._tracker.reset()
        self._touch()

    async def drain(self) -> None:
        await self._subscriptions.drain()

    async def __aenter__(self) -> "_ScheduleSyncBase":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def add_listener(self, listener: ViewListener) -> None:
        self._listeners.append(listener)

    # ── Представлення ──

    def view(self) -> Any:
        return self._view_cache.get()

    def _touch(self) -> None:
        self._view_cache.invalidate()
        if not self._listeners:
            return
        current = self.view()
        for listener in list(self._listeners):
            try:
                listener(current)
            except Exception:  # noqa: BLE001
                log.exception("Помилка слухача представлення %s.", self.variant)

    def _on_change(self, entity: str) -> None:
        self._touch()

    def _on_channel_state(self, channel: str, state: str, error: Optional[str]) -> None:
        log.info("Канал %s/%s → %s%s", self.variant, channel, state, f" ({error})" if error else "")
        self._tracker.on_transition(channel, state, error)
        self._touch()

    def _handler(self, reconciler: EventReconciler) -> Callable[[ChangeEvent], Awaitable[str]]:
        def _handle(event: ChangeEvent) -> Awaitable[str]:
            return self._count(reconciler.receive(event))

        return _handle

    async def _count(self, pending: Awaitable[str]) -> str:
        outcome = await pending
        self._outcomes[outcome] += 1
        return outcome

    # ── Хуки варіантів ──

    def seed(self, snapshot: Any) -> None:
        raise NotImplementedError

    def collections(self) -> Dict[str, SortedCollection]:
        raise NotImplementedError

    def _reconcilers(self) -> Sequence[EventReconciler]:
        raise NotImplementedError

    def _channel_specs(self, window: DateWindow) -> List[ChannelSpec]:
        raise NotImplementedError

    def _build_view(self) -> Any:
        raise NotImplementedError

    def diagnostics_snapshot(self) -> Dict[str, Any]:
        window = self._window
        return {
            "variant": self.variant,
            "window": window.as_dict() if window is not None else None,
            "connection": self._tracker.state.as_dict(),
            "channels": self._tracker.channel_states(),
            "subscriptions": self._subscriptions.diagnostics_snapshot(),
            "collections": {name: len(coll) for name, coll in self.collections().items()},
            "events": dict(self._outcomes),
        }


class MonthScheduleSync(_ScheduleSyncBase):
    variant = "month"

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.days = SortedCollection("month.days", date_field_sort_key("dateISO"))
        self.hotel_bookings = SortedCollection("month.hotel_bookings", date_field_sort_key("checkInDate"))
        self.breakfast_configs = SortedCollection("month.breakfast_configs", breakfast_sort_key)
        common: Dict[str, Any] = dict(
            reader=self._reader,
            ledger=self._ledger,
            window_supplier=self._current_window,
            on_change=self._on_change,
        )
        self._day_reconciler = MonthDayReconciler(self.days, **common)
        self._entry_reconciler = MonthEntryReconciler(self.days, **common)
        self._booking_reconciler = HotelBookingReconciler(self.hotel_bookings, **common)
        self._config_reconciler = BreakfastConfigReconciler(
            self.breakfast_configs, bookings=self.hotel_bookings, **common
        )

    def compute_window(self, selector: Optional[str]) -> DateWindow:
        return month_window(selector, today=self._today())

    def seed(self, snapshot: MonthSnapshot) -> None:
        self.days.seed(snapshot.days)
        self.hotel_bookings.seed(snapshot.hotel_bookings)
        self.breakfast_configs.seed(snapshot.breakfast_configs)
        log.debug(
            "Знімок місяця: днів=%d, бронювань=%d, сніданків=%d",
            len(self.days),
            len(self.hotel_bookings),
            len(self.breakfast_configs),
        )
        self._touch()

    def collections(self) -> Dict[str, SortedCollection]:
        return {
            "days": self.days,
            "hotelBookings": self.hotel_bookings,
            "breakfastConfigs": self.breakfast_configs,
        }

    def _reconcilers(self) -> Sequence[EventReconciler]:
        return (
            self._day_reconciler,
            self._entry_reconciler,
            self._booking_reconciler,
            self._config_reconciler,
        )

    def _channel_specs(self, window: DateWindow) -> List[ChannelSpec]:
        return [
            ChannelSpec(ENTITY_DAY, self._handler(self._day_reconciler)),
            ChannelSpec(ENTITY_ENTRY, self._handler(self._entry_reconciler)),
            ChannelSpec(ENTITY_HOTEL_BOOKING, self._handler(self._booking_reconciler)),
            ChannelSpec(ENTITY_BREAKFAST_CONFIG, self._handler(self._config_reconciler)),
        ]

    def _build_view(self) -> MonthScheduleView:
        return assemble_month_view(
            self._current_window(),
            days=self.days,
            hotel_bookings=self.hotel_bookings,
            breakfast_configs=self.breakfast_configs,
            connection=self._tracker.state,
        )


class DayScheduleSync(_ScheduleSyncBase):
    variant = "day"

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.hotel_bookings = SortedCollection("day.hotel_bookings", date_field_sort_key("checkInDate"))
        self.breakfast_configs = SortedCollection("day.breakfast_configs", breakfast_sort_key)
        self.entries_by_kind: Dict[str, SortedCollection] = {
            kind: SortedCollection(f"day.{kind}_entries") for kind in ENTRY_KINDS
        }
        self.day_dates: Dict[int, str] = {}
        common: Dict[str, Any] = dict(
            reader=self._reader,
            ledger=self._ledger,
            window_supplier=self._current_window,
            on_change=self._on_change,
        )
        self._entry_reconciler = DayEntryReconciler(self.entries_by_kind, self.day_dates, **common)
        self._day_reconciler = DayOwnerReconciler(self._entry_reconciler, **common)
        self._booking_reconciler = HotelBookingReconciler(self.hotel_bookings, **common)
        self._config_reconciler = BreakfastConfigReconciler(
            self.breakfast_configs, bookings=self.hotel_bookings, **common
        )

    def compute_window(self, selector: Optional[str]) -> DateWindow:
        return day_window(selector, today=self._today())

    def seed(self, snapshot: DaySnapshot) -> None:
        self.day_dates.clear()
        if snapshot.day is not None and snapshot.day.get("id") is not None:
            self.day_dates[int(snapshot.day["id"])] = str(snapshot.day.get("dateISO") or "")
        self.hotel_bookings.seed(snapshot.hotel_bookings)
        self.breakfast_configs.seed(snapshot.breakfast_configs)
        for kind, collection in self.entries_by_kind.items():
            collection.seed(getattr(snapshot, f"{kind}_entries", ()))
        self._touch()

    def collections(self) -> Dict[str, SortedCollection]:
        named: Dict[str, SortedCollection] = {
            "hotelBookings": self.hotel_bookings,
            "breakfastConfigs": self.breakfast_configs,
        }
        for kind, collection in self.entries_by_kind.items():
            named[f"{kind}Entries"] = collection
        return named

    def _reconcilers(self) -> Sequence[EventReconciler]:
        return (
            self._entry_reconciler,
            self._day_reconciler,
            self._booking_reconciler,
            self._config_reconciler,
        )

    def _channel_specs(self, window: DateWindow) -> List[ChannelSpec]:
        return [
            ChannelSpec(ENTITY_ENTRY, self._handler(self._entry_reconciler)),
            ChannelSpec(ENTITY_DAY, self._handler(self._day_reconciler)),
            ChannelSpec(ENTITY_HOTEL_BOOKING, self._handler(self._booking_reconciler)),
            ChannelSpec(
                ENTITY_BREAKFAST_CONFIG,
                self._handler(self._config_reconciler),
                scope=ScopeFilter("breakfastDate", window.start_str),
            ),
        ]

    def _build_view(self) -> DayScheduleView:
        return assemble_day_view(
            self._current_window(),
            hotel_bookings=self.hotel_bookings,
            breakfast_configs=self.breakfast_configs,
            entries_by_kind=self.entries_by_kind,
            connection=self._tracker.state,
        )


# ── CLI ──


def render_status_table(sync: _ScheduleSyncBase) -> Table:
    snapshot = sync.diagnostics_snapshot()
    window = snapshot.get("window") or {}
    connection = snapshot.get("connection") or {}
    title = f"schedule_sync · {snapshot.get('variant')} · {window.get('start', '—')}..{window.get('end', '—')}"
    table = Table(title=title, box=box.SIMPLE_HEAVY, expand=True)
    table.add_column("Key", style="bold", overflow="fold")
    table.add_column("Value", overflow="fold")

    connected = bool(connection.get("isConnected"))
    table.add_row(
        "isConnected",
        Text("yes" if connected else "no", style=f"bold {'green' if connected else 'red'}"),
    )
    table.add_row("connectionError", str(connection.get("connectionError") or "—"))
    for channel, state in (snapshot.get("channels") or {}).items():
        table.add_row(f"channel:{channel}", state)
    for name, size in (snapshot.get("collections") or {}).items():
        table.add_row(name, str(size))
    events = snapshot.get("events") or {}
    table.add_row("events", ", ".join(f"{key}={value}" for key, value in sorted(events.items())) or "—")
    return table


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Жива синхронізація розкладу з каналів змін Redis")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--month", help="Місяць YYYY-MM (за замовчуванням поточний)")
    group.add_argument("--date", help="День YYYY-MM-DD (денний варіант)")
    parser.add_argument("--seconds", type=float, default=0.0, help="Скільки секунд працювати (0 = до Ctrl+C)")
    return parser


async def run_cli(args: argparse.Namespace, config: ScheduleSyncConfig) -> int:
    client = create_redis_client(config.redis)
    try:
        await client.ping()
    except Exception as exc:  # noqa: BLE001
        log.error("Redis недоступний (%s:%s): %s", config.redis.host, config.redis.port, exc)
        await client.aclose()
        return 1

    feed = RedisChangeFeed(client, channel_prefix=config.feed.channel_prefix)
    reader = RedisPointReader(
        client,
        row_prefix=config.feed.row_prefix,
        relation_cache_ttl_seconds=config.feed.relation_cache_ttl_seconds,
    )
    ingestor = FeedIngestor(
        IngestorConfig(hmac_secret=config.feed.hmac_secret, hmac_algo=config.feed.hmac_algo)
    )
    options: Dict[str, Any] = dict(
        feed=feed,
        reader=reader,
        ingestor=ingestor,
        timezone=config.timezone,
        poll_timeout_seconds=config.feed.poll_timeout_seconds,
        secondary_errors_disconnect=config.health.secondary_errors_disconnect,
    )
    sync: _ScheduleSyncBase
    if args.date:
        sync = DayScheduleSync(**options)
        selector, snapshot = args.date, DaySnapshot()
    else:
        sync = MonthScheduleSync(**options)
        selector, snapshot = args.month, MonthSnapshot()

    loop = asyncio.get_running_loop()
    try:
        await sync.activate(selector, snapshot)
        deadline = loop.time() + args.seconds if args.seconds > 0 else None
        with Live(render_status_table(sync), console=Console(), refresh_per_second=4) as live:
            while deadline is None or loop.time() < deadline:
                await asyncio.sleep(0.5)
                live.update(render_status_table(sync))
    finally:
        await sync.close()
        await client.aclose()
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    setup_logging()
    try:
        config = load_config()
    except ValueError as exc:
        log.error("%s", exc)
        return 2
    log.setLevel(config.observability.log_level)
    if config.observability.metrics_enabled:
        ensure_metrics_server(config.observability.metrics_port)
    try:
        return asyncio.run(run_cli(args, config))
    except KeyboardInterrupt:
        log.info("Зупинено користувачем.")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
