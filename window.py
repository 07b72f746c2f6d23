"""Активне вікно дат та предикати належності сутностей до нього.

Вікно — закритий інтервал цілих днів [start, end] у референсній таймзоні
(за замовчуванням Europe/Brussels). Дві форми селектора:
    • місяць `YYYY-MM` — увесь календарний місяць, початок обрізається до «сьогодні»;
    • день `YYYY-MM-DD` — рівно один день, без обрізання.

Усі три види перевірки належності (точкова дата, напіввідкритий діапазон,
дата батьківського Day) зведено до одного `Span` + `DateWindow.admits`.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Dict, NamedTuple, Optional
from zoneinfo import ZoneInfo

log = logging.getLogger("schedule_sync.window")
if not log.handlers:
    log.addHandler(logging.NullHandler())

DEFAULT_TIMEZONE = "Europe/Brussels"

_TZ_CACHE: Dict[str, ZoneInfo] = {}
_ONE_DAY = dt.timedelta(days=1)


class WindowComputeError(ValueError):
    """Некоректний селектор періоду. Назовні не виходить: вікно падає у дефолт."""


class Span(NamedTuple):
    """Напіввідкритий інтервал дат [start, end_exclusive)."""

    start: dt.date
    end_exclusive: dt.date

    @classmethod
    def point(cls, day: dt.date) -> "Span":
        return cls(day, day + _ONE_DAY)

    @classmethod
    def half_open(cls, start: dt.date, end_exclusive: dt.date) -> "Span":
        return cls(start, end_exclusive)


@dataclass(frozen=True)
class DateWindow:
    start: dt.date
    end: dt.date

    @property
    def start_str(self) -> str:
        return self.start.isoformat()

    @property
    def end_str(self) -> str:
        return self.end.isoformat()

    @property
    def key(self) -> tuple[str, str]:
        """Ідентичність вікна: порівнюємо рядкові межі, а не об'єкти."""
        return (self.start_str, self.end_str)

    @property
    def is_empty(self) -> bool:
        return self.start > self.end

    def admits(self, span: Optional[Span]) -> bool:
        # Перетин [start, end+1) з [span.start, span.end_exclusive).
        if span is None or self.is_empty:
            return False
        return span.start < self.end + _ONE_DAY and span.end_exclusive > self.start

    def contains_date(self, value: Any) -> bool:
        day = parse_row_date(value)
        return day is not None and self.admits(Span.point(day))

    def overlaps_range(self, check_in: Any, check_out: Any) -> bool:
        start = parse_row_date(check_in)
        end = parse_row_date(check_out)
        if start is None or end is None:
            return False
        return self.admits(Span.half_open(start, end))

    def as_dict(self) -> Dict[str, str]:
        return {"start": self.start_str, "end": self.end_str}


def _get_zoneinfo(label: str) -> ZoneInfo:
    cached = _TZ_CACHE.get(label)
    if cached:
        return cached
    tz = ZoneInfo(label)
    _TZ_CACHE[label] = tz
    return tz


def today_in_zone(tz_label: str = DEFAULT_TIMEZONE, *, now: Optional[dt.datetime] = None) -> dt.date:
    """Поточна календарна дата у референсній таймзоні."""

    tz = _get_zoneinfo(tz_label or DEFAULT_TIMEZONE)
    current = now or dt.datetime.now(dt.timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=dt.timezone.utc)
    return current.astimezone(tz).date()


def parse_row_date(value: Any) -> Optional[dt.date]:
    """Дата з рядка БД: `2024-01-05` або ISO-timestamp `2024-01-05T00:00:00.000Z`."""

    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if not isinstance(value, str):
        return None
    raw = value.strip()[:10]
    try:
        return dt.datetime.strptime(raw, "%Y-%m-%d").date()
    except ValueError:
        return None


def month_bounds(year: int, month: int) -> tuple[dt.date, dt.date]:
    first_day = dt.date(year, month, 1)
    next_month = month + 1
    next_year = year
    if next_month > 12:
        next_month = 1
        next_year += 1
    last_day = dt.date(next_year, next_month, 1) - _ONE_DAY
    return first_day, last_day


def _parse_month_selector(selector: str) -> tuple[int, int]:
    parts = selector.strip().split("-")
    if len(parts) != 2:
        raise WindowComputeError(f"Некоректний селектор місяця: {selector!r}")
    try:
        year, month = int(parts[0]), int(parts[1])
    except ValueError as exc:
        raise WindowComputeError(f"Некоректний селектор місяця: {selector!r}") from exc
    if year < 1 or not 1 <= month <= 12:
        raise WindowComputeError(f"Місяць поза діапазоном: {selector!r}")
    return year, month


def month_window(selector: Optional[str], *, today: dt.date) -> DateWindow:
    """Вікно місяця з початком, обрізаним до `max(monthStart, today)`.

    Відсутній або некоректний селектор означає місяць, що містить `today`.
    """

    year, month = today.year, today.month
    if selector:
        try:
            year, month = _parse_month_selector(selector)
        except WindowComputeError as exc:
            log.debug("Вікно: %s; використовуємо поточний місяць.", exc)
            year, month = today.year, today.month
    first_day, last_day = month_bounds(year, month)
    return DateWindow(start=max(first_day, today), end=last_day)


def day_window(selector: Optional[str], *, today: dt.date) -> DateWindow:
    """Вікно одного дня; минулі дні не обрізаються."""

    day = today
    if selector:
        parsed = parse_row_date(selector) if len(selector.strip()) == 10 else None
        if parsed is None:
            log.debug("Вікно: некоректний селектор дня %r; використовуємо сьогодні.", selector)
        else:
            day = parsed
    return DateWindow(start=day, end=day)
