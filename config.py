"""Конфігураційні структури та завантаження ENV для синхронізатора розкладу."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

CHANNEL_PREFIX_DEFAULT = "schedule:changes"  # Префікс каналів змін: <prefix>:<entity>
ROW_PREFIX_DEFAULT = "schedule:rows"  # Префікс ключів рядків у Redis-дзеркалі
TIMEZONE_DEFAULT = "Europe/Brussels"  # Референсна таймзона для «сьогодні»
METRICS_DEFAULT_PORT = 9210
POLL_TIMEOUT_DEFAULT_SECONDS = 1.0
RELATION_CACHE_TTL_DEFAULT_SECONDS = 30.0  # TTL кешу довідників venue_type/poc
RUNTIME_SETTINGS_FILE = Path("config/runtime_settings.json")

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _load_json_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:  # pragma: no cover - конфіг краще падати одразу
        raise ValueError(f"Некоректний JSON у {path}: {exc}") from exc


def _get_int_env(name: str, default: int, *, min_value: int = 1) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(min_value, value)


def _get_bool_env(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_str_env(name: str) -> Optional[str]:
    raw = os.environ.get(name)
    if raw is None:
        return None
    text = raw.strip()
    return text or None


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "y", "on"}:
            return True
        if lowered in {"0", "false", "no", "n", "off"}:
            return False
    return default


def _coerce_float(value: Any, default: float, *, min_value: float = 0.1) -> float:
    if value is None:
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return max(min_value, parsed)


def _coerce_str(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


@dataclass(frozen=True)
class RedisSettings:
    host: str
    port: int
    db: int


@dataclass(frozen=True)
class FeedSettings:
    channel_prefix: str
    row_prefix: str
    poll_timeout_seconds: float
    hmac_secret: Optional[str]
    hmac_algo: str
    relation_cache_ttl_seconds: float = RELATION_CACHE_TTL_DEFAULT_SECONDS

    def channel_for(self, entity: str) -> str:
        return f"{self.channel_prefix}:{entity}"


@dataclass(frozen=True)
class HealthSettings:
    secondary_errors_disconnect: bool


@dataclass(frozen=True)
class ObservabilitySettings:
    metrics_enabled: bool
    metrics_port: int
    log_level: str


@dataclass(frozen=True)
class ScheduleSyncConfig:
    redis: RedisSettings
    feed: FeedSettings
    health: HealthSettings
    observability: ObservabilitySettings
    timezone: str


def _load_runtime_settings() -> Dict[str, Any]:
    return _load_json_file(RUNTIME_SETTINGS_FILE)


def _section(runtime_settings: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    raw = runtime_settings.get(name)
    return raw if isinstance(raw, Mapping) else {}


def load_config() -> ScheduleSyncConfig:
    """Зчитує налаштування з ENV та runtime_settings.json і повертає агреговану конфігурацію.

    ENV має пріоритет над файлом; некоректні значення падають у дефолти.
    """

    runtime_settings = _load_runtime_settings()
    feed_cfg = _section(runtime_settings, "feed")
    health_cfg = _section(runtime_settings, "health")

    redis_settings = RedisSettings(
        host=_get_str_env("SCHEDULE_REDIS_HOST") or "127.0.0.1",
        port=_get_int_env("SCHEDULE_REDIS_PORT", 6379, min_value=1),
        db=_get_int_env("SCHEDULE_REDIS_DB", 0, min_value=0),
    )

    hmac_secret = _get_str_env("SCHEDULE_HMAC_SECRET")
    hmac_algo = (_get_str_env("SCHEDULE_HMAC_ALGO") or "sha256").lower()

    feed_settings = FeedSettings(
        channel_prefix=_get_str_env("SCHEDULE_CHANNEL_PREFIX")
        or _coerce_str(feed_cfg.get("channel_prefix"), CHANNEL_PREFIX_DEFAULT),
        row_prefix=_get_str_env("SCHEDULE_ROW_PREFIX")
        or _coerce_str(feed_cfg.get("row_prefix"), ROW_PREFIX_DEFAULT),
        poll_timeout_seconds=_coerce_float(
            feed_cfg.get("poll_timeout_seconds"),
            POLL_TIMEOUT_DEFAULT_SECONDS,
            min_value=0.1,
        ),
        hmac_secret=hmac_secret,
        hmac_algo=hmac_algo,
        relation_cache_ttl_seconds=_coerce_float(
            feed_cfg.get("relation_cache_ttl_seconds"),
            RELATION_CACHE_TTL_DEFAULT_SECONDS,
            min_value=0.0,
        ),
    )

    health_settings = HealthSettings(
        secondary_errors_disconnect=_coerce_bool(
            health_cfg.get("secondary_errors_disconnect"), False
        ),
    )

    log_level = (_get_str_env("SCHEDULE_LOG_LEVEL") or "INFO").upper()
    if log_level not in _LOG_LEVELS:
        logging.getLogger("schedule_sync").warning(
            "Невідомий SCHEDULE_LOG_LEVEL=%s, використовуємо INFO.", log_level
        )
        log_level = "INFO"

    observability = ObservabilitySettings(
        metrics_enabled=_get_bool_env("SCHEDULE_METRICS_ENABLED", True),
        metrics_port=_get_int_env(
            "SCHEDULE_METRICS_PORT",
            METRICS_DEFAULT_PORT,
            min_value=1024,
        ),
        log_level=log_level,
    )

    return ScheduleSyncConfig(
        redis=redis_settings,
        feed=feed_settings,
        health=health_settings,
        observability=observability,
        timezone=_get_str_env("SCHEDULE_TIMEZONE") or TIMEZONE_DEFAULT,
    )
