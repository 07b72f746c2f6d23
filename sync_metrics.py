"""Prometheus-метрики синхронізатора розкладу."""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, start_http_server

log = logging.getLogger("schedule_sync.metrics")
if not log.handlers:
    log.addHandler(logging.NullHandler())

_METRICS_SERVER_STARTED = False

PROM_FEED_EVENTS = Counter(
    "schedule_feed_events_total",
    "Кількість подій каналів змін за результатом реконсиляції",
    ["entity", "event", "result"],
)
PROM_FEED_REJECTED = Counter(
    "schedule_feed_rejected_total",
    "Кількість відкинутих повідомлень каналів змін",
    ["entity", "reason"],
)
PROM_POINT_READS = Counter(
    "schedule_point_reads_total",
    "Кількість point-read запитів за результатом",
    ["entity", "result"],
)
PROM_CHANNEL_STATE = Gauge(
    "schedule_channel_state",
    "Стан каналу: 1=subscribed, 0=інше",
    ["channel"],
)
PROM_COLLECTION_SIZE = Gauge(
    "schedule_collection_size",
    "Кількість елементів у локальній колекції",
    ["collection"],
)


def ensure_metrics_server(port: int) -> None:
    global _METRICS_SERVER_STARTED
    if _METRICS_SERVER_STARTED:
        return
    start_http_server(port)
    _METRICS_SERVER_STARTED = True
    log.info("Prometheus-метрики доступні на порту %s.", port)
