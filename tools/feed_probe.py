"""Перевірка каналів змін розкладу без запуску синхронізації.

Підписується на канали сутностей, проганяє кожне повідомлення через
``FeedIngestor`` і показує, скільки подій пройшло валідацію, а скільки
було б відкинуто. Нічого не публікує.

Приклад:
  python -m tools.feed_probe --seconds 8 --entity entry --entity day
"""

from __future__ import annotations

import argparse
import json
import time
from typing import Any, Dict, List, Optional, Sequence

import redis
from rich import box
from rich.console import Console
from rich.table import Table

from config import ScheduleSyncConfig, load_config
from feed_ingestor import FeedIngestor, FeedValidationError, IngestorConfig
from schedule_schema import FEED_ENTITIES


def summarize_payload(raw: str) -> Dict[str, Any]:
    """Короткий опис повідомлення: тип, таблиця, id образів."""

    try:
        obj = json.loads(raw)
    except ValueError:
        return {"raw_len": len(raw)}
    if not isinstance(obj, dict):
        return {"json_type": type(obj).__name__}

    summary: Dict[str, Any] = {
        key: obj[key] for key in ("type", "eventType", "table", "commit_ts") if key in obj
    }
    for image_key in ("new", "old"):
        image = obj.get(image_key)
        if isinstance(image, dict) and "id" in image:
            summary[f"{image_key}.id"] = image["id"]
    if "sig" in obj:
        summary["signed"] = True
    return summary


def collect_channels(cfg: ScheduleSyncConfig, entities: Optional[Sequence[str]] = None) -> Dict[str, str]:
    """Канал → сутність для обраних (або всіх) сутностей."""

    selected = list(entities) if entities else list(FEED_ENTITIES)
    unknown = [entity for entity in selected if entity not in FEED_ENTITIES]
    if unknown:
        raise ValueError(f"Невідомі сутності: {', '.join(unknown)}")
    return {cfg.feed.channel_for(entity): entity for entity in selected}


class ProbeStats:
    """Лічильники по каналах: прийняті, відкинуті, остання подія, остання помилка."""

    def __init__(self, channels: Dict[str, str], ingestor: FeedIngestor) -> None:
        self._channels = channels
        self._ingestor = ingestor
        self.accepted: Dict[str, int] = {name: 0 for name in channels}
        self.rejected: Dict[str, int] = {name: 0 for name in channels}
        self.last: Dict[str, Optional[Dict[str, Any]]] = {name: None for name in channels}
        self.last_error: Dict[str, Optional[str]] = {name: None for name in channels}

    def observe(self, channel: str, data: str) -> None:
        entity = self._channels.get(channel)
        if entity is None:
            return
        self.last[channel] = summarize_payload(data)
        try:
            self._ingestor.validate_json_message(entity, data)
        except FeedValidationError as exc:
            self.rejected[channel] += 1
            self.last_error[channel] = str(exc)
            return
        self.accepted[channel] += 1

    def render(self, seconds: float) -> Table:
        table = Table(title=f"feed_probe · {seconds:.1f}s", box=box.SIMPLE_HEAVY, expand=True)
        table.add_column("Channel", style="bold", overflow="fold")
        table.add_column("OK", justify="right")
        table.add_column("Rejected", justify="right")
        table.add_column("Last", overflow="fold")
        table.add_column("Last error", overflow="fold", style="red")
        for name in self._channels:
            table.add_row(
                name,
                str(self.accepted[name]),
                str(self.rejected[name]),
                json.dumps(self.last[name], ensure_ascii=False) if self.last[name] else "—",
                self.last_error[name] or "—",
            )
        return table


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Перевірка повідомлень у каналах змін розкладу")
    parser.add_argument("--seconds", type=float, default=6.0, help="Тривалість прослуховування, сек")
    parser.add_argument(
        "--entity",
        action="append",
        choices=FEED_ENTITIES,
        help="Сутність для прослуховування (можна кілька разів); за замовчуванням усі",
    )
    args = parser.parse_args(argv)

    cfg = load_config()
    console = Console()
    channels = collect_channels(cfg, args.entity)
    stats = ProbeStats(
        channels,
        FeedIngestor(IngestorConfig(hmac_secret=cfg.feed.hmac_secret, hmac_algo=cfg.feed.hmac_algo)),
    )

    client = redis.Redis(
        host=cfg.redis.host,
        port=cfg.redis.port,
        db=cfg.redis.db,
        decode_responses=True,
        socket_connect_timeout=2.0,
        socket_timeout=2.0,
    )
    client.ping()
    console.print(f"Redis: {cfg.redis.host}:{cfg.redis.port}/{cfg.redis.db}")
    channel_names: List[str] = list(channels)
    pubsub = client.pubsub(ignore_subscribe_messages=True)
    pubsub.subscribe(*channel_names)

    deadline = time.monotonic() + float(args.seconds)
    try:
        while time.monotonic() < deadline:
            message = pubsub.get_message(timeout=1.0)
            if not message:
                continue
            channel = message.get("channel")
            data = message.get("data")
            if isinstance(channel, str) and isinstance(data, str):
                stats.observe(channel, data)
    except KeyboardInterrupt:
        pass
    finally:
        pubsub.close()
        client.close()

    console.print(stats.render(float(args.seconds)))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
