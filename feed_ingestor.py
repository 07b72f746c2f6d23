"""Валідація повідомлень каналів змін перед передачею у реконсилятор."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, MutableMapping, Optional

from feed_security import verify_message_hmac
from schedule_schema import (
    EVENT_DELETE,
    EVENT_TYPES,
    FEED_ENTITIES,
    TABLE_TO_ENTITY,
    validate_change_message_contract,
)


class FeedValidationError(ValueError):
    """Порушення контракту повідомлення каналу змін."""


@dataclass(frozen=True)
class ChangeEvent:
    """Нормалізована подія `{eventType, id, new?, old?}` для одного типу сутності."""

    entity: str
    event_type: str
    entity_id: int
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None
    commit_ts: Any = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def image(self) -> Dict[str, Any]:
        """Найсвіжіший доступний образ рядка (new, інакше old)."""
        return dict(self.new or self.old or {})


@dataclass(frozen=True)
class IngestorConfig:
    """Налаштування інгестора: дозволені сутності та HMAC."""

    allowed_entities: tuple[str, ...] = FEED_ENTITIES
    hmac_secret: str | None = None
    hmac_algo: str = "sha256"

    @classmethod
    def from_env(cls) -> "IngestorConfig":
        return cls(
            hmac_secret=_resolve_hmac_secret(),
            hmac_algo=_resolve_hmac_algo(),
        )


def _coerce_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


class FeedIngestor:
    """Санітизує payload з Redis та гарантує базову схему події."""

    def __init__(self, config: IngestorConfig | None = None) -> None:
        self.config = config or IngestorConfig.from_env()
        if not self.config.allowed_entities:
            raise ValueError("Список дозволених сутностей не може бути порожнім.")
        self._allowed_entities = set(self.config.allowed_entities)
        self._hmac_secret = self.config.hmac_secret
        self._hmac_algo = self.config.hmac_algo

    def validate_json_message(self, entity: str, message: Any) -> ChangeEvent:
        """Декодує JSON-повідомлення та запускає повну валідацію."""

        if isinstance(message, bytes):
            message = message.decode("utf-8", errors="replace")
        if not isinstance(message, str):
            raise FeedValidationError("Повідомлення каналу має бути рядком JSON.")
        try:
            payload = json.loads(message)
        except json.JSONDecodeError as exc:
            raise FeedValidationError("Не вдалося розпарсити JSON-повідомлення каналу змін.") from exc
        if not isinstance(payload, MutableMapping):
            raise FeedValidationError("Очікувався JSON-об'єкт із полями type/new/old.")
        return self.validate_payload(entity, payload)

    def validate_payload(self, entity: str, payload: Mapping[str, Any]) -> ChangeEvent:
        if entity not in self._allowed_entities:
            raise FeedValidationError(f"Сутність {entity!r} не дозволено до інгесту.")
        try:
            validate_change_message_contract(payload)
        except ValueError as exc:
            raise FeedValidationError(str(exc)) from exc
        if self._hmac_secret and not verify_message_hmac(payload, self._hmac_secret, self._hmac_algo):
            raise FeedValidationError("HMAC-підпис відсутній або некоректний.")

        self._validate_table(entity, payload.get("table"))
        event_type = self._validate_event_type(payload.get("type", payload.get("eventType")))
        new_image = payload.get("new")
        old_image = payload.get("old")
        entity_id = self._resolve_id(event_type, new_image, old_image)
        return ChangeEvent(
            entity=entity,
            event_type=event_type,
            entity_id=entity_id,
            new=dict(new_image) if isinstance(new_image, Mapping) else None,
            old=dict(old_image) if isinstance(old_image, Mapping) else None,
            commit_ts=payload.get("commit_ts"),
        )

    def _validate_table(self, entity: str, table_raw: Any) -> None:
        if table_raw is None:
            return
        mapped = TABLE_TO_ENTITY.get(str(table_raw), str(table_raw))
        if mapped != entity:
            raise FeedValidationError(
                f"Таблиця {table_raw!r} не відповідає каналу сутності {entity!r}."
            )

    def _validate_event_type(self, raw: Any) -> str:
        normalized = str(raw or "").strip().lower()
        if normalized not in EVENT_TYPES:
            raise FeedValidationError(f"Невідомий тип події {raw!r}.")
        return normalized

    def _resolve_id(
        self,
        event_type: str,
        new_image: Optional[Mapping[str, Any]],
        old_image: Optional[Mapping[str, Any]],
    ) -> int:
        if event_type == EVENT_DELETE:
            candidate = _coerce_id((old_image or {}).get("id"))
            if candidate is None:
                raise FeedValidationError("DELETE-подія без old.id.")
            return candidate
        candidate = _coerce_id((new_image or {}).get("id"))
        if candidate is None:
            candidate = _coerce_id((old_image or {}).get("id"))
        if candidate is None:
            raise FeedValidationError(f"{event_type.upper()}-подія без id.")
        return candidate


def _resolve_hmac_secret() -> str | None:
    candidate = os.environ.get("SCHEDULE_HMAC_SECRET")
    if candidate and candidate.strip():
        return candidate.strip()
    return None


def _resolve_hmac_algo() -> str:
    raw = os.environ.get("SCHEDULE_HMAC_ALGO") or "sha256"
    return raw.strip().lower() or "sha256"
