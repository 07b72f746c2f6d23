"""Підпис повідомлень каналу змін (HMAC над детермінованим JSON)."""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Mapping

SIGNATURE_FIELD = "sig"


def _canonical_body(message: Mapping[str, Any]) -> bytes:
    body = {key: value for key, value in message.items() if key != SIGNATURE_FIELD}
    return json.dumps(
        body,
        separators=(",", ":"),
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")


def compute_message_hmac(
    message: Mapping[str, Any],
    secret: str,
    algo: str = "sha256",
) -> str:
    """Повертає hex HMAC для повідомлення без поля `sig`."""

    if not secret:
        return ""

    normalized_algo = (algo or "sha256").strip().lower() or "sha256"
    digestmod = getattr(hashlib, normalized_algo, hashlib.sha256)
    return hmac.new(secret.encode("utf-8"), _canonical_body(message), digestmod).hexdigest()


def verify_message_hmac(
    message: Mapping[str, Any],
    secret: str,
    algo: str = "sha256",
) -> bool:
    provided = message.get(SIGNATURE_FIELD)
    if not isinstance(provided, str) or not provided:
        return False
    expected = compute_message_hmac(message, secret, algo)
    return hmac.compare_digest(expected, provided.strip().lower())
