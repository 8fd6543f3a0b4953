"""Telegram Mini App ``initData`` verification."""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl


def _secret_key(bot_token: str) -> bytes:
    return hmac.new(b"WebAppData", bot_token.encode("utf-8"), hashlib.sha256).digest()


def build_data_check_string(fields: Dict[str, str]) -> str:
    return "\n".join(f"{key}={fields[key]}" for key in sorted(fields))


def sign_init_data(fields: Dict[str, str], bot_token: str) -> str:
    """Compute the ``hash`` Telegram would attach to these fields."""
    return hmac.new(
        _secret_key(bot_token),
        build_data_check_string(fields).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_init_data(
    init_data: str,
    bot_token: str,
    *,
    max_age_seconds: int = 86400,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """Validate the signature and freshness of Mini App ``initData``.

    Returns the parsed fields with ``user`` decoded from JSON. Raises ValueError
    when the payload is unsigned, tampered with or too old.
    """
    if not init_data or not bot_token:
        raise ValueError("initData and bot token are required.")

    fields = dict(parse_qsl(init_data, keep_blank_values=True))
    received_hash = fields.pop("hash", "")
    if not received_hash:
        raise ValueError("initData is not signed.")

    expected_hash = sign_init_data(fields, bot_token)
    if not hmac.compare_digest(expected_hash, received_hash.lower()):
        raise ValueError("initData signature mismatch.")

    try:
        auth_date = int(fields.get("auth_date", "0"))
    except ValueError as exc:
        raise ValueError("initData auth_date is invalid.") from exc
    current = time.time() if now is None else now
    if auth_date <= 0 or current - auth_date > max_age_seconds:
        raise ValueError("initData has expired.")

    parsed: Dict[str, Any] = dict(fields)
    parsed["auth_date"] = auth_date
    if "user" in fields:
        try:
            parsed["user"] = json.loads(fields["user"])
        except ValueError as exc:
            raise ValueError("initData user payload is malformed.") from exc
    return parsed
