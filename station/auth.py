"""Telegram Web App ``initData`` verification.

The client sends the raw ``initData`` query string it received from Telegram.
Telegram signs it with a key derived from the bot token, so the backend can
verify it without any round trip.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qsl, urlencode


AUTH_SCHEME = "tma "


class AuthError(Exception):
    code = "invalid_init_data"


class MissingInitDataError(AuthError):
    code = "missing_init_data"


class InvalidInitDataError(AuthError):
    code = "invalid_init_data"


class InvalidUserError(AuthError):
    code = "invalid_user"


@dataclass
class TgUser:
    id: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    photo_url: Optional[str] = None


def extract_init_data(header: Optional[str]) -> str:
    if not header or not header.startswith(AUTH_SCHEME):
        return ""
    return header[len(AUTH_SCHEME):].strip()


def _secret_key(bot_token: str) -> bytes:
    return hmac.new(
        bot_token.encode("utf-8"),
        b"WebAppData",
        hashlib.sha256,
    ).digest()


def _data_check_string(pairs: Mapping[str, str]) -> str:
    return "\n".join(f"{k}={pairs[k]}" for k in sorted(pairs) if k != "hash")


def calc_hash(pairs: Mapping[str, str], bot_token: str) -> str:
    return hmac.new(
        _secret_key(bot_token),
        _data_check_string(pairs).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def sign_init_data(fields: Mapping[str, Any], bot_token: str) -> str:
    """Build a signed ``initData`` string, the way Telegram does it."""
    pairs: Dict[str, str] = {}
    for key, value in fields.items():
        if isinstance(value, (dict, list)):
            value = json.dumps(value, separators=(",", ":"))
        pairs[key] = str(value)
    pairs["hash"] = calc_hash(pairs, bot_token)
    return urlencode(pairs)


def _parse_pairs(init_data: str) -> Dict[str, str]:
    return dict(parse_qsl(init_data, keep_blank_values=True))


def _check_auth_date(
    pairs: Mapping[str, str], now: Optional[datetime], max_age: int
) -> None:
    if max_age <= 0:
        return
    auth_date = pairs.get("auth_date")
    if not auth_date:
        return
    try:
        auth_ts = int(auth_date)
    except ValueError:
        return
    current = now or datetime.now(timezone.utc)
    if abs(current.timestamp() - auth_ts) > max_age:
        raise InvalidInitDataError("init_data expired")


def _parse_user(pairs: Mapping[str, str]) -> TgUser:
    raw_user = pairs.get("user")
    if not raw_user:
        raise InvalidUserError("user field missing")
    try:
        payload = json.loads(raw_user)
    except json.JSONDecodeError as exc:
        raise InvalidUserError("user field is not JSON") from exc
    if not isinstance(payload, dict):
        raise InvalidUserError("user field is not an object")
    user_id = payload.get("id")
    if isinstance(user_id, bool) or not isinstance(user_id, int) or user_id <= 0:
        raise InvalidUserError("user id missing")
    return TgUser(
        id=user_id,
        username=payload.get("username"),
        first_name=payload.get("first_name"),
        last_name=payload.get("last_name"),
        photo_url=payload.get("photo_url"),
    )


def verify_init_data(
    init_data: str,
    bot_token: str,
    now: Optional[datetime] = None,
    max_age: int = 0,
) -> TgUser:
    """Return the signed-in Telegram user or raise an :class:`AuthError`.

    ``max_age`` only applies when the payload carries ``auth_date``.
    """
    if not init_data:
        raise MissingInitDataError("init_data empty")
    pairs = _parse_pairs(init_data)
    received_hash = pairs.get("hash")
    if not received_hash:
        raise MissingInitDataError("hash missing")
    if not bot_token:
        raise InvalidInitDataError("bot token not configured")
    calculated_hash = calc_hash(pairs, bot_token)
    if not hmac.compare_digest(
        calculated_hash.encode("utf-8"), received_hash.encode("utf-8")
    ):
        raise InvalidInitDataError("hash mismatch")
    _check_auth_date(pairs, now, max_age)
    return _parse_user(pairs)
