"""
FlowB — Telegram Identity Verification
© 2026 FlowB Project
Licensed under the Apache License, Version 2.0

Two Telegram flows, both HMAC-SHA256 over a sorted data-check string:

1. Mini App initData (preferred)
   secret_key    = HMAC_SHA256(key="WebAppData", msg=bot_token)
   expected_hash = HMAC_SHA256(key=secret_key, msg=data_check_string)

2. Login Widget (web)
   secret_key    = SHA256(bot_token)
   expected_hash = HMAC_SHA256(key=secret_key, msg=data_check_string)

data_check_string = all fields except `hash`, as key=value, sorted, joined by \\n

See:
  https://core.telegram.org/bots/webapps#validating-data-received-via-the-mini-app
  https://core.telegram.org/widgets/login#checking-authorization
"""

import hashlib
import hmac
import json
import time
from typing import Any, Dict, Iterable, Optional, Tuple
from urllib.parse import parse_qsl

from logger import auth_logger
from verification_types import TelegramIdentity, VerificationResult

MAX_AUTH_AGE_SECONDS = 86400  # 24 hours


def build_data_check_string(pairs: Iterable[Tuple[str, str]]) -> str:
    return "\n".join(sorted(f"{key}={value}" for key, value in pairs))


def _sign(secret_key: bytes, data_check_string: str) -> str:
    return hmac.new(secret_key, data_check_string.encode(), hashlib.sha256).hexdigest()


def webapp_secret_key(bot_token: str) -> bytes:
    return hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()


def widget_secret_key(bot_token: str) -> bytes:
    return hashlib.sha256(bot_token.encode()).digest()


def _hash_matches(expected: str, supplied: str) -> bool:
    return hmac.compare_digest(expected.encode(), supplied.encode())


def _is_stale(auth_date: Optional[str], now: float) -> bool:
    try:
        return now - int(auth_date) > MAX_AUTH_AGE_SECONDS
    except (TypeError, ValueError):
        return True


def _reject(reason: str) -> VerificationResult:
    auth_logger.warning(f"⚠️ Telegram auth rejected: {reason}")
    return VerificationResult.invalid(reason)


def validate_init_data(init_data: str, bot_token: str, now: Optional[float] = None) -> VerificationResult:
    """
    Validate Telegram Mini App initData.

    Returns VERIFIED with data["user"] = TelegramIdentity, otherwise one
    generic INVALID whose reason code is only meant for logs:
    missing_hash | stale | bad_hash | missing_user | bad_user
    """
    if not init_data or not isinstance(init_data, str):
        return VerificationResult.malformed("empty_init_data")

    current = time.time() if now is None else now
    pairs = parse_qsl(init_data, keep_blank_values=True)

    supplied_hash = None
    fields = []
    for key, value in pairs:
        if key == "hash":
            supplied_hash = value
        else:
            fields.append((key, value))

    if not supplied_hash:
        return _reject("missing_hash")

    values = dict(fields)

    # Replay window is checked before the hash: an old payload is stale even if genuine
    if _is_stale(values.get("auth_date"), current):
        return _reject("stale")

    expected = _sign(webapp_secret_key(bot_token), build_data_check_string(fields))
    if not _hash_matches(expected, supplied_hash):
        return _reject("bad_hash")

    user_raw = values.get("user")
    if not user_raw:
        return _reject("missing_user")

    try:
        user = json.loads(user_raw)
    except ValueError:
        return _reject("bad_user")

    identity = _identity_from(user)
    if identity is None:
        return _reject("bad_user")

    auth_logger.info(f"✅ Telegram initData verified for {identity.subject}")
    return VerificationResult.verified(user=identity)


def validate_login_widget(auth_data: Dict[str, Any], bot_token: str, now: Optional[float] = None) -> VerificationResult:
    """
    Validate Telegram Login Widget fields:
    id, first_name, last_name, username, photo_url, auth_date, hash
    """
    if not isinstance(auth_data, dict):
        return VerificationResult.malformed("bad_widget_payload")

    current = time.time() if now is None else now
    supplied_hash = auth_data.get("hash")
    if not supplied_hash or not auth_data.get("id") or not auth_data.get("auth_date"):
        return VerificationResult.malformed("missing_fields")

    if _is_stale(auth_data.get("auth_date"), current):
        return _reject("stale")

    fields = [
        (key, str(value))
        for key, value in auth_data.items()
        if key != "hash" and value is not None
    ]
    expected = _sign(widget_secret_key(bot_token), build_data_check_string(fields))
    if not _hash_matches(expected, str(supplied_hash)):
        return _reject("bad_hash")

    identity = _identity_from(auth_data)
    if identity is None:
        return _reject("bad_user")

    auth_logger.info(f"✅ Telegram widget login verified for {identity.subject}")
    return VerificationResult.verified(user=identity)


def _identity_from(user: Any) -> Optional[TelegramIdentity]:
    """Require a numeric user id; everything else is optional"""
    if not isinstance(user, dict):
        return None

    raw_id = user.get("id")
    if isinstance(raw_id, bool):
        return None
    try:
        user_id = int(raw_id)
    except (TypeError, ValueError):
        return None
    if str(raw_id).strip() != str(user_id) or user_id <= 0:
        return None

    return TelegramIdentity(
        id=user_id,
        first_name=user.get("first_name") or "",
        last_name=user.get("last_name") or None,
        username=user.get("username") or None,
        photo_url=user.get("photo_url") or None,
    )
