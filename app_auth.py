"""
FlowB — Native App Accounts
© 2026 FlowB Project
Licensed under the Apache License, Version 2.0

WARNING: hard-coded bootstrap accounts for operators and event demos.
Passwords are compared in plain text and live in source. This is the
weakest trust path in the system and must not grow into a general
username/password scheme.
"""

import hmac
from typing import Any, Dict, Mapping, Tuple

from logger import auth_logger
from verification_types import AppIdentity, VerificationResult

# username -> (password, subject, role)
APP_ACCOUNTS: Dict[str, Tuple[str, str, str]] = {
    "admin": ("admin", "app_admin", "admin"),
    "user": ("user", "app_user", "user"),
    "user1": ("user1", "app_user1", "user"),
}


def verify_app_login(
    credentials: Dict[str, Any],
    accounts: Mapping[str, Tuple[str, str, str]] = APP_ACCOUNTS,
) -> VerificationResult:
    """Exact match on username and password; one generic failure for both"""
    if not isinstance(credentials, dict):
        return VerificationResult.malformed("bad_payload")

    username = credentials.get("username")
    password = credentials.get("password")
    if not isinstance(username, str) or not isinstance(password, str) or not username or not password:
        return VerificationResult.malformed("missing_username_or_password")

    entry = accounts.get(username)
    if entry is None or not hmac.compare_digest(entry[0].encode(), password.encode()):
        auth_logger.warning(f"⚠️ App login failed for '{username[:32]}'")
        return VerificationResult.invalid("invalid_credentials")

    _, subject, role = entry
    auth_logger.info(f"✅ App login: {subject} (role={role})")
    return VerificationResult.verified(user=AppIdentity(subject=subject, username=username, role=role))
