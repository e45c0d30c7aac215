"""
FlowB — Session Token Service
© 2026 FlowB Project
Licensed under the Apache License, Version 2.0

HS256 bearer tokens issued after a successful identity claim.

Tokens are stateless: there is no server-side record, so a token can only
be revoked by rotating the secret or by letting it expire.

Secret resolution:
- FLOWB_JWT_SECRET when configured
- otherwise sha256("flowb-jwt-" + FLOWB_TELEGRAM_BOT_TOKEN)
  WEAKER: anyone holding the bot token can mint session tokens.
"""

import hashlib
import time
from typing import Any, Dict, Optional

import jwt

from logger import auth_logger, short
from trust_config import ConfigurationError, TrustConfig

ALGORITHM = "HS256"


def resolve_secret(config: TrustConfig) -> str:
    """Return the signing secret, deriving it from the bot token if necessary"""
    if config.jwt_secret:
        return config.jwt_secret
    if config.telegram_bot_token:
        return hashlib.sha256(f"flowb-jwt-{config.telegram_bot_token}".encode()).hexdigest()
    raise ConfigurationError("No JWT secret configured. Set FLOWB_JWT_SECRET or FLOWB_TELEGRAM_BOT_TOKEN")


class TokenService:
    """Issue and verify session tokens"""

    def __init__(self, config: TrustConfig):
        self._secret = resolve_secret(config)
        self.default_ttl = config.token_ttl_seconds
        if not config.jwt_secret:
            auth_logger.warning("⚠️ FLOWB_JWT_SECRET not set - session tokens derived from bot token")

    def issue(
        self,
        subject: str,
        platform: str,
        extras: Optional[Dict[str, Any]] = None,
        ttl: Optional[int] = None,
        now: Optional[float] = None,
    ) -> str:
        """
        Sign a session token

        Args:
            subject: namespaced user id, e.g. "telegram_123"
            platform: telegram | farcaster | app
            extras: tg_id / fid / username / role (None values are dropped)
            ttl: lifetime in seconds (default from config, 24h)
            now: epoch seconds override for tests
        """
        issued_at = int(now if now is not None else time.time())
        lifetime = self.default_ttl if ttl is None else int(ttl)

        payload = {k: v for k, v in (extras or {}).items() if v is not None}
        payload.update({
            "sub": subject,
            "platform": platform,
            "iat": issued_at,
            "exp": issued_at + lifetime,
        })

        token = jwt.encode(payload, self._secret, algorithm=ALGORITHM)
        auth_logger.debug(f"🔑 Token issued for {subject} (ttl={lifetime}s)")
        return token

    def verify(self, token: str, now: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """
        Return the claims of a valid token, or None.

        Bad signature, malformed structure and expiry all produce the same
        None so callers cannot tell them apart.
        """
        if not token or not isinstance(token, str):
            return None

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"verify_exp": False, "verify_iat": False, "require": ["sub", "exp"]},
            )
        except jwt.InvalidTokenError as e:
            auth_logger.debug(f"Token rejected ({type(e).__name__}): {short(token, 16)}")
            return None

        current = now if now is not None else time.time()
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or exp <= current:
            auth_logger.debug(f"Token rejected (ExpiredSignatureError): {short(token, 16)}")
            return None

        return payload

    def verify_bearer(self, authorization: Optional[str], now: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Verify an `Authorization: Bearer <token>` header value"""
        if not authorization or not authorization.startswith("Bearer "):
            return None
        return self.verify(authorization[7:].strip(), now=now)
