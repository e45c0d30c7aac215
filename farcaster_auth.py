"""
FlowB — Farcaster Identity Verification
© 2026 FlowB Project
Licensed under the Apache License, Version 2.0

Two paths, tried in order:

1. Quick Auth (preferred)
   The mini app obtains a short-lived JWT from the Farcaster Quick Auth
   server. We verify it against the server's published JWKS, require
   aud == our app domain and iss == the Quick Auth origin, and read the
   FID from `sub`. Profile (Neynar) and linked wallet account (Privy) are
   looked up best-effort afterwards.

2. Legacy Sign In With Farcaster (fallback, only without a Quick Auth token)
   {message, signature} is handed to Neynar's verification endpoint, which
   returns the FID and profile fields directly.
"""

import asyncio
import base64
from typing import Any, Dict, Optional

import httpx
import jwt

from logger import auth_logger
from trust_config import ConfigurationError, TrustConfig
from verification_types import FarcasterIdentity, VerificationResult

PRIVY_API_URL = "https://auth.privy.io/api/v2"
QUICK_AUTH_ALGORITHMS = ["EdDSA", "ES256", "RS256"]


def _parse_fid(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        fid = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return fid if fid > 0 else None


class FarcasterVerifier:
    """Verify Farcaster identity claims"""

    def __init__(
        self,
        config: TrustConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        jwks_client: Optional[jwt.PyJWKClient] = None,
    ):
        self.config = config
        self.domain = config.farcaster_domain
        self.issuer = config.quick_auth_url.rstrip("/")
        self._http = http_client or httpx.AsyncClient(timeout=config.http_timeout_seconds)
        self._jwks = jwks_client or jwt.PyJWKClient(
            f"{self.issuer}/.well-known/jwks.json",
            cache_keys=True,
            timeout=config.http_timeout_seconds,
        )

    async def aclose(self):
        await self._http.aclose()

    async def verify(self, assertion: Dict[str, Any]) -> VerificationResult:
        """
        Args:
            assertion: {"quickAuthToken": str} or {"message": str, "signature": str}
        """
        if not isinstance(assertion, dict):
            return VerificationResult.malformed("bad_payload")

        quick_token = assertion.get("quickAuthToken")
        if quick_token:
            return await self.verify_quick_auth(quick_token)

        message = assertion.get("message")
        signature = assertion.get("signature")
        if not message or not signature:
            return VerificationResult.malformed("missing_quick_auth_or_siwf")

        return await self.verify_sign_in(message, signature)

    # ------------------------------------------------------------------
    # Quick Auth
    # ------------------------------------------------------------------

    def _decode_quick_auth(self, token: str) -> Dict[str, Any]:
        signing_key = self._jwks.get_signing_key_from_jwt(token)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=QUICK_AUTH_ALGORITHMS,
            audience=self.domain,
            issuer=self.issuer,
            # Quick Auth puts the FID in `sub` as a number
            options={"require": ["sub", "exp"], "verify_sub": False},
        )

    async def verify_quick_auth(self, token: str) -> VerificationResult:
        try:
            payload = await asyncio.to_thread(self._decode_quick_auth, token)
        except jwt.PyJWKClientConnectionError as e:
            auth_logger.error(f"❌ Quick Auth JWKS unreachable: {e}")
            return VerificationResult.transient("jwks_unreachable")
        except jwt.PyJWTError as e:
            auth_logger.warning(f"⚠️ Quick Auth token rejected: {type(e).__name__}")
            return VerificationResult.invalid("bad_quick_auth_token")

        fid = _parse_fid(payload.get("sub"))
        if fid is None:
            auth_logger.warning("⚠️ Quick Auth token has no FID")
            return VerificationResult.invalid("no_fid")

        profile = await self.lookup_profile(fid)
        privy_user_id = await self.lookup_privy_user(fid)

        identity = FarcasterIdentity(
            fid=fid,
            username=profile.get("username"),
            display_name=profile.get("display_name"),
            pfp_url=profile.get("pfp_url"),
            privy_user_id=privy_user_id,
        )
        auth_logger.info(f"✅ Farcaster Quick Auth verified: fid={fid}")
        return VerificationResult.verified(user=identity)

    async def lookup_profile(self, fid: int) -> Dict[str, Any]:
        """Best-effort Neynar profile lookup; {} on any failure"""
        if not self.config.neynar_api_key:
            return {}

        try:
            response = await self._http.get(
                f"{self.config.neynar_api_url}/user/bulk",
                params={"fids": str(fid)},
                headers={"x-api-key": self.config.neynar_api_key},
            )
            if response.status_code != 200:
                auth_logger.debug(f"Neynar profile lookup HTTP {response.status_code} for fid={fid}")
                return {}
            users = response.json().get("users") or []
        except (httpx.HTTPError, ValueError) as e:
            auth_logger.debug(f"Neynar profile lookup failed for fid={fid}: {e}")
            return {}

        return users[0] if users and isinstance(users[0], dict) else {}

    async def lookup_privy_user(self, fid: int) -> Optional[str]:
        """Best-effort lookup of a Privy account linked to this FID"""
        app_id = self.config.privy_app_id
        app_secret = self.config.privy_app_secret
        if not (app_id and app_secret):
            return None

        credentials = base64.b64encode(f"{app_id}:{app_secret}".encode()).decode()
        try:
            response = await self._http.get(
                f"{PRIVY_API_URL}/users/farcaster:{fid}",
                headers={
                    "Authorization": f"Basic {credentials}",
                    "privy-app-id": app_id,
                    "Content-Type": "application/json",
                },
            )
            if response.status_code != 200:
                return None
            privy_user_id = response.json().get("id")
        except (httpx.HTTPError, ValueError) as e:
            auth_logger.debug(f"Privy lookup failed for fid={fid}: {e}")
            return None

        if privy_user_id:
            auth_logger.info(f"🔗 Linked Farcaster fid={fid} to Privy user {privy_user_id}")
        return privy_user_id

    # ------------------------------------------------------------------
    # Legacy SIWF
    # ------------------------------------------------------------------

    async def verify_sign_in(self, message: str, signature: str) -> VerificationResult:
        if not self.config.neynar_api_key:
            raise ConfigurationError("NEYNAR_API_KEY is not configured")

        try:
            response = await self._http.post(
                f"{self.config.neynar_api_url}/signer/verify",
                json={"message": message, "signature": signature},
                headers={"x-api-key": self.config.neynar_api_key},
            )
        except httpx.HTTPError as e:
            auth_logger.error(f"❌ Neynar verify unreachable: {e}")
            return VerificationResult.transient("neynar_unreachable")

        if response.status_code >= 500:
            auth_logger.error(f"❌ Neynar verify HTTP {response.status_code}")
            return VerificationResult.transient("neynar_unavailable")
        if response.status_code != 200:
            auth_logger.warning(f"⚠️ Neynar rejected sign-in: HTTP {response.status_code}")
            return VerificationResult.invalid("siwf_rejected")

        try:
            data = response.json()
        except ValueError:
            return VerificationResult.transient("neynar_bad_response")

        fid = _parse_fid(data.get("fid"))
        if fid is None:
            auth_logger.warning("⚠️ Neynar sign-in response without FID")
            return VerificationResult.invalid("no_fid")

        identity = FarcasterIdentity(
            fid=fid,
            username=data.get("username"),
            display_name=data.get("display_name"),
            pfp_url=data.get("pfp_url"),
        )
        auth_logger.info(f"✅ Farcaster sign-in verified: fid={fid}")
        return VerificationResult.verified(user=identity)
