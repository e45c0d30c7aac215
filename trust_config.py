"""
FlowB — Trust Configuration
© 2026 FlowB Project
Licensed under the Apache License, Version 2.0

All secrets and endpoints the verifiers need, read once at startup and
passed explicitly into every service. Nothing below reads the environment
at call time.
"""

import os
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

# Base mainnet USDC
BASE_USDC_CONTRACT = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"


class ConfigurationError(Exception):
    """A required secret or endpoint is missing. Fatal, never retried."""


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class TrustConfig:
    """Immutable configuration shared by all verifiers"""

    # Session tokens
    jwt_secret: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    token_ttl_seconds: int = 86400

    # Farcaster
    farcaster_app_url: str = "https://flowb-farcaster.netlify.app"
    quick_auth_url: str = "https://auth.farcaster.xyz"
    neynar_api_key: Optional[str] = None
    neynar_api_url: str = "https://api.neynar.com/v2/farcaster"
    privy_app_id: Optional[str] = None
    privy_app_secret: Optional[str] = None

    # Chain
    base_rpc_url: str = "https://mainnet.base.org"
    usdc_contract: str = BASE_USDC_CONTRACT
    usdc_decimals: int = 6
    sponsor_wallet: Optional[str] = None
    min_sponsorship_usdc: Decimal = Decimal("0.10")
    rpc_timeout_seconds: int = 10
    sponsor_max_attempts: int = 5
    sponsor_retry_delay_seconds: int = 30

    # Misc
    http_timeout_seconds: int = 10
    admin_key: str = "flowb-admin-2026"
    db_path: str = "flowb.db"
    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: tuple = ("*",)

    @classmethod
    def from_env(cls) -> "TrustConfig":
        """Build the config from the process environment (and .env, if present)"""
        load_dotenv()

        cors = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

        return cls(
            jwt_secret=os.getenv("FLOWB_JWT_SECRET") or None,
            telegram_bot_token=os.getenv("FLOWB_TELEGRAM_BOT_TOKEN") or None,
            token_ttl_seconds=_env_int("FLOWB_JWT_TTL_SECONDS", 86400),
            farcaster_app_url=os.getenv("FARCASTER_APP_URL", "https://flowb-farcaster.netlify.app"),
            quick_auth_url=os.getenv("FARCASTER_QUICK_AUTH_URL", "https://auth.farcaster.xyz"),
            neynar_api_key=os.getenv("NEYNAR_API_KEY") or None,
            neynar_api_url=os.getenv("NEYNAR_API_URL", "https://api.neynar.com/v2/farcaster"),
            privy_app_id=os.getenv("PRIVY_APP_ID") or None,
            privy_app_secret=os.getenv("PRIVY_APP_SECRET") or None,
            base_rpc_url=os.getenv("BASE_RPC_URL", "https://mainnet.base.org"),
            usdc_contract=os.getenv("USDC_CONTRACT", BASE_USDC_CONTRACT),
            sponsor_wallet=os.getenv("CDP_ACCOUNT_ADDRESS") or None,
            rpc_timeout_seconds=_env_int("RPC_TIMEOUT_SECONDS", 10),
            sponsor_max_attempts=_env_int("SPONSOR_MAX_ATTEMPTS", 5),
            sponsor_retry_delay_seconds=_env_int("SPONSOR_RETRY_DELAY_SECONDS", 30),
            http_timeout_seconds=_env_int("HTTP_TIMEOUT_SECONDS", 10),
            admin_key=os.getenv("FLOWB_ADMIN_KEY", "flowb-admin-2026"),
            db_path=os.getenv("FLOWB_DB_PATH", "flowb.db"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=_env_int("PORT", 8080),
            cors_origins=tuple(cors) or ("*",),
        )

    @property
    def farcaster_domain(self) -> str:
        """Hostname the Quick Auth tokens must be issued for"""
        return urlparse(self.farcaster_app_url).hostname or self.farcaster_app_url

    def require_bot_token(self) -> str:
        if not self.telegram_bot_token:
            raise ConfigurationError("FLOWB_TELEGRAM_BOT_TOKEN is not configured")
        return self.telegram_bot_token

    def require_sponsor_wallet(self) -> str:
        if not self.sponsor_wallet:
            raise ConfigurationError("CDP_ACCOUNT_ADDRESS is not configured")
        return self.sponsor_wallet

    def missing(self) -> List[str]:
        """Names of optional integrations that are not configured (for /api/health)"""
        gaps = []
        if not (self.jwt_secret or self.telegram_bot_token):
            gaps.append("FLOWB_JWT_SECRET")
        if not self.telegram_bot_token:
            gaps.append("FLOWB_TELEGRAM_BOT_TOKEN")
        if not self.neynar_api_key:
            gaps.append("NEYNAR_API_KEY")
        if not self.sponsor_wallet:
            gaps.append("CDP_ACCOUNT_ADDRESS")
        return gaps
