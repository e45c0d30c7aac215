"""
FlowB — Claim and Result Types
© 2026 FlowB Project
Licensed under the Apache License, Version 2.0

Claims are immutable inputs created once per request. Every verifier answers
with a VerificationResult instead of raising; only ConfigurationError
(see trust_config.py) escapes as an exception.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class Platform(str, Enum):
    TELEGRAM = "telegram"
    FARCASTER = "farcaster"
    APP = "app"


class TargetType(str, Enum):
    EVENT = "event"
    LOCATION = "location"


class SponsorshipStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class CheckinStatus(str, Enum):
    HERE = "here"
    HEADING = "heading"
    LEAVING = "leaving"


class Outcome(str, Enum):
    VERIFIED = "verified"
    MALFORMED = "malformed"     # missing/ill-typed field -> 400
    INVALID = "invalid"         # failed check -> 401, never retried
    TRANSIENT = "transient"     # upstream unreachable -> 503, retry later


@dataclass(frozen=True)
class VerificationResult:
    outcome: Outcome
    reason: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.VERIFIED

    @property
    def retryable(self) -> bool:
        return self.outcome is Outcome.TRANSIENT

    @classmethod
    def verified(cls, **data) -> "VerificationResult":
        return cls(Outcome.VERIFIED, "", data)

    @classmethod
    def malformed(cls, reason: str) -> "VerificationResult":
        return cls(Outcome.MALFORMED, reason)

    @classmethod
    def invalid(cls, reason: str, **data) -> "VerificationResult":
        return cls(Outcome.INVALID, reason, data)

    @classmethod
    def transient(cls, reason: str) -> "VerificationResult":
        return cls(Outcome.TRANSIENT, reason)


# ============================================================================
# Claims
# ============================================================================

@dataclass(frozen=True)
class IdentityClaim:
    """
    raw_assertion depends on the platform:
      telegram  -> initData query string
      farcaster -> {"quickAuthToken": ...} or {"message": ..., "signature": ...}
      app       -> {"username": ..., "password": ...}
    """
    platform: Platform
    raw_assertion: Any


@dataclass(frozen=True)
class PaymentClaim:
    sponsor_subject: str
    platform: str
    target_type: str
    target_id: str
    amount_claimed: Decimal
    tx_hash: str


@dataclass(frozen=True)
class ProximityClaim:
    user_id: str
    platform: str
    lat: float
    lon: float
    crew_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class QrCheckinClaim:
    user_id: str
    platform: str
    location_code: str
    crew_ids: Tuple[str, ...] = ()


# ============================================================================
# Verified identities
# ============================================================================

@dataclass(frozen=True)
class TelegramIdentity:
    id: int
    first_name: str = ""
    last_name: Optional[str] = None
    username: Optional[str] = None
    photo_url: Optional[str] = None

    @property
    def subject(self) -> str:
        return f"telegram_{self.id}"


@dataclass(frozen=True)
class FarcasterIdentity:
    fid: int
    username: Optional[str] = None
    display_name: Optional[str] = None
    pfp_url: Optional[str] = None
    privy_user_id: Optional[str] = None

    @property
    def subject(self) -> str:
        return f"farcaster_{self.fid}"


@dataclass(frozen=True)
class AppIdentity:
    subject: str
    username: str
    role: str
