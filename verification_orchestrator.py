"""
FlowB — Verification Orchestrator
© 2026 FlowB Project
Licensed under the Apache License, Version 2.0

Single entry point for every trust claim:

    IdentityClaim   -> Telegram / Farcaster / App verifier -> session token
    PaymentClaim    -> pending sponsorship + background on-chain confirmation
    ProximityClaim  -> geofence match + deduplicated crew check-ins
    QrCheckinClaim  -> location code lookup + deduplicated crew check-ins

Verifiers answer with a VerificationResult. Side effects (points,
notifications, session upserts) run afterwards and never change the
outcome of the claim: their errors are logged and dropped.
"""

import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

from app_auth import verify_app_login
from farcaster_auth import FarcasterVerifier
from logger import api_logger, chain_logger, checkin_logger, log_activity, short
from notification_service import NotificationDispatcher
from payment_verifier import PaymentVerifier, is_tx_hash
from points_ledger import PointsLedger
from proximity_verifier import ProximityVerifier, is_sponsored, valid_coordinates
from record_store import DuplicateRecord, RecordStore, utc_iso, utc_now
from sponsor_verification_queue import SponsorVerificationQueue
from telegram_auth import validate_init_data, validate_login_widget
from token_service import TokenService
from trust_config import TrustConfig
from verification_types import (
    AppIdentity,
    FarcasterIdentity,
    IdentityClaim,
    PaymentClaim,
    Platform,
    ProximityClaim,
    QrCheckinClaim,
    SponsorshipStatus,
    TargetType,
    TelegramIdentity,
    VerificationResult,
)


class VerificationOrchestrator:

    def __init__(
        self,
        config: TrustConfig,
        store: Optional[RecordStore] = None,
        tokens: Optional[TokenService] = None,
        farcaster: Optional[FarcasterVerifier] = None,
        payments: Optional[PaymentVerifier] = None,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Optional[Callable] = None,
    ):
        self.config = config
        self.store = store or RecordStore(config.db_path)
        self.tokens = tokens or TokenService(config)
        self.farcaster = farcaster or FarcasterVerifier(config)
        self.payments = payments or PaymentVerifier(config)
        self.notifier = notifier or NotificationDispatcher(config)
        self.ledger = PointsLedger(self.store)
        self.proximity = ProximityVerifier(self.store)
        self.clock = clock or utc_now
        self.queue: Optional[SponsorVerificationQueue] = None

        self._handlers = {
            IdentityClaim: self.verify_identity,
            PaymentClaim: self.submit_sponsorship,
            ProximityClaim: self.proximity_checkin,
            QrCheckinClaim: self.qr_checkin,
        }

    async def handle(self, claim) -> VerificationResult:
        """Dispatch any claim to its verifier"""
        handler = self._handlers.get(type(claim))
        if handler is None:
            raise TypeError(f"Unsupported claim type: {type(claim).__name__}")
        return await handler(claim)

    # ------------------------------------------------------------------
    # Background worker
    # ------------------------------------------------------------------

    def start_worker(self) -> SponsorVerificationQueue:
        if self.queue is None:
            self.queue = SponsorVerificationQueue(
                self.confirm_sponsorship,
                max_attempts=self.config.sponsor_max_attempts,
                retry_delay_seconds=self.config.sponsor_retry_delay_seconds,
            )
        self.queue.start()
        return self.queue

    async def requeue_pending(self) -> int:
        """Hand sponsorships left pending by a previous process back to the worker"""
        if self.queue is None:
            return 0
        pending = self.store.get("sponsorships", {"status": SponsorshipStatus.PENDING.value})
        for record in pending:
            await self.queue.enqueue(record["id"], attempt=int(record.get("attempts") or 0) + 1)
        return len(pending)

    async def shutdown(self):
        if self.queue is not None:
            await self.queue.stop()
        await self.notifier.drain()
        await self.farcaster.aclose()

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    def _best_effort(self, label: str, func: Callable, *args, **kwargs) -> Any:
        try:
            return func(*args, **kwargs)
        except Exception as e:
            api_logger.warning(f"⚠️ {label} failed: {e}")
            return None

    def _award(self, subject: str, platform: str, action: str, metadata: Optional[Dict[str, Any]] = None):
        return self._best_effort(f"Points award {action}", self.ledger.award, subject, platform, action, metadata)

    def _notify(self, kind: str, subject: str, payload: Dict[str, Any]):
        self._best_effort(f"Notification {kind}", self.notifier.notify, kind, subject, payload)

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def authenticate(self, authorization: Optional[str]) -> Optional[Dict[str, Any]]:
        """Claims of a valid `Authorization: Bearer` header, or None"""
        return self.tokens.verify_bearer(authorization)

    async def _verify_platform(self, claim: IdentityClaim) -> VerificationResult:
        platform = claim.platform
        if platform is Platform.TELEGRAM:
            bot_token = self.config.require_bot_token()
            now = self.clock().timestamp()
            if isinstance(claim.raw_assertion, dict):
                return validate_login_widget(claim.raw_assertion, bot_token, now=now)
            return validate_init_data(claim.raw_assertion, bot_token, now=now)
        if platform is Platform.FARCASTER:
            return await self.farcaster.verify(claim.raw_assertion)
        if platform is Platform.APP:
            return verify_app_login(claim.raw_assertion)
        return VerificationResult.malformed("unknown_platform")

    async def verify_identity(self, claim: IdentityClaim) -> VerificationResult:
        """
        Verify a platform identity and issue a session token.

        Returns VERIFIED with data {token, user}; any other outcome passes
        the verifier's result through untouched.
        """
        try:
            claim = IdentityClaim(Platform(claim.platform), claim.raw_assertion)
        except ValueError:
            return VerificationResult.malformed("unknown_platform")

        result = await self._verify_platform(claim)
        if not result.ok:
            log_activity("WARNING", "AUTH", "Identity claim rejected",
                         platform=claim.platform.value, outcome=result.outcome.value, reason=result.reason)
            return result

        identity = result.data["user"]
        user, extras = self._session_fields(identity)
        subject = user["id"]
        token = self.tokens.issue(subject, claim.platform.value, extras)

        if isinstance(identity, TelegramIdentity):
            display_name = " ".join(p for p in (identity.first_name, identity.last_name) if p) or identity.username
            self._best_effort("Session upsert", self.store.upsert, "sessions", {
                "user_id": subject,
                "display_name": display_name,
                "updated_at": utc_iso(),
            }, conflict=("user_id",))
        if isinstance(identity, AppIdentity) and identity.role == "admin":
            user["admin_key"] = self.config.admin_key

        self._award(subject, claim.platform.value, "miniapp_open")
        log_activity("INFO", "AUTH", "Session issued", subject=subject, platform=claim.platform.value)
        return VerificationResult.verified(token=token, user=user)

    def _session_fields(self, identity) -> tuple:
        """(user dict for the response, extra token claims)"""
        if isinstance(identity, TelegramIdentity):
            user = {
                "id": identity.subject,
                "platform": Platform.TELEGRAM.value,
                "tg_id": identity.id,
                "username": identity.username,
                "first_name": identity.first_name,
            }
            return user, {"tg_id": identity.id, "username": identity.username}

        if isinstance(identity, FarcasterIdentity):
            user = {
                "id": identity.subject,
                "platform": Platform.FARCASTER.value,
                "fid": identity.fid,
                "username": identity.username,
                "display_name": identity.display_name,
                "pfp_url": identity.pfp_url,
                "privy_user_id": identity.privy_user_id,
            }
            return user, {"fid": identity.fid, "username": identity.username}

        user = {
            "id": identity.subject,
            "platform": Platform.APP.value,
            "username": identity.username,
            "role": identity.role,
        }
        return user, {"username": identity.username, "role": identity.role}

    # ------------------------------------------------------------------
    # Sponsorships
    # ------------------------------------------------------------------

    def get_sponsorship(self, sponsorship_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get_one("sponsorships", {"id": sponsorship_id})

    async def submit_sponsorship(self, claim: PaymentClaim) -> VerificationResult:
        """
        Validate the claim, record it as pending and queue the on-chain check.

        The HTTP caller gets the pending record back immediately; the
        verified/rejected transition happens in confirm_sponsorship().
        """
        self.config.require_sponsor_wallet()

        if claim.target_type not in {t.value for t in TargetType}:
            return VerificationResult.malformed("bad_target_type")
        if not isinstance(claim.target_id, str) or not claim.target_id.strip():
            return VerificationResult.malformed("missing_target_id")
        try:
            amount = Decimal(str(claim.amount_claimed))
        except (InvalidOperation, ValueError):
            return VerificationResult.malformed("bad_amount")
        if not amount.is_finite() or amount < self.config.min_sponsorship_usdc:
            return VerificationResult.malformed("below_minimum_amount")
        if not is_tx_hash(claim.tx_hash):
            return VerificationResult.malformed("bad_tx_hash")

        try:
            record = self.store.insert("sponsorships", {
                "id": str(uuid.uuid4()),
                "sponsor_user_id": claim.sponsor_subject,
                "platform": claim.platform,
                "target_type": claim.target_type,
                "target_id": claim.target_id.strip(),
                "amount_usdc": amount,
                "tx_hash": claim.tx_hash.lower(),
                "status": SponsorshipStatus.PENDING.value,
                "attempts": 0,
                "created_at": utc_iso(self.clock()),
            })
        except DuplicateRecord:
            chain_logger.warning(f"⚠️ Sponsorship tx already submitted: {short(claim.tx_hash)}")
            return VerificationResult.invalid("duplicate_tx")

        chain_logger.info(
            f"💰 Sponsorship {record['id']} recorded pending: {amount} USDC → "
            f"{claim.target_type}:{claim.target_id} ({short(claim.tx_hash)})"
        )
        self._award(claim.sponsor_subject, claim.platform, "sponsor_created",
                    {"target_type": claim.target_type, "target_id": claim.target_id, "amount": str(amount)})

        if self.queue is not None:
            await self.queue.enqueue(record["id"])

        return VerificationResult.verified(sponsorship=record)

    async def confirm_sponsorship(self, sponsorship_id: str, final_attempt: bool = False) -> VerificationResult:
        """
        Run the payment check for a sponsorship and apply the terminal transition.

        Called by the background worker and by the manual re-verify endpoint.
        Both transitions are conditional on status == 'pending', so only the
        caller whose update changes the row applies points, the location
        sponsor amount and notifications.

        A transient outcome leaves the record pending unless final_attempt is
        set, in which case it is rejected as not_confirmed.
        """
        record = self.get_sponsorship(sponsorship_id)
        if record is None:
            return VerificationResult.invalid("unknown_sponsorship")

        if record["status"] == SponsorshipStatus.VERIFIED.value:
            return VerificationResult.verified(sponsorship=record, applied=False)
        if record["status"] == SponsorshipStatus.REJECTED.value:
            return VerificationResult.invalid(record.get("reject_reason") or "rejected", sponsorship=record)

        wallet = self.config.require_sponsor_wallet()
        self.store.increment("sponsorships", {"id": sponsorship_id}, "attempts", 1)

        result = await self.payments.verify_transfer(record["tx_hash"], wallet, Decimal(record["amount_usdc"]))

        if result.ok:
            return self._mark_verified(record, result.data["amount"])
        if result.retryable and not final_attempt:
            return result

        reason = "not_confirmed" if result.retryable else result.reason
        return self._mark_rejected(record, reason)

    def _mark_verified(self, record: Dict[str, Any], amount: Decimal) -> VerificationResult:
        applied = self.store.conditional_update(
            "sponsorships",
            {"id": record["id"]},
            {"status": SponsorshipStatus.PENDING.value},
            {
                "status": SponsorshipStatus.VERIFIED.value,
                "verified_amount_usdc": amount,
                "verified_at": utc_iso(self.clock()),
            },
        )
        current = self.get_sponsorship(record["id"])

        if not applied:
            chain_logger.info(f"⏸️ Sponsorship {record['id']} already settled ({current['status']})")
            if current["status"] == SponsorshipStatus.VERIFIED.value:
                return VerificationResult.verified(sponsorship=current, applied=False)
            return VerificationResult.invalid(current.get("reject_reason") or "rejected", sponsorship=current)

        sponsor = record["sponsor_user_id"]
        if record["target_type"] == TargetType.LOCATION.value:
            self._best_effort(
                "Location sponsor amount",
                self.store.increment, "locations", {"id": record["target_id"]}, "sponsor_amount", float(amount),
            )
        self._award(sponsor, record["platform"], "sponsor_verified",
                    {"sponsorship_id": record["id"], "amount": str(amount)})
        self._notify("sponsor_verified", sponsor, {"amount": str(amount), "sponsorship_id": record["id"]})

        log_activity("INFO", "CHAIN", "Sponsorship verified",
                     sponsorship=record["id"], amount=str(amount), tx=short(record["tx_hash"]))
        return VerificationResult.verified(sponsorship=current, applied=True)

    def _mark_rejected(self, record: Dict[str, Any], reason: str) -> VerificationResult:
        applied = self.store.conditional_update(
            "sponsorships",
            {"id": record["id"]},
            {"status": SponsorshipStatus.PENDING.value},
            {"status": SponsorshipStatus.REJECTED.value, "reject_reason": reason},
        )
        current = self.get_sponsorship(record["id"])

        if not applied and current["status"] == SponsorshipStatus.VERIFIED.value:
            return VerificationResult.verified(sponsorship=current, applied=False)

        if applied:
            self._notify("sponsor_rejected", record["sponsor_user_id"], {"sponsorship_id": record["id"]})
            log_activity("WARNING", "CHAIN", "Sponsorship rejected",
                         sponsorship=record["id"], reason=reason, tx=short(record["tx_hash"]))
        return VerificationResult.invalid(current.get("reject_reason") or reason, sponsorship=current)

    # ------------------------------------------------------------------
    # Check-ins
    # ------------------------------------------------------------------

    def _crews_for(self, user_id: str, crew_ids) -> List[str]:
        if crew_ids:
            return [c for c in crew_ids if isinstance(c, str) and c]
        return [m["crew_id"] for m in self.store.get("crew_members", {"user_id": user_id})]

    def _display_name(self, user_id: str) -> str:
        session = self.store.get_one("sessions", {"user_id": user_id})
        return (session or {}).get("display_name") or user_id

    def _notify_crews(self, user_id: str, location: Dict[str, Any], checkins: List[Dict[str, Any]]):
        who = self._display_name(user_id)
        notified = set()
        for checkin in checkins:
            for member in self.store.get("crew_members", {"crew_id": checkin["crew_id"]}):
                recipient = member["user_id"]
                if recipient == user_id or recipient in notified:
                    continue
                notified.add(recipient)
                self._notify("crew_checkin", recipient, {
                    "who": who,
                    "venue": location.get("name"),
                    "crew_id": checkin["crew_id"],
                })

    def _check_in_at(self, user_id: str, platform: str, location: Dict[str, Any], crews: List[str], action: str) -> int:
        created = self.proximity.record_checkins(user_id, platform, location, crews, now=self.clock())
        if created:
            self._award(user_id, platform, action, {"location_id": location["id"], "crews": len(created)})
            self._best_effort("Crew notification", self._notify_crews, user_id, location, created)
        return len(created)

    async def proximity_checkin(self, claim: ProximityClaim) -> VerificationResult:
        """
        Check the caller in at every active venue within range.

        Returns VERIFIED with {locations: [{id, code, name, distance_m, sponsored}], checkins}
        even when nothing matched; matching no venue is not an error.
        """
        if not valid_coordinates(claim.lat, claim.lon):
            return VerificationResult.malformed("bad_coordinates")

        crews = self._crews_for(claim.user_id, claim.crew_ids)
        matched = self.proximity.match(claim.lat, claim.lon)
        total = 0
        locations = []

        for location in matched:
            sponsored = is_sponsored(location)
            action = "sponsored_checkin" if sponsored else "proximity_checkin"
            total += self._check_in_at(claim.user_id, claim.platform, location, crews, action)
            locations.append({
                "id": location["id"],
                "code": location["code"],
                "name": location["name"],
                "distance_m": location["distance_m"],
                "sponsored": sponsored,
            })

        checkin_logger.info(f"📡 Proximity claim {claim.user_id}: {len(locations)} venue(s), {total} new check-in(s)")
        return VerificationResult.verified(locations=locations, checkins=total)

    async def qr_checkin(self, claim: QrCheckinClaim) -> VerificationResult:
        if not isinstance(claim.location_code, str) or not claim.location_code.strip():
            return VerificationResult.malformed("missing_location_code")

        location = self.store.get_one("locations", {"code": claim.location_code.strip(), "active": 1})
        if location is None:
            checkin_logger.warning(f"⚠️ Unknown location code: {claim.location_code[:32]}")
            return VerificationResult.invalid("unknown_location")

        crews = self._crews_for(claim.user_id, claim.crew_ids)
        total = self._check_in_at(claim.user_id, claim.platform, location, crews, "qr_checkin")

        return VerificationResult.verified(
            location={"id": location["id"], "code": location["code"], "name": location["name"]},
            checkins=total,
        )
