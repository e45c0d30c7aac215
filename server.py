"""
FlowB Backend - FastAPI Server
Project: FlowB — Multi-Protocol Trust Verification
License: Apache 2.0
© 2026 FlowB Project

Thin HTTP layer over the verification orchestrator: parses requests into
claims, maps VerificationResult outcomes to status codes.
"""

import os
import time
from decimal import Decimal, InvalidOperation
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from logger import api_logger, logger
from trust_config import ConfigurationError, TrustConfig
from verification_orchestrator import VerificationOrchestrator
from verification_types import (
    IdentityClaim,
    Outcome,
    PaymentClaim,
    Platform,
    ProximityClaim,
    QrCheckinClaim,
    VerificationResult,
)

# Generic messages only, reason codes stay in the logs
ERROR_RESPONSES = {
    Outcome.MALFORMED: (400, "Invalid request"),
    Outcome.INVALID: (401, "Verification failed"),
    Outcome.TRANSIENT: (503, "Verification temporarily unavailable, try again"),
}


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def result_error(result: VerificationResult) -> JSONResponse:
    status_code, message = ERROR_RESPONSES[result.outcome]
    return error_response(status_code, message)


async def read_json(req: Request) -> Optional[dict]:
    try:
        data = await req.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def serialize_sponsorship(record: dict) -> dict:
    return {
        "id": record["id"],
        "sponsorUserId": record["sponsor_user_id"],
        "targetType": record["target_type"],
        "targetId": record["target_id"],
        "amountUsdc": str(record["amount_usdc"]),
        "verifiedAmountUsdc": record.get("verified_amount_usdc"),
        "txHash": record["tx_hash"],
        "status": record["status"],
        "rejectReason": record.get("reject_reason"),
        "createdAt": record.get("created_at"),
        "verifiedAt": record.get("verified_at"),
    }


def create_app(config: Optional[TrustConfig] = None, orchestrator: Optional[VerificationOrchestrator] = None) -> FastAPI:
    config = config or TrustConfig.from_env()
    orchestrator = orchestrator or VerificationOrchestrator(config)

    app = FastAPI(title="FlowB Trust Verification", version="1.0.0")
    app.state.config = config
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(req: Request, exc: ConfigurationError):
        logger.error(f"❌ Configuration error on {req.url.path}: {exc}")
        return error_response(500, "Server is not configured for this operation")

    @app.on_event("startup")
    async def startup_event():
        logger.info("🚀 FlowB trust server started")
        logger.info(f"   📍 Host: {config.host}:{config.port}")
        logger.info(f"   🔐 CORS Origins: {list(config.cors_origins)}")
        for name in config.missing():
            logger.warning(f"   ⚠️ {name} not set")

        orchestrator.start_worker()
        requeued = await orchestrator.requeue_pending()
        logger.info(f"   ⛓️  Sponsorship verification queue started ({requeued} pending re-queued)")

    @app.on_event("shutdown")
    async def shutdown_event():
        await orchestrator.shutdown()
        logger.info("🛑 FlowB trust server stopped")

    def current_session(req: Request) -> Optional[dict]:
        return orchestrator.authenticate(req.headers.get("authorization"))

    async def login(platform: Platform, raw_assertion) -> JSONResponse:
        result = await orchestrator.handle(IdentityClaim(platform, raw_assertion))
        if not result.ok:
            return result_error(result)
        return JSONResponse({"token": result.data["token"], "user": result.data["user"]})

    # ===== HEALTH =====

    @app.get("/api/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": "FlowB Trust v1.0",
            "timestamp": int(time.time()),
            "database": "connected" if os.path.exists(config.db_path) else "disconnected",
            "worker": bool(orchestrator.queue and orchestrator.queue.is_running),
            "unconfigured": config.missing(),
        }

    # ===== AUTH =====

    @app.post("/api/v1/auth/telegram")
    async def auth_telegram(req: Request):
        """Telegram Mini App: {"initData": "<query string>"}"""
        data = await read_json(req)
        if not data or not isinstance(data.get("initData"), str) or not data["initData"]:
            return error_response(400, "Missing initData")
        return await login(Platform.TELEGRAM, data["initData"])

    @app.post("/api/v1/auth/telegram-widget")
    async def auth_telegram_widget(req: Request):
        """Telegram Login Widget: flat auth fields incl. hash and auth_date"""
        data = await read_json(req)
        if not data:
            return error_response(400, "Missing auth data")
        return await login(Platform.TELEGRAM, data)

    @app.post("/api/v1/auth/farcaster")
    async def auth_farcaster(req: Request):
        """{"quickAuthToken": "..."} or {"message": "...", "signature": "..."}"""
        data = await read_json(req)
        if not data:
            return error_response(400, "Missing Farcaster credentials")
        return await login(Platform.FARCASTER, data)

    @app.post("/api/v1/auth/app")
    async def auth_app(req: Request):
        data = await read_json(req)
        if not data:
            return error_response(400, "Missing credentials")
        return await login(Platform.APP, data)

    @app.get("/api/v1/me")
    async def me(req: Request):
        session = current_session(req)
        if not session:
            return error_response(401, "Unauthorized")
        return {
            "userId": session["sub"],
            "platform": session.get("platform"),
            "username": session.get("username"),
            "tgId": session.get("tg_id"),
            "fid": session.get("fid"),
            "role": session.get("role"),
        }

    # ===== SPONSORSHIPS =====

    @app.get("/api/v1/sponsor/wallet")
    async def sponsor_wallet():
        return {"address": config.require_sponsor_wallet(), "chain": "base", "token": "USDC"}

    @app.post("/api/v1/sponsor")
    async def create_sponsorship(req: Request):
        """
        Request:
            {"targetType": "event"|"location", "targetId": "...", "amountUsdc": 5.0, "txHash": "0x..."}

        Response (201): the pending sponsorship; on-chain confirmation runs in the background
        """
        session = current_session(req)
        if not session:
            return error_response(401, "Unauthorized")

        data = await read_json(req)
        if not data:
            return error_response(400, "Invalid request")
        try:
            amount = Decimal(str(data.get("amountUsdc")))
        except (InvalidOperation, ValueError):
            return error_response(400, "amountUsdc must be a number")

        result = await orchestrator.handle(PaymentClaim(
            sponsor_subject=session["sub"],
            platform=session.get("platform") or Platform.TELEGRAM.value,
            target_type=data.get("targetType"),
            target_id=data.get("targetId"),
            amount_claimed=amount,
            tx_hash=data.get("txHash"),
        ))
        if not result.ok:
            return result_error(result)
        return JSONResponse(status_code=201, content=serialize_sponsorship(result.data["sponsorship"]))

    @app.post("/api/v1/sponsor/{sponsorship_id}/verify")
    async def verify_sponsorship(sponsorship_id: str, req: Request):
        """Manual re-verification of a pending sponsorship"""
        session = current_session(req)
        if not session:
            return error_response(401, "Unauthorized")

        if orchestrator.get_sponsorship(sponsorship_id) is None:
            return error_response(404, "Sponsorship not found")

        result = await orchestrator.confirm_sponsorship(sponsorship_id)
        if result.retryable:
            return result_error(result)

        record = result.data.get("sponsorship")
        body = serialize_sponsorship(record) if record else {}
        body["verified"] = result.ok
        api_logger.info(f"🔁 Manual verify {sponsorship_id} by {session['sub']}: {record['status'] if record else result.reason}")
        return body

    # ===== CHECK-INS =====

    @app.post("/api/v1/flow/checkin/proximity")
    async def checkin_proximity(req: Request):
        """{"latitude": float, "longitude": float, "crewId": optional}"""
        session = current_session(req)
        if not session:
            return error_response(401, "Unauthorized")

        data = await read_json(req)
        if not data:
            return error_response(400, "Invalid request")

        crew_id = data.get("crewId")
        result = await orchestrator.handle(ProximityClaim(
            user_id=session["sub"],
            platform=session.get("platform") or Platform.TELEGRAM.value,
            lat=data.get("latitude"),
            lon=data.get("longitude"),
            crew_ids=(crew_id,) if crew_id else (),
        ))
        if not result.ok:
            return result_error(result)
        return {"locations": result.data["locations"], "checkins": result.data["checkins"]}

    @app.post("/api/v1/flow/checkin/qr")
    async def checkin_qr(req: Request):
        """{"code": "<location code>", "crewId": optional}"""
        session = current_session(req)
        if not session:
            return error_response(401, "Unauthorized")

        data = await read_json(req)
        if not data:
            return error_response(400, "Invalid request")

        crew_id = data.get("crewId")
        result = await orchestrator.handle(QrCheckinClaim(
            user_id=session["sub"],
            platform=session.get("platform") or Platform.TELEGRAM.value,
            location_code=data.get("code"),
            crew_ids=(crew_id,) if crew_id else (),
        ))
        if result.outcome is Outcome.INVALID:
            return error_response(404, "Location not found")
        if not result.ok:
            return result_error(result)
        return {"location": result.data["location"], "checkins": result.data["checkins"]}

    return app


if __name__ == "__main__":
    import uvicorn

    settings = TrustConfig.from_env()
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )
