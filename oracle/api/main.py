"""
GreenKarma Oracle: API Gateway
FastAPI server exposing the odometer fraud ledger to the mobile web app.

Thin adapter only: decodes submissions, derives fingerprints, calls the
ChainRegistry and records rewards for accepted readings. All fraud logic
lives in ``ledger``.

Endpoints:
  - POST /api/register                     register a vehicle, open its chain
  - POST /api/upload-odometer              submit a reading (rate-limited)
  - GET  /api/wallet/{vehicle}             reward totals
  - GET  /api/reward-history/{vehicle}     accepted readings, newest first
  - GET  /api/blockchain/{vehicle}         chain summary
  - POST /api/blockchain/verify/{vehicle}  integrity verification
  - POST /api/admin/reactivate/{vehicle}   lift a suspension (admin key)
  - GET  /api/admin/fraud-check/{vehicle}  dedup entries and risk level (admin key)
  - GET  /api/network/status               dedup oracle status
  - GET  /api/network/tx/{tx_hash}         look up a recorded claim
"""

import logging
import os
import time
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import APIRouter, FastAPI, HTTPException, Request, Security, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security.api_key import APIKeyHeader
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from ledger.dedup_oracle import CrossAppDedupOracle, InMemoryDedupOracle, RedisDedupOracle
from ledger.errors import ChainNotFoundError, DuplicateChainError, OracleUnavailableError
from ledger.fingerprint import (
    decode_image_base64,
    device_fingerprint,
    extract_image_metadata,
    image_fingerprint,
    parse_location_accuracy,
)
from ledger.heuristics import MSG_ORACLE_UNAVAILABLE, ValidationProof
from ledger.registry import ChainRegistry, ReadingSubmission
from ledger.rewards import RewardBook, RewardRecord, compute_reward

load_dotenv()

# ─── Setup ────────────────────────────────────────────────────────────────────
logging.basicConfig(level=logging.INFO)
log = logging.getLogger("greenkarma.api")

API_VERSION       = "1.0.0"
DEFAULT_ADMIN_KEY = "greenkarma-admin-change-in-prod"
ADMIN_API_KEY     = os.getenv("ADMIN_API_KEY", DEFAULT_ADMIN_KEY)
ADMIN_KEY_HEADER  = APIKeyHeader(name="X-GreenKarma-Admin-Key", auto_error=True)
APP_SOURCE        = os.getenv("APP_SOURCE", "GreenKarma")

# Limit configurable via env: e.g. RATE_LIMIT_UPLOAD="10/minute"
RATE_LIMIT_UPLOAD = os.getenv("RATE_LIMIT_UPLOAD", "30/minute")
limiter = Limiter(key_func=get_remote_address)

_raw_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173")
ALLOWED_ORIGINS: List[str] = [o.strip() for o in _raw_origins.split(",") if o.strip()]

router = APIRouter()


# ─── Auth ─────────────────────────────────────────────────────────────────────
async def verify_admin_key(api_key: str = Security(ADMIN_KEY_HEADER)) -> str:
    if api_key != ADMIN_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key",
        )
    return api_key


# ─── Request Models ───────────────────────────────────────────────────────────
class RegisterRequest(BaseModel):
    name:           str = Field(..., min_length=1)
    phone:          str = Field(..., min_length=5)
    vehicle_number: str = Field(..., min_length=2, max_length=20)
    rc_image_url:   Optional[str] = None


class UploadOdometerRequest(BaseModel):
    vehicle_number:     str
    km:                 int            = Field(..., ge=0)
    odometer_image_url: str            = Field(default="", description="Stored photo URL")
    image_data:         Optional[str]  = Field(default=None, description="Base64 or data-URL photo")
    location:           Optional[str]  = Field(default=None, description="Geolocation JSON string")
    ocr_confidence:     Optional[float] = Field(default=None, ge=0.0, le=1.0)


class ReactivateRequest(BaseModel):
    operator: str = Field(..., min_length=1)


def _normalize_vehicle(vehicle_number: str) -> str:
    return vehicle_number.strip().upper()


def _state(request: Request):
    return request.app.state


def _require_user(request: Request, vehicle_number: str) -> Dict[str, Any]:
    user = _state(request).users.get(_normalize_vehicle(vehicle_number))
    if user is None:
        raise HTTPException(status_code=404, detail="Vehicle not found")
    return user


# ─── Routes ───────────────────────────────────────────────────────────────────

@router.get("/health")
async def health(request: Request):
    return {
        "status":    "operational",
        "vehicles":  len(_state(request).registry),
        "version":   API_VERSION,
        "timestamp": int(time.time()),
    }


@router.post("/api/register")
async def register(request: Request, body: RegisterRequest) -> Dict[str, Any]:
    state   = _state(request)
    vehicle = _normalize_vehicle(body.vehicle_number)
    if vehicle in state.users:
        raise HTTPException(status_code=400, detail="Vehicle number already registered")

    try:
        await state.registry.create_chain(vehicle)
    except DuplicateChainError as e:
        raise HTTPException(status_code=400, detail=str(e))

    user = {
        "id":             len(state.users) + 1,
        "name":           body.name,
        "phone":          body.phone,
        "vehicle_number": vehicle,
        "rc_image_url":   body.rc_image_url,
        "registered_at":  int(time.time()),
    }
    state.users[vehicle] = user
    log.info(f"[REGISTER] {vehicle} registered")
    return {"user": user}


@router.post("/api/upload-odometer")
@limiter.limit(RATE_LIMIT_UPLOAD)
async def upload_odometer(request: Request, body: UploadOdometerRequest):
    state   = _state(request)
    vehicle = _normalize_vehicle(body.vehicle_number)
    _require_user(request, vehicle)

    image_bytes = decode_image_base64(body.image_data)
    if image_bytes is None and not body.odometer_image_url:
        raise HTTPException(status_code=422, detail="image_data or odometer_image_url is required")

    img_hash  = image_fingerprint(image_bytes or body.odometer_image_url)
    device_fp = device_fingerprint(
        request.headers.get("user-agent", ""),
        request.client.host if request.client else "",
    )
    reading = ReadingSubmission(
        odometer_km        = body.km,
        image_fingerprint  = img_hash,
        device_fingerprint = device_fp,
        location           = body.location,
        proof              = ValidationProof(
            ocr_confidence    = body.ocr_confidence,
            location_accuracy = parse_location_accuracy(body.location),
            image_metadata    = extract_image_metadata(image_bytes),
        ),
    )

    try:
        result = await state.registry.add_reading(vehicle, reading)
    except ChainNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    if not result.success:
        if result.fraud_alert == MSG_ORACLE_UNAVAILABLE:
            raise HTTPException(status_code=503, detail=MSG_ORACLE_UNAVAILABLE)
        log.warning(f"[UPLOAD] {vehicle} km={body.km} rejected: {result.fraud_alert} {result.reasons}")
        return JSONResponse(
            status_code=400,
            content={
                "message":            f"Fraud detected: {result.fraud_alert}",
                "fraud_alert":        True,
                "reasons":            result.reasons,
                "blockchain_summary": state.registry.summarize(vehicle),
            },
        )

    previous = state.rewards.last(vehicle)
    distance, co2_saved, reward_amount = compute_reward(previous.km if previous else None, body.km)
    record = state.rewards.add(RewardRecord(
        vehicle_id   = vehicle,
        km           = body.km,
        distance_km  = distance,
        co2_saved    = co2_saved,
        reward_given = reward_amount,
        block_hash   = result.block.hash,
        tx_hash      = result.tx_hash,
        image_hash   = img_hash,
        fraud_score  = result.score,
    ))
    log.info(f"[UPLOAD] {vehicle} km={body.km} accepted, reward={reward_amount}")
    return {
        "reward": record.to_dict(),
        "blockchain": {
            "block_hash":  result.block.hash,
            "block_index": result.block.index,
            "tx_hash":     result.tx_hash,
            "verified":    True,
            "fraud_score": result.score,
            "reasons":     result.reasons,
        },
    }


@router.get("/api/user/{vehicle_number}")
async def get_user(request: Request, vehicle_number: str) -> Dict[str, Any]:
    return {"user": _require_user(request, vehicle_number)}


@router.get("/api/wallet/{vehicle_number}")
async def wallet(request: Request, vehicle_number: str) -> Dict[str, Any]:
    user = _require_user(request, vehicle_number)
    return {"user": user, **_state(request).rewards.totals(user["vehicle_number"])}


@router.get("/api/reward-history/{vehicle_number}")
async def reward_history(request: Request, vehicle_number: str) -> Dict[str, Any]:
    user = _require_user(request, vehicle_number)
    records = _state(request).rewards.history(user["vehicle_number"])
    return {"rewards": [r.to_dict() for r in records]}


@router.get("/api/blockchain/{vehicle_number}")
async def blockchain_summary(request: Request, vehicle_number: str) -> Dict[str, Any]:
    user = _require_user(request, vehicle_number)
    try:
        summary = _state(request).registry.summarize(user["vehicle_number"])
    except ChainNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"blockchain_summary": summary}


@router.post("/api/blockchain/verify/{vehicle_number}")
async def verify_blockchain(request: Request, vehicle_number: str) -> Dict[str, Any]:
    user = _require_user(request, vehicle_number)
    registry = _state(request).registry
    try:
        report = registry.verify_integrity(user["vehicle_number"])
    except ChainNotFoundError:
        raise HTTPException(status_code=404, detail="No blockchain found")
    return {
        "verified": report.is_valid,
        "errors":   report.errors,
        "summary":  registry.summarize(user["vehicle_number"]),
    }


@router.post("/api/admin/reactivate/{vehicle_number}")
async def reactivate_chain(
    request:        Request,
    vehicle_number: str,
    body:           ReactivateRequest,
    api_key:        str = Security(verify_admin_key),
) -> Dict[str, Any]:
    vehicle = _normalize_vehicle(vehicle_number)
    try:
        chain = await _state(request).registry.reactivate(vehicle, body.operator)
    except ChainNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    log.warning(f"[ADMIN] {vehicle} reactivated by {body.operator}")
    return {"blockchain_summary": chain.summarize()}


@router.get("/api/admin/fraud-check/{vehicle_number}")
async def fraud_check(
    request:        Request,
    vehicle_number: str,
    api_key:        str = Security(verify_admin_key),
) -> Dict[str, Any]:
    state   = _state(request)
    vehicle = _normalize_vehicle(vehicle_number)
    chain   = state.registry.get_chain(vehicle)
    if chain is None:
        raise HTTPException(status_code=404, detail="vehicle chain not found")
    try:
        entries = await state.oracle.entries_for_vehicle(vehicle)
    except OracleUnavailableError:
        raise HTTPException(status_code=503, detail=MSG_ORACLE_UNAVAILABLE)

    summary = chain.summarize()
    return {
        "vehicle_number":       vehicle,
        "global_entries":       entries,
        "risk_level":           summary["risk_level"],
        "fraud_score":          summary["fraud_score"],
        "cross_app_duplicates": any("cross_app_duplicate" in a.reasons for a in chain.rejected_attempts),
    }


@router.get("/api/network/status")
async def network_status(request: Request) -> Dict[str, Any]:
    return await _state(request).oracle.network_status()


@router.get("/api/network/tx/{tx_hash}")
async def verify_transaction(request: Request, tx_hash: str) -> Dict[str, Any]:
    try:
        entry = await _state(request).oracle.verify_transaction(tx_hash)
    except OracleUnavailableError:
        raise HTTPException(status_code=503, detail=MSG_ORACLE_UNAVAILABLE)
    if entry is None:
        return {"verified": False, "error": "Transaction not found"}
    return {"verified": True, "data": entry}


# ─── App factory ──────────────────────────────────────────────────────────────
def _build_oracle() -> CrossAppDedupOracle:
    backend = os.getenv("DEDUP_BACKEND", "memory").lower()
    if backend == "redis":
        url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
        log.info(f"Dedup oracle: redis ({url})")
        return RedisDedupOracle.from_url(url)
    log.info("Dedup oracle: in-memory")
    return InMemoryDedupOracle()


def create_app(
    registry: Optional[ChainRegistry]       = None,
    oracle:   Optional[CrossAppDedupOracle] = None,
) -> FastAPI:
    if registry is None:
        registry = ChainRegistry(oracle=oracle or _build_oracle(), app_source=APP_SOURCE)

    app = FastAPI(
        title="GreenKarma Odometer Fraud Oracle",
        description="Hash-chained odometer ledger with fraud scoring for EV carbon rewards",
        version=API_VERSION,
    )
    app.state.registry = registry
    app.state.oracle   = registry.oracle
    app.state.rewards  = RewardBook()
    app.state.users    = {}

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.include_router(router)

    if ADMIN_API_KEY == DEFAULT_ADMIN_KEY:
        log.critical(
            f"DEFAULT ADMIN KEY IN USE ('{DEFAULT_ADMIN_KEY}'). "
            "Set a strong ADMIN_API_KEY in .env before going to production."
        )
    return app


app = create_app()
