"""
FastAPI Backend for KYC adjudication

Provides REST API endpoints for:
- Supported country list
- Submission status lookup
- Verification submission (adjudication), idempotent per transaction hash
"""

import re
import json
import time
import logging
from datetime import date
from typing import Optional

from fastapi import FastAPI, File, UploadFile, Form, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config.settings import settings, configure_logging
from config.countries import get_supported_countries
from config.tiers import MAX_TIER, Tier
from backend.adjudicator import DecisionStatus, SubmissionEvidence, adjudicate
from backend.chain import ContractError, KYCContract


logger = logging.getLogger(__name__)

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


# ============================================================================
# SUBMISSION STORE
# ============================================================================

class SubmissionStore:
    """In-memory record of adjudicated submissions, keyed by address and idempotency key."""

    def __init__(self):
        self._by_address: dict[str, dict] = {}
        self._responses: dict[str, dict] = {}

    def get(self, address: str) -> Optional[dict]:
        return self._by_address.get(address.lower())

    def response_for(self, idempotency_key: str) -> Optional[dict]:
        return self._responses.get(idempotency_key.lower())

    def save(self, address: str, idempotency_key: str, record: dict, response: dict) -> None:
        self._by_address[address.lower()] = record
        self._responses[idempotency_key.lower()] = response

    def __len__(self) -> int:
        return len(self._responses)


# ============================================================================
# APP SETUP
# ============================================================================

app = FastAPI(
    title="KYC Adjudication API",
    description="Tiered KYC verification decisions for on-chain onboarding",
    version="1.0.0"
)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify allowed origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.store = SubmissionStore()
app.state.contract = None  # KYCContract with the verifier role, when configured


def get_store() -> SubmissionStore:
    return app.state.store


def get_contract() -> Optional[KYCContract]:
    return app.state.contract


# ============================================================================
# RESPONSE MODELS
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    api_version: str
    gemini_configured: bool
    chain_configured: bool


class CountryResponse(BaseModel):
    code: int
    name: str
    blocked: bool


def _health() -> HealthResponse:
    return HealthResponse(
        status="healthy",
        api_version="1.0.0",
        gemini_configured=bool(settings.GEMINI_API_KEY),
        chain_configured=get_contract() is not None,
    )


def _require_address(address: str) -> str:
    if not address or not ADDRESS_PATTERN.match(address):
        raise HTTPException(status_code=400, detail="Invalid wallet address")
    return address.lower()


def _parse_date(value: Optional[str], field: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {field}: expected YYYY-MM-DD")


def _parse_json(value: Optional[str]) -> Optional[dict]:
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return None


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.get("/", response_model=HealthResponse)
async def root():
    """Health check endpoint."""
    return _health()


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return _health()


@app.get("/api/kyc/countries", response_model=list[CountryResponse])
async def get_kyc_countries():
    """Countries offered in the KYC form, blocked jurisdictions flagged."""
    try:
        countries = get_supported_countries(settings.BLOCKED_COUNTRIES)
        return [CountryResponse(**c.model_dump()) for c in countries]
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to load countries: {str(e)}")


@app.get("/api/kyc/status/{address}")
async def get_kyc_status(address: str):
    """
    Latest adjudicated submission for a wallet.
    Used by the client to recover the pending tier of a first-time request.
    """
    record = get_store().get(_require_address(address))
    if record is None:
        return {"found": False, "submission": None}
    return {"found": True, "submission": record}


@app.post("/api/kyc/submit")
async def submit_kyc(
    walletAddress: str = Form(...),
    requestedLevel: int = Form(1),
    currentLevel: int = Form(0),
    chainId: Optional[int] = Form(None),
    txHash: Optional[str] = Form(None),
    fullName: Optional[str] = Form(None),
    email: Optional[str] = Form(None),
    dateOfBirth: Optional[str] = Form(None),
    countryCode: int = Form(0),
    documentType: Optional[str] = Form(None),
    documentNumber: Optional[str] = Form(None),
    expiryDate: Optional[str] = Form(None),
    faceScore: int = Form(0),
    livenessScore: int = Form(0),
    livenessPassed: bool = Form(False),
    idValidation: Optional[str] = Form(None),
    livenessResult: Optional[str] = Form(None),
    idDocumentFront: Optional[UploadFile] = File(None),
    idDocumentBack: Optional[UploadFile] = File(None),
    selfie: Optional[UploadFile] = File(None),
    addressProof: Optional[UploadFile] = File(None),
    accreditedProof: Optional[UploadFile] = File(None),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    """
    Adjudicate a paid KYC request or upgrade.

    A request carrying an idempotency key (or txHash) that was already
    adjudicated returns the stored decision without re-evaluating.
    """
    start_time = time.time()
    address = _require_address(walletAddress)

    if not 1 <= requestedLevel <= MAX_TIER:
        raise HTTPException(status_code=400, detail=f"Invalid requested level: {requestedLevel}")

    key = idempotency_key or txHash
    if key:
        previous = get_store().response_for(key)
        if previous is not None:
            logger.info(f"[KYC API] Replaying decision for {key[:12]}...")
            return {**previous, "replayed": True}

    is_upgrade = currentLevel > 0
    evidence = SubmissionEvidence(
        requested_level=requestedLevel,
        current_level=currentLevel,
        full_name=fullName,
        date_of_birth=_parse_date(dateOfBirth, "dateOfBirth"),
        country_code=countryCode,
        has_id=idDocumentFront is not None,
        has_selfie=selfie is not None,
        face_score=faceScore,
        liveness_score=livenessScore,
        liveness_passed=livenessPassed,
        has_accredited_proof=accreditedProof is not None,
    )

    try:
        decision = adjudicate(evidence)
        status = decision.status
        auto_approved = decision.can_auto_approve
        approval_tx = None

        contract = get_contract()
        if contract is not None:
            approval_tx, status, auto_approved = await _write_back(contract, address, evidence, decision)

        tier_name = Tier(requestedLevel).label
        if auto_approved:
            message = f"{tier_name} {'upgrade' if is_upgrade else 'KYC'} auto-approved"
        elif status == DecisionStatus.REJECTED:
            message = decision.rejection_details
        else:
            message = f"{tier_name} {'upgrade' if is_upgrade else 'application'} submitted for review"

        response = {
            "success": status != DecisionStatus.REJECTED,
            "message": message,
            "autoApproved": auto_approved,
            "verificationScore": decision.verification_score,
            "status": status,
            "isUpgrade": is_upgrade,
            "txHash": approval_tx,
            "rejectionReason": decision.rejection_reason.name,
            "processingTime": int((time.time() - start_time) * 1000),
        }

        record = {
            "walletAddress": address,
            "requestedLevel": requestedLevel,
            "currentLevel": currentLevel,
            "chainId": chainId,
            "txHash": txHash,
            "status": status,
            "verificationScore": decision.verification_score,
            "documentType": documentType,
            "countryCode": countryCode,
            "email": email,
            "documentNumber": documentNumber,
            "expiryDate": expiryDate,
            "idValidation": _parse_json(idValidation),
            "liveness": _parse_json(livenessResult),
            "files": [
                upload.filename
                for upload in (idDocumentFront, idDocumentBack, selfie, addressProof, accreditedProof)
                if upload is not None
            ],
            "submittedAt": int(time.time()),
        }
        get_store().save(address, key or f"{address}-{record['submittedAt']}", record, response)
        return response

    except HTTPException:
        raise
    except Exception as e:
        logger.exception("[KYC API] Adjudication failed")
        raise HTTPException(status_code=500, detail=f"Adjudication failed: {str(e)}")


async def _write_back(contract: KYCContract, address: str, evidence: SubmissionEvidence, decision):
    """
    Apply an auto-approval or a rejection through the verifier role.
    Returns (verifier_tx, status, auto_approved); manual-review decisions stay pending on chain.
    """
    if evidence.is_upgrade:
        if not await contract.has_upgrade_pending(address):
            raise HTTPException(status_code=409, detail="No pending on-chain upgrade request for this address")
    else:
        submission = await contract.get_submission(address)
        if not submission.status.is_pending:
            raise HTTPException(status_code=409, detail="No pending on-chain KYC request for this address")

    if decision.can_auto_approve and decision.verification_score >= settings.AUTO_APPROVAL_THRESHOLD:
        try:
            if evidence.is_upgrade:
                tx = await contract.approve_upgrade(address)
            else:
                tx = await contract.approve_kyc(address, evidence.requested_level)
            return tx, DecisionStatus.AUTO_APPROVED, True
        except ContractError as e:
            logger.warning(f"[KYC API] Auto-approve failed, leaving for manual review: {e}")

    elif decision.status == DecisionStatus.REJECTED:
        try:
            if evidence.is_upgrade:
                tx = await contract.reject_upgrade(address)
            else:
                tx = await contract.reject_kyc(address, int(decision.rejection_reason))
            return tx, DecisionStatus.REJECTED, False
        except ContractError as e:
            logger.warning(f"[KYC API] Reject failed, leaving for manual review: {e}")

    return None, "pending", False


if __name__ == "__main__":
    import uvicorn
    configure_logging()
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
