"""
Verification API Routes

Anonymous claim submission, voting and tuple lookups.
Every write runs the full abuse gate pipeline before it reaches the ledger.
"""
from datetime import datetime
from typing import Callable, Optional
import logging

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..config import EngineConfig
from ..database import get_db
from ..dependencies import get_clock, get_config, get_identity_extractor, get_pipeline, peer_address
from ..errors import InvariantViolation, NotFoundError, PolicyRejection
from ..models.db_models import ClaimDirection, ClaimSource, VoteDirection
from ..services.abuse import AbuseGatePipeline, ActionClass, ClaimSubmission, VoteSubmission
from ..services.identity import IdentitySignalExtractor
from ..services.ledger import VerificationLedgerService
from ..services.submission import SubmissionResult, SubmissionService
from .errors import internal_http_error, not_found_http_error, policy_http_error


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/verify", tags=["verify"])

DEGRADED_HEADER = "X-Security-Degraded"


# =============================================================================
# REQUEST MODELS
# =============================================================================

class SubmitClaimRequest(BaseModel):
    """Crowd claim about one provider-plan(-location) tuple."""
    provider_id: str = Field(..., min_length=1, max_length=64, description="Provider identifier (e.g. NPI)")
    plan_id: str = Field(..., min_length=1, max_length=64, description="Insurance plan identifier")
    location_id: Optional[str] = Field(None, max_length=64, description="Practice location, if location-specific")
    claim: ClaimDirection = Field(..., description="ACCEPTED or NOT_ACCEPTED")
    specialty: Optional[str] = Field(None, max_length=200, description="Provider specialty, free text")
    actor_contact: Optional[str] = Field(None, max_length=255, description="Optional self-reported contact")
    bot_token: Optional[str] = Field(None, description="Bot-scoring token from the client widget")
    website: Optional[str] = Field(None, description="Leave empty")


class VoteRequest(BaseModel):
    """Up/down vote on an existing claim."""
    vote: VoteDirection = Field(..., description="up or down")
    bot_token: Optional[str] = Field(None, description="Bot-scoring token from the client widget")
    website: Optional[str] = Field(None, description="Leave empty")


# =============================================================================
# HELPERS
# =============================================================================

def _respond(result: SubmissionResult, response: Response) -> dict:
    if result.degraded:
        response.headers[DEGRADED_HEADER] = "true"
    return {
        "success": True,
        "data": result.payload,
        "degraded": result.degraded,
    }


def _check_search_rate(pipeline: AbuseGatePipeline, identity, response: Response) -> None:
    admission = pipeline.check_rate(ActionClass.SEARCH, identity)
    if admission.rejection is not None:
        raise policy_http_error(admission.rejection)
    if admission.degraded:
        response.headers[DEGRADED_HEADER] = "true"


# =============================================================================
# WRITE ENDPOINTS
# =============================================================================

@router.post("", status_code=201, response_model=dict)
def submit_claim(
    body: SubmitClaimRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_config),
    pipeline: AbuseGatePipeline = Depends(get_pipeline),
    extractor: IdentitySignalExtractor = Depends(get_identity_extractor),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    """
    Submit a claim.

    Pipeline: rate limit -> decoy field -> bot score -> duplicate window.
    Returns the claim, the tuple aggregate and its confidence breakdown.
    """
    identity = extractor.extract(peer_address(request), request.headers, body.actor_contact)
    submission = ClaimSubmission(
        provider_id=body.provider_id.strip(),
        plan_id=body.plan_id.strip(),
        location_id=body.location_id.strip() if body.location_id else None,
        claim=body.claim.value,
        identity=identity,
        source=ClaimSource.CROWDSOURCE.value,
        specialty=body.specialty,
        decoy_value=body.website,
        bot_token=body.bot_token,
    )

    service = SubmissionService(db, config, pipeline, clock)
    try:
        result = service.submit_claim(submission)
    except PolicyRejection as e:
        raise policy_http_error(e)
    except InvariantViolation as e:
        logger.error(f"Claim rejected by invariant check: {e} {e.context}")
        raise internal_http_error()

    return _respond(result, response)


@router.post("/{claim_id}/vote", response_model=dict)
def vote_on_claim(
    claim_id: str,
    body: VoteRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_config),
    pipeline: AbuseGatePipeline = Depends(get_pipeline),
    extractor: IdentitySignalExtractor = Depends(get_identity_extractor),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    """
    Vote on a claim.

    A repeated vote in the same direction is rejected (409); the opposite
    direction flips the existing vote.
    """
    identity = extractor.extract(peer_address(request), request.headers)
    submission = VoteSubmission(
        claim_id=claim_id,
        direction=body.vote.value,
        identity=identity,
        bot_token=body.bot_token,
        decoy_value=body.website,
    )

    service = SubmissionService(db, config, pipeline, clock)
    try:
        result = service.submit_vote(submission)
    except PolicyRejection as e:
        raise policy_http_error(e)
    except NotFoundError as e:
        raise not_found_http_error(e)
    except InvariantViolation as e:
        logger.error(f"Vote rejected by invariant check: {e} {e.context}")
        raise internal_http_error()

    return _respond(result, response)


# =============================================================================
# READ ENDPOINTS
# =============================================================================

@router.get("/stats", response_model=dict)
def get_ledger_stats(
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_config),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    """Ledger totals by source, direction and aggregate status."""
    ledger = VerificationLedgerService(db, config, clock)
    return {"success": True, "data": ledger.ledger_stats()}


@router.get("/recent", response_model=dict)
def get_recent_claims(
    request: Request,
    response: Response,
    limit: int = Query(20, ge=1, le=100),
    provider_id: Optional[str] = Query(None),
    plan_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_config),
    pipeline: AbuseGatePipeline = Depends(get_pipeline),
    extractor: IdentitySignalExtractor = Depends(get_identity_extractor),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    """Most recent live claims, identity signals stripped."""
    _check_search_rate(pipeline, extractor.extract(peer_address(request), request.headers), response)

    ledger = VerificationLedgerService(db, config, clock)
    claims = ledger.recent_claims(limit=limit, provider_id=provider_id, plan_id=plan_id)
    return {"success": True, "data": {"claims": claims, "count": len(claims)}}


@router.get("/{provider_id}/{plan_id}", response_model=dict)
def get_tuple(
    provider_id: str,
    plan_id: str,
    request: Request,
    response: Response,
    location_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_config),
    pipeline: AbuseGatePipeline = Depends(get_pipeline),
    extractor: IdentitySignalExtractor = Depends(get_identity_extractor),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    """Current answer for a tuple: aggregate, confidence breakdown and live claims."""
    _check_search_rate(pipeline, extractor.extract(peer_address(request), request.headers), response)

    ledger = VerificationLedgerService(db, config, clock)
    try:
        view = ledger.get_tuple_view(provider_id, plan_id, location_id)
    except NotFoundError as e:
        raise not_found_http_error(e)
    return {"success": True, "data": view}
