"""
Consensus Engine - FastAPI Application

Crowdsourced verification consensus with layered anti-abuse gates.

Architecture:
- Request -> IdentitySignalExtractor -> ActorIdentity
- ActorIdentity + write -> AbuseGatePipeline -> Admission
- Admission -> VerificationLedgerService -> claim/vote + recomputed aggregate
- Aggregate -> ConfidenceScorer -> ConsensusStateMachine -> status
"""
from contextlib import asynccontextmanager
import logging
import os
from typing import Optional

from fastapi import FastAPI

from .config import get_settings
from .database import init_db
from .routers import verify_router, admin_router


def configure_logging(level: Optional[str] = None) -> None:
    """Single stream handler on the root logger, level from LOG_LEVEL."""
    logging.basicConfig(
        level=(level or os.getenv("LOG_LEVEL", "INFO")).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize logging and database on startup."""
    configure_logging()
    init_db()
    yield


# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Consensus Engine",
    description="""
    Crowdsourced Verification Consensus & Anti-Abuse Scoring Engine

    Decides, from anonymous submissions, whether "provider X accepts plan Y"
    is trustworthy enough to surface, and protects that process from abuse.

    ## Write path
    1. **Rate limiter**: sliding window per actor and action class
    2. **Decoy field**: automated submissions get a fake success
    3. **Bot score**: external humanness score, fail-open or fail-closed
    4. **Duplicate window**: one claim per actor per tuple per 30 days
    5. **Ledger**: claim/vote + score + status in one transaction

    ## Key Principles
    - Status is sticky: changes need 3+ verifications, score >= 60 and a 2:1 supermajority
    - Fewer than 3 verifications never rate above MEDIUM confidence
    - Identity signals never leave the service
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Include routers
app.include_router(verify_router)
app.include_router(admin_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Consensus Engine",
        "version": "1.0.0",
        "config_version": get_settings().version,
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
