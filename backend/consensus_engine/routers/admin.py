"""
Admin API Routes

Operator triggers for the scheduled ledger jobs.
All endpoints require the X-Admin-Secret header and support dry runs.
"""
from datetime import datetime
from typing import Callable, Optional
import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.orm import Session

from ..config import EngineConfig
from ..database import get_db
from ..dependencies import get_clock, get_config
from ..services.jobs import DecayRecalculationJob, ExpirationSweeper, MaintenanceRunner
from .errors import gate_detail


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# =============================================================================
# ADMIN SECRET VALIDATION
# =============================================================================

def verify_admin_secret(
    x_admin_secret: Optional[str] = Header(None),
    config: EngineConfig = Depends(get_config),
):
    """Constant-time check of X-Admin-Secret. No configured secret disables admin routes."""
    if not config.admin_secret:
        logger.warning("ADMIN_SECRET not configured - admin endpoints disabled")
        raise HTTPException(
            status_code=503,
            detail=gate_detail(
                error_code="admin_not_configured",
                gate="admin",
                message="Admin endpoints are disabled. Set ADMIN_SECRET to enable.",
            ),
        )

    if not x_admin_secret or not hmac.compare_digest(
        x_admin_secret.encode("utf-8"), config.admin_secret.encode("utf-8")
    ):
        raise HTTPException(
            status_code=401,
            detail=gate_detail(error_code="unauthorized", gate="admin", message="Invalid or missing admin secret"),
        )
    return True


# =============================================================================
# JOB TRIGGERS
# =============================================================================

@router.post("/recalculate-confidence", response_model=dict)
def recalculate_confidence(
    dry_run: bool = Query(False, description="Report changes without writing"),
    batch_size: int = Query(100, ge=1, le=1000),
    limit: Optional[int] = Query(None, ge=1, description="Stop after this many aggregates"),
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_config),
    clock: Callable[[], datetime] = Depends(get_clock),
    _: bool = Depends(verify_admin_secret),
):
    """Re-run confidence scoring for every aggregate against the current time."""
    job = DecayRecalculationJob(db, config, clock)
    stats = job.run(dry_run=dry_run, batch_size=batch_size, limit=limit)
    return {
        "success": True,
        "message": "Dry run complete" if dry_run else "Confidence recalculation complete",
        "data": stats.to_dict(),
    }


@router.post("/cleanup-expired", response_model=dict)
def cleanup_expired(
    dry_run: bool = Query(False, description="Report counts without deleting"),
    batch_size: int = Query(1000, ge=1, le=10000),
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_config),
    clock: Callable[[], datetime] = Depends(get_clock),
    _: bool = Depends(verify_admin_secret),
):
    """Delete claims (with votes) and aggregates past their TTL."""
    sweeper = ExpirationSweeper(db, config, clock)
    report = sweeper.sweep(dry_run=dry_run, batch_size=batch_size)
    return {
        "success": True,
        "message": "Dry run complete" if dry_run else "Cleanup complete",
        "data": report,
    }


@router.get("/expiration-stats", response_model=dict)
def expiration_stats(
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_config),
    clock: Callable[[], datetime] = Depends(get_clock),
    _: bool = Depends(verify_admin_secret),
):
    """TTL coverage and upcoming expirations."""
    sweeper = ExpirationSweeper(db, config, clock)
    return {"success": True, "data": sweeper.expiration_stats()}


@router.post("/run-maintenance", response_model=dict)
def run_maintenance(
    dry_run: bool = Query(False),
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_config),
    clock: Callable[[], datetime] = Depends(get_clock),
    _: bool = Depends(verify_admin_secret),
):
    """Decay recalculation followed by the expiration sweep; per-job status."""
    runner = MaintenanceRunner(db, config, clock)
    return {"success": True, "data": runner.run(dry_run=dry_run)}
