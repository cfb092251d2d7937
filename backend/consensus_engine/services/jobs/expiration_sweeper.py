"""
Expiration Sweeper

Hard deletes claims past their TTL (with their votes), then aggregates whose
supporting evidence has fully expired.

Rows with expires_at NULL predate TTLs and are never swept.

Each iteration selects at most `batch_size` expired ids, deletes their
dependents and then the rows, and commits before the next batch, so no single
delete statement touches more than one batch.
"""
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import and_, exists, func
from sqlalchemy.orm import Session

from ...config import EngineConfig, get_settings
from ...database import utcnow
from ...models.db_models import AcceptanceAggregateDB, VerificationClaimDB, VoteRecordDB
from ..ledger.verification_ledger import VerificationLedgerService, live_claim_filter


logger = logging.getLogger(__name__)


DEFAULT_BATCH_SIZE = 1000


class ExpirationSweeper:
    """
    TTL cleanup for the verification ledger.

    Usage:
        sweeper = ExpirationSweeper(db)
        report = sweeper.sweep(dry_run=True)
    """

    def __init__(
        self,
        db: Session,
        config: Optional[EngineConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.config = config or get_settings()
        self.clock = clock or utcnow
        self.ledger = VerificationLedgerService(db, self.config, self.clock)

    # =========================================================================
    # FILTERS
    # =========================================================================

    def _expired_claims(self, now: datetime):
        return and_(
            VerificationClaimDB.expires_at.isnot(None),
            VerificationClaimDB.expires_at < now,
        )

    def _expired_aggregates(self, now: datetime):
        """Past expiry and no live claim left on the tuple."""
        has_live_claim = exists().where(and_(
            VerificationClaimDB.tuple_key == AcceptanceAggregateDB.tuple_key,
            live_claim_filter(now),
        ))
        return and_(
            AcceptanceAggregateDB.expires_at.isnot(None),
            AcceptanceAggregateDB.expires_at < now,
            ~has_live_claim,
        )

    # =========================================================================
    # SWEEP
    # =========================================================================

    def sweep(self, dry_run: bool = False, batch_size: int = DEFAULT_BATCH_SIZE) -> Dict[str, Any]:
        """
        Delete expired rows in bounded batches.

        In dry-run mode the counts are what a real run would delete.
        """
        started = time.monotonic()
        now = self.clock()
        batch_size = max(1, batch_size)

        report = {
            "dry_run": dry_run,
            "batch_size": batch_size,
            "claims_deleted": 0,
            "votes_deleted": 0,
            "aggregates_deleted": 0,
            "batches": 0,
            "config_version": self.config.version,
        }

        if dry_run:
            report.update(self._preview(now))
        else:
            self._sweep_claims(now, batch_size, report)
            self._sweep_aggregates(now, batch_size, report)

        report["duration_ms"] = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Expiration sweep complete (dry_run={dry_run}): claims={report['claims_deleted']} "
            f"votes={report['votes_deleted']} aggregates={report['aggregates_deleted']} "
            f"batches={report['batches']}"
        )
        return report

    def _preview(self, now: datetime) -> Dict[str, int]:
        claims = self.db.query(func.count(VerificationClaimDB.id)).filter(
            self._expired_claims(now)
        ).scalar() or 0
        votes = self.db.query(func.count(VoteRecordDB.id)).join(
            VerificationClaimDB, VoteRecordDB.claim_id == VerificationClaimDB.id
        ).filter(self._expired_claims(now)).scalar() or 0

        # Aggregates that would be empty once the expired claims are gone
        aggregates = self.db.query(func.count(AcceptanceAggregateDB.id)).filter(
            self._expired_aggregates(now)
        ).scalar() or 0
        return {"claims_deleted": claims, "votes_deleted": votes, "aggregates_deleted": aggregates}

    def _sweep_claims(self, now: datetime, batch_size: int, report: Dict[str, Any]) -> None:
        while True:
            ids = [
                row.id for row in
                self.db.query(VerificationClaimDB.id)
                .filter(self._expired_claims(now))
                .limit(batch_size)
                .all()
            ]
            if not ids:
                break

            try:
                cascade = self.ledger.delete_claims(ids)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

            report["claims_deleted"] += cascade["claims"]
            report["votes_deleted"] += cascade["votes"]
            report["batches"] += 1
            logger.info(f"Deleted batch of {cascade['claims']} expired claims ({cascade['votes']} votes)")

            if len(ids) < batch_size:
                break

    def _sweep_aggregates(self, now: datetime, batch_size: int, report: Dict[str, Any]) -> None:
        while True:
            ids = [
                row.id for row in
                self.db.query(AcceptanceAggregateDB.id)
                .filter(self._expired_aggregates(now))
                .limit(batch_size)
                .all()
            ]
            if not ids:
                break

            try:
                deleted = self.db.query(AcceptanceAggregateDB).filter(
                    AcceptanceAggregateDB.id.in_(ids)
                ).delete(synchronize_session=False)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

            report["aggregates_deleted"] += deleted
            report["batches"] += 1

            if len(ids) < batch_size:
                break

    # =========================================================================
    # STATS
    # =========================================================================

    def expiration_stats(self) -> Dict[str, Any]:
        """TTL coverage and upcoming expirations for claims and aggregates."""
        now = self.clock()
        return {
            "claims": self._table_stats(VerificationClaimDB, now),
            "aggregates": self._table_stats(AcceptanceAggregateDB, now),
            "generated_at": now.isoformat(),
        }

    def _table_stats(self, model, now: datetime) -> Dict[str, int]:
        def count(*criteria) -> int:
            return self.db.query(func.count(model.id)).filter(*criteria).scalar() or 0

        expires_at = model.expires_at
        return {
            "total": count(),
            "with_ttl": count(expires_at.isnot(None)),
            "without_ttl": count(expires_at.is_(None)),
            "expired": count(expires_at.isnot(None), expires_at < now),
            "expiring_within_7_days": count(
                expires_at >= now, expires_at < now + timedelta(days=7),
            ),
            "expiring_within_30_days": count(
                expires_at >= now, expires_at < now + timedelta(days=30),
            ),
        }
