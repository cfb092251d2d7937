"""
Decay Recalculation Job

Re-runs scoring for every aggregate against the current time so recency decay
advances for tuples that receive no new traffic.

- Cursor-paginated by aggregate id to bound memory
- Each tuple is locked, recomputed and committed on its own
- A failing tuple is logged and counted; the job continues
- Dry run reports what would change without writing
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from ...config import EngineConfig, get_settings
from ...database import utcnow
from ...models.db_models import AcceptanceAggregateDB
from ..consensus.state_machine import TransitionTrigger
from ..ledger.verification_ledger import VerificationLedgerService


logger = logging.getLogger(__name__)


DEFAULT_BATCH_SIZE = 100

TRACKED_FIELDS = (
    "confidence_score",
    "confidence_tier",
    "verification_count",
    "last_verified_at",
    "expires_at",
    "status",
)


@dataclass
class DecayStats:
    processed: int = 0
    updated: int = 0
    unchanged: int = 0
    errors: int = 0
    status_changes: int = 0
    duration_ms: int = 0
    dry_run: bool = False
    config_version: str = ""
    changes: list = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "errors": self.errors,
            "status_changes": self.status_changes,
            "duration_ms": self.duration_ms,
            "dry_run": self.dry_run,
            "config_version": self.config_version,
            "changes": self.changes,
        }


class DecayRecalculationJob:
    """
    Periodic confidence recalculation.

    Usage:
        job = DecayRecalculationJob(db, config)
        stats = job.run(dry_run=True, batch_size=100)
    """

    # Sample of per-tuple changes kept in the report
    MAX_REPORTED_CHANGES = 50

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

    def run(
        self,
        dry_run: bool = False,
        batch_size: int = DEFAULT_BATCH_SIZE,
        limit: Optional[int] = None,
    ) -> DecayStats:
        """
        Recalculate every aggregate, oldest id first.

        Args:
            dry_run: Report changes without writing
            batch_size: Aggregates fetched per page
            limit: Stop after this many aggregates

        Returns:
            DecayStats
        """
        started = time.monotonic()
        now = self.clock()
        stats = DecayStats(dry_run=dry_run, config_version=self.config.version)
        batch_size = max(1, batch_size)

        logger.info(
            f"Decay recalculation starting (dry_run={dry_run}, batch_size={batch_size}, limit={limit})"
        )

        cursor = 0
        while limit is None or stats.processed < limit:
            page_size = batch_size if limit is None else min(batch_size, limit - stats.processed)
            ids = [
                row.id for row in
                self.db.query(AcceptanceAggregateDB.id)
                .filter(AcceptanceAggregateDB.id > cursor)
                .order_by(AcceptanceAggregateDB.id)
                .limit(page_size)
                .all()
            ]
            if not ids:
                break

            for aggregate_id in ids:
                self._process(aggregate_id, now, dry_run, stats)
            cursor = ids[-1]

            if len(ids) < page_size:
                break

        stats.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Decay recalculation complete: processed={stats.processed} updated={stats.updated} "
            f"unchanged={stats.unchanged} errors={stats.errors} in {stats.duration_ms}ms"
        )
        return stats

    def _process(self, aggregate_id: int, now: datetime, dry_run: bool, stats: DecayStats) -> None:
        stats.processed += 1
        try:
            if dry_run:
                before, after = self._preview(aggregate_id, now)
                self.db.rollback()
            else:
                before, after = self._recalculate(aggregate_id, now)
                self.db.commit()
        except Exception as e:
            self.db.rollback()
            stats.errors += 1
            logger.error(f"Decay recalculation failed for aggregate {aggregate_id}: {e}")
            return

        if before == after:
            stats.unchanged += 1
            return

        stats.updated += 1
        if before["status"] != after["status"]:
            stats.status_changes += 1
        if len(stats.changes) < self.MAX_REPORTED_CHANGES:
            stats.changes.append({
                "aggregate_id": aggregate_id,
                "old_score": before["confidence_score"],
                "new_score": after["confidence_score"],
                "old_status": before["status"].value,
                "new_status": after["status"].value,
            })

    def _recalculate(self, aggregate_id: int, now: datetime):
        aggregate = self.db.query(AcceptanceAggregateDB).filter(
            AcceptanceAggregateDB.id == aggregate_id
        ).with_for_update().one()
        before = self._snapshot(aggregate)
        self.ledger.recompute_aggregate(aggregate, now, TransitionTrigger.DECAY)
        return before, self._snapshot(aggregate)

    def _preview(self, aggregate_id: int, now: datetime):
        aggregate = self.db.query(AcceptanceAggregateDB).filter(
            AcceptanceAggregateDB.id == aggregate_id
        ).one()
        before = self._snapshot(aggregate)

        claims = self.ledger.live_claims(aggregate.tuple_key, now)
        result = self.ledger.score_aggregate(aggregate, now)
        after = dict(before)
        after.update(
            confidence_score=result.score,
            confidence_tier=result.tier,
            verification_count=result.verification_count,
            last_verified_at=result.last_verified_at,
            status=self.ledger.state_machine.decide(aggregate.status, result, TransitionTrigger.DECAY),
        )
        if claims:
            after["expires_at"] = self.ledger.aggregate_expiry(claims)
        return before, after

    def _snapshot(self, aggregate: AcceptanceAggregateDB) -> Dict[str, Any]:
        return {name: getattr(aggregate, name) for name in TRACKED_FIELDS}
