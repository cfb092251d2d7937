"""
Ledger Maintenance Runner

Orchestrates the scheduled ledger jobs.

Runs:
1. DecayRecalculationJob.run()
2. ExpirationSweeper.sweep()

A failing job is recorded and the next one still runs.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
import logging

from sqlalchemy.orm import Session

from ...config import EngineConfig, get_settings
from .decay_recalculation import DecayRecalculationJob, DEFAULT_BATCH_SIZE as DECAY_BATCH_SIZE
from .expiration_sweeper import ExpirationSweeper, DEFAULT_BATCH_SIZE as SWEEP_BATCH_SIZE


logger = logging.getLogger(__name__)


class MaintenanceRunner:
    """
    Usage:
        runner = MaintenanceRunner(db)
        result = runner.run(dry_run=True)
    """

    def __init__(
        self,
        db: Session,
        config: Optional[EngineConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.config = config or get_settings()
        self.clock = clock

    def run(
        self,
        dry_run: bool = False,
        decay_batch_size: int = DECAY_BATCH_SIZE,
        sweep_batch_size: int = SWEEP_BATCH_SIZE,
    ) -> Dict[str, Any]:
        """
        Run decay recalculation, then the expiration sweep.

        Returns:
            Summary of all jobs run
        """
        started_at = datetime.now(timezone.utc)
        results = {
            "started_at": started_at.isoformat(),
            "dry_run": dry_run,
            "config_version": self.config.version,
            "jobs": {},
        }

        # 1. Confidence decay
        try:
            job = DecayRecalculationJob(self.db, self.config, self.clock)
            stats = job.run(dry_run=dry_run, batch_size=decay_batch_size)
            results["jobs"]["decay_recalculation"] = {
                "status": "success",
                **stats.to_dict(),
            }
        except Exception as e:
            self.db.rollback()
            results["jobs"]["decay_recalculation"] = {
                "status": "error",
                "error": str(e),
            }
            logger.error(f"Decay recalculation failed: {e}")

        # 2. TTL cleanup
        try:
            sweeper = ExpirationSweeper(self.db, self.config, self.clock)
            report = sweeper.sweep(dry_run=dry_run, batch_size=sweep_batch_size)
            results["jobs"]["expiration_sweep"] = {
                "status": "success",
                **report,
            }
        except Exception as e:
            self.db.rollback()
            results["jobs"]["expiration_sweep"] = {
                "status": "error",
                "error": str(e),
            }
            logger.error(f"Expiration sweep failed: {e}")

        completed_at = datetime.now(timezone.utc)
        results["completed_at"] = completed_at.isoformat()
        results["duration_seconds"] = (completed_at - started_at).total_seconds()

        return results


def run_maintenance(db: Session, dry_run: bool = False) -> Dict[str, Any]:
    """Convenience function to run all maintenance jobs."""
    return MaintenanceRunner(db).run(dry_run=dry_run)
