#!/usr/bin/env python3
"""
Ledger Maintenance Script
Runs confidence decay recalculation and the expiration sweep, for cron.

Usage:
    python -m scripts.run_maintenance [--dry-run] [--decay-only | --sweep-only]

Example:
    python -m scripts.run_maintenance --dry-run
"""
import sys
import os
import json

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from consensus_engine.database import session_scope, init_db
from consensus_engine.main import configure_logging
from consensus_engine.services.jobs import DecayRecalculationJob, ExpirationSweeper, MaintenanceRunner


VALID_FLAGS = {"--dry-run", "--decay-only", "--sweep-only"}


def run(flags: set) -> dict:
    """Run the requested jobs and return their reports."""
    dry_run = "--dry-run" in flags

    # Ensure tables exist
    init_db()

    with session_scope() as db:
        if "--decay-only" in flags:
            return DecayRecalculationJob(db).run(dry_run=dry_run).to_dict()
        if "--sweep-only" in flags:
            return ExpirationSweeper(db).sweep(dry_run=dry_run)
        return MaintenanceRunner(db).run(dry_run=dry_run)


def main():
    flags = set(sys.argv[1:])
    unknown = flags - VALID_FLAGS
    if unknown or {"--decay-only", "--sweep-only"} <= flags:
        print(__doc__)
        sys.exit(1)

    configure_logging()
    result = run(flags)
    print(json.dumps(result, indent=2, default=str))

    jobs = result.get("jobs", {})
    failed = [name for name, job in jobs.items() if job.get("status") == "error"]
    sys.exit(1 if failed or result.get("errors") else 0)


if __name__ == "__main__":
    main()
