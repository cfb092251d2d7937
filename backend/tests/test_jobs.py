"""
Test Suite: Scheduled Jobs

Tests:
1. DecayRecalculationJob: decay, expiry to UNKNOWN, idempotence, dry run, error isolation
2. ExpirationSweeper: TTL deletes, legacy rows, bounded batches, aggregates, stats
3. MaintenanceRunner: per-job status
"""
from datetime import timedelta

import pytest

from consensus_engine.models.db_models import (
    AcceptanceAggregateDB, AcceptanceStatus, StatusTransitionDB, VerificationClaimDB, VoteRecordDB,
)
from consensus_engine.services.jobs import DecayRecalculationJob, ExpirationSweeper, MaintenanceRunner
from consensus_engine.services.ledger import VerificationLedgerService

from conftest import claim_submission, vote_submission


@pytest.fixture
def ledger(db, config, clock):
    return VerificationLedgerService(db, config, clock)


def seed_tuple(db, ledger, claims=("ACCEPTED",) * 3, plan_id="PLAN-A", prefix="actor"):
    outcome = None
    for i, claim in enumerate(claims):
        outcome = ledger.record_claim(claim_submission(f"{prefix}-{i}", claim=claim, plan_id=plan_id))
        db.commit()
    return outcome


def get_aggregate(db, plan_id="PLAN-A"):
    db.expire_all()
    return db.query(AcceptanceAggregateDB).filter(AcceptanceAggregateDB.plan_id == plan_id).one()


# =============================================================================
# DECAY RECALCULATION
# =============================================================================

class TestDecayRecalculation:

    def test_recency_decays_score(self, db, config, clock, ledger):
        seed_tuple(db, ledger)
        assert get_aggregate(db).confidence_score == 90

        clock.advance(days=61)
        stats = DecayRecalculationJob(db, config, clock).run()

        agg = get_aggregate(db)
        assert stats.processed == 1
        assert stats.updated == 1
        assert agg.confidence_score == 70
        assert agg.status == AcceptanceStatus.ACCEPTED
        assert stats.changes[0]["old_score"] == 90
        assert stats.changes[0]["new_score"] == 70

    def test_fully_expired_tuple_goes_unknown(self, db, config, clock, ledger):
        seed_tuple(db, ledger)
        assert get_aggregate(db).status == AcceptanceStatus.ACCEPTED

        clock.advance(days=181)
        stats = DecayRecalculationJob(db, config, clock).run()

        agg = get_aggregate(db)
        assert agg.status == AcceptanceStatus.UNKNOWN
        assert agg.confidence_score == 10
        assert agg.verification_count == 0
        assert stats.status_changes == 1
        log = db.query(StatusTransitionDB).filter(StatusTransitionDB.trigger == "decay").one()
        assert log.from_status == AcceptanceStatus.ACCEPTED

    def test_pending_tuple_never_goes_unknown(self, db, config, clock, ledger):
        seed_tuple(db, ledger, claims=("ACCEPTED",))
        fresh_score = get_aggregate(db).confidence_score

        clock.advance(days=61)
        DecayRecalculationJob(db, config, clock).run()
        aged = get_aggregate(db)
        assert aged.status == AcceptanceStatus.PENDING
        assert aged.confidence_score < fresh_score
        aged_score = aged.confidence_score

        clock.advance(days=120)
        DecayRecalculationJob(db, config, clock).run()
        expired = get_aggregate(db)
        assert expired.status == AcceptanceStatus.PENDING
        assert expired.confidence_score < aged_score

    def test_second_run_is_a_no_op(self, db, config, clock, ledger):
        seed_tuple(db, ledger)
        clock.advance(days=61)
        DecayRecalculationJob(db, config, clock).run()
        first = get_aggregate(db)
        updated_at = first.updated_at

        stats = DecayRecalculationJob(db, config, clock).run()
        assert stats.updated == 0
        assert stats.unchanged == 1
        assert get_aggregate(db).updated_at == updated_at

    def test_dry_run_writes_nothing(self, db, config, clock, ledger):
        seed_tuple(db, ledger)
        clock.advance(days=181)

        stats = DecayRecalculationJob(db, config, clock).run(dry_run=True)

        assert stats.dry_run
        assert stats.updated == 1
        assert stats.changes[0]["new_status"] == "UNKNOWN"
        agg = get_aggregate(db)
        assert agg.status == AcceptanceStatus.ACCEPTED
        assert agg.confidence_score == 90

    def test_pagination_and_limit(self, db, config, clock, ledger):
        for i in range(5):
            seed_tuple(db, ledger, claims=("ACCEPTED",), plan_id=f"PLAN-{i}")
        clock.advance(days=40)

        assert DecayRecalculationJob(db, config, clock).run(batch_size=2).processed == 5
        assert DecayRecalculationJob(db, config, clock).run(batch_size=2, limit=3).processed == 3

    def test_one_failing_tuple_does_not_stop_the_job(self, db, config, clock, ledger, monkeypatch):
        seed_tuple(db, ledger, claims=("ACCEPTED",), plan_id="PLAN-1")
        seed_tuple(db, ledger, claims=("ACCEPTED",), plan_id="PLAN-2")
        clock.advance(days=40)

        job = DecayRecalculationJob(db, config, clock)
        real_recompute = job.ledger.recompute_aggregate

        def flaky(aggregate, now, trigger):
            if aggregate.plan_id == "PLAN-1":
                raise RuntimeError("lock timeout")
            return real_recompute(aggregate, now, trigger)

        monkeypatch.setattr(job.ledger, "recompute_aggregate", flaky)
        stats = job.run()

        assert stats.processed == 2
        assert stats.errors == 1
        assert stats.updated == 1
        assert get_aggregate(db, "PLAN-2").confidence_score < get_aggregate(db, "PLAN-1").confidence_score


# =============================================================================
# EXPIRATION SWEEPER
# =============================================================================

class TestExpirationSweeper:

    def test_deletes_expired_claims_and_votes(self, db, config, clock, ledger):
        outcome = seed_tuple(db, ledger)
        ledger.apply_vote(vote_submission("voter", outcome.claim.id))
        db.commit()

        clock.advance(days=181)
        report = ExpirationSweeper(db, config, clock).sweep()

        assert report["claims_deleted"] == 3
        assert report["votes_deleted"] == 1
        assert report["aggregates_deleted"] == 1
        assert db.query(VerificationClaimDB).count() == 0
        assert db.query(VoteRecordDB).count() == 0
        assert db.query(AcceptanceAggregateDB).count() == 0

    def test_live_claims_untouched(self, db, config, clock, ledger):
        seed_tuple(db, ledger)
        clock.advance(days=100)
        report = ExpirationSweeper(db, config, clock).sweep()

        assert report["claims_deleted"] == 0
        assert db.query(VerificationClaimDB).count() == 3

    def test_legacy_rows_never_swept(self, db, config, clock, ledger):
        seed_tuple(db, ledger, claims=("ACCEPTED",))
        db.query(VerificationClaimDB).update({"expires_at": None}, synchronize_session=False)
        db.query(AcceptanceAggregateDB).update({"expires_at": None}, synchronize_session=False)
        db.commit()

        clock.advance(days=1000)
        report = ExpirationSweeper(db, config, clock).sweep()

        assert report["claims_deleted"] == 0
        assert report["aggregates_deleted"] == 0
        assert db.query(VerificationClaimDB).count() == 1

    def test_aggregate_kept_while_a_claim_is_live(self, db, config, clock, ledger):
        seed_tuple(db, ledger, claims=("ACCEPTED",))
        clock.advance(days=170)
        seed_tuple(db, ledger, claims=("ACCEPTED",), prefix="late")
        # stale expiry on the aggregate, but the late claim is still live
        db.query(AcceptanceAggregateDB).update(
            {"expires_at": clock.now + timedelta(days=5)}, synchronize_session=False,
        )
        db.commit()

        clock.advance(days=20)
        report = ExpirationSweeper(db, config, clock).sweep()

        assert report["claims_deleted"] == 1
        assert report["aggregates_deleted"] == 0
        assert db.query(AcceptanceAggregateDB).count() == 1

    def test_bounded_batches(self, db, config, clock, ledger):
        for i in range(5):
            seed_tuple(db, ledger, claims=("ACCEPTED",), plan_id=f"PLAN-{i}")
        clock.advance(days=181)

        report = ExpirationSweeper(db, config, clock).sweep(batch_size=2)

        assert report["claims_deleted"] == 5
        assert report["aggregates_deleted"] == 5
        # claims 2+2+1, aggregates 2+2+1
        assert report["batches"] == 6

    def test_dry_run_counts_without_deleting(self, db, config, clock, ledger):
        outcome = seed_tuple(db, ledger)
        ledger.apply_vote(vote_submission("voter", outcome.claim.id))
        db.commit()
        clock.advance(days=181)

        report = ExpirationSweeper(db, config, clock).sweep(dry_run=True)

        assert report["dry_run"]
        assert report["claims_deleted"] == 3
        assert report["votes_deleted"] == 1
        assert report["aggregates_deleted"] == 1
        assert db.query(VerificationClaimDB).count() == 3

    def test_expiration_stats(self, db, config, clock, ledger):
        seed_tuple(db, ledger, claims=("ACCEPTED",), plan_id="PLAN-1")
        clock.advance(days=100)
        seed_tuple(db, ledger, claims=("ACCEPTED",), plan_id="PLAN-2")
        clock.advance(days=75)

        stats = ExpirationSweeper(db, config, clock).expiration_stats()
        claims = stats["claims"]
        assert claims["total"] == 2
        assert claims["with_ttl"] == 2
        assert claims["without_ttl"] == 0
        assert claims["expired"] == 0
        assert claims["expiring_within_7_days"] == 1
        assert claims["expiring_within_30_days"] == 1
        assert stats["aggregates"]["total"] == 2


# =============================================================================
# MAINTENANCE RUNNER
# =============================================================================

class TestMaintenanceRunner:

    def test_runs_both_jobs(self, db, config, clock, ledger):
        seed_tuple(db, ledger)
        clock.advance(days=181)

        result = MaintenanceRunner(db, config, clock).run()

        decay = result["jobs"]["decay_recalculation"]
        sweep = result["jobs"]["expiration_sweep"]
        assert decay["status"] == "success"
        assert decay["status_changes"] == 1
        assert sweep["status"] == "success"
        assert sweep["claims_deleted"] == 3

    def test_failing_job_does_not_block_the_next(self, db, config, clock, ledger, monkeypatch):
        seed_tuple(db, ledger)
        clock.advance(days=181)

        def broken_run(self, *args, **kwargs):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(DecayRecalculationJob, "run", broken_run)
        result = MaintenanceRunner(db, config, clock).run()

        assert result["jobs"]["decay_recalculation"] == {"status": "error", "error": "database unavailable"}
        assert result["jobs"]["expiration_sweep"]["status"] == "success"
