"""
Verification Ledger Service

Append-mostly store of claims and votes, and the only writer of
AcceptanceAggregateDB. Every mutation of a tuple runs under a row lock on its
aggregate, and the claim/vote write, the score recomputation and the status
decision share one transaction: the caller commits or rolls back the session.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import EngineConfig, get_settings
from ...database import utcnow
from ...errors import DuplicateVote, NotFoundError
from ...models.db_models import (
    AcceptanceStatus, ClaimDirection, ClaimSource, ConfidenceTier, SpecialtyClass, VoteDirection,
    VerificationClaimDB, VoteRecordDB, AcceptanceAggregateDB,
    make_tuple_key,
)
from ..abuse.gates import DuplicateWindowGate, GateOutcome
from ..consensus.state_machine import ConsensusStateMachine, TransitionTrigger
from ..scoring.confidence import ClaimEvidence, ConfidenceResult, ConfidenceScorer, ScoringContext, classify_specialty


logger = logging.getLogger(__name__)


@dataclass
class ClaimOutcome:
    """Result of recording an admitted claim."""
    claim: VerificationClaimDB
    aggregate: AcceptanceAggregateDB
    result: ConfidenceResult
    status_changed: bool


@dataclass
class VoteOutcome:
    """Result of applying an admitted vote."""
    claim: Any  # ClaimEvidence for previews
    aggregate: AcceptanceAggregateDB
    result: ConfidenceResult
    vote_changed: bool
    previous_direction: Optional[VoteDirection] = None


def live_claim_filter(now: datetime):
    """Claims without an expiry (legacy rows) are always live."""
    return or_(VerificationClaimDB.expires_at.is_(None), VerificationClaimDB.expires_at > now)


def public_claim(claim: VerificationClaimDB) -> Dict[str, Any]:
    """Claim as returned to callers. Identity signals never leave the service."""
    return {
        "id": claim.id,
        "provider_id": claim.provider_id,
        "plan_id": claim.plan_id,
        "location_id": claim.location_id,
        "claim": claim.claim.value,
        "source": claim.source.value,
        "upvote_count": claim.upvote_count,
        "downvote_count": claim.downvote_count,
        "created_at": claim.created_at.isoformat() if claim.created_at else None,
        "expires_at": claim.expires_at.isoformat() if claim.expires_at else None,
    }


def public_aggregate(aggregate: AcceptanceAggregateDB) -> Dict[str, Any]:
    return {
        "provider_id": aggregate.provider_id,
        "plan_id": aggregate.plan_id,
        "location_id": aggregate.location_id,
        "specialty_class": aggregate.specialty_class.value,
        "status": aggregate.status.value,
        "confidence_score": aggregate.confidence_score,
        "confidence_tier": aggregate.confidence_tier.value,
        "verification_count": aggregate.verification_count,
        "last_verified_at": aggregate.last_verified_at.isoformat() if aggregate.last_verified_at else None,
        "expires_at": aggregate.expires_at.isoformat() if aggregate.expires_at else None,
    }


class VerificationLedgerService:
    """
    Ledger writes and reads for claims, votes and aggregates.

    Usage:
        ledger = VerificationLedgerService(db, config)
        record = ledger.record_claim(submission, bot_score=0.9)
        db.commit()
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
        self.scorer = ConfidenceScorer(self.config)
        self.state_machine = ConsensusStateMachine(db, self.config)
        self.duplicate_gate = DuplicateWindowGate(self.config)

    # =========================================================================
    # WRITES
    # =========================================================================

    def record_claim(self, submission, bot_score: Optional[float] = None) -> ClaimOutcome:
        """Persist an admitted claim and recompute its tuple in the same transaction."""
        now = self.clock()
        source = ClaimSource(submission.source)
        specialty_class = classify_specialty(submission.specialty) if submission.specialty else None

        aggregate = self.lock_aggregate(
            submission.provider_id, submission.plan_id, submission.location_id, create=True,
        )

        # Admission ran before the lock; a concurrent claim from the same actor
        # may have committed since
        duplicate = self.duplicate_gate.check(
            self.db, submission.provider_id, submission.plan_id, submission.location_id,
            submission.identity, now,
        )
        if duplicate.outcome == GateOutcome.REJECT:
            raise duplicate.rejection

        if specialty_class is not None:
            aggregate.specialty_class = specialty_class

        identity = submission.identity
        claim = VerificationClaimDB(
            id=str(uuid4()),
            tuple_key=aggregate.tuple_key,
            provider_id=submission.provider_id,
            plan_id=submission.plan_id,
            location_id=submission.location_id,
            claim=ClaimDirection(submission.claim),
            source=source,
            actor_fingerprint=identity.fingerprint,
            actor_contact=identity.contact,
            client_signal=identity.client_signal,
            bot_score=bot_score,
            upvote_count=0,
            downvote_count=0,
            created_at=now,
            expires_at=now + timedelta(days=self.config.ttl_days_for(source.value)),
        )
        self.db.add(claim)
        self.db.flush()

        previous_status = aggregate.status
        result = self.recompute_aggregate(aggregate, now, TransitionTrigger.CLAIM)

        logger.info(
            f"Recorded {claim.claim.value} claim {claim.id} on {aggregate.tuple_key} "
            f"(score={result.score}, status={aggregate.status.value})"
        )
        return ClaimOutcome(
            claim=claim,
            aggregate=aggregate,
            result=result,
            status_changed=previous_status != aggregate.status,
        )

    def apply_vote(self, submission, existing_vote_id: Optional[str] = None) -> VoteOutcome:
        """
        Insert or flip a vote, adjust the claim tallies and recompute the tuple.

        A flip moves one count from the old direction to the new one, so the
        total vote count of the claim is unchanged.
        """
        now = self.clock()
        direction = VoteDirection(submission.direction)
        fingerprint = submission.identity.fingerprint

        claim = self.db.query(VerificationClaimDB).filter(
            VerificationClaimDB.id == submission.claim_id
        ).first()
        if not claim:
            raise NotFoundError("Verification not found")

        # Tuple lock first, then the claim row
        aggregate = self.lock_aggregate(claim.provider_id, claim.plan_id, claim.location_id, create=True)
        self.db.refresh(claim, with_for_update=True)

        vote = None
        if existing_vote_id:
            vote = self.db.query(VoteRecordDB).filter(VoteRecordDB.id == existing_vote_id).first()
        if vote is None:
            vote = self.db.query(VoteRecordDB).filter(
                VoteRecordDB.claim_id == claim.id,
                VoteRecordDB.actor_fingerprint == fingerprint,
            ).first()

        previous_direction = None
        if vote is not None:
            if vote.direction == direction:
                raise DuplicateVote("duplicate_vote", "You have already voted on this verification")
            previous_direction = vote.direction
            self._adjust_tally(claim, previous_direction, -1)
            vote.direction = direction
            vote.updated_at = now
        else:
            vote = VoteRecordDB(
                id=str(uuid4()),
                claim_id=claim.id,
                actor_fingerprint=fingerprint,
                direction=direction,
                created_at=now,
                updated_at=now,
            )
            self.db.add(vote)
            try:
                self.db.flush()
            except IntegrityError as e:
                # Concurrent vote from the same actor won the unique key
                self.db.rollback()
                raise DuplicateVote(
                    "duplicate_vote", "You have already voted on this verification"
                ) from e

        self._adjust_tally(claim, direction, +1)
        self.db.flush()

        result = self.recompute_aggregate(aggregate, now, TransitionTrigger.VOTE)
        logger.info(
            f"Vote {direction.value} on claim {claim.id} "
            f"({'changed' if previous_direction else 'new'}; up={claim.upvote_count}, down={claim.downvote_count})"
        )
        return VoteOutcome(
            claim=claim,
            aggregate=aggregate,
            result=result,
            vote_changed=previous_direction is not None,
            previous_direction=previous_direction,
        )

    def _adjust_tally(self, claim: VerificationClaimDB, direction: VoteDirection, delta: int) -> None:
        if direction == VoteDirection.UP:
            claim.upvote_count = max(0, (claim.upvote_count or 0) + delta)
        else:
            claim.downvote_count = max(0, (claim.downvote_count or 0) + delta)

    # =========================================================================
    # AGGREGATES
    # =========================================================================

    def lock_aggregate(
        self,
        provider_id: str,
        plan_id: str,
        location_id: Optional[str] = None,
        create: bool = False,
    ) -> Optional[AcceptanceAggregateDB]:
        """
        Row-locked aggregate for a tuple, created as PENDING when missing.

        Two first claims on the same tuple can race to create it; the loser
        hits the unique tuple_key, rolls back and locks the winner's row.
        """
        tuple_key = make_tuple_key(provider_id, plan_id, location_id)
        aggregate = self._select_for_update(tuple_key)
        if aggregate is not None or not create:
            return aggregate

        now = self.clock()
        aggregate = AcceptanceAggregateDB(
            tuple_key=tuple_key,
            provider_id=provider_id,
            plan_id=plan_id,
            location_id=location_id,
            specialty_class=SpecialtyClass.OTHER,
            status=AcceptanceStatus.PENDING,
            confidence_score=0,
            confidence_tier=ConfidenceTier.VERY_LOW,
            verification_count=0,
            created_at=now,
            updated_at=now,
        )
        self.db.add(aggregate)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Aggregate {tuple_key} created concurrently, retrying under lock")
            aggregate = self._select_for_update(tuple_key)
        return aggregate

    def _select_for_update(self, tuple_key: str) -> Optional[AcceptanceAggregateDB]:
        return self.db.query(AcceptanceAggregateDB).filter(
            AcceptanceAggregateDB.tuple_key == tuple_key
        ).with_for_update().first()

    def live_claims(self, tuple_key: str, now: datetime) -> List[VerificationClaimDB]:
        return self.db.query(VerificationClaimDB).filter(
            VerificationClaimDB.tuple_key == tuple_key,
            live_claim_filter(now),
        ).order_by(VerificationClaimDB.created_at.desc()).all()

    def score_aggregate(self, aggregate: AcceptanceAggregateDB, now: datetime) -> ConfidenceResult:
        """Read-only scoring of a tuple's live claims."""
        claims = self.live_claims(aggregate.tuple_key, now)
        context = ScoringContext(specialty_class=aggregate.specialty_class.value)
        return self.scorer.score(claims, now, context)

    def recompute_aggregate(
        self,
        aggregate: AcceptanceAggregateDB,
        now: datetime,
        trigger: TransitionTrigger,
    ) -> ConfidenceResult:
        """Rescore, persist score/tier/count and let the state machine decide the status."""
        claims = self.live_claims(aggregate.tuple_key, now)
        context = ScoringContext(specialty_class=aggregate.specialty_class.value)
        result = self.scorer.score(claims, now, context)

        values = {
            "confidence_score": result.score,
            "confidence_tier": result.tier,
            "verification_count": result.verification_count,
            "last_verified_at": result.last_verified_at,
        }
        if claims:
            values["expires_at"] = self.aggregate_expiry(claims)

        # Untouched rows stay byte-identical so repeated decay runs are no-ops
        changed = False
        for name, value in values.items():
            if getattr(aggregate, name) != value:
                setattr(aggregate, name, value)
                changed = True
        if changed:
            aggregate.updated_at = now

        self.state_machine.apply(aggregate, result, trigger, now)
        return result

    def _aggregate_values(self, claims: List[Any], result: ConfidenceResult) -> Dict[str, Any]:
        values = {
            "confidence_score": result.score,
            "confidence_tier": result.tier,
            "verification_count": result.verification_count,
            "last_verified_at": result.last_verified_at,
        }
        if claims:
            values["expires_at"] = self.aggregate_expiry(claims)
        return values

    def aggregate_expiry(self, claims: List[Any]) -> Optional[datetime]:
        """Latest supporting expiry; any legacy claim keeps the aggregate from expiring."""
        if any(c.expires_at is None for c in claims):
            return None
        return max(c.expires_at for c in claims)

    # =========================================================================
    # PREVIEWS
    # =========================================================================
    # Decoy-trapped writes are answered with what the write would have
    # returned. Nothing built here is added to the session.

    def preview_claim(self, submission) -> ClaimOutcome:
        """Outcome record_claim would produce for this submission, without writing."""
        now = self.clock()
        source = ClaimSource(submission.source)
        tuple_key = make_tuple_key(submission.provider_id, submission.plan_id, submission.location_id)

        aggregate = self._detached_aggregate(
            tuple_key, submission.provider_id, submission.plan_id, submission.location_id, now,
        )
        if submission.specialty:
            aggregate.specialty_class = classify_specialty(submission.specialty)

        claim = VerificationClaimDB(
            id=str(uuid4()),
            tuple_key=tuple_key,
            provider_id=submission.provider_id,
            plan_id=submission.plan_id,
            location_id=submission.location_id,
            claim=ClaimDirection(submission.claim),
            source=source,
            upvote_count=0,
            downvote_count=0,
            created_at=now,
            expires_at=now + timedelta(days=self.config.ttl_days_for(source.value)),
        )
        claims = [claim] + self.live_claims(tuple_key, now)

        previous_status = aggregate.status
        result = self._score_detached(aggregate, claims, now, TransitionTrigger.CLAIM)
        return ClaimOutcome(
            claim=claim,
            aggregate=aggregate,
            result=result,
            status_changed=previous_status != aggregate.status,
        )

    def preview_vote(self, submission) -> VoteOutcome:
        """Outcome of a first vote by this actor, without writing."""
        now = self.clock()
        direction = VoteDirection(submission.direction)

        claim = self.db.query(VerificationClaimDB).filter(
            VerificationClaimDB.id == submission.claim_id
        ).first()
        if not claim:
            raise NotFoundError("Verification not found")

        voted = ClaimEvidence(
            claim=claim.claim.value,
            source=claim.source.value,
            created_at=claim.created_at,
            upvote_count=(claim.upvote_count or 0) + (1 if direction == VoteDirection.UP else 0),
            downvote_count=(claim.downvote_count or 0) + (1 if direction == VoteDirection.DOWN else 0),
            id=claim.id,
            expires_at=claim.expires_at,
        )
        claims = [voted if c.id == claim.id else c for c in self.live_claims(claim.tuple_key, now)]

        aggregate = self._detached_aggregate(
            claim.tuple_key, claim.provider_id, claim.plan_id, claim.location_id, now,
        )
        result = self._score_detached(aggregate, claims, now, TransitionTrigger.VOTE)
        return VoteOutcome(claim=voted, aggregate=aggregate, result=result, vote_changed=False)

    def _detached_aggregate(
        self,
        tuple_key: str,
        provider_id: str,
        plan_id: str,
        location_id: Optional[str],
        now: datetime,
    ) -> AcceptanceAggregateDB:
        """Unsaved copy of the tuple's aggregate, or a fresh PENDING one."""
        aggregate = AcceptanceAggregateDB(
            tuple_key=tuple_key,
            provider_id=provider_id,
            plan_id=plan_id,
            location_id=location_id,
            specialty_class=SpecialtyClass.OTHER,
            status=AcceptanceStatus.PENDING,
            confidence_score=0,
            confidence_tier=ConfidenceTier.VERY_LOW,
            verification_count=0,
            created_at=now,
            updated_at=now,
        )
        existing = self.db.query(AcceptanceAggregateDB).filter(
            AcceptanceAggregateDB.tuple_key == tuple_key
        ).first()
        if existing is not None:
            for name in (
                "specialty_class", "status", "confidence_score", "confidence_tier",
                "verification_count", "last_verified_at", "expires_at", "created_at",
            ):
                setattr(aggregate, name, getattr(existing, name))
        return aggregate

    def _score_detached(
        self,
        aggregate: AcceptanceAggregateDB,
        claims: List[Any],
        now: datetime,
        trigger: TransitionTrigger,
    ) -> ConfidenceResult:
        context = ScoringContext(specialty_class=aggregate.specialty_class.value)
        result = self.scorer.score(claims, now, context)
        for name, value in self._aggregate_values(claims, result).items():
            setattr(aggregate, name, value)
        aggregate.status = self.state_machine.decide(
            aggregate.status or AcceptanceStatus.PENDING, result, trigger,
        )
        aggregate.updated_at = now
        return result

    # =========================================================================
    # READS
    # =========================================================================

    def get_tuple_view(
        self,
        provider_id: str,
        plan_id: str,
        location_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Aggregate, live claims and vote summary for one tuple; PII stripped."""
        now = self.clock()
        tuple_key = make_tuple_key(provider_id, plan_id, location_id)
        aggregate = self.db.query(AcceptanceAggregateDB).filter(
            AcceptanceAggregateDB.tuple_key == tuple_key
        ).first()
        if not aggregate:
            raise NotFoundError("No verifications found for this provider-plan pair")

        claims = self.live_claims(tuple_key, now)
        context = ScoringContext(specialty_class=aggregate.specialty_class.value)
        confidence = self.scorer.score(claims, now, context)

        return {
            "aggregate": public_aggregate(aggregate),
            "confidence": confidence.to_dict(),
            "claims": [public_claim(c) for c in claims],
            "summary": {
                "accepted_count": confidence.accepted_count,
                "not_accepted_count": confidence.not_accepted_count,
                "total_upvotes": sum(c.upvote_count for c in claims),
                "total_downvotes": sum(c.downvote_count for c in claims),
            },
        }

    def recent_claims(
        self,
        limit: int = 20,
        provider_id: Optional[str] = None,
        plan_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        now = self.clock()
        query = self.db.query(VerificationClaimDB).filter(live_claim_filter(now))
        if provider_id:
            query = query.filter(VerificationClaimDB.provider_id == provider_id)
        if plan_id:
            query = query.filter(VerificationClaimDB.plan_id == plan_id)
        claims = query.order_by(VerificationClaimDB.created_at.desc()).limit(limit).all()
        return [public_claim(c) for c in claims]

    def ledger_stats(self) -> Dict[str, Any]:
        now = self.clock()
        total = self.db.query(func.count(VerificationClaimDB.id)).scalar() or 0
        recent = self.db.query(func.count(VerificationClaimDB.id)).filter(
            VerificationClaimDB.created_at >= now - timedelta(hours=24)
        ).scalar() or 0

        by_source = {
            source.value: count for source, count in
            self.db.query(VerificationClaimDB.source, func.count(VerificationClaimDB.id))
            .group_by(VerificationClaimDB.source).all()
        }
        by_claim = {
            claim.value: count for claim, count in
            self.db.query(VerificationClaimDB.claim, func.count(VerificationClaimDB.id))
            .group_by(VerificationClaimDB.claim).all()
        }
        by_status = {
            status.value: count for status, count in
            self.db.query(AcceptanceAggregateDB.status, func.count(AcceptanceAggregateDB.id))
            .group_by(AcceptanceAggregateDB.status).all()
        }

        return {
            "total_claims": total,
            "claims_last_24h": recent,
            "by_source": by_source,
            "by_claim": by_claim,
            "total_votes": self.db.query(func.count(VoteRecordDB.id)).scalar() or 0,
            "total_aggregates": sum(by_status.values()),
            "aggregates_by_status": by_status,
        }

    # =========================================================================
    # DELETION
    # =========================================================================

    def delete_claims(self, claim_ids: List[str]) -> Dict[str, int]:
        """
        Hard delete claims with their votes.

        Deletion order:
        1. Votes referencing the claims
        2. The claims

        Returns cascade counts. Does not commit.
        """
        cascade = {"votes": 0, "claims": 0}
        if not claim_ids:
            return cascade

        cascade["votes"] = self.db.query(VoteRecordDB).filter(
            VoteRecordDB.claim_id.in_(claim_ids)
        ).delete(synchronize_session=False)

        cascade["claims"] = self.db.query(VerificationClaimDB).filter(
            VerificationClaimDB.id.in_(claim_ids)
        ).delete(synchronize_session=False)

        return cascade
