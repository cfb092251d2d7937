"""
Submission Service

One logical unit per inbound write: the abuse gate pipeline, then the ledger
mutation, then commit. Either the whole write commits or none of it does.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import EngineConfig
from .abuse.pipeline import AbuseGatePipeline, ClaimSubmission, VoteSubmission
from .ledger.verification_ledger import VerificationLedgerService, public_aggregate, public_claim


logger = logging.getLogger(__name__)


@dataclass
class SubmissionResult:
    """What the caller sees. A decoy result is indistinguishable from a real one."""
    payload: Dict[str, Any]
    degraded_reasons: List[str] = field(default_factory=list)
    decoy: bool = False

    @property
    def degraded(self) -> bool:
        return bool(self.degraded_reasons)


class SubmissionService:
    """
    Gate pipeline + ledger for claims and votes.

    Usage:
        service = SubmissionService(db, config, pipeline)
        result = service.submit_claim(submission)
    """

    def __init__(
        self,
        db: Session,
        config: EngineConfig,
        pipeline: AbuseGatePipeline,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.config = config
        self.pipeline = pipeline
        self.ledger = VerificationLedgerService(db, config, clock)

    def submit_claim(self, submission: ClaimSubmission) -> SubmissionResult:
        """
        Run the claim pipeline and record the claim.

        Raises the PolicyRejection of the first rejecting gate.
        """
        admission = self.pipeline.evaluate_claim(self.db, submission)
        if admission.decoy:
            try:
                outcome = self.ledger.preview_claim(submission)
            finally:
                self.db.rollback()
            return SubmissionResult(
                payload=self._claim_payload(outcome),
                degraded_reasons=admission.degraded_reasons,
                decoy=True,
            )
        admission.raise_for_rejection()

        try:
            outcome = self.ledger.record_claim(submission, bot_score=admission.bot_score)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if admission.degraded:
            logger.warning(f"Claim {outcome.claim.id} admitted degraded: {admission.degraded_reasons}")

        return SubmissionResult(
            payload=self._claim_payload(outcome),
            degraded_reasons=admission.degraded_reasons,
        )

    def submit_vote(self, submission: VoteSubmission) -> SubmissionResult:
        """
        Run the vote pipeline and insert or flip the vote.

        Raises NotFoundError for an unknown claim and DuplicateVote for a
        repeated vote in the same direction.
        """
        admission = self.pipeline.evaluate_vote(self.db, submission)
        if admission.decoy:
            try:
                outcome = self.ledger.preview_vote(submission)
            finally:
                self.db.rollback()
            return SubmissionResult(
                payload=self._vote_payload(submission, outcome),
                degraded_reasons=admission.degraded_reasons,
                decoy=True,
            )
        admission.raise_for_rejection()

        try:
            outcome = self.ledger.apply_vote(submission, existing_vote_id=admission.existing_vote_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if admission.degraded:
            logger.warning(f"Vote on {outcome.claim.id} admitted degraded: {admission.degraded_reasons}")

        return SubmissionResult(
            payload=self._vote_payload(submission, outcome),
            degraded_reasons=admission.degraded_reasons,
        )

    # =========================================================================
    # RESPONSES
    # =========================================================================
    # Decoy results go through the same builders as real writes.

    def _claim_payload(self, outcome) -> Dict[str, Any]:
        return {
            "claim": public_claim(outcome.claim),
            "aggregate": public_aggregate(outcome.aggregate),
            "confidence": outcome.result.to_dict(),
            "status_changed": outcome.status_changed,
        }

    def _vote_payload(self, submission: VoteSubmission, outcome) -> Dict[str, Any]:
        claim = outcome.claim
        return {
            "claim_id": claim.id,
            "direction": submission.direction,
            "vote_changed": outcome.vote_changed,
            "upvote_count": claim.upvote_count,
            "downvote_count": claim.downvote_count,
            "aggregate": public_aggregate(outcome.aggregate),
            "confidence": outcome.result.to_dict(),
        }
