"""
Abuse Gate Pipeline

Ordered chain of independent gates every inbound write passes before it
touches the ledger. Any REJECT ends the chain; DECOY ends it with a
deceptive success; DEGRADE admits and marks the admission as degraded.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from ...config import EngineConfig
from ...database import utcnow
from ...errors import PolicyRejection
from ..identity import ActorIdentity
from .bot_scoring import BotScoringClient
from .counters import CounterStore, LocalCounterStore
from .gates import (
    ActionClass, GateDecision, GateOutcome,
    RateLimitGate, DecoyFieldGate, BotScoreGate, DuplicateWindowGate, VoteIdentityGate,
)


logger = logging.getLogger(__name__)


@dataclass
class ClaimSubmission:
    provider_id: str
    plan_id: str
    claim: str  # ClaimDirection value
    identity: ActorIdentity
    location_id: Optional[str] = None
    source: str = "CROWDSOURCE"
    specialty: Optional[str] = None
    decoy_value: Optional[str] = None
    bot_token: Optional[str] = None


@dataclass
class VoteSubmission:
    claim_id: str
    direction: str  # VoteDirection value
    identity: ActorIdentity
    bot_token: Optional[str] = None
    decoy_value: Optional[str] = None


@dataclass
class Admission:
    """Composite pipeline verdict."""
    admitted: bool
    decoy: bool = False
    rejection: Optional[PolicyRejection] = None
    degraded_reasons: List[str] = field(default_factory=list)
    decisions: List[GateDecision] = field(default_factory=list)
    bot_score: Optional[float] = None
    existing_vote_id: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return bool(self.degraded_reasons)

    def raise_for_rejection(self) -> None:
        if self.rejection is not None:
            raise self.rejection


class AbuseGatePipeline:
    """
    Runs the gates in fixed order.

    Usage:
        pipeline = AbuseGatePipeline(config, counter_store, bot_client)
        admission = pipeline.evaluate_claim(db, submission)
    """

    def __init__(
        self,
        config: EngineConfig,
        counter_store: CounterStore,
        bot_client: Optional[BotScoringClient] = None,
        fallback_store: Optional[CounterStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.clock = clock or utcnow
        # Fallback ceilings always live in-process: they exist for when shared state is gone
        fallback_store = fallback_store or LocalCounterStore()

        self.rate_gate = RateLimitGate(config, counter_store, fallback_store)
        self.decoy_gate = DecoyFieldGate(config)
        self.bot_gate = BotScoreGate(config, bot_client, fallback_store)
        self.duplicate_gate = DuplicateWindowGate(config)
        self.vote_gate = VoteIdentityGate()

    def check_rate(self, action: ActionClass, identity: ActorIdentity) -> Admission:
        """Rate limit only; used for read-side action classes such as search."""
        admission = Admission(admitted=True)
        self._apply(admission, self.rate_gate.check(action, identity))
        return admission

    def evaluate_claim(self, db: Session, submission: ClaimSubmission) -> Admission:
        identity = submission.identity
        stages = (
            lambda: self.rate_gate.check(ActionClass.SUBMIT_CLAIM, identity),
            lambda: self.decoy_gate.check(submission.decoy_value, identity),
            lambda: self.bot_gate.check(submission.bot_token, identity),
            lambda: self.duplicate_gate.check(
                db,
                submission.provider_id,
                submission.plan_id,
                submission.location_id,
                identity,
                self.clock(),
            ),
        )
        return self._run(stages)

    def evaluate_vote(self, db: Session, submission: VoteSubmission) -> Admission:
        identity = submission.identity
        stages = (
            lambda: self.rate_gate.check(ActionClass.SUBMIT_VOTE, identity),
            lambda: self.decoy_gate.check(submission.decoy_value, identity),
            lambda: self.bot_gate.check(submission.bot_token, identity),
            lambda: self.vote_gate.check(db, submission.claim_id, submission.direction, identity),
        )
        return self._run(stages)

    def _run(self, stages) -> Admission:
        admission = Admission(admitted=True)
        for stage in stages:
            decision = stage()
            self._apply(admission, decision)
            if not admission.admitted:
                break
        return admission

    def _apply(self, admission: Admission, decision: GateDecision) -> None:
        admission.decisions.append(decision)

        if decision.outcome == GateOutcome.REJECT:
            admission.admitted = False
            admission.rejection = decision.rejection
            logger.info(f"Rejected at {decision.gate}: {decision.rejection.reason}")
        elif decision.outcome == GateOutcome.DECOY:
            admission.admitted = False
            admission.decoy = True
        elif decision.outcome == GateOutcome.DEGRADE:
            admission.degraded_reasons.append(decision.degraded_reason)

        if "bot_score" in decision.data:
            admission.bot_score = decision.data["bot_score"]
        if decision.data.get("existing_vote_id"):
            admission.existing_vote_id = decision.data["existing_vote_id"]
