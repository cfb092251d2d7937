"""
Abuse Gate Stages

Each stage is a small state machine with the outcomes ADMIT, REJECT,
DEGRADE (degrade-and-admit) and DECOY (deceptive success, write discarded).
Stages never raise dependency errors: outages are converted to a fail-open
or fail-closed decision here.

Fixed order (see AbuseGatePipeline):
1. RateLimitGate
2. DecoyFieldGate
3. BotScoreGate
4. DuplicateWindowGate (claims only)
5. VoteIdentityGate (votes only)
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ...config import EngineConfig
from ...errors import (
    PolicyRejection, RateLimited, BotTokenMissing, BotCheckFailed, BotScoreTooLow,
    BotScoringClosed, DuplicateClaim, DuplicateVote, NotFoundError,
    CounterUnavailable, BotScoringUnavailable,
)
from ...models.db_models import VerificationClaimDB, VoteRecordDB
from ..identity import ActorIdentity
from .bot_scoring import BotScoringClient
from .counters import CounterStore


logger = logging.getLogger(__name__)


class ActionClass(str, Enum):
    SUBMIT_CLAIM = "submit-claim"
    SUBMIT_VOTE = "submit-vote"
    SEARCH = "search"


class GateOutcome(str, Enum):
    ADMIT = "admit"
    REJECT = "reject"
    DEGRADE = "degrade"
    DECOY = "decoy"


@dataclass
class GateDecision:
    """Result of one stage."""
    gate: str
    outcome: GateOutcome
    rejection: Optional[PolicyRejection] = None
    degraded_reason: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def admit(cls, gate: str, **data) -> "GateDecision":
        return cls(gate=gate, outcome=GateOutcome.ADMIT, data=data)

    @classmethod
    def reject(cls, gate: str, rejection: PolicyRejection) -> "GateDecision":
        return cls(gate=gate, outcome=GateOutcome.REJECT, rejection=rejection)

    @classmethod
    def degrade(cls, gate: str, reason: str, **data) -> "GateDecision":
        return cls(gate=gate, outcome=GateOutcome.DEGRADE, degraded_reason=reason, data=data)


# =============================================================================
# 1. RATE LIMITER
# =============================================================================

class RateLimitGate:
    """
    Sliding-window ceiling per (action class, actor fingerprint).

    Attempts are counted whether or not they end up admitted. If the counter
    store is unreachable the gate fails open onto a local fallback store with
    a tighter ceiling and tags the request as degraded.
    """
    name = "rate_limit"

    MESSAGES = {
        ActionClass.SUBMIT_CLAIM: "You've submitted too many verifications. Please try again later.",
        ActionClass.SUBMIT_VOTE: "You've submitted too many votes. Please try again later.",
        ActionClass.SEARCH: "Too many search requests. Please try again later.",
    }

    def __init__(self, config: EngineConfig, counter_store: CounterStore, fallback_store: CounterStore):
        self.config = config
        self.counter_store = counter_store
        self.fallback_store = fallback_store

    def check(self, action: ActionClass, identity: ActorIdentity) -> GateDecision:
        max_requests, window_seconds = self.config.rate_limit_for(action.value)
        key = f"{action.value}:{identity.fingerprint}"

        try:
            count = self.counter_store.increment_and_count(key, window_seconds)
        except CounterUnavailable:
            return self._check_fallback(action, key)

        if count > max_requests:
            try:
                retry_after = self.counter_store.retry_after(key, window_seconds)
            except CounterUnavailable:
                retry_after = window_seconds
            return GateDecision.reject(
                self.name,
                RateLimited("rate_limited", self.MESSAGES[action], retry_after=retry_after),
            )
        return GateDecision.admit(self.name, count=count, limit=max_requests)

    def _check_fallback(self, action: ActionClass, key: str) -> GateDecision:
        max_requests = self.config.counter_fallback_max_requests
        window_seconds = self.config.counter_fallback_window_seconds
        fallback_key = f"counter-fallback:{key}"
        count = self.fallback_store.increment_and_count(fallback_key, window_seconds)

        if count > max_requests:
            logger.warning(f"Counter store down - fallback ceiling exceeded for {action.value}")
            return GateDecision.reject(
                self.name,
                RateLimited(
                    "rate_limited_degraded",
                    "Too many requests while rate limiting is degraded. Please try again later.",
                    retry_after=self.fallback_store.retry_after(fallback_key, window_seconds),
                ),
            )
        logger.warning(f"FAIL-OPEN: counter store unavailable, admitting {action.value} under fallback ceiling")
        return GateDecision.degrade(self.name, "counter-unavailable", count=count, limit=max_requests)


# =============================================================================
# 2. DECOY FIELD TRAP
# =============================================================================

class DecoyFieldGate:
    """A populated decoy field means automation. The caller still sees success."""
    name = "decoy_field"

    def __init__(self, config: EngineConfig):
        self.field_name = config.decoy_field_name

    def check(self, decoy_value: Optional[str], identity: ActorIdentity) -> GateDecision:
        if decoy_value is not None and str(decoy_value).strip():
            logger.warning(
                f"Decoy field '{self.field_name}' populated - likely bot "
                f"(fingerprint={identity.fingerprint[:12]})"
            )
            return GateDecision(gate=self.name, outcome=GateOutcome.DECOY)
        return GateDecision.admit(self.name)


# =============================================================================
# 3. BOT SCORE
# =============================================================================

class BotScoreGate:
    """
    External humanness score check.

    FAIL-OPEN (default): admit under a strict per-actor fallback ceiling, tag degraded.
    FAIL-CLOSED: reject every write while the scorer is unreachable.
    """
    name = "bot_score"

    def __init__(
        self,
        config: EngineConfig,
        client: Optional[BotScoringClient],
        fallback_store: CounterStore,
    ):
        self.config = config
        self.client = client
        self.fallback_store = fallback_store

    def check(self, token: Optional[str], identity: ActorIdentity) -> GateDecision:
        if self.client is None:
            return GateDecision.admit(self.name, skipped=True)

        if not token:
            return GateDecision.reject(
                self.name,
                BotTokenMissing("bot_token_required", "Bot verification token required for submissions"),
            )

        try:
            verdict = self.client.verify(token, identity.fingerprint)
        except BotScoringUnavailable as e:
            logger.error(
                f"Bot scoring unavailable (fail mode: {self.config.bot_fail_mode}): {e}"
            )
            return self._unavailable(identity)

        if not verdict.ok:
            logger.warning(f"Bot verification failed: {verdict.error_codes}")
            return GateDecision.reject(
                self.name, BotCheckFailed("bot_check_failed", "Bot verification failed"),
            )

        if verdict.score < self.config.bot_min_score:
            logger.warning(
                f"Low bot score {verdict.score:.2f} < {self.config.bot_min_score} "
                f"(fingerprint={identity.fingerprint[:12]})"
            )
            return GateDecision.reject(
                self.name,
                BotScoreTooLow("bot_score_too_low", "Request blocked due to suspicious activity"),
            )

        return GateDecision.admit(self.name, bot_score=verdict.score)

    def _unavailable(self, identity: ActorIdentity) -> GateDecision:
        if self.config.bot_fail_mode == "closed":
            return GateDecision.reject(
                self.name,
                BotScoringClosed(
                    "bot_scoring_unavailable",
                    "Security verification temporarily unavailable. Please try again in a few minutes.",
                ),
            )

        window_seconds = self.config.bot_fallback_window_seconds
        key = f"bot-fallback:{identity.fingerprint}"
        count = self.fallback_store.increment_and_count(key, window_seconds)

        if count > self.config.bot_fallback_max_requests:
            logger.warning("FAIL-OPEN: bot-scoring fallback ceiling exceeded")
            return GateDecision.reject(
                self.name,
                RateLimited(
                    "bot_fallback_rate_limited",
                    "Too many requests while security verification is unavailable. Please try again later.",
                    retry_after=self.fallback_store.retry_after(key, window_seconds),
                ),
            )

        logger.warning(
            f"FAIL-OPEN: admitting with fallback ceiling "
            f"({count}/{self.config.bot_fallback_max_requests})"
        )
        return GateDecision.degrade(self.name, "bot-scoring-unavailable", count=count)


# =============================================================================
# 4. DUPLICATE WINDOW (claims only)
# =============================================================================

def same_location(column, location_id: Optional[str]):
    return column.is_(None) if location_id is None else column == location_id


class DuplicateWindowGate:
    """
    Rejects a second claim on the same tuple from the same fingerprint, or
    from the same self-reported contact, inside the duplicate window.
    """
    name = "duplicate_window"

    def __init__(self, config: EngineConfig):
        self.window = timedelta(seconds=config.duplicate_window_seconds)
        self.window_days = config.duplicate_window_seconds // 86400

    def check(
        self,
        db: Session,
        provider_id: str,
        plan_id: str,
        location_id: Optional[str],
        identity: ActorIdentity,
        now: datetime,
    ) -> GateDecision:
        cutoff = now - self.window
        base = db.query(VerificationClaimDB.id).filter(
            VerificationClaimDB.provider_id == provider_id,
            VerificationClaimDB.plan_id == plan_id,
            same_location(VerificationClaimDB.location_id, location_id),
            VerificationClaimDB.created_at >= cutoff,
        )

        if base.filter(VerificationClaimDB.actor_fingerprint == identity.fingerprint).first():
            return GateDecision.reject(
                self.name,
                DuplicateClaim(
                    "duplicate_claim",
                    f"You have already submitted a verification for this provider-plan pair "
                    f"within the last {self.window_days} days.",
                ),
            )

        if identity.contact and base.filter(VerificationClaimDB.actor_contact == identity.contact).first():
            return GateDecision.reject(
                self.name,
                DuplicateClaim(
                    "duplicate_claim_contact",
                    f"This contact has already submitted a verification for this provider-plan pair "
                    f"within the last {self.window_days} days.",
                ),
            )

        return GateDecision.admit(self.name)


# =============================================================================
# 5. VOTE IDENTITY (votes only)
# =============================================================================

class VoteIdentityGate:
    """
    One vote per (claim, actor). Same direction again is a duplicate;
    the opposite direction proceeds as an update-in-place.
    """
    name = "vote_identity"

    def check(self, db: Session, claim_id: str, direction: str, identity: ActorIdentity) -> GateDecision:
        claim = db.query(VerificationClaimDB.id).filter(VerificationClaimDB.id == claim_id).first()
        if not claim:
            raise NotFoundError("Verification not found")

        existing = db.query(VoteRecordDB).filter(
            VoteRecordDB.claim_id == claim_id,
            VoteRecordDB.actor_fingerprint == identity.fingerprint,
        ).first()

        if existing is None:
            return GateDecision.admit(self.name, existing_vote_id=None)

        if existing.direction.value == direction:
            return GateDecision.reject(
                self.name,
                DuplicateVote("duplicate_vote", "You have already voted on this verification"),
            )

        return GateDecision.admit(self.name, existing_vote_id=existing.id)
