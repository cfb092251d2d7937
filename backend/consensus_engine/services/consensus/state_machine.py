"""
Consensus State Machine

Decides whether the acceptance status of a tuple moves after every scoring
recomputation. Status is sticky: it only changes under the supermajority
rule, the retention rule (decay only) or new evidence on an UNKNOWN tuple.
All transitions are logged immutably.
"""
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.orm import Session

from ...config import EngineConfig, get_settings
from ...database import utcnow
from ...errors import InvariantViolation
from ...models.db_models import (
    AcceptanceStatus, ClaimDirection, AcceptanceAggregateDB, StatusTransitionDB,
)
from ..scoring.confidence import ConfidenceResult


logger = logging.getLogger(__name__)


class TransitionTrigger(str, Enum):
    CLAIM = "claim"
    VOTE = "vote"
    DECAY = "decay"


# =============================================================================
# STATE CONFIGURATION
# =============================================================================
#
# ENTRY RULES:
# - ACCEPTED / NOT_ACCEPTED: only via the consensus rule
#     verification_count >= MIN_VERIFICATIONS
#     AND confidence_score >= MIN_CONFIDENCE_FOR_CHANGE
#     AND majority > minority * SUPERMAJORITY_FACTOR
# - UNKNOWN: a settled tuple whose score decays below the retention threshold
# - PENDING: initial state, or new evidence on an UNKNOWN tuple without consensus
#
# =============================================================================

STATE_CONFIG = {
    AcceptanceStatus.PENDING: {
        "description": "No or insufficient evidence yet",
        "allowed_transitions": [
            AcceptanceStatus.ACCEPTED,
            AcceptanceStatus.NOT_ACCEPTED,
        ],
        "settled": False,
    },
    AcceptanceStatus.ACCEPTED: {
        "description": "Community consensus: provider accepts the plan",
        "allowed_transitions": [
            AcceptanceStatus.NOT_ACCEPTED,
            AcceptanceStatus.UNKNOWN,
        ],
        "settled": True,
    },
    AcceptanceStatus.NOT_ACCEPTED: {
        "description": "Community consensus: provider does not accept the plan",
        "allowed_transitions": [
            AcceptanceStatus.ACCEPTED,
            AcceptanceStatus.UNKNOWN,
        ],
        "settled": True,
    },
    AcceptanceStatus.UNKNOWN: {
        "description": "Previous consensus aged out; waiting for new evidence",
        "allowed_transitions": [
            AcceptanceStatus.ACCEPTED,
            AcceptanceStatus.NOT_ACCEPTED,
            AcceptanceStatus.PENDING,
        ],
        "settled": False,
    },
}

DIRECTION_TO_STATUS = {
    ClaimDirection.ACCEPTED: AcceptanceStatus.ACCEPTED,
    ClaimDirection.NOT_ACCEPTED: AcceptanceStatus.NOT_ACCEPTED,
}


# =============================================================================
# STATE MACHINE
# =============================================================================

class ConsensusStateMachine:
    """
    Consensus gate for AcceptanceAggregateDB.status.

    Usage:
        machine = ConsensusStateMachine(db, config)
        changed, message = machine.apply(aggregate, result, TransitionTrigger.CLAIM)
    """

    def __init__(self, db: Session, config: Optional[EngineConfig] = None):
        self.db = db
        self.config = config or get_settings()

    def get_state_config(self, status: AcceptanceStatus) -> Dict[str, Any]:
        return STATE_CONFIG.get(status, {})

    def get_next_states(self, status: AcceptanceStatus) -> List[AcceptanceStatus]:
        return self.get_state_config(status).get("allowed_transitions", [])

    def can_transition(
        self,
        from_status: AcceptanceStatus,
        to_status: AcceptanceStatus,
    ) -> Tuple[bool, str]:
        """
        Check if a status transition is allowed.

        Returns (allowed, reason)
        """
        if to_status in self.get_next_states(from_status):
            return True, "Transition allowed"
        return False, f"Cannot transition from {from_status.value} to {to_status.value}"

    def consensus_direction(self, result: ConfidenceResult) -> Optional[ClaimDirection]:
        """Majority direction when the consensus rule holds, else None."""
        if result.verification_count < self.config.min_verifications:
            return None
        if result.score < self.config.min_confidence_for_change:
            return None

        factor = self.config.supermajority_factor
        if result.accepted_count > result.not_accepted_count * factor:
            return ClaimDirection.ACCEPTED
        if result.not_accepted_count > result.accepted_count * factor:
            return ClaimDirection.NOT_ACCEPTED
        return None

    def decide(
        self,
        current: AcceptanceStatus,
        result: ConfidenceResult,
        trigger: TransitionTrigger,
    ) -> AcceptanceStatus:
        """Target status for a recomputation. Pure; returns `current` when nothing moves."""
        direction = self.consensus_direction(result)
        if direction is not None:
            return DIRECTION_TO_STATUS[direction]

        settled = self.get_state_config(current).get("settled", False)
        if (
            trigger == TransitionTrigger.DECAY
            and settled
            and result.score < self.config.min_confidence_to_retain
        ):
            return AcceptanceStatus.UNKNOWN

        if current == AcceptanceStatus.UNKNOWN and trigger != TransitionTrigger.DECAY:
            return AcceptanceStatus.PENDING

        return current

    def apply(
        self,
        aggregate: AcceptanceAggregateDB,
        result: ConfidenceResult,
        trigger: TransitionTrigger,
        now: Optional[datetime] = None,
    ) -> Tuple[bool, str]:
        """
        Evaluate and, if warranted, execute a transition.

        Returns (changed, message)
        """
        current = aggregate.status or AcceptanceStatus.PENDING
        target = self.decide(current, result, trigger)
        if target == current:
            return False, f"Status unchanged ({current.value})"
        return self.transition(aggregate, target, trigger, result, now)

    def transition(
        self,
        aggregate: AcceptanceAggregateDB,
        to_status: AcceptanceStatus,
        trigger: TransitionTrigger,
        result: ConfidenceResult,
        now: Optional[datetime] = None,
    ) -> Tuple[bool, str]:
        """
        Execute a status transition and append it to the transition log.

        Raises InvariantViolation for a transition outside STATE_CONFIG, or a
        move into ACCEPTED / NOT_ACCEPTED the consensus rule does not support.
        """
        from_status = aggregate.status or AcceptanceStatus.PENDING
        now = now or utcnow()

        allowed, reason = self.can_transition(from_status, to_status)
        if allowed and to_status in DIRECTION_TO_STATUS.values():
            direction = self.consensus_direction(result)
            if direction is None or DIRECTION_TO_STATUS[direction] != to_status:
                allowed, reason = False, f"Consensus rule does not support {to_status.value}"

        if not allowed:
            context = {
                "tuple_key": aggregate.tuple_key,
                "from_status": from_status.value,
                "to_status": to_status.value,
                "trigger": trigger.value,
                "confidence_score": result.score,
                "verification_count": result.verification_count,
                "accepted_count": result.accepted_count,
                "not_accepted_count": result.not_accepted_count,
            }
            logger.error(f"Invariant violation: {reason} {context}")
            raise InvariantViolation(reason, context)

        self.db.add(StatusTransitionDB(
            id=str(uuid4()),
            tuple_key=aggregate.tuple_key,
            from_status=from_status,
            to_status=to_status,
            trigger=trigger.value,
            confidence_score=result.score,
            accepted_count=result.accepted_count,
            not_accepted_count=result.not_accepted_count,
            created_at=now,
        ))

        aggregate.status = to_status
        aggregate.updated_at = now

        logger.info(
            f"Status {from_status.value} -> {to_status.value} for {aggregate.tuple_key} "
            f"(trigger={trigger.value}, score={result.score})"
        )
        return True, f"Transitioned to {to_status.value}"
