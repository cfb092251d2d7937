"""
Consensus Engine - Error Taxonomy

Rejected-by-policy: expected, user-facing, carries a machine-readable reason.
Degraded-dependency: raised by collaborators, absorbed inside the gate pipeline.
Invariant violation: programming error; fatal to the single request only.
"""
from typing import Any, Dict, Optional


class ConsensusEngineError(Exception):
    """Base class for engine errors."""


# =============================================================================
# REJECTED-BY-POLICY
# =============================================================================

class PolicyRejection(ConsensusEngineError):
    """A gate refused the write."""
    status_code = 400
    gate = "policy"

    def __init__(self, reason: str, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.retry_after = retry_after


class RateLimited(PolicyRejection):
    status_code = 429
    gate = "rate_limit"


class BotTokenMissing(PolicyRejection):
    status_code = 400
    gate = "bot_score"


class BotCheckFailed(PolicyRejection):
    status_code = 400
    gate = "bot_score"


class BotScoreTooLow(PolicyRejection):
    status_code = 403
    gate = "bot_score"


class BotScoringClosed(PolicyRejection):
    status_code = 503
    gate = "bot_score"


class DuplicateClaim(PolicyRejection):
    status_code = 409
    gate = "duplicate_window"


class DuplicateVote(PolicyRejection):
    status_code = 409
    gate = "vote_identity"


# =============================================================================
# DATA ERRORS
# =============================================================================

class NotFoundError(ConsensusEngineError):
    status_code = 404

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# =============================================================================
# DEGRADED DEPENDENCIES (never leave the gate pipeline)
# =============================================================================

class DependencyUnavailable(ConsensusEngineError):
    """A network collaborator could not be reached or timed out."""


class CounterUnavailable(DependencyUnavailable):
    pass


class BotScoringUnavailable(DependencyUnavailable):
    pass


# =============================================================================
# INVARIANT VIOLATIONS
# =============================================================================

class InvariantViolation(ConsensusEngineError):
    """An attempted mutation breaks a ledger or state-machine invariant."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}
