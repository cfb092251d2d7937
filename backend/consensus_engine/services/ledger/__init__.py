"""
Ledger Services

Claims, votes and aggregates: the durable source of truth for scoring.
"""

from .verification_ledger import (
    ClaimOutcome,
    VoteOutcome,
    VerificationLedgerService,
    live_claim_filter,
    public_aggregate,
    public_claim,
)

__all__ = [
    'ClaimOutcome',
    'VoteOutcome',
    'VerificationLedgerService',
    'live_claim_filter',
    'public_aggregate',
    'public_claim',
]
