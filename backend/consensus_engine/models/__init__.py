"""Consensus Engine - Data Models"""
from .db_models import (
    # Enums
    ClaimDirection, ClaimSource, VoteDirection, AcceptanceStatus, ConfidenceTier, SpecialtyClass,
    # Tables
    VerificationClaimDB, VoteRecordDB, AcceptanceAggregateDB, StatusTransitionDB,
    make_tuple_key,
)

__all__ = [
    "ClaimDirection", "ClaimSource", "VoteDirection", "AcceptanceStatus", "ConfidenceTier",
    "SpecialtyClass",
    "VerificationClaimDB", "VoteRecordDB", "AcceptanceAggregateDB", "StatusTransitionDB",
    "make_tuple_key",
]
