"""
Consensus Engine - SQLAlchemy ORM Models
Verification ledger, vote records, acceptance aggregates and the status transition log
"""
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Column, String, Integer, Float, DateTime, ForeignKey, Index, UniqueConstraint,
    Enum as SQLEnum,
)
from sqlalchemy.orm import relationship

from ..database import Base, utcnow


# =============================================================================
# ENUMS
# =============================================================================

class ClaimDirection(str, Enum):
    """What a claim asserts about a provider-plan tuple."""
    ACCEPTED = "ACCEPTED"
    NOT_ACCEPTED = "NOT_ACCEPTED"


class ClaimSource(str, Enum):
    """Where a claim came from. Drives both TTL and source weight."""
    CROWDSOURCE = "CROWDSOURCE"
    OFFICIAL_REGISTRY = "OFFICIAL_REGISTRY"
    CARRIER_FEED = "CARRIER_FEED"
    PROVIDER_PORTAL = "PROVIDER_PORTAL"
    PHONE_CALL = "PHONE_CALL"
    AUTOMATED = "AUTOMATED"


class VoteDirection(str, Enum):
    UP = "up"
    DOWN = "down"


class AcceptanceStatus(str, Enum):
    """States in the consensus state machine."""
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    NOT_ACCEPTED = "NOT_ACCEPTED"
    UNKNOWN = "UNKNOWN"


class ConfidenceTier(str, Enum):
    VERY_LOW = "VERY_LOW"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    VERY_HIGH = "VERY_HIGH"


class SpecialtyClass(str, Enum):
    """Specialty buckets with distinct freshness thresholds."""
    MENTAL_HEALTH = "MENTAL_HEALTH"
    PRIMARY_CARE = "PRIMARY_CARE"
    SPECIALIST = "SPECIALIST"
    HOSPITAL_BASED = "HOSPITAL_BASED"
    OTHER = "OTHER"


def make_tuple_key(provider_id: str, plan_id: str, location_id: Optional[str] = None) -> str:
    """Stable unique key for a (provider, plan, location) tuple; NULL location maps to '*'."""
    return f"{provider_id}|{plan_id}|{location_id if location_id else '*'}"


# =============================================================================
# VERIFICATION LEDGER
# =============================================================================

class VerificationClaimDB(Base):
    """
    One submitted opinion about a (provider, plan, location) tuple.
    Created only after the full abuse gate pipeline admits it.
    """
    __tablename__ = "verification_claims"

    id = Column(String(36), primary_key=True)  # UUID
    tuple_key = Column(String(255), nullable=False, index=True)
    provider_id = Column(String(64), nullable=False)
    plan_id = Column(String(64), nullable=False)
    location_id = Column(String(64), nullable=True)

    claim = Column(SQLEnum(ClaimDirection), nullable=False)
    source = Column(SQLEnum(ClaimSource), nullable=False, default=ClaimSource.CROWDSOURCE)

    # Identity signals (never returned to callers)
    actor_fingerprint = Column(String(64), nullable=False)
    actor_contact = Column(String(255), nullable=True)
    client_signal = Column(String(255), nullable=True)
    bot_score = Column(Float, nullable=True)

    upvote_count = Column(Integer, nullable=False, default=0)
    downvote_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=True)  # NULL = legacy row, never expires

    votes = relationship("VoteRecordDB", back_populates="claim")

    __table_args__ = (
        # Duplicate-window lookups
        Index("ix_claims_dup_fingerprint", "provider_id", "plan_id", "actor_fingerprint", "created_at"),
        Index("ix_claims_dup_contact", "provider_id", "plan_id", "actor_contact", "created_at"),
        Index("ix_claims_expires_at", "expires_at"),
    )


class VoteRecordDB(Base):
    """One up/down opinion on a claim. At most one per (claim, actor)."""
    __tablename__ = "vote_records"

    id = Column(String(36), primary_key=True)  # UUID
    claim_id = Column(String(36), ForeignKey("verification_claims.id", ondelete="CASCADE"), nullable=False)
    actor_fingerprint = Column(String(64), nullable=False)
    direction = Column(SQLEnum(VoteDirection), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    claim = relationship("VerificationClaimDB", back_populates="votes")

    __table_args__ = (
        UniqueConstraint("claim_id", "actor_fingerprint", name="uq_vote_claim_actor"),
    )


# =============================================================================
# AGGREGATES
# =============================================================================

class AcceptanceAggregateDB(Base):
    """The system's current answer for one tuple."""
    __tablename__ = "acceptance_aggregates"

    id = Column(Integer, primary_key=True, autoincrement=True)  # cursor for batch jobs
    tuple_key = Column(String(255), nullable=False, unique=True)
    provider_id = Column(String(64), nullable=False, index=True)
    plan_id = Column(String(64), nullable=False, index=True)
    location_id = Column(String(64), nullable=True)
    specialty_class = Column(SQLEnum(SpecialtyClass), nullable=False, default=SpecialtyClass.OTHER)

    status = Column(SQLEnum(AcceptanceStatus), nullable=False, default=AcceptanceStatus.PENDING)
    confidence_score = Column(Float, nullable=False, default=0)
    confidence_tier = Column(SQLEnum(ConfidenceTier), nullable=False, default=ConfidenceTier.VERY_LOW)
    verification_count = Column(Integer, nullable=False, default=0)

    last_verified_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_aggregates_expires_at", "expires_at"),
    )


class StatusTransitionDB(Base):
    """Immutable log of every aggregate status change."""
    __tablename__ = "status_transitions"

    id = Column(String(36), primary_key=True)  # UUID
    tuple_key = Column(String(255), nullable=False, index=True)
    from_status = Column(SQLEnum(AcceptanceStatus), nullable=False)
    to_status = Column(SQLEnum(AcceptanceStatus), nullable=False)
    trigger = Column(String(50), nullable=False)  # claim, vote, decay
    confidence_score = Column(Float, nullable=False)
    accepted_count = Column(Integer, nullable=False, default=0)
    not_accepted_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
