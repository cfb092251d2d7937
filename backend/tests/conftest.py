"""
Shared fixtures: in-memory SQLite ledger, controllable clock, engine config
with bot scoring disabled, and helpers to build identities and submissions.
"""
import os
import sys
from datetime import datetime, timedelta

# Must be set before consensus_engine.database builds its engine
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("REDIS_URL", None)

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from consensus_engine.config import EngineConfig
from consensus_engine.database import Base
from consensus_engine.models import db_models  # noqa: F401  (registers tables)
from consensus_engine.errors import CounterUnavailable
from consensus_engine.services.abuse import AbuseGatePipeline, CounterStore, LocalCounterStore
from consensus_engine.services.abuse.pipeline import ClaimSubmission, VoteSubmission
from consensus_engine.services.identity import ActorIdentity


EPOCH = datetime(1970, 1, 1)


class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return (self.now - EPOCH).total_seconds()

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class DownCounterStore(CounterStore):
    """Counter store whose backend is unreachable."""

    def increment_and_count(self, key, window_seconds):
        raise CounterUnavailable("connection refused")

    def retry_after(self, key, window_seconds):
        raise CounterUnavailable("connection refused")


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return EngineConfig(database_url="sqlite://", bot_scoring_enabled=False)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def counter_store(clock):
    return LocalCounterStore(clock=clock.timestamp)


@pytest.fixture
def pipeline(config, counter_store, clock):
    return AbuseGatePipeline(
        config,
        counter_store=counter_store,
        fallback_store=LocalCounterStore(clock=clock.timestamp),
        clock=clock,
    )


# =============================================================================
# HELPERS
# =============================================================================

def actor(name: str, contact: str = None) -> ActorIdentity:
    return ActorIdentity(fingerprint=f"fp-{name}", contact=contact, client_signal="pytest")


def claim_submission(
    name: str,
    claim: str = "ACCEPTED",
    provider_id: str = "1234567890",
    plan_id: str = "PLAN-A",
    location_id: str = None,
    contact: str = None,
    **kwargs,
) -> ClaimSubmission:
    return ClaimSubmission(
        provider_id=provider_id,
        plan_id=plan_id,
        location_id=location_id,
        claim=claim,
        identity=actor(name, contact),
        **kwargs,
    )


def vote_submission(name: str, claim_id: str, direction: str = "up", **kwargs) -> VoteSubmission:
    return VoteSubmission(claim_id=claim_id, direction=direction, identity=actor(name), **kwargs)
