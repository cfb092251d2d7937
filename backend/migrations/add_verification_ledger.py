"""
Migration: Add verification ledger tables.

Creates 4 tables:
1. verification_claims - one row per admitted claim
2. vote_records - one vote per (claim, actor)
3. acceptance_aggregates - current answer per (provider, plan, location) tuple
4. status_transitions - immutable log of aggregate status changes

Idempotent: existing tables are left untouched.
"""
from sqlalchemy import create_engine, text
import os

# Use same DB URL pattern as main app
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/consensus_engine"
)


def table_exists(conn, table_name: str) -> bool:
    """Check if a table exists in the database."""
    result = conn.execute(text("""
        SELECT EXISTS (
            SELECT FROM information_schema.tables
            WHERE table_name = :table_name
        )
    """), {"table_name": table_name})
    return result.fetchone()[0]


def run_migration():
    """Create all verification ledger tables."""
    engine = create_engine(DATABASE_URL)

    with engine.connect() as conn:
        # =================================================================
        # TABLE 1: verification_claims
        # =================================================================
        if table_exists(conn, "verification_claims"):
            print("verification_claims table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE verification_claims (
                    id VARCHAR(36) PRIMARY KEY,
                    tuple_key VARCHAR(255) NOT NULL,
                    provider_id VARCHAR(64) NOT NULL,
                    plan_id VARCHAR(64) NOT NULL,
                    location_id VARCHAR(64),
                    claim VARCHAR(20) NOT NULL,
                    source VARCHAR(30) NOT NULL DEFAULT 'CROWDSOURCE',
                    actor_fingerprint VARCHAR(64) NOT NULL,
                    actor_contact VARCHAR(255),
                    client_signal VARCHAR(255),
                    bot_score DOUBLE PRECISION,
                    upvote_count INTEGER NOT NULL DEFAULT 0 CHECK (upvote_count >= 0),
                    downvote_count INTEGER NOT NULL DEFAULT 0 CHECK (downvote_count >= 0),
                    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    expires_at TIMESTAMP
                )
            """))
            conn.execute(text("""
                CREATE INDEX ix_verification_claims_tuple_key ON verification_claims(tuple_key)
            """))
            conn.execute(text("""
                CREATE INDEX ix_claims_dup_fingerprint
                ON verification_claims(provider_id, plan_id, actor_fingerprint, created_at)
            """))
            conn.execute(text("""
                CREATE INDEX ix_claims_dup_contact
                ON verification_claims(provider_id, plan_id, actor_contact, created_at)
            """))
            conn.execute(text("""
                CREATE INDEX ix_claims_expires_at ON verification_claims(expires_at)
            """))
            print("Created verification_claims table")

        # =================================================================
        # TABLE 2: vote_records
        # =================================================================
        if table_exists(conn, "vote_records"):
            print("vote_records table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE vote_records (
                    id VARCHAR(36) PRIMARY KEY,
                    claim_id VARCHAR(36) NOT NULL REFERENCES verification_claims(id) ON DELETE CASCADE,
                    actor_fingerprint VARCHAR(64) NOT NULL,
                    direction VARCHAR(10) NOT NULL,
                    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    CONSTRAINT uq_vote_claim_actor UNIQUE (claim_id, actor_fingerprint)
                )
            """))
            print("Created vote_records table")

        # =================================================================
        # TABLE 3: acceptance_aggregates
        # =================================================================
        if table_exists(conn, "acceptance_aggregates"):
            print("acceptance_aggregates table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE acceptance_aggregates (
                    id SERIAL PRIMARY KEY,
                    tuple_key VARCHAR(255) NOT NULL UNIQUE,
                    provider_id VARCHAR(64) NOT NULL,
                    plan_id VARCHAR(64) NOT NULL,
                    location_id VARCHAR(64),
                    specialty_class VARCHAR(30) NOT NULL DEFAULT 'OTHER',
                    status VARCHAR(20) NOT NULL DEFAULT 'PENDING',
                    confidence_score DOUBLE PRECISION NOT NULL DEFAULT 0,
                    confidence_tier VARCHAR(20) NOT NULL DEFAULT 'VERY_LOW',
                    verification_count INTEGER NOT NULL DEFAULT 0,
                    last_verified_at TIMESTAMP,
                    expires_at TIMESTAMP,
                    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
            """))
            conn.execute(text("""
                CREATE INDEX ix_acceptance_aggregates_provider_id ON acceptance_aggregates(provider_id)
            """))
            conn.execute(text("""
                CREATE INDEX ix_acceptance_aggregates_plan_id ON acceptance_aggregates(plan_id)
            """))
            conn.execute(text("""
                CREATE INDEX ix_aggregates_expires_at ON acceptance_aggregates(expires_at)
            """))
            print("Created acceptance_aggregates table")

        # =================================================================
        # TABLE 4: status_transitions
        # =================================================================
        if table_exists(conn, "status_transitions"):
            print("status_transitions table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE status_transitions (
                    id VARCHAR(36) PRIMARY KEY,
                    tuple_key VARCHAR(255) NOT NULL,
                    from_status VARCHAR(20) NOT NULL,
                    to_status VARCHAR(20) NOT NULL,
                    trigger VARCHAR(50) NOT NULL,
                    confidence_score DOUBLE PRECISION NOT NULL,
                    accepted_count INTEGER NOT NULL DEFAULT 0,
                    not_accepted_count INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
            """))
            conn.execute(text("""
                CREATE INDEX ix_status_transitions_tuple_key ON status_transitions(tuple_key)
            """))
            print("Created status_transitions table")

        conn.commit()
        print("Verification ledger migration complete")


if __name__ == "__main__":
    run_migration()
