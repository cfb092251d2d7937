"""
Test Suite: HTTP API

Tests:
1. Claim submission: 201, decoy, validation, rate limit with Retry-After, duplicates
2. Votes: flip, duplicate, unknown claim
3. Reads: tuple view, recent claims, stats
4. Admin: secret handling and job triggers
"""
import pytest
from fastapi.testclient import TestClient

from consensus_engine.database import get_db
from consensus_engine.dependencies import get_clock, get_config, get_pipeline
from consensus_engine.main import app
from consensus_engine.models.db_models import VerificationClaimDB
from consensus_engine.services.abuse import AbuseGatePipeline, LocalCounterStore

from conftest import DownCounterStore


ADMIN_SECRET = "s3cret-admin"


@pytest.fixture
def api_config(config):
    return config.with_overrides(trust_proxy_headers=True, admin_secret=ADMIN_SECRET)


@pytest.fixture
def client(session_factory, api_config, pipeline, clock):
    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_config] = lambda: api_config
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    app.dependency_overrides[get_clock] = lambda: clock
    try:
        # No context manager: lifespan would touch the process-wide engine
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def headers_for(actor: str) -> dict:
    return {"X-Forwarded-For": f"203.0.113.{sum(map(ord, actor)) % 250 + 1}"}


def submit(client, actor="alice", **overrides):
    body = {"provider_id": "1234567890", "plan_id": "PLAN-A", "claim": "ACCEPTED"}
    body.update(overrides)
    return client.post("/verify", json=body, headers=headers_for(actor))


# =============================================================================
# CLAIMS
# =============================================================================

class TestSubmitClaim:

    def test_created(self, client):
        response = submit(client)
        assert response.status_code == 201

        body = response.json()
        assert body["success"] is True
        assert body["degraded"] is False
        assert body["data"]["aggregate"]["status"] == "PENDING"
        assert body["data"]["confidence"]["tier"] == "MEDIUM"
        assert "actor_fingerprint" not in body["data"]["claim"]
        assert "X-Security-Degraded" not in response.headers

    def test_public_submission_is_always_crowdsourced(self, client):
        response = submit(client, source="OFFICIAL_REGISTRY")
        assert response.json()["data"]["claim"]["source"] == "CROWDSOURCE"

    def test_invalid_claim_value(self, client):
        assert submit(client, claim="MAYBE").status_code == 422

    def test_decoy_looks_like_success(self, client, session_factory):
        response = submit(client, actor="bot", website="http://spam.example")
        assert response.status_code == 201
        assert response.json()["data"]["claim"]["id"]

        db = session_factory()
        try:
            assert db.query(VerificationClaimDB).count() == 0
        finally:
            db.close()

    def test_decoy_response_matches_real_response(self, client):
        real = submit(client)
        decoy = submit(client, actor="bot", website="http://spam.example")
        assert decoy.status_code == real.status_code

        real_body, decoy_body = real.json(), decoy.json()
        assert decoy_body.keys() == real_body.keys()
        assert decoy_body["data"].keys() == real_body["data"].keys()
        for section in ("claim", "aggregate", "confidence"):
            assert decoy_body["data"][section].keys() == real_body["data"][section].keys()

    def test_decoy_vote_matches_real_vote(self, client):
        claim_id = submit(client).json()["data"]["claim"]["id"]
        real = client.post(f"/verify/{claim_id}/vote", json={"vote": "up"}, headers=headers_for("bob"))
        decoy = client.post(
            f"/verify/{claim_id}/vote",
            json={"vote": "up", "website": "http://spam.example"},
            headers=headers_for("bot"),
        )
        assert decoy.status_code == real.status_code == 200
        assert decoy.json()["data"].keys() == real.json()["data"].keys()

    def test_duplicate(self, client):
        submit(client)
        response = submit(client, claim="NOT_ACCEPTED")
        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["error_code"] == "duplicate_claim"
        assert detail["gate"] == "duplicate_window"

    def test_rate_limited_with_retry_after(self, client):
        for i in range(10):
            assert submit(client, plan_id=f"PLAN-{i}").status_code == 201

        response = submit(client, plan_id="PLAN-X")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "3600"
        assert response.json()["detail"]["retry_after"] == 3600

    def test_degraded_header(self, client, api_config, clock):
        app.dependency_overrides[get_pipeline] = lambda: AbuseGatePipeline(
            api_config,
            counter_store=DownCounterStore(),
            fallback_store=LocalCounterStore(clock=clock.timestamp),
            clock=clock,
        )
        response = submit(client)
        assert response.status_code == 201
        assert response.headers["X-Security-Degraded"] == "true"
        assert response.json()["degraded"] is True

    def test_three_agreeing_claims_settle(self, client):
        for actor in ("alice", "bob", "carol"):
            response = submit(client, actor=actor)
        assert response.json()["data"]["aggregate"]["status"] == "ACCEPTED"
        assert response.json()["data"]["status_changed"] is True


# =============================================================================
# VOTES
# =============================================================================

class TestVote:

    def test_vote_and_flip(self, client):
        claim_id = submit(client).json()["data"]["claim"]["id"]

        up = client.post(f"/verify/{claim_id}/vote", json={"vote": "up"}, headers=headers_for("bob"))
        assert up.status_code == 200
        assert up.json()["data"]["upvote_count"] == 1

        down = client.post(f"/verify/{claim_id}/vote", json={"vote": "down"}, headers=headers_for("bob"))
        data = down.json()["data"]
        assert data["vote_changed"] is True
        assert (data["upvote_count"], data["downvote_count"]) == (0, 1)

    def test_duplicate_vote(self, client):
        claim_id = submit(client).json()["data"]["claim"]["id"]
        client.post(f"/verify/{claim_id}/vote", json={"vote": "up"}, headers=headers_for("bob"))
        response = client.post(f"/verify/{claim_id}/vote", json={"vote": "up"}, headers=headers_for("bob"))
        assert response.status_code == 409
        assert response.json()["detail"]["error_code"] == "duplicate_vote"

    def test_unknown_claim(self, client):
        response = client.post("/verify/does-not-exist/vote", json={"vote": "up"}, headers=headers_for("bob"))
        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "not_found"


# =============================================================================
# READS
# =============================================================================

class TestReads:

    def test_tuple_view(self, client):
        submit(client, location_id="LOC-1")
        response = client.get("/verify/1234567890/PLAN-A", params={"location_id": "LOC-1"})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["aggregate"]["location_id"] == "LOC-1"
        assert len(data["claims"]) == 1

    def test_tuple_view_missing(self, client):
        assert client.get("/verify/0000000000/NONE").status_code == 404

    def test_recent_and_stats(self, client):
        submit(client)
        submit(client, actor="bob", claim="NOT_ACCEPTED")

        recent = client.get("/verify/recent").json()["data"]
        assert recent["count"] == 2

        stats = client.get("/verify/stats").json()["data"]
        assert stats["total_claims"] == 2
        assert stats["by_claim"] == {"ACCEPTED": 1, "NOT_ACCEPTED": 1}

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}


# =============================================================================
# ADMIN
# =============================================================================

class TestAdmin:

    def test_disabled_without_configured_secret(self, client, config):
        app.dependency_overrides[get_config] = lambda: config
        response = client.post("/admin/recalculate-confidence", headers={"X-Admin-Secret": "anything"})
        assert response.status_code == 503
        assert response.json()["detail"]["error_code"] == "admin_not_configured"

    @pytest.mark.parametrize("headers", [{}, {"X-Admin-Secret": "wrong"}])
    def test_bad_secret(self, client, headers):
        response = client.post("/admin/cleanup-expired", headers=headers)
        assert response.status_code == 401

    def test_recalculate(self, client, clock):
        for actor in ("alice", "bob", "carol"):
            submit(client, actor=actor)
        clock.advance(days=181)

        response = client.post(
            "/admin/recalculate-confidence", headers={"X-Admin-Secret": ADMIN_SECRET},
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["processed"] == 1
        assert data["status_changes"] == 1
        assert data["changes"][0]["new_status"] == "UNKNOWN"

    def test_cleanup_dry_run_then_real(self, client, clock):
        submit(client)
        clock.advance(days=181)
        auth = {"X-Admin-Secret": ADMIN_SECRET}

        preview = client.post("/admin/cleanup-expired", params={"dry_run": True}, headers=auth).json()["data"]
        assert preview["dry_run"] is True
        assert preview["claims_deleted"] == 1

        report = client.post("/admin/cleanup-expired", headers=auth).json()["data"]
        assert report["claims_deleted"] == 1
        assert report["aggregates_deleted"] == 1

    def test_expiration_stats(self, client):
        submit(client)
        response = client.get("/admin/expiration-stats", headers={"X-Admin-Secret": ADMIN_SECRET})
        assert response.json()["data"]["claims"]["with_ttl"] == 1

    def test_run_maintenance(self, client):
        response = client.post("/admin/run-maintenance", headers={"X-Admin-Secret": ADMIN_SECRET})
        jobs = response.json()["data"]["jobs"]
        assert jobs["decay_recalculation"]["status"] == "success"
        assert jobs["expiration_sweep"]["status"] == "success"
