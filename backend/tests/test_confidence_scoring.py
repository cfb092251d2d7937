"""
Test Suite: Confidence Scoring Engine

Tests:
1. Individual factor tables (source, recency, volume, agreement)
2. Tier bands and the insufficient-evidence cap
3. End-to-end scenarios
4. Specialty classification and freshness thresholds
"""
from datetime import datetime, timedelta

import pytest

from consensus_engine.config import EngineConfig
from consensus_engine.models.db_models import ConfidenceTier, SpecialtyClass
from consensus_engine.services.scoring import (
    ClaimEvidence,
    ConfidenceScorer,
    ScoringContext,
    classify_specialty,
    get_confidence_tier,
)


NOW = datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture
def scorer():
    return ConfidenceScorer(EngineConfig(database_url="sqlite://"))


def evidence(claim="ACCEPTED", source="CROWDSOURCE", days_ago=0, up=0, down=0):
    return ClaimEvidence(
        claim=claim,
        source=source,
        created_at=NOW - timedelta(days=days_ago),
        upvote_count=up,
        downvote_count=down,
    )


# =============================================================================
# FACTORS
# =============================================================================

class TestSourceScore:

    def test_no_claims_scores_default(self, scorer):
        assert scorer.source_score([]) == 10

    @pytest.mark.parametrize("source,expected", [
        ("OFFICIAL_REGISTRY", 25),
        ("CARRIER_FEED", 20),
        ("PROVIDER_PORTAL", 20),
        ("CROWDSOURCE", 15),
        ("PHONE_CALL", 15),
        ("AUTOMATED", 10),
        ("SOMETHING_NEW", 10),
    ])
    def test_weights(self, scorer, source, expected):
        assert scorer.source_score([evidence(source=source)]) == expected

    def test_most_authoritative_source_wins(self, scorer):
        claims = [evidence(source="CROWDSOURCE"), evidence(source="OFFICIAL_REGISTRY")]
        assert scorer.source_score(claims) == 25


class TestRecencyScore:

    def test_never_verified(self, scorer):
        assert scorer.recency_score(None, 60) == 0

    @pytest.mark.parametrize("days,expected", [
        (0, 30), (30, 30), (31, 20), (60, 20), (61, 10), (90, 10), (91, 5), (180, 5), (181, 0),
    ])
    def test_default_threshold(self, scorer, days, expected):
        assert scorer.recency_score(days, 60) == expected

    @pytest.mark.parametrize("days,expected", [
        (15, 30), (16, 20), (30, 20), (31, 10), (45, 10), (46, 5),
    ])
    def test_mental_health_threshold(self, scorer, days, expected):
        """Half of a 30-day threshold caps the top band at 15 days."""
        assert scorer.recency_score(days, 30) == expected

    def test_hospital_threshold_caps_top_band_at_30_days(self, scorer):
        assert scorer.recency_score(30, 90) == 30
        assert scorer.recency_score(31, 90) == 20
        assert scorer.recency_score(135, 90) == 10


class TestVolumeScore:

    @pytest.mark.parametrize("count,expected", [(0, 0), (1, 10), (2, 15), (3, 25), (10, 25)])
    def test_saturates_at_optimal(self, scorer, count, expected):
        assert scorer.volume_score(count) == expected


class TestAgreementScore:

    def test_no_claims(self, scorer):
        assert scorer.agreement_score([]) == 0

    def test_unanimous_at_optimal_count(self, scorer):
        assert scorer.agreement_score([evidence()] * 3) == 20

    def test_scaled_below_optimal_count(self, scorer):
        assert scorer.agreement_score([evidence()]) == pytest.approx(6.67)
        assert scorer.agreement_score([evidence(), evidence()]) == pytest.approx(13.33)

    def test_two_to_one_split(self, scorer):
        claims = [evidence(), evidence(), evidence("NOT_ACCEPTED")]
        assert scorer.agreement_score(claims) == 10

    def test_even_split(self, scorer):
        claims = [evidence(), evidence(), evidence("NOT_ACCEPTED"), evidence("NOT_ACCEPTED")]
        assert scorer.agreement_score(claims) == 5

    def test_upvotes_reinforce_claim_direction(self, scorer):
        claims = [evidence(up=4), evidence(), evidence("NOT_ACCEPTED")]
        # ACCEPTED support 1+4+1 = 6, NOT_ACCEPTED 1 -> 6/7
        assert scorer.agreement_score(claims) == 15

    def test_downvotes_support_opposite_direction(self, scorer):
        claims = [evidence(), evidence(), evidence(down=2)]
        # ACCEPTED 3, NOT_ACCEPTED 2 -> 0.6
        assert scorer.agreement_score(claims) == 10


# =============================================================================
# TIERS
# =============================================================================

class TestConfidenceTier:

    @pytest.mark.parametrize("score,expected", [
        (100, ConfidenceTier.VERY_HIGH),
        (91, ConfidenceTier.VERY_HIGH),
        (90.99, ConfidenceTier.HIGH),
        (76, ConfidenceTier.HIGH),
        (75, ConfidenceTier.MEDIUM),
        (51, ConfidenceTier.MEDIUM),
        (50, ConfidenceTier.LOW),
        (26, ConfidenceTier.LOW),
        (25, ConfidenceTier.VERY_LOW),
        (0, ConfidenceTier.VERY_LOW),
    ])
    def test_bands(self, score, expected):
        assert get_confidence_tier(score, 3) == expected

    @pytest.mark.parametrize("score", [76, 91, 100])
    def test_insufficient_evidence_cap(self, score):
        assert get_confidence_tier(score, 2) == ConfidenceTier.MEDIUM

    def test_cap_never_raises_a_tier(self):
        assert get_confidence_tier(30, 1) == ConfidenceTier.LOW


# =============================================================================
# SCENARIOS
# =============================================================================

class TestScenarios:

    def test_no_claims(self, scorer):
        result = scorer.score([], NOW)
        assert result.score == 10
        assert result.tier == ConfidenceTier.VERY_LOW
        assert result.verification_count == 0
        assert result.days_since_verification is None
        assert "never verified" in result.explanation

    def test_single_fresh_crowd_claim(self, scorer):
        result = scorer.score([evidence()], NOW)
        assert result.score == pytest.approx(61.67)
        assert result.tier == ConfidenceTier.MEDIUM
        assert result.majority_direction.value == "ACCEPTED"

    def test_three_agreeing_crowd_claims(self, scorer):
        result = scorer.score([evidence()] * 3, NOW)
        assert result.factors.to_dict() == {
            "source_score": 15,
            "recency_score": 30,
            "volume_score": 25,
            "agreement_score": 20,
        }
        assert result.score == 90
        assert result.tier == ConfidenceTier.HIGH

    def test_three_registry_claims_cap_at_100(self, scorer):
        result = scorer.score([evidence(source="OFFICIAL_REGISTRY")] * 3, NOW)
        assert result.score == 100
        assert result.tier == ConfidenceTier.VERY_HIGH

    def test_split_evidence(self, scorer):
        result = scorer.score([evidence(), evidence(), evidence("NOT_ACCEPTED")], NOW)
        assert result.score == 80
        assert result.accepted_count == 2
        assert result.not_accepted_count == 1
        assert "conflicting community reports" in result.explanation

    def test_recency_uses_newest_claim(self, scorer):
        result = scorer.score([evidence(days_ago=100), evidence(days_ago=10)], NOW)
        assert result.days_since_verification == 10
        assert result.last_verified_at == NOW - timedelta(days=10)

    def test_partial_days_floor(self, scorer):
        claim = ClaimEvidence(claim="ACCEPTED", source="CROWDSOURCE", created_at=NOW - timedelta(hours=47))
        assert scorer.score([claim], NOW).days_since_verification == 1

    def test_future_timestamps_clamp_to_zero(self, scorer):
        claim = ClaimEvidence(claim="ACCEPTED", source="CROWDSOURCE", created_at=NOW + timedelta(hours=2))
        assert scorer.score([claim], NOW).days_since_verification == 0

    def test_decay_over_time(self, scorer):
        """Same evidence, later evaluation time: the score only goes down."""
        claims = [evidence()] * 3
        scores = [scorer.score(claims, NOW + timedelta(days=d)).score for d in (0, 31, 61, 91, 181)]
        assert scores == [90, 80, 70, 65, 60]
        assert scores == sorted(scores, reverse=True)

    def test_to_dict(self, scorer):
        data = scorer.score([evidence(days_ago=50)], NOW).to_dict()
        assert data["is_stale"] is False
        assert data["days_until_stale"] == 10
        assert data["recommend_reverification"] is True
        assert data["tier"] == "MEDIUM"
        assert "3 independent verifications" in data["description"]

    def test_description_uses_configured_minimum(self):
        config = EngineConfig(database_url="sqlite://", min_verifications=5)
        data = ConfidenceScorer(config).score([evidence()] * 3, NOW).to_dict()
        assert "5 independent verifications" in data["description"]
        assert "3 independent verifications" not in data["description"]


# =============================================================================
# SPECIALTY
# =============================================================================

class TestSpecialty:

    @pytest.mark.parametrize("text,expected", [
        ("Psychiatry", SpecialtyClass.MENTAL_HEALTH),
        ("Licensed Clinical Therapist", SpecialtyClass.MENTAL_HEALTH),
        ("Family Medicine", SpecialtyClass.PRIMARY_CARE),
        ("Diagnostic Radiology", SpecialtyClass.HOSPITAL_BASED),
        ("Cardiology", SpecialtyClass.SPECIALIST),
        ("", SpecialtyClass.OTHER),
        (None, SpecialtyClass.OTHER),
    ])
    def test_classify(self, text, expected):
        assert classify_specialty(text) == expected

    def test_taxonomy_description_used(self):
        assert classify_specialty("Physician", "Internal Medicine") == SpecialtyClass.PRIMARY_CARE

    def test_mental_health_decays_faster(self, scorer):
        claims = [evidence(days_ago=20)] * 3
        other = scorer.score(claims, NOW)
        mental = scorer.score(claims, NOW, ScoringContext(specialty_class="MENTAL_HEALTH"))
        assert other.factors.recency_score == 30
        assert mental.factors.recency_score == 20
        assert mental.freshness_threshold_days == 30
        assert "high network turnover" in mental.explanation
