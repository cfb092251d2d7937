"""
Confidence Scoring Engine

Pure function from the live claims of one tuple to a 0-100 trust score and a
discrete tier. Re-evaluated on every admitted write and by the decay job, so
it takes `now` explicitly and never reads the clock.

Four additive factors:
- Source weight (0-25): most authoritative live source wins
- Recency (0-30): tiered decay against a specialty-specific freshness threshold
- Volume (0-25): saturates at the optimal verification count (3)
- Agreement (0-20): majority share of support, scaled up to the optimal count

Tier cap: fewer than 3 verifications never rates above MEDIUM.
"""
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ...config import DEFAULT_TIER_BANDS, EngineConfig, get_settings
from ...models.db_models import ClaimDirection, ConfidenceTier, SpecialtyClass


TIER_ORDER = [
    ConfidenceTier.VERY_LOW,
    ConfidenceTier.LOW,
    ConfidenceTier.MEDIUM,
    ConfidenceTier.HIGH,
    ConfidenceTier.VERY_HIGH,
]

# Tier ceiling while a tuple has insufficient evidence
INSUFFICIENT_EVIDENCE_CAP = ConfidenceTier.MEDIUM

TIER_DESCRIPTIONS = {
    ConfidenceTier.VERY_HIGH: "Verified through multiple authoritative sources with expert-level accuracy.",
    ConfidenceTier.HIGH: "Verified through authoritative sources or multiple community verifications.",
    ConfidenceTier.MEDIUM: "Some verification exists, but may need confirmation.",
    ConfidenceTier.LOW: "Limited verification data. Call provider to confirm before visiting.",
    ConfidenceTier.VERY_LOW: "Unverified or potentially inaccurate. Always call to confirm.",
}

# Keyword buckets, checked in order
SPECIALTY_KEYWORDS = [
    (SpecialtyClass.MENTAL_HEALTH, (
        "psychiatr", "psycholog", "mental health", "behavioral health", "counselor", "therapist",
    )),
    (SpecialtyClass.PRIMARY_CARE, (
        "family medicine", "family practice", "internal medicine", "general practice", "primary care",
    )),
    (SpecialtyClass.HOSPITAL_BASED, (
        "hospital", "radiology", "anesthesiology", "pathology", "emergency medicine",
    )),
]


def classify_specialty(specialty: Optional[str], taxonomy_description: Optional[str] = None) -> SpecialtyClass:
    """Map free-text specialty to a freshness bucket. Blank text is OTHER."""
    search_text = f"{specialty or ''} {taxonomy_description or ''}".strip().lower()
    if not search_text:
        return SpecialtyClass.OTHER

    for specialty_class, keywords in SPECIALTY_KEYWORDS:
        if any(keyword in search_text for keyword in keywords):
            return specialty_class
    return SpecialtyClass.SPECIALIST


def _value(enum_or_str) -> str:
    return getattr(enum_or_str, "value", enum_or_str)


@dataclass
class ClaimEvidence:
    """
    Minimal claim view the scorer needs. ORM claim rows expose the same
    attribute names and can be passed directly.
    """
    claim: str
    source: Optional[str]
    created_at: datetime
    upvote_count: int = 0
    downvote_count: int = 0
    id: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class ScoringContext:
    specialty_class: str = SpecialtyClass.OTHER.value


@dataclass
class ConfidenceFactors:
    source_score: float = 0
    recency_score: float = 0
    volume_score: float = 0
    agreement_score: float = 0

    @property
    def total(self) -> float:
        return self.source_score + self.recency_score + self.volume_score + self.agreement_score

    def to_dict(self) -> Dict[str, float]:
        return {
            "source_score": self.source_score,
            "recency_score": self.recency_score,
            "volume_score": self.volume_score,
            "agreement_score": self.agreement_score,
        }


@dataclass
class ConfidenceResult:
    """Score, tier and everything needed to explain them."""
    score: float
    tier: ConfidenceTier
    factors: ConfidenceFactors
    verification_count: int
    accepted_count: int
    not_accepted_count: int
    freshness_threshold_days: int
    days_since_verification: Optional[int] = None
    last_verified_at: Optional[datetime] = None
    explanation: str = ""
    min_verifications: int = 3

    @property
    def majority_direction(self) -> Optional[ClaimDirection]:
        if self.accepted_count > self.not_accepted_count:
            return ClaimDirection.ACCEPTED
        if self.not_accepted_count > self.accepted_count:
            return ClaimDirection.NOT_ACCEPTED
        return None

    @property
    def is_stale(self) -> bool:
        return (
            self.days_since_verification is not None
            and self.days_since_verification > self.freshness_threshold_days
        )

    @property
    def description(self) -> str:
        return describe_tier(self.tier, self.verification_count, self.min_verifications)

    def to_dict(self) -> Dict[str, Any]:
        days = self.days_since_verification
        threshold = self.freshness_threshold_days
        return {
            "score": self.score,
            "tier": self.tier.value,
            "description": self.description,
            "factors": self.factors.to_dict(),
            "verification_count": self.verification_count,
            "accepted_count": self.accepted_count,
            "not_accepted_count": self.not_accepted_count,
            "days_since_verification": days,
            "freshness_threshold_days": threshold,
            "is_stale": self.is_stale,
            "days_until_stale": threshold if days is None else max(0, threshold - days),
            "recommend_reverification": days is None or days > threshold * 0.8,
            "explanation": self.explanation,
        }


def get_confidence_tier(
    score: float,
    verification_count: int,
    min_verifications: int = 3,
    bands: Optional[Iterable[Tuple[float, str]]] = None,
) -> ConfidenceTier:
    """Band the score, then apply the insufficient-evidence cap."""
    tier = ConfidenceTier.VERY_LOW
    for threshold, band in (bands or DEFAULT_TIER_BANDS):
        if score >= threshold:
            tier = ConfidenceTier(band)
            break

    if verification_count < min_verifications:
        if TIER_ORDER.index(tier) > TIER_ORDER.index(INSUFFICIENT_EVIDENCE_CAP):
            return INSUFFICIENT_EVIDENCE_CAP
    return tier


def describe_tier(tier: ConfidenceTier, verification_count: int, min_verifications: int = 3) -> str:
    description = TIER_DESCRIPTIONS.get(tier, "Unknown confidence level")
    if verification_count < min_verifications:
        description += f" {min_verifications} independent verifications are needed for high confidence."
    return description


class ConfidenceScorer:
    """
    Scores the live claims of one tuple.

    Usage:
        scorer = ConfidenceScorer(config)
        result = scorer.score(claims, now, ScoringContext(specialty_class="MENTAL_HEALTH"))
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or get_settings()

    def score(
        self,
        claims: Iterable[Any],
        now: datetime,
        context: Optional[ScoringContext] = None,
    ) -> ConfidenceResult:
        context = context or ScoringContext()
        claims = list(claims)
        specialty_class = _value(context.specialty_class)
        freshness_threshold = self.config.freshness_days_for(specialty_class)

        accepted = sum(1 for c in claims if _value(c.claim) == ClaimDirection.ACCEPTED.value)
        not_accepted = sum(1 for c in claims if _value(c.claim) == ClaimDirection.NOT_ACCEPTED.value)
        count = len(claims)

        last_verified_at = max((c.created_at for c in claims), default=None)
        days_since = None
        if last_verified_at is not None:
            days_since = max(0, math.floor((now - last_verified_at).total_seconds() / 86400))

        factors = ConfidenceFactors(
            source_score=self.source_score(claims),
            recency_score=self.recency_score(days_since, freshness_threshold),
            volume_score=self.volume_score(count),
            agreement_score=self.agreement_score(claims),
        )

        score = round(min(100.0, factors.total), 2)
        tier = get_confidence_tier(score, count, self.config.min_verifications, self.config.tier_bands)

        result = ConfidenceResult(
            score=score,
            tier=tier,
            factors=factors,
            verification_count=count,
            accepted_count=accepted,
            not_accepted_count=not_accepted,
            freshness_threshold_days=freshness_threshold,
            days_since_verification=days_since,
            last_verified_at=last_verified_at,
            min_verifications=self.config.min_verifications,
        )
        result.explanation = self.explain(result, specialty_class)
        return result

    # =========================================================================
    # FACTORS
    # =========================================================================

    def source_score(self, claims: List[Any]) -> float:
        """0-25. The most authoritative live source; no claims scores the default."""
        if not claims:
            return self.config.default_source_weight
        return max(self.config.source_weight_for(_value(c.source)) for c in claims)

    def recency_score(self, days_since: Optional[int], freshness_threshold: int) -> float:
        """
        0-30, tiered against the specialty threshold:
        <= min(30, 50%) -> 30, <= 100% -> 20, <= 150% -> 10, <= 180 days -> 5, else 0.
        """
        if days_since is None:
            return 0
        if days_since <= min(30, freshness_threshold * 0.5):
            return 30
        if days_since <= freshness_threshold:
            return 20
        if days_since <= freshness_threshold * 1.5:
            return 10
        if days_since <= self.config.recency_max_age_days:
            return 5
        return 0

    def volume_score(self, verification_count: int) -> float:
        """0-25, saturating: 0 -> 0, 1 -> 10, 2 -> 15, optimal+ -> 25."""
        if verification_count <= 0:
            return 0
        if verification_count >= self.config.optimal_verification_count:
            return 25
        if verification_count == 1:
            return 10
        return 15

    def agreement_score(self, claims: List[Any]) -> float:
        """
        0-20 from the majority share of support.

        Each claim supports its own direction once, plus once per upvote; each
        downvote supports the opposite direction. Below the optimal count the
        band is scaled down proportionally.
        """
        if not claims:
            return 0

        support = {ClaimDirection.ACCEPTED.value: 0, ClaimDirection.NOT_ACCEPTED.value: 0}
        for c in claims:
            direction = _value(c.claim)
            opposite = (
                ClaimDirection.NOT_ACCEPTED.value
                if direction == ClaimDirection.ACCEPTED.value
                else ClaimDirection.ACCEPTED.value
            )
            support[direction] += 1 + max(0, c.upvote_count or 0)
            support[opposite] += max(0, c.downvote_count or 0)

        total = sum(support.values())
        if total == 0:
            return 0
        ratio = max(support.values()) / total

        if ratio >= 1.0:
            band = 20
        elif ratio >= 0.8:
            band = 15
        elif ratio >= 0.6:
            band = 10
        elif ratio >= 0.4:
            band = 5
        else:
            band = 0

        scale = min(1.0, len(claims) / self.config.optimal_verification_count)
        return round(band * scale, 2)

    # =========================================================================
    # EXPLANATION
    # =========================================================================

    def explain(self, result: ConfidenceResult, specialty_class: str) -> str:
        factors = result.factors
        parts = []

        if factors.source_score >= 25:
            parts.append("verified through official registry data")
        elif factors.source_score >= 20:
            parts.append("verified through insurance carrier data")
        elif factors.source_score >= 15:
            parts.append("verified through community submissions")
        else:
            parts.append("limited authoritative data")

        days = result.days_since_verification
        if days is None:
            parts.append("never verified")
        elif factors.recency_score == 30:
            parts.append("very recent verification")
        elif factors.recency_score == 20:
            parts.append(f"recent verification ({days} days ago)")
        elif factors.recency_score == 10:
            parts.append(f"aging data ({days} days old)")
        elif factors.recency_score == 5:
            parts.append(f"stale data ({days} days old)")
        else:
            parts.append(f"very stale data ({days} days old) - needs re-verification")

        count = result.verification_count
        optimal = self.config.optimal_verification_count
        if count == 0:
            parts.append("no verifications yet")
        elif count < optimal:
            parts.append(f"{count} of {optimal} verifications needed for expert-level accuracy")
        else:
            parts.append(f"{count} verifications")

        if count:
            if result.accepted_count and result.not_accepted_count:
                parts.append("conflicting community reports")
            else:
                parts.append("community reports agree")

        explanation = f"This {result.score:g}% confidence score is based on: {', '.join(parts)}."
        if specialty_class == SpecialtyClass.MENTAL_HEALTH.value:
            explanation += " Mental health providers show high network turnover."
        elif specialty_class == SpecialtyClass.HOSPITAL_BASED.value:
            explanation += " Hospital-based providers typically have more stable network participation."
        return explanation

