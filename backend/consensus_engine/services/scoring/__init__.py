"""
Scoring Services

Confidence scoring engine and specialty classification.
"""

from .confidence import (
    ClaimEvidence,
    ConfidenceFactors,
    ConfidenceResult,
    ConfidenceScorer,
    ScoringContext,
    classify_specialty,
    describe_tier,
    get_confidence_tier,
)

__all__ = [
    'ClaimEvidence',
    'ConfidenceFactors',
    'ConfidenceResult',
    'ConfidenceScorer',
    'ScoringContext',
    'classify_specialty',
    'describe_tier',
    'get_confidence_tier',
]
