"""
Abuse Gate Services

Rate limiting, decoy trap, bot scoring, duplicate-window and vote-identity
gates, chained by AbuseGatePipeline.
"""

from .counters import CounterStore, LocalCounterStore, RedisCounterStore, build_counter_store
from .bot_scoring import BotScoringClient, BotVerdict, RecaptchaBotScoringClient, build_bot_scoring_client
from .gates import ActionClass, GateOutcome, GateDecision
from .pipeline import AbuseGatePipeline, Admission, ClaimSubmission, VoteSubmission

__all__ = [
    'CounterStore',
    'LocalCounterStore',
    'RedisCounterStore',
    'build_counter_store',
    'BotScoringClient',
    'BotVerdict',
    'RecaptchaBotScoringClient',
    'build_bot_scoring_client',
    'ActionClass',
    'GateOutcome',
    'GateDecision',
    'AbuseGatePipeline',
    'Admission',
    'ClaimSubmission',
    'VoteSubmission',
]
