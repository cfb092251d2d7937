"""
Consensus Services

Sticky status state machine driven by confidence recomputations.
"""

from .state_machine import ConsensusStateMachine, STATE_CONFIG, TransitionTrigger

__all__ = [
    'ConsensusStateMachine',
    'STATE_CONFIG',
    'TransitionTrigger',
]
