"""Consensus Engine - Services"""
from .identity import ActorIdentity, IdentitySignalExtractor
from .submission import SubmissionService, SubmissionResult

__all__ = [
    "ActorIdentity",
    "IdentitySignalExtractor",
    "SubmissionService",
    "SubmissionResult",
]
