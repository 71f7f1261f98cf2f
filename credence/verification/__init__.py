"""Verification lifecycle: persistence, state machine, decisions and expiry."""

from credence.verification.policy import DecisionPolicy, PolicyDecision
from credence.verification.scheduler import SweepScheduler
from credence.verification.service import (
    AttemptView,
    ProgressView,
    RequestSummary,
    StatusView,
    VerificationService,
)
from credence.verification.states import Trigger, VerificationStatus
from credence.verification.store import VerificationStore, close_store, get_store
from credence.verification.sweeper import ExpirySweeper, GrantView

__all__ = [
    "AttemptView",
    "DecisionPolicy",
    "ExpirySweeper",
    "GrantView",
    "PolicyDecision",
    "ProgressView",
    "RequestSummary",
    "StatusView",
    "SweepScheduler",
    "Trigger",
    "VerificationService",
    "VerificationStatus",
    "VerificationStore",
    "close_store",
    "get_store",
]
