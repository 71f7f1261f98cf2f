"""Verification request states and the allowed transitions between them."""

from __future__ import annotations

from enum import Enum

from credence.errors import StateError


class VerificationStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING_OCR = "PROCESSING_OCR"
    MATCHING = "MATCHING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    MANUAL_REVIEW = "MANUAL_REVIEW"
    OCR_FAILED = "OCR_FAILED"
    EXPIRED = "EXPIRED"


class Trigger(str, Enum):
    """Who drives a transition."""

    PIPELINE = "PIPELINE"
    REVIEWER = "REVIEWER"
    SWEEPER = "SWEEPER"
    SUBJECT = "SUBJECT"


S = VerificationStatus

ACTIVE_STATES = frozenset({S.PENDING, S.PROCESSING_OCR, S.MATCHING})
RESUBMITTABLE_STATES = frozenset({S.REJECTED, S.OCR_FAILED, S.EXPIRED})
TERMINAL_STATES = frozenset({S.APPROVED, S.REJECTED, S.MANUAL_REVIEW, S.OCR_FAILED, S.EXPIRED})

# (from, to) -> triggers allowed to drive it
_TRANSITIONS: dict[tuple[VerificationStatus, VerificationStatus], frozenset[Trigger]] = {
    (S.PENDING, S.PROCESSING_OCR): frozenset({Trigger.PIPELINE}),
    (S.PENDING, S.OCR_FAILED): frozenset({Trigger.PIPELINE, Trigger.SWEEPER}),
    (S.PROCESSING_OCR, S.MATCHING): frozenset({Trigger.PIPELINE}),
    (S.PROCESSING_OCR, S.OCR_FAILED): frozenset({Trigger.PIPELINE, Trigger.SWEEPER}),
    (S.MATCHING, S.APPROVED): frozenset({Trigger.PIPELINE}),
    (S.MATCHING, S.REJECTED): frozenset({Trigger.PIPELINE}),
    (S.MATCHING, S.MANUAL_REVIEW): frozenset({Trigger.PIPELINE, Trigger.SWEEPER}),
    (S.MANUAL_REVIEW, S.APPROVED): frozenset({Trigger.REVIEWER}),
    (S.MANUAL_REVIEW, S.REJECTED): frozenset({Trigger.REVIEWER}),
    (S.APPROVED, S.EXPIRED): frozenset({Trigger.SWEEPER}),
    # appeal
    (S.REJECTED, S.MANUAL_REVIEW): frozenset({Trigger.SUBJECT}),
    # re-submission restarts the cycle on the same request
    (S.REJECTED, S.PENDING): frozenset({Trigger.SUBJECT}),
    (S.OCR_FAILED, S.PENDING): frozenset({Trigger.SUBJECT}),
    (S.EXPIRED, S.PENDING): frozenset({Trigger.SUBJECT}),
    (S.APPROVED, S.PENDING): frozenset({Trigger.SUBJECT}),
}

# status -> (stage, percentage, message) shown to polling clients
PROGRESS_STAGES: dict[VerificationStatus, tuple[str, int, str]] = {
    S.PENDING: ("UPLOAD", 25, "Document uploaded"),
    S.PROCESSING_OCR: ("PROCESSING_OCR", 50, "Reading your document"),
    S.MATCHING: ("MATCHING", 75, "Comparing document details with your claims"),
    S.APPROVED: ("COMPLETE", 100, "Verification approved"),
    S.REJECTED: ("COMPLETE", 100, "Verification rejected"),
    S.MANUAL_REVIEW: ("COMPLETE", 100, "Sent for manual review"),
    S.OCR_FAILED: ("PROCESSING_OCR", 50, "The document could not be read"),
    S.EXPIRED: ("COMPLETE", 100, "Verification expired"),
}


def can_transition(current: VerificationStatus, target: VerificationStatus, trigger: Trigger) -> bool:
    return trigger in _TRANSITIONS.get((S(current), S(target)), frozenset())


def assert_transition(current: VerificationStatus, target: VerificationStatus, trigger: Trigger) -> None:
    """Raise :class:`StateError` unless *trigger* may move *current* to *target*."""
    if not can_transition(current, target, trigger):
        raise StateError(
            f"Cannot move a {S(current).value} request to {S(target).value}.",
            detail=f"illegal transition {S(current).value} -> {S(target).value} by {trigger.value}",
        )
