"""Decision policy - match score and mismatches to an outcome.

Rules are evaluated in order:

1. more automatic attempts than ``auto_attempt_limit``  -> MANUAL_REVIEW
2. critical-field mismatch with ``critical_mismatch_forces_review`` -> MANUAL_REVIEW
3. score below ``reject_below``                        -> REJECTED
4. score at or above ``approve_threshold`` and no critical mismatch -> APPROVED
5. anything else (residual band)                       -> MANUAL_REVIEW
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from credence.identity.record import IDENTITY_FIELDS
from credence.matching.engine import Mismatch
from credence.verification.states import VerificationStatus


@dataclass(frozen=True)
class PolicyDecision:
    status: VerificationStatus
    reason: str


@dataclass(frozen=True)
class DecisionPolicy:
    approve_threshold: int = 85
    reject_below: int = 50
    auto_attempt_limit: int = 3
    critical_fields: tuple[str, ...] = ("full_name", "institution")
    critical_mismatch_forces_review: bool = False

    def __post_init__(self) -> None:
        if not 0 <= self.reject_below <= self.approve_threshold <= 100:
            raise ValueError("Expected 0 <= reject_below <= approve_threshold <= 100")
        if self.auto_attempt_limit < 1:
            raise ValueError("auto_attempt_limit must be at least 1")
        unknown = set(self.critical_fields) - set(IDENTITY_FIELDS)
        if unknown:
            raise ValueError(f"Unknown critical fields: {', '.join(sorted(unknown))}")
        object.__setattr__(self, "critical_fields", tuple(self.critical_fields))

    @classmethod
    def from_config(cls, cfg) -> "DecisionPolicy":
        return cls(
            approve_threshold=cfg.approve_threshold,
            reject_below=cfg.reject_below,
            auto_attempt_limit=cfg.auto_attempt_limit,
            critical_fields=tuple(cfg.critical_fields),
            critical_mismatch_forces_review=cfg.critical_mismatch_forces_review,
        )

    def critical_mismatches(self, mismatches: Iterable[Mismatch]) -> list[Mismatch]:
        return [m for m in mismatches if m.field in self.critical_fields]

    def decide(self, score: int, mismatches: Iterable[Mismatch], total_attempts: int) -> PolicyDecision:
        critical = self.critical_mismatches(mismatches)

        if total_attempts > self.auto_attempt_limit:
            return PolicyDecision(VerificationStatus.MANUAL_REVIEW, "ATTEMPT_LIMIT_EXCEEDED")
        if critical and self.critical_mismatch_forces_review:
            return PolicyDecision(VerificationStatus.MANUAL_REVIEW, "CRITICAL_FIELD_MISMATCH")
        if score < self.reject_below:
            return PolicyDecision(VerificationStatus.REJECTED, "SCORE_BELOW_FLOOR")
        if score >= self.approve_threshold and not critical:
            return PolicyDecision(VerificationStatus.APPROVED, "SCORE_ABOVE_THRESHOLD")
        if critical:
            return PolicyDecision(VerificationStatus.MANUAL_REVIEW, "CRITICAL_FIELD_MISMATCH")
        return PolicyDecision(VerificationStatus.MANUAL_REVIEW, "RESIDUAL_BAND")
