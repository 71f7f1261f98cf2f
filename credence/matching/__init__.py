"""Claim-vs-extraction matching."""

from credence.matching.aliases import institution_key
from credence.matching.engine import MatchingEngine, MatchResult, Mismatch, MismatchReason

__all__ = [
    "MatchingEngine",
    "MatchResult",
    "Mismatch",
    "MismatchReason",
    "institution_key",
]
