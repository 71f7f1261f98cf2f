"""Claim-vs-extraction matching and scoring.

Each of the five identity fields gets a similarity in [0, 1]:

* exact match after normalization scores 1.0
* known aliases (``IIT Delhi`` / ``Indian Institute of Technology Delhi``)
  score ``alias_similarity``
* names are compared part by part: each name part must equal, abbreviate
  or (when long) be one edit away from a part of the other name
* institutions and programs otherwise get fuzzy partial credit
* years are binary

A field whose similarity falls below its threshold is reported as a
``Mismatch`` and contributes nothing to the score. The score is the weighted
sum of the remaining similarities scaled to 0-100. Similarities are quantized
and the sum is computed with ``Decimal`` so identical inputs always produce
the identical score.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Mapping

from credence.config import DEFAULT_MATCH_THRESHOLDS, DEFAULT_MATCH_WEIGHTS
from credence.errors import MatchingFault
from credence.identity.record import IDENTITY_FIELDS, YEAR_FIELDS, IdentityRecord
from credence.matching.aliases import (
    INSTITUTION_ALIASES,
    PROGRAM_ALIASES,
    alias_equivalent,
    resolve,
)
from credence.matching.normalize import name_similarity, normalize_text, text_similarity

logger = logging.getLogger(__name__)

_QUANTUM = Decimal("0.0001")


class MismatchReason(str, Enum):
    NAME_MISMATCH = "NAME_MISMATCH"
    INSTITUTION_MISMATCH = "INSTITUTION_MISMATCH"
    PROGRAM_MISMATCH = "PROGRAM_MISMATCH"
    YEAR_OUT_OF_RANGE = "YEAR_OUT_OF_RANGE"
    FIELD_NOT_FOUND = "FIELD_NOT_FOUND"


_FIELD_REASONS: dict[str, MismatchReason] = {
    "full_name": MismatchReason.NAME_MISMATCH,
    "institution": MismatchReason.INSTITUTION_MISMATCH,
    "program": MismatchReason.PROGRAM_MISMATCH,
    "start_year": MismatchReason.YEAR_OUT_OF_RANGE,
    "end_year": MismatchReason.YEAR_OUT_OF_RANGE,
}

_ALIAS_TABLES = {
    "institution": INSTITUTION_ALIASES,
    "program": PROGRAM_ALIASES,
}


@dataclass(frozen=True)
class Mismatch:
    field: str
    user_value: Any
    ocr_value: Any
    reason: MismatchReason
    similarity: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "user_value": self.user_value,
            "ocr_value": self.ocr_value,
            "reason": self.reason.value,
            "similarity": self.similarity,
        }


@dataclass(frozen=True)
class MatchResult:
    score: int
    mismatches: tuple[Mismatch, ...] = ()
    field_scores: dict[str, float] = field(default_factory=dict)

    @property
    def mismatched_fields(self) -> frozenset[str]:
        return frozenset(m.field for m in self.mismatches)

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "mismatches": [m.to_dict() for m in self.mismatches],
            "field_scores": dict(self.field_scores),
        }


def _validate_weights(weights: Mapping[str, float]) -> None:
    if set(weights) != set(IDENTITY_FIELDS):
        raise ValueError(f"weights must define exactly: {', '.join(IDENTITY_FIELDS)}")
    if not math.isclose(sum(weights.values()), 1.0, abs_tol=1e-9):
        raise ValueError("weights must sum to 1.0")


class MatchingEngine:
    """Compare a claimed identity with an extracted one."""

    DEFAULT_WEIGHTS: dict[str, float] = DEFAULT_MATCH_WEIGHTS
    DEFAULT_THRESHOLDS: dict[str, float] = DEFAULT_MATCH_THRESHOLDS

    def __init__(
        self,
        weights: Mapping[str, float] | None = None,
        thresholds: Mapping[str, float] | None = None,
        alias_similarity: float = 0.9,
    ) -> None:
        self.weights = dict(weights or self.DEFAULT_WEIGHTS)
        _validate_weights(self.weights)
        self.thresholds = {**self.DEFAULT_THRESHOLDS, **(thresholds or {})}
        self.alias_similarity = alias_similarity

    @classmethod
    def from_config(cls, cfg) -> "MatchingEngine":
        return cls(
            weights=cfg.match_weights,
            thresholds=cfg.match_thresholds,
            alias_similarity=cfg.alias_similarity,
        )

    # -- per-field similarity -------------------------------------------------

    def _text_field_similarity(self, name: str, claimed: Any, extracted: Any) -> float:
        a, b = normalize_text(claimed), normalize_text(extracted)
        if not a or not b:
            return 0.0
        if a == b:
            return 1.0
        table = _ALIAS_TABLES.get(name)
        if table is not None:
            if alias_equivalent(claimed, extracted, table):
                return self.alias_similarity
            known_a, known_b = resolve(claimed, table), resolve(extracted, table)
            if known_a and known_b and known_a != known_b:
                # Two different known entries (e.g. IIT Delhi vs IIT Bombay)
                return 0.0
        if name == "full_name":
            return name_similarity(a, b)
        return text_similarity(a, b)

    @staticmethod
    def _year_similarity(claimed: Any, extracted: Any) -> float:
        try:
            return 1.0 if int(claimed) == int(extracted) else 0.0
        except (TypeError, ValueError):
            return 0.0

    def similarity(self, name: str, claimed: Any, extracted: Any) -> float:
        if name in YEAR_FIELDS:
            return self._year_similarity(claimed, extracted)
        return self._text_field_similarity(name, claimed, extracted)

    # -- aggregate ------------------------------------------------------------

    def match(self, claimed: IdentityRecord, extracted: IdentityRecord) -> MatchResult:
        """Score *extracted* against *claimed*.

        Raises:
            MatchingFault: unexpected internal error during computation.
        """
        try:
            return self._match(claimed, extracted)
        except MatchingFault:
            raise
        except Exception as exc:
            raise MatchingFault(detail=f"{type(exc).__name__}: {exc}") from exc

    def _match(self, claimed: IdentityRecord, extracted: IdentityRecord) -> MatchResult:
        mismatches: list[Mismatch] = []
        field_scores: dict[str, float] = {}
        total = Decimal(0)

        for name in IDENTITY_FIELDS:
            user_field, ocr_field = claimed.get(name), extracted.get(name)

            if not user_field.present or not ocr_field.present:
                field_scores[name] = 0.0
                mismatches.append(Mismatch(
                    field=name,
                    user_value=user_field.value,
                    ocr_value=ocr_field.value,
                    reason=MismatchReason.FIELD_NOT_FOUND,
                ))
                continue

            sim = Decimal(str(self.similarity(name, user_field.value, ocr_field.value))).quantize(
                _QUANTUM, rounding=ROUND_HALF_UP
            )
            field_scores[name] = float(sim)

            if sim < Decimal(str(self.thresholds[name])):
                mismatches.append(Mismatch(
                    field=name,
                    user_value=user_field.value,
                    ocr_value=ocr_field.value,
                    reason=_FIELD_REASONS[name],
                    similarity=float(sim),
                ))
                continue

            total += Decimal(str(self.weights[name])) * sim

        score = int((total * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))
        score = max(0, min(100, score))
        logger.debug("Match score=%d mismatches=%s", score, [m.field for m in mismatches])
        return MatchResult(score=score, mismatches=tuple(mismatches), field_scores=field_scores)
