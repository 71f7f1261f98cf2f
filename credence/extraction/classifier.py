"""Document type classification from extracted text.

Pattern groups are checked in declaration order and the first group with any
matching pattern wins, so a text that mentions both a degree certificate and a
transcript is labelled a degree certificate. Reordering ``_PATTERN_GROUPS``
changes classification results.
"""

from __future__ import annotations

import logging
import re
from enum import Enum

logger = logging.getLogger(__name__)


class DocumentType(str, Enum):
    DEGREE_CERTIFICATE = "DEGREE_CERTIFICATE"
    TRANSCRIPT = "TRANSCRIPT"
    PROVISIONAL_CERTIFICATE = "PROVISIONAL_CERTIFICATE"
    UNKNOWN = "UNKNOWN"


# Ordered by priority.
_PATTERN_GROUPS: list[tuple[DocumentType, list[str]]] = [
    (DocumentType.DEGREE_CERTIFICATE, [
        r"degree.*certificate",
        r"bachelor.*degree",
        r"master.*degree",
        r"diploma",
        r"graduation.*certificate",
    ]),
    (DocumentType.TRANSCRIPT, [
        r"transcript",
        r"mark.*sheet",
        r"grade.*report",
        r"academic.*record",
    ]),
    (DocumentType.PROVISIONAL_CERTIFICATE, [
        r"provisional.*certificate",
        r"temporary.*certificate",
    ]),
]

_UNKNOWN_CONFIDENCE = 0.1
_BASE_CONFIDENCE = 0.3
_PER_MATCH_CONFIDENCE = 0.2
_MAX_CONFIDENCE = 0.9


class DocumentClassifier:
    """Label raw document text as one of the known document types."""

    def __init__(self, pattern_groups: list[tuple[DocumentType, list[str]]] | None = None) -> None:
        groups = pattern_groups if pattern_groups is not None else _PATTERN_GROUPS
        self._groups: list[tuple[DocumentType, list[re.Pattern]]] = [
            (doc_type, [re.compile(p, re.IGNORECASE) for p in patterns])
            for doc_type, patterns in groups
        ]

    def classify(self, raw_text: str) -> DocumentType:
        """Return the first document type whose group matches, else UNKNOWN."""
        if not isinstance(raw_text, str) or not raw_text.strip():
            return DocumentType.UNKNOWN
        for doc_type, patterns in self._groups:
            if any(p.search(raw_text) for p in patterns):
                return doc_type
        return DocumentType.UNKNOWN

    def confidence(self, raw_text: str, doc_type: DocumentType) -> float:
        """Confidence for *doc_type*: 0.1 for UNKNOWN, else 0.3 + 0.2 per matching pattern, capped at 0.9."""
        if doc_type is DocumentType.UNKNOWN:
            return _UNKNOWN_CONFIDENCE
        if not isinstance(raw_text, str):
            raw_text = ""
        match_count = sum(
            1
            for group_type, patterns in self._groups
            if group_type is doc_type
            for p in patterns
            if p.search(raw_text)
        )
        return round(min(_MAX_CONFIDENCE, _BASE_CONFIDENCE + _PER_MATCH_CONFIDENCE * match_count), 2)

    def classify_with_confidence(self, raw_text: str) -> tuple[DocumentType, float]:
        doc_type = self.classify(raw_text)
        confidence = self.confidence(raw_text, doc_type)
        logger.debug("Classified document as %s (confidence %.2f)", doc_type.value, confidence)
        return doc_type, confidence
