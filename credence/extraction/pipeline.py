"""Document to identity pipeline: extract text, classify, parse fields."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from credence.errors import ExtractionError
from credence.extraction.classifier import DocumentClassifier, DocumentType
from credence.extraction.field_parser import parse_identity_fields
from credence.extraction.ocr import OcrExtractor
from credence.identity.record import IdentityRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExtractionResult:
    document_type: DocumentType
    type_confidence: float
    record: IdentityRecord
    text_length: int


def extract_identity(
    document: Any,
    extractor: OcrExtractor,
    classifier: DocumentClassifier | None = None,
) -> ExtractionResult:
    """Run one document through extraction, classification and parsing.

    Raises:
        ExtractionError: the extractor could not produce any text.
    """
    classifier = classifier or DocumentClassifier()
    text = extractor.extract_text(document)
    if not text or not text.strip():
        raise ExtractionError("No text could be read from the document.", detail="extractor returned empty text")

    doc_type, type_confidence = classifier.classify_with_confidence(text)
    record = parse_identity_fields(text, source=extractor.field_source)
    found = sum(1 for _, f in record.items() if f.present)
    logger.info(
        "Extraction complete: type=%s confidence=%.2f fields_found=%d chars=%d",
        doc_type.value, type_confidence, found, len(text),
    )
    return ExtractionResult(
        document_type=doc_type,
        type_confidence=type_confidence,
        record=record,
        text_length=len(text),
    )
