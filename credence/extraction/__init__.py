"""Document text extraction, classification and field parsing."""

from credence.extraction.classifier import DocumentClassifier, DocumentType
from credence.extraction.documents import StoredDocument, acquire_upload
from credence.extraction.field_parser import parse_identity_fields
from credence.extraction.ocr import (
    DigiLockerExtractor,
    OcrExtractor,
    TesseractOcrExtractor,
    close_extractor,
    extractor_session,
    get_extractor,
)
from credence.extraction.pipeline import ExtractionResult, extract_identity

__all__ = [
    "DocumentClassifier",
    "DocumentType",
    "StoredDocument",
    "acquire_upload",
    "parse_identity_fields",
    "DigiLockerExtractor",
    "OcrExtractor",
    "TesseractOcrExtractor",
    "close_extractor",
    "extractor_session",
    "get_extractor",
    "ExtractionResult",
    "extract_identity",
]
