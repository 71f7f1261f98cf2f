"""Text extraction capability.

The engine only talks to :class:`OcrExtractor`. Providers are initialized
lazily on first use, reused across requests and released through ``close()``.

Thread Safety
-------------
Provider initialization uses double-checked locking with ``threading.Lock``.
Tesseract is driven through a subprocess per page and pytesseract shares
module-level state, so :class:`TesseractOcrExtractor` serializes OCR calls
with an internal lock. The process-wide singleton returned by
``get_extractor()`` is guarded the same way.
"""

from __future__ import annotations

import io
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import fitz  # PyMuPDF
import pytesseract
from PIL import Image

from credence.config import Config, get_config
from credence.errors import ExtractionError
from credence.identity.record import FieldSource

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF-"


def _document_path(document: Any) -> Path:
    """Accept a StoredDocument-like handle (``.path``) or a plain path."""
    return Path(getattr(document, "path", document))


class OcrExtractor(ABC):
    """Turns a document into raw text."""

    #: provenance tag applied to fields parsed from this provider's text
    field_source: FieldSource = FieldSource.OCR
    name: str = "abstract"

    @abstractmethod
    def extract_text(self, document: Any) -> str:
        """Return the document text or raise :class:`ExtractionError`."""

    @abstractmethod
    def is_available(self) -> bool:
        """Non-throwing health probe."""

    def close(self) -> None:
        """Release the backing capability."""


class TesseractOcrExtractor(OcrExtractor):
    """PyMuPDF text layer first, Tesseract OCR for scanned pages and images."""

    name = "tesseract"

    def __init__(self, language: str = "eng", dpi: int = 300, tesseract_cmd: str | None = None) -> None:
        self.language = language
        self.dpi = dpi
        self.tesseract_cmd = tesseract_cmd
        self._initialized = False
        self._available = False
        self._closed = False
        self._init_lock = threading.Lock()
        self._call_lock = threading.Lock()

    # -- lifecycle ------------------------------------------------------------

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        with self._init_lock:
            if self._initialized:
                return
            if self.tesseract_cmd:
                pytesseract.pytesseract.tesseract_cmd = self.tesseract_cmd
            try:
                version = pytesseract.get_tesseract_version()
                self._available = True
                logger.info("Tesseract OCR initialized: version=%s lang=%s", version, self.language)
            except (pytesseract.TesseractNotFoundError, OSError) as exc:
                self._available = False
                logger.warning("Tesseract OCR unavailable: %s", exc)
            self._initialized = True

    def is_available(self) -> bool:
        if self._closed:
            return False
        try:
            self._ensure_initialized()
        except Exception:
            logger.warning("Tesseract availability probe failed", exc_info=True)
            return False
        return self._available

    def close(self) -> None:
        with self._init_lock:
            self._closed = True
            self._initialized = False
            self._available = False
        logger.info("Tesseract OCR extractor closed")

    # -- extraction -----------------------------------------------------------

    def _ocr_image(self, image: Image.Image) -> str:
        self._ensure_initialized()
        if not self._available:
            raise ExtractionError(
                "Text recognition is currently unavailable. Please try again later.",
                detail="tesseract binary not available",
            )
        with self._call_lock:
            try:
                return pytesseract.image_to_string(image, lang=self.language)
            except (pytesseract.TesseractError, RuntimeError) as exc:
                raise ExtractionError(detail=f"tesseract failed: {exc}") from exc

    def _read_pdf(self, path: Path) -> str:
        parts: list[str] = []
        try:
            doc = fitz.open(path)
        except Exception as exc:
            raise ExtractionError(detail=f"PyMuPDF could not open {path.name}: {exc}") from exc
        with doc:
            for page in doc:
                text = page.get_text("text")
                if text.strip():
                    parts.append(text)
                    continue
                # Scanned page: render and OCR
                pix = page.get_pixmap(dpi=self.dpi)
                image = Image.open(io.BytesIO(pix.tobytes("png")))
                parts.append(self._ocr_image(image))
        return "\n".join(parts)

    def _read_image(self, path: Path) -> str:
        try:
            with Image.open(path) as image:
                image.load()
                return self._ocr_image(image)
        except OSError as exc:
            raise ExtractionError(detail=f"unrecognized image {path.name}") from exc

    def extract_text(self, document: Any) -> str:
        if self._closed:
            raise ExtractionError(
                "Text recognition is currently unavailable. Please try again later.",
                detail="extractor closed",
            )
        path = _document_path(document)
        if not path.is_file():
            raise ExtractionError(detail=f"document not found: {path}")

        with open(path, "rb") as f:
            head = f.read(len(PDF_MAGIC))

        text = self._read_pdf(path) if head == PDF_MAGIC else self._read_image(path)
        if not text.strip():
            raise ExtractionError("No text could be read from the document.", detail=f"empty text: {path.name}")
        logger.info("Extracted %d characters from %s", len(text), path.name)
        return text


class DigiLockerExtractor(OcrExtractor):
    """Government document locker provider.

    Registered so deployments can select it, but the backing integration does
    not exist yet: it always reports unavailable.
    """

    field_source = FieldSource.DIGILOCKER
    name = "digilocker"

    def is_available(self) -> bool:
        return False

    def extract_text(self, document: Any) -> str:
        raise ExtractionError(
            "Government document verification is not available yet.",
            detail="digilocker provider not implemented",
        )


# ---------------------------------------------------------------------------
# Provider lifecycle
# ---------------------------------------------------------------------------

_extractor: OcrExtractor | None = None
_lock = threading.Lock()


def build_extractor(cfg: Config | None = None) -> OcrExtractor:
    """Create a new (uninitialized) provider for the configured ``ocr_provider``."""
    cfg = cfg or get_config()
    if cfg.ocr_provider == "digilocker":
        return DigiLockerExtractor()
    return TesseractOcrExtractor(language=cfg.ocr_language, dpi=cfg.ocr_dpi, tesseract_cmd=cfg.tesseract_cmd)


def get_extractor() -> OcrExtractor:
    """Return the process-wide extractor (created on first call)."""
    global _extractor
    if _extractor is None:
        with _lock:
            if _extractor is None:
                _extractor = build_extractor()
                logger.info("Text extractor selected: %s", _extractor.name)
    return _extractor


def close_extractor() -> None:
    """Close the process-wide extractor and release the singleton."""
    global _extractor
    with _lock:
        if _extractor is not None:
            _extractor.close()
            _extractor = None


@contextmanager
def extractor_session(cfg: Config | None = None) -> Iterator[OcrExtractor]:
    """Scoped extractor with guaranteed teardown."""
    extractor = build_extractor(cfg)
    try:
        yield extractor
    finally:
        extractor.close()
