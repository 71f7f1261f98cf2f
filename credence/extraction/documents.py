"""Uploaded document handles.

The engine never keeps raw documents: an upload is written once to the
upload directory, hashed, handed to the extractor, and discarded as soon as
extraction finishes (successfully or not).
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from credence.errors import ValidationError
from credence.utils import ensure_dir

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024

# magic prefix -> (media type, file suffix)
_SIGNATURES: list[tuple[bytes, str, str]] = [
    (b"%PDF-", "application/pdf", ".pdf"),
    (b"\x89PNG\r\n\x1a\n", "image/png", ".png"),
    (b"\xff\xd8\xff", "image/jpeg", ".jpg"),
]


@dataclass
class StoredDocument:
    """Locally addressable handle to one uploaded document."""

    path: Path
    sha256: str
    size: int
    media_type: str
    original_name: str = ""

    @property
    def exists(self) -> bool:
        return self.path.exists()

    def discard(self) -> bool:
        """Delete the underlying file. Safe to call more than once."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Discarded document sha256=%s size=%d", self.sha256[:12], self.size)
        return True


def _sniff(head: bytes) -> tuple[str, str] | None:
    for magic, media_type, suffix in _SIGNATURES:
        if head.startswith(magic):
            return media_type, suffix
    return None


def acquire_upload(
    stream: BinaryIO | bytes,
    filename: str | None,
    upload_dir: str | Path,
    max_bytes: int,
) -> StoredDocument:
    """Write an upload to *upload_dir*, enforcing type and size limits.

    Raises:
        ValidationError: empty file, file larger than ``max_bytes``, or a type
            other than PDF, PNG or JPEG.
    """
    data = stream if isinstance(stream, bytes) else None
    digest = hashlib.sha256()
    chunks: list[bytes] = []
    size = 0

    def _chunks():
        if data is not None:
            for i in range(0, len(data), _CHUNK_SIZE):
                yield data[i:i + _CHUNK_SIZE]
            return
        while True:
            chunk = stream.read(_CHUNK_SIZE)
            if not chunk:
                return
            yield chunk

    for chunk in _chunks():
        size += len(chunk)
        if size > max_bytes:
            raise ValidationError(f"Document exceeds the {max_bytes // (1024 * 1024)} MB size limit.")
        digest.update(chunk)
        chunks.append(chunk)

    if size == 0:
        raise ValidationError("Document is empty.")

    content = b"".join(chunks)
    sniffed = _sniff(content[:16])
    if sniffed is None:
        raise ValidationError("Only PDF, PNG or JPEG documents are accepted.")
    media_type, suffix = sniffed

    target = ensure_dir(upload_dir) / f"{uuid.uuid4().hex}{suffix}"
    target.write_bytes(content)

    document = StoredDocument(
        path=target,
        sha256=digest.hexdigest(),
        size=size,
        media_type=media_type,
        original_name=Path(filename or "").name,
    )
    logger.info("Stored upload sha256=%s size=%d type=%s", document.sha256[:12], size, media_type)
    return document
