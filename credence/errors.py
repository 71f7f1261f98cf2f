"""Error taxonomy for the verification engine.

Every error carries a stable ``error_code``, the HTTP status it maps to and a
``safe_message`` that may be shown to the caller. ``detail`` holds internal
diagnostics and is only ever logged.
"""

from __future__ import annotations


class CredenceError(Exception):
    """Base exception for Credence"""

    error_code = "INTERNAL_ERROR"
    http_status = 500
    default_message = "An unexpected error occurred"

    def __init__(self, safe_message: str | None = None, *, detail: str | None = None) -> None:
        self.safe_message = safe_message or self.default_message
        self.detail = detail
        super().__init__(detail or self.safe_message)


class ValidationError(CredenceError):
    """Malformed or incomplete claims or document (user-correctable)."""

    error_code = "VALIDATION_ERROR"
    http_status = 400
    default_message = "The submitted data is invalid"


class ExtractionError(CredenceError):
    """Text extraction capability unavailable or document unreadable."""

    error_code = "OCR_FAILED"
    http_status = 422
    default_message = "The document could not be read"


class MatchingFault(CredenceError):
    """Internal fault while comparing claimed and extracted identities."""

    error_code = "MATCHING_FAULT"
    http_status = 500
    default_message = "Automatic matching failed"


class ConflictError(CredenceError):
    """Duplicate active submission or reused document."""

    error_code = "CONFLICT"
    http_status = 409
    default_message = "A verification request is already in progress"


class StateError(CredenceError):
    """Operation attempted against a request in an incompatible state."""

    error_code = "INVALID_STATE"
    http_status = 409
    default_message = "The request is not in a state that allows this operation"


class NotFoundError(CredenceError):
    error_code = "NOT_FOUND"
    http_status = 404
    default_message = "Verification request not found"
