"""Canonical identity representation with per-field provenance.

An ``IdentityRecord`` holds the five verifiable identity fields. Each field
records where its value came from (``FieldSource``) and how confident that
source is. Records are immutable: the claimed and the extracted identity of a
request are two distinct records, never one record mutated in place.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Iterator, Mapping

logger = logging.getLogger(__name__)

IDENTITY_FIELDS: tuple[str, ...] = (
    "full_name",
    "institution",
    "program",
    "start_year",
    "end_year",
)

YEAR_FIELDS: frozenset[str] = frozenset({"start_year", "end_year"})


class FieldSource(str, Enum):
    """Provenance of an identity field value."""

    USER = "USER"
    OCR = "OCR"
    DIGILOCKER = "DIGILOCKER"


@dataclass(frozen=True)
class IdentityField:
    value: str | int | None = None
    confidence: int = 0
    source: FieldSource = FieldSource.OCR

    def __post_init__(self) -> None:
        if not isinstance(self.source, FieldSource):
            object.__setattr__(self, "source", FieldSource(self.source))
        if not 0 <= self.confidence <= 100:
            raise ValueError(f"confidence must be within 0-100, got {self.confidence}")
        if self.source is FieldSource.USER and self.confidence != 100:
            raise ValueError("USER-sourced fields are asserted at confidence 100")

    @property
    def present(self) -> bool:
        return self.value is not None and self.value != ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": self.value,
            "confidence": self.confidence,
            "source": self.source.value,
        }


@dataclass(frozen=True)
class IdentityRecord:
    """Five identity fields, each with value, confidence and source."""

    full_name: IdentityField = field(default_factory=IdentityField)
    institution: IdentityField = field(default_factory=IdentityField)
    program: IdentityField = field(default_factory=IdentityField)
    start_year: IdentityField = field(default_factory=IdentityField)
    end_year: IdentityField = field(default_factory=IdentityField)

    def get(self, name: str) -> IdentityField:
        if name not in IDENTITY_FIELDS:
            raise KeyError(name)
        return getattr(self, name)

    def items(self) -> Iterator[tuple[str, IdentityField]]:
        for f in fields(self):
            yield f.name, getattr(self, f.name)

    def values(self) -> dict[str, str | int | None]:
        """Plain ``{field: value}`` view, used by API projections."""
        return {name: f.value for name, f in self.items()}

    def with_field(self, name: str, identity_field: IdentityField) -> "IdentityRecord":
        if name not in IDENTITY_FIELDS:
            raise KeyError(name)
        return replace(self, **{name: identity_field})


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

def _claim_value(claims: Any, name: str) -> Any:
    if isinstance(claims, Mapping):
        return claims.get(name)
    return getattr(claims, name, None)


def _coerce(name: str, value: Any) -> str | int | None:
    if value is None:
        return None
    if name in YEAR_FIELDS:
        return int(value)
    return str(value).strip()


def from_user_claims(claims: Any) -> IdentityRecord:
    """Build a record from subject-asserted claims.

    ``claims`` is a mapping or an object exposing the five field names as
    attributes (e.g. a validated ``ClaimSubmission``). Every field is sourced
    from the user at full confidence.
    """
    return IdentityRecord(**{
        name: IdentityField(
            value=_coerce(name, _claim_value(claims, name)),
            confidence=100,
            source=FieldSource.USER,
        )
        for name in IDENTITY_FIELDS
    })


def from_extraction(
    extracted: Mapping[str, IdentityField | Mapping[str, Any]],
    source: FieldSource = FieldSource.OCR,
) -> IdentityRecord:
    """Build a record from extractor output.

    Only the fields the extractor found are populated; every other field keeps
    the default null / zero-confidence state.
    """
    values: dict[str, IdentityField] = {}
    for name, item in extracted.items():
        if name not in IDENTITY_FIELDS:
            logger.debug("Ignoring unknown extracted field %s", name)
            continue
        if isinstance(item, IdentityField):
            values[name] = item
            continue
        values[name] = IdentityField(
            value=_coerce(name, item.get("value")),
            confidence=int(item.get("confidence", 0)),
            source=FieldSource(item.get("source", source)),
        )
    return IdentityRecord(**values)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def to_persisted(record: IdentityRecord) -> dict[str, dict[str, Any]]:
    """Serialize to a JSON-compatible dict keyed by field name."""
    return {name: f.to_dict() for name, f in record.items()}


def from_persisted(data: Mapping[str, Mapping[str, Any]] | None) -> IdentityRecord:
    """Inverse of :func:`to_persisted`. Missing fields load as defaults."""
    if not data:
        return IdentityRecord()
    values = {}
    for name in IDENTITY_FIELDS:
        item = data.get(name)
        if item is None:
            continue
        values[name] = IdentityField(
            value=item.get("value"),
            confidence=int(item.get("confidence", 0)),
            source=FieldSource(item.get("source", FieldSource.OCR.value)),
        )
    return IdentityRecord(**values)
