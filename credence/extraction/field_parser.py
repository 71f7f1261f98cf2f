"""Structured field parsing - raw document text to a candidate IdentityRecord.

Labelled lines ("Name: ...", "Institution: ...") are trusted first. When a
label is missing the parser falls back to layout and keyword heuristics with
lower confidence. Only fields that were actually found are populated.
"""

from __future__ import annotations

import logging
import re
from datetime import date

from credence.identity.claims import MAX_FUTURE_YEARS, MIN_YEAR
from credence.identity.record import FieldSource, IdentityField, IdentityRecord, from_extraction

logger = logging.getLogger(__name__)

_MAX_VALUE_LENGTH = 200
_SEP = r"\s*[:\-–]\s*"
_FLAGS = re.IGNORECASE | re.MULTILINE

# Confidence per extraction method (0-100).
LABELLED_CONFIDENCE = 90
YEAR_RANGE_CONFIDENCE = 95
CERTIFY_NAME_CONFIDENCE = 70
NAME_LINE_CONFIDENCE = 60
INSTITUTION_LINE_CONFIDENCE = 70
INSTITUTION_ABBREV_CONFIDENCE = 65
PROGRAM_PHRASE_CONFIDENCE = 70
PROGRAM_ABBREV_CONFIDENCE = 65
LOOSE_YEARS_CONFIDENCE = 70
SINGLE_YEAR_CONFIDENCE = 60

_LABELS: dict[str, re.Pattern] = {
    "institution": re.compile(
        r"^\s*(?:name\s+of\s+(?:the\s+)?(?:institution|institute|university|college)"
        r"|institution|institute|university|college)" + _SEP + r"(?P<value>.+?)\s*$",
        _FLAGS,
    ),
    "full_name": re.compile(
        r"^\s*(?:(?:student|candidate)(?:'s)?\s+name|name\s+of\s+(?:the\s+)?(?:student|candidate)"
        r"|full\s+name|name|student|candidate)" + _SEP + r"(?P<value>.+?)\s*$",
        _FLAGS,
    ),
    "program": re.compile(
        r"^\s*(?:programme|program|degree|course|branch|discipline)(?:\s+name)?" + _SEP + r"(?P<value>.+?)\s*$",
        _FLAGS,
    ),
    "session": re.compile(
        r"^\s*(?:academic\s+session|session|batch|duration|period\s+of\s+study|years?\s+of\s+study"
        r"|year\s+of\s+(?:passing|completion|graduation)|period)" + _SEP + r"(?P<value>.+?)\s*$",
        _FLAGS,
    ),
}

_CERTIFY_NAME_RE = re.compile(
    r"(?i:certif(?:y|ies|ied)\s+that)\s+(?:(?i:mr|ms|mrs|miss|shri|smt|kumari)\.?\s+)?"
    r"(?P<value>[A-Z][A-Za-z.'\-]*(?:\s+[A-Z][A-Za-z.'\-]*){0,4})"
)
_NAME_STOP_WORDS = {"has", "was", "is", "son", "daughter", "s/o", "d/o", "who", "bearing", "having", "of"}
_NAME_LINE_RE = re.compile(r"^[A-Z][a-z]+(?:\s+[A-Z][a-z]+){1,3}$")
_NON_NAME_WORDS = {
    "university", "institute", "college", "certificate", "degree", "bachelor", "master",
    "technology", "science", "engineering", "school", "academy", "transcript", "diploma",
    "board", "department", "the", "of", "provisional", "registrar", "controller", "examination",
}

_INSTITUTION_LINE_RE = re.compile(r"\b(?:university|institute|college|academy|polytechnic|school\s+of)\b", re.IGNORECASE)
_INSTITUTION_ABBREV_RE = re.compile(r"\b(?:IIT|NIT|IIIT|BITS)[\s\-]+[A-Z][a-z]+\b")

_PROGRAM_PHRASE_RE = re.compile(
    r"\b(?:bachelor|master|doctor)\s+of\s+[A-Za-z]+(?:\s+(?:in|of)\s+[A-Za-z&]+(?:\s+(?:and\s+|&\s+)?[A-Za-z]+){0,4})?",
    re.IGNORECASE,
)
_PROGRAM_ABBREV_RE = re.compile(
    r"\b(?:B\.?\s?Tech|M\.?\s?Tech|B\.?\s?E|B\.?\s?Sc|M\.?\s?Sc|MBA|BCA|MCA|Ph\.?\s?D)\b\.?"
    r"(?:\s+(?:in\s+)?[A-Z][A-Za-z&]*(?:\s+[A-Z][A-Za-z&]*){0,3})?"
)
_PROGRAM_TAIL_RE = re.compile(r"\s+(?:from|at|with|during|awarded|conferred|on|by|in\s+the)\b.*$", re.IGNORECASE)

_YEAR_RANGE_RE = re.compile(r"\b((?:19|20)\d{2})\s*(?:-|–|—|to|till|until)\s*((?:19|20)\d{2})\b", re.IGNORECASE)
_YEAR_RE = re.compile(r"\b((?:19|20)\d{2})\b")


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = " ".join(value.split()).strip(" .,;:")
    return value[:_MAX_VALUE_LENGTH] or None


def _plausible(year: int, current_year: int) -> bool:
    return MIN_YEAR <= year <= current_year + MAX_FUTURE_YEARS


class _Found(dict):
    """Collects the first value found per field."""

    def offer(self, name: str, value, confidence: int, source: FieldSource) -> None:
        if name in self or value is None:
            return
        self[name] = IdentityField(value=value, confidence=confidence, source=source)


def _labelled(text: str, label: str) -> str | None:
    match = _LABELS[label].search(text)
    return _clean(match.group("value")) if match else None


def _year_range(text: str, current_year: int) -> tuple[int, int] | None:
    for match in _YEAR_RANGE_RE.finditer(text):
        start, end = int(match.group(1)), int(match.group(2))
        if start <= end and _plausible(start, current_year) and _plausible(end, current_year):
            return start, end
    return None


def _certified_name(text: str) -> str | None:
    match = _CERTIFY_NAME_RE.search(text)
    if not match:
        return None
    tokens = []
    for token in match.group("value").split():
        if token.lower() in _NAME_STOP_WORDS:
            break
        tokens.append(token)
    return _clean(" ".join(tokens))


def _name_line(lines: list[str]) -> str | None:
    for line in lines:
        if _NAME_LINE_RE.match(line) and not (set(line.lower().split()) & _NON_NAME_WORDS):
            return line
    return None


def _institution_line(lines: list[str]) -> str | None:
    for line in lines:
        if len(line) > 100 or "certif" in line.lower():
            continue
        if _INSTITUTION_LINE_RE.search(line):
            return _clean(line)
    return None


def _parse_years(text: str, session: str | None, current_year: int, found: _Found, source: FieldSource) -> None:
    if session:
        span = _year_range(session, current_year)
        if span:
            found.offer("start_year", span[0], YEAR_RANGE_CONFIDENCE, source)
            found.offer("end_year", span[1], YEAR_RANGE_CONFIDENCE, source)
            return
        single = [int(y) for y in _YEAR_RE.findall(session) if _plausible(int(y), current_year)]
        if len(single) == 1:
            found.offer("end_year", single[0], LABELLED_CONFIDENCE, source)

    span = _year_range(text, current_year)
    if span:
        found.offer("start_year", span[0], YEAR_RANGE_CONFIDENCE, source)
        found.offer("end_year", span[1], YEAR_RANGE_CONFIDENCE, source)
        return

    years = sorted({int(y) for y in _YEAR_RE.findall(text) if _plausible(int(y), current_year)})
    if len(years) >= 2:
        found.offer("start_year", years[0], LOOSE_YEARS_CONFIDENCE, source)
        found.offer("end_year", years[-1], LOOSE_YEARS_CONFIDENCE, source)
    elif len(years) == 1:
        found.offer("end_year", years[0], SINGLE_YEAR_CONFIDENCE, source)


def parse_identity_fields(
    text: str,
    *,
    source: FieldSource = FieldSource.OCR,
    current_year: int | None = None,
) -> IdentityRecord:
    """Parse document text into an IdentityRecord of the fields that were found."""
    if not text or not text.strip():
        return IdentityRecord()

    current_year = current_year or date.today().year
    lines = [" ".join(line.split()) for line in text.splitlines() if line.strip()]
    found = _Found()

    # Labelled lines
    for name in ("full_name", "institution", "program"):
        found.offer(name, _labelled(text, name), LABELLED_CONFIDENCE, source)

    # Heuristics
    found.offer("full_name", _certified_name(text), CERTIFY_NAME_CONFIDENCE, source)
    found.offer("full_name", _name_line(lines), NAME_LINE_CONFIDENCE, source)

    found.offer("institution", _institution_line(lines), INSTITUTION_LINE_CONFIDENCE, source)
    abbrev = _INSTITUTION_ABBREV_RE.search(text)
    found.offer("institution", abbrev.group(0) if abbrev else None, INSTITUTION_ABBREV_CONFIDENCE, source)

    phrase = _PROGRAM_PHRASE_RE.search(text)
    if phrase:
        found.offer("program", _clean(_PROGRAM_TAIL_RE.sub("", phrase.group(0))), PROGRAM_PHRASE_CONFIDENCE, source)
    abbrev = _PROGRAM_ABBREV_RE.search(text)
    if abbrev:
        found.offer("program", _clean(_PROGRAM_TAIL_RE.sub("", abbrev.group(0))), PROGRAM_ABBREV_CONFIDENCE, source)

    _parse_years(text, _labelled(text, "session"), current_year, found, source)

    logger.debug("Parsed fields %s from %d lines", sorted(found), len(lines))
    return from_extraction(found, source=source)
