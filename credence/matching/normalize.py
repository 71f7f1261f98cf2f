"""Text normalization and fuzzy similarity helpers."""

from __future__ import annotations

import difflib
import re
import unicodedata

_SEPARATOR_RE = re.compile(r"[-_/,&]+")
_PUNCT_RE = re.compile(r"[^\w\s]")
_WS_RE = re.compile(r"\s+")


def normalize_text(value) -> str:
    """Case-fold, strip accents and punctuation, collapse whitespace.

    Separators (hyphen, slash, comma, ampersand) become spaces; any other
    punctuation is dropped, so ``"B.Tech"`` and ``"BTech"`` normalize alike.
    """
    if value is None:
        return ""
    text = unicodedata.normalize("NFKD", str(value))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = text.casefold()
    text = _SEPARATOR_RE.sub(" ", text)
    text = _PUNCT_RE.sub("", text)
    return _WS_RE.sub(" ", text).strip()


def sequence_ratio(a: str, b: str) -> float:
    return difflib.SequenceMatcher(None, a, b).ratio()


def token_similarity(a: str, b: str) -> float:
    """Order-insensitive similarity: ratio of the sorted token strings."""
    return sequence_ratio(" ".join(sorted(a.split())), " ".join(sorted(b.split())))


def text_similarity(a: str, b: str) -> float:
    """Similarity of two already-normalized strings in [0, 1]."""
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return max(sequence_ratio(a, b), token_similarity(a, b))


# Parts shorter than this must match exactly; one edit between two short
# parts usually means a different name ("usha" / "asha").
TYPO_TOLERANT_LENGTH = 5


def edit_distance(a: str, b: str) -> int:
    """Levenshtein distance between two strings."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def _part_credit(part: str, other: str) -> float:
    if part == other:
        return 1.0
    if len(part) == 1 or len(other) == 1:
        # An initial stands in for, but does not confirm, the full part
        return 0.5 if part[0] == other[0] else 0.0
    if min(len(part), len(other)) >= TYPO_TOLERANT_LENGTH and edit_distance(part, other) <= 1:
        return 1.0
    return 0.0


def _coverage(parts: list[str], others: list[str]) -> float:
    remaining = list(others)
    credit = 0.0
    for part in parts:
        best, best_idx = 0.0, None
        for idx, other in enumerate(remaining):
            c = _part_credit(part, other)
            if c > best:
                best, best_idx = c, idx
        if best_idx is not None:
            credit += best
            del remaining[best_idx]
    return credit / len(parts)


def name_similarity(a: str, b: str) -> float:
    """Part-by-part similarity of two already-normalized person names.

    Every part of each name is paired with at most one part of the other.
    Parts count when equal, when one is the other's initial (half credit),
    or when both are long and one edit apart. The result is the mean of
    the coverage in both directions, so order does not matter and an
    omitted middle name costs less than a changed surname.
    """
    if not a or not b:
        return 0.0
    if a == b or a.replace(" ", "") == b.replace(" ", ""):
        return 1.0
    parts_a, parts_b = a.split(), b.split()
    return (_coverage(parts_a, parts_b) + _coverage(parts_b, parts_a)) / 2
