"""Known aliases for institutions and programs.

Each table maps a canonical name to the spellings that refer to it. Values
are compared after :func:`canonicalize`, which rewrites every known alias
phrase to its canonical tokens and drops filler words, so
``"B.Tech CSE"`` and ``"Bachelor of Technology in Computer Science"`` end up
with the same key.
"""

from __future__ import annotations

from credence.matching.normalize import normalize_text

INSTITUTION_ALIASES: dict[str, list[str]] = {
    "Indian Institute of Technology Delhi": ["IIT Delhi", "IIT-D", "IITD", "IIT D"],
    "Indian Institute of Technology Bombay": ["IIT Bombay", "IIT-B", "IITB", "IIT Mumbai"],
    "Indian Institute of Technology Madras": ["IIT Madras", "IITM", "IIT Chennai"],
    "Indian Institute of Technology Kanpur": ["IIT Kanpur", "IITK"],
    "Birla Institute of Technology and Science Pilani": ["BITS Pilani", "BITS"],
    "Stanford University": ["Stanford", "Leland Stanford Junior University"],
    "Massachusetts Institute of Technology": ["MIT"],
    "University of California Berkeley": ["UC Berkeley", "UCB", "Berkeley"],
}

PROGRAM_ALIASES: dict[str, list[str]] = {
    "Bachelor of Technology": ["B.Tech", "BTech", "B Tech", "B.E.", "BE", "Bachelor of Engineering"],
    "Master of Technology": ["M.Tech", "MTech", "M Tech", "M.E.", "ME", "Master of Engineering"],
    "Bachelor of Science": ["B.Sc", "BSc", "B.S.", "BS"],
    "Master of Science": ["M.Sc", "MSc", "M.S.", "MS"],
    "Master of Business Administration": ["MBA"],
    "Bachelor of Computer Applications": ["BCA"],
    "Master of Computer Applications": ["MCA"],
    "Doctor of Philosophy": ["Ph.D", "PhD"],
    "Computer Science": [
        "CS", "CSE", "Computer Science and Engineering", "Computer Science & Engineering",
        "Computer Engineering",
    ],
    "Electrical Engineering": ["EE", "Electrical and Electronics Engineering", "EEE"],
    "Electronics and Communication Engineering": ["ECE", "Electronics and Communication"],
    "Mechanical Engineering": ["Mech", "Mechanical"],
}

_FILLER = frozenset({"in", "of", "the", "and", "at"})

AliasTable = dict[str, list[str]]


def _phrase_table(table: AliasTable) -> list[tuple[tuple[str, ...], tuple[str, ...]]]:
    phrases = []
    for canonical, aliases in table.items():
        target = tuple(normalize_text(canonical).split())
        for spelling in (canonical, *aliases):
            tokens = tuple(normalize_text(spelling).split())
            if tokens:
                phrases.append((tokens, target))
    # Longest phrase first so "computer science and engineering" beats "computer science"
    phrases.sort(key=lambda p: len(p[0]), reverse=True)
    return phrases


def canonicalize(value, table: AliasTable) -> str:
    """Rewrite known alias phrases to canonical tokens and drop filler words."""
    tokens = normalize_text(value).split()
    phrases = _phrase_table(table)
    out: list[str] = []
    i = 0
    while i < len(tokens):
        for alias, target in phrases:
            if tuple(tokens[i:i + len(alias)]) == alias:
                out.extend(target)
                i += len(alias)
                break
        else:
            out.append(tokens[i])
            i += 1
    return " ".join(t for t in out if t not in _FILLER)


def resolve(value, table: AliasTable) -> str | None:
    """Canonical name when *value* as a whole is a known entry, else None."""
    key = canonicalize(value, table)
    for canonical in table:
        if canonicalize(canonical, table) == key:
            return canonical
    return None


def alias_equivalent(a, b, table: AliasTable) -> bool:
    key_a = canonicalize(a, table)
    return bool(key_a) and key_a == canonicalize(b, table)


def institution_key(name) -> str:
    """Stable key identifying an institution across its spellings."""
    return canonicalize(name, INSTITUTION_ALIASES)
