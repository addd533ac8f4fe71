"""Normalization functions for the demographic source corpus.

String helpers accept str | None like the rest of the package.  Numeric
parsers never raise: malformed values degrade to zero and only show up later
in population totals.
"""

from __future__ import annotations

import re
import unicodedata

# Bump when normalize_key changes: every persisted slug depends on it.
KEY_VERSION = 1


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: strip_diacritics
# ---------------------------------------------------------------------------

def strip_diacritics(value: str) -> str:
    """Canonical decomposition followed by removal of combining marks."""
    v = unicodedata.normalize("NFD", value)
    return "".join(c for c in v if not unicodedata.combining(c))


# ---------------------------------------------------------------------------
# Rule 3: entity keys
# ---------------------------------------------------------------------------

_KEY_SEPARATORS = re.compile(r"[&/()]")
_NON_WORD = re.compile(r"[^\w\s]")
_WORD_CHARS = re.compile(r"\w+")


def is_canonical_key(value: str | None) -> bool:
    """True when value already has the shape normalize_key produces."""
    if not value or not _WORD_CHARS.fullmatch(value):
        return False
    if value[0].isupper():
        return False
    return strip_diacritics(value) == value


def _split_camel(key: str) -> list[str]:
    words: list[str] = []
    current = ""
    for ch in key:
        if ch.isupper() and current:
            words.append(current)
            current = ch.lower()
        else:
            current += ch.lower()
    if current:
        words.append(current)
    return words


def key_words(value: str | None) -> list[str]:
    """Return the lowercase words a key is built from.

    Display names go through the full pipeline; canonical keys are split back
    on their camel-case boundaries so "fonApparentes" and "Fon & apparentés"
    yield the same words.
    """
    if not value:
        return []
    if is_canonical_key(value):
        return _split_camel(value)
    v = strip_diacritics(value.lower())
    v = _KEY_SEPARATORS.sub(" ", v)
    v = _NON_WORD.sub(" ", v)
    return [w for w in v.split() if w]


def normalize_key(value: str | None) -> str:
    """Map a display name to its canonical camel-case lookup key.

    "Adja & apparentés" → "adjaApparentes", "Afrique du Sud" → "afriqueDuSud",
    "Ambundu (Mbundu)" → "ambunduMbundu".  Empty input gives "".  A value that
    is already a key is returned unchanged, so normalize_key is idempotent.
    """
    if not value:
        return ""
    if is_canonical_key(value):
        return value
    words = key_words(value)
    if not words:
        return ""
    joined = words[0] + "".join(w[:1].upper() + w[1:] for w in words[1:])
    return strip_diacritics(joined)


# ---------------------------------------------------------------------------
# Rule 4: list fields
# ---------------------------------------------------------------------------

def split_list(value: str | None, sep: str = ",") -> list[str]:
    """Split a delimited cell into trimmed, non-empty items (order kept)."""
    v = trim(value)
    if v is None:
        return []
    return [item.strip() for item in v.split(sep) if item.strip()]


def ordered_union(*lists: list[str]) -> list[str]:
    """Union of several lists keeping first-seen order."""
    seen: dict[str, None] = {}
    for items in lists:
        for item in items:
            seen.setdefault(item, None)
    return list(seen)


# ---------------------------------------------------------------------------
# Rule 5: locale-tolerant numbers
# ---------------------------------------------------------------------------

_LEADING_NUMBER = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")
_SPACES = re.compile(r"[\s  ]")


def _leading_float(value: str) -> float:
    m = _LEADING_NUMBER.match(value)
    if not m:
        return 0.0
    try:
        return float(m.group(0))
    except ValueError:
        return 0.0


def parse_population(value: str | None) -> int:
    """Parse a head count such as "1 234 567", "1,234,567" or "1.234.567".

    Commas, spaces and repeated dots are thousands separators.  Unparsable
    input gives 0.
    """
    v = trim(value)
    if v is None:
        return 0
    v = _SPACES.sub("", v).replace(",", "")
    if v.count(".") > 1:
        v = v.replace(".", "")
    return round(_leading_float(v))


def parse_percentage(value: str | None) -> float:
    """Parse a percentage such as "12,5", "12.5" or "12.5 %"; 0.0 on failure."""
    v = trim(value)
    if v is None:
        return 0.0
    v = _SPACES.sub("", v).replace(",", ".").rstrip("%")
    return _leading_float(v)
