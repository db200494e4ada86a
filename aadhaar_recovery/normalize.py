"""
Canonical forms for extracted identity values.

Pure functions, no failure modes: whatever comes in, a string comes out.
Whether the result is *acceptable* is a separate question answered by
``is_acceptable_identity_number`` and the validators.
"""

from __future__ import annotations

import re

from .config import IdNumberMode

# Single-letter codes seen in Poi/@gender attributes.
_GENDER_CODES: dict[str, str] = {
    "f": "Female",
    "m": "Male",
    "o": "Others",
    "t": "Others",
}

_STRICT_NUMBER = re.compile(r"^\d{12}$")
# 8-12 characters: an optional leading x mask, then at least four digits
_MASKED_NUMBER = re.compile(r"^(?=[0-9x]{8,12}$)x*\d{4,}$")


def normalize_gender(gender: str) -> str:
    """Map a free-form gender value onto ``Male`` / ``Female`` / ``Others``.

    The "female" test runs first since "female" contains "male". Values
    outside the vocabulary pass through unchanged.
    """
    g = str(gender).strip().lower()
    if "female" in g:
        return "Female"
    if "male" in g:
        return "Male"
    if "other" in g or "transgender" in g:
        return "Others"
    if g in _GENDER_CODES:
        return _GENDER_CODES[g]
    return gender


def normalize_name(name: str) -> str:
    """Strip punctuation, collapse whitespace, upper-case."""
    cleaned = re.sub(r"[^\w\s]", "", str(name))
    cleaned = re.sub(r"\s+", " ", cleaned)
    return cleaned.strip().upper()


def normalize_identity_number(
    value: object, mode: IdNumberMode = IdNumberMode.MASKED
) -> str:
    """Reduce a raw identity number to its digits.

    In MASKED mode the mask character ``x`` survives (lower-cased) so that
    ``XXXX XXXX 0511`` becomes ``xxxxxxxx0511``.
    """
    raw = re.sub(r"\s", "", str(value))
    if mode is IdNumberMode.MASKED:
        return re.sub(r"[^0-9x]", "", raw.lower())
    return re.sub(r"\D", "", raw)


def is_acceptable_identity_number(
    value: str, mode: IdNumberMode = IdNumberMode.MASKED
) -> bool:
    """Check a normalized identity number against the mode's length policy."""
    if mode is IdNumberMode.STRICT:
        return bool(_STRICT_NUMBER.match(value))
    return bool(_MASKED_NUMBER.match(value))
