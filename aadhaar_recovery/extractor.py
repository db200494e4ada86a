"""
Field extraction from DigiLocker Aadhaar JSON exports.

DigiLocker export shapes are undocumented and vary by issuance channel, so
extraction is layered:

  1. Known shapes — a declarative table of path probes, evaluated in a fixed
     priority order by one interpreter. Supporting another export shape
     means appending a ``ShapeDescriptor`` to ``KNOWN_SHAPES``.
  2. Generic search — a depth-bounded walk over the whole tree that
     classifies scalar values by their key name.

First match wins per field: a later probe only ever fills a field that is
still empty. A candidate is only taken if it normalizes to something
plausible, otherwise the next probe gets its chance. The generic search is
stricter than the shape table: it only matches on key names, so its birth
date and gender candidates must already pass the value gate's patterns.
Shape-table values are taken as found and left to the gate.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

from .config import DEFAULT_EXTRACTION_POLICY, ExtractionPolicy
from .exceptions import ExtractionError
from .models import IdentityAttributes
from .normalize import (
    is_acceptable_identity_number,
    normalize_gender,
    normalize_identity_number,
    normalize_name,
)

logger = logging.getLogger(__name__)

Path = tuple[str, ...]

IDENTITY_NUMBER = "identity_number"
FULL_NAME = "full_name"
BIRTH_DATE = "birth_date"
GENDER = "gender"

FIELDS: tuple[str, ...] = (IDENTITY_NUMBER, FULL_NAME, BIRTH_DATE, GENDER)


# ─── Shape Table ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class ShapeDescriptor:
    """One known export shape: for each field, the paths to try in order."""

    name: str
    probes: Mapping[str, tuple[Path, ...]]


def _flat_probes(*roots: Path) -> dict[str, tuple[Path, ...]]:
    """Probes for shapes that keep plain uid/name/dob/gender keys under a root."""
    return {
        IDENTITY_NUMBER: tuple(r + ("uid",) for r in roots),
        FULL_NAME: tuple(r + ("name",) for r in roots),
        BIRTH_DATE: tuple(r + ("dob",) for r in roots),
        GENDER: tuple(r + ("gender",) for r in roots),
    }


KNOWN_SHAPES: tuple[ShapeDescriptor, ...] = (
    # Primary DigiLocker e-KYC export (XML attributes rendered as "@" keys).
    ShapeDescriptor(
        name="kyc_res_primary",
        probes={
            IDENTITY_NUMBER: (("KycRes", "UidData", "@uid"),),
            FULL_NAME: (("KycRes", "UidData", "Poi", "@name"),),
            BIRTH_DATE: (("KycRes", "UidData", "Poi", "@dob"),),
            GENDER: (("KycRes", "UidData", "Poi", "@gender"),),
        },
    ),
    ShapeDescriptor(
        name="flat_root",
        probes={
            IDENTITY_NUMBER: (("uid",), ("UID",)),
            FULL_NAME: (("name",), ("Name",)),
            BIRTH_DATE: (("dob",), ("DOB",), ("dateOfBirth",)),
            GENDER: (("gender",), ("Gender",)),
        },
    ),
    ShapeDescriptor(
        name="kyc_res_legacy",
        probes={
            IDENTITY_NUMBER: (("KycRes", "UidData", "uid"),),
            FULL_NAME: (("KycRes", "Poi", "name"),),
            BIRTH_DATE: (("KycRes", "Poi", "dob"),),
            GENDER: (("KycRes", "Poi", "gender"),),
        },
    ),
    ShapeDescriptor(
        name="certificate_data",
        probes=_flat_probes(("CertificateData", "certificate")),
    ),
    ShapeDescriptor(
        name="demographic_data",
        probes=_flat_probes(("demographicData",), ("DemographicData",)),
    ),
    ShapeDescriptor(
        name="print_letter",
        probes=_flat_probes(("PrintLetterBWPhoto",), ("printLetterBWPhoto",)),
    ),
)

# Key-name vocabulary for the generic search (matched as substrings of the
# lower-cased key).
_KEY_VOCABULARY: tuple[tuple[str, tuple[str, ...]], ...] = (
    (IDENTITY_NUMBER, ("uid", "aadhaar")),
    (FULL_NAME, ("name",)),
    (BIRTH_DATE, ("dob", "birth")),
    (GENDER, ("gender",)),
)


# ─── Public API ──────────────────────────────────────────────────────


def extract(
    doc: Mapping[str, Any],
    policy: ExtractionPolicy = DEFAULT_EXTRACTION_POLICY,
) -> IdentityAttributes:
    """Extract normalized identity attributes from a parsed export.

    Args:
        doc: The parsed JSON document (untrusted, any shape).
        policy: Heuristic policy (identity-number mode, search depth).

    Returns:
        IdentityAttributes with at least name and identity number.

    Raises:
        ExtractionError: name or identity number could not be found.
    """
    found: dict[str, str] = {}

    for shape in KNOWN_SHAPES:
        _apply_shape(doc, shape, found, policy)

    if any(field not in found for field in FIELDS):
        _search(doc, found, policy, depth=0)

    missing = [f for f in (FULL_NAME, IDENTITY_NUMBER) if f not in found]
    if missing:
        logger.warning("Extraction failed, missing fields: %s", missing)
        raise ExtractionError(
            "Could not extract required Aadhaar details (Name and Aadhaar Number) "
            "from the JSON file.",
            details={"missing": missing},
        )

    attrs = IdentityAttributes(
        full_name=found[FULL_NAME],
        identity_number=found[IDENTITY_NUMBER],
        birth_date=found.get(BIRTH_DATE),
        gender=found.get(GENDER),
    )
    logger.info(
        "Extracted details: uid=%s has_dob=%s has_gender=%s",
        attrs.masked_number(),
        attrs.birth_date is not None,
        attrs.gender is not None,
    )
    return attrs


def dev_mode_attributes() -> IdentityAttributes:
    """Fixed attributes for exercising the recovery flow without a real export."""
    return IdentityAttributes(
        full_name="TEST USER",
        identity_number="123456789012",
        birth_date="01/01/1990",
        gender="Male",
    )


# ─── Shape Interpreter ──────────────────────────────────────────────


def _apply_shape(
    doc: Mapping[str, Any],
    shape: ShapeDescriptor,
    found: dict[str, str],
    policy: ExtractionPolicy,
) -> None:
    for field, paths in shape.probes.items():
        if field in found:
            continue
        for path in paths:
            candidate = _accept(field, _resolve(doc, path), policy)
            if candidate is not None:
                found[field] = candidate
                logger.debug("Found %s via shape %s", field, shape.name)
                break


def _resolve(doc: Any, path: Path) -> Any:
    """Follow ``path`` through nested dicts; None when any step is missing."""
    node = doc
    for key in path:
        if not isinstance(node, Mapping) or key not in node:
            return None
        node = node[key]
    return node


# ─── Generic Search ─────────────────────────────────────────────────


def _search(
    node: Any, found: dict[str, str], policy: ExtractionPolicy, depth: int
) -> None:
    """Pre-order walk that stops descending past ``policy.search_depth``."""
    if depth > policy.search_depth:
        return

    for key, value in _children(node):
        if isinstance(value, (Mapping, list)):
            _search(value, found, policy, depth + 1)
            continue

        lower_key = str(key).lower()
        for field, keywords in _KEY_VOCABULARY:
            if field in found or not any(k in lower_key for k in keywords):
                continue
            if field == FULL_NAME and not (
                isinstance(value, str) and 2 < len(value) < 100
            ):
                continue
            candidate = _accept(field, value, policy)
            if candidate is not None and _plausible(field, candidate, policy):
                found[field] = candidate
                logger.debug("Found %s via key '%s' at depth %d", field, key, depth)


def _plausible(field: str, candidate: str, policy: ExtractionPolicy) -> bool:
    """Search-only filter: keys like ``placeOfBirth`` also contain "birth"."""
    if field == BIRTH_DATE:
        return any(re.match(p, candidate) for p in policy.birth_date_patterns)
    if field == GENDER:
        return candidate.lower() in policy.allowed_genders
    return True


def _children(node: Any) -> Iterable[tuple[Any, Any]]:
    if isinstance(node, Mapping):
        return node.items()
    if isinstance(node, list):
        return enumerate(node)
    return ()


# ─── Candidate Acceptance ───────────────────────────────────────────


def _accept_identity_number(value: Any, policy: ExtractionPolicy) -> str | None:
    # bool is an int subclass; a JSON true is never an identity number
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    number = normalize_identity_number(value, policy.id_number_mode)
    if is_acceptable_identity_number(number, policy.id_number_mode):
        return number
    return None


def _accept_name(value: Any, policy: ExtractionPolicy) -> str | None:
    if not isinstance(value, str):
        return None
    return normalize_name(value) or None


def _accept_birth_date(value: Any, policy: ExtractionPolicy) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _accept_gender(value: Any, policy: ExtractionPolicy) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    return normalize_gender(value)


_ACCEPTORS: dict[str, Callable[[Any, ExtractionPolicy], str | None]] = {
    IDENTITY_NUMBER: _accept_identity_number,
    FULL_NAME: _accept_name,
    BIRTH_DATE: _accept_birth_date,
    GENDER: _accept_gender,
}


def _accept(field: str, value: Any, policy: ExtractionPolicy) -> str | None:
    if value is None:
        return None
    return _ACCEPTORS[field](value, policy)
