"""
Plausibility validation — heuristic, deterministic, no network.

Two independent gates:

  - ``validate_structure`` runs on the raw document BEFORE extraction and
    decides whether it plausibly is a DigiLocker Aadhaar export (shape,
    provenance markers, certificate shape). It also attaches advisory
    tamper findings that never reject on their own.
  - ``validate_extracted`` runs on the extracted values AFTER extraction.
    A document can pass the first gate and still fail this one.

Each check function:
  - Takes the document (and raw text / policy where needed)
  - Returns a list of ValidationFinding objects (empty = all clear)
  - Is independently testable

This is not forgery detection. It is plausibility scoring over an untrusted,
loosely structured document.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator, Mapping

from .config import DEFAULT_EXTRACTION_POLICY, ExtractionPolicy
from .models import IdentityAttributes, Severity, StructureVerdict, ValidationFinding
from .normalize import is_acceptable_identity_number

logger = logging.getLogger(__name__)

SHAPE_REASON = "This does not appear to be a valid DigiLocker JSON file structure."
PROVENANCE_REASON = (
    "Missing DigiLocker authentication metadata. File may be tampered with."
)
CERTIFICATE_REASON = "Certificate structure validation failed."
ATTRIBUTE_REASON = "Extracted data appears to be invalid or tampered with."

_UNIX_TIMESTAMP = re.compile(r"^\d{10,13}$")


# ─── Orchestrator ────────────────────────────────────────────────────


def validate_structure(
    doc: Mapping[str, Any],
    raw_text: str,
    policy: ExtractionPolicy = DEFAULT_EXTRACTION_POLICY,
    now: datetime | None = None,
) -> StructureVerdict:
    """Run every structural check; the first ERROR decides the reason."""
    findings: list[ValidationFinding] = []
    findings.extend(check_shape(doc, policy))
    findings.extend(check_provenance(raw_text, policy))
    findings.extend(check_certificate_structure(doc))

    errors = [f for f in findings if f.severity == Severity.ERROR]

    # Advisory findings are attached to accepted and rejected documents alike
    findings.extend(check_suspicious_modifications(raw_text, policy))
    findings.extend(check_type_consistency(doc, policy))
    findings.extend(check_timestamps(doc, policy, now=now))

    if errors:
        logger.warning("Structural validation failed: %s", errors[0].code)
        return StructureVerdict(
            accepted=False, reason=errors[0].message, findings=findings
        )

    logger.info("DigiLocker integrity validation passed")
    return StructureVerdict(accepted=True, findings=findings)


# ─── Structural Checks (rejecting) ───────────────────────────────────


def has_known_shape(doc: Mapping[str, Any], policy: ExtractionPolicy) -> bool:
    """Known root shapes, or at least one of the required top-level fields."""
    kyc = doc.get("KycRes")
    if isinstance(kyc, Mapping) and kyc.get("UidData"):
        return True

    cert_data = doc.get("CertificateData")
    if isinstance(cert_data, Mapping) and cert_data.get("certificate"):
        return True

    if doc.get("PrintLetterBWPhoto") or doc.get("printLetterBWPhoto"):
        return True

    return any(field in doc for field in policy.required_root_fields)


def check_shape(
    doc: Mapping[str, Any], policy: ExtractionPolicy
) -> list[ValidationFinding]:
    if has_known_shape(doc, policy):
        return []
    return [
        ValidationFinding(
            severity=Severity.ERROR,
            code="SHAPE_UNRECOGNIZED",
            field="document",
            message=SHAPE_REASON,
            details={"root_keys": len(doc)},
        )
    ]


def check_provenance(raw_text: str, policy: ExtractionPolicy) -> list[ValidationFinding]:
    """Look for DigiLocker / UIDAI markers in the raw text.

    Any one of: a signature marker, an issuing-authority name, or a
    timestamp together with a certificate-id-like token.
    """
    lowered = raw_text.lower()
    upper = raw_text.upper()

    has_signature = any(p.lower() in lowered for p in policy.signature_patterns)
    has_authority = any(name.upper() in upper for name in policy.authority_names)
    has_timestamp = re.search(policy.timestamp_pattern, raw_text) is not None
    has_certificate_id = re.search(policy.certificate_id_pattern, raw_text) is not None

    if has_signature or has_authority or (has_timestamp and has_certificate_id):
        return []

    return [
        ValidationFinding(
            severity=Severity.ERROR,
            code="PROVENANCE_MISSING",
            field="document",
            message=PROVENANCE_REASON,
            details={
                "signature": has_signature,
                "authority": has_authority,
                "timestamp": has_timestamp,
                "certificate_id": has_certificate_id,
            },
        )
    ]


def certificate_object(doc: Mapping[str, Any]) -> Any:
    """The certificate-like sub-object, or None when the document has none.

    ``CertificateData`` usually wraps the real certificate under a
    ``certificate`` key; when it does, that inner object is the one checked.
    """
    cert_data = doc.get("CertificateData")
    if cert_data:
        if isinstance(cert_data, Mapping) and cert_data.get("certificate"):
            return cert_data["certificate"]
        return cert_data
    return doc.get("certificate") or None


def check_certificate_structure(doc: Mapping[str, Any]) -> list[ValidationFinding]:
    cert = certificate_object(doc)
    if cert is None:
        return []

    valid = (
        isinstance(cert, Mapping)
        and bool(cert.get("uid") or cert.get("UID"))
        and bool(cert.get("name") or cert.get("Name"))
    )
    if valid:
        return []

    return [
        ValidationFinding(
            severity=Severity.ERROR,
            code="CERTIFICATE_INVALID",
            field="certificate",
            message=CERTIFICATE_REASON,
            details={"is_object": isinstance(cert, Mapping)},
        )
    ]


# ─── Advisory Checks (WARNING only) ──────────────────────────────────


def check_suspicious_modifications(
    raw_text: str, policy: ExtractionPolicy
) -> list[ValidationFinding]:
    """Flag markers typical of a hand-edited export."""
    matched = [
        p for p in policy.suspicious_patterns if re.search(p, raw_text, re.IGNORECASE)
    ]
    if not matched:
        return []
    return [
        ValidationFinding(
            severity=Severity.WARNING,
            code="SUSPICIOUS_EDIT_MARKERS",
            field="document",
            message=(
                "Document text contains markers that are unusual in a DigiLocker "
                "export and may indicate manual editing."
            ),
            details={"patterns": matched},
        )
    ]


def check_type_consistency(
    doc: Mapping[str, Any], policy: ExtractionPolicy
) -> list[ValidationFinding]:
    """Identity-like keys in DigiLocker exports always carry strings."""
    offending = [
        key
        for key, value, _ in _walk(doc, policy.advisory_depth)
        if any(k in str(key).lower() for k in policy.identity_keys)
        and value is not None
        and not isinstance(value, str)
        and not isinstance(value, (Mapping, list))
    ]
    if len(offending) <= policy.max_type_inconsistencies:
        return []
    return [
        ValidationFinding(
            severity=Severity.WARNING,
            code="TYPE_INCONSISTENCY",
            field="document",
            message=(
                f"{len(offending)} identity fields carry non-string values; "
                f"DigiLocker exports encode them as strings."
            ),
            details={"count": len(offending)},
        )
    ]


def check_timestamps(
    doc: Mapping[str, Any],
    policy: ExtractionPolicy,
    now: datetime | None = None,
) -> list[ValidationFinding]:
    """Flag timestamps in the future or older than the configured age."""
    now = now or datetime.now(timezone.utc)
    oldest = now - timedelta(days=policy.max_timestamp_age_days)

    future = 0
    stale = 0
    for ts in _find_timestamps(doc, policy):
        if ts > now:
            future += 1
        elif ts < oldest:
            stale += 1
    if not future and not stale:
        return []
    return [
        ValidationFinding(
            severity=Severity.WARNING,
            code="TIMESTAMP_OUT_OF_RANGE",
            field="document",
            message=(
                f"{future + stale} timestamp(s) lie in the future or more than "
                f"{policy.max_timestamp_age_days} days in the past."
            ),
            details={"future": future, "stale": stale},
        )
    ]


def _find_timestamps(
    doc: Mapping[str, Any], policy: ExtractionPolicy
) -> Iterator[datetime]:
    for _, value, _ in _walk(doc, policy.advisory_depth):
        if not isinstance(value, str):
            continue
        if re.search(policy.timestamp_pattern, value):
            try:
                ts = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
            except ValueError:
                continue
            yield ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
        elif _UNIX_TIMESTAMP.match(value):
            seconds = int(value)
            if seconds > 9_999_999_999:  # milliseconds
                seconds //= 1000
            try:
                yield datetime.fromtimestamp(seconds, tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                continue


def _walk(node: Any, max_depth: int, depth: int = 0) -> Iterator[tuple[Any, Any, int]]:
    """Yield (key, value, depth) for every entry down to ``max_depth``."""
    if depth > max_depth:
        return
    if isinstance(node, Mapping):
        items: Any = node.items()
    elif isinstance(node, list):
        items = enumerate(node)
    else:
        return
    for key, value in items:
        yield key, value, depth
        if isinstance(value, (Mapping, list)):
            yield from _walk(value, max_depth, depth + 1)


# ─── Extracted-Value Gate ────────────────────────────────────────────


def collect_extracted_findings(
    attrs: IdentityAttributes,
    policy: ExtractionPolicy = DEFAULT_EXTRACTION_POLICY,
) -> list[ValidationFinding]:
    """Check extracted values independently of how they were found."""
    findings: list[ValidationFinding] = []

    name = attrs.full_name
    if not re.match(policy.name_pattern, name):
        findings.append(
            ValidationFinding(
                severity=Severity.ERROR,
                code="NAME_CHARACTERS_INVALID",
                field="full_name",
                message="Name contains characters outside letters, spaces and common punctuation.",
            )
        )
    if not policy.name_min_length <= len(name) <= policy.name_max_length:
        findings.append(
            ValidationFinding(
                severity=Severity.ERROR,
                code="NAME_LENGTH_INVALID",
                field="full_name",
                message=(
                    f"Name length {len(name)} is outside "
                    f"[{policy.name_min_length}, {policy.name_max_length}]."
                ),
                details={"length": len(name)},
            )
        )

    number = re.sub(r"\s", "", attrs.identity_number)
    if not is_acceptable_identity_number(number.lower(), policy.id_number_mode):
        findings.append(
            ValidationFinding(
                severity=Severity.ERROR,
                code="IDENTITY_NUMBER_INVALID",
                field="identity_number",
                message=(
                    f"Aadhaar number format is invalid for "
                    f"{policy.id_number_mode.value} mode."
                ),
                details={"length": len(number)},
            )
        )

    if attrs.birth_date and not any(
        re.match(p, attrs.birth_date) for p in policy.birth_date_patterns
    ):
        findings.append(
            ValidationFinding(
                severity=Severity.ERROR,
                code="BIRTH_DATE_FORMAT_INVALID",
                field="birth_date",
                message=(
                    "Date of birth must be DD/MM/YYYY, YYYY-MM-DD or DD-MM-YYYY."
                ),
            )
        )

    if attrs.gender and attrs.gender.lower() not in policy.allowed_genders:
        findings.append(
            ValidationFinding(
                severity=Severity.ERROR,
                code="GENDER_INVALID",
                field="gender",
                message="Gender value is not recognized.",
            )
        )

    for finding in findings:
        logger.warning("Extracted value rejected: %s", finding.code)
    return findings


def validate_extracted(
    attrs: IdentityAttributes,
    policy: ExtractionPolicy = DEFAULT_EXTRACTION_POLICY,
) -> bool:
    """True when every extracted value passes the post-extraction gate."""
    return not collect_extracted_findings(attrs, policy)
