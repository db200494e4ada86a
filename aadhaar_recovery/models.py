"""
Pydantic models for identity attributes, escrow records and reports.

The raw DigiLocker document is never modelled: it is untrusted and has no
fixed schema, so it stays a plain ``dict`` until the extractor has pulled
typed values out of it. Everything after that point is a typed model.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


# ─── Severity Levels ────────────────────────────────────────────────


class Severity(str, Enum):
    """Severity of a validation finding."""

    ERROR = "ERROR"  # Rejects the document or the extracted values
    WARNING = "WARNING"  # Advisory only, attached to the report


# ─── Validation Finding ─────────────────────────────────────────────


class ValidationFinding(BaseModel):
    """A single validation finding with severity, machine-readable code, and details."""

    severity: Severity
    code: str  # Machine-readable, e.g. "SHAPE_UNRECOGNIZED"
    field: str  # Which attribute or document area this relates to
    message: str  # Human-readable explanation
    details: dict = Field(default_factory=dict)


# ─── Identity Attributes ────────────────────────────────────────────


class IdentityAttributes(BaseModel):
    """The extracted, normalized knowledge-factor credential."""

    full_name: str
    identity_number: str
    birth_date: Optional[str] = None
    gender: Optional[str] = None

    def masked_number(self) -> str:
        """Identity number with everything but the last four characters hidden."""
        return f"****{self.identity_number[-4:]}"


class StructureVerdict(BaseModel):
    """Result of the structural plausibility check on a raw document."""

    accepted: bool
    reason: Optional[str] = None
    findings: list[ValidationFinding] = Field(default_factory=list)


class ExtractionReport(BaseModel):
    """The final output of the extraction pipeline."""

    is_valid: bool
    attributes: Optional[IdentityAttributes] = None
    error_code: Optional[str] = None
    message: Optional[str] = None
    findings: list[ValidationFinding] = Field(default_factory=list)
    original_hash: str = ""  # SHA-256 of the uploaded bytes for audit trail


# ─── Escrow ─────────────────────────────────────────────────────────


class EscrowedRecord(BaseModel):
    """An escrowed recovery record as held by the record store.

    Every ``encrypted_*`` value is an opaque token produced by FieldCipher.
    """

    id: str
    address: str
    encrypted_name: str
    encrypted_identity_number: str
    encrypted_birth_date: Optional[str] = None
    encrypted_gender: Optional[str] = None
    encrypted_secret: str
    attempt_count: int = Field(default=0, ge=0)
    last_attempt_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class EscrowResult(BaseModel):
    """Confirmation returned by escrow registration."""

    created: bool  # False when an existing record was updated in place
    message: str


class AttemptDecision(BaseModel):
    """Outcome of the atomic attempt registration at the store boundary."""

    allowed: bool
    attempt_count: int
    last_attempt_at: Optional[datetime] = None


# ─── Verification ───────────────────────────────────────────────────


class VerificationOutcome(str, Enum):
    """Decision of the recovery verifier."""

    MATCHED = "MATCHED"
    MISMATCHED = "MISMATCHED"
    RATE_LIMITED = "RATE_LIMITED"
    NOT_FOUND = "NOT_FOUND"


class VerificationResult(BaseModel):
    """What a recovery attempt produced, ready to render to the submitter."""

    outcome: Optional[VerificationOutcome] = None  # None: store failed before a decision
    success: bool
    error_code: Optional[str] = None
    message: str
    email_sent: bool = False
