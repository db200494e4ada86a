"""
Runtime configuration and heuristic policy.

Every threshold, signature substring and pattern the extraction engine
relies on lives in ``ExtractionPolicy``; the attempt-throttling knobs live in
``RecoveryPolicy``. Both are frozen and injected, so tests (or another
deployment) can substitute an alternate policy without touching the
algorithms. ``Settings`` gathers the environment-driven service wiring.
"""

from __future__ import annotations

import os
from enum import Enum

from pydantic import BaseModel, Field, ValidationInfo, field_validator


class IdNumberMode(str, Enum):
    """Which identity numbers the engine accepts.

    STRICT only accepts full 12-digit numbers. MASKED also accepts the
    partially masked numbers DigiLocker issues (e.g. ``xxxxxxxx0511``):
    8 to 12 characters, an optional leading ``x`` mask followed by at least
    four digits. A policy carries exactly one mode.
    """

    STRICT = "strict"
    MASKED = "masked"


class ExtractionPolicy(BaseModel):
    """Heuristic policy for document gating, extraction and validation."""

    # ------------------------------------------------------------------
    # Input bounds
    # ------------------------------------------------------------------

    min_document_bytes: int = Field(100, description="Smallest plausible export")
    max_document_bytes: int = Field(100 * 1024, description="Largest plausible export")
    allowed_extensions: tuple[str, ...] = (".json",)

    # ------------------------------------------------------------------
    # Structure and provenance
    # ------------------------------------------------------------------

    required_root_fields: tuple[str, ...] = (
        "KycRes",
        "UidData",
        "certificate",
        "CertificateData",
    )
    signature_patterns: tuple[str, ...] = (
        "ds:Signature",
        "DigiSign",
        "UIDAI_SIGN",
        "xmldsig",
    )
    authority_names: tuple[str, ...] = (
        "AADHAAR",
        "AADHAR",
        "UIDAI",
        "UNIQUE IDENTIFICATION AUTHORITY OF INDIA",
    )
    timestamp_pattern: str = r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}"
    certificate_id_pattern: str = r"[A-Z0-9\-]{10,}"

    # ------------------------------------------------------------------
    # Advisory tamper heuristics (findings only, never rejecting)
    # ------------------------------------------------------------------

    suspicious_patterns: tuple[str, ...] = (
        r"\b(?:TODO|FIXME)\b",
        r"\b(?:test|fake|dummy|sample)\b",
    )
    identity_keys: tuple[str, ...] = ("name", "uid", "dob", "gender")
    max_type_inconsistencies: int = 2
    max_timestamp_age_days: int = 365
    advisory_depth: int = 10

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    id_number_mode: IdNumberMode = IdNumberMode.MASKED
    search_depth: int = Field(5, ge=0, description="Generic search depth bound")

    # ------------------------------------------------------------------
    # Extracted-value gate
    # ------------------------------------------------------------------

    name_pattern: str = r"^[A-Za-z\s.\-']+$"
    name_min_length: int = 2
    name_max_length: int = 100
    birth_date_patterns: tuple[str, ...] = (
        r"^\d{2}/\d{2}/\d{4}$",  # DD/MM/YYYY
        r"^\d{4}-\d{2}-\d{2}$",  # YYYY-MM-DD
        r"^\d{2}-\d{2}-\d{4}$",  # DD-MM-YYYY
    )
    allowed_genders: frozenset[str] = frozenset(
        {"male", "female", "others", "m", "f", "o"}
    )

    @field_validator("max_document_bytes")
    @classmethod
    def bounds_are_ordered(cls, v: int, info: ValidationInfo) -> int:
        low = info.data.get("min_document_bytes", 0)
        if v <= low:
            raise ValueError(
                f"max_document_bytes ({v}) must exceed min_document_bytes ({low})"
            )
        return v

    model_config = {"frozen": True}


class RecoveryPolicy(BaseModel):
    """Attempt throttling for the recovery verifier."""

    max_attempts: int = Field(5, ge=1)
    window_hours: float = Field(24.0, gt=0)

    model_config = {"frozen": True}


DEFAULT_EXTRACTION_POLICY = ExtractionPolicy()
DEFAULT_RECOVERY_POLICY = RecoveryPolicy()


class Settings(BaseModel):
    """Environment-driven service settings, parsed once at startup."""

    encryption_key: str = Field(
        "",
        description="Base64 AES-256 key for escrowed fields",
    )
    database_url: str = Field(
        "",
        description="SQLAlchemy URL; empty keeps records in memory",
    )
    resend_api_key: str = ""
    resend_from: str = "Password Manager <noreply@resend.dev>"
    dev_mode: bool = False
    log_level: str = "INFO"
    id_number_mode: IdNumberMode = IdNumberMode.MASKED

    @field_validator("log_level")
    @classmethod
    def known_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(
                f"Unsupported log level '{v}'. Allowed values: {sorted(allowed)}"
            )
        return v.upper()

    def extraction_policy(self) -> ExtractionPolicy:
        return ExtractionPolicy(id_number_mode=self.id_number_mode)

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from environment variables."""

        def env_bool(name: str, default: bool) -> bool:
            raw = os.getenv(name)
            if raw is None:
                return default
            return raw.lower() in {"1", "true", "yes", "on"}

        return cls(
            encryption_key=os.getenv("AADHAAR_RECOVERY_ENCRYPTION_KEY", ""),
            database_url=os.getenv("AADHAAR_RECOVERY_DATABASE_URL", ""),
            resend_api_key=os.getenv("RESEND_API_KEY", ""),
            resend_from=os.getenv(
                "RESEND_FROM", "Password Manager <noreply@resend.dev>"
            ),
            dev_mode=env_bool("AADHAAR_RECOVERY_DEV_MODE", False),
            log_level=os.getenv("AADHAAR_RECOVERY_LOG_LEVEL", "INFO"),
            id_number_mode=IdNumberMode(
                os.getenv("AADHAAR_RECOVERY_ID_MODE", IdNumberMode.MASKED.value)
            ),
        )

    model_config = {"frozen": True}
