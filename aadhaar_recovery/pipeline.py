"""
Extraction pipeline — orchestrates the full document workflow.

Flow:
  ┌───────────┐
  │ Raw bytes │
  └─────┬─────┘
        │
  ┌─────▼─────┐
  │  Gating   │   ← file type, size bounds, UTF-8, JSON object root
  └─────┬─────┘
        │
  ┌─────▼─────┐
  │ Structure │   ← shape, provenance, certificate; advisory tamper findings
  └─────┬─────┘
        │
  ┌─────▼─────┐
  │  Extract  │   ← known shapes, then depth-bounded generic search
  └─────┬─────┘
        │
  ┌─────▼─────┐
  │   Gate    │   ← extracted values re-validated independently
  └─────┬─────┘
        │
  ┌─────▼─────┐
  │  Report   │   ← attributes or a typed error + findings
  └───────────┘

Design principles:
  - Every failure is recovered here into an ExtractionReport with a stable
    error code and the human-readable reason; nothing escapes ``run``.
  - Document content is never echoed into the report or the logs.
  - The original bytes are SHA-256 hashed for audit trail.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime
from typing import Any, Callable

from .config import DEFAULT_EXTRACTION_POLICY, ExtractionPolicy
from .exceptions import (
    AttributeRejectionError,
    MalformedInputError,
    RecoveryError,
    StructuralRejectionError,
)
from .extractor import extract
from .models import ExtractionReport, IdentityAttributes, ValidationFinding
from .validators import ATTRIBUTE_REASON, collect_extracted_findings, validate_structure

logger = logging.getLogger(__name__)


class ExtractionPipeline:
    """Orchestrates the DigiLocker export extraction workflow.

    Usage:
        pipeline = ExtractionPipeline()
        report = pipeline.run(content, filename="aadhaar.json")
        if not report.is_valid:
            print(report.error_code, report.message)
    """

    def __init__(
        self,
        policy: ExtractionPolicy = DEFAULT_EXTRACTION_POLICY,
        clock: Callable[[], datetime] | None = None,
    ):
        self.policy = policy
        self._clock = clock

    def run(self, content: bytes, filename: str | None = None) -> ExtractionReport:
        """Execute the full pipeline on an uploaded export.

        Args:
            content: The raw bytes claimed to be a DigiLocker JSON export.
            filename: Declared file name, checked against allowed extensions.

        Returns:
            ExtractionReport with attributes on success, error code otherwise.
        """
        # ── Step 0: Audit hash of original input ────────────────────
        doc_hash = hashlib.sha256(content).hexdigest()
        findings: list[ValidationFinding] = []

        try:
            attrs = self._run(content, filename, findings)
        except RecoveryError as exc:
            logger.warning("Extraction rejected [%s]: %s", exc.code, exc.message)
            return ExtractionReport(
                is_valid=False,
                error_code=exc.code,
                message=exc.message,
                findings=findings,
                original_hash=doc_hash,
            )

        return ExtractionReport(
            is_valid=True,
            attributes=attrs,
            findings=findings,
            original_hash=doc_hash,
        )

    def _run(
        self,
        content: bytes,
        filename: str | None,
        findings: list[ValidationFinding],
    ) -> IdentityAttributes:
        # ── Step 1: Gate the raw input ──────────────────────────────
        doc, raw_text = self.parse(content, filename)

        # ── Step 2: Structural plausibility ─────────────────────────
        logger.info("Performing DigiLocker integrity validation...")
        now = self._clock() if self._clock else None
        verdict = validate_structure(doc, raw_text, self.policy, now=now)
        findings.extend(verdict.findings)
        if not verdict.accepted:
            raise StructuralRejectionError(
                f"Security validation failed: {verdict.reason}"
            )

        # ── Step 3: Extract ─────────────────────────────────────────
        attrs = extract(doc, self.policy)

        # ── Step 4: Independent gate on the extracted values ────────
        gate = collect_extracted_findings(attrs, self.policy)
        findings.extend(gate)
        if gate:
            raise AttributeRejectionError(ATTRIBUTE_REASON)

        logger.info("Successfully extracted and validated Aadhaar details")
        return attrs

    # ─── Input Gating ───────────────────────────────────────────────

    def parse(
        self, content: bytes, filename: str | None = None
    ) -> tuple[dict[str, Any], str]:
        """Check type and size bounds, then decode and parse the JSON.

        Raises:
            MalformedInputError: on any gating failure.
        """
        policy = self.policy

        if filename is not None and not filename.lower().endswith(
            policy.allowed_extensions
        ):
            raise MalformedInputError(
                "Please upload a JSON file downloaded from DigiLocker.",
                details={"reason": "extension"},
            )

        size = len(content)
        if size > policy.max_document_bytes:
            raise MalformedInputError(
                "File too large. DigiLocker Aadhaar JSON files are typically much smaller.",
                details={"reason": "too_large", "size": size},
            )
        if size < policy.min_document_bytes:
            raise MalformedInputError(
                "File too small. This does not appear to be a valid DigiLocker JSON.",
                details={"reason": "too_small", "size": size},
            )

        try:
            raw_text = content.decode("utf-8-sig")
            doc = json.loads(raw_text)
        except (UnicodeDecodeError, ValueError, RecursionError):
            raise MalformedInputError(
                "Invalid JSON file. Please ensure you downloaded the correct "
                "Aadhaar JSON from DigiLocker.",
                details={"reason": "parse"},
            )

        if not isinstance(doc, dict):
            raise MalformedInputError(
                "Invalid JSON file. Please ensure you downloaded the correct "
                "Aadhaar JSON from DigiLocker.",
                details={"reason": "root_not_object"},
            )

        return doc, raw_text
