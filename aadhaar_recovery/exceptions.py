"""
Custom exception hierarchy for document extraction and key recovery.

Each exception type maps to one error kind with a stable, machine-readable
code. The pipeline and the recovery service convert these into typed
reports; the HTTP layer turns the code into a status and an error body.
"""

from __future__ import annotations


class RecoveryError(Exception):
    """Base exception for all extraction and recovery failures."""

    def __init__(self, code: str, message: str, details: dict | None = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)


# ─── Extraction side ────────────────────────────────────────────────


class MalformedInputError(RecoveryError):
    """Unparsable bytes, wrong declared type, or size out of bounds."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("MALFORMED_INPUT", message, details)


class StructuralRejectionError(RecoveryError):
    """The document shape or provenance does not look like a DigiLocker export."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("STRUCTURAL_REJECTION", message, details)


class ExtractionError(RecoveryError):
    """Name and identity number could not both be extracted."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("EXTRACTION_FAILED", message, details)


class AttributeRejectionError(RecoveryError):
    """Extracted values failed the post-extraction gate."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("ATTRIBUTE_REJECTION", message, details)


# ─── Recovery side ──────────────────────────────────────────────────


class RecordNotFoundError(RecoveryError):
    """No escrowed record exists for the address."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("NOT_FOUND", message, details)


class RateLimitedError(RecoveryError):
    """Too many recovery attempts inside the attempt window."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("RATE_LIMITED", message, details)


class IdentityMismatchError(RecoveryError):
    """Submitted attributes do not match the escrowed record."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("MISMATCH", message, details)


class DeliveryError(RecoveryError):
    """Identity was confirmed but the secret could not be delivered."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("DELIVERY_FAILURE", message, details)


class StoreError(RecoveryError):
    """The record store is unavailable or returned an error."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("STORE_FAILURE", message, details)


class CipherError(RecoveryError):
    """An escrowed field could not be encrypted or authenticated on decrypt."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("CIPHER_FAILURE", message, details)
