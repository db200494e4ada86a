"""
Key escrow and the recovery verification protocol.

Escrow: the user's identity attributes and their vault decryption key are
sealed and stored under the user's address.

Recovery: freshly extracted attributes are compared against the escrowed
ones. The check is a knowledge factor, so guessing is throttled: at most
``max_attempts`` attempts inside a sliding ``window_hours`` window, with the
counter reset once the window has passed.

State machine (per address, state lives in the escrowed record):

    no record ───────────────────────────────► NOT_FOUND   (nothing mutated)
    record, window open and count >= limit ──► RATE_LIMITED (nothing mutated)
    otherwise: count reset-or-incremented, last attempt = now, then
        all fields match ────────────────────► MATCHED → deliver secret
        any field differs ───────────────────► MISMATCHED
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from .config import DEFAULT_RECOVERY_POLICY, IdNumberMode, RecoveryPolicy
from .crypto import FieldCipher
from .delivery import RECOVERY_SUBJECT, DeliveryChannel, render_recovery_email
from .exceptions import (
    DeliveryError,
    IdentityMismatchError,
    MalformedInputError,
    RateLimitedError,
    RecordNotFoundError,
    RecoveryError,
)
from .models import (
    EscrowedRecord,
    EscrowResult,
    IdentityAttributes,
    VerificationOutcome,
    VerificationResult,
)
from .normalize import normalize_gender, normalize_identity_number, normalize_name
from .store import RecordStore

logger = logging.getLogger(__name__)

# Errors that still carry a verifier decision; anything else (store, cipher,
# malformed input) fails before one is reached.
_OUTCOME_BY_CODE: dict[str, VerificationOutcome] = {
    "NOT_FOUND": VerificationOutcome.NOT_FOUND,
    "RATE_LIMITED": VerificationOutcome.RATE_LIMITED,
    "MISMATCH": VerificationOutcome.MISMATCHED,
    "DELIVERY_FAILURE": VerificationOutcome.MATCHED,
}

MSG_NOT_FOUND = "No recovery data found for this email address"
MSG_RATE_LIMITED = "Recovery attempt limit exceeded. Please try again later."
MSG_MISMATCH = (
    "Identity verification failed. The provided details do not match our records."
)
MSG_DELIVERY_FAILED = (
    "Identity verified but failed to send recovery email. Please try again."
)
MSG_MATCHED = (
    "Identity verified successfully. Recovery key has been sent to your email address."
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def attributes_match(stored: IdentityAttributes, submitted: IdentityAttributes) -> bool:
    """Field-by-field comparison of two normalized attribute sets.

    Name is compared case-insensitively and the identity number exactly.
    Birth date and gender only count when both sides carry them.
    """
    name_match = stored.full_name.casefold() == submitted.full_name.casefold()
    number_match = stored.identity_number == submitted.identity_number
    dob_match = (
        not stored.birth_date
        or not submitted.birth_date
        or stored.birth_date == submitted.birth_date
    )
    gender_match = (
        not stored.gender
        or not submitted.gender
        or stored.gender.casefold() == submitted.gender.casefold()
    )
    return name_match and number_match and dob_match and gender_match


class RecoveryService:
    """Escrow registration and recovery verification.

    Usage:
        service = RecoveryService(store, channel, cipher)
        service.store_recovery("jane@example.com", attrs, decryption_key)
        result = service.verify("jane@example.com", attrs)
        if result.outcome is VerificationOutcome.MATCHED and result.email_sent:
            ...
    """

    def __init__(
        self,
        store: RecordStore,
        channel: DeliveryChannel,
        cipher: FieldCipher,
        policy: RecoveryPolicy = DEFAULT_RECOVERY_POLICY,
        id_number_mode: IdNumberMode = IdNumberMode.MASKED,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.channel = channel
        self.cipher = cipher
        self.policy = policy
        self.id_number_mode = id_number_mode
        self._clock = clock

    # ─── Escrow ─────────────────────────────────────────────────────

    def store_recovery(
        self, address: str, attrs: IdentityAttributes, secret: Any
    ) -> EscrowResult:
        """Seal and store attributes + secret, inserting or updating in place.

        Raises:
            MalformedInputError: address, name, number or secret missing.
            StoreError: the record store failed.
            CipherError: a field could not be sealed.
        """
        address = self._normalize_address(address)
        if secret is None:
            raise MalformedInputError("Missing required fields", {"missing": ["secret"]})
        normalized = self._normalize(attrs)
        now = self._clock()

        sealed = {
            "encrypted_name": self.cipher.encrypt(normalized.full_name, address),
            "encrypted_identity_number": self.cipher.encrypt(
                normalized.identity_number, address
            ),
            "encrypted_birth_date": self.cipher.encrypt_optional(
                normalized.birth_date, address
            ),
            "encrypted_gender": self.cipher.encrypt_optional(normalized.gender, address),
            "encrypted_secret": self.cipher.encrypt(json.dumps(secret), address),
        }

        existing = self.store.find_by_address(address)
        if existing is not None:
            self.store.update(existing.id, {**sealed, "updated_at": now})
            logger.info("Recovery data updated for %s", address)
            return EscrowResult(created=False, message="Recovery data updated successfully")

        self.store.insert(
            EscrowedRecord(
                id=str(uuid.uuid4()),
                address=address,
                created_at=now,
                updated_at=now,
                **sealed,
            )
        )
        logger.info("Recovery data stored for %s", address)
        return EscrowResult(created=True, message="Recovery data stored successfully")

    # ─── Verification ───────────────────────────────────────────────

    def verify(self, address: str, submitted: IdentityAttributes) -> VerificationResult:
        """Run one recovery attempt. Never raises: failures become results."""
        try:
            self._verify(address, submitted)
        except RecoveryError as exc:
            outcome = _OUTCOME_BY_CODE.get(exc.code)
            if outcome is None:
                logger.error("Recovery attempt failed [%s]: %s", exc.code, exc.message)
            return VerificationResult(
                outcome=outcome,
                success=False,
                error_code=exc.code,
                message=exc.message,
            )

        return VerificationResult(
            outcome=VerificationOutcome.MATCHED,
            success=True,
            message=MSG_MATCHED,
            email_sent=True,
        )

    def _verify(self, address: str, submitted: IdentityAttributes) -> None:
        address = self._normalize_address(address)
        candidate = self._normalize(submitted)

        record = self.store.find_by_address(address)
        if record is None:
            logger.info("No recovery record for %s", address)
            raise RecordNotFoundError(MSG_NOT_FOUND)

        decision = self.store.register_attempt(
            record.id,
            self._clock(),
            timedelta(hours=self.policy.window_hours),
            self.policy.max_attempts,
        )
        if not decision.allowed:
            logger.warning("Recovery rate limited for %s", address)
            raise RateLimitedError(
                MSG_RATE_LIMITED, {"attempt_count": decision.attempt_count}
            )

        stored = self._open(record)
        if not attributes_match(stored, candidate):
            logger.warning(
                "Recovery mismatch for %s (attempt %d)", address, decision.attempt_count
            )
            raise IdentityMismatchError(
                MSG_MISMATCH, {"attempt_count": decision.attempt_count}
            )

        secret = json.loads(self.cipher.decrypt(record.encrypted_secret, address))
        body = render_recovery_email(stored.full_name, secret)
        try:
            sent = self.channel.deliver(address, RECOVERY_SUBJECT, body)
        except DeliveryError as exc:
            logger.error("Delivery channel error: %s", exc.message)
            sent = False
        if not sent:
            raise DeliveryError(MSG_DELIVERY_FAILED)

        logger.info("Aadhaar verification successful for %s", address)

    # ─── Helpers ────────────────────────────────────────────────────

    @staticmethod
    def _normalize_address(address: str) -> str:
        normalized = (address or "").strip().lower()
        if not normalized:
            raise MalformedInputError("Missing required fields", {"missing": ["address"]})
        return normalized

    def _normalize(self, attrs: IdentityAttributes) -> IdentityAttributes:
        name = normalize_name(attrs.full_name)
        number = normalize_identity_number(attrs.identity_number, self.id_number_mode)
        if not name or not number:
            raise MalformedInputError(
                "Missing required fields",
                {"missing": [f for f, v in (("name", name), ("aadhaar_number", number)) if not v]},
            )
        return IdentityAttributes(
            full_name=name,
            identity_number=number,
            birth_date=(attrs.birth_date or "").strip() or None,
            gender=normalize_gender(attrs.gender) if attrs.gender else None,
        )

    def _open(self, record: EscrowedRecord) -> IdentityAttributes:
        address = record.address
        return IdentityAttributes(
            full_name=self.cipher.decrypt(record.encrypted_name, address),
            identity_number=self.cipher.decrypt(record.encrypted_identity_number, address),
            birth_date=self.cipher.decrypt_optional(record.encrypted_birth_date, address),
            gender=self.cipher.decrypt_optional(record.encrypted_gender, address),
        )
