"""
Tests for key escrow, attribute matching and attempt throttling.

Uses the in-memory store, the logging delivery channel and a fake clock, so
every scenario is deterministic.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from aadhaar_recovery.config import RecoveryPolicy
from aadhaar_recovery.delivery import RECOVERY_SUBJECT, LoggingDeliveryChannel
from aadhaar_recovery.exceptions import DeliveryError, MalformedInputError, StoreError
from aadhaar_recovery.models import IdentityAttributes, VerificationOutcome
from aadhaar_recovery.recovery import (
    MSG_DELIVERY_FAILED,
    MSG_MISMATCH,
    MSG_NOT_FOUND,
    MSG_RATE_LIMITED,
    RecoveryService,
    attributes_match,
)
from aadhaar_recovery.store import InMemoryRecordStore, SqlRecordStore, decide_attempt

ADDRESS = "jane@example.com"
SECRET = {"vault": "k3y-material", "version": 2}


def _attrs(**overrides) -> IdentityAttributes:
    kwargs = {
        "full_name": "Jane Doe",
        "identity_number": "1234 5678 9012",
        "birth_date": "01/01/1990",
        "gender": "F",
    }
    kwargs.update(overrides)
    return IdentityAttributes(**kwargs)


class FailingChannel:
    def deliver(self, address: str, subject: str, body: str) -> bool:
        return False


class RaisingChannel:
    def deliver(self, address: str, subject: str, body: str) -> bool:
        raise DeliveryError("provider unreachable")


class BrokenStore(InMemoryRecordStore):
    def find_by_address(self, address):
        raise StoreError("Database error")


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def channel() -> LoggingDeliveryChannel:
    return LoggingDeliveryChannel()


@pytest.fixture
def service(store, channel, cipher, clock) -> RecoveryService:
    return RecoveryService(store, channel, cipher, clock=clock)


@pytest.fixture
def escrowed(service) -> RecoveryService:
    service.store_recovery(ADDRESS, _attrs(), SECRET)
    return service


# ═══════════════════════════════════════════════════════════════════════
# ESCROW
# ═══════════════════════════════════════════════════════════════════════


class TestStoreRecovery:
    def test_first_store_creates(self, service, store):
        result = service.store_recovery(ADDRESS, _attrs(), SECRET)
        assert result.created is True
        assert result.message == "Recovery data stored successfully"
        assert len(store) == 1

    def test_second_store_updates_in_place(self, service, store, clock):
        service.store_recovery(ADDRESS, _attrs(), SECRET)
        clock.advance(days=3)
        result = service.store_recovery(ADDRESS, _attrs(full_name="Jane Q Doe"), {"vault": "new"})
        assert result.created is False
        assert result.message == "Recovery data updated successfully"
        assert len(store) == 1
        record = store.find_by_address(ADDRESS)
        assert record.updated_at - record.created_at == timedelta(days=3)

    def test_address_is_normalized(self, service, store):
        service.store_recovery("  Jane@Example.COM ", _attrs(), SECRET)
        assert store.find_by_address(ADDRESS) is not None

    def test_fields_are_sealed(self, service, store):
        service.store_recovery(ADDRESS, _attrs(), SECRET)
        record = store.find_by_address(ADDRESS)
        assert "JANE" not in record.encrypted_name
        assert "123456789012" not in record.encrypted_identity_number
        assert "k3y" not in record.encrypted_secret

    def test_optional_fields_stay_empty(self, service, store, cipher):
        service.store_recovery(ADDRESS, _attrs(birth_date=None, gender=None), SECRET)
        record = store.find_by_address(ADDRESS)
        assert record.encrypted_birth_date is None
        assert record.encrypted_gender is None
        assert cipher.decrypt(record.encrypted_name, ADDRESS) == "JANE DOE"

    def test_missing_secret(self, service):
        with pytest.raises(MalformedInputError):
            service.store_recovery(ADDRESS, _attrs(), None)

    def test_missing_address(self, service):
        with pytest.raises(MalformedInputError):
            service.store_recovery("   ", _attrs(), SECRET)

    def test_name_without_letters(self, service):
        with pytest.raises(MalformedInputError) as exc:
            service.store_recovery(ADDRESS, _attrs(full_name="..."), SECRET)
        assert exc.value.details["missing"] == ["name"]


# ═══════════════════════════════════════════════════════════════════════
# VERIFICATION
# ═══════════════════════════════════════════════════════════════════════


class TestVerify:
    def test_match_delivers_secret(self, escrowed, channel):
        result = escrowed.verify(ADDRESS, _attrs())
        assert result.outcome == VerificationOutcome.MATCHED
        assert result.success is True
        assert result.email_sent is True
        assert result.error_code is None

        address, subject, body = channel.sent[0]
        assert address == ADDRESS
        assert subject == RECOVERY_SUBJECT
        assert "k3y-material" in body
        assert "JANE DOE" in body

    def test_match_is_normalization_insensitive(self, escrowed):
        submitted = _attrs(full_name="  jane   DOE ", identity_number="123456789012", gender="female")
        assert escrowed.verify("JANE@example.com", submitted).success is True

    def test_optional_fields_missing_on_submission_still_match(self, escrowed):
        result = escrowed.verify(ADDRESS, _attrs(birth_date=None, gender=None))
        assert result.outcome == VerificationOutcome.MATCHED

    def test_unknown_address(self, service, store, channel):
        result = service.verify(ADDRESS, _attrs())
        assert result.outcome == VerificationOutcome.NOT_FOUND
        assert result.error_code == "NOT_FOUND"
        assert result.message == MSG_NOT_FOUND
        assert len(store) == 0
        assert channel.sent == []

    def test_name_mismatch(self, escrowed, channel):
        result = escrowed.verify(ADDRESS, _attrs(full_name="John Doe"))
        assert result.outcome == VerificationOutcome.MISMATCHED
        assert result.error_code == "MISMATCH"
        assert result.message == MSG_MISMATCH
        assert channel.sent == []

    def test_number_mismatch(self, escrowed):
        result = escrowed.verify(ADDRESS, _attrs(identity_number="123456789013"))
        assert result.outcome == VerificationOutcome.MISMATCHED

    def test_birth_date_mismatch(self, escrowed):
        result = escrowed.verify(ADDRESS, _attrs(birth_date="02/01/1990"))
        assert result.outcome == VerificationOutcome.MISMATCHED

    def test_gender_mismatch(self, escrowed):
        result = escrowed.verify(ADDRESS, _attrs(gender="M"))
        assert result.outcome == VerificationOutcome.MISMATCHED

    def test_missing_address(self, escrowed):
        result = escrowed.verify("", _attrs())
        assert result.outcome is None
        assert result.error_code == "MALFORMED_INPUT"


# ═══════════════════════════════════════════════════════════════════════
# ATTEMPT THROTTLING
# ═══════════════════════════════════════════════════════════════════════


class TestThrottling:
    def test_correct_details_refused_after_five_mismatches(self, escrowed, store, channel):
        for _ in range(5):
            assert escrowed.verify(ADDRESS, _attrs(full_name="Wrong Name")).outcome == (
                VerificationOutcome.MISMATCHED
            )
        result = escrowed.verify(ADDRESS, _attrs())
        assert result.outcome == VerificationOutcome.RATE_LIMITED
        assert result.error_code == "RATE_LIMITED"
        assert result.message == MSG_RATE_LIMITED
        assert channel.sent == []
        assert store.find_by_address(ADDRESS).attempt_count == 5

    def test_window_resets_after_24_hours(self, escrowed, store, clock):
        for _ in range(5):
            escrowed.verify(ADDRESS, _attrs(full_name="Wrong Name"))

        clock.advance(hours=23, minutes=59)
        assert escrowed.verify(ADDRESS, _attrs()).outcome == VerificationOutcome.RATE_LIMITED

        clock.advance(minutes=1)
        assert escrowed.verify(ADDRESS, _attrs()).outcome == VerificationOutcome.MATCHED
        assert store.find_by_address(ADDRESS).attempt_count == 1

    def test_refused_attempts_do_not_extend_the_window(self, escrowed, clock):
        for _ in range(5):
            escrowed.verify(ADDRESS, _attrs(full_name="Wrong Name"))
        clock.advance(hours=12)
        escrowed.verify(ADDRESS, _attrs())
        clock.advance(hours=12)
        assert escrowed.verify(ADDRESS, _attrs()).success is True

    def test_burst_never_exceeds_limit(self, escrowed, store, clock):
        outcomes = []
        for _ in range(30):
            outcomes.append(escrowed.verify(ADDRESS, _attrs(full_name="Wrong Name")).outcome)
            assert store.find_by_address(ADDRESS).attempt_count <= 5
            clock.advance(minutes=10)
        assert outcomes.count(VerificationOutcome.MISMATCHED) == 5
        assert outcomes.count(VerificationOutcome.RATE_LIMITED) == 25

    @pytest.mark.parametrize(
        "store_factory",
        [InMemoryRecordStore, lambda: SqlRecordStore("sqlite://")],
        ids=["memory", "sql"],
    )
    def test_daily_mismatches_for_a_month_stay_at_one(self, channel, cipher, clock, store_factory):
        store = store_factory()
        service = RecoveryService(store, channel, cipher, clock=clock)
        service.store_recovery(ADDRESS, _attrs(), SECRET)
        for _ in range(30):
            result = service.verify(ADDRESS, _attrs(full_name="Wrong Name"))
            assert result.outcome == VerificationOutcome.MISMATCHED
            assert store.find_by_address(ADDRESS).attempt_count == 1
            clock.advance(days=1)

    def test_successful_attempts_count_too(self, escrowed):
        for _ in range(5):
            assert escrowed.verify(ADDRESS, _attrs()).success is True
        assert escrowed.verify(ADDRESS, _attrs()).outcome == VerificationOutcome.RATE_LIMITED

    def test_custom_policy(self, store, channel, cipher, clock):
        policy = RecoveryPolicy(max_attempts=2, window_hours=1)
        service = RecoveryService(store, channel, cipher, policy=policy, clock=clock)
        service.store_recovery(ADDRESS, _attrs(), SECRET)
        service.verify(ADDRESS, _attrs(full_name="Wrong Name"))
        service.verify(ADDRESS, _attrs(full_name="Wrong Name"))
        assert service.verify(ADDRESS, _attrs()).outcome == VerificationOutcome.RATE_LIMITED
        clock.advance(hours=1)
        assert service.verify(ADDRESS, _attrs()).success is True


# ═══════════════════════════════════════════════════════════════════════
# FAILURE PATHS
# ═══════════════════════════════════════════════════════════════════════


class TestFailures:
    @pytest.mark.parametrize("channel_cls", [FailingChannel, RaisingChannel])
    def test_delivery_failure_after_match(self, store, cipher, clock, channel_cls):
        service = RecoveryService(store, channel_cls(), cipher, clock=clock)
        service.store_recovery(ADDRESS, _attrs(), SECRET)
        result = service.verify(ADDRESS, _attrs())
        assert result.outcome == VerificationOutcome.MATCHED
        assert result.success is False
        assert result.email_sent is False
        assert result.error_code == "DELIVERY_FAILURE"
        assert result.message == MSG_DELIVERY_FAILED

    def test_store_failure(self, channel, cipher, clock):
        service = RecoveryService(BrokenStore(), channel, cipher, clock=clock)
        result = service.verify(ADDRESS, _attrs())
        assert result.outcome is None
        assert result.error_code == "STORE_FAILURE"

    def test_token_from_another_record_fails_authentication(self, escrowed, store, cipher):
        record = store.find_by_address(ADDRESS)
        store.update(
            record.id, {"encrypted_name": cipher.encrypt("JANE DOE", "mallory@example.com")}
        )
        result = escrowed.verify(ADDRESS, _attrs())
        assert result.outcome is None
        assert result.error_code == "CIPHER_FAILURE"


# ═══════════════════════════════════════════════════════════════════════
# PURE HELPERS
# ═══════════════════════════════════════════════════════════════════════


class TestAttributesMatch:
    def test_name_is_case_insensitive(self):
        stored = IdentityAttributes(full_name="JANE DOE", identity_number="123456789012")
        submitted = IdentityAttributes(full_name="jane doe", identity_number="123456789012")
        assert attributes_match(stored, submitted) is True

    def test_stored_side_without_optional_fields(self):
        stored = IdentityAttributes(full_name="JANE DOE", identity_number="123456789012")
        submitted = IdentityAttributes(
            full_name="JANE DOE", identity_number="123456789012", birth_date="01/01/1990"
        )
        assert attributes_match(stored, submitted) is True

    def test_number_must_match_exactly(self):
        stored = IdentityAttributes(full_name="JANE DOE", identity_number="xxxxxxxx9012")
        submitted = IdentityAttributes(full_name="JANE DOE", identity_number="123456789012")
        assert attributes_match(stored, submitted) is False


class TestDecideAttempt:
    NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    WINDOW = timedelta(hours=24)

    def test_first_attempt(self):
        decision = decide_attempt(0, None, self.NOW, self.WINDOW, 5)
        assert decision.allowed is True
        assert decision.attempt_count == 1
        assert decision.last_attempt_at == self.NOW

    def test_increments_inside_window(self):
        decision = decide_attempt(2, self.NOW - timedelta(hours=1), self.NOW, self.WINDOW, 5)
        assert decision.attempt_count == 3

    def test_refuses_at_limit(self):
        last = self.NOW - timedelta(hours=1)
        decision = decide_attempt(5, last, self.NOW, self.WINDOW, 5)
        assert decision.allowed is False
        assert decision.attempt_count == 5
        assert decision.last_attempt_at == last

    def test_resets_once_window_elapsed(self):
        decision = decide_attempt(5, self.NOW - self.WINDOW, self.NOW, self.WINDOW, 5)
        assert decision.allowed is True
        assert decision.attempt_count == 1

    def test_stale_counter_without_timestamp_resets(self):
        decision = decide_attempt(9, None, self.NOW, self.WINDOW, 5)
        assert decision.allowed is True
        assert decision.attempt_count == 1
