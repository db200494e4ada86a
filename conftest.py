"""Pytest configuration — project root importable, shared fixtures."""

import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from aadhaar_recovery.crypto import FieldCipher, generate_key  # noqa: E402


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture(scope="session")
def cipher() -> FieldCipher:
    return FieldCipher(generate_key())


@pytest.fixture
def ekyc_doc() -> dict:
    """Primary DigiLocker e-KYC shape with provenance markers."""
    return {
        "KycRes": {
            "@ts": "2026-02-20T10:15:30+05:30",
            "@txn": "UKC:DIGILOCKER-7731-0042",
            "UidData": {
                "@uid": "1234 5678 9012",
                "Poi": {"@name": "jane doe", "@dob": "01/01/1990", "@gender": "F"},
            },
            "Signature": {"@xmlns": "http://www.w3.org/2000/09/xmldsig#"},
        }
    }


def as_upload(doc: dict) -> bytes:
    """Serialize a document the way DigiLocker exports look on disk."""
    return json.dumps(doc, indent=2).encode("utf-8")
