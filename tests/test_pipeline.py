"""
Tests for the extraction pipeline: gating, structural rejection, extraction
failure and the post-extraction gate, all recovered into an ExtractionReport.
"""

from __future__ import annotations

import hashlib
import json

import pytest

from aadhaar_recovery.config import ExtractionPolicy
from aadhaar_recovery.models import Severity
from aadhaar_recovery.pipeline import ExtractionPipeline
from aadhaar_recovery.validators import ATTRIBUTE_REASON, SHAPE_REASON
from conftest import as_upload

SIGNATURE = {"@xmlns": "http://www.w3.org/2000/09/xmldsig#"}


@pytest.fixture
def pipeline(clock) -> ExtractionPipeline:
    return ExtractionPipeline(clock=clock)


def _padded(doc: object, size: int = 200) -> bytes:
    return json.dumps(doc).encode("utf-8").ljust(size)


# ═══════════════════════════════════════════════════════════════════════
# HAPPY PATH
# ═══════════════════════════════════════════════════════════════════════


class TestAccepted:
    def test_reference_export(self, pipeline, ekyc_doc):
        content = as_upload(ekyc_doc)
        report = pipeline.run(content, filename="aadhaar.json")
        assert report.is_valid is True
        assert report.error_code is None
        assert report.attributes.full_name == "JANE DOE"
        assert report.attributes.identity_number == "123456789012"
        assert report.attributes.gender == "Female"
        assert report.original_hash == hashlib.sha256(content).hexdigest()

    def test_filename_is_optional(self, pipeline, ekyc_doc):
        assert pipeline.run(as_upload(ekyc_doc)).is_valid is True

    def test_extension_is_case_insensitive(self, pipeline, ekyc_doc):
        assert pipeline.run(as_upload(ekyc_doc), filename="AADHAAR.JSON").is_valid is True

    def test_byte_order_mark_is_tolerated(self, pipeline, ekyc_doc):
        content = b"\xef\xbb\xbf" + as_upload(ekyc_doc)
        assert pipeline.run(content, filename="aadhaar.json").is_valid is True

    def test_advisory_findings_travel_with_accepted_report(self, pipeline, ekyc_doc):
        ekyc_doc["KycRes"]["@ts"] = "2027-06-01T10:00:00+05:30"
        report = pipeline.run(as_upload(ekyc_doc), filename="aadhaar.json")
        assert report.is_valid is True
        warnings = [f for f in report.findings if f.severity == Severity.WARNING]
        assert [f.code for f in warnings] == ["TIMESTAMP_OUT_OF_RANGE"]

    def test_place_of_birth_does_not_reject_export(self, pipeline, ekyc_doc):
        del ekyc_doc["KycRes"]["UidData"]["Poi"]["@dob"]
        ekyc_doc["KycRes"]["UidData"]["Poa"] = {"@placeOfBirth": "Pune"}
        report = pipeline.run(as_upload(ekyc_doc), filename="aadhaar.json")
        assert report.is_valid is True
        assert report.attributes.birth_date is None

    def test_size_exactly_at_upper_bound(self, ekyc_doc):
        pipeline = ExtractionPipeline(policy=ExtractionPolicy(max_document_bytes=2000))
        content = as_upload(ekyc_doc).ljust(2000)
        assert pipeline.run(content, filename="aadhaar.json").is_valid is True


# ═══════════════════════════════════════════════════════════════════════
# INPUT GATING
# ═══════════════════════════════════════════════════════════════════════


class TestGating:
    def test_wrong_extension(self, pipeline, ekyc_doc):
        report = pipeline.run(as_upload(ekyc_doc), filename="aadhaar.xml")
        assert report.is_valid is False
        assert report.error_code == "MALFORMED_INPUT"
        assert report.message == "Please upload a JSON file downloaded from DigiLocker."

    def test_too_large(self, ekyc_doc):
        pipeline = ExtractionPipeline(policy=ExtractionPolicy(max_document_bytes=2000))
        report = pipeline.run(as_upload(ekyc_doc).ljust(2001), filename="aadhaar.json")
        assert report.error_code == "MALFORMED_INPUT"
        assert report.message.startswith("File too large.")

    def test_default_upper_bound(self, pipeline):
        report = pipeline.run(b" " * (100 * 1024 + 1), filename="aadhaar.json")
        assert report.message.startswith("File too large.")

    def test_too_small(self, pipeline):
        report = pipeline.run(b'{"KycRes": {}}', filename="aadhaar.json")
        assert report.error_code == "MALFORMED_INPUT"
        assert report.message.startswith("File too small.")

    def test_invalid_json(self, pipeline):
        report = pipeline.run(b"{" + b" " * 200, filename="aadhaar.json")
        assert report.error_code == "MALFORMED_INPUT"
        assert report.message.startswith("Invalid JSON file.")

    def test_invalid_utf8(self, pipeline):
        report = pipeline.run(b"\xff" * 200, filename="aadhaar.json")
        assert report.error_code == "MALFORMED_INPUT"

    def test_array_root(self, pipeline):
        report = pipeline.run(_padded([{"uid": "123456789012"}]), filename="aadhaar.json")
        assert report.error_code == "MALFORMED_INPUT"
        assert report.message.startswith("Invalid JSON file.")

    def test_hash_is_present_on_rejection(self, pipeline):
        content = b"\xff" * 200
        report = pipeline.run(content, filename="aadhaar.json")
        assert report.original_hash == hashlib.sha256(content).hexdigest()


# ═══════════════════════════════════════════════════════════════════════
# STRUCTURE, EXTRACTION, GATE
# ═══════════════════════════════════════════════════════════════════════


class TestRejections:
    def test_structural_rejection(self, pipeline):
        doc = {"profile": {"uid": "123456789012", "name": "Jane Doe"}, "issuer": "UIDAI"}
        report = pipeline.run(_padded(doc), filename="aadhaar.json")
        assert report.error_code == "STRUCTURAL_REJECTION"
        assert report.message == f"Security validation failed: {SHAPE_REASON}"
        assert report.attributes is None

    def test_extraction_failure(self, pipeline):
        doc = {"KycRes": {"UidData": {"photo": "base64"}, "Signature": SIGNATURE}}
        report = pipeline.run(_padded(doc), filename="aadhaar.json")
        assert report.error_code == "EXTRACTION_FAILED"

    def test_attribute_rejection_on_bad_name(self, pipeline, ekyc_doc):
        ekyc_doc["KycRes"]["UidData"]["Poi"]["@name"] = "J0hn Doe"
        report = pipeline.run(as_upload(ekyc_doc), filename="aadhaar.json")
        assert report.error_code == "ATTRIBUTE_REJECTION"
        assert report.message == ATTRIBUTE_REASON
        assert "NAME_CHARACTERS_INVALID" in [f.code for f in report.findings]

    def test_attribute_rejection_on_bad_birth_date(self, pipeline, ekyc_doc):
        ekyc_doc["KycRes"]["UidData"]["Poi"]["@dob"] = "1990/01/01"
        report = pipeline.run(as_upload(ekyc_doc), filename="aadhaar.json")
        assert report.error_code == "ATTRIBUTE_REJECTION"

    def test_rejected_report_does_not_echo_document(self, pipeline, ekyc_doc):
        ekyc_doc["KycRes"]["UidData"]["Poi"]["@name"] = "J0hn Doe"
        report = pipeline.run(as_upload(ekyc_doc), filename="aadhaar.json")
        dumped = report.model_dump_json()
        assert "J0HN" not in dumped
        assert "123456789012" not in dumped
