#!/usr/bin/env python3
"""
Aadhaar Recovery — Entry Point
==============================

Runs the extraction pipeline on a DigiLocker Aadhaar JSON export and prints
the report.

Usage:
    python main.py                          # Built-in sample export
    python main.py path/to/aadhaar.json     # Your own export
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from aadhaar_recovery.config import Settings
from aadhaar_recovery.models import ExtractionReport, Severity
from aadhaar_recovery.pipeline import ExtractionPipeline

load_dotenv()


# ─── A Sample e-KYC Export ──────────────────────────────────────────

SAMPLE_EXPORT = """\
{
  "KycRes": {
    "@code": "5f3c2a1b9e8d4c7a",
    "@ts": "2025-06-01T10:15:30.000+05:30",
    "@txn": "UKC:DIGILOCKER-7731-0042",
    "UidData": {
      "@uid": "xxxxxxxx0511",
      "Poi": {"@name": "Jane  Doe", "@dob": "01-01-1990", "@gender": "F"},
      "Poa": {"@dist": "Pune", "@state": "Maharashtra", "@country": "India"}
    },
    "Signature": {"@xmlns": "http://www.w3.org/2000/09/xmldsig#"}
  }
}"""


# ─── ANSI Color Constants ───────────────────────────────────────────

_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"
_BOLD = "\033[1m"
_RESET = "\033[0m"
_WIDTH = 72


# ─── Pretty Printer ─────────────────────────────────────────────────


def print_report(report: ExtractionReport, source: str) -> int:
    """Pretty-print the extraction report with ANSI color codes.

    Returns:
        0 if the export was accepted, 1 if rejected.
    """
    print(f"\n{'=' * _WIDTH}")
    print(f"{_BOLD}{_CYAN}  AADHAAR EXTRACTION REPORT{_RESET}")
    print(f"{'=' * _WIDTH}")
    print(f"  Source:      {source}")
    print(f"  Audit Hash:  {_DIM}{report.original_hash[:16]}...{_RESET}")
    print(f"{'─' * _WIDTH}")

    attrs = report.attributes
    if attrs:
        print(f"  Name:        {attrs.full_name}")
        print(f"  Aadhaar:     {attrs.masked_number()}")
        print(f"  DOB:         {attrs.birth_date or '-'}")
        print(f"  Gender:      {attrs.gender or '-'}")
        print(f"{'─' * _WIDTH}")

    for f in report.findings:
        color = _RED if f.severity == Severity.ERROR else _YELLOW
        print(f"    {color}[{f.code}]{_RESET} {f.message}")

    print(f"{'=' * _WIDTH}")
    if report.is_valid:
        print(f"  {_GREEN}{_BOLD}EXPORT ACCEPTED{_RESET}")
    else:
        print(f"  {_RED}{_BOLD}EXPORT REJECTED  --  {report.error_code}{_RESET}")
        print(f"  {report.message}")
    print(f"{'=' * _WIDTH}\n")

    return 0 if report.is_valid else 1


# ─── Main ────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    """Run the extraction pipeline and print the report."""
    argv = sys.argv[1:] if argv is None else argv
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if argv:
        path = Path(argv[0])
        content, filename = path.read_bytes(), path.name
    else:
        content, filename = SAMPLE_EXPORT.encode("utf-8"), "sample.json"

    pipeline = ExtractionPipeline(policy=settings.extraction_policy())
    report = pipeline.run(content, filename=filename)
    return print_report(report, filename)


if __name__ == "__main__":
    sys.exit(main())
