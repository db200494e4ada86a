"""
Aadhaar Recovery — FastAPI Server
=================================

RESTful API for DigiLocker Aadhaar extraction and vault key recovery.

Endpoints:
    POST /extract            Upload a DigiLocker Aadhaar JSON export
    POST /extract/dev        Fixed test attributes (dev mode only)
    POST /recovery/store     Escrow attributes + decryption key for an address
    POST /recovery/verify    Verify attributes and email the decryption key
    GET  /health             Health check / readiness probe

Every error body has the shape:
    {"detail": {"error": "<KIND>", "message": "<human-readable text>"}}

Run:
    uvicorn api:app --reload              # Dev (http://localhost:8000)
    uvicorn api:app --host 0.0.0.0        # Production

Docs:
    http://localhost:8000/docs             # Swagger UI (auto-generated)
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, NoReturn, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from aadhaar_recovery import __version__
from aadhaar_recovery.config import Settings
from aadhaar_recovery.crypto import FieldCipher, generate_key
from aadhaar_recovery.delivery import (
    DeliveryChannel,
    LoggingDeliveryChannel,
    ResendDeliveryChannel,
)
from aadhaar_recovery.exceptions import RecoveryError
from aadhaar_recovery.extractor import dev_mode_attributes
from aadhaar_recovery.models import IdentityAttributes, ValidationFinding
from aadhaar_recovery.pipeline import ExtractionPipeline
from aadhaar_recovery.recovery import RecoveryService
from aadhaar_recovery.store import build_store

load_dotenv()

logger = logging.getLogger(__name__)


# ─── Application Lifespan (wire pipeline + recovery service) ────────

_settings: Settings | None = None
_pipeline: ExtractionPipeline | None = None
_service: RecoveryService | None = None


def build_service(settings: Settings) -> RecoveryService | None:
    """Wire store, cipher and delivery channel; None when no key is configured."""
    key = settings.encryption_key
    if not key:
        if not settings.dev_mode:
            logger.error("AADHAAR_RECOVERY_ENCRYPTION_KEY is not set, recovery disabled")
            return None
        logger.warning("Dev mode: using an ephemeral encryption key")
        key = generate_key()

    if settings.resend_api_key:
        channel: DeliveryChannel = ResendDeliveryChannel(settings.resend_api_key, settings.resend_from)
    else:
        logger.warning("RESEND_API_KEY is not set, recovery emails are only logged")
        channel = LoggingDeliveryChannel()

    return RecoveryService(
        store=build_store(settings.database_url),
        channel=channel,
        cipher=FieldCipher(key),
        id_number_mode=settings.id_number_mode,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the pipeline and recovery service on startup; close the channel on shutdown."""
    global _settings, _pipeline, _service  # noqa: PLW0603
    _settings = Settings.from_env()
    _pipeline = ExtractionPipeline(policy=_settings.extraction_policy())
    _service = build_service(_settings)
    yield
    if _service is not None:
        _service.channel.close()
    _settings = _pipeline = _service = None


# ─── FastAPI App ─────────────────────────────────────────────────────

app = FastAPI(
    title="Aadhaar Recovery API",
    description=(
        "Extracts identity attributes from DigiLocker Aadhaar JSON exports, "
        "checks they plausibly come from DigiLocker, and uses them as a "
        "knowledge factor to release an escrowed vault decryption key."
    ),
    version=__version__,
    lifespan=lifespan,
)


# ─── Request / Response Schemas ─────────────────────────────────────


class AttributesIn(BaseModel):
    """Identity attributes as submitted by the client."""

    user_email: str = Field(..., min_length=3, max_length=320)
    name: str = Field(..., min_length=1, max_length=200)
    aadhaar_number: str = Field(..., min_length=1, max_length=32)
    dob: Optional[str] = Field(None, max_length=32)
    gender: Optional[str] = Field(None, max_length=32)

    def to_attributes(self) -> IdentityAttributes:
        return IdentityAttributes(
            full_name=self.name,
            identity_number=self.aadhaar_number,
            birth_date=self.dob,
            gender=self.gender,
        )


class StoreRequest(AttributesIn):
    """Escrow registration: attributes plus the vault decryption key."""

    decryption_key: Any = Field(
        ...,
        description="The vault decryption key (any JSON value), returned verbatim on recovery.",
    )


class VerifyRequest(AttributesIn):
    """Recovery attempt: attributes only."""


class ExtractResponse(BaseModel):
    attributes: IdentityAttributes
    original_hash: str = Field(description="SHA-256 hash of the uploaded file")
    warning_count: int
    findings: list[ValidationFinding]


class StoreResponse(BaseModel):
    success: bool
    created: bool
    message: str


class VerifyResponse(BaseModel):
    success: bool
    message: str
    email_sent: bool


class HealthResponse(BaseModel):
    status: str
    version: str
    recovery_enabled: bool
    dev_mode: bool


# ─── Helpers ─────────────────────────────────────────────────────────

_STATUS_BY_CODE: dict[str, int] = {
    "MALFORMED_INPUT": 400,
    "STRUCTURAL_REJECTION": 422,
    "EXTRACTION_FAILED": 422,
    "ATTRIBUTE_REJECTION": 422,
    "NOT_FOUND": 404,
    "RATE_LIMITED": 429,
    "MISMATCH": 401,
    "DELIVERY_FAILURE": 502,
    "STORE_FAILURE": 503,
    "CIPHER_FAILURE": 500,
}


def _fail(code: str, message: str, **extra: Any) -> NoReturn:
    raise HTTPException(
        status_code=_STATUS_BY_CODE.get(code, 500),
        detail={"error": code, "message": message, **extra},
    )


def _get_pipeline() -> ExtractionPipeline:
    if _pipeline is None:
        raise HTTPException(
            status_code=503,
            detail={"error": "UNAVAILABLE", "message": "Pipeline not initialised"},
        )
    return _pipeline


def _get_service() -> RecoveryService:
    if _service is None:
        raise HTTPException(
            status_code=503,
            detail={"error": "UNAVAILABLE", "message": "Recovery service not configured"},
        )
    return _service


@app.exception_handler(RequestValidationError)
async def _request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Keep the error-body shape for schema failures; never echo the input."""
    fields = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
    return JSONResponse(
        status_code=_STATUS_BY_CODE["MALFORMED_INPUT"],
        content={
            "detail": {
                "error": "MALFORMED_INPUT",
                "message": "Missing required fields or invalid values.",
                "fields": fields,
            }
        },
    )


# ─── Endpoints ───────────────────────────────────────────────────────


@app.post(
    "/extract",
    summary="Extract Aadhaar details from a DigiLocker JSON export",
    tags=["Extraction"],
    responses={
        400: {"description": "Missing file, wrong type, or unparsable JSON"},
        413: {"description": "File too large (max 100 KB)"},
        422: {"description": "Document rejected or details not extractable"},
        503: {"description": "Pipeline not yet initialised"},
    },
)
async def extract_document(file: UploadFile) -> ExtractResponse:
    """Upload the `.json` Aadhaar export downloaded from DigiLocker.

    Returns the normalized attributes plus advisory findings.
    """
    pipeline = _get_pipeline()
    limit = pipeline.policy.max_document_bytes
    if file.size and file.size > limit:
        _fail_too_large()

    content = await file.read()
    if len(content) > limit:
        _fail_too_large()

    report = await asyncio.to_thread(pipeline.run, content, file.filename)
    if not report.is_valid or report.attributes is None:
        _fail(report.error_code or "EXTRACTION_FAILED", report.message or "Extraction failed")

    return ExtractResponse(
        attributes=report.attributes,
        original_hash=report.original_hash,
        warning_count=sum(1 for f in report.findings if f.severity.value == "WARNING"),
        findings=report.findings,
    )


def _fail_too_large() -> NoReturn:
    raise HTTPException(
        status_code=413,
        detail={
            "error": "MALFORMED_INPUT",
            "message": "File too large. DigiLocker Aadhaar JSON files are typically much smaller.",
        },
    )


@app.post(
    "/extract/dev",
    summary="Fixed test attributes (dev mode only)",
    tags=["Extraction"],
    responses={404: {"description": "Dev mode disabled"}},
)
def extract_dev() -> IdentityAttributes:
    if _settings is None or not _settings.dev_mode:
        _fail("NOT_FOUND", "Dev mode is disabled")
    return dev_mode_attributes()


@app.post(
    "/recovery/store",
    summary="Escrow identity attributes and the vault decryption key",
    tags=["Recovery"],
    responses={
        400: {"description": "Missing required fields"},
        503: {"description": "Store unavailable or service not configured"},
    },
)
def store_recovery(request: StoreRequest) -> StoreResponse:
    service = _get_service()
    try:
        result = service.store_recovery(
            request.user_email, request.to_attributes(), request.decryption_key
        )
    except RecoveryError as exc:
        _fail(exc.code, exc.message)
    return StoreResponse(success=True, created=result.created, message=result.message)


@app.post(
    "/recovery/verify",
    summary="Verify identity and email the recovery key",
    tags=["Recovery"],
    responses={
        400: {"description": "Missing required fields"},
        401: {"description": "Details do not match the escrowed record"},
        404: {"description": "No recovery data for this address"},
        429: {"description": "Recovery attempt limit exceeded"},
        502: {"description": "Identity verified but the email could not be sent"},
        503: {"description": "Store unavailable or service not configured"},
    },
)
def verify_recovery(request: VerifyRequest) -> VerifyResponse:
    """Compare the submitted details with the escrowed record.

    A `DELIVERY_FAILURE` error carries `identity_verified: true`: the check
    passed but the key could not be sent.
    """
    service = _get_service()
    result = service.verify(request.user_email, request.to_attributes())
    if not result.success:
        _fail(
            result.error_code or "MISMATCH",
            result.message,
            identity_verified=result.error_code == "DELIVERY_FAILURE",
        )
    return VerifyResponse(
        success=True, message=result.message, email_sent=result.email_sent
    )


@app.get(
    "/health",
    summary="Health check",
    tags=["System"],
    responses={503: {"description": "Pipeline not yet initialised"}},
)
def health_check() -> HealthResponse:
    """Returns service status and configuration info."""
    _get_pipeline()
    return HealthResponse(
        status="healthy",
        version=__version__,
        recovery_enabled=_service is not None,
        dev_mode=bool(_settings and _settings.dev_mode),
    )
