"""
API Routes for the Evidence Integrity Service

Command endpoints:
- POST /stream/batches                    - Ingest one change-stream batch

Query endpoints:
- GET /evidences/{id}                     - Stored evidence record
- GET /evidences/{id}/verificationstatus  - Re-verify against a fresh ledger digest
- GET /evidences/{id}/attachment-link     - Signed link to the off-ledger content
- GET /evidences/{id}/revisions/{version}/verificationstatus
                                          - Re-prove one revision (not stored)

Errors are raised as EvidenceStoreError subclasses and mapped to HTTP
responses in one place (evidence_store_error_handler).
"""

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Path, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..core.errors import EvidenceStoreError, MissingParameterError
from ..core.verification import VerificationService
from ..observability import get_logger
from ..schemas import EvidenceRecord, IngestSummary, VerificationStatus


logger = get_logger(__name__)

router = APIRouter()

# Seconds clients should wait before retrying a transient failure
RETRY_AFTER_SECONDS = 1


# ============================================================
# Dependency Injection
# ============================================================

def get_service(request: Request) -> VerificationService:
    """Get the verification service from app state."""
    return request.app.state.service


def _require_id(evidence_id: str) -> str:
    if not evidence_id or not evidence_id.strip():
        raise MissingParameterError("id")
    return evidence_id


# ============================================================
# Request/Response Models
# ============================================================

class StreamBatchRequest(BaseModel):
    """One change-stream batch, in any envelope the parser accepts."""
    records: list[Any] = Field(default_factory=list)

    class Config:
        json_schema_extra = {
            "example": {
                "records": [
                    {"data": "eyJyZWNvcmRUeXBlIjoiQ09OVFJPTCJ9"}
                ]
            }
        }


class VerificationStatusResponse(BaseModel):
    """Verification status in the wire format clients already consume."""
    evidenceId: str
    verificationStatus: VerificationStatus
    lastVerifiedAt: Optional[datetime] = None


class AttachmentLinkResponse(BaseModel):
    url: str


# ============================================================
# Error Mapping
# ============================================================

async def evidence_store_error_handler(request: Request, exc: EvidenceStoreError) -> JSONResponse:
    """Map the error taxonomy to an HTTP response."""
    headers = {}
    if exc.retryable:
        headers["Retry-After"] = str(RETRY_AFTER_SECONDS)

    if exc.status_code >= 500:
        logger.warning(
            "Request failed",
            path=request.url.path,
            error_type=type(exc).__name__,
            error=exc.message,
            retryable=exc.retryable,
        )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": type(exc).__name__,
            "message": exc.message,
            "retryable": exc.retryable,
        },
        headers=headers,
    )


# ============================================================
# COMMAND ENDPOINTS
# ============================================================

@router.post(
    "/stream/batches",
    response_model=IngestSummary,
    tags=["Stream"],
)
def ingest_batch(
    batch: StreamBatchRequest,
    service: VerificationService = Depends(get_service),
):
    """
    Apply a change-stream batch to the metadata store.

    Malformed records are counted, never fatal. Nothing is verified here.
    """
    return service.ingest(batch.records)


# ============================================================
# QUERY ENDPOINTS
# ============================================================

@router.get(
    "/evidences/{evidence_id}",
    response_model=EvidenceRecord,
    tags=["Evidence"],
)
def get_evidence(
    evidence_id: str,
    service: VerificationService = Depends(get_service),
):
    """Get the stored record for an evidence document."""
    return service.get_record(_require_id(evidence_id))


@router.get(
    "/evidences/{evidence_id}/verificationstatus",
    response_model=VerificationStatusResponse,
    tags=["Evidence"],
)
def get_verification_status(
    evidence_id: str,
    service: VerificationService = Depends(get_service),
):
    """
    Re-verify an evidence record against a fresh ledger digest.

    Returns Verified or Failed. Transient failures return 503 with
    Retry-After and leave the stored status untouched.
    """
    result = service.verify(_require_id(evidence_id))
    return VerificationStatusResponse(
        evidenceId=result.evidence_id,
        verificationStatus=result.status,
        lastVerifiedAt=result.last_verified_at,
    )


@router.get(
    "/evidences/{evidence_id}/attachment-link",
    response_model=AttachmentLinkResponse,
    tags=["Evidence"],
)
def get_attachment_link(
    evidence_id: str,
    ttl: Optional[int] = Query(default=None, gt=0, description="Link lifetime in seconds"),
    service: VerificationService = Depends(get_service),
):
    """Time-limited download link for the evidence content."""
    return AttachmentLinkResponse(url=service.attachment_link(_require_id(evidence_id), ttl))


@router.get(
    "/evidences/{evidence_id}/revisions/{version}/verificationstatus",
    response_model=VerificationStatusResponse,
    tags=["Evidence"],
)
def get_revision_verification_status(
    evidence_id: str,
    version: int = Path(..., ge=0, description="Revision number"),
    service: VerificationService = Depends(get_service),
):
    """
    Re-prove one specific revision against a fresh ledger digest.

    The outcome is returned but not stored: the stored status tracks the
    latest revision only.
    """
    result = service.verify_revision(_require_id(evidence_id), version)
    return VerificationStatusResponse(
        evidenceId=result.evidence_id,
        verificationStatus=result.status,
        lastVerifiedAt=result.last_verified_at,
    )


@router.get("/evidences//{rest:path}", include_in_schema=False)
def empty_evidence_id(rest: str):
    """An empty id segment is a missing parameter, not an unknown route."""
    raise MissingParameterError("id")
