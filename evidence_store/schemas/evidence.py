"""
Evidence Record Schema

The persisted view of an evidence document: which revision we last saw,
where its payload lives off-ledger, and whether it has been proven.

Evidence is never deleted here. Retention is someone else's problem.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .revision import AttachmentRef, BlockAddress


class VerificationStatus(str, Enum):
    """
    Verification state machine:

        Unverified → Verified | Failed → Verified | Failed → ...

    There is no terminal state. Evidence can be re-checked forever.
    A newer ingested revision resets the record to Unverified.
    """
    UNVERIFIED = "Unverified"
    VERIFIED = "Verified"
    FAILED = "Failed"


class EvidenceRecord(BaseModel):
    """
    One record per ledger document id.

    Mutated only through the metadata store's version gate.
    """
    id: str = Field(
        ...,
        description="Ledger document id (revision_metadata.id)"
    )
    evidence_id: str = Field(
        ...,
        description="Evidence id from the revision data (defaults to the document id)"
    )
    provider_id: Optional[str] = None
    schema_id: Optional[str] = None

    # Off-ledger payload
    object_locator: Optional[str] = Field(
        default=None,
        description="Object URL of the evidence content"
    )
    content_hash: Optional[str] = Field(
        default=None,
        description="SHA-256 of the evidence content (base64 or base64url)"
    )
    attachments: list[AttachmentRef] = Field(
        default_factory=list,
        description="Attachments whose content hashes are checked on verify"
    )

    # Latest known revision
    table_name: str
    table_id: str
    block_address: BlockAddress
    claimed_hash: str
    latest_version: int = Field(..., ge=0)

    # Verification
    verification_status: VerificationStatus = VerificationStatus.UNVERIFIED
    last_verified_at: Optional[datetime] = None

    created_at: datetime
    updated_at: datetime

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "id": "5pxmz8FD9Aj8Cbl5kuvXxP",
                "evidence_id": "34e8e89a-3e5d-4add-b435-c052081309dc",
                "provider_id": "canary-authority",
                "schema_id": "canary-test-schema",
                "object_locator": "https://evidence-content.s3.amazonaws.com/canary-authority/abc/def",
                "content_hash": "Cm1qu-bmLP5ets_qQ0zGcWCZdfJHuYqgLL1N1W8QCcY",
                "table_name": "evidences",
                "table_id": "6WXz9wdajiY7K5u6YwGUN4",
                "block_address": {"strand_id": "0VwGeHD7Q9LL4HSC55gDSp", "sequence_no": 33},
                "claimed_hash": "763KyRajJ4gHhiTvjE7wYcUGxnP5esE4WUXp4TLdVEY=",
                "latest_version": 0,
                "verification_status": "Verified",
                "last_verified_at": "2021-06-02T03:02:44.472Z",
                "created_at": "2021-06-02T03:00:00.000Z",
                "updated_at": "2021-06-02T03:02:44.472Z"
            }
        }


class IngestSummary(BaseModel):
    """Outcome tallies for one change-stream batch."""
    accepted: int = 0
    duplicate: int = 0
    failed: int = 0
    ignored: int = Field(
        default=0,
        description="Non revision-details records dropped by the parser"
    )

    @property
    def total(self) -> int:
        return self.accepted + self.duplicate + self.failed


class VerificationResult(BaseModel):
    """Answer to: is this evidence still what the ledger committed?"""
    evidence_id: str
    status: VerificationStatus
    last_verified_at: Optional[datetime] = None
    version: int

    class Config:
        frozen = True
