"""
Canonical Revision Event Schema

One RevisionEvent per ledger change notification.
Events are transient and immutable: they are decoded once from the
change stream and never modified afterwards.

Only the fields the verifier needs are decoded strictly
(hash, block address, metadata). The rest of the revision data
travels as an opaque payload.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class RecordKind(str, Enum):
    """
    Kind discriminator carried by every change-stream record.
    Only REVISION_DETAILS produces RevisionEvents.
    """
    CONTROL = "CONTROL"
    BLOCK_SUMMARY = "BLOCK_SUMMARY"
    REVISION_DETAILS = "REVISION_DETAILS"


class BlockAddress(BaseModel):
    """Locates the committing block within the ledger's hash chain."""
    strand_id: str = Field(..., min_length=1)
    sequence_no: int = Field(..., ge=0)

    class Config:
        frozen = True


class RevisionMetadata(BaseModel):
    """
    Ledger-assigned revision metadata.

    `version` increases strictly per document id.
    """
    id: str = Field(
        ...,
        min_length=1,
        description="Ledger document id (the evidence record key)"
    )
    version: int = Field(
        ...,
        ge=0,
        description="Monotonic revision number for this document id"
    )
    tx_time: datetime = Field(
        ...,
        description="Commit time of the transaction"
    )
    tx_id: str = Field(
        ...,
        min_length=1,
        description="Ledger transaction id"
    )

    class Config:
        frozen = True


class AttachmentRef(BaseModel):
    """An off-ledger attachment and the base64url SHA-256 recorded for it."""
    bucket_name: str = Field(..., min_length=1)
    object_key: str = Field(..., min_length=1)
    hash: str = Field(..., min_length=1)

    class Config:
        frozen = True


class EvidenceAttributes(BaseModel):
    """
    The handful of evidence fields read out of the revision data.

    Anything else in the data is left in RevisionEvent.payload untouched.
    """
    evidence_id: Optional[str] = None
    provider_id: Optional[str] = None
    schema_id: Optional[str] = None
    content_location: Optional[str] = None
    content_hash: Optional[str] = None
    attachments: list[AttachmentRef] = Field(default_factory=list)

    class Config:
        frozen = True
        extra = "ignore"


class RevisionEvent(BaseModel):
    """
    A single revision-details record from the change stream.

    Invariant:
    - For a fixed revision_metadata.id, revision_metadata.version strictly
      increases across events. Equal or lower versions are redeliveries.
    """
    stream_source_id: str = Field(
        ...,
        description="Identifier (ARN) of the originating change stream"
    )
    record_kind: RecordKind = Field(
        default=RecordKind.REVISION_DETAILS,
        description="Always REVISION_DETAILS for decoded events"
    )

    table_name: str = Field(..., min_length=1)
    table_id: str = Field(..., min_length=1)

    block_address: BlockAddress
    claimed_hash: str = Field(
        ...,
        description="Base64 revision hash asserted by the ledger"
    )

    payload: bytes = Field(
        default=b"",
        description="Revision data as received (compact JSON), passed through untouched"
    )
    attributes: EvidenceAttributes = Field(default_factory=EvidenceAttributes)

    revision_metadata: RevisionMetadata

    @property
    def document_id(self) -> str:
        return self.revision_metadata.id

    @property
    def version(self) -> int:
        return self.revision_metadata.version

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "stream_source_id": "arn:aws:qldb:ap-southeast-2:123456789012:stream/Evidences/abc",
                "record_kind": "REVISION_DETAILS",
                "table_name": "evidences",
                "table_id": "6WXz9wdajiY7K5u6YwGUN4",
                "block_address": {"strand_id": "0VwGeHD7Q9LL4HSC55gDSp", "sequence_no": 33},
                "claimed_hash": "763KyRajJ4gHhiTvjE7wYcUGxnP5esE4WUXp4TLdVEY=",
                "revision_metadata": {
                    "id": "5pxmz8FD9Aj8Cbl5kuvXxP",
                    "version": 0,
                    "tx_time": "2021-02-09T02:16:05.908Z",
                    "tx_id": "KFz7yR2SbH4Ts9x0wO1L3c"
                }
            }
        }
