# Canonical Schemas for the Evidence Integrity Service

from .revision import (
    AttachmentRef,
    BlockAddress,
    EvidenceAttributes,
    RecordKind,
    RevisionEvent,
    RevisionMetadata,
)
from .digest import DigestProof
from .evidence import (
    EvidenceRecord,
    IngestSummary,
    VerificationResult,
    VerificationStatus,
)

__all__ = [
    # Revision
    "AttachmentRef",
    "BlockAddress",
    "EvidenceAttributes",
    "RecordKind",
    "RevisionEvent",
    "RevisionMetadata",
    # Digest
    "DigestProof",
    # Evidence
    "EvidenceRecord",
    "IngestSummary",
    "VerificationResult",
    "VerificationStatus",
]
