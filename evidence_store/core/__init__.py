# Core evidence integrity services
from .errors import (
    EvidenceStoreError,
    InputError,
    MalformedRecordError,
    MalformedProofError,
    InvalidLocatorError,
    MissingParameterError,
    NotFoundError,
    ConcurrentUpdateError,
    VerificationConflictError,
    TransientError,
    DigestUnavailableError,
    ObjectStoreError,
    StoreUnavailableError,
    SigningUnavailableError,
)
from .hasher import Hasher
from .digest import (
    HASH_LENGTH,
    DigestVerifier,
    MerkleTree,
    VerificationOutcome,
    combine,
    compare_hashes,
)
from .locator import ObjectLocator, object_key_for
from .object_store import ObjectStore, InMemoryObjectStore, HttpObjectStore, EvidenceContentRepository
from .parser import StreamRecordParser, decode_revision_details
from .ledger_client import (
    DigestEndpoint,
    InMemoryDigestEndpoint,
    HttpDigestEndpoint,
    parse_digest_proof,
)
from .verification import VerificationService

__all__ = [
    "EvidenceStoreError",
    "InputError",
    "MalformedRecordError",
    "MalformedProofError",
    "InvalidLocatorError",
    "MissingParameterError",
    "NotFoundError",
    "ConcurrentUpdateError",
    "VerificationConflictError",
    "TransientError",
    "DigestUnavailableError",
    "ObjectStoreError",
    "StoreUnavailableError",
    "SigningUnavailableError",
    "Hasher",
    "HASH_LENGTH",
    "DigestVerifier",
    "MerkleTree",
    "VerificationOutcome",
    "combine",
    "compare_hashes",
    "ObjectLocator",
    "object_key_for",
    "ObjectStore",
    "InMemoryObjectStore",
    "HttpObjectStore",
    "EvidenceContentRepository",
    "StreamRecordParser",
    "decode_revision_details",
    "DigestEndpoint",
    "InMemoryDigestEndpoint",
    "HttpDigestEndpoint",
    "parse_digest_proof",
    "VerificationService",
]
