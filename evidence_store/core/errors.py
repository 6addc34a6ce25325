"""
Error Taxonomy

Every failure the service can raise carries:
- an HTTP-equivalent status code
- whether the caller may retry the same request

Categories:
- Input errors (4xx, never retried automatically)
- Not found (404)
- Concurrency conflicts (stale version, retryable)
- Infrastructure failures (digest endpoint, object store, metadata store, timeouts)
- Missing configuration for an optional capability (signed links)

A verification mismatch is NOT an error. It is a recorded
VerificationStatus.FAILED outcome.
"""

from typing import Optional


class EvidenceStoreError(Exception):
    """Base exception for all evidence store errors."""

    status_code: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable


# ------------------------------------------------------------
# Input errors
# ------------------------------------------------------------

class InputError(EvidenceStoreError):
    """Raised when caller-supplied input is invalid."""
    status_code = 400


class MalformedRecordError(InputError):
    """Raised when a revision-details record fails structural decoding."""

    def __init__(self, message: str, record_kind: Optional[str] = None):
        super().__init__(message)
        self.record_kind = record_kind


class MalformedProofError(InputError):
    """Raised when a hash or proof element has a bad encoding or length."""
    status_code = 422


class InvalidLocatorError(InputError):
    """Raised when an object URL does not have the expected shape."""
    pass


class MissingParameterError(InputError):
    """Raised when a mandatory request parameter is missing or empty."""

    def __init__(self, name: str):
        super().__init__(f"Missing mandatory parameter '{name}'")
        self.name = name


# ------------------------------------------------------------
# Lookup / concurrency
# ------------------------------------------------------------

class NotFoundError(EvidenceStoreError):
    """Raised when an evidence record does not exist."""
    status_code = 404


class ConcurrentUpdateError(EvidenceStoreError):
    """Raised when a write carries a version that is no longer current."""
    status_code = 409
    retryable = True


class VerificationConflictError(EvidenceStoreError):
    """Raised when verification kept losing the version race after a retry."""
    status_code = 503
    retryable = True


# ------------------------------------------------------------
# Infrastructure
# ------------------------------------------------------------

class TransientError(EvidenceStoreError):
    """Base for infrastructure failures the caller should retry."""
    status_code = 503
    retryable = True


class DigestUnavailableError(TransientError):
    """Raised when the ledger digest endpoint fails or times out."""
    pass


class ObjectStoreError(TransientError):
    """Raised when the object store fails or times out."""
    pass


class StoreUnavailableError(TransientError):
    """Raised when the metadata store cannot be reached or times out."""
    pass


class SigningUnavailableError(EvidenceStoreError):
    """Raised when signed links are requested but no signing secret is configured."""
    status_code = 503
    retryable = False
