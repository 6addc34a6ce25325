"""
Verification Service - Ingest and Prove Evidence

The service ties the pieces together:
- Ingest: change-stream batch → parser → metadata store (never verifies)
- Verify: stored record → fresh digest proof → recompute → record outcome

Rules (enforced in code):
- A verification mismatch is a Failed result, not an exception
- No store mutation unless the proof fetch and the recompute both succeed
- Concurrent verifies race on the store's version gate; the loser refetches
  and recomputes once, then gives up with VerificationConflictError
- Every network call carries a timeout

Dependencies are passed in. Nothing here reaches for a global.
"""

import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

from ..config import ServiceConfig
from ..observability import MetricsCollector, get_logger
from ..schemas import (
    EvidenceRecord,
    IngestSummary,
    VerificationResult,
    VerificationStatus,
)
from .digest import DigestVerifier, VerificationOutcome
from .errors import (
    ConcurrentUpdateError,
    EvidenceStoreError,
    InvalidLocatorError,
    MalformedRecordError,
    MissingParameterError,
    NotFoundError,
    VerificationConflictError,
)
from .hasher import Hasher
from .ledger_client import DigestEndpoint
from .object_store import EvidenceContentRepository
from .parser import StreamRecordParser

if TYPE_CHECKING:
    from ..db.store import EvidenceMetadataStore


logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VerificationService:
    """
    Evidence ingest and verification.

    Usage:
        service = VerificationService(
            store=InMemoryEvidenceMetadataStore(),
            digest_endpoint=InMemoryDigestEndpoint(),
        )
        service.ingest(batch)
        result = service.verify("5pxmz8FD9Aj8Cbl5kuvXxP", timeout=2.0)
    """

    def __init__(
        self,
        store: "EvidenceMetadataStore",
        digest_endpoint: DigestEndpoint,
        parser: Optional[StreamRecordParser] = None,
        verifier: Optional[DigestVerifier] = None,
        content: Optional[EvidenceContentRepository] = None,
        config: Optional[ServiceConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            store: Evidence metadata store (sole owner of record state)
            digest_endpoint: Source of fresh digest proofs
            parser: Change-stream parser (defaults to the configured table filter)
            verifier: Digest recomputation (defaults to 32-byte SHA-256)
            content: Off-ledger content access; None skips content checks
            config: Service configuration (defaults to ServiceConfig())
            metrics: Metrics sink (defaults to a private collector)
        """
        self._config = config or ServiceConfig()
        self._store = store
        self._digest_endpoint = digest_endpoint
        self._parser = parser or StreamRecordParser(table_name=self._config.table_name)
        self._verifier = verifier or DigestVerifier()
        self._content = content
        self._metrics = metrics or MetricsCollector()
        self._clock = clock

    @property
    def store(self) -> "EvidenceMetadataStore":
        return self._store

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def config(self) -> ServiceConfig:
        return self._config

    def close(self) -> None:
        """Release network clients held by collaborators."""
        self._digest_endpoint.close()
        if self._content is not None:
            self._content.close()

    # ============================================================
    # INGEST
    # ============================================================

    def ingest(self, raw_batch: Iterable[Any]) -> IngestSummary:
        """
        Apply one change-stream batch to the metadata store.

        A bad record never blocks its neighbours. Store failures on one
        record are counted as failed; the rest of the batch still applies.
        """
        accepted = duplicate = failed = ignored = 0

        def on_error(error: MalformedRecordError) -> None:
            nonlocal failed
            failed += 1

        def on_ignored(entry: Any) -> None:
            nonlocal ignored
            ignored += 1

        for event in self._parser.iter_events(raw_batch, on_error=on_error, on_ignored=on_ignored):
            try:
                result = self._store.upsert_from_revision(event)
            except EvidenceStoreError as e:
                failed += 1
                logger.warning(
                    "Failed to store revision",
                    document_id=event.document_id,
                    version=event.version,
                    error=e.message,
                )
                continue

            if result.applied:
                accepted += 1
            else:
                duplicate += 1
                logger.debug(
                    "Duplicate or stale revision ignored",
                    document_id=event.document_id,
                    version=event.version,
                    stored_version=result.record.latest_version,
                )

        summary = IngestSummary(
            accepted=accepted,
            duplicate=duplicate,
            failed=failed,
            ignored=ignored,
        )
        self._metrics.record_ingest(accepted, duplicate, failed, ignored)

        if summary.total > 0 and failed == summary.total:
            logger.warning("Every record in the batch failed", failed=failed)
        else:
            logger.info(
                "Batch ingested",
                accepted=accepted,
                duplicate=duplicate,
                failed=failed,
                ignored=ignored,
            )

        return summary

    # ============================================================
    # READS
    # ============================================================

    def get_record(self, evidence_id: str) -> EvidenceRecord:
        """
        Raises:
            MissingParameterError: Empty id
            NotFoundError: Unknown id
        """
        if not evidence_id or not evidence_id.strip():
            raise MissingParameterError("id")
        record = self._store.get_by_id(evidence_id)
        if record is None:
            raise NotFoundError(f"Evidence with id {evidence_id} not found.")
        return record

    def get_status(self, evidence_id: str) -> VerificationResult:
        """Stored verification status, without re-verifying."""
        record = self.get_record(evidence_id)
        return VerificationResult(
            evidence_id=record.id,
            status=record.verification_status,
            last_verified_at=record.last_verified_at,
            version=record.latest_version,
        )

    def attachment_link(self, evidence_id: str, ttl: Optional[int] = None) -> str:
        """
        Time-limited link to the record's off-ledger content.

        Raises:
            NotFoundError: Unknown id, or the record has no stored content
        """
        record = self.get_record(evidence_id)
        if not record.object_locator or self._content is None:
            raise NotFoundError(f"Evidence {evidence_id} has no attached content.")
        return self._content.signed_link(
            record.object_locator,
            ttl if ttl is not None else self._config.signed_url_ttl,
        )

    # ============================================================
    # VERIFY
    # ============================================================

    def verify(self, evidence_id: str, timeout: Optional[float] = None) -> VerificationResult:
        """
        Re-prove a record against a fresh ledger digest and persist the outcome.

        Returns:
            VerificationResult with status Verified or Failed

        Raises:
            MissingParameterError: Empty id
            NotFoundError: Unknown id
            MalformedProofError: Bad hash encoding or length (no state change)
            TransientError: Digest endpoint, object store or metadata store
                            unavailable or timed out (no state change)
            VerificationConflictError: Lost the version race twice
        """
        timeout = timeout if timeout is not None else self._config.default_timeout
        start = time.perf_counter()

        try:
            result = self._verify_with_retry(evidence_id, timeout)
        except EvidenceStoreError:
            self._metrics.record_verification(None, (time.perf_counter() - start) * 1000)
            raise

        self._metrics.record_verification(
            result.status == VerificationStatus.VERIFIED,
            (time.perf_counter() - start) * 1000,
        )
        return result

    def verify_revision(
        self,
        evidence_id: str,
        version: int,
        timeout: Optional[float] = None,
    ) -> VerificationResult:
        """
        Re-prove one specific revision of a record.

        Read-only: the stored status tracks the latest revision, so the
        outcome for an older revision is returned but never persisted.

        Raises:
            MissingParameterError: Empty id
            NotFoundError: Unknown id or version
            MalformedProofError: Bad hash encoding or length
            TransientError: Digest endpoint or object store unavailable
        """
        self.get_record(evidence_id)
        snapshot = self._store.get_revision(evidence_id, version)
        if snapshot is None:
            raise NotFoundError(f"Evidence {evidence_id} has no revision {version}.")

        timeout = timeout if timeout is not None else self._config.default_timeout
        status, outcome = self._evaluate(snapshot, timeout)
        logger.info(
            "Evidence revision verified",
            evidence_id=evidence_id,
            version=version,
            status=status.value,
            computed_hash=outcome.computed_hash,
        )
        return VerificationResult(
            evidence_id=evidence_id,
            status=status,
            last_verified_at=self._clock(),
            version=version,
        )

    def _verify_with_retry(self, evidence_id: str, timeout: float) -> VerificationResult:
        record = self.get_record(evidence_id)

        for attempt in range(2):
            status, outcome = self._evaluate(record, timeout)
            verified_at = self._clock()

            try:
                stored = self._store.record_verification(
                    record.id, record.latest_version, status, verified_at
                )
            except ConcurrentUpdateError:
                self._metrics.record_conflict()
                logger.info(
                    "Newer revision landed during verification",
                    evidence_id=record.id,
                    version=record.latest_version,
                    attempt=attempt + 1,
                )
                if attempt == 1:
                    break
                record = self.get_record(evidence_id)
                continue

            logger.info(
                "Evidence verification recorded",
                evidence_id=stored.id,
                version=stored.latest_version,
                status=stored.verification_status.value,
                computed_hash=outcome.computed_hash,
                target_hash=outcome.target_hash,
            )
            return VerificationResult(
                evidence_id=stored.id,
                status=stored.verification_status,
                last_verified_at=stored.last_verified_at,
                version=stored.latest_version,
            )

        raise VerificationConflictError(
            f"Evidence {evidence_id} kept changing during verification; retry later."
        )

    def _evaluate(
        self,
        record: EvidenceRecord,
        timeout: float,
    ) -> tuple[VerificationStatus, VerificationOutcome]:
        """Compute the outcome for one record version. Touches no state."""
        proof = self._digest_endpoint.get_digest_proof(
            record.table_id, record.block_address, timeout=timeout
        )
        outcome = self._verifier.verify(record.claimed_hash, proof)

        if not outcome.verified:
            logger.warning(
                "Revision hash does not reproduce the ledger digest",
                evidence_id=record.id,
                version=record.latest_version,
                computed_hash=outcome.computed_hash,
                target_hash=outcome.target_hash,
            )
            return VerificationStatus.FAILED, outcome

        block = self._verifier.verify_block(proof)
        if block is not None and not block.verified:
            logger.warning(
                "Block hash does not reproduce the ledger digest",
                evidence_id=record.id,
                block_address=f"{record.block_address.strand_id}/{record.block_address.sequence_no}",
                computed_hash=block.computed_hash,
                target_hash=block.target_hash,
            )
            return VerificationStatus.FAILED, outcome

        if not self._content_intact(record, timeout):
            return VerificationStatus.FAILED, outcome

        return VerificationStatus.VERIFIED, outcome

    def _content_intact(self, record: EvidenceRecord, timeout: float) -> bool:
        if self._content is None or not self._config.verify_content:
            return True

        if record.object_locator and record.content_hash:
            try:
                content = self._content.get_content(record.object_locator, timeout=timeout)
            except InvalidLocatorError as e:
                logger.warning(
                    "Evidence content locator does not resolve",
                    evidence_id=record.id,
                    object_locator=record.object_locator,
                    error=e.message,
                )
                return False

            if not self._hash_matches(record, record.object_locator, content, record.content_hash):
                return False

        for attachment in record.attachments:
            content = self._content.get_attachment(attachment, timeout=timeout)
            name = f"{attachment.bucket_name}/{attachment.object_key}"
            if not self._hash_matches(record, name, content, attachment.hash):
                return False

        return True

    @staticmethod
    def _hash_matches(
        record: EvidenceRecord,
        name: str,
        content: Optional[bytes],
        expected_hash: str,
    ) -> bool:
        if content is None:
            logger.warning(
                "Evidence content missing from object store",
                evidence_id=record.id,
                object=name,
            )
            return False

        if not Hasher.content_matches(content, expected_hash):
            logger.warning(
                "Evidence content hash mismatch",
                evidence_id=record.id,
                object=name,
                expected=expected_hash,
                actual=Hasher.compute_hash(content, "base64url"),
            )
            return False

        return True
