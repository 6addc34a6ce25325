"""
Evidence Metadata Store

This module defines the EvidenceMetadataStore interface and two implementations:
- InMemoryEvidenceMetadataStore: For development and testing
- PostgresEvidenceMetadataStore: For production with durability and concurrency safety

The store exclusively owns persisted EvidenceRecord state.

CONCURRENCY CONTRACT:
The only mutation path is a single-row compare-and-set on version.

    upsert_from_revision(event)
        creates the record if absent, otherwise applies the event only when
        event.version > stored.latest_version. Redeliveries and out-of-order
        deliveries are no-ops that return the stored record.

    record_verification(id, version, status, verified_at)
        applies only while stored.latest_version == version. If a newer
        revision landed in the meantime, ConcurrentUpdateError is raised and
        the caller should refetch and recompute.

Every decoded revision is also kept as an immutable snapshot so a specific
revision can be re-proven later (get_revision).

No global locks. Snapshot inserts never modify an existing row.
"""

import json
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Generator, Optional

import psycopg2

from ..core.errors import ConcurrentUpdateError, NotFoundError, StoreUnavailableError
from ..schemas import (
    BlockAddress,
    EvidenceRecord,
    RevisionEvent,
    VerificationStatus,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass
class UpsertResult:
    """
    Outcome of upsert_from_revision.

    applied=False means the event was a duplicate or arrived out of order.
    """
    record: EvidenceRecord
    applied: bool
    created: bool = False


def record_from_revision(
    event: RevisionEvent,
    now: datetime,
    existing: Optional[EvidenceRecord] = None,
) -> EvidenceRecord:
    """
    Build the record state implied by a revision event.

    A new revision has not been proven yet, so status resets to Unverified.
    """
    attrs = event.attributes
    return EvidenceRecord(
        id=event.document_id,
        evidence_id=attrs.evidence_id or (existing.evidence_id if existing else event.document_id),
        provider_id=attrs.provider_id,
        schema_id=attrs.schema_id,
        object_locator=attrs.content_location,
        content_hash=attrs.content_hash,
        attachments=attrs.attachments,
        table_name=event.table_name,
        table_id=event.table_id,
        block_address=event.block_address,
        claimed_hash=event.claimed_hash,
        latest_version=event.version,
        verification_status=VerificationStatus.UNVERIFIED,
        last_verified_at=existing.last_verified_at if existing else None,
        created_at=existing.created_at if existing else now,
        updated_at=now,
    )


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class EvidenceMetadataStore(ABC):
    """
    Abstract base class for evidence metadata storage.

    Implementations must ensure:
    1. Per-id version ordering via compare-and-set
    2. No partial writes
    3. Safe concurrent use from multiple threads/processes
    """

    @abstractmethod
    def upsert_from_revision(self, event: RevisionEvent) -> UpsertResult:
        """
        Create or advance the record for event.revision_metadata.id.

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """
        pass

    @abstractmethod
    def record_verification(
        self,
        record_id: str,
        version: int,
        status: VerificationStatus,
        verified_at: datetime,
    ) -> EvidenceRecord:
        """
        Record a verification outcome for a specific version.

        Raises:
            NotFoundError: Unknown id
            ConcurrentUpdateError: version is no longer the latest
            StoreUnavailableError: If the store cannot be reached
        """
        pass

    @abstractmethod
    def get_by_id(self, record_id: str) -> Optional[EvidenceRecord]:
        """Get a record by ledger document id, or None."""
        pass

    @abstractmethod
    def get_revision(self, record_id: str, version: int) -> Optional[EvidenceRecord]:
        """
        Get the record as it stood at a specific revision, or None.

        Revision snapshots are never verified in place, so their status
        is always Unverified.
        """
        pass

    @abstractmethod
    def count(self) -> int:
        """Total number of records."""
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryEvidenceMetadataStore(EvidenceMetadataStore):
    """
    In-memory implementation of EvidenceMetadataStore.

    Suitable for:
    - Development
    - Testing

    NOT suitable for:
    - Production (no durability)
    - Multi-instance deployments (no shared state)
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._records: dict[str, EvidenceRecord] = {}
        self._revisions: dict[tuple[str, int], EvidenceRecord] = {}
        self._lock = Lock()
        self._clock = clock

    def upsert_from_revision(self, event: RevisionEvent) -> UpsertResult:
        with self._lock:
            stored = self._records.get(event.document_id)
            now = self._clock()
            self._revisions.setdefault(
                (event.document_id, event.version),
                record_from_revision(event, now),
            )

            if stored is None:
                record = record_from_revision(event, now)
                self._records[record.id] = record
                return UpsertResult(record=record, applied=True, created=True)

            if event.version <= stored.latest_version:
                return UpsertResult(record=stored, applied=False)

            record = record_from_revision(event, now, existing=stored)
            self._records[record.id] = record
            return UpsertResult(record=record, applied=True)

    def record_verification(
        self,
        record_id: str,
        version: int,
        status: VerificationStatus,
        verified_at: datetime,
    ) -> EvidenceRecord:
        with self._lock:
            stored = self._records.get(record_id)
            if stored is None:
                raise NotFoundError(f"Evidence with id {record_id} not found.")

            if stored.latest_version != version:
                raise ConcurrentUpdateError(
                    f"Stale version for evidence {record_id}: "
                    f"wrote {version}, stored {stored.latest_version}"
                )

            record = stored.model_copy(update={
                "verification_status": status,
                "last_verified_at": verified_at,
                "updated_at": self._clock(),
            })
            self._records[record_id] = record
            return record

    def get_by_id(self, record_id: str) -> Optional[EvidenceRecord]:
        with self._lock:
            return self._records.get(record_id)

    def get_revision(self, record_id: str, version: int) -> Optional[EvidenceRecord]:
        with self._lock:
            return self._revisions.get((record_id, version))

    def count(self) -> int:
        with self._lock:
            return len(self._records)


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS evidence_records (
    id                  TEXT PRIMARY KEY,
    evidence_id         TEXT NOT NULL,
    provider_id         TEXT,
    schema_id           TEXT,
    object_locator      TEXT,
    content_hash        TEXT,
    table_name          TEXT NOT NULL,
    table_id            TEXT NOT NULL,
    strand_id           TEXT NOT NULL,
    sequence_no         BIGINT NOT NULL,
    claimed_hash        TEXT NOT NULL,
    latest_version      BIGINT NOT NULL,
    verification_status TEXT NOT NULL DEFAULT 'Unverified',
    last_verified_at    TIMESTAMPTZ,
    created_at          TIMESTAMPTZ NOT NULL,
    updated_at          TIMESTAMPTZ NOT NULL,
    attachments         TEXT NOT NULL DEFAULT '[]'
);
CREATE INDEX IF NOT EXISTS idx_evidence_records_evidence_id
    ON evidence_records (evidence_id);

CREATE TABLE IF NOT EXISTS evidence_revisions (
    id          TEXT NOT NULL,
    version     BIGINT NOT NULL,
    snapshot    TEXT NOT NULL,
    PRIMARY KEY (id, version)
);
"""

_COLUMNS = """
    id, evidence_id, provider_id, schema_id, object_locator, content_hash,
    table_name, table_id, strand_id, sequence_no, claimed_hash, latest_version,
    verification_status, last_verified_at, created_at, updated_at, attachments
"""


def _attachments_json(record: EvidenceRecord) -> str:
    return json.dumps([a.model_dump() for a in record.attachments])


class PostgresEvidenceMetadataStore(EvidenceMetadataStore):
    """
    PostgreSQL implementation of EvidenceMetadataStore.

    Provides:
    - Durability (records survive restarts)
    - Multi-instance support (shared database)
    - Compare-and-set via conditional INSERT ... ON CONFLICT / UPDATE ... WHERE
    - Lock/statement timeouts to prevent hanging

    Usage:
        store = PostgresEvidenceMetadataStore(lambda: psycopg2.connect(dsn))
        store.create_schema()
    """

    # Timeouts to prevent hanging under load
    LOCK_TIMEOUT_MS = 2000  # 2 seconds
    STATEMENT_TIMEOUT_MS = 10000  # 10 seconds

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize PostgreSQL metadata store.

        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for row lock (ms). Default 2000.
            statement_timeout_ms: Max statement execution time (ms). Default 10000.
        """
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms
        self._clock = clock

    @contextmanager
    def _transaction(self) -> Generator[Any, None, None]:
        """
        Single-connection transaction with scoped timeouts.

        Commits on success, rolls back on any error.
        Driver errors are surfaced as StoreUnavailableError.
        """
        try:
            conn = self._connection_factory()
        except psycopg2.Error as e:
            raise StoreUnavailableError(f"Could not connect to metadata store: {e}") from e

        conn.autocommit = False
        cursor = conn.cursor()
        committed = False

        try:
            # SET LOCAL ensures timeouts are transaction-scoped and won't leak
            cursor.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
            cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")

            yield cursor

            conn.commit()
            committed = True
        except psycopg2.Error as e:
            raise StoreUnavailableError(f"Metadata store error: {e}") from e
        finally:
            if not committed:
                try:
                    conn.rollback()
                except psycopg2.Error:
                    pass  # Connection might be broken
            try:
                cursor.close()
            finally:
                conn.close()

    def create_schema(self) -> None:
        """Create the evidence_records table if it does not exist."""
        with self._transaction() as cursor:
            cursor.execute(SCHEMA_SQL)

    @staticmethod
    def _row_to_record(row: tuple) -> EvidenceRecord:
        return EvidenceRecord(
            id=row[0],
            evidence_id=row[1],
            provider_id=row[2],
            schema_id=row[3],
            object_locator=row[4],
            content_hash=row[5],
            table_name=row[6],
            table_id=row[7],
            block_address=BlockAddress(strand_id=row[8], sequence_no=row[9]),
            claimed_hash=row[10],
            latest_version=row[11],
            verification_status=VerificationStatus(row[12]),
            last_verified_at=row[13],
            created_at=row[14],
            updated_at=row[15],
            attachments=json.loads(row[16]) if row[16] else [],
        )

    def upsert_from_revision(self, event: RevisionEvent) -> UpsertResult:
        record = record_from_revision(event, self._clock())

        with self._transaction() as cursor:
            # Conditional upsert: the DO UPDATE only fires for a strictly newer version.
            # xmax = 0 identifies a freshly inserted row.
            cursor.execute(f"""
                INSERT INTO evidence_records ({_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    evidence_id = EXCLUDED.evidence_id,
                    provider_id = EXCLUDED.provider_id,
                    schema_id = EXCLUDED.schema_id,
                    object_locator = EXCLUDED.object_locator,
                    content_hash = EXCLUDED.content_hash,
                    table_name = EXCLUDED.table_name,
                    table_id = EXCLUDED.table_id,
                    strand_id = EXCLUDED.strand_id,
                    sequence_no = EXCLUDED.sequence_no,
                    claimed_hash = EXCLUDED.claimed_hash,
                    latest_version = EXCLUDED.latest_version,
                    verification_status = EXCLUDED.verification_status,
                    updated_at = EXCLUDED.updated_at,
                    attachments = EXCLUDED.attachments
                WHERE evidence_records.latest_version < EXCLUDED.latest_version
                RETURNING {_COLUMNS}, (xmax = 0) AS inserted
            """, (
                record.id,
                record.evidence_id,
                record.provider_id,
                record.schema_id,
                record.object_locator,
                record.content_hash,
                record.table_name,
                record.table_id,
                record.block_address.strand_id,
                record.block_address.sequence_no,
                record.claimed_hash,
                record.latest_version,
                record.verification_status.value,
                record.last_verified_at,
                record.created_at,
                record.updated_at,
                _attachments_json(record),
            ))
            row = cursor.fetchone()

            # Every decoded revision is kept, including late or duplicate ones
            cursor.execute(
                "INSERT INTO evidence_revisions (id, version, snapshot) "
                "VALUES (%s, %s, %s) ON CONFLICT (id, version) DO NOTHING",
                (record.id, record.latest_version, record.model_dump_json()),
            )

            if row is not None:
                return UpsertResult(
                    record=self._row_to_record(row),
                    applied=True,
                    created=bool(row[17]),
                )

            # Duplicate or out-of-order delivery: report the stored state
            cursor.execute(
                f"SELECT {_COLUMNS} FROM evidence_records WHERE id = %s",
                (record.id,),
            )
            stored = cursor.fetchone()

        return UpsertResult(record=self._row_to_record(stored), applied=False)

    def record_verification(
        self,
        record_id: str,
        version: int,
        status: VerificationStatus,
        verified_at: datetime,
    ) -> EvidenceRecord:
        with self._transaction() as cursor:
            cursor.execute(f"""
                UPDATE evidence_records
                SET verification_status = %s,
                    last_verified_at = %s,
                    updated_at = %s
                WHERE id = %s AND latest_version = %s
                RETURNING {_COLUMNS}
            """, (status.value, verified_at, self._clock(), record_id, version))
            row = cursor.fetchone()

            if row is None:
                cursor.execute(
                    "SELECT latest_version FROM evidence_records WHERE id = %s",
                    (record_id,),
                )
                current = cursor.fetchone()

        if row is not None:
            return self._row_to_record(row)
        if current is None:
            raise NotFoundError(f"Evidence with id {record_id} not found.")
        raise ConcurrentUpdateError(
            f"Stale version for evidence {record_id}: "
            f"wrote {version}, stored {current[0]}"
        )

    def get_by_id(self, record_id: str) -> Optional[EvidenceRecord]:
        with self._transaction() as cursor:
            cursor.execute(
                f"SELECT {_COLUMNS} FROM evidence_records WHERE id = %s",
                (record_id,),
            )
            row = cursor.fetchone()
        return self._row_to_record(row) if row is not None else None

    def get_revision(self, record_id: str, version: int) -> Optional[EvidenceRecord]:
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT snapshot FROM evidence_revisions WHERE id = %s AND version = %s",
                (record_id, version),
            )
            row = cursor.fetchone()
        return EvidenceRecord.model_validate_json(row[0]) if row is not None else None

    def count(self) -> int:
        with self._transaction() as cursor:
            cursor.execute("SELECT COUNT(*) FROM evidence_records")
            row = cursor.fetchone()
        return row[0]
