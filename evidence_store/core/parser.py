"""
Stream Record Parser

Turns raw change-stream entries into typed RevisionEvents.

Accepted entry shapes:
- Decoded record:   {"recordType": "...", "qldbStreamArn": "...", "payload": {...}}
- Stream envelope:  {"data": "<base64 JSON record>"}
- Kinesis record:   {"kinesis": {"data": "<base64 JSON record>"}}

Dispatch is a plain table: record kind → handler function.
Kinds without a handler (BLOCK_SUMMARY, CONTROL, anything new) are dropped.

Error contract:
- A REVISION_DETAILS entry that fails structural decoding raises
  MalformedRecordError. There is no partial recovery of a single entry.
- iter_events() lets the caller choose: pass on_error to skip bad entries
  and keep going, or omit it to abort on the first one.
"""

import base64
import binascii
import json
from datetime import datetime
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional

from pydantic import ValidationError

from ..observability import get_logger
from ..schemas import (
    AttachmentRef,
    BlockAddress,
    EvidenceAttributes,
    RecordKind,
    RevisionEvent,
    RevisionMetadata,
)
from .errors import MalformedRecordError


logger = get_logger(__name__)

RecordHandler = Callable[[Mapping[str, Any]], RevisionEvent]


def _require(mapping: Any, key: str, path: str) -> Any:
    if not isinstance(mapping, Mapping):
        raise MalformedRecordError(
            f"Expected an object at {path}, got {type(mapping).__name__}",
            RecordKind.REVISION_DETAILS.value,
        )
    value = mapping.get(key)
    if value is None:
        raise MalformedRecordError(
            f"Missing field {path}.{key}",
            RecordKind.REVISION_DETAILS.value,
        )
    return value


def _encode_payload(data: Any) -> bytes:
    if data is None:
        return b""
    if isinstance(data, str):
        return data.encode("utf-8")
    return json.dumps(data, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")


def _attributes(data: Any) -> EvidenceAttributes:
    if not isinstance(data, Mapping):
        return EvidenceAttributes()
    return EvidenceAttributes(
        evidence_id=data.get("evidenceId"),
        provider_id=data.get("providerId"),
        schema_id=data.get("schemaId"),
        content_location=data.get("contentLocation"),
        content_hash=data.get("contentHash"),
        attachments=[_attachment(item) for item in data.get("attachments") or []],
    )


def _attachment(item: Any) -> AttachmentRef:
    if not isinstance(item, Mapping):
        raise MalformedRecordError(
            f"Attachment must be an object, got {type(item).__name__}",
            RecordKind.REVISION_DETAILS.value,
        )
    return AttachmentRef(
        bucket_name=item.get("bucketName"),
        object_key=item.get("objectKey"),
        hash=item.get("hash"),
    )


def decode_revision_details(record: Mapping[str, Any]) -> RevisionEvent:
    """
    Decode a REVISION_DETAILS record into a RevisionEvent.

    Raises:
        MalformedRecordError: If any required field is missing or mistyped
    """
    payload = _require(record, "payload", "record")
    table_info = _require(payload, "tableInfo", "payload")
    revision = _require(payload, "revision", "payload")
    block_address = _require(revision, "blockAddress", "payload.revision")
    metadata = _require(revision, "metadata", "payload.revision")
    claimed_hash = _require(revision, "hash", "payload.revision")

    if not isinstance(claimed_hash, str) or not claimed_hash:
        raise MalformedRecordError(
            "payload.revision.hash must be a non-empty base64 string",
            RecordKind.REVISION_DETAILS.value,
        )

    data = revision.get("data")

    try:
        return RevisionEvent(
            stream_source_id=str(record.get("qldbStreamArn", "")),
            record_kind=RecordKind.REVISION_DETAILS,
            table_name=_require(table_info, "tableName", "payload.tableInfo"),
            table_id=_require(table_info, "tableId", "payload.tableInfo"),
            block_address=BlockAddress(
                strand_id=_require(block_address, "strandId", "payload.revision.blockAddress"),
                sequence_no=_require(block_address, "sequenceNo", "payload.revision.blockAddress"),
            ),
            claimed_hash=claimed_hash,
            payload=_encode_payload(data),
            attributes=_attributes(data),
            revision_metadata=RevisionMetadata(
                id=_require(metadata, "id", "payload.revision.metadata"),
                version=_require(metadata, "version", "payload.revision.metadata"),
                tx_time=_parse_time(_require(metadata, "txTime", "payload.revision.metadata")),
                tx_id=_require(metadata, "txId", "payload.revision.metadata"),
            ),
        )
    except ValidationError as e:
        raise MalformedRecordError(
            f"Revision record failed validation: {e.errors()[0].get('msg', str(e))}",
            RecordKind.REVISION_DETAILS.value,
        ) from e


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise MalformedRecordError(
                f"Invalid txTime: {value!r}", RecordKind.REVISION_DETAILS.value
            ) from e
    raise MalformedRecordError(
        f"Invalid txTime type: {type(value).__name__}",
        RecordKind.REVISION_DETAILS.value,
    )


DEFAULT_HANDLERS: dict[str, RecordHandler] = {
    RecordKind.REVISION_DETAILS.value: decode_revision_details,
}


class StreamRecordParser:
    """
    Decodes change-stream batches into RevisionEvents.

    Usage:
        parser = StreamRecordParser(table_name="evidences")
        for event in parser.iter_events(batch, on_error=errors.append):
            ...
    """

    def __init__(
        self,
        table_name: Optional[str] = None,
        handlers: Optional[Mapping[str, RecordHandler]] = None,
    ):
        """
        Args:
            table_name: Only keep revisions of this ledger table (None keeps all)
            handlers: Record kind → handler table (defaults to DEFAULT_HANDLERS)
        """
        self._table_name = table_name
        self._handlers = dict(DEFAULT_HANDLERS if handlers is None else handlers)

    @staticmethod
    def unwrap(entry: Any) -> Mapping[str, Any]:
        """
        Reduce any accepted entry shape to a decoded record mapping.

        Raises:
            MalformedRecordError: If the envelope cannot be decoded
        """
        if isinstance(entry, (bytes, bytearray)):
            return StreamRecordParser._decode_blob(bytes(entry))
        if not isinstance(entry, Mapping):
            raise MalformedRecordError(
                f"Stream entry must be an object, got {type(entry).__name__}"
            )

        if "kinesis" in entry and isinstance(entry["kinesis"], Mapping):
            entry = entry["kinesis"]

        if "recordType" in entry or "recordKind" in entry:
            return entry

        blob = entry.get("data")
        if isinstance(blob, (str, bytes)):
            return StreamRecordParser._decode_blob(blob)

        raise MalformedRecordError("Stream entry has no record kind and no data")

    @staticmethod
    def _decode_blob(blob: Any) -> Mapping[str, Any]:
        try:
            raw = base64.b64decode(blob, validate=True) if isinstance(blob, str) else blob
            decoded = json.loads(raw)
        except (binascii.Error, ValueError, UnicodeDecodeError) as e:
            raise MalformedRecordError(f"Undecodable stream entry: {e}") from e
        if not isinstance(decoded, Mapping):
            raise MalformedRecordError("Decoded stream entry is not an object")
        return decoded

    def parse(self, entry: Any) -> Optional[RevisionEvent]:
        """
        Parse one entry.

        Returns:
            RevisionEvent, or None if the entry is not a revision of interest

        Raises:
            MalformedRecordError: If a revision-details entry cannot be decoded
        """
        record = self.unwrap(entry)
        kind = record.get("recordType") or record.get("recordKind")
        if not isinstance(kind, str):
            raise MalformedRecordError(f"Record kind must be a string, got {type(kind).__name__}")

        handler = self._handlers.get(kind)
        if handler is None:
            return None

        event = handler(record)
        if self._table_name is not None and event.table_name != self._table_name:
            return None
        return event

    def iter_events(
        self,
        batch: Iterable[Any],
        on_error: Optional[Callable[[MalformedRecordError], None]] = None,
        on_ignored: Optional[Callable[[Any], None]] = None,
    ) -> Iterator[RevisionEvent]:
        """
        Lazily parse a batch. The batch is consumed once.

        Args:
            batch: Raw change-stream entries
            on_error: Called with each MalformedRecordError; parsing continues.
                      If None, the first error propagates and the batch aborts.
            on_ignored: Called with each dropped (non-revision) entry
        """
        for index, entry in enumerate(batch):
            try:
                event = self.parse(entry)
            except MalformedRecordError as e:
                if on_error is None:
                    raise
                logger.warning(
                    "Skipping malformed stream record",
                    index=index,
                    record_kind=e.record_kind,
                    error=e.message,
                )
                on_error(e)
                continue

            if event is None:
                if on_ignored is not None:
                    on_ignored(entry)
                continue

            yield event
