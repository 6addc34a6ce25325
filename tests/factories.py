"""
Builders for stream records, proofs and clocks used across the tests.

Stream records are built in the decoded wire shape the change stream emits.
"""

import base64
import json
from datetime import datetime, timedelta, timezone

from evidence_store.core import Hasher, InMemoryDigestEndpoint, MerkleTree
from evidence_store.schemas import BlockAddress


TABLE_ID = "6WXz9wdajiY7K5u6YwGUN4"
STREAM_ARN = "arn:aws:qldb:ap-southeast-2:123456789012:stream/Evidences/abc"


def leaf(label: str) -> bytes:
    return Hasher.hash_bytes(label)


def b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def revision_record(
    doc_id: str = "E1",
    version: int = 0,
    claimed_hash: str = None,
    table_name: str = "evidences",
    strand_id: str = "strand-A",
    sequence_no: int = 1,
    data: dict = None,
) -> dict:
    """A decoded REVISION_DETAILS record."""
    return {
        "recordType": "REVISION_DETAILS",
        "qldbStreamArn": STREAM_ARN,
        "payload": {
            "tableInfo": {"tableName": table_name, "tableId": TABLE_ID},
            "revision": {
                "blockAddress": {"strandId": strand_id, "sequenceNo": sequence_no},
                "hash": claimed_hash or b64(leaf(f"{doc_id}-v{version}")),
                "data": data if data is not None else {
                    "evidenceId": f"evidence-{doc_id}",
                    "providerId": "canary-authority",
                    "schemaId": "canary-test-schema",
                },
                "metadata": {
                    "id": doc_id,
                    "version": version,
                    "txTime": "2021-06-02T03:02:44.472Z",
                    "txId": f"tx-{doc_id}-{version}",
                },
            },
        },
    }


def kinesis_envelope(record: dict) -> dict:
    blob = base64.b64encode(json.dumps(record).encode("utf-8")).decode("ascii")
    return {"kinesis": {"data": blob}}


def publish_proof(
    endpoint: InMemoryDigestEndpoint,
    claimed_hash: str,
    strand_id: str = "strand-A",
    sequence_no: int = 1,
) -> MerkleTree:
    """Build a 4-leaf tree containing claimed_hash and publish its proof."""
    leaves = [leaf("left"), Hasher.decode_hash(claimed_hash), leaf("right"), leaf("far")]
    tree = MerkleTree(leaves)
    address = BlockAddress(strand_id=strand_id, sequence_no=sequence_no)
    endpoint.publish(TABLE_ID, address, tree.digest_proof(1))
    return tree


class FixedClock:
    """Clock that advances one second per call."""

    def __init__(self, start: datetime = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)):
        self._now = start

    def __call__(self) -> datetime:
        self._now = self._now + timedelta(seconds=1)
        return self._now
