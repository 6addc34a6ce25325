"""
Demonstration: Evidence Verification Lifecycle

This example shows how a canary evidence record flows through the
system: stored off-ledger, ingested from the change stream, verified
against a ledger digest, tampered with, and caught.

Run with: python -m examples.demo_verification
"""

import base64

from evidence_store.core import (
    EvidenceContentRepository,
    Hasher,
    InMemoryDigestEndpoint,
    InMemoryObjectStore,
    MerkleTree,
    ObjectLocator,
    VerificationService,
)
from evidence_store.db import InMemoryEvidenceMetadataStore
from evidence_store.schemas import BlockAddress


TABLE_ID = "6WXz9wdajiY7K5u6YwGUN4"
ADDRESS = BlockAddress(strand_id="0VwGeHD7Q9LL4HSC55gDSp", sequence_no=33)


def banner(title: str) -> None:
    print("=" * 60)
    print(title)
    print("=" * 60)


def main():
    banner("Evidence Store - Verification Demonstration")
    print()

    # Initialize services
    object_store = InMemoryObjectStore()
    locator = ObjectLocator(host="s3.amazonaws.com", signing_secret="demo-secret")
    content = EvidenceContentRepository(object_store, locator, "evidence-content")
    endpoint = InMemoryDigestEndpoint()
    service = VerificationService(
        store=InMemoryEvidenceMetadataStore(),
        digest_endpoint=endpoint,
        content=content,
    )

    # ================================================================
    # STEP 1: STORE CONTENT OFF-LEDGER
    # ================================================================
    banner("STEP 1: STORE CONTENT OFF-LEDGER")
    body = b'{"codeCoverage": "80%", "executionId": "ac25a528"}'
    url, content_hash = content.put_content("canary-authority", "canary", body)
    print(f"[OK] Content stored")
    print(f"   Locator: {url}")
    print(f"   Content Hash: {content_hash}")
    print()

    # ================================================================
    # STEP 2: LEDGER COMMITS A REVISION, STREAM DELIVERS IT
    # ================================================================
    banner("STEP 2: INGEST REVISION FROM CHANGE STREAM")
    revision_hash = Hasher.hash_bytes(b"revision 0 of canary evidence")
    record = {
        "recordType": "REVISION_DETAILS",
        "qldbStreamArn": "arn:aws:qldb:ap-southeast-2:123456789012:stream/Evidences/demo",
        "payload": {
            "tableInfo": {"tableName": "evidences", "tableId": TABLE_ID},
            "revision": {
                "blockAddress": {"strandId": ADDRESS.strand_id, "sequenceNo": ADDRESS.sequence_no},
                "hash": base64.b64encode(revision_hash).decode("ascii"),
                "data": {
                    "evidenceId": "34e8e89a-3e5d-4add-b435-c052081309dc",
                    "providerId": "canary-authority",
                    "contentLocation": url,
                    "contentHash": content_hash,
                },
                "metadata": {
                    "id": "5pxmz8FD9Aj8Cbl5kuvXxP",
                    "version": 0,
                    "txTime": "2021-06-02T03:02:44.472Z",
                    "txId": "KFz7yR2SbH4Ts9x0wO1L3c",
                },
            },
        },
    }
    summary = service.ingest([record, {"recordType": "CONTROL"}])
    print(f"[OK] Batch ingested")
    print(f"   Accepted: {summary.accepted}  Ignored: {summary.ignored}")
    print()

    # ================================================================
    # STEP 3: LEDGER PUBLISHES A DIGEST
    # ================================================================
    banner("STEP 3: LEDGER DIGEST PUBLISHED")
    tree = MerkleTree([
        Hasher.hash_bytes(b"some other revision"),
        revision_hash,
        Hasher.hash_bytes(b"yet another revision"),
    ])
    endpoint.publish(TABLE_ID, ADDRESS, tree.digest_proof(1))
    print(f"[OK] Digest: {tree.root_base64}")
    print()

    # ================================================================
    # STEP 4: VERIFY
    # ================================================================
    banner("STEP 4: VERIFY")
    result = service.verify("5pxmz8FD9Aj8Cbl5kuvXxP")
    print(f"   Status: {result.status.value}")
    print(f"   Last Verified: {result.last_verified_at.isoformat()}")
    print()

    # ================================================================
    # STEP 5: TAMPER WITH THE CONTENT
    # ================================================================
    banner("STEP 5: TAMPER WITH OFF-LEDGER CONTENT")
    bucket, key = locator.parse_locator(url)
    object_store.put_object(bucket, key, b'{"codeCoverage": "99%", "executionId": "ac25a528"}')
    result = service.verify("5pxmz8FD9Aj8Cbl5kuvXxP")
    print(f"   Status: {result.status.value}")
    print()

    # ================================================================
    # STEP 6: SIGNED DOWNLOAD LINK
    # ================================================================
    banner("STEP 6: SIGNED ATTACHMENT LINK")
    print(f"   {service.attachment_link('5pxmz8FD9Aj8Cbl5kuvXxP', ttl=60)}")
    print()

    banner("DEMONSTRATION COMPLETE")
    print()
    print(service.metrics.get_summary())
    print("\nRun the API server: uvicorn evidence_store.main:app --reload --port 8002")


if __name__ == "__main__":
    main()
