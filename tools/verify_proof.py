#!/usr/bin/env python3
"""
Evidence Proof Verifier

A standalone tool to check a revision against a saved ledger digest proof.
No server connection required - verification is recomputation.

Bundle format:
    {
        "revisionHash": "<base64 revision hash>",      (or "record": <stream record>)
        "proof": {
            "targetHash": "<base64 digest>",
            "proofPath": ["<base64 sibling>", ...],
            "digestTipAddress": {"strandId": "...", "sequenceNo": 0},
            "blockHash": "<base64 block hash>",               (optional)
            "blockProofPath": ["<base64 sibling>", ...]
        },
        "contentHash": "<base64/base64url SHA-256 of the content>"   (optional)
    }

Usage:
    python verify_proof.py bundle.json
    python verify_proof.py bundle.json --content evidence.json
    python verify_proof.py bundle.json --json

Exit codes:
    0 - VERIFIED: Revision hash reproduces the digest (and content matches)
    1 - TAMPERED: Digest or content hash mismatch
    3 - INVALID_FORMAT: Bundle structure invalid
"""

import argparse
import json
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from evidence_store.core.digest import DigestVerifier
from evidence_store.core.errors import EvidenceStoreError
from evidence_store.core.hasher import Hasher
from evidence_store.core.ledger_client import parse_digest_proof
from evidence_store.core.parser import StreamRecordParser, decode_revision_details


# ============================================================
# Result Types
# ============================================================

class ProofResult(Enum):
    VERIFIED = "VERIFIED"
    TAMPERED = "TAMPERED"
    INVALID_FORMAT = "INVALID_FORMAT"


EXIT_CODES = {
    ProofResult.VERIFIED: 0,
    ProofResult.TAMPERED: 1,
    ProofResult.INVALID_FORMAT: 3,
}


@dataclass
class ProofReport:
    result: ProofResult
    checks_passed: list[str] = field(default_factory=list)
    checks_failed: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)


# ============================================================
# Verification
# ============================================================

def _claimed_hash(bundle: dict) -> str:
    if "revisionHash" in bundle:
        return bundle["revisionHash"]
    if "record" in bundle:
        record = StreamRecordParser.unwrap(bundle["record"])
        return decode_revision_details(record).claimed_hash
    raise ValueError("Bundle has neither revisionHash nor record")


def verify_bundle(bundle: Any, content: Optional[bytes] = None) -> ProofReport:
    """Check a proof bundle, and optionally the content it vouches for."""
    report = ProofReport(result=ProofResult.VERIFIED)

    if not isinstance(bundle, dict) or "proof" not in bundle:
        report.result = ProofResult.INVALID_FORMAT
        report.checks_failed.append("Bundle must be an object with a proof")
        return report

    try:
        claimed_hash = _claimed_hash(bundle)
        proof = parse_digest_proof(bundle["proof"])
        verifier = DigestVerifier()
        outcome = verifier.verify(claimed_hash, proof)
        block = verifier.verify_block(proof)
    except (EvidenceStoreError, ValueError) as e:
        report.result = ProofResult.INVALID_FORMAT
        report.checks_failed.append(str(e))
        return report

    report.details.update(outcome.to_dict())

    if outcome.verified:
        report.checks_passed.append(
            f"Revision hash reproduces digest in {outcome.steps} steps"
        )
    else:
        report.result = ProofResult.TAMPERED
        report.checks_failed.append("Recomputed digest does not match target")

    if block is not None:
        if block.verified:
            report.checks_passed.append(
                f"Block hash reproduces digest in {block.steps} steps"
            )
        else:
            report.result = ProofResult.TAMPERED
            report.checks_failed.append("Block hash does not reproduce the digest")

    expected = bundle.get("contentHash")
    if content is not None:
        if not expected:
            report.result = ProofResult.INVALID_FORMAT
            report.checks_failed.append("Content given but bundle has no contentHash")
        elif Hasher.content_matches(content, expected):
            report.checks_passed.append("Content hash matches")
        else:
            report.result = ProofResult.TAMPERED
            report.checks_failed.append("Content hash mismatch")
            report.details["actual_content_hash"] = Hasher.compute_hash(content, "base64url")

    return report


# ============================================================
# CLI
# ============================================================

def print_report(report: ProofReport, json_output: bool = False):
    """Print verification report."""
    if json_output:
        print(json.dumps({
            "result": report.result.value,
            "checks_passed": report.checks_passed,
            "checks_failed": report.checks_failed,
            "details": report.details,
        }, indent=2))
        return

    banners = {
        ProofResult.VERIFIED: "[VERIFIED] - All checks passed",
        ProofResult.TAMPERED: "[TAMPERED] - Digest or content mismatch detected",
        ProofResult.INVALID_FORMAT: "[INVALID_FORMAT] - Bundle structure invalid",
    }
    print("\n" + "=" * 60)
    print(f"  {banners[report.result]}")
    print("=" * 60)

    if report.checks_passed:
        print("\nPassed:")
        for check in report.checks_passed:
            print(f"  + {check}")

    if report.checks_failed:
        print("\nFailed:")
        for check in report.checks_failed:
            print(f"  - {check}")

    print()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Verify an evidence revision against a saved ledger digest proof",
        epilog="Exit codes: 0=VERIFIED, 1=TAMPERED, 3=INVALID_FORMAT"
    )
    parser.add_argument("bundle", type=str, help="Path to the proof bundle JSON file")
    parser.add_argument("--content", type=str, help="Path to the evidence content to hash")
    parser.add_argument("--json", action="store_true", help="Output result as JSON")

    args = parser.parse_args(argv)

    bundle_path = Path(args.bundle)
    if not bundle_path.exists():
        print(f"ERROR: File not found: {bundle_path}")
        return 3

    try:
        with open(bundle_path, "r", encoding="utf-8") as f:
            bundle = json.load(f)
    except json.JSONDecodeError as e:
        print(f"ERROR: Invalid JSON: {e}")
        return 3

    content = None
    if args.content:
        try:
            content = Path(args.content).read_bytes()
        except OSError as e:
            print(f"ERROR: Failed to read content: {e}")
            return 3

    report = verify_bundle(bundle, content)
    print_report(report, json_output=args.json)
    return EXIT_CODES[report.result]


if __name__ == "__main__":
    sys.exit(main())
