"""
Tests for the offline proof verifier CLI (tools/verify_proof.py).
"""

import importlib.util
import json
from pathlib import Path

import pytest

from evidence_store.core import Hasher, MerkleTree

from factories import b64, leaf, revision_record


TOOL_PATH = Path(__file__).resolve().parent.parent / "tools" / "verify_proof.py"


@pytest.fixture(scope="module")
def tool():
    loader_spec = importlib.util.spec_from_file_location("verify_proof", TOOL_PATH)
    module = importlib.util.module_from_spec(loader_spec)
    loader_spec.loader.exec_module(module)
    return module


def proof_bundle(claimed_hash: str, **extra) -> dict:
    tree = MerkleTree([leaf("left"), Hasher.decode_hash(claimed_hash), leaf("right")])
    proof = tree.digest_proof(1)
    bundle = {
        "proof": {
            "targetHash": proof.target_hash,
            "proofPath": proof.proof_path,
        },
    }
    bundle.update(extra)
    return bundle


class TestVerifyProofTool:
    """Test the standalone verifier."""

    def test_verified_bundle(self, tool):
        h = b64(leaf("revision"))
        report = tool.verify_bundle(proof_bundle(h, revisionHash=h))
        assert report.result == tool.ProofResult.VERIFIED
        assert report.details["steps"] == 2

    def test_bundle_from_stream_record(self, tool):
        h = b64(leaf("revision"))
        report = tool.verify_bundle(proof_bundle(h, record=revision_record(claimed_hash=h)))
        assert report.result == tool.ProofResult.VERIFIED

    def test_tampered_bundle(self, tool):
        bundle = proof_bundle(b64(leaf("revision")), revisionHash=b64(leaf("forged")))
        assert tool.verify_bundle(bundle).result == tool.ProofResult.TAMPERED

    def test_content_check(self, tool):
        h = b64(leaf("revision"))
        content = b"evidence body"
        bundle = proof_bundle(h, revisionHash=h, contentHash=Hasher.compute_hash(content, "base64url"))
        assert tool.verify_bundle(bundle, content).result == tool.ProofResult.VERIFIED
        assert tool.verify_bundle(bundle, b"edited body").result == tool.ProofResult.TAMPERED

    def test_block_proof(self, tool):
        h = b64(leaf("revision"))
        tree = MerkleTree([leaf("left"), Hasher.decode_hash(h), leaf("block")])
        proof = tree.digest_proof(1, block_index=2)
        bundle = {
            "revisionHash": h,
            "proof": {
                "targetHash": proof.target_hash,
                "proofPath": proof.proof_path,
                "blockHash": proof.block_hash,
                "blockProofPath": proof.block_proof_path,
            },
        }
        report = tool.verify_bundle(bundle)
        assert report.result == tool.ProofResult.VERIFIED
        assert any("Block hash" in check for check in report.checks_passed)

        bundle["proof"]["blockHash"] = b64(leaf("forged block"))
        report = tool.verify_bundle(bundle)
        assert report.result == tool.ProofResult.TAMPERED
        assert "Block hash does not reproduce the digest" in report.checks_failed

    @pytest.mark.parametrize("bundle", [[], {}, {"proof": {"targetHash": "abc"}}, {"proof": {}, "revisionHash": "x"}])
    def test_invalid_format(self, tool, bundle):
        assert tool.verify_bundle(bundle).result == tool.ProofResult.INVALID_FORMAT

    def test_main_exit_codes(self, tool, tmp_path, capsys):
        h = b64(leaf("revision"))
        good = tmp_path / "good.json"
        good.write_text(json.dumps(proof_bundle(h, revisionHash=h)))
        bad = tmp_path / "bad.json"
        bad.write_text(json.dumps(proof_bundle(h, revisionHash=b64(leaf("forged")))))

        assert tool.main([str(good), "--json"]) == 0
        assert json.loads(capsys.readouterr().out)["result"] == "VERIFIED"
        assert tool.main([str(bad)]) == 1
        assert tool.main([str(tmp_path / "missing.json")]) == 3
