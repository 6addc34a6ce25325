"""
Digest Verification Service

Proves that a revision is committed under a trusted ledger digest.

KEY CAPABILITY:
    "Given a revision hash and a proof path, does it reproduce digest X?"

ALGORITHM:
    current = claimed_hash
    for sibling in proof_path:
        current = SHA256(ordered(current, sibling))
    verified = (current == target_hash)

ORDERING CONVENTION (fixed, never inferred at runtime):
    Hashes are compared from the LAST byte to the FIRST, each byte read as a
    signed 8-bit integer. The smaller hash is concatenated first.
    This is the convention the ledger uses when it produces proofs, so
    proofs carry sibling hashes only, no left/right directions.

BLOCK PROOF:
    When the proof also carries the committing block's hash and its own
    path, the block hash is folded the same way and must reach the same
    target. A revision proof alone does not show the block is intact.

A mismatch is a verification OUTCOME, not an error.
A hash with a bad encoding or length is a MalformedProofError.
"""

import base64
import hashlib
from dataclasses import dataclass
from typing import Optional, Sequence, Union

from ..schemas import DigestProof
from .errors import MalformedProofError
from .hasher import Hasher


HASH_LENGTH = 32

# Name of the ordering convention, recorded alongside outcomes
ORDERING_CONVENTION = "signed-bytes-last-to-first"


@dataclass
class VerificationOutcome:
    """
    Result of recomputing a digest from a revision hash.

    `verified` is False for a mismatch. That is a valid terminal result.
    """
    verified: bool
    claimed_hash: str
    computed_hash: str
    target_hash: str
    steps: int

    def to_dict(self) -> dict:
        """Convert to dictionary for logging/serialization."""
        return {
            "verified": self.verified,
            "claimed_hash": self.claimed_hash,
            "computed_hash": self.computed_hash,
            "target_hash": self.target_hash,
            "steps": self.steps,
            "ordering": ORDERING_CONVENTION,
        }


def _signed(byte: int) -> int:
    return byte - 256 if byte > 127 else byte


def compare_hashes(left: bytes, right: bytes) -> int:
    """
    Order two hashes under the ledger convention.

    Returns negative if left sorts first, positive if right does, 0 if equal.
    """
    if len(left) != HASH_LENGTH or len(right) != HASH_LENGTH:
        raise MalformedProofError(
            f"Cannot order hashes of length {len(left)} and {len(right)}; "
            f"both must be {HASH_LENGTH} bytes"
        )

    for i in range(HASH_LENGTH - 1, -1, -1):
        difference = _signed(left[i]) - _signed(right[i])
        if difference != 0:
            return difference
    return 0


def combine(left: bytes, right: bytes) -> bytes:
    """Hash two nodes together in canonical order."""
    if compare_hashes(left, right) < 0:
        concatenated = left + right
    else:
        concatenated = right + left
    return hashlib.sha256(concatenated).digest()


class DigestVerifier:
    """
    Recomputes a ledger digest from a revision hash and a proof path.

    Stateless. Safe to share across threads.
    """

    def __init__(self, hash_length: int = HASH_LENGTH):
        self._hash_length = hash_length

    def _decode(self, value: Union[str, bytes], name: str) -> bytes:
        return Hasher.decode_hash(value, expected_length=self._hash_length, name=name)

    def recompute(
        self,
        claimed_hash: Union[str, bytes],
        proof_path: Sequence[Union[str, bytes]],
    ) -> bytes:
        """
        Fold the proof path over the claimed hash.

        Raises:
            MalformedProofError: If any element has a bad encoding or length
        """
        current = self._decode(claimed_hash, "claimed hash")
        siblings = [
            self._decode(sibling, f"proof path element {i}")
            for i, sibling in enumerate(proof_path)
        ]
        for sibling in siblings:
            current = combine(current, sibling)
        return current

    def verify(
        self,
        claimed_hash: Union[str, bytes],
        proof: DigestProof,
    ) -> VerificationOutcome:
        """
        Decide whether claimed_hash + proof reproduces proof.target_hash.

        Raises:
            MalformedProofError: On input validation failure (not on mismatch)
        """
        target = self._decode(proof.target_hash, "target hash")
        computed = self.recompute(claimed_hash, proof.proof_path)

        return VerificationOutcome(
            verified=Hasher.constant_time_compare(computed, target),
            claimed_hash=_encode(claimed_hash),
            computed_hash=_encode(computed),
            target_hash=_encode(target),
            steps=len(proof.proof_path),
        )

    def verify_block(self, proof: DigestProof) -> Optional[VerificationOutcome]:
        """
        Prove the committing block's hash against the same digest.

        Returns:
            None when the proof carries no block hash

        Raises:
            MalformedProofError: On input validation failure (not on mismatch)
        """
        if proof.block_hash is None:
            return None
        return self.verify(
            proof.block_hash,
            DigestProof(
                target_hash=proof.target_hash,
                proof_path=proof.block_proof_path,
            ),
        )


def _encode(value: Union[str, bytes]) -> str:
    if isinstance(value, str):
        return value
    return base64.b64encode(value).decode("ascii")


class MerkleTree:
    """
    Merkle tree built with the ledger's ordered combine step.

    Produces sibling-only proof paths that DigestVerifier accepts.
    Used to construct proofs for tests and offline verification.
    """

    def __init__(self, leaves: Sequence[bytes]):
        """
        Build a Merkle tree from a list of leaf hashes.

        Args:
            leaves: 32-byte leaf hashes
        """
        if not leaves:
            raise ValueError("Cannot create Merkle tree with no leaves")
        for leaf in leaves:
            if len(leaf) != HASH_LENGTH:
                raise MalformedProofError(
                    f"Merkle leaves must be {HASH_LENGTH} bytes, got {len(leaf)}"
                )

        self._leaves = list(leaves)
        self._levels: list[list[bytes]] = self._build_levels(self._leaves)

    @staticmethod
    def _build_levels(leaves: list[bytes]) -> list[list[bytes]]:
        levels = [leaves]
        nodes = leaves
        while len(nodes) > 1:
            # If odd number, duplicate last node
            if len(nodes) % 2 == 1:
                nodes = nodes + [nodes[-1]]
                levels[-1] = nodes
            nodes = [
                combine(nodes[i], nodes[i + 1])
                for i in range(0, len(nodes), 2)
            ]
            levels.append(nodes)
        return levels

    @property
    def leaf_count(self) -> int:
        return len(self._leaves)

    @property
    def root(self) -> bytes:
        """Get the Merkle root hash."""
        return self._levels[-1][0]

    @property
    def root_base64(self) -> str:
        return _encode(self.root)

    def proof_path(self, index: int) -> list[bytes]:
        """
        Sibling hashes from leaf `index` up to the root.
        """
        # Padding duplicates are not leaves
        if index < 0 or index >= len(self._leaves):
            raise IndexError(f"No leaf at index {index}")

        path = []
        current_index = index
        for level in self._levels[:-1]:
            sibling_index = current_index + 1 if current_index % 2 == 0 else current_index - 1
            path.append(level[sibling_index])
            current_index //= 2
        return path

    def digest_proof(
        self,
        index: int,
        tip_address: Optional[dict] = None,
        block_index: Optional[int] = None,
    ) -> DigestProof:
        """
        Build a DigestProof for leaf `index` against this tree's root.

        With block_index, the leaf at that index is carried as the block
        hash together with its own proof path.
        """
        block_hash = None
        block_proof_path: list[str] = []
        if block_index is not None:
            block_hash = _encode(self._leaves[block_index])
            block_proof_path = [_encode(h) for h in self.proof_path(block_index)]

        return DigestProof(
            target_hash=self.root_base64,
            proof_path=[_encode(h) for h in self.proof_path(index)],
            digest_tip_address=tip_address,
            block_hash=block_hash,
            block_proof_path=block_proof_path,
        )
