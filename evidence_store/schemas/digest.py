"""
Digest Proof Schema

A DigestProof pairs a trusted ledger-wide digest (the root)
with the ordered sibling hashes that lead to it from one revision.
"""

from typing import Optional

from pydantic import BaseModel, Field

from .revision import BlockAddress


class DigestProof(BaseModel):
    """
    Proof that a revision hash is committed under a ledger digest.

    Rules:
    - proof_path is ordered leaf → root
    - len(proof_path) is the number of combine-and-hash steps
    - An empty proof_path means the claimed hash must equal target_hash
    - block_hash / block_proof_path are optional and prove the committing
      block against the same target_hash
    """
    target_hash: str = Field(
        ...,
        description="Base64 ledger digest at a point in time"
    )
    proof_path: list[str] = Field(
        default_factory=list,
        description="Base64 sibling hashes, leaf to root"
    )
    digest_tip_address: Optional[BlockAddress] = Field(
        default=None,
        description="Block address the digest covers up to"
    )
    block_hash: Optional[str] = Field(
        default=None,
        description="Base64 hash of the committing block, if the ledger returned it"
    )
    block_proof_path: list[str] = Field(
        default_factory=list,
        description="Base64 sibling hashes from the block hash to the digest"
    )

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "target_hash": "n2sC6wN+0YdyVuqGa1v7k2AGoHjQYMvXbCclFqt4ff0=",
                "proof_path": [
                    "vXpocqltDJWZvaMnfA7E5B+ytRYsx//WpHVR595NxCQ=",
                    "XUlOGKbsjdlP6D9R3AcI8USkp6/pbUvpMuNAwZdmjgM="
                ],
                "digest_tip_address": {"strand_id": "0VwGeHD7Q9LL4HSC55gDSp", "sequence_no": 40}
            }
        }
