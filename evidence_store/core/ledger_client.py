"""
Ledger Digest Endpoint

The ledger hands out fresh digest proofs:

    get_digest_proof(table_id, block_address) -> DigestProof

This is an external collaborator. It may fail transiently, and every
call carries a caller-supplied timeout. Failures surface as
DigestUnavailableError (retryable), never as a verification outcome.
"""

from abc import ABC, abstractmethod
from threading import Lock
from typing import Any, Callable, Optional

import httpx
from pydantic import ValidationError

from ..observability import get_logger
from ..schemas import BlockAddress, DigestProof
from .errors import DigestUnavailableError, MalformedProofError


logger = get_logger(__name__)


class DigestEndpoint(ABC):
    """Source of trusted digest proofs."""

    @abstractmethod
    def get_digest_proof(
        self,
        table_id: str,
        block_address: BlockAddress,
        timeout: Optional[float] = None,
    ) -> DigestProof:
        """
        Fetch a fresh proof for the revision committed at block_address.

        Raises:
            DigestUnavailableError: On failure or timeout
        """
        pass

    def close(self) -> None:
        """Release any network resources. No-op by default."""


class InMemoryDigestEndpoint(DigestEndpoint):
    """
    In-memory digest endpoint for development and testing.

    Proofs are registered per (table_id, strand_id, sequence_no).
    A `resolver` callable may be supplied instead to compute proofs on demand.
    """

    def __init__(
        self,
        resolver: Optional[Callable[[str, BlockAddress], DigestProof]] = None,
    ):
        self._proofs: dict[tuple[str, str, int], DigestProof] = {}
        self._resolver = resolver
        self._lock = Lock()
        self.calls = 0

    def publish(self, table_id: str, block_address: BlockAddress, proof: DigestProof) -> None:
        """Register (or rotate) the proof for a block address."""
        with self._lock:
            self._proofs[(table_id, block_address.strand_id, block_address.sequence_no)] = proof

    def get_digest_proof(
        self,
        table_id: str,
        block_address: BlockAddress,
        timeout: Optional[float] = None,
    ) -> DigestProof:
        with self._lock:
            self.calls += 1
            proof = self._proofs.get(
                (table_id, block_address.strand_id, block_address.sequence_no)
            )
        if proof is None and self._resolver is not None:
            proof = self._resolver(table_id, block_address)
        if proof is None:
            raise DigestUnavailableError(
                f"No digest proof available for table {table_id} at "
                f"{block_address.strand_id}/{block_address.sequence_no}"
            )
        return proof


class HttpDigestEndpoint(DigestEndpoint):
    """
    Digest endpoint over HTTP.

    GET {base_url}/ledgers/{ledger_name}/tables/{table_id}/digest-proof
        ?strandId=...&sequenceNo=...

    Response body:
        {"targetHash": "...", "proofPath": ["..."], "digestTipAddress": {...},
         "blockHash": "...", "blockProofPath": ["..."]}

    blockHash and blockProofPath are optional.
    """

    def __init__(
        self,
        base_url: str,
        ledger_name: str,
        default_timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ):
        self._ledger_name = ledger_name
        self._default_timeout = default_timeout
        self._client = client or httpx.Client(base_url=base_url.rstrip("/"))

    def close(self) -> None:
        self._client.close()

    def get_digest_proof(
        self,
        table_id: str,
        block_address: BlockAddress,
        timeout: Optional[float] = None,
    ) -> DigestProof:
        path = f"/ledgers/{self._ledger_name}/tables/{table_id}/digest-proof"
        params = {
            "strandId": block_address.strand_id,
            "sequenceNo": block_address.sequence_no,
        }

        try:
            response = self._client.get(
                path,
                params=params,
                timeout=timeout if timeout is not None else self._default_timeout,
            )
        except httpx.TimeoutException as e:
            raise DigestUnavailableError(
                f"Timed out fetching digest for ledger {self._ledger_name}"
            ) from e
        except httpx.HTTPError as e:
            raise DigestUnavailableError(
                f"An error occurred while retrieving digest for ledger "
                f"{self._ledger_name}: {e}"
            ) from e

        if response.status_code != 200:
            logger.warning(
                "Digest endpoint returned an error",
                ledger=self._ledger_name,
                status_code=response.status_code,
            )
            raise DigestUnavailableError(
                f"Digest endpoint returned HTTP {response.status_code} "
                f"for ledger {self._ledger_name}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise MalformedProofError("Digest endpoint returned invalid JSON") from e

        return parse_digest_proof(body)


def parse_digest_proof(body: Any) -> DigestProof:
    """
    Decode the wire form of a digest proof.

    Raises:
        MalformedProofError: If the body is not a valid proof
    """
    if not isinstance(body, dict):
        raise MalformedProofError("Digest proof must be a JSON object")

    tip = body.get("digestTipAddress")
    try:
        return DigestProof(
            target_hash=body.get("targetHash"),
            proof_path=body.get("proofPath") or [],
            block_hash=body.get("blockHash"),
            block_proof_path=body.get("blockProofPath") or [],
            digest_tip_address=(
                BlockAddress(strand_id=tip["strandId"], sequence_no=tip["sequenceNo"])
                if isinstance(tip, dict)
                else None
            ),
        )
    except (ValidationError, KeyError) as e:
        raise MalformedProofError(f"Invalid digest proof: {e}") from e
