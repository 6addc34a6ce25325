"""
Hashing and Encoding Service

Handles one-way content hashing and base64 / base64url conversion.
Same input → same hash. Always.

Ledger hashes travel as standard base64 strings.
Content hashes written by providers may be base64 OR base64url,
so every comparison must accept both alphabets.

ENCODING RULES:
1. Hash function: SHA-256 (32-byte digest)
2. Standard alphabet: A-Z a-z 0-9 + /  with "=" padding
3. URL-safe alphabet: A-Z a-z 0-9 - _  with padding stripped
4. to_url_safe / from_url_safe are exact inverses for every valid digest
"""

import base64
import binascii
import hashlib
import hmac
from typing import Union

from .errors import MalformedProofError


class Hasher:
    """
    SHA-256 hashing and base64 alphabet conversion.

    IMMUTABLE CONTRACT:
    - Same input → same digest
    - Fixed 32-byte output
    """

    ALGORITHM = "sha256"
    DIGEST_SIZE = 32

    @classmethod
    def hash_bytes(cls, data: Union[bytes, bytearray, str]) -> bytes:
        """
        Hash raw data with SHA-256.

        Strings are encoded as UTF-8 first.

        Returns:
            32-byte digest
        """
        if isinstance(data, str):
            data = data.encode("utf-8")
        return hashlib.sha256(bytes(data)).digest()

    @classmethod
    def compute_hash(
        cls,
        content: Union[bytes, str],
        encoding: str = "base64",
    ) -> str:
        """
        Hash content and encode the digest.

        Args:
            content: Content to hash (str is UTF-8 encoded)
            encoding: "base64", "base64url" or "hex"

        Returns:
            Encoded SHA-256 digest
        """
        digest = cls.hash_bytes(content)
        if encoding == "base64":
            return base64.b64encode(digest).decode("ascii")
        if encoding == "base64url":
            return cls.to_url_safe(base64.b64encode(digest).decode("ascii"))
        if encoding == "hex":
            return digest.hex()
        raise ValueError(
            f"Unsupported encoding: {encoding}. Use base64, base64url or hex."
        )

    @staticmethod
    def to_url_safe(value: str) -> str:
        """
        Convert standard base64 to base64url.

        '+' → '-', '/' → '_', trailing '=' padding removed.
        """
        return value.replace("+", "-").replace("/", "_").rstrip("=")

    @staticmethod
    def from_url_safe(value: str) -> str:
        """
        Convert base64url back to standard base64.

        '-' → '+', '_' → '/', padding restored to a multiple of 4.
        """
        converted = value.replace("-", "+").replace("_", "/")
        return converted + "=" * (-len(converted) % 4)

    @classmethod
    def decode_hash(
        cls,
        value: Union[str, bytes],
        expected_length: int = DIGEST_SIZE,
        name: str = "hash",
    ) -> bytes:
        """
        Strictly decode a base64 (either alphabet) hash.

        Raises:
            MalformedProofError: Bad encoding or wrong decoded length
        """
        if isinstance(value, (bytes, bytearray)):
            raw = bytes(value)
        elif isinstance(value, str):
            try:
                raw = base64.b64decode(cls.from_url_safe(value), validate=True)
            except (binascii.Error, ValueError) as e:
                raise MalformedProofError(
                    f"Invalid base64 encoding for {name}: {value!r}"
                ) from e
        else:
            raise MalformedProofError(
                f"Unsupported type for {name}: {type(value).__name__}"
            )

        if len(raw) != expected_length:
            raise MalformedProofError(
                f"Invalid {name} length: expected {expected_length} bytes, "
                f"got {len(raw)}"
            )
        return raw

    @classmethod
    def content_matches(cls, content: Union[bytes, str], expected_hash: str) -> bool:
        """
        Check content against a stored hash written in either alphabet.
        """
        computed = cls.compute_hash(content, "base64")
        if cls.constant_time_compare(computed, expected_hash):
            return True
        return cls.constant_time_compare(cls.to_url_safe(computed), expected_hash)

    @staticmethod
    def constant_time_compare(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
        """
        Compare two values in constant time.

        Prevents timing attacks where an attacker could learn
        about the hash by measuring comparison time.
        """
        if isinstance(a, str):
            a = a.encode("utf-8")
        if isinstance(b, str):
            b = b.encode("utf-8")
        return hmac.compare_digest(a, b)
