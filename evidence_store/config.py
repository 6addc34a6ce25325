"""
Service Configuration

CONFIGURATION:
- EVIDENCE_STORE_LEDGER_NAME: Ledger whose digests we verify against (default: evidence-ledger)
- EVIDENCE_STORE_TABLE_NAME: Only ingest revisions of this table (default: empty = all tables)
- EVIDENCE_STORE_DIGEST_URL: Digest endpoint base URL (empty = in-memory endpoint)
- EVIDENCE_STORE_OBJECT_HOST: Object store host suffix (default: s3.amazonaws.com)
- EVIDENCE_STORE_OBJECT_HOST_ALIASES: Comma-separated extra host suffixes accepted in
  stored locators (e.g. s3.ap-southeast-2.amazonaws.com)
- EVIDENCE_STORE_OBJECT_ENDPOINT: Object store HTTP endpoint (empty = content checks off)
- EVIDENCE_STORE_CONTENT_BUCKET: Bucket holding evidence content (default: evidence-content)
- EVIDENCE_STORE_URL_SECRET: Secret for signed attachment links (empty = links disabled)
- EVIDENCE_STORE_SIGNED_URL_TTL: Signed link lifetime in seconds (default: 300)
- EVIDENCE_STORE_TIMEOUT_SECONDS: Default timeout for network calls (default: 5)
- EVIDENCE_STORE_VERIFY_CONTENT: Also check off-ledger content hashes (default: true)
"""

import os
from dataclasses import dataclass, field
from typing import Optional

DEFAULT_OBJECT_HOST = "s3.amazonaws.com"


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


def _list(name: str) -> tuple[str, ...]:
    return tuple(v.strip() for v in os.environ.get(name, "").split(",") if v.strip())


@dataclass
class ServiceConfig:
    """Configuration for the verification service."""
    ledger_name: str = "evidence-ledger"
    table_name: Optional[str] = None
    digest_url: Optional[str] = None
    object_host: str = DEFAULT_OBJECT_HOST
    object_host_aliases: tuple[str, ...] = field(default_factory=tuple)
    object_endpoint: Optional[str] = None
    content_bucket: str = "evidence-content"
    url_signing_secret: str = ""
    signed_url_ttl: int = 300  # seconds
    default_timeout: float = 5.0  # seconds
    verify_content: bool = True

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        """Load configuration from environment variables."""
        return cls(
            ledger_name=os.environ.get("EVIDENCE_STORE_LEDGER_NAME", "evidence-ledger"),
            table_name=os.environ.get("EVIDENCE_STORE_TABLE_NAME") or None,
            digest_url=os.environ.get("EVIDENCE_STORE_DIGEST_URL") or None,
            object_host=os.environ.get("EVIDENCE_STORE_OBJECT_HOST", DEFAULT_OBJECT_HOST),
            object_host_aliases=_list("EVIDENCE_STORE_OBJECT_HOST_ALIASES"),
            object_endpoint=os.environ.get("EVIDENCE_STORE_OBJECT_ENDPOINT") or None,
            content_bucket=os.environ.get("EVIDENCE_STORE_CONTENT_BUCKET", "evidence-content"),
            url_signing_secret=os.environ.get("EVIDENCE_STORE_URL_SECRET", ""),
            signed_url_ttl=int(os.environ.get("EVIDENCE_STORE_SIGNED_URL_TTL", "300")),
            default_timeout=float(os.environ.get("EVIDENCE_STORE_TIMEOUT_SECONDS", "5")),
            verify_content=_flag("EVIDENCE_STORE_VERIFY_CONTENT", "true"),
        )
