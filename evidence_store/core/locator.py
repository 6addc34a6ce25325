"""
Object Locator

Canonical locators for evidence payloads held in off-ledger object storage.

A locator is an HTTPS URL naming a bucket and an object key:

    virtual-host style:  https://{bucket}.{host}/{key}
    path style:          https://{host}/{bucket}/{key}

build_locator always emits virtual-host style.
parse_locator accepts both and lowercases the bucket name.

Signed URLs are time-limited retrieval links. The signature covers
bucket, key and ttl, so none of them can be altered after issue.
"""

from typing import Iterable
from urllib.parse import parse_qs, quote, unquote, urlencode, urlparse

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from .errors import InvalidLocatorError, SigningUnavailableError


DEFAULT_HOST = "s3.amazonaws.com"
SIGNING_SALT = "evidence-store-object-url-v1"


class ObjectLocator:
    """
    Builds, parses and signs object URLs.

    Usage:
        locator = ObjectLocator(host="store.example", signing_secret=secret)
        url = locator.build_locator("bucket-a", "k1/k2")
        bucket, key = locator.parse_locator(url)
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        signing_secret: str = "",
        aliases: Iterable[str] = (),
    ):
        """
        Args:
            host: Object store host suffix (e.g. s3.ap-southeast-2.amazonaws.com)
            signing_secret: Secret for signed URLs
            aliases: Other host suffixes accepted when parsing
        """
        self._host = host.lower()
        self._hosts = {self._host, *(a.lower() for a in aliases)}
        self._serializer = (
            URLSafeTimedSerializer(secret_key=signing_secret, salt=SIGNING_SALT)
            if signing_secret
            else None
        )

    @property
    def host(self) -> str:
        return self._host

    def build_locator(self, bucket: str, key: str) -> str:
        """
        Build the canonical URL for an object.

        Raises:
            InvalidLocatorError: If bucket or key is empty
        """
        if not bucket or not key:
            raise InvalidLocatorError(
                f"Bucket and key are required, got bucket={bucket!r} key={key!r}"
            )
        return f"https://{bucket}.{self._host}/{quote(key.lstrip('/'), safe='/')}"

    def parse_locator(self, url: str) -> tuple[str, str]:
        """
        Split an object URL into (bucket, key).

        Raises:
            InvalidLocatorError: If the URL does not match the expected shape
        """
        if not url or not isinstance(url, str):
            raise InvalidLocatorError(f"Invalid object url: {url!r}")

        parsed = urlparse(url)
        if parsed.scheme not in ("https", "http") or not parsed.hostname:
            raise InvalidLocatorError(f"Invalid object url: {url}")

        hostname = parsed.hostname.lower()
        path = unquote(parsed.path).lstrip("/")

        if hostname in self._hosts:
            # Path style: first segment is the bucket
            bucket, _, key = path.partition("/")
        else:
            bucket, key = "", path
            for host in self._hosts:
                suffix = "." + host
                if hostname.endswith(suffix):
                    bucket = hostname[: -len(suffix)]
                    break

        if not bucket:
            raise InvalidLocatorError(f"Object url {url} is missing a bucket name")
        if not key:
            raise InvalidLocatorError(f"Object url {url} is missing an object key")

        return bucket.lower(), key

    # ================================================================
    # SIGNED URLS
    # ================================================================

    def _require_serializer(self) -> URLSafeTimedSerializer:
        if self._serializer is None:
            raise SigningUnavailableError(
                "Signed links are disabled: no signing secret configured. "
                "Set EVIDENCE_STORE_URL_SECRET."
            )
        return self._serializer

    def signed_url(self, bucket: str, key: str, ttl: int) -> str:
        """
        Produce a retrieval URL valid for `ttl` seconds from now.

        Side-effect free apart from reading the clock.
        """
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")

        token = self._require_serializer().dumps(
            {"b": bucket.lower(), "k": key, "ttl": ttl}
        )
        query = urlencode({"expires": ttl, "signature": token})
        return f"{self.build_locator(bucket, key)}?{query}"

    def verify_signed_url(self, url: str) -> tuple[str, str]:
        """
        Check a signed URL and return its (bucket, key).

        Raises:
            InvalidLocatorError: Missing, tampered or expired signature
        """
        bucket, key = self.parse_locator(url.split("?", 1)[0])
        query = parse_qs(urlparse(url).query)
        token = (query.get("signature") or [None])[0]
        expires = (query.get("expires") or [None])[0]
        if not token or not expires:
            raise InvalidLocatorError("Signed url is missing its signature")

        try:
            max_age = int(expires)
            data = self._require_serializer().loads(token, max_age=max_age)
        except SignatureExpired as e:
            raise InvalidLocatorError("Signed url has expired") from e
        except (BadSignature, ValueError) as e:
            raise InvalidLocatorError("Signed url signature is invalid") from e

        if data.get("b") != bucket or data.get("k") != key or data.get("ttl") != max_age:
            raise InvalidLocatorError("Signed url does not match its signature")

        return bucket, key


def object_key_for(provider_id: str, target_hash: str, content_hash: str) -> str:
    """
    Object key layout for evidence content: {provider}/{target hash}/{content hash}.
    """
    return f"{provider_id}/{target_hash}/{content_hash}"