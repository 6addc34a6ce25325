"""
Off-Ledger Object Storage

The ledger only records a locator and a hash for each evidence payload.
The payload itself lives in an object store.

This module defines:
- ObjectStore: the collaborator interface (put / get with timeouts)
- InMemoryObjectStore: for development and testing
- HttpObjectStore: path-style HTTP access (httpx)
- EvidenceContentRepository: evidence-aware access through the ObjectLocator

All store failures surface as ObjectStoreError (retryable).
"""

from abc import ABC, abstractmethod
from threading import Lock
from typing import Optional, Union
from urllib.parse import quote

import httpx

from ..observability import get_logger
from ..schemas import AttachmentRef
from .errors import ObjectStoreError
from .hasher import Hasher
from .locator import ObjectLocator, object_key_for


logger = get_logger(__name__)


class ObjectStore(ABC):
    """
    Abstract object store.

    Implementations must honour the caller-supplied timeout and raise
    ObjectStoreError on failure or timeout.
    """

    @abstractmethod
    def put_object(
        self,
        bucket: str,
        key: str,
        body: bytes,
        timeout: Optional[float] = None,
    ) -> None:
        """Store an object, replacing any existing one."""
        pass

    @abstractmethod
    def get_object(
        self,
        bucket: str,
        key: str,
        timeout: Optional[float] = None,
    ) -> Optional[bytes]:
        """Fetch an object body, or None if it does not exist."""
        pass

    def close(self) -> None:
        """Release any network resources. No-op by default."""


class InMemoryObjectStore(ObjectStore):
    """
    In-memory implementation of ObjectStore.

    Suitable for development and testing only.
    """

    def __init__(self):
        self._objects: dict[tuple[str, str], bytes] = {}
        self._lock = Lock()

    def put_object(
        self,
        bucket: str,
        key: str,
        body: bytes,
        timeout: Optional[float] = None,
    ) -> None:
        with self._lock:
            self._objects[(bucket.lower(), key)] = bytes(body)

    def get_object(
        self,
        bucket: str,
        key: str,
        timeout: Optional[float] = None,
    ) -> Optional[bytes]:
        with self._lock:
            return self._objects.get((bucket.lower(), key))


class HttpObjectStore(ObjectStore):
    """
    Object store reached over HTTP, path style.

        GET {endpoint_url}/{bucket}/{key}   -> 200 body | 404 missing
        PUT {endpoint_url}/{bucket}/{key}

    Works against S3-compatible gateways that front the evidence buckets.
    """

    def __init__(
        self,
        endpoint_url: str,
        default_timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ):
        self._default_timeout = default_timeout
        self._client = client or httpx.Client(base_url=endpoint_url.rstrip("/"))

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def _path(bucket: str, key: str) -> str:
        return f"/{quote(bucket.lower())}/{quote(key.lstrip('/'), safe='/')}"

    def _request(
        self,
        method: str,
        bucket: str,
        key: str,
        timeout: Optional[float],
        body: Optional[bytes] = None,
    ) -> httpx.Response:
        try:
            return self._client.request(
                method,
                self._path(bucket, key),
                content=body,
                timeout=timeout if timeout is not None else self._default_timeout,
            )
        except httpx.TimeoutException as e:
            raise ObjectStoreError(f"Timed out on {method} {bucket}/{key}") from e
        except httpx.HTTPError as e:
            raise ObjectStoreError(f"{method} {bucket}/{key} failed: {e}") from e

    def put_object(
        self,
        bucket: str,
        key: str,
        body: bytes,
        timeout: Optional[float] = None,
    ) -> None:
        response = self._request("PUT", bucket, key, timeout, body=bytes(body))
        if response.status_code >= 300:
            raise ObjectStoreError(
                f"Object store returned HTTP {response.status_code} storing {bucket}/{key}"
            )

    def get_object(
        self,
        bucket: str,
        key: str,
        timeout: Optional[float] = None,
    ) -> Optional[bytes]:
        response = self._request("GET", bucket, key, timeout)
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            logger.warning(
                "Object store returned an error",
                bucket=bucket,
                key=key,
                status_code=response.status_code,
            )
            raise ObjectStoreError(
                f"Object store returned HTTP {response.status_code} for {bucket}/{key}"
            )
        return response.content


class EvidenceContentRepository:
    """
    Evidence content access by locator.

    Object key layout:
        {provider_id}/{base64url hash of target_id}/{base64url content hash}
    """

    def __init__(self, store: ObjectStore, locator: ObjectLocator, bucket: str):
        self._store = store
        self._locator = locator
        self._bucket = bucket

    def put_content(
        self,
        provider_id: str,
        target_id: str,
        content: Union[bytes, str],
        timeout: Optional[float] = None,
    ) -> tuple[str, str]:
        """
        Store evidence content.

        Returns:
            (object locator url, base64url content hash)
        """
        if isinstance(content, str):
            content = content.encode("utf-8")

        content_hash = Hasher.compute_hash(content, "base64url")
        key = object_key_for(
            provider_id,
            Hasher.compute_hash(target_id, "base64url"),
            content_hash,
        )
        self._store.put_object(self._bucket, key, content, timeout=timeout)
        return self._locator.build_locator(self._bucket, key), content_hash

    def get_content(
        self,
        url: str,
        timeout: Optional[float] = None,
    ) -> Optional[bytes]:
        """
        Fetch content by locator url.

        Raises:
            InvalidLocatorError: If the url is not a valid locator
            ObjectStoreError: If the store fails
        """
        bucket, key = self._locator.parse_locator(url)
        return self._fetch(bucket, key, timeout)

    def get_attachment(
        self,
        attachment: AttachmentRef,
        timeout: Optional[float] = None,
    ) -> Optional[bytes]:
        """
        Fetch an attachment by bucket and key.

        Raises:
            ObjectStoreError: If the store fails
        """
        return self._fetch(attachment.bucket_name, attachment.object_key, timeout)

    def _fetch(self, bucket: str, key: str, timeout: Optional[float]) -> Optional[bytes]:
        try:
            return self._store.get_object(bucket, key, timeout=timeout)
        except ObjectStoreError:
            raise
        except (OSError, TimeoutError) as e:
            raise ObjectStoreError(
                f"Failed to fetch object {bucket}/{key}: {e}"
            ) from e

    def close(self) -> None:
        self._store.close()

    def signed_link(self, url: str, ttl: int) -> str:
        """Time-limited retrieval link for a stored object."""
        bucket, key = self._locator.parse_locator(url)
        return self._locator.signed_url(bucket, key, ttl)
