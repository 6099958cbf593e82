# dotformer/storage.py
"""Blob storage for source uploads and transformed artifacts.

The rest of the codebase talks to a ``BlobStore``:

- exists(key) -> bool
- get(key) -> bytes
- put(key, data, content_type, cache_control, metadata) -> url
- url_for(key) -> str

``S3BlobStore`` wraps boto3 and retries transient failures with exponential
backoff; ``MemoryBlobStore`` keeps objects in a dict for development and tests.
"""
from __future__ import annotations

import logging
import random
import threading
import time
from typing import Any, Callable, Optional, Protocol, TypeVar

import boto3
from botocore.exceptions import (
    BotoCoreError, ClientError, ConnectionError as BotoConnectionError, HTTPClientError,
)

from dotformer.errors import NotFound, TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRY_CONFIG: dict[str, Any] = {
    "base_delay": 0.2,  # 200 ms
    "max_delay": 5.0,  # 5 seconds cap
    "jitter_factor": 0.2,  # ±20% randomization
    "retryable_statuses": [429, 500, 502, 503, 504],
}

MISSING_CODES = ("404", "NoSuchKey", "NotFound")


class BlobStore(Protocol):
    def exists(self, key: str) -> bool:
        ...

    def get(self, key: str) -> bytes:
        ...

    def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        cache_control: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> str:
        ...

    def url_for(self, key: str) -> str:
        ...


def calculate_delay(attempt: int) -> float:
    """Calculate delay for retry attempt with exponential backoff and jitter.

    Args:
        attempt: The retry attempt number (0-indexed).

    Returns:
        Delay in seconds with jitter applied.
    """
    base_delay: float = RETRY_CONFIG["base_delay"]
    max_delay: float = RETRY_CONFIG["max_delay"]
    jitter_factor: float = RETRY_CONFIG["jitter_factor"]

    delay: float = min(base_delay * (2**attempt), max_delay)
    jitter: float = delay * jitter_factor * (2 * random.random() - 1)
    return delay + jitter


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def _status_code(error: ClientError) -> int:
    return int(error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0)


def is_transient(error: Exception) -> bool:
    """Connectivity errors, throttling and 5xx responses are worth retrying."""
    if isinstance(error, ClientError):
        code = _error_code(error)
        return (
            _status_code(error) in RETRY_CONFIG["retryable_statuses"]
            or code in ("SlowDown", "Throttling", "RequestTimeout", "InternalError", "ServiceUnavailable")
        )
    return isinstance(error, (BotoConnectionError, HTTPClientError))


def with_retries(
    operation: Callable[[], T],
    *,
    description: str,
    attempts: int = 3,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run a blob-store call, retrying transient failures.

    Raises TransientStoreError once attempts are exhausted. Non-transient
    errors propagate unchanged.
    """
    for attempt in range(attempts):
        try:
            return operation()
        except (ClientError, BotoCoreError) as e:
            if not is_transient(e):
                raise
            if attempt == attempts - 1:
                logger.error(f"{description} failed after {attempts} attempts: {e}")
                raise TransientStoreError(f"{description} failed: {e}") from e
            delay = calculate_delay(attempt)
            logger.warning(f"{description} failed ({e}); retrying in {delay:.2f}s")
            sleep(delay)
    raise TransientStoreError(f"{description} failed")


class S3BlobStore:
    """A single S3 bucket behind the BlobStore interface."""

    def __init__(
        self,
        bucket: str,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        cdn_domain: Optional[str] = None,
        retry_attempts: int = 3,
        client=None,
    ):
        self.bucket = bucket
        self.region = region
        self.cdn_domain = cdn_domain or None
        self.retry_attempts = retry_attempts
        self.client = client or boto3.client("s3", region_name=region, endpoint_url=endpoint_url or None)

    def url_for(self, key: str) -> str:
        if self.cdn_domain:
            return f"https://{self.cdn_domain}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def exists(self, key: str) -> bool:
        def head():
            try:
                self.client.head_object(Bucket=self.bucket, Key=key)
                return True
            except ClientError as e:
                if _error_code(e) in MISSING_CODES or _status_code(e) == 404:
                    return False
                raise

        return with_retries(head, description=f"HEAD s3://{self.bucket}/{key}", attempts=self.retry_attempts)

    def get(self, key: str) -> bytes:
        def fetch():
            try:
                response = self.client.get_object(Bucket=self.bucket, Key=key)
            except ClientError as e:
                if _error_code(e) in MISSING_CODES or _status_code(e) == 404:
                    raise NotFound(f"Object not found: {key}") from e
                raise
            return response["Body"].read()

        return with_retries(fetch, description=f"GET s3://{self.bucket}/{key}", attempts=self.retry_attempts)

    def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        cache_control: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> str:
        extra_args = {"ContentType": content_type}
        if cache_control:
            extra_args["CacheControl"] = cache_control
        if metadata:
            extra_args["Metadata"] = dict(metadata)

        with_retries(
            lambda: self.client.put_object(Bucket=self.bucket, Key=key, Body=data, **extra_args),
            description=f"PUT s3://{self.bucket}/{key}",
            attempts=self.retry_attempts,
        )
        return self.url_for(key)


class MemoryBlobStore:
    """In-process blob store. Objects live as long as the instance."""

    def __init__(self, base_url: str = "memory://"):
        self.base_url = base_url.rstrip("/")
        self.objects: dict[str, tuple[bytes, str, Optional[str]]] = {}
        self.metadata: dict[str, dict[str, str]] = {}
        self._lock = threading.Lock()

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/{key}"

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self.objects

    def get(self, key: str) -> bytes:
        with self._lock:
            if key not in self.objects:
                raise NotFound(f"Object not found: {key}")
            return self.objects[key][0]

    def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        cache_control: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> str:
        with self._lock:
            self.objects[key] = (data, content_type, cache_control)
            self.metadata[key] = dict(metadata or {})
        return self.url_for(key)


def build_blob_store(settings, bucket: str) -> BlobStore:
    """Create the configured blob store for one bucket."""
    if settings.storage_backend == "memory":
        return MemoryBlobStore(base_url=f"memory://{bucket}")
    if settings.storage_backend != "s3":
        raise ValueError(f"Unknown storage backend: {settings.storage_backend}")
    return S3BlobStore(
        bucket=bucket,
        region=settings.aws_region,
        endpoint_url=settings.s3_endpoint_url,
        cdn_domain=settings.cdn_domain,
        retry_attempts=settings.store_retry_attempts,
    )
