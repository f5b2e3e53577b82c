"""
Blob side-channel for payloads that exceed the inline frame limit.

A blob is written once by the sender and read once by the receiver, which
deletes it after the read. Frames carry only the blob reference.
"""

import logging
import os
from pathlib import Path
from typing import Optional, Protocol, Tuple
from urllib.parse import unquote, urlparse

import boto3
import botocore.exceptions

logger = logging.getLogger("livebridge.blob_store")


class BlobStoreError(Exception):
    """Base error for blob side-channel operations."""


STORE_ERRORS = (
    OSError,
    BlobStoreError,
    botocore.exceptions.BotoCoreError,
    botocore.exceptions.ClientError,
)


class BlobFetchError(BlobStoreError):
    """Raised when an offloaded payload cannot be fetched."""

    def __init__(self, ref: str, cause: Exception):
        self.ref = ref
        self.cause = cause
        super().__init__(f"Failed to fetch blob {ref}: {cause}")


class BlobStore(Protocol):
    def put(self, key: str, data: bytes) -> str: ...

    def get(self, ref: str) -> bytes: ...

    def delete(self, ref: str) -> None: ...


class FileBlobStore:
    """Blob store backed by a local directory (single host or shared mount)."""

    def __init__(self, root: str):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path_for_ref(self, ref: str) -> Path:
        parsed = urlparse(ref)
        if parsed.scheme != "file":
            raise BlobStoreError(f"Not a file blob reference: {ref}")
        path = Path(unquote(parsed.path)).resolve()
        if self.root != path and self.root not in path.parents:
            raise BlobStoreError(f"Blob reference outside store root: {ref}")
        return path

    def put(self, key: str, data: bytes) -> str:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise BlobStoreError(f"Blob key escapes store root: {key}")
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".part")
        tmp.write_bytes(data)
        os.replace(tmp, path)
        return path.as_uri()

    def get(self, ref: str) -> bytes:
        return self._path_for_ref(ref).read_bytes()

    def delete(self, ref: str) -> None:
        self._path_for_ref(ref).unlink(missing_ok=True)


class S3BlobStore:
    """Blob store backed by an S3 bucket."""

    def __init__(self, bucket: str, prefix: str = "", client=None):
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.client = client or boto3.client("s3")

    def _key(self, key: str) -> str:
        return f"{self.prefix}/{key}" if self.prefix else key

    def _split_ref(self, ref: str) -> Tuple[str, str]:
        # References arrive in frames; only objects this store wrote are touched.
        parsed = urlparse(ref)
        if parsed.scheme != "s3" or not parsed.netloc:
            raise BlobStoreError(f"Not an s3 blob reference: {ref}")
        bucket, key = parsed.netloc, parsed.path.lstrip("/")
        if bucket != self.bucket:
            raise BlobStoreError(f"Blob reference outside store bucket: {ref}")
        if self.prefix and not key.startswith(f"{self.prefix}/"):
            raise BlobStoreError(f"Blob reference outside store prefix: {ref}")
        if not key or ".." in key.split("/"):
            raise BlobStoreError(f"Invalid blob key: {ref}")
        return bucket, key

    def put(self, key: str, data: bytes) -> str:
        full_key = self._key(key)
        self.client.put_object(
            Bucket=self.bucket,
            Key=full_key,
            Body=data,
            ContentType="application/octet-stream",
        )
        return f"s3://{self.bucket}/{full_key}"

    def get(self, ref: str) -> bytes:
        bucket, key = self._split_ref(ref)
        response = self.client.get_object(Bucket=bucket, Key=key)
        return response["Body"].read()

    def delete(self, ref: str) -> None:
        bucket, key = self._split_ref(ref)
        self.client.delete_object(Bucket=bucket, Key=key)


def blob_store_from_url(url: str) -> Optional[BlobStore]:
    """
    Build a blob store from its URL.

    Supported:
    - "" (no side-channel)
    - s3://bucket[/prefix]
    - file:///absolute/dir
    """
    if not url:
        return None
    parsed = urlparse(url)
    if parsed.scheme == "s3":
        return S3BlobStore(parsed.netloc, parsed.path)
    if parsed.scheme == "file":
        return FileBlobStore(unquote(parsed.path))
    raise ValueError(f"Unsupported blob store URL: {url}")


def offload_payload(
    payload: bytes, limit: int, store: Optional[BlobStore], key: str
) -> Tuple[bytes, bool]:
    """
    Return (frame_payload, is_ref).

    Payloads up to `limit` bytes travel inline. Larger payloads are written
    to the store and only the reference travels in the frame.
    """
    if len(payload) <= limit:
        return payload, False
    if store is None:
        raise BlobStoreError(
            f"Payload of {len(payload)} bytes exceeds inline limit {limit} and no blob store is configured"
        )
    ref = store.put(key, payload)
    logger.debug(f"Offloaded {len(payload)} bytes to {ref}")
    return ref.encode("utf-8"), True


def resolve_payload(data: bytes, is_ref: bool, store: Optional[BlobStore]) -> bytes:
    """
    Return the real payload, fetching (and then deleting) an offloaded blob.

    Raises:
        BlobFetchError: The blob could not be read
    """
    if not is_ref:
        return data
    ref = data.decode("utf-8", "replace")
    if store is None:
        raise BlobFetchError(ref, BlobStoreError("no blob store configured"))
    try:
        payload = store.get(ref)
    except STORE_ERRORS as e:
        raise BlobFetchError(ref, e) from e

    try:
        store.delete(ref)
    except STORE_ERRORS as e:
        logger.warning(f"Failed to delete consumed blob {ref}: {e}")
    return payload
