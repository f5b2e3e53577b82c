from unittest.mock import MagicMock

import botocore.exceptions
import pytest

from livebridge.common.core.blob_store import (
    BlobFetchError,
    BlobStoreError,
    FileBlobStore,
    S3BlobStore,
    blob_store_from_url,
    offload_payload,
    resolve_payload,
)


def test_small_payload_stays_inline(tmp_path):
    store = FileBlobStore(str(tmp_path))

    data, is_ref = offload_payload(b"small", limit=10, store=store, key="req-1")

    assert data == b"small"
    assert is_ref is False
    assert list(tmp_path.iterdir()) == []


def test_large_payload_is_offloaded_and_read_once(tmp_path):
    store = FileBlobStore(str(tmp_path))
    payload = b"x" * 64

    data, is_ref = offload_payload(payload, limit=10, store=store, key="requests/req-1")

    assert is_ref is True
    assert data.startswith(b"file://")

    assert resolve_payload(data, is_ref, store) == payload
    # Consumed blobs are deleted.
    assert not (tmp_path / "requests" / "req-1").exists()


def test_offload_without_store_fails():
    with pytest.raises(BlobStoreError, match="no blob store"):
        offload_payload(b"x" * 20, limit=10, store=None, key="k")


def test_missing_blob_raises_fetch_error(tmp_path):
    store = FileBlobStore(str(tmp_path))
    ref = (tmp_path / "gone").as_uri().encode()

    with pytest.raises(BlobFetchError):
        resolve_payload(ref, True, store)


def test_file_store_rejects_reference_outside_root(tmp_path):
    store = FileBlobStore(str(tmp_path / "blobs"))

    with pytest.raises(BlobFetchError):
        resolve_payload(b"file:///etc/passwd", True, store)


def test_file_store_rejects_escaping_key(tmp_path):
    store = FileBlobStore(str(tmp_path / "blobs"))

    with pytest.raises(BlobStoreError):
        store.put("../outside", b"data")


def test_s3_store_round_trip_uses_client():
    client = MagicMock()
    body = MagicMock()
    body.read.return_value = b"payload"
    client.get_object.return_value = {"Body": body}
    store = S3BlobStore("debug-bucket", "bridge", client=client)

    ref = store.put("req-1", b"payload")

    assert ref == "s3://debug-bucket/bridge/req-1"
    client.put_object.assert_called_once()
    assert resolve_payload(ref.encode(), True, store) == b"payload"
    client.get_object.assert_called_once_with(Bucket="debug-bucket", Key="bridge/req-1")
    client.delete_object.assert_called_once_with(Bucket="debug-bucket", Key="bridge/req-1")


@pytest.mark.parametrize(
    "ref",
    [
        "s3://prod-bucket/important/object",
        "s3://debug-bucket/other/req-1",
        "s3://debug-bucket/bridge-evil/req-1",
    ],
)
def test_s3_store_rejects_foreign_reference(ref):
    client = MagicMock()
    store = S3BlobStore("debug-bucket", "bridge", client=client)

    with pytest.raises(BlobFetchError):
        resolve_payload(ref.encode(), True, store)

    client.get_object.assert_not_called()
    client.delete_object.assert_not_called()


def test_s3_fetch_failure_is_wrapped():
    client = MagicMock()
    client.get_object.side_effect = botocore.exceptions.ClientError(
        {"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject"
    )
    store = S3BlobStore("debug-bucket", client=client)

    with pytest.raises(BlobFetchError) as excinfo:
        resolve_payload(b"s3://debug-bucket/req-1", True, store)

    assert "NoSuchKey" in str(excinfo.value)


def test_blob_store_from_url(tmp_path):
    assert blob_store_from_url("") is None
    assert isinstance(blob_store_from_url(tmp_path.as_uri()), FileBlobStore)
    with pytest.raises(ValueError):
        blob_store_from_url("ftp://host/dir")
