import io
import uuid
from unittest.mock import MagicMock

import boto3
import pytest
from botocore.response import StreamingBody
from botocore.stub import Stubber

from ledger_ingest.core.config import settings
from ledger_ingest.integrations.storage import (
    S3BlobStore,
    StorageDownloadError,
    StorageNotFoundError,
    StorageUploadError,
)


@pytest.fixture
def stubbed_store():
    client = boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )
    with Stubber(client) as stubber:
        yield S3BlobStore(client), stubber
        stubber.assert_no_pending_responses()


def _body(data: bytes) -> StreamingBody:
    return StreamingBody(io.BytesIO(data), len(data))


def test_range_download_sends_inclusive_range():
    client = MagicMock()
    client.get_object.return_value = {"Body": _body(b"Account,Amount\n")}

    data = S3BlobStore(client).download_range("ledger-uploads", "gl.csv", 0, 8191)

    assert data == b"Account,Amount\n"
    client.get_object.assert_called_once_with(Bucket="ledger-uploads", Key="gl.csv", Range="bytes=0-8191")


def test_missing_object_raises_not_found(stubbed_store):
    store, stubber = stubbed_store
    stubber.add_client_error("get_object", service_error_code="NoSuchKey", http_status_code=404)

    with pytest.raises(StorageNotFoundError):
        store.download("ledger-uploads", "missing.csv")


def test_other_download_failures_raise_download_error(stubbed_store):
    store, stubber = stubbed_store
    stubber.add_client_error("get_object", service_error_code="AccessDenied", http_status_code=403)

    with pytest.raises(StorageDownloadError) as excinfo:
        store.download_range("ledger-uploads", "gl.csv", 0, 10)

    assert not isinstance(excinfo.value, StorageNotFoundError)


def test_upload_sets_content_headers():
    client = MagicMock()
    client.put_object.return_value = {"ETag": '"abc123"'}

    result = S3BlobStore(client).upload(
        "exports",
        "exports/a.zip",
        b"zip",
        content_type="application/zip",
        content_disposition='attachment; filename="a.zip"',
    )

    assert result == {"file_id": "abc123", "file_path": "exports/a.zip", "size": 3}
    client.put_object.assert_called_once_with(
        Bucket="exports",
        Key="exports/a.zip",
        Body=b"zip",
        ContentType="application/zip",
        ContentDisposition='attachment; filename="a.zip"',
    )


def test_upload_failure_raises_upload_error(stubbed_store):
    store, stubber = stubbed_store
    stubber.add_client_error("put_object", service_error_code="InternalError", http_status_code=500)

    with pytest.raises(StorageUploadError):
        store.upload("exports", "a.zip", b"zip")


def test_get_size_reads_content_length():
    client = MagicMock()
    client.head_object.return_value = {"ContentLength": 2048}

    assert S3BlobStore(client).get_size("ledger-uploads", "gl.xlsx") == 2048


def test_delete_failure_returns_false(stubbed_store):
    store, stubber = stubbed_store
    stubber.add_client_error("delete_object", service_error_code="AccessDenied", http_status_code=403)

    assert store.delete("ledger-uploads", "gl.csv") is False


@pytest.mark.integration
def test_storage_upload_and_range_download_roundtrip():
    """
    Upload, range-read and delete an object against real S3-compatible storage.

    Skips automatically if storage credentials are not configured in the environment.
    """
    if not all(
        [
            settings.storage_access_key_id,
            settings.storage_secret_access_key,
            settings.storage_bucket_name,
        ]
    ):
        pytest.skip("Storage credentials not configured; skipping live storage test")

    store = S3BlobStore()
    data = b"Account,Amount,Posted\nACC-1,10,2024-01-01\n"
    key = f"tests/test-{uuid.uuid4().hex}.csv"
    store.upload(settings.storage_bucket_name, key, data, content_type="text/csv")

    try:
        assert store.get_size(settings.storage_bucket_name, key) == len(data)
        assert store.download_range(settings.storage_bucket_name, key, 0, 20) == data[:21]
    finally:
        store.delete(settings.storage_bucket_name, key)
