"""Tests for the S3 blob adapter with a mocked boto3 client."""

import io
import re
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from datapipe.core.errors import StorageError
from datapipe.services.storage import S3BlobStorage, generate_storage_key

pytestmark = pytest.mark.anyio


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": "boom"}}, operation)


def test_storage_key_layout() -> None:
    key = generate_storage_key(42, "datasets", "my report (final).jsonl")
    assert re.fullmatch(r"project-42/datasets/\d{13}-[0-9a-f]{8}-my_report__final_\.jsonl", key)


def test_storage_keys_are_unique() -> None:
    keys = {generate_storage_key(1, "datasets", "out.csv") for _ in range(50)}
    assert len(keys) == 50


async def test_fetch_returns_body() -> None:
    client = MagicMock()
    client.get_object.return_value = {"Body": io.BytesIO(b"a,b\n1,2\n")}
    storage = S3BlobStorage(bucket="bucket", client=client)

    assert await storage.fetch("k") == b"a,b\n1,2\n"
    client.get_object.assert_called_once_with(Bucket="bucket", Key="k")


async def test_fetch_missing_object_raises_storage_error() -> None:
    client = MagicMock()
    client.get_object.side_effect = _client_error("NoSuchKey", "GetObject")
    storage = S3BlobStorage(bucket="bucket", client=client)

    with pytest.raises(StorageError) as exc_info:
        await storage.fetch("project-1/sources/x.csv")
    assert exc_info.value.message == "Failed to fetch 'project-1/sources/x.csv': NoSuchKey"
    assert exc_info.value.status_code == 502


async def test_store_sets_content_type() -> None:
    client = MagicMock()
    client.put_object.return_value = {"ETag": '"abc123"'}
    storage = S3BlobStorage(bucket="bucket", client=client)

    stored = await storage.store("out.jsonl", b"{}", "application/x-ndjson")

    client.put_object.assert_called_once_with(
        Bucket="bucket", Key="out.jsonl", Body=b"{}", ContentType="application/x-ndjson"
    )
    assert stored.size == 2
    assert stored.etag == "abc123"
    assert stored.bucket == "bucket"


async def test_store_failure() -> None:
    client = MagicMock()
    client.put_object.side_effect = _client_error("AccessDenied", "PutObject")
    storage = S3BlobStorage(bucket="bucket", client=client)

    with pytest.raises(StorageError, match="AccessDenied"):
        await storage.store("k", b"x", "text/csv")


async def test_delete() -> None:
    client = MagicMock()
    storage = S3BlobStorage(bucket="bucket", client=client)
    await storage.delete("k")
    client.delete_object.assert_called_once_with(Bucket="bucket", Key="k")


def test_presign_download_sets_filename() -> None:
    client = MagicMock()
    client.generate_presigned_url.return_value = "https://signed"
    storage = S3BlobStorage(bucket="bucket", client=client)

    url = storage.presign_download("k", ttl_seconds=60, filename="report.csv")

    assert url == "https://signed"
    client.generate_presigned_url.assert_called_once_with(
        "get_object",
        Params={
            "Bucket": "bucket",
            "Key": "k",
            "ResponseContentDisposition": 'attachment; filename="report.csv"',
        },
        ExpiresIn=60,
    )


def test_presign_upload_uses_default_ttl() -> None:
    client = MagicMock()
    storage = S3BlobStorage(bucket="bucket", client=client)
    storage.presign_upload("k", "text/csv")
    _, kwargs = client.generate_presigned_url.call_args
    assert kwargs["ExpiresIn"] == 3600
    assert kwargs["Params"]["ContentType"] == "text/csv"


def test_client_built_lazily_with_s3v4() -> None:
    with patch("datapipe.services.storage.boto3") as mock_boto3:
        storage = S3BlobStorage(bucket="bucket")
        mock_boto3.client.assert_not_called()
        _ = storage.client
        _ = storage.client
        mock_boto3.client.assert_called_once()
        args, kwargs = mock_boto3.client.call_args
        assert args == ("s3",)
        assert kwargs["config"].signature_version == "s3v4"
