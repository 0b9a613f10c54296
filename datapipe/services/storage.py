"""Blob I/O adapter over S3 / MinIO.

The pipeline only ever needs four operations: fetch, store, presigned upload
and presigned download (plus delete for cleanup). boto3 is synchronous, so
network calls run in a worker thread.
"""

from __future__ import annotations

import asyncio
import re
import secrets
import time
from dataclasses import dataclass
from typing import Any, Protocol

import boto3
import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from datapipe.core.config import settings
from datapipe.core.errors import StorageError

logger = structlog.get_logger()

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


@dataclass(frozen=True)
class StoredObject:
    key: str
    bucket: str
    size: int
    etag: str


class BlobStorage(Protocol):
    async def fetch(self, key: str) -> bytes: ...

    async def store(self, key: str, data: bytes, content_type: str) -> StoredObject: ...

    async def delete(self, key: str) -> None: ...

    def presign_upload(self, key: str, content_type: str, ttl_seconds: int | None = None) -> str: ...

    def presign_download(
        self, key: str, ttl_seconds: int | None = None, filename: str | None = None
    ) -> str: ...


def generate_storage_key(project_id: int, kind: str, filename: str) -> str:
    """Unique key: ``project-<id>/<kind>/<unix-ms>-<rand>-<sanitized filename>``."""
    timestamp = int(time.time() * 1000)
    suffix = secrets.token_hex(4)
    safe_name = _UNSAFE_KEY_CHARS.sub("_", filename)
    return f"project-{project_id}/{kind}/{timestamp}-{suffix}-{safe_name}"


def _error_code(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "ClientError")
    return type(exc).__name__


# ── S3 Client ────────────────────────────────────────────────────────────────


def _get_s3_client():
    """Create a boto3 S3 client configured for MinIO / AWS."""
    return boto3.client(
        "s3",
        endpoint_url=settings.AWS_S3_ENDPOINT_URL,
        aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
        aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
        region_name=settings.AWS_S3_REGION,
        config=BotoConfig(signature_version="s3v4"),
    )


class S3BlobStorage:
    """BlobStorage backed by a single S3 bucket."""

    def __init__(self, bucket: str | None = None, client: Any | None = None) -> None:
        self.bucket = bucket or settings.AWS_S3_BUCKET
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = _get_s3_client()
        return self._client

    async def fetch(self, key: str) -> bytes:
        def _get() -> bytes:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()

        try:
            data = await asyncio.to_thread(_get)
        except (ClientError, BotoCoreError) as exc:
            logger.warning("storage.fetch_failed", key=key, error=str(exc))
            raise StorageError(f"Failed to fetch '{key}': {_error_code(exc)}") from exc
        logger.debug("storage.fetched", key=key, size=len(data))
        return data

    async def store(self, key: str, data: bytes, content_type: str) -> StoredObject:
        def _put() -> dict[str, Any]:
            return self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )

        try:
            result = await asyncio.to_thread(_put)
        except (ClientError, BotoCoreError) as exc:
            logger.warning("storage.store_failed", key=key, error=str(exc))
            raise StorageError(f"Failed to store '{key}': {_error_code(exc)}") from exc

        logger.info("storage.stored", key=key, size=len(data), content_type=content_type)
        return StoredObject(
            key=key,
            bucket=self.bucket,
            size=len(data),
            etag=str(result.get("ETag", "")).replace('"', ""),
        )

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Failed to delete '{key}': {_error_code(exc)}") from exc

    def presign_upload(self, key: str, content_type: str, ttl_seconds: int | None = None) -> str:
        """Pre-signed PUT URL for client-side upload."""
        try:
            return self.client.generate_presigned_url(
                "put_object",
                Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
                ExpiresIn=ttl_seconds or settings.PRESIGNED_URL_TTL,
            )
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Failed to presign upload for '{key}': {_error_code(exc)}") from exc

    def presign_download(
        self, key: str, ttl_seconds: int | None = None, filename: str | None = None
    ) -> str:
        """Pre-signed GET URL; *filename* sets Content-Disposition."""
        params: dict[str, Any] = {"Bucket": self.bucket, "Key": key}
        if filename:
            params["ResponseContentDisposition"] = f'attachment; filename="{filename}"'
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params=params,
                ExpiresIn=ttl_seconds or settings.PRESIGNED_URL_TTL,
            )
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Failed to presign download for '{key}': {_error_code(exc)}") from exc
