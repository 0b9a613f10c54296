"""Service layer for produced datasets."""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from datapipe.core.config import settings
from datapipe.core.errors import ConflictError, NotFoundError
from datapipe.models import Dataset
from datapipe.modules.datasets.schemas import DatasetDownloadResponse
from datapipe.services import codec
from datapipe.services.storage import BlobStorage

logger = structlog.get_logger()


def _is_expired(dataset: Dataset, now: datetime) -> bool:
    if dataset.expires_at is None:
        return False
    expires_at = dataset.expires_at
    if expires_at.tzinfo is None:
        # SQLite hands back naive datetimes
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at <= now


class DatasetService:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def list_datasets(self, project_id: int) -> list[Dataset]:
        result = await self.db.execute(
            select(Dataset)
            .where(Dataset.project_id == project_id, Dataset.deleted_at.is_(None))
            .order_by(Dataset.created_at.desc(), Dataset.id.desc())
        )
        return list(result.scalars().all())

    async def get_dataset(self, dataset_id: int) -> Dataset:
        dataset = await self.db.get(Dataset, dataset_id)
        if dataset is None or dataset.is_deleted:
            raise NotFoundError("Dataset")
        return dataset

    async def get_download(
        self, dataset_id: int, storage: BlobStorage
    ) -> DatasetDownloadResponse:
        dataset = await self.get_dataset(dataset_id)
        if _is_expired(dataset, datetime.now(timezone.utc)):
            raise ConflictError("Dataset has expired", detail={"dataset_id": dataset_id})
        if not dataset.storage_key:
            raise NotFoundError("Dataset file")

        filename = f"{dataset.name}.{codec.file_extension(dataset.format)}"
        ttl = settings.PRESIGNED_URL_TTL
        url = storage.presign_download(dataset.storage_key, ttl_seconds=ttl, filename=filename)
        logger.info("datasets.download_issued", dataset_id=dataset_id)
        return DatasetDownloadResponse(
            dataset_id=dataset_id, download_url=url, filename=filename, expires_in=ttl
        )

    async def delete_dataset(self, dataset_id: int) -> None:
        """Soft delete; the stored object is left for lifecycle rules to reap."""
        dataset = await self.get_dataset(dataset_id)
        dataset.deleted_at = datetime.now(timezone.utc)
        await self.db.commit()
        logger.info("datasets.deleted", dataset_id=dataset_id)
