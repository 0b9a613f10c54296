"""FastAPI router for produced datasets."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from datapipe.core.database import get_db
from datapipe.modules.datasets.schemas import DatasetDownloadResponse, DatasetResponse
from datapipe.modules.datasets.service import DatasetService
from datapipe.services.storage import BlobStorage

router = APIRouter(prefix="/datasets", tags=["datasets"])


def get_storage(request: Request) -> BlobStorage:
    return request.app.state.storage


@router.get("", response_model=list[DatasetResponse])
async def list_datasets(
    project_id: int = Query(...),
    db: AsyncSession = Depends(get_db),
) -> list[DatasetResponse]:
    datasets = await DatasetService(db).list_datasets(project_id)
    return [DatasetResponse.model_validate(d) for d in datasets]


@router.get("/{dataset_id}", response_model=DatasetResponse)
async def get_dataset(dataset_id: int, db: AsyncSession = Depends(get_db)) -> DatasetResponse:
    dataset = await DatasetService(db).get_dataset(dataset_id)
    return DatasetResponse.model_validate(dataset)


@router.get("/{dataset_id}/download", response_model=DatasetDownloadResponse)
async def download_dataset(
    dataset_id: int,
    db: AsyncSession = Depends(get_db),
    storage: BlobStorage = Depends(get_storage),
) -> DatasetDownloadResponse:
    """Pre-signed URL for the dataset file."""
    return await DatasetService(db).get_download(dataset_id, storage)


@router.delete("/{dataset_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_dataset(dataset_id: int, db: AsyncSession = Depends(get_db)) -> None:
    await DatasetService(db).delete_dataset(dataset_id)
