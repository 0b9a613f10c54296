"""Pydantic v2 schemas for the datasets module."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from datapipe.models.enums import RecordFormat


class DatasetResponse(BaseModel):
    id: int
    project_id: int
    job_id: int | None
    data_source_id: int | None
    name: str
    format: RecordFormat
    record_count: int
    file_size: int | None
    metadata: dict[str, Any] | None = Field(None, validation_alias="metadata_")
    expires_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


class DatasetDownloadResponse(BaseModel):
    dataset_id: int
    download_url: str
    filename: str
    expires_in: int
