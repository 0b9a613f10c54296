"""Pydantic v2 schemas for the processing-jobs module."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from datapipe.models.enums import OUTPUT_FORMATS, JobStage, JobStatus, RecordFormat
from datapipe.schemas.processing import JobOptions

# ── Request bodies ────────────────────────────────────────────────────────────


class JobCreate(BaseModel):
    """Body for POST /jobs."""

    project_id: int
    data_source_id: int
    schema_mapping_id: int | None = None
    output_format: RecordFormat = RecordFormat.JSONL
    output_name: str | None = Field(None, min_length=1, max_length=500)
    options: JobOptions | None = None

    @field_validator("output_format")
    @classmethod
    def _output_format_supported(cls, value: RecordFormat) -> RecordFormat:
        if value not in OUTPUT_FORMATS:
            raise ValueError(f"'{value.value}' cannot be used as an output format")
        return value


# ── Response bodies ───────────────────────────────────────────────────────────


class JobResponse(BaseModel):
    id: int
    project_id: int
    data_source_id: int
    schema_mapping_id: int | None
    status: JobStatus
    progress: int
    stage: JobStage | None
    output_format: RecordFormat
    output_name: str | None
    input_record_count: int | None
    processed_record_count: int
    output_record_count: int | None
    pii_detected_count: int | None
    filtered_out_count: int | None
    error_message: str | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class JobListResponse(BaseModel):
    items: list[JobResponse]
    total: int
    page: int
    page_size: int


class JobStats(BaseModel):
    input_record_count: int | None = None
    output_record_count: int | None = None
    pii_detected_count: int | None = None
    filtered_out_count: int | None = None


class JobProgress(BaseModel):
    """Snapshot of a job as seen by pollers."""

    job_id: int
    status: JobStatus
    progress: int
    stage: JobStage | None = None
    processed_records: int = 0
    total_records: int = 0
    stats: JobStats = Field(default_factory=JobStats)
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class JobLogsResponse(BaseModel):
    job_id: int
    logs: list[str]


class CancelJobResponse(BaseModel):
    job_id: int
    cancelled: bool
