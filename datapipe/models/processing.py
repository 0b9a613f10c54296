"""Models for the processing pipeline: sources, mappings, jobs and datasets."""

from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, BigInteger, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from datapipe.core.database import Base, JSONType
from datapipe.models.base import ModelMixin, SoftDeleteMixin, TimestampMixin
from datapipe.models.enums import DataSourceStatus, JobStage, JobStatus, RecordFormat


class DataSource(Base, ModelMixin, TimestampMixin, SoftDeleteMixin):
    """An uploaded source file. Owned by the upload flow; read-only to the pipeline."""

    __tablename__ = "data_sources"
    __table_args__ = (Index("ix_data_sources_project_id", "project_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="file")  # file | api
    format: Mapped[RecordFormat] = mapped_column(nullable=False)
    storage_key: Mapped[str | None] = mapped_column(String(1024))
    file_size: Mapped[int | None] = mapped_column(BigInteger)
    record_count: Mapped[int | None] = mapped_column(Integer)
    columns: Mapped[list[str] | None] = mapped_column(JSONType)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType)
    status: Mapped[DataSourceStatus] = mapped_column(
        nullable=False, default=DataSourceStatus.PENDING
    )


class SchemaMapping(Base, ModelMixin, TimestampMixin):
    """Transformation configuration attached to a data source.

    mapping_config: {output_field: source_field}
    filter_config:  {"rules": [{field, operator, value}, ...]}
    pii_config:     {enabled_types, custom_patterns, strategies}
    """

    __tablename__ = "schema_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, nullable=False)
    data_source_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("data_sources.id", ondelete="CASCADE"), nullable=False
    )
    mapping_config: Mapped[dict[str, str] | None] = mapped_column(JSONType)
    pii_config: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    filter_config: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class ProcessingJob(Base, ModelMixin, TimestampMixin):
    """One run of the pipeline over a data source.

    Lifecycle: pending → processing → completed | failed | cancelled
    Only the scheduler moves a job out of ``pending``.
    """

    __tablename__ = "processing_jobs"
    __table_args__ = (
        Index("ix_processing_jobs_project_id", "project_id"),
        Index("ix_processing_jobs_status_created_at", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, nullable=False)
    schema_mapping_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("schema_mappings.id", ondelete="SET NULL")
    )
    data_source_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("data_sources.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[JobStatus] = mapped_column(nullable=False, default=JobStatus.PENDING)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stage: Mapped[JobStage | None] = mapped_column()
    output_format: Mapped[RecordFormat] = mapped_column(
        nullable=False, default=RecordFormat.JSONL
    )
    output_name: Mapped[str | None] = mapped_column(String(500))
    # Per-job options: batch_size, enable_pii_detection, enable_pii_redaction, redaction_labels, ...
    config: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    input_record_count: Mapped[int | None] = mapped_column(Integer)
    processed_record_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_record_count: Mapped[int | None] = mapped_column(Integer)
    pii_detected_count: Mapped[int | None] = mapped_column(Integer)
    filtered_out_count: Mapped[int | None] = mapped_column(Integer)
    error_message: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class Dataset(Base, ModelMixin, TimestampMixin, SoftDeleteMixin):
    """Output artifact of a completed job. Immutable apart from soft delete."""

    __tablename__ = "datasets"
    __table_args__ = (Index("ix_datasets_project_id", "project_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, nullable=False)
    job_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("processing_jobs.id", ondelete="SET NULL")
    )
    data_source_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("data_sources.id", ondelete="SET NULL")
    )
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    format: Mapped[RecordFormat] = mapped_column(nullable=False)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False)
    file_size: Mapped[int | None] = mapped_column(BigInteger)
    storage_key: Mapped[str | None] = mapped_column(String(1024))
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
