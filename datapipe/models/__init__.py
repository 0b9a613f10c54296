"""SQLAlchemy models; importing this package populates Base.metadata."""

from datapipe.models.base import ModelMixin, SoftDeleteMixin, TimestampMixin
from datapipe.models.enums import (
    DataSourceStatus,
    FilterOperator,
    JobStage,
    JobStatus,
    PIIType,
    RecordFormat,
    RedactionStrategy,
)
from datapipe.models.processing import DataSource, Dataset, ProcessingJob, SchemaMapping

__all__ = [
    "DataSource",
    "DataSourceStatus",
    "Dataset",
    "FilterOperator",
    "JobStage",
    "JobStatus",
    "ModelMixin",
    "SoftDeleteMixin",
    "PIIType",
    "ProcessingJob",
    "RecordFormat",
    "RedactionStrategy",
    "SchemaMapping",
    "TimestampMixin",
]
