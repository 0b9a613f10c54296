"""Domain enums shared by models, schemas and services."""

import enum


# ── Data sources ─────────────────────────────────────────────────────────────


class DataSourceStatus(str, enum.Enum):
    PENDING = "pending"
    READY = "ready"
    ERROR = "error"


class RecordFormat(str, enum.Enum):
    """Serialization formats the record codec understands."""
    JSON = "json"
    JSONL = "jsonl"
    CSV = "csv"
    XLSX = "xlsx"


# Formats a job may emit; xlsx is input-only
OUTPUT_FORMATS: frozenset[RecordFormat] = frozenset({
    RecordFormat.JSON,
    RecordFormat.JSONL,
    RecordFormat.CSV,
})


# ── Processing jobs ──────────────────────────────────────────────────────────


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[JobStatus] = frozenset({
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
})


class JobStage(str, enum.Enum):
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    PARSING = "parsing"
    TRANSFORMING = "transforming"
    ENCODING = "encoding"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ── Transformation config ────────────────────────────────────────────────────


class FilterOperator(str, enum.Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"


class PIIType(str, enum.Enum):
    EMAIL = "email"
    PHONE = "phone"
    SSN = "ssn"
    CREDIT_CARD = "credit_card"
    IP_ADDRESS = "ip_address"
    PERSON_NAME = "person_name"
    ADDRESS = "address"
    DATE_OF_BIRTH = "date_of_birth"
    URL = "url"
    CUSTOM = "custom"


class RedactionStrategy(str, enum.Enum):
    REDACT = "redact"
    PSEUDONYMIZE = "pseudonymize"
    HASH = "hash"
