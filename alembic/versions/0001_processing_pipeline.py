"""processing_pipeline

Revision ID: 0001_processing_pipeline
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "0001_processing_pipeline"
down_revision = None
branch_labels = None
depends_on = None

_json = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

# Enum columns store member names, matching SQLAlchemy's default Enum mapping.
# Types are shared between tables, so they are created once up front.
_record_format = postgresql.ENUM("JSON", "JSONL", "CSV", "XLSX", name="recordformat", create_type=False)
_source_status = postgresql.ENUM("PENDING", "READY", "ERROR", name="datasourcestatus", create_type=False)
_job_status = postgresql.ENUM(
    "PENDING", "PROCESSING", "COMPLETED", "FAILED", "CANCELLED", name="jobstatus", create_type=False
)
_job_stage = postgresql.ENUM(
    "QUEUED",
    "DOWNLOADING",
    "PARSING",
    "TRANSFORMING",
    "ENCODING",
    "UPLOADING",
    "COMPLETED",
    "FAILED",
    "CANCELLED",
    name="jobstage",
    create_type=False,
)
_ENUMS = (_record_format, _source_status, _job_status, _job_stage)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum in _ENUMS:
        enum.create(bind, checkfirst=True)

    op.create_table(
        "data_sources",
        sa.Column("id", sa.Integer, autoincrement=True, nullable=False),
        sa.Column("project_id", sa.Integer, nullable=False),
        sa.Column("name", sa.String(500), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("format", _record_format, nullable=False),
        sa.Column("storage_key", sa.String(1024), nullable=True),
        sa.Column("file_size", sa.BigInteger, nullable=True),
        sa.Column("record_count", sa.Integer, nullable=True),
        sa.Column("columns", _json, nullable=True),
        sa.Column("metadata", _json, nullable=True),
        sa.Column("status", _source_status, nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_data_sources_project_id", "data_sources", ["project_id"])

    op.create_table(
        "schema_mappings",
        sa.Column("id", sa.Integer, autoincrement=True, nullable=False),
        sa.Column("project_id", sa.Integer, nullable=False),
        sa.Column("data_source_id", sa.Integer, nullable=False),
        sa.Column("mapping_config", _json, nullable=True),
        sa.Column("pii_config", _json, nullable=True),
        sa.Column("filter_config", _json, nullable=True),
        sa.Column("is_active", sa.Boolean, server_default=sa.true(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["data_source_id"], ["data_sources.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "processing_jobs",
        sa.Column("id", sa.Integer, autoincrement=True, nullable=False),
        sa.Column("project_id", sa.Integer, nullable=False),
        sa.Column("schema_mapping_id", sa.Integer, nullable=True),
        sa.Column("data_source_id", sa.Integer, nullable=False),
        sa.Column("status", _job_status, nullable=False),
        sa.Column("progress", sa.Integer, server_default="0", nullable=False),
        sa.Column("stage", _job_stage, nullable=True),
        sa.Column("output_format", _record_format, nullable=False),
        sa.Column("output_name", sa.String(500), nullable=True),
        sa.Column("config", _json, nullable=True),
        sa.Column("input_record_count", sa.Integer, nullable=True),
        sa.Column("processed_record_count", sa.Integer, server_default="0", nullable=False),
        sa.Column("output_record_count", sa.Integer, nullable=True),
        sa.Column("pii_detected_count", sa.Integer, nullable=True),
        sa.Column("filtered_out_count", sa.Integer, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["schema_mapping_id"], ["schema_mappings.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["data_source_id"], ["data_sources.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_processing_jobs_project_id", "processing_jobs", ["project_id"])
    op.create_index(
        "ix_processing_jobs_status_created_at", "processing_jobs", ["status", "created_at"]
    )

    op.create_table(
        "datasets",
        sa.Column("id", sa.Integer, autoincrement=True, nullable=False),
        sa.Column("project_id", sa.Integer, nullable=False),
        sa.Column("job_id", sa.Integer, nullable=True),
        sa.Column("data_source_id", sa.Integer, nullable=True),
        sa.Column("name", sa.String(500), nullable=False),
        sa.Column("format", _record_format, nullable=False),
        sa.Column("record_count", sa.Integer, nullable=False),
        sa.Column("file_size", sa.BigInteger, nullable=True),
        sa.Column("storage_key", sa.String(1024), nullable=True),
        sa.Column("metadata", _json, nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["job_id"], ["processing_jobs.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["data_source_id"], ["data_sources.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_datasets_project_id", "datasets", ["project_id"])


def downgrade() -> None:
    op.drop_index("ix_datasets_project_id", table_name="datasets")
    op.drop_table("datasets")
    op.drop_index("ix_processing_jobs_status_created_at", table_name="processing_jobs")
    op.drop_index("ix_processing_jobs_project_id", table_name="processing_jobs")
    op.drop_table("processing_jobs")
    op.drop_table("schema_mappings")
    op.drop_index("ix_data_sources_project_id", table_name="data_sources")
    op.drop_table("data_sources")

    bind = op.get_bind()
    for enum in reversed(_ENUMS):
        enum.drop(bind, checkfirst=True)
