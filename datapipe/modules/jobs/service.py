"""Service layer for processing jobs: submission and inspection."""

from __future__ import annotations

import time

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from datapipe.core.config import settings
from datapipe.core.errors import BadRequestError, JobNotFoundError, NotFoundError
from datapipe.models import DataSource, ProcessingJob, SchemaMapping
from datapipe.models.enums import DataSourceStatus, JobStatus
from datapipe.modules.jobs.schemas import JobCreate
from datapipe.schemas.processing import build_processing_config

logger = structlog.get_logger()


def default_output_name() -> str:
    return f"export-{int(time.time() * 1000)}"


class JobService:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    # ── Submission ────────────────────────────────────────────────────────────

    async def create_job(self, body: JobCreate) -> ProcessingJob:
        """Validate the request and persist a ``pending`` job.

        The caller is expected to hand the job to the scheduler afterwards.
        Configuration errors are raised here so no job row is created for
        input that could never run.
        """
        source = await self.db.get(DataSource, body.data_source_id)
        if source is None or source.project_id != body.project_id or source.is_deleted:
            raise NotFoundError("Data source")
        if source.status is not DataSourceStatus.READY:
            raise BadRequestError(
                f"Data source is not ready (status: {source.status.value})",
                detail={"data_source_id": source.id, "status": source.status.value},
            )

        mapping: SchemaMapping | None = None
        if body.schema_mapping_id is not None:
            mapping = await self.db.get(SchemaMapping, body.schema_mapping_id)
            if mapping is None or mapping.project_id != body.project_id:
                raise NotFoundError("Schema mapping")

        options = body.options.model_dump(mode="json", exclude_defaults=True) if body.options else None
        build_processing_config(
            output_format=body.output_format,
            job_options=options,
            mapping_config=mapping.mapping_config if mapping else None,
            filter_config=mapping.filter_config if mapping else None,
            pii_config=mapping.pii_config if mapping else None,
            default_batch_size=settings.PROCESSING_BATCH_SIZE,
        )

        job = ProcessingJob(
            project_id=body.project_id,
            data_source_id=source.id,
            schema_mapping_id=mapping.id if mapping else None,
            status=JobStatus.PENDING,
            progress=0,
            output_format=body.output_format,
            output_name=body.output_name or default_output_name(),
            config=options,
            input_record_count=source.record_count,
            processed_record_count=0,
        )
        self.db.add(job)
        await self.db.commit()
        await self.db.refresh(job)

        logger.info(
            "processing.job.created",
            job_id=job.id,
            project_id=job.project_id,
            data_source_id=job.data_source_id,
            output_format=job.output_format.value,
        )
        return job

    # ── Inspection ────────────────────────────────────────────────────────────

    async def get_job(self, job_id: int) -> ProcessingJob:
        job = await self.db.get(ProcessingJob, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(
        self,
        project_id: int,
        status: JobStatus | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[ProcessingJob], int]:
        """Newest first; returns the page and the total matching count."""
        filters = [ProcessingJob.project_id == project_id]
        if status is not None:
            filters.append(ProcessingJob.status == status)

        total = await self.db.scalar(
            select(func.count()).select_from(ProcessingJob).where(*filters)
        )
        result = await self.db.execute(
            select(ProcessingJob)
            .where(*filters)
            .order_by(ProcessingJob.created_at.desc(), ProcessingJob.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total or 0
