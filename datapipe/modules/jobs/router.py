"""FastAPI router for processing jobs."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from datapipe.core.database import get_db
from datapipe.core.errors import JobAlreadyTerminalError, JobNotFoundError
from datapipe.models.enums import JobStatus
from datapipe.modules.jobs.scheduler import ProcessingScheduler
from datapipe.modules.jobs.schemas import (
    CancelJobResponse,
    JobCreate,
    JobListResponse,
    JobLogsResponse,
    JobProgress,
    JobResponse,
)
from datapipe.modules.jobs.service import JobService

logger = structlog.get_logger()

router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_scheduler(request: Request) -> ProcessingScheduler:
    return request.app.state.scheduler


# ── Endpoints ─────────────────────────────────────────────────────────────────


@router.post("", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_job(
    body: JobCreate,
    db: AsyncSession = Depends(get_db),
    scheduler: ProcessingScheduler = Depends(get_scheduler),
) -> JobResponse:
    """Submit a job. It runs in the background; poll /progress for status."""
    job = await JobService(db).create_job(body)
    await scheduler.enqueue(job.id)
    return JobResponse.model_validate(job)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    project_id: int = Query(...),
    status_filter: JobStatus | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> JobListResponse:
    jobs, total = await JobService(db).list_jobs(project_id, status_filter, page, page_size)
    return JobListResponse(
        items=[JobResponse.model_validate(j) for j in jobs],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: int, db: AsyncSession = Depends(get_db)) -> JobResponse:
    job = await JobService(db).get_job(job_id)
    return JobResponse.model_validate(job)


@router.get("/{job_id}/progress", response_model=JobProgress)
async def get_job_progress(
    job_id: int,
    scheduler: ProcessingScheduler = Depends(get_scheduler),
) -> JobProgress:
    snapshot = await scheduler.get_progress(job_id)
    if snapshot is None:
        raise JobNotFoundError(job_id)
    return snapshot


@router.get("/{job_id}/logs", response_model=JobLogsResponse)
async def get_job_logs(
    job_id: int,
    db: AsyncSession = Depends(get_db),
    scheduler: ProcessingScheduler = Depends(get_scheduler),
) -> JobLogsResponse:
    await JobService(db).get_job(job_id)
    return JobLogsResponse(job_id=job_id, logs=scheduler.get_logs(job_id))


@router.post("/{job_id}/cancel", response_model=CancelJobResponse)
async def cancel_job(
    job_id: int,
    db: AsyncSession = Depends(get_db),
    scheduler: ProcessingScheduler = Depends(get_scheduler),
) -> CancelJobResponse:
    """Request cancellation; a running job stops at its next batch boundary."""
    job = await JobService(db).get_job(job_id)
    if job.status.is_terminal:
        raise JobAlreadyTerminalError(job_id, job.status.value)
    if not await scheduler.cancel(job_id):
        # Finished between the read above and the cancel request
        await db.refresh(job)
        raise JobAlreadyTerminalError(job_id, job.status.value)
    logger.info("processing.job.cancel_accepted", job_id=job_id)
    return CancelJobResponse(job_id=job_id, cancelled=True)
