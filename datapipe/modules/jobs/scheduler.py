"""Background scheduler that drives processing jobs to a terminal state.

The scheduler owns a bounded pool of asyncio tasks. Pending jobs are claimed
oldest-first with a conditional ``pending → processing`` update, so only one
claimer ever wins a job. Every write after the claim is conditional on the
row still being ``processing``; a terminal status is never overwritten.

Cancellation is cooperative: ``cancel()`` sets the job's token and the
running task observes it at the next batch boundary (and once more before
the output is stored).
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import sentry_sdk
import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from datapipe.core.config import settings
from datapipe.core.errors import (
    AppError,
    BadRequestError,
    JobAlreadyTerminalError,
    JobNotFoundError,
    NotFoundError,
    StorageError,
)
from datapipe.models import DataSource, Dataset, ProcessingJob, SchemaMapping
from datapipe.models.enums import JobStage, JobStatus
from datapipe.modules.jobs.events import JobEvent, JobLogBuffer, ProgressNotifier
from datapipe.modules.jobs.schemas import JobProgress, JobStats
from datapipe.schemas.processing import ProcessingConfig, build_processing_config
from datapipe.services import codec
from datapipe.services.pii import PIIDetector
from datapipe.services.storage import BlobStorage, generate_storage_key
from datapipe.services.transformer import Record, RecordTransformer

logger = structlog.get_logger()

MAX_ERROR_LENGTH = 500
IDLE_CHECK_INTERVAL = 0.05


class _JobCancelled(Exception):
    """Raised inside a job task once its cancellation token is observed."""


class _JobSuperseded(Exception):
    """The job row left ``processing`` underneath us; stop without writing."""


@dataclass
class _ActiveJob:
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None
    # Set once the terminal status is committed; cancel requests are refused from then on
    finished: bool = False


@dataclass
class _Inputs:
    job: ProcessingJob
    source: DataSource
    config: ProcessingConfig


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def percent_complete(processed: int, total: int) -> int:
    """Round-half-up percentage; an empty input is 100% done."""
    if total <= 0:
        return 100
    return min(100, math.floor(processed * 100 / total + 0.5))


def _transform_batch(
    transformer: RecordTransformer, batch: list[Record]
) -> tuple[list[Record], int, int]:
    kept: list[Record] = []
    filtered = 0
    with_pii = 0
    for record in batch:
        result = transformer.transform(record)
        if result.filtered:
            filtered += 1
            continue
        if result.pii_fields:
            with_pii += 1
        kept.append(result.record)
    return kept, filtered, with_pii


class ProcessingScheduler:
    """Bounded worker pool over the ``processing_jobs`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        storage: BlobStorage,
        *,
        concurrency: int | None = None,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        dataset_retention_days: int | None = None,
        notifier: ProgressNotifier | None = None,
        logs: JobLogBuffer | None = None,
        detector: PIIDetector | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.storage = storage
        self.concurrency = concurrency or settings.PROCESSING_CONCURRENCY
        self.batch_size = batch_size or settings.PROCESSING_BATCH_SIZE
        self.poll_interval = poll_interval or settings.PROCESSING_POLL_INTERVAL
        self.dataset_retention_days = dataset_retention_days
        self.notifier = notifier or ProgressNotifier()
        self.logs = logs or JobLogBuffer(settings.JOB_LOG_LIMIT, settings.JOB_LOG_MAX_JOBS)
        self.detector = detector

        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self._active: dict[int, _ActiveJob] = {}
        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._loop_task: asyncio.Task | None = None
        self._closed = False

    # ── Lifecycle ────────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def active_job_ids(self) -> list[int]:
        return list(self._active)

    def start(self) -> None:
        self._closed = False
        if not self.running:
            self._loop_task = asyncio.create_task(self._run_loop(), name="processing-scheduler")
            logger.info("processing.scheduler.started", concurrency=self.concurrency)
        self._wakeup.set()

    async def stop(self, timeout: float | None = 30.0) -> None:
        """Stop claiming, signal every in-flight job and wait for them to exit.

        Jobs still running after *timeout* are cancelled outright and remain
        ``processing`` in the database.
        """
        self._closed = True
        self._wakeup.set()
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        async with self._lock:
            active = list(self._active.values())
        for entry in active:
            entry.cancel_event.set()
        tasks = [entry.task for entry in active if entry.task is not None]
        if tasks:
            _, still_running = await asyncio.wait(tasks, timeout=timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                logger.warning("processing.scheduler.stop_timeout", jobs=len(still_running))
        logger.info("processing.scheduler.stopped")

    async def wait_idle(self) -> None:
        """Return once no job is running and none is waiting to be claimed."""
        while True:
            if not await self._has_pending() and not self._active:
                return
            await asyncio.sleep(IDLE_CHECK_INTERVAL)

    # ── Public operations ────────────────────────────────────────────────────

    async def enqueue(self, job_id: int) -> None:
        """Make a pending job eligible for claiming.

        A job that is already processing is left alone; a terminal job raises
        JobAlreadyTerminalError and an unknown one JobNotFoundError.
        """
        async with self._session_factory() as db:
            job = await db.get(ProcessingJob, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status.is_terminal:
                raise JobAlreadyTerminalError(job_id, job.status.value)
            if job.status is JobStatus.PENDING:
                await db.execute(
                    update(ProcessingJob)
                    .where(ProcessingJob.id == job_id, ProcessingJob.status == JobStatus.PENDING)
                    .values(stage=JobStage.QUEUED)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                self.logs.add(job_id, "Job enqueued")
                logger.info("processing.job.enqueued", job_id=job_id)
            else:
                logger.debug("processing.job.already_running", job_id=job_id)

        if not self._closed:
            self.start()

    async def cancel(self, job_id: int) -> bool:
        """Request cancellation.

        Returns True when the request was accepted: a running job has its
        token set, a pending job moves straight to ``cancelled``. Returns
        False for terminal or unknown jobs.
        """
        async with self._lock:
            entry = self._active.get(job_id)
            if entry is not None and not entry.finished:
                entry.cancel_event.set()
                self.logs.add(job_id, "Cancellation requested")
                logger.info("processing.job.cancel_requested", job_id=job_id)
                return True

            async with self._session_factory() as db:
                result = await db.execute(
                    update(ProcessingJob)
                    .where(ProcessingJob.id == job_id, ProcessingJob.status == JobStatus.PENDING)
                    .values(
                        status=JobStatus.CANCELLED,
                        stage=JobStage.CANCELLED,
                        completed_at=_utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                await db.commit()

        if result.rowcount != 1:
            return False
        self.logs.add(job_id, "Job cancelled before processing started")
        self.notifier.publish(JobEvent(job_id=job_id, type="cancelled"))
        logger.info("processing.job.cancelled", job_id=job_id, while_pending=True)
        return True

    async def get_progress(self, job_id: int) -> JobProgress | None:
        async with self._session_factory() as db:
            job = await db.get(ProcessingJob, job_id)
        if job is None:
            return None
        return JobProgress(
            job_id=job.id,
            status=job.status,
            progress=job.progress,
            stage=job.stage,
            processed_records=job.processed_record_count,
            total_records=job.input_record_count or 0,
            stats=JobStats(
                input_record_count=job.input_record_count,
                output_record_count=job.output_record_count,
                pii_detected_count=job.pii_detected_count,
                filtered_out_count=job.filtered_out_count,
            ),
            error_message=job.error_message,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )

    def get_logs(self, job_id: int) -> list[str]:
        return self.logs.get(job_id)

    # ── Claim loop ───────────────────────────────────────────────────────────

    async def _run_loop(self) -> None:
        while not self._closed:
            self._wakeup.clear()
            free = self.concurrency - len(self._active)
            if free <= 0:
                await self._sleep(self.poll_interval)
                continue
            try:
                claimed = await self._claim(free)
            except Exception:
                logger.exception("processing.scheduler.claim_failed")
                await self._sleep(self.poll_interval)
                continue
            if len(claimed) == free:
                # The pool filled up; there may be more pending work
                continue
            await self._wakeup.wait()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def _claim(self, limit: int) -> list[int]:
        claimed: list[int] = []
        async with self._lock:
            async with self._session_factory() as db:
                candidates = (
                    await db.execute(
                        select(ProcessingJob.id)
                        .where(ProcessingJob.status == JobStatus.PENDING)
                        .order_by(ProcessingJob.created_at, ProcessingJob.id)
                        .limit(limit)
                    )
                ).scalars().all()

                for job_id in candidates:
                    result = await db.execute(
                        update(ProcessingJob)
                        .where(ProcessingJob.id == job_id, ProcessingJob.status == JobStatus.PENDING)
                        .values(
                            status=JobStatus.PROCESSING,
                            stage=JobStage.QUEUED,
                            progress=0,
                            processed_record_count=0,
                            started_at=_utcnow(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        claimed.append(job_id)
                        # Registered before commit so the job is never invisible to wait_idle
                        self._active[job_id] = _ActiveJob()
                try:
                    await db.commit()
                except BaseException:
                    for job_id in claimed:
                        self._active.pop(job_id, None)
                    raise

            for job_id in claimed:
                entry = self._active[job_id]
                entry.task = asyncio.create_task(
                    self._run_job(job_id, entry.cancel_event), name=f"processing-job-{job_id}"
                )
        for job_id in claimed:
            logger.info("processing.job.claimed", job_id=job_id)
        return claimed

    async def _has_pending(self) -> bool:
        async with self._session_factory() as db:
            count = await db.scalar(
                select(func.count())
                .select_from(ProcessingJob)
                .where(ProcessingJob.status == JobStatus.PENDING)
            )
        return bool(count)

    # ── Job execution ────────────────────────────────────────────────────────

    async def _run_job(self, job_id: int, cancel_event: asyncio.Event) -> None:
        try:
            await self._execute(job_id, cancel_event)
        except _JobCancelled:
            await self._finalize(self._mark_cancelled, job_id)
        except _JobSuperseded:
            self.logs.add(job_id, "Job is no longer processing; stopping")
            logger.info("processing.job.superseded", job_id=job_id)
        except AppError as exc:
            await self._finalize(self._mark_failed, job_id, exc.message)
        except Exception as exc:
            logger.exception("processing.job.crashed", job_id=job_id)
            sentry_sdk.capture_exception(exc)
            await self._finalize(self._mark_failed, job_id, str(exc) or type(exc).__name__)
        finally:
            async with self._lock:
                self._active.pop(job_id, None)
            self._wakeup.set()

    async def _finalize(self, mark, job_id: int, *args: Any) -> None:
        try:
            await mark(job_id, *args)
        except Exception:
            logger.exception("processing.job.finalize_failed", job_id=job_id)

    def _check_cancelled(self, cancel_event: asyncio.Event) -> None:
        if cancel_event.is_set():
            raise _JobCancelled

    async def _load_inputs(self, job_id: int) -> _Inputs:
        async with self._session_factory() as db:
            job = await db.get(ProcessingJob, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            source = await db.get(DataSource, job.data_source_id)
            mapping = (
                await db.get(SchemaMapping, job.schema_mapping_id)
                if job.schema_mapping_id is not None
                else None
            )

        if source is None:
            raise NotFoundError("Data source")
        if not source.storage_key:
            raise BadRequestError("Data source has no stored file")

        config = build_processing_config(
            output_format=job.output_format,
            job_options=job.config,
            mapping_config=mapping.mapping_config if mapping else None,
            filter_config=mapping.filter_config if mapping else None,
            pii_config=mapping.pii_config if mapping else None,
            default_batch_size=self.batch_size,
        )
        return _Inputs(job=job, source=source, config=config)

    async def _execute(self, job_id: int, cancel_event: asyncio.Event) -> None:
        log = self.logs.add
        log(job_id, "Processing started")
        self._check_cancelled(cancel_event)

        inputs = await self._load_inputs(job_id)
        job, source, config = inputs.job, inputs.source, inputs.config
        log(job_id, f"Processing data source: {source.name}")
        log(job_id, f"Output format: {config.output_format.value}")

        self._check_cancelled(cancel_event)
        await self._update_job(job_id, stage=JobStage.DOWNLOADING)
        log(job_id, "Downloading source file...")
        data = await self.storage.fetch(source.storage_key)

        self._check_cancelled(cancel_event)
        await self._update_job(job_id, stage=JobStage.PARSING)
        records = await asyncio.to_thread(codec.decode, data, source.format)
        total = len(records)
        log(job_id, f"Found {total} records to process")
        await self._update_job(job_id, stage=JobStage.TRANSFORMING, input_record_count=total)

        transformer = RecordTransformer(config, self.detector)
        output: list[Record] = []
        processed = filtered = with_pii = 0
        batch_count = math.ceil(total / config.batch_size)

        for index, start in enumerate(range(0, total, config.batch_size), start=1):
            self._check_cancelled(cancel_event)
            batch = records[start:start + config.batch_size]
            log(job_id, f"Processing batch {index}/{batch_count}")

            kept, batch_filtered, batch_pii = await asyncio.to_thread(
                _transform_batch, transformer, batch
            )
            output.extend(kept)
            processed += len(batch)
            filtered += batch_filtered
            with_pii += batch_pii

            progress = percent_complete(processed, total)
            await self._update_job(
                job_id,
                progress=progress,
                processed_record_count=processed,
                filtered_out_count=filtered,
                pii_detected_count=with_pii,
            )
            self.notifier.publish(
                JobEvent(
                    job_id=job_id,
                    type="progress",
                    progress=progress,
                    processed_records=processed,
                    total_records=total,
                )
            )

        log(
            job_id,
            f"Processing complete. {len(output)} records kept, {filtered} filtered out, "
            f"{with_pii} records with PII",
        )

        self._check_cancelled(cancel_event)
        await self._update_job(job_id, stage=JobStage.ENCODING)
        payload = await asyncio.to_thread(codec.encode, output, config.output_format)

        self._check_cancelled(cancel_event)
        await self._update_job(job_id, stage=JobStage.UPLOADING)
        dataset_name = job.output_name or f"{source.name}_processed"
        filename = f"{dataset_name}.{codec.file_extension(config.output_format)}"
        key = generate_storage_key(job.project_id, "datasets", filename)
        log(job_id, "Uploading output file...")
        stored = await self.storage.store(key, payload, codec.content_type(config.output_format))

        if cancel_event.is_set():
            await self._discard_blob(job_id, key)
            raise _JobCancelled

        try:
            dataset_id = await self._complete(
                job,
                source,
                config,
                name=dataset_name,
                key=key,
                size=stored.size,
                total=total,
                output_count=len(output),
                filtered=filtered,
                with_pii=with_pii,
            )
        except Exception:
            await self._discard_blob(job_id, key)
            raise
        if dataset_id is None:
            await self._discard_blob(job_id, key)
            raise _JobSuperseded

        log(job_id, f"Job completed successfully. Dataset ID: {dataset_id}")
        self.notifier.publish(
            JobEvent(
                job_id=job_id,
                type="completed",
                progress=100,
                processed_records=total,
                total_records=total,
                dataset_id=dataset_id,
            )
        )
        logger.info(
            "processing.job.completed",
            job_id=job_id,
            dataset_id=dataset_id,
            input_records=total,
            output_records=len(output),
            filtered_out=filtered,
            pii_records=with_pii,
        )

    # ── Writes ───────────────────────────────────────────────────────────────

    async def _update_job(self, job_id: int, **values: Any) -> None:
        async with self._session_factory() as db:
            result = await db.execute(
                update(ProcessingJob)
                .where(ProcessingJob.id == job_id, ProcessingJob.status == JobStatus.PROCESSING)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount != 1:
            raise _JobSuperseded

    async def _commit_terminal(self, db: AsyncSession, job_id: int) -> None:
        # Under the lock so cancel() sees either a running job or a finished one
        async with self._lock:
            await db.commit()
            entry = self._active.get(job_id)
            if entry is not None:
                entry.finished = True

    async def _complete(
        self,
        job: ProcessingJob,
        source: DataSource,
        config: ProcessingConfig,
        *,
        name: str,
        key: str,
        size: int,
        total: int,
        output_count: int,
        filtered: int,
        with_pii: int,
    ) -> int | None:
        """Mark the job completed and create its dataset in one transaction.

        Returns the dataset id, or None when the job had already left
        ``processing``.
        """
        now = _utcnow()
        async with self._session_factory() as db:
            result = await db.execute(
                update(ProcessingJob)
                .where(ProcessingJob.id == job.id, ProcessingJob.status == JobStatus.PROCESSING)
                .values(
                    status=JobStatus.COMPLETED,
                    stage=JobStage.COMPLETED,
                    progress=100,
                    processed_record_count=total,
                    input_record_count=total,
                    output_record_count=output_count,
                    filtered_out_count=filtered,
                    pii_detected_count=with_pii,
                    error_message=None,
                    completed_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                return None

            expires_at = None
            if self.dataset_retention_days:
                expires_at = now + timedelta(days=self.dataset_retention_days)

            dataset = Dataset(
                project_id=job.project_id,
                job_id=job.id,
                data_source_id=source.id,
                name=name,
                format=config.output_format,
                record_count=output_count,
                file_size=size,
                storage_key=key,
                metadata_={
                    "source_name": source.name,
                    "input_record_count": total,
                    "filtered_out_count": filtered,
                    "pii_detected_count": with_pii,
                    "content_type": codec.content_type(config.output_format),
                },
                expires_at=expires_at,
            )
            db.add(dataset)
            await self._commit_terminal(db, job.id)
            return dataset.id

    async def _mark_failed(self, job_id: int, message: str) -> None:
        message = message[:MAX_ERROR_LENGTH]
        async with self._session_factory() as db:
            result = await db.execute(
                update(ProcessingJob)
                .where(ProcessingJob.id == job_id, ProcessingJob.status == JobStatus.PROCESSING)
                .values(
                    status=JobStatus.FAILED,
                    stage=JobStage.FAILED,
                    error_message=message,
                    completed_at=_utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await self._commit_terminal(db, job_id)
        if result.rowcount != 1:
            return
        self.logs.add(job_id, f"Job failed: {message}")
        self.notifier.publish(JobEvent(job_id=job_id, type="failed", error=message))
        logger.warning("processing.job.failed", job_id=job_id, error=message)

    async def _mark_cancelled(self, job_id: int) -> None:
        async with self._session_factory() as db:
            result = await db.execute(
                update(ProcessingJob)
                .where(ProcessingJob.id == job_id, ProcessingJob.status == JobStatus.PROCESSING)
                .values(
                    status=JobStatus.CANCELLED,
                    stage=JobStage.CANCELLED,
                    completed_at=_utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await self._commit_terminal(db, job_id)
        if result.rowcount != 1:
            return
        self.logs.add(job_id, "Job cancelled")
        self.notifier.publish(JobEvent(job_id=job_id, type="cancelled"))
        logger.info("processing.job.cancelled", job_id=job_id)

    async def _discard_blob(self, job_id: int, key: str) -> None:
        try:
            await self.storage.delete(key)
        except StorageError as exc:
            logger.warning("processing.output_discard_failed", job_id=job_id, key=key, error=exc.message)
