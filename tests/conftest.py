"""Shared test fixtures for the datapipe test suite."""

import os
import tempfile

# The app module builds its engine at import time; point it at a scratch SQLite file
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{tempfile.mkdtemp(prefix='datapipe-tests-')}/app.db",
)

from collections.abc import AsyncGenerator, Callable  # noqa: E402
from typing import Any  # noqa: E402

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool  # noqa: E402

from datapipe.core.database import Base, get_db  # noqa: E402
from datapipe.main import create_app  # noqa: E402
from datapipe.models import DataSource, ProcessingJob, SchemaMapping  # noqa: E402
from datapipe.models.enums import DataSourceStatus, JobStatus, RecordFormat  # noqa: E402
from datapipe.modules.jobs.events import JobLogBuffer, ProgressNotifier  # noqa: E402
from datapipe.modules.jobs.scheduler import ProcessingScheduler  # noqa: E402
from datapipe.services.pii import PIIDetector  # noqa: E402
from fakes import FakeBlobStorage, FakeEntityExtractor  # noqa: E402

PROJECT_ID = 1


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


# ── Database ──────────────────────────────────────────────────────────────


@pytest.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine]:
    """Fresh SQLite file per test; NullPool gives every session its own connection."""
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        poolclass=NullPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession]:
    async with session_factory() as session:
        yield session


# ── Fakes ─────────────────────────────────────────────────────────────────


@pytest.fixture
def storage() -> FakeBlobStorage:
    return FakeBlobStorage()


@pytest.fixture
def entity_extractor() -> FakeEntityExtractor:
    return FakeEntityExtractor()


@pytest.fixture
def detector(entity_extractor: FakeEntityExtractor) -> PIIDetector:
    return PIIDetector(entity_extractor)


@pytest.fixture
def notifier() -> ProgressNotifier:
    return ProgressNotifier()


@pytest.fixture
async def scheduler(
    session_factory, storage, detector, notifier
) -> AsyncGenerator[ProcessingScheduler]:
    sched = ProcessingScheduler(
        session_factory,
        storage,
        concurrency=2,
        batch_size=100,
        poll_interval=0.05,
        notifier=notifier,
        logs=JobLogBuffer(max_lines=1000, max_jobs=50),
        detector=detector,
    )
    yield sched
    await sched.stop(timeout=5)


# ── Data builders ─────────────────────────────────────────────────────────


@pytest.fixture
def make_source(session_factory, storage) -> Callable[..., Any]:
    """Store *content* in the fake blob store and register a ready DataSource."""

    async def _make(
        content: bytes,
        fmt: RecordFormat = RecordFormat.CSV,
        *,
        name: str = "customers",
        project_id: int = PROJECT_ID,
        status: DataSourceStatus = DataSourceStatus.READY,
        record_count: int | None = None,
        store: bool = True,
    ) -> DataSource:
        async with session_factory() as session:
            source = DataSource(
                project_id=project_id,
                name=name,
                type="file",
                format=fmt,
                status=status,
                record_count=record_count,
                file_size=len(content),
            )
            session.add(source)
            await session.flush()
            source.storage_key = f"project-{project_id}/sources/{source.id}-{name}.{fmt.value}"
            await session.commit()
        if store:
            storage.objects[source.storage_key] = content
        return source

    return _make


@pytest.fixture
def make_mapping(session_factory) -> Callable[..., Any]:
    async def _make(
        source: DataSource,
        *,
        mapping_config: dict | None = None,
        filter_config: dict | None = None,
        pii_config: dict | None = None,
    ) -> SchemaMapping:
        async with session_factory() as session:
            mapping = SchemaMapping(
                project_id=source.project_id,
                data_source_id=source.id,
                mapping_config=mapping_config,
                filter_config=filter_config,
                pii_config=pii_config,
            )
            session.add(mapping)
            await session.commit()
        return mapping

    return _make


@pytest.fixture
def make_job(session_factory) -> Callable[..., Any]:
    """Insert a pending ProcessingJob directly, bypassing submission checks."""

    async def _make(
        source: DataSource,
        mapping: SchemaMapping | None = None,
        *,
        output_format: RecordFormat = RecordFormat.JSONL,
        output_name: str | None = None,
        config: dict | None = None,
    ) -> int:
        async with session_factory() as session:
            job = ProcessingJob(
                project_id=source.project_id,
                data_source_id=source.id,
                schema_mapping_id=mapping.id if mapping else None,
                status=JobStatus.PENDING,
                output_format=output_format,
                output_name=output_name,
                config=config,
            )
            session.add(job)
            await session.commit()
            return job.id

    return _make


# ── HTTP ──────────────────────────────────────────────────────────────────


@pytest.fixture
async def client(session_factory, scheduler, storage) -> AsyncGenerator[AsyncClient]:
    app = create_app(with_lifespan=False)
    app.state.scheduler = scheduler
    app.state.storage = storage

    async def _get_test_db() -> AsyncGenerator[AsyncSession]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_test_db
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
