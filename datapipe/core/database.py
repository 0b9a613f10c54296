from collections.abc import AsyncGenerator

import structlog
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from datapipe.core.config import settings

logger = structlog.get_logger()

# JSONB on Postgres, plain JSON everywhere else (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def build_engine(url: str):
    """Create the async engine; pool tuning only applies to server databases."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=settings.APP_DEBUG)
    return create_async_engine(
        url,
        echo=settings.APP_DEBUG,
        pool_size=10,
        max_overflow=5,
        pool_pre_ping=True,               # Drop stale connections before use
        pool_recycle=1800,                 # Recycle connections every 30 min
        pool_timeout=30,
    )


engine = build_engine(settings.DATABASE_URL)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncGenerator[AsyncSession]:
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
