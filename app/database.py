"""
Async SQLAlchemy engine and session factory (PostgreSQL via asyncpg).

Every matching process coordinates through this store alone: queue
claims, credit debits and the notification outbox rely on row locks
taken inside ``async with async_session() as s: async with s.begin():``
blocks.  Components receive ``async_session`` as their session factory.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.config import settings

engine = create_async_engine(
    settings.DATABASE_URL,
    pool_size=settings.DATABASE_POOL_SIZE,
    # One extra connection per worker loop for its post-task outbox flush
    max_overflow=settings.MATCHING_WORKER_CONCURRENCY,
    pool_pre_ping=True,
    echo=settings.DEBUG,
    connect_args={"server_settings": {"application_name": settings.APP_NAME}},
)

# Claimed tasks and outbox rows are read after their transaction commits
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for the matching tables."""
    pass


async def get_db() -> AsyncSession:
    """FastAPI dependency: one session per request, committed on success."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
