"""
Async engine, session factory and declarative base shared by all models.
"""
import asyncio
from typing import AsyncGenerator, Awaitable, TypeVar

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from ridefare.config import get_settings

settings = get_settings()
T = TypeVar("T")


class Base(DeclarativeBase):
    pass


def _engine_options(url: str) -> dict:
    # sqlite drivers reject pool sizing arguments
    if url.startswith("sqlite"):
        return {}
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 20}


engine = create_async_engine(
    settings.database_url,
    echo=settings.log_level == "DEBUG",
    **_engine_options(settings.database_url),
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# ---------------------------------------------------------------------------
# Deadlines and retry
# ---------------------------------------------------------------------------

TRANSIENT_ERRORS = (OperationalError, InterfaceError, asyncio.TimeoutError, ConnectionError)

# One retry on transient failure; wrapped callables must be idempotent
db_retry = retry(
    stop=stop_after_attempt(settings.db_retry_attempts),
    wait=wait_fixed(0.1),
    retry=retry_if_exception_type(TRANSIENT_ERRORS),
    reraise=True,
)


async def bounded(awaitable: Awaitable[T]) -> T:
    """Apply the persistence deadline to one database round trip."""
    return await asyncio.wait_for(awaitable, timeout=settings.db_timeout_seconds)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session; rolls back on error."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create tables (development and tests; production uses alembic)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
