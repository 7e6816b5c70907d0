"""
Database Session Management - Async SQLAlchemy session factory.

Issuance and scan validation each run in one short transaction on the
primary. Quota peeks, usage reads and health checks may use the replica.
"""

from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from enum import Enum

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import settings


class DatabaseRole(str, Enum):
    """Which database a session talks to."""

    WRITE = "write"
    READ = "read"


_engines: dict[DatabaseRole, AsyncEngine] = {}
_session_factories: dict[DatabaseRole, async_sessionmaker[AsyncSession]] = {}


def _url_for(role: DatabaseRole) -> str:
    if role == DatabaseRole.READ:
        return settings.read_database_url
    return settings.database_url


def get_engine(role: DatabaseRole) -> AsyncEngine:
    """Get or create the engine for a role."""
    engine = _engines.get(role)
    if engine is None:
        engine = create_async_engine(
            _url_for(role),
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
            pool_pre_ping=True,
            # Row locks and conditional updates rely on per-statement snapshots
            isolation_level="READ COMMITTED",
            echo=settings.log_level == "DEBUG",
        )
        _engines[role] = engine
    return engine


def get_write_engine() -> AsyncEngine:
    """Primary engine."""
    return get_engine(DatabaseRole.WRITE)


def get_session_factory(role: DatabaseRole) -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory for a role."""
    factory = _session_factories.get(role)
    if factory is None:
        factory = async_sessionmaker(get_engine(role), class_=AsyncSession, expire_on_commit=False)
        _session_factories[role] = factory
    return factory


@asynccontextmanager
async def session_scope(role: DatabaseRole) -> AsyncIterator[AsyncSession]:
    """Session that is closed, and any open transaction rolled back, on exit."""
    async with get_session_factory(role)() as session:
        yield session


def get_write_session() -> AbstractAsyncContextManager[AsyncSession]:
    """
    Write session outside request handling (reaper loop, scripts).

    Usage:
        async with get_write_session() as session:
            await TokenReaper(session).run_once()
    """
    return session_scope(DatabaseRole.WRITE)


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for the primary.

    Usage:
        @router.post("/v1/redemptions/scans")
        async def validate_scan(db: AsyncSession = Depends(get_write_db)):
            ...
    """
    async with session_scope(DatabaseRole.WRITE) as session:
        yield session


async def get_read_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for read-only endpoints."""
    async with session_scope(DatabaseRole.READ) as session:
        yield session


async def close_engines() -> None:
    """Dispose every engine (graceful shutdown)."""
    engines = list(_engines.values())
    _engines.clear()
    _session_factories.clear()
    for engine in engines:
        await engine.dispose()
