"""
Database Infrastructure
=======================

Async engine and session lifecycle for the SQL storage backend.

PostgreSQL through asyncpg in deployments; any SQLAlchemy async URL works,
the tests run against SQLite through aiosqlite. Repositories open one
session per operation with ``get_session_context``, so request handlers and
background sweeps never share a session.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from approvalflow.config import Settings, get_settings
from approvalflow.core import RepositoryException
from approvalflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class Base(DeclarativeBase):
    """Declarative base shared by the approval and escalation models."""


_engine: Optional[AsyncEngine] = None
_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


def _engine_options(database_url: str, settings: Settings) -> Dict[str, Any]:
    options: Dict[str, Any] = {"echo": settings.debug}
    if database_url.startswith("sqlite"):
        return options
    options.update(
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )
    return options


def init_database(settings: Optional[Settings] = None) -> AsyncEngine:
    """Create the engine and session factory. Called once at startup."""
    global _engine, _session_maker
    settings = settings or get_settings()

    # asyncpg takes ssl= where libpq URLs carry sslmode=
    database_url = settings.database_url.replace("sslmode=", "ssl=")

    _engine = create_async_engine(database_url, **_engine_options(database_url, settings))
    _session_maker = async_sessionmaker(bind=_engine, expire_on_commit=False, autoflush=False)
    logger.info("Database engine created", extra={"dialect": _engine.dialect.name})
    return _engine


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RepositoryException("Database engine not initialized, call init_database() first")
    return _engine


async def close_database() -> None:
    global _engine, _session_maker

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_maker = None


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession, None]:
    """
    One unit of work: commit on clean exit, roll back on any error.

    Integrity violations propagate unchanged so repositories can turn them
    into domain answers (duplicate active instance, second default policy).
    Every other driver error surfaces as RepositoryException.
    """
    if _session_maker is None:
        raise RepositoryException("Database not initialized, call init_database() first")

    async with _session_maker() as session:
        try:
            yield session
            await session.commit()
        except IntegrityError:
            await session.rollback()
            raise
        except SQLAlchemyError as e:
            await session.rollback()
            raise RepositoryException(f"Database operation failed: {e}") from e
        except Exception:
            await session.rollback()
            raise


async def create_tables() -> None:
    """Create missing tables. Schema migrations are out of band."""
    from approvalflow.approvals.infrastructure import models as _approval_models  # noqa: F401
    from approvalflow.escalation.infrastructure import models as _escalation_models  # noqa: F401

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
