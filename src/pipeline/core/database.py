"""Async SQLAlchemy engine, declarative base and session factory.

Provides:
- PipelineBase: Declarative base for all action pipeline tables
- get_engine(): Lazily created async engine singleton
- get_session(): Async generator yielding an AsyncSession, used as the
  ``session_factory`` for repositories
- init_db() / close_db(): Table creation for local runs and engine disposal
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.pipeline.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            echo=False,
        )
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────

pipeline_metadata = MetaData()


class PipelineBase(DeclarativeBase):
    """Base class for action pipeline models."""

    metadata = pipeline_metadata


# ── Session Factory ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the pipeline database."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db() -> None:
    """Create pipeline tables if they don't exist (dev/test convenience)."""
    # Register models on the metadata before create_all
    import src.pipeline.models.pipeline  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(PipelineBase.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
