"""SQLAlchemy 2.x async database setup.

This module defines the async engine and session factory but does not
hard-code any connection credentials.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from .config import settings


def build_engine(url: str | None = None) -> AsyncEngine:
    """Create an async engine for ``url`` (defaults to ``DB_URL``).

    SQLite connections are not pooled so each event loop opens its own.
    """
    url = url or settings.db.url
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=settings.db.echo, poolclass=NullPool)
    return create_async_engine(
        url,
        echo=settings.db.echo,
        pool_size=settings.db.pool_size,
        max_overflow=settings.db.max_overflow,
        pool_pre_ping=True,
    )


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


engine: AsyncEngine = build_engine()

AsyncSessionMaker = build_sessionmaker(engine)


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency returning the process session factory.

    Stores open one session per unit of work, so they take the factory
    rather than a request-scoped session.
    """
    return AsyncSessionMaker

