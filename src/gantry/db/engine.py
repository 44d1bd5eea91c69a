"""Async SQLAlchemy engine and session factories for the run store."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)


def create_engine(postgres_url: str, *, pool_size: int = 5) -> AsyncEngine:
    """Create the async engine shared by the run store and the audit sink.

    Workers are short-lived processes, so the pool stays small; the controller
    shares one engine across requests.
    """
    return create_async_engine(
        postgres_url,
        pool_size=pool_size,
        max_overflow=pool_size * 2,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)
