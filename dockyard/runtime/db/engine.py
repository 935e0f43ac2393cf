"""Async SQLAlchemy engine and session factory.

Uses psycopg3 which supports both sync and async with the same
``postgresql+psycopg://`` URL.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine


def create_engine(database_url: str, **kwargs: object) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    The coordinator issues short single-row statements, so a small pool is
    enough:

    - **pool_size=5** / **max_overflow=5**: baseline and burst connections.
    - **pool_pre_ping=True**: survive PG restarts and idle disconnects.
    - **pool_recycle=1800**: recycle connections every 30 minutes.

    All defaults can be overridden via *kwargs*.
    """
    defaults = {
        "echo": False,
        "pool_size": 5,
        "max_overflow": 5,
        "pool_pre_ping": True,
        "pool_recycle": 1800,
    }
    defaults.update(kwargs)  # type: ignore[arg-type]
    return create_async_engine(database_url, **defaults)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to *engine*.

    ``expire_on_commit=False`` keeps ORM instances readable after commit
    without implicit (forbidden) async lazy loads.
    """
    return async_sessionmaker(engine, expire_on_commit=False)
