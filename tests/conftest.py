"""Shared test fixtures: testcontainers for PostgreSQL.

Integration tests use a real PostgreSQL container managed by
testcontainers-python. The container is session-scoped (started once per
test run). Each test function gets an isolated DB session (via savepoint
rollback) and a ``SqlGateway`` bound to it.

Requires Docker to be available. Tests needing the container should be
marked with ``@pytest.mark.integration``.
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from testcontainers.postgres import PostgresContainer

from dockyard.runtime.settings import _get_settings_cached
from dockyard.runtime.store.sql import SqlGateway


def _set_env(key: str, value: str) -> None:
    """Set an env var and invalidate the settings cache."""
    os.environ[key] = value
    _get_settings_cached.cache_clear()


# ---------------------------------------------------------------------------
# Session-scoped: container (started once, shared across all tests)
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def pg_container() -> Iterator[PostgresContainer]:
    """Start a PostgreSQL 17 container for the test session."""
    with PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="dockyard_test",
        driver="psycopg",
    ) as pg:
        yield pg


# ---------------------------------------------------------------------------
# Session-scoped: connection URL and schema migration
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def pg_url(pg_container: PostgresContainer) -> str:
    """PostgreSQL URL (psycopg3 dialect) with Alembic migrations applied."""
    url = pg_container.get_connection_url()
    _set_env("DOCKYARD_DATABASE_URL", url)

    # Apply all migrations using the packaged alembic.ini (same config as CLI).
    from alembic import command
    from alembic.config import Config

    ini_path = Path(__file__).parent.parent / "dockyard" / "runtime" / "alembic.ini"
    cfg = Config(str(ini_path))
    command.upgrade(cfg, "head")

    return url


# ---------------------------------------------------------------------------
# Session-scoped: async engine (shared across all tests)
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def async_engine(pg_url: str) -> Iterator[AsyncEngine]:
    """Session-scoped async SQLAlchemy engine."""
    engine = create_async_engine(pg_url)
    yield engine
    engine.sync_engine.dispose()


# ---------------------------------------------------------------------------
# Function-scoped: DB session with savepoint rollback for test isolation
# ---------------------------------------------------------------------------


@pytest.fixture
async def db_session(async_engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    """Async SQLAlchemy session; all changes rolled back after the test.

    Uses ``join_transaction_mode="create_savepoint"`` so that session.commit()
    inside tested code only commits a savepoint, while the outer transaction
    is rolled back at teardown -- giving each test a clean database state.
    """
    async with async_engine.connect() as conn:
        await conn.begin()
        session = AsyncSession(bind=conn, join_transaction_mode="create_savepoint", expire_on_commit=False)
        yield session
        await session.close()
        await conn.rollback()


@pytest.fixture
def sql_gateway(db_session: AsyncSession) -> SqlGateway:
    """``SqlGateway`` whose every operation runs on the savepoint-isolated session.

    The whole test shares one outer transaction, so PostgreSQL's ``now()``
    is constant for its duration.  The identity map is cleared after every
    operation, as if each one had its own session.
    """

    @asynccontextmanager
    async def _session_factory() -> AsyncIterator[AsyncSession]:
        try:
            yield db_session
        finally:
            db_session.expunge_all()

    return SqlGateway(_session_factory)  # type: ignore[arg-type]
