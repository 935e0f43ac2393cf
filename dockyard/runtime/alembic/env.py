"""Alembic migration environment for the dockyard schema.

The database URL is looked up in order:

1. ``alembic -x url=...`` on the command line;
2. ``sqlalchemy.url`` on the Alembic config (``dockyard db --url ...`` sets it);
3. ``DOCKYARD_DATABASE_URL`` through ``DockyardSettings``.

Async driver URLs are rewritten to psycopg3, since migrations run on a
synchronous engine.  Each migration runs in its own transaction so a
failed revision leaves the earlier ones applied.
"""

from __future__ import annotations

from logging.config import fileConfig
from typing import Any

from alembic import context
from sqlalchemy import create_engine, pool

from dockyard.runtime.db.tables import Base
from dockyard.runtime.settings import DockyardSettings

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = Base.metadata

_SYNC_DRIVERS = {
    "postgresql+asyncpg://": "postgresql+psycopg://",
    "postgresql+psycopg_async://": "postgresql+psycopg://",
    "postgresql://": "postgresql+psycopg://",
}


def get_url() -> str:
    url = context.get_x_argument(as_dictionary=True).get("url") or config.get_main_option("sqlalchemy.url")
    if not url:
        url = DockyardSettings().database_url
    if not url:
        msg = "No database URL: pass -x url=..., set sqlalchemy.url, or set DOCKYARD_DATABASE_URL."
        raise RuntimeError(msg)
    for prefix, replacement in _SYNC_DRIVERS.items():
        if url.startswith(prefix):
            return replacement + url.removeprefix(prefix)
    return url


def include_object(obj: Any, name: str | None, type_: str, reflected: bool, compare_to: Any) -> bool:
    """Leave tables that only exist in the database (not ours) out of autogenerate."""
    return not (type_ == "table" and reflected and compare_to is None)


def _configure_options() -> dict[str, Any]:
    return {
        "target_metadata": target_metadata,
        "include_object": include_object,
        "compare_type": True,
        "compare_server_default": True,
        "transaction_per_migration": True,
    }


def run_migrations_offline() -> None:
    """Emit the migration SQL instead of running it."""
    context.configure(
        url=get_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_options(),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = create_engine(get_url(), poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(connection=connection, **_configure_options())
        with context.begin_transaction():
            context.run_migrations()
    connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
