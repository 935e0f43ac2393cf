import click


@click.group()
def main() -> None:
    """Dockyard - isolated git worktrees and workflow runs for coding agents."""


@main.command()
@click.option("--host", default=None, help="Bind host (default: from DOCKYARD_HOST or 0.0.0.0).")
@click.option("--port", default=None, type=int, help="Bind port (default: from DOCKYARD_PORT or 8000).")
@click.option("--reload", is_flag=True, default=False, help="Enable auto-reload for development.")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Start the Dockyard service."""
    import uvicorn

    from dockyard.runtime.settings import DockyardSettings

    settings = DockyardSettings()

    uvicorn.run(
        "dockyard.runtime.app:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level="warning",  # uvicorn's own logging is intercepted by loguru
        # Drain timeout plus a buffer for stopping the scheduler and disposing the engine.
        timeout_graceful_shutdown=settings.graceful_shutdown_timeout + 30,
    )


def _require_database():
    from dockyard.runtime.log import setup_logging
    from dockyard.runtime.settings import DockyardSettings

    settings = DockyardSettings()
    setup_logging(settings.log_level, json=settings.log_json)
    if not settings.database_url:
        msg = "DOCKYARD_DATABASE_URL must be set for this command."
        raise click.ClickException(msg)
    return settings


@main.command()
@click.option("--codebase", "codebase_id", default=None, help="Only sweep this codebase.")
@click.option("--force", is_flag=True, default=False, help="Also evict workspaces with uncommitted changes.")
def sweep(codebase_id: str | None, force: bool) -> None:
    """Evict merged, stale and vanished workspaces once."""
    import asyncio

    from dockyard.runtime.services import build_services, open_gateway

    settings = _require_database()

    async def _run():
        async with open_gateway(settings) as gateway:
            services = build_services(settings, gateway)
            return await services.scheduler.sweep(codebase_id, force=force)

    report = asyncio.run(_run())
    for entry in report.removed:
        click.echo(f"removed  {entry.path} ({entry.reason})")
    for entry in report.skipped:
        click.echo(f"skipped  {entry.path} ({entry.reason})")
    for entry in report.errors:
        click.echo(f"error    {entry.path}: {entry.reason}", err=True)
    click.echo(f"Removed {len(report.removed)}, skipped {len(report.skipped)}, errors {len(report.errors)}.")


@main.group()
def runs() -> None:
    """Workflow run maintenance commands."""


@runs.command()
@click.option(
    "--grace-minutes",
    default=None,
    type=int,
    help="Inactivity window (default: DOCKYARD_RUN_ABANDON_GRACE_MINUTES).",
)
def reconcile(grace_minutes: int | None) -> None:
    """Fail runs left ``running`` by a process that is gone."""
    import asyncio
    from datetime import timedelta

    from dockyard.runtime.execution.recovery import reconcile_abandoned_runs
    from dockyard.runtime.services import open_gateway

    settings = _require_database()
    grace = timedelta(minutes=grace_minutes if grace_minutes is not None else settings.run_abandon_grace_minutes)

    async def _run() -> int:
        async with open_gateway(settings) as gateway:
            return await reconcile_abandoned_runs(gateway, grace=grace)

    count = asyncio.run(_run())
    click.echo(f"Marked {count} abandoned run(s) as failed.")


# ---------------------------------------------------------------------------
# Database management
# ---------------------------------------------------------------------------


def _alembic_config(url: str | None = None):
    """Alembic Config for the migrations shipped inside the package."""
    from pathlib import Path

    from alembic.config import Config

    config = Config(str(Path(__file__).parent / "runtime" / "alembic.ini"))
    if url:
        config.set_main_option("sqlalchemy.url", url.replace("%", "%%"))
    return config


@main.group()
@click.option("--url", default=None, help="Database URL (default: from DOCKYARD_DATABASE_URL).")
@click.pass_context
def db(ctx: click.Context, url: str | None) -> None:
    """Database migration commands."""
    ctx.obj = {"url": url}


@db.command()
@click.option("--revision", default="head", help="Target revision (default: head).")
@click.pass_context
def upgrade(ctx: click.Context, revision: str) -> None:
    """Apply migrations up to REVISION."""
    from alembic import command

    command.upgrade(_alembic_config(ctx.obj["url"]), revision)
    click.echo(f"Database upgraded to {revision}.")


@db.command()
@click.option("--revision", default="-1", help="Target revision (default: -1, one step back).")
@click.pass_context
def downgrade(ctx: click.Context, revision: str) -> None:
    """Revert migrations down to REVISION."""
    from alembic import command

    command.downgrade(_alembic_config(ctx.obj["url"]), revision)
    click.echo(f"Database downgraded to {revision}.")


@db.command()
@click.argument("message")
@click.pass_context
def migrate(ctx: click.Context, message: str) -> None:
    """Autogenerate a migration from table changes."""
    from alembic import command

    command.revision(_alembic_config(ctx.obj["url"]), message=message, autogenerate=True)
    click.echo(f"Migration generated: {message}")


@db.command()
@click.pass_context
def current(ctx: click.Context) -> None:
    """Show the applied revision."""
    from alembic import command

    command.current(_alembic_config(ctx.obj["url"]), verbose=True)


@db.command()
@click.pass_context
def history(ctx: click.Context) -> None:
    """List all revisions."""
    from alembic import command

    command.history(_alembic_config(ctx.obj["url"]), verbose=True)


if __name__ == "__main__":
    main()
