from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI
from fastapi.routing import APIRouter
from loguru import logger

from dockyard.runtime.execution.recovery import reconcile_abandoned_runs
from dockyard.runtime.log import setup_logging
from dockyard.runtime.services import build_services, open_gateway
from dockyard.runtime.settings import get_settings


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    # -- Startup ---------------------------------------------------------------
    settings = get_settings()
    setup_logging(settings.log_level, json=settings.log_json)

    logger.info("Dockyard starting (host={}, port={})", settings.host, settings.port)
    logger.info(
        "Worktrees: {} (limit={} per codebase, stale after {} days)",
        settings.resolve_worktrees_dir(),
        settings.max_workspaces_per_codebase,
        settings.stale_threshold_days,
    )

    async with open_gateway(settings) as gateway:
        services = build_services(settings, gateway)
        _app.state.services = services

        # Startup recovery: fail runs orphaned by a previous process.
        await reconcile_abandoned_runs(gateway, grace=timedelta(minutes=settings.run_abandon_grace_minutes))

        services.scheduler.start()

        yield

        # -- Shutdown ----------------------------------------------------------
        logger.info("Dockyard shutting down (in_flight_tasks={})", services.tasks.in_flight)

        # 1. Stop accepting new tasks.
        services.tasks.begin_shutdown()

        # 2. Let in-flight tasks finish.  Whatever outlives the timeout is
        #    cancelled here, while the gateway is still open.
        if services.tasks.in_flight > 0:
            timeout = settings.graceful_shutdown_timeout
            logger.info("Waiting for {} task(s) to finish (timeout={}s)...", services.tasks.in_flight, timeout)
            if not await services.tasks.wait_until_drained(timeout=timeout):
                cancelled = await services.tasks.cancel_remaining()
                logger.warning("Cancelled {} task(s) that outlived the shutdown timeout", cancelled)

        # 3. Stop the eviction timer before the gateway goes away.
        await services.scheduler.stop()
        _app.state.services = None


app = FastAPI(title="Dockyard", lifespan=lifespan)

# ---------------------------------------------------------------------------
# API router -- all backend endpoints live under /api
# ---------------------------------------------------------------------------
api = APIRouter(prefix="/api")


@api.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


from dockyard.runtime.routers.codebases import router as codebases_router  # noqa: E402
from dockyard.runtime.routers.runs import router as runs_router  # noqa: E402
from dockyard.runtime.routers.tasks import router as tasks_router  # noqa: E402
from dockyard.runtime.routers.workspaces import router as workspaces_router  # noqa: E402

api.include_router(codebases_router)
api.include_router(workspaces_router)
api.include_router(runs_router)
api.include_router(tasks_router)

app.include_router(api)
