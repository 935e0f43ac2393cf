"""FastAPI dependency injection for runtime services.

Usage in route handlers::

    @router.get("/things")
    async def list_things(gateway: Gateway) -> list[Thing]:
        ...

Dependencies raise HTTP 503 if the services were not initialised (the app
is still starting up or was mounted without its lifespan).
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from dockyard.runtime.execution.tasks import TaskHandler
from dockyard.runtime.isolation.eviction import EvictionScheduler
from dockyard.runtime.locks import ConversationLock
from dockyard.runtime.services import Services
from dockyard.runtime.store.base import PersistenceGateway


def get_services(request: Request) -> Services:
    services: Services | None = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Runtime services are not initialised.",
        )
    return services


def get_gateway(services: Annotated[Services, Depends(get_services)]) -> PersistenceGateway:
    return services.gateway


def get_scheduler(services: Annotated[Services, Depends(get_services)]) -> EvictionScheduler:
    return services.scheduler


def get_task_handler(services: Annotated[Services, Depends(get_services)]) -> TaskHandler:
    return services.tasks


def get_lock(services: Annotated[Services, Depends(get_services)]) -> ConversationLock:
    return services.lock


# -- Annotated type aliases for concise route signatures ---------------------

Gateway = Annotated[PersistenceGateway, Depends(get_gateway)]
"""Annotated dependency: the persistence gateway."""

Scheduler = Annotated[EvictionScheduler, Depends(get_scheduler)]
"""Annotated dependency: the eviction scheduler."""

Tasks = Annotated[TaskHandler, Depends(get_task_handler)]
"""Annotated dependency: the task handler."""

Locks = Annotated[ConversationLock, Depends(get_lock)]
"""Annotated dependency: the per-conversation lock manager."""
