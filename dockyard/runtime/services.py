"""Service wiring.

Everything stateful (lock table, scheduler timer, completion histories) is
constructed here, once per process, and handed to the HTTP app or the CLI.
Nothing in the runtime is a module-level singleton.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta

from loguru import logger

from dockyard.runtime.db.engine import create_engine, create_session_factory
from dockyard.runtime.execution.completion import CompletionClient, PydanticAICompletionClient
from dockyard.runtime.execution.coordinator import WorkflowRunCoordinator
from dockyard.runtime.execution.notify import LogNotificationSink, NotificationSink, Notifier
from dockyard.runtime.execution.prompts import PromptResolver
from dockyard.runtime.execution.tasks import TaskHandler
from dockyard.runtime.isolation.allocator import WorkspaceAllocator
from dockyard.runtime.isolation.eviction import EvictionScheduler
from dockyard.runtime.isolation.provider import WorkspaceProvider
from dockyard.runtime.locks import ConversationLock
from dockyard.runtime.settings import DockyardSettings
from dockyard.runtime.store.base import PersistenceGateway
from dockyard.runtime.store.memory import InMemoryGateway
from dockyard.runtime.store.sql import SqlGateway


@dataclass
class Services:
    gateway: PersistenceGateway
    provider: WorkspaceProvider
    scheduler: EvictionScheduler
    lock: ConversationLock
    notifier: Notifier
    coordinator: WorkflowRunCoordinator
    allocator: WorkspaceAllocator
    tasks: TaskHandler


def build_services(
    settings: DockyardSettings,
    gateway: PersistenceGateway,
    *,
    sink: NotificationSink | None = None,
    client: CompletionClient | None = None,
) -> Services:
    """Wire the runtime components from *settings*.

    *sink* and *client* default to ``LogNotificationSink`` and a
    ``PydanticAICompletionClient`` for ``settings.completion_model``.
    """
    provider = WorkspaceProvider(
        settings.resolve_worktrees_dir(),
        git_timeout=settings.git_timeout_seconds,
        copy_files=settings.copy_files,
    )
    scheduler = EvictionScheduler(
        gateway,
        provider,
        max_per_codebase=settings.max_workspaces_per_codebase,
        stale_threshold_days=settings.stale_threshold_days,
        interval_hours=settings.cleanup_interval_hours,
    )
    notifier = Notifier(sink or LogNotificationSink())
    completion = client or PydanticAICompletionClient(
        settings.completion_model,
        command_timeout=settings.tool_command_timeout_seconds,
    )
    coordinator = WorkflowRunCoordinator(
        gateway,
        completion,
        notifier,
        PromptResolver(settings.step_prompt_dirs),
        step_timeout=settings.completion_timeout_seconds,
        abandon_after=timedelta(minutes=settings.run_abandon_grace_minutes),
        provider=provider if settings.auto_commit_artifacts else None,
    )
    allocator = WorkspaceAllocator(
        gateway,
        provider,
        scheduler,
        notifier,
        stale_threshold_days=settings.stale_threshold_days,
    )
    lock = ConversationLock()
    return Services(
        gateway=gateway,
        provider=provider,
        scheduler=scheduler,
        lock=lock,
        notifier=notifier,
        coordinator=coordinator,
        allocator=allocator,
        tasks=TaskHandler(lock, allocator, coordinator, notifier),
    )


@asynccontextmanager
async def open_gateway(settings: DockyardSettings) -> AsyncIterator[PersistenceGateway]:
    """Yield the configured persistence gateway, disposing the engine on exit."""
    if not settings.database_url:
        logger.warning("DOCKYARD_DATABASE_URL not set -- records are kept in memory only")
        yield InMemoryGateway()
        return

    engine = create_engine(settings.database_url)
    logger.info("PostgreSQL: connected (pool_size=5, max_overflow=5)")
    try:
        yield SqlGateway(create_session_factory(engine))
    finally:
        await engine.dispose()
        logger.info("PostgreSQL: disposed")
