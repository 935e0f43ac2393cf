"""Workspace allocation for inbound tasks.

Maps a task to its workspace: reuse the live workspace of the same
workflow, otherwise make room (evicting if needed) and provision a new one.
When no room can be made the task is blocked; it never falls back to the
canonical repository.
"""

from __future__ import annotations

import asyncio
from collections.abc import MutableMapping
from typing import TYPE_CHECKING

from loguru import logger

from dockyard.runtime.classify import provisioning_failure_message
from dockyard.runtime.isolation.provider import WorkspaceCreateError, WorkspaceRequest
from dockyard.runtime.models.enums import WorkspaceStatus

if TYPE_CHECKING:
    from dockyard.runtime.execution.notify import Notifier
    from dockyard.runtime.isolation.eviction import EvictionScheduler
    from dockyard.runtime.isolation.provider import WorkspaceProvider
    from dockyard.runtime.models.api import TaskRequest
    from dockyard.runtime.models.workspace import CodebaseIndex, WorkspaceBreakdown, WorkspaceIndex
    from dockyard.runtime.store.base import PersistenceGateway


class WorkspaceLimitError(RuntimeError):
    """A codebase is at its workspace limit and eviction freed nothing.

    The user has already been notified when this is raised.
    """

    def __init__(self, codebase_id: str, live: int, limit: int) -> None:
        super().__init__(f"Workspace limit reached ({live}/{limit}) for codebase {codebase_id}")
        self.codebase_id = codebase_id
        self.live = live
        self.limit = limit


def format_limit_message(breakdown: WorkspaceBreakdown, codebase_name: str, *, stale_days: int) -> str:
    lines = [
        f"Workspace limit reached ({breakdown.live}/{breakdown.limit}) for **{codebase_name}**.",
        "",
        "**Status:**",
        f"• {breakdown.merged} merged (can auto-remove)",
        f"• {breakdown.stale} stale (no activity in {stale_days}+ days)",
        f"• {breakdown.active} active",
    ]
    if breakdown.missing:
        lines.append(f"• {breakdown.missing} missing from disk")
    lines += ["", "**Options:**"]
    if breakdown.stale:
        lines.append("• Sweep with `force` to remove stale workspaces with local changes")
    lines.append("• Remove a specific workspace you no longer need")
    return "\n".join(lines)


class WorkspaceAllocator:
    """Resolves tasks to workspaces, one codebase decision at a time.

    The capacity check, the worktree creation and the durable record for a
    codebase happen under that codebase's lock, so concurrent conversations
    can never overshoot ``max_per_codebase`` between them.  Every workspace
    handed out is leased from the scheduler; callers pass it back to
    ``release`` once the run is over.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        provider: WorkspaceProvider,
        scheduler: EvictionScheduler,
        notifier: Notifier,
        *,
        stale_threshold_days: int = 14,
        codebase_locks: MutableMapping[str, asyncio.Lock] | None = None,
    ) -> None:
        self._gateway = gateway
        self._provider = provider
        self._scheduler = scheduler
        self._notifier = notifier
        self._stale_days = stale_threshold_days
        self._codebase_locks: MutableMapping[str, asyncio.Lock] = codebase_locks if codebase_locks is not None else {}

    def _codebase_lock(self, codebase_id: str) -> asyncio.Lock:
        return self._codebase_locks.setdefault(codebase_id, asyncio.Lock())

    async def resolve(self, task: TaskRequest) -> WorkspaceIndex:
        """Return the leased workspace *task* runs in, creating one if needed.

        Raises ``WorkspaceLimitError`` when the codebase is full, and
        ``WorkspaceCreateError`` when git cannot provision the worktree.
        Both are reported to the user before being raised.
        """
        codebase = await self._gateway.get_codebase(task.codebase_id)
        async with self._codebase_lock(codebase.codebase_id):
            reused = await self._reuse(task, codebase)
            if reused is not None:
                return reused
            return await self._provision(task, codebase)

    def release(self, workspace: WorkspaceIndex) -> None:
        """Hand a workspace returned by ``resolve`` back to eviction."""
        self._scheduler.release_lease(workspace.workspace_id)

    async def _reuse(self, task: TaskRequest, codebase: CodebaseIndex) -> WorkspaceIndex | None:
        existing = await self._gateway.find_live_workspace(codebase.codebase_id, task.workflow_type, task.workflow_id)
        if existing is None:
            return None
        if await self._provider.is_worktree(existing.path) and await self._scheduler.acquire_lease(existing):
            logger.info("Reusing workspace {} for {}/{}", existing.path, task.workflow_type, task.workflow_id)
            await self._gateway.touch_workspace(existing.workspace_id)
            return await self._gateway.get_workspace(existing.workspace_id)
        logger.warning("Workspace {} is no longer a worktree, marking destroyed", existing.path)
        await self._gateway.update_workspace_status(existing.workspace_id, WorkspaceStatus.DESTROYED)
        return None

    async def _provision(self, task: TaskRequest, codebase: CodebaseIndex) -> WorkspaceIndex:
        decision = await self._scheduler.ensure_capacity(codebase.codebase_id)
        if not decision.has_room:
            breakdown = await self._scheduler.breakdown(codebase.codebase_id)
            await self._notifier.send(
                task.conversation_id,
                format_limit_message(breakdown, codebase.name, stale_days=self._stale_days),
            )
            raise WorkspaceLimitError(codebase.codebase_id, decision.live, decision.limit)
        if decision.freed_count:
            await self._notifier.send(
                task.conversation_id,
                f"Cleaned up {decision.freed_count} workspace(s) to make room.",
            )

        request = WorkspaceRequest(
            codebase_id=codebase.codebase_id,
            repo_path=codebase.repo_path,
            workflow_type=task.workflow_type,
            workflow_id=task.workflow_id,
            pr_number=task.pr_number,
            pr_sha=task.pr_sha,
            pr_branch=task.pr_branch,
            is_fork_pr=task.is_fork_pr,
            copy_files=list(codebase.copy_files),
        )
        try:
            provisioned = await self._provider.create(request)
        except WorkspaceCreateError as exc:
            logger.error("Failed to provision workspace for codebase {}: {}", codebase.codebase_id, exc)
            await self._notifier.send(task.conversation_id, provisioning_failure_message(exc))
            raise

        workspace = await self._gateway.create_workspace(
            path=provisioned.path,
            branch_name=provisioned.branch_name,
            codebase_id=codebase.codebase_id,
            workflow_type=task.workflow_type,
            workflow_id=task.workflow_id,
            metadata={**task.metadata, **provisioned.as_metadata()},
        )
        if not await self._scheduler.acquire_lease(workspace):
            exc = WorkspaceCreateError(f"Workspace {workspace.path} disappeared right after provisioning")
            await self._notifier.send(task.conversation_id, provisioning_failure_message(exc))
            raise exc
        return workspace
