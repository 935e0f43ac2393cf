"""Eviction scheduler: keeps live workspaces per codebase under the cap.

A workspace is evicted when its branch has been merged upstream or when it
has been inactive for ``stale_threshold_days``.  Sweeps run on a periodic
timer across all codebases, and on demand (``ensure_capacity``) for a single
codebase that hit its limit.

Durable records are only marked ``destroyed`` after the directory is
verified gone.  A directory that disappeared on its own (manual cleanup) is
marked destroyed directly, without a ``git worktree remove`` call.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from anyio import to_thread
from loguru import logger

from dockyard.runtime.models.enums import WorkflowType, WorkspaceStatus
from dockyard.runtime.models.workspace import WorkspaceBreakdown, WorkspaceIndex

if TYPE_CHECKING:
    from dockyard.runtime.isolation.provider import DestroyOutcome, WorkspaceProvider
    from dockyard.runtime.store.base import PersistenceGateway


class WorkspaceBusyError(RuntimeError):
    """A workspace cannot be removed without ``force`` (dirty or in use)."""


class WorkspaceRemovalError(RuntimeError):
    """Destroy ran but the workspace directory is still on disk."""


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class EvictionCandidate:
    """A workspace joined with its eviction signals, for one sweep."""

    workspace: WorkspaceIndex
    classification: WorkspaceStatus = WorkspaceStatus.ACTIVE
    merged: bool = False
    missing: bool = False
    age_days: float = 0.0
    last_activity: datetime | None = None

    @property
    def evictable(self) -> bool:
        return self.missing or self.classification in (WorkspaceStatus.STALE, WorkspaceStatus.MERGED)


@dataclass
class SweepEntry:
    workspace_id: str
    path: str
    branch_name: str
    reason: str


@dataclass
class SweepReport:
    removed: list[SweepEntry] = field(default_factory=list)
    skipped: list[SweepEntry] = field(default_factory=list)
    errors: list[SweepEntry] = field(default_factory=list)


@dataclass
class CapacityDecision:
    has_room: bool
    freed_count: int
    live: int
    limit: int


@dataclass
class _CodebaseContext:
    repo_path: str
    main_branch: str


def _entry(workspace: WorkspaceIndex, reason: str) -> SweepEntry:
    return SweepEntry(
        workspace_id=workspace.workspace_id,
        path=workspace.path,
        branch_name=workspace.branch_name,
        reason=reason,
    )


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class EvictionScheduler:
    """Classifies and evicts workspaces; answers capacity questions.

    Sweeps are serialized: the periodic timer and on-demand sweeps never
    destroy workspaces concurrently.  A leased workspace (one handed to a
    task that has not finished yet) is never evicted.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        provider: WorkspaceProvider,
        *,
        max_per_codebase: int = 25,
        stale_threshold_days: int = 14,
        interval_hours: float = 6.0,
    ) -> None:
        self._gateway = gateway
        self._provider = provider
        self._limit = max_per_codebase
        self._stale_days = stale_threshold_days
        self._interval = interval_hours * 3600
        self._sweep_lock = asyncio.Lock()
        self._leases: Counter[str] = Counter()
        self._task: asyncio.Task[None] | None = None

    @property
    def limit(self) -> int:
        return self._limit

    # -- Classification --------------------------------------------------------

    async def classify(self, workspace: WorkspaceIndex, *, now: datetime | None = None) -> EvictionCandidate:
        """Classify one workspace as active, stale or merged (or missing)."""
        context = await self._codebase_context(workspace.codebase_id, {})
        return await self._classify(workspace, context, now or datetime.now(tz=UTC))

    async def _classify(
        self,
        workspace: WorkspaceIndex,
        context: _CodebaseContext,
        now: datetime,
    ) -> EvictionCandidate:
        candidate = EvictionCandidate(workspace=workspace)
        path = Path(workspace.path)
        if not await to_thread.run_sync(path.exists):
            candidate.missing = True
            return candidate

        signals = [workspace.last_activity_at, workspace.created_at, await self._provider.last_commit_at(path)]
        known = [s for s in signals if s is not None]
        if known:
            candidate.last_activity = max(known)
            candidate.age_days = (now - candidate.last_activity).total_seconds() / 86400

        candidate.merged = await self._provider.is_branch_merged(
            context.repo_path,
            workspace.branch_name,
            main_branch=context.main_branch,
            base_sha=workspace.metadata.get("base_sha"),
        )
        if candidate.merged:
            candidate.classification = WorkspaceStatus.MERGED
        elif candidate.age_days >= self._stale_days:
            candidate.classification = WorkspaceStatus.STALE
        return candidate

    async def _codebase_context(self, codebase_id: str, cache: dict[str, _CodebaseContext]) -> _CodebaseContext:
        if codebase_id not in cache:
            codebase = await self._gateway.get_codebase(codebase_id)
            main = codebase.default_branch or await self._provider.main_branch(codebase.repo_path)
            cache[codebase_id] = _CodebaseContext(repo_path=codebase.repo_path, main_branch=main)
        return cache[codebase_id]

    # -- Sweep -----------------------------------------------------------------

    async def sweep(
        self,
        codebase_id: str | None = None,
        *,
        now: datetime | None = None,
        force: bool = False,
    ) -> SweepReport:
        """Evict merged, stale and vanished workspaces.

        Workspaces with a running workflow are never evicted.  Workspaces
        with uncommitted changes are skipped unless *force*.
        """
        async with self._sweep_lock:
            return await self._sweep(codebase_id, now or datetime.now(tz=UTC), force)

    async def _sweep(self, codebase_id: str | None, now: datetime, force: bool) -> SweepReport:
        report = SweepReport()
        contexts: dict[str, _CodebaseContext] = {}
        workspaces = await self._gateway.list_live_workspaces(codebase_id)
        logger.debug("Sweep: {} live workspace(s) (codebase={})", len(workspaces), codebase_id or "*")

        for workspace in workspaces:
            try:
                if self._leases[workspace.workspace_id]:
                    report.skipped.append(_entry(workspace, "in use"))
                    continue
                if await self._gateway.workspace_has_running_run(workspace.workspace_id):
                    report.skipped.append(_entry(workspace, "workflow running"))
                    continue

                context = await self._codebase_context(workspace.codebase_id, contexts)
                candidate = await self._classify(workspace, context, now)
                if candidate.missing:
                    await self._mark_vanished(workspace, context.repo_path)
                    report.removed.append(_entry(workspace, "directory missing"))
                    continue
                if not candidate.evictable:
                    continue

                if not force and await self._provider.has_uncommitted_changes(workspace.path):
                    logger.warning("Sweep: {} has uncommitted changes, skipping", workspace.path)
                    report.skipped.append(_entry(workspace, "uncommitted changes"))
                    continue

                if workspace.status == WorkspaceStatus.ACTIVE:
                    await self._gateway.update_workspace_status(workspace.workspace_id, candidate.classification)
                await self._destroy(workspace, context.repo_path, force=force)
                report.removed.append(_entry(workspace, str(candidate.classification)))
            except Exception as exc:
                logger.exception("Sweep: failed to evict {}", workspace.path)
                report.errors.append(_entry(workspace, str(exc)))

        if report.removed or report.errors:
            logger.info(
                "Sweep complete: removed={}, skipped={}, errors={}",
                len(report.removed),
                len(report.skipped),
                len(report.errors),
            )
        return report

    # -- Capacity --------------------------------------------------------------

    async def ensure_capacity(self, codebase_id: str) -> CapacityDecision:
        """Make room for one more workspace if possible.

        At the limit, runs a targeted sweep and re-counts.  ``has_room=False``
        means the caller must not create a workspace.
        """
        live = await self._gateway.count_active_workspaces(codebase_id)
        if live < self._limit:
            return CapacityDecision(has_room=True, freed_count=0, live=live, limit=self._limit)

        logger.info("Codebase {} at workspace limit ({}/{}), sweeping", codebase_id, live, self._limit)
        report = await self.sweep(codebase_id)
        live = await self._gateway.count_active_workspaces(codebase_id)
        decision = CapacityDecision(
            has_room=live < self._limit,
            freed_count=len(report.removed),
            live=live,
            limit=self._limit,
        )
        if not decision.has_room:
            logger.warning("Codebase {} still at workspace limit after sweep ({}/{})", codebase_id, live, self._limit)
        return decision

    async def breakdown(self, codebase_id: str) -> WorkspaceBreakdown:
        """Live workspace counts by classification, for limit-reached messages."""
        result = WorkspaceBreakdown(codebase_id=codebase_id, limit=self._limit)
        context = await self._codebase_context(codebase_id, {})
        now = datetime.now(tz=UTC)
        for workspace in await self._gateway.list_live_workspaces(codebase_id):
            candidate = await self._classify(workspace, context, now)
            result.live += 1
            if candidate.missing:
                result.missing += 1
            elif candidate.classification == WorkspaceStatus.MERGED:
                result.merged += 1
            elif candidate.classification == WorkspaceStatus.STALE:
                result.stale += 1
            else:
                result.active += 1
        return result

    # -- Direct removal --------------------------------------------------------

    async def remove(
        self,
        workspace: WorkspaceIndex,
        *,
        force: bool = False,
        reason: str = "requested",
    ) -> WorkspaceIndex:
        """Destroy one workspace on request.

        Raises ``WorkspaceBusyError`` when the workspace has uncommitted
        changes or a running workflow and *force* is not set.
        A workspace leased by a task counts as busy too.
        """
        if workspace.status == WorkspaceStatus.DESTROYED:
            return workspace

        logger.info("Removing workspace {} (reason={}, force={})", workspace.path, reason, force)
        async with self._sweep_lock:
            context = await self._codebase_context(workspace.codebase_id, {})
            if not await to_thread.run_sync(Path(workspace.path).exists):
                await self._mark_vanished(workspace, context.repo_path)
            else:
                if not force:
                    if self._leases[workspace.workspace_id]:
                        msg = f"Workspace {workspace.path} is in use by a task"
                        raise WorkspaceBusyError(msg)
                    if await self._gateway.workspace_has_running_run(workspace.workspace_id):
                        msg = f"Workspace {workspace.path} has a running workflow"
                        raise WorkspaceBusyError(msg)
                    if await self._provider.has_uncommitted_changes(workspace.path):
                        msg = f"Workspace {workspace.path} has uncommitted changes"
                        raise WorkspaceBusyError(msg)
                await self._destroy(workspace, context.repo_path, force=force)
        return await self._gateway.get_workspace(workspace.workspace_id)

    # -- Workflow closed -------------------------------------------------------

    async def on_workflow_closed(
        self,
        codebase_id: str,
        workflow_type: WorkflowType,
        workflow_id: str,
        *,
        force: bool = False,
    ) -> SweepReport:
        """Tear down the workspace of an issue or PR that was closed.

        Nothing happens while a task still holds the workspace or a run is
        in progress there.  Uncommitted changes keep the workspace unless
        *force*; the periodic sweep picks it up once it goes stale.
        """
        report = SweepReport()
        workspace = await self._gateway.find_live_workspace(codebase_id, workflow_type, workflow_id)
        if workspace is None:
            logger.debug("No live workspace for closed {}/{} in codebase {}", workflow_type, workflow_id, codebase_id)
            return report

        async with self._sweep_lock:
            context = await self._codebase_context(codebase_id, {})
            if self._leases[workspace.workspace_id]:
                report.skipped.append(_entry(workspace, "in use"))
            elif await self._gateway.workspace_has_running_run(workspace.workspace_id):
                report.skipped.append(_entry(workspace, "workflow running"))
            elif not await to_thread.run_sync(Path(workspace.path).exists):
                await self._mark_vanished(workspace, context.repo_path)
                report.removed.append(_entry(workspace, "directory missing"))
            elif not force and await self._provider.has_uncommitted_changes(workspace.path):
                logger.warning("Closed workflow {} has uncommitted changes, keeping {}", workflow_id, workspace.path)
                report.skipped.append(_entry(workspace, "uncommitted changes"))
            else:
                await self._destroy(workspace, context.repo_path, force=force)
                report.removed.append(_entry(workspace, "workflow closed"))
        return report

    # -- Leases ----------------------------------------------------------------

    async def acquire_lease(self, workspace: WorkspaceIndex) -> bool:
        """Pin *workspace* against eviction until ``release_lease``.

        Returns ``False`` when the workspace was destroyed (or its directory
        vanished) before the lease could be taken.
        """
        async with self._sweep_lock:
            current = await self._gateway.get_workspace(workspace.workspace_id)
            if current.status == WorkspaceStatus.DESTROYED:
                return False
            if not await to_thread.run_sync(Path(current.path).exists):
                return False
            self._leases[workspace.workspace_id] += 1
        return True

    def release_lease(self, workspace_id: str) -> None:
        self._leases[workspace_id] -= 1
        if self._leases[workspace_id] <= 0:
            del self._leases[workspace_id]

    def is_leased(self, workspace_id: str) -> bool:
        return self._leases[workspace_id] > 0

    # -- Internals -------------------------------------------------------------

    async def _destroy(self, workspace: WorkspaceIndex, repo_path: str, *, force: bool) -> DestroyOutcome:
        outcome = await self._provider.destroy(
            workspace.path,
            repo_path=repo_path,
            force=force,
            branch_name=workspace.branch_name,
        )
        if outcome.directory_exists:
            msg = f"Directory {workspace.path} still exists after destroy"
            raise WorkspaceRemovalError(msg)
        await self._gateway.update_workspace_status(workspace.workspace_id, WorkspaceStatus.DESTROYED)
        logger.info("Workspace destroyed: {} (branch={})", workspace.path, workspace.branch_name)
        return outcome

    async def _mark_vanished(self, workspace: WorkspaceIndex, repo_path: str) -> None:
        """Record a workspace whose directory was deleted outside the service."""
        await self._provider.prune(repo_path)
        await self._provider.delete_branch(repo_path, workspace.branch_name)
        await self._gateway.update_workspace_status(workspace.workspace_id, WorkspaceStatus.DESTROYED)
        logger.info("Workspace {} removed externally, marked as destroyed", workspace.path)

    # -- Timer -----------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic sweep (first pass runs immediately)."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run_periodically(), name="dockyard-eviction")
        logger.info("Eviction scheduler started (every {}h)", self._interval / 3600)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Eviction scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run_periodically(self) -> None:
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception("Scheduled sweep failed")
            await asyncio.sleep(self._interval)
