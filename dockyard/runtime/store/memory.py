"""In-memory persistence gateway.

Used when no database URL is configured and throughout the unit tests.
Every method completes without awaiting anything, so each call is atomic
with respect to other coroutines on the event loop.  Records are lost on
restart.
"""

from __future__ import annotations

import itertools
import uuid
from datetime import UTC, datetime
from typing import Any

from dockyard.runtime.models.enums import RunStatus, WorkflowType, WorkspaceStatus
from dockyard.runtime.models.run import RunEvent, WorkflowRunIndex
from dockyard.runtime.models.workspace import CodebaseIndex, WorkspaceIndex
from dockyard.runtime.store.base import (
    CodebaseNotFoundError,
    DuplicateCodebaseError,
    DuplicateWorkspaceError,
    RunAlreadyActiveError,
    RunNotFoundError,
    WorkspaceNotFoundError,
    check_run_transition,
    check_workspace_transition,
)


def _now() -> datetime:
    return datetime.now(tz=UTC)


class InMemoryGateway:
    """Dict-backed implementation of the PersistenceGateway protocol."""

    def __init__(self) -> None:
        self._codebases: dict[str, CodebaseIndex] = {}
        self._workspaces: dict[str, WorkspaceIndex] = {}
        self._runs: dict[str, WorkflowRunIndex] = {}
        self._events: list[RunEvent] = []
        self._event_ids = itertools.count(1)

    # -- Codebases -------------------------------------------------------------

    async def create_codebase(
        self,
        *,
        name: str,
        repo_path: str,
        codebase_id: str | None = None,
        default_branch: str | None = None,
        copy_files: list[str] | None = None,
    ) -> CodebaseIndex:
        codebase_id = codebase_id or str(uuid.uuid4())
        if codebase_id in self._codebases:
            raise DuplicateCodebaseError(codebase_id)
        codebase = CodebaseIndex(
            codebase_id=codebase_id,
            name=name,
            repo_path=repo_path,
            default_branch=default_branch,
            copy_files=copy_files or [],
            created_at=_now(),
        )
        self._codebases[codebase_id] = codebase
        return codebase.model_copy()

    async def get_codebase(self, codebase_id: str) -> CodebaseIndex:
        codebase = self._codebases.get(codebase_id)
        if codebase is None:
            raise CodebaseNotFoundError(codebase_id)
        return codebase.model_copy()

    async def list_codebases(self) -> list[CodebaseIndex]:
        return [c.model_copy() for c in sorted(self._codebases.values(), key=lambda c: c.name)]

    # -- Workspaces ------------------------------------------------------------

    async def create_workspace(
        self,
        *,
        path: str,
        branch_name: str,
        codebase_id: str,
        workflow_type: WorkflowType,
        workflow_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> WorkspaceIndex:
        if any(w.path == path and w.is_live for w in self._workspaces.values()):
            raise DuplicateWorkspaceError(path)
        now = _now()
        workspace = WorkspaceIndex(
            workspace_id=uuid.uuid4().hex,
            path=path,
            branch_name=branch_name,
            codebase_id=codebase_id,
            workflow_type=workflow_type,
            workflow_id=workflow_id,
            metadata=dict(metadata or {}),
            created_at=now,
            last_activity_at=now,
        )
        self._workspaces[workspace.workspace_id] = workspace
        return workspace.model_copy(deep=True)

    async def get_workspace(self, workspace_id: str) -> WorkspaceIndex:
        return self._require_workspace(workspace_id).model_copy(deep=True)

    async def update_workspace_status(self, workspace_id: str, status: WorkspaceStatus) -> WorkspaceIndex:
        workspace = self._require_workspace(workspace_id)
        if check_workspace_transition(workspace.status, status):
            workspace.status = status
            if status == WorkspaceStatus.DESTROYED:
                workspace.destroyed_at = _now()
        return workspace.model_copy(deep=True)

    async def touch_workspace(self, workspace_id: str) -> None:
        self._require_workspace(workspace_id).last_activity_at = _now()

    async def count_active_workspaces(self, codebase_id: str) -> int:
        return sum(1 for w in self._workspaces.values() if w.codebase_id == codebase_id and w.is_live)

    async def list_live_workspaces(self, codebase_id: str | None = None) -> list[WorkspaceIndex]:
        rows = [
            w
            for w in self._workspaces.values()
            if w.is_live and (codebase_id is None or w.codebase_id == codebase_id)
        ]
        rows.sort(key=lambda w: w.created_at or _now())
        return [w.model_copy(deep=True) for w in rows]

    async def list_workspaces(
        self,
        *,
        codebase_id: str | None = None,
        include_destroyed: bool = False,
        limit: int = 100,
    ) -> list[WorkspaceIndex]:
        rows = [
            w
            for w in self._workspaces.values()
            if (include_destroyed or w.is_live) and (codebase_id is None or w.codebase_id == codebase_id)
        ]
        rows.sort(key=lambda w: w.created_at or _now(), reverse=True)
        return [w.model_copy(deep=True) for w in rows[:limit]]

    async def find_live_workspace(
        self,
        codebase_id: str,
        workflow_type: WorkflowType,
        workflow_id: str,
    ) -> WorkspaceIndex | None:
        for workspace in self._workspaces.values():
            if (
                workspace.is_live
                and workspace.codebase_id == codebase_id
                and workspace.workflow_type == workflow_type
                and workspace.workflow_id == workflow_id
            ):
                return workspace.model_copy(deep=True)
        return None

    async def workspace_has_running_run(self, workspace_id: str) -> bool:
        return any(r.workspace_id == workspace_id and r.status == RunStatus.RUNNING for r in self._runs.values())

    def _require_workspace(self, workspace_id: str) -> WorkspaceIndex:
        workspace = self._workspaces.get(workspace_id)
        if workspace is None:
            raise WorkspaceNotFoundError(workspace_id)
        return workspace

    # -- Workflow runs ---------------------------------------------------------

    async def get_active_run(self, conversation_id: str) -> WorkflowRunIndex | None:
        for run in self._runs.values():
            if run.conversation_id == conversation_id and run.status == RunStatus.RUNNING:
                return run.model_copy(deep=True)
        return None

    async def create_run(
        self,
        *,
        workflow_name: str,
        conversation_id: str,
        codebase_id: str | None = None,
        workspace_id: str | None = None,
        user_message: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> WorkflowRunIndex:
        if any(r.conversation_id == conversation_id and r.status == RunStatus.RUNNING for r in self._runs.values()):
            raise RunAlreadyActiveError(conversation_id)
        now = _now()
        run = WorkflowRunIndex(
            run_id=uuid.uuid4().hex,
            workflow_name=workflow_name,
            conversation_id=conversation_id,
            codebase_id=codebase_id,
            workspace_id=workspace_id,
            user_message=user_message,
            metadata=dict(metadata or {}),
            started_at=now,
            last_activity_at=now,
        )
        self._runs[run.run_id] = run
        return run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> WorkflowRunIndex:
        return self._require_run(run_id).model_copy(deep=True)

    async def list_runs(self, *, conversation_id: str | None = None, limit: int = 50) -> list[WorkflowRunIndex]:
        rows = [r for r in self._runs.values() if conversation_id is None or r.conversation_id == conversation_id]
        rows.sort(key=lambda r: r.started_at or _now(), reverse=True)
        return [r.model_copy(deep=True) for r in rows[:limit]]

    async def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> WorkflowRunIndex:
        run = self._require_run(run_id)
        if check_run_transition(run.status, status):
            run.status = status
            run.completed_at = _now()
        if metadata:
            run.metadata = {**run.metadata, **metadata}
        run.last_activity_at = _now()
        return run.model_copy(deep=True)

    async def update_run_progress(
        self,
        run_id: str,
        step_index: int,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        run = self._require_run(run_id)
        run.current_step_index = step_index
        if metadata:
            run.metadata = {**run.metadata, **metadata}
        run.last_activity_at = _now()

    async def touch_run(self, run_id: str) -> None:
        self._require_run(run_id).last_activity_at = _now()

    async def fail_stale_runs(self, inactive_since: datetime, *, reason: str) -> int:
        count = 0
        for run in self._runs.values():
            last = run.last_activity_at or run.started_at
            if run.status == RunStatus.RUNNING and last is not None and last < inactive_since:
                run.status = RunStatus.FAILED
                run.completed_at = _now()
                run.metadata = {**run.metadata, "error": reason}
                count += 1
        return count

    async def append_run_event(self, event: RunEvent) -> None:
        self._events.append(event.model_copy(update={"event_id": next(self._event_ids), "created_at": _now()}))

    async def list_run_events(self, run_id: str) -> list[RunEvent]:
        return [e.model_copy() for e in self._events if e.run_id == run_id]

    def _require_run(self, run_id: str) -> WorkflowRunIndex:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run
