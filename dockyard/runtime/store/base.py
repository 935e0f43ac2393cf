"""Persistence gateway interface for codebases, workspaces and workflow runs.

Every method is a single atomic operation; the runtime never needs
cross-table transactions.  "Count then act" sequences (capacity checks,
the concurrent-run guard) are made safe by the conversation lock, and the
run guard is additionally backed by the store itself: creating a second
``running`` run for a conversation raises ``RunAlreadyActiveError``.

Backends:

- ``SqlGateway``: SQLAlchemy async + PostgreSQL (production).
- ``InMemoryGateway``: process-local dicts (no database configured, tests).
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from dockyard.runtime.models.enums import RunStatus, WorkflowType, WorkspaceStatus
from dockyard.runtime.models.run import RunEvent, WorkflowRunIndex
from dockyard.runtime.models.workspace import CodebaseIndex, WorkspaceIndex

# ---------------------------------------------------------------------------
# Domain errors
# ---------------------------------------------------------------------------


class CodebaseNotFoundError(LookupError):
    """Raised when a codebase is not found."""


class DuplicateCodebaseError(ValueError):
    """Raised when a codebase with the given ID already exists."""


class WorkspaceNotFoundError(LookupError):
    """Raised when a workspace is not found."""


class DuplicateWorkspaceError(ValueError):
    """Raised when a live workspace already occupies the given path."""


class RunNotFoundError(LookupError):
    """Raised when a workflow run is not found."""


class RunAlreadyActiveError(RuntimeError):
    """Raised when a conversation already has a ``running`` workflow run."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation '{conversation_id}' already has a running workflow")
        self.conversation_id = conversation_id


class InvalidTransitionError(ValueError):
    """Raised on a backwards or sideways status change."""


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

WORKSPACE_TRANSITIONS: Mapping[WorkspaceStatus, frozenset[WorkspaceStatus]] = {
    WorkspaceStatus.ACTIVE: frozenset({WorkspaceStatus.STALE, WorkspaceStatus.MERGED, WorkspaceStatus.DESTROYED}),
    WorkspaceStatus.STALE: frozenset({WorkspaceStatus.DESTROYED}),
    WorkspaceStatus.MERGED: frozenset({WorkspaceStatus.DESTROYED}),
    WorkspaceStatus.DESTROYED: frozenset(),
}

RUN_TRANSITIONS: Mapping[RunStatus, frozenset[RunStatus]] = {
    RunStatus.RUNNING: frozenset({RunStatus.COMPLETED, RunStatus.FAILED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
}


def check_workspace_transition(current: WorkspaceStatus, target: WorkspaceStatus) -> bool:
    """Return True if the status must change, False if it already matches.

    Raises ``InvalidTransitionError`` for any move that is not forward.
    """
    if current == target:
        return False
    if target not in WORKSPACE_TRANSITIONS[current]:
        msg = f"Workspace status cannot move from '{current}' to '{target}'"
        raise InvalidTransitionError(msg)
    return True


def check_run_transition(current: RunStatus, target: RunStatus) -> bool:
    if current == target:
        return False
    if target not in RUN_TRANSITIONS[current]:
        msg = f"Run status cannot move from '{current}' to '{target}'"
        raise InvalidTransitionError(msg)
    return True


LIVE_WORKSPACE_STATUSES = (WorkspaceStatus.ACTIVE, WorkspaceStatus.STALE, WorkspaceStatus.MERGED)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class PersistenceGateway(Protocol):
    """Async protocol for durable codebase, workspace and run records."""

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
        """Register a repository.  Raises ``DuplicateCodebaseError``."""
        ...

    async def get_codebase(self, codebase_id: str) -> CodebaseIndex:
        """Raises ``CodebaseNotFoundError`` if missing."""
        ...

    async def list_codebases(self) -> list[CodebaseIndex]: ...

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
        """Record a new active workspace.  Raises ``DuplicateWorkspaceError``."""
        ...

    async def get_workspace(self, workspace_id: str) -> WorkspaceIndex:
        """Raises ``WorkspaceNotFoundError`` if missing."""
        ...

    async def update_workspace_status(self, workspace_id: str, status: WorkspaceStatus) -> WorkspaceIndex:
        """Move a workspace forward.  Raises ``InvalidTransitionError``."""
        ...

    async def touch_workspace(self, workspace_id: str) -> None: ...

    async def count_active_workspaces(self, codebase_id: str) -> int:
        """Count live (non-destroyed) workspaces of a codebase."""
        ...

    async def list_live_workspaces(self, codebase_id: str | None = None) -> list[WorkspaceIndex]:
        """Live workspaces, oldest first, optionally for one codebase."""
        ...

    async def list_workspaces(
        self,
        *,
        codebase_id: str | None = None,
        include_destroyed: bool = False,
        limit: int = 100,
    ) -> list[WorkspaceIndex]:
        """Workspaces, newest first."""
        ...

    async def find_live_workspace(
        self,
        codebase_id: str,
        workflow_type: WorkflowType,
        workflow_id: str,
    ) -> WorkspaceIndex | None: ...

    async def workspace_has_running_run(self, workspace_id: str) -> bool: ...

    # -- Workflow runs ---------------------------------------------------------

    async def get_active_run(self, conversation_id: str) -> WorkflowRunIndex | None:
        """Return the ``running`` run of a conversation, if any."""
        ...

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
        """Create a ``running`` run at step 0.  Raises ``RunAlreadyActiveError``."""
        ...

    async def get_run(self, run_id: str) -> WorkflowRunIndex:
        """Raises ``RunNotFoundError`` if missing."""
        ...

    async def list_runs(self, *, conversation_id: str | None = None, limit: int = 50) -> list[WorkflowRunIndex]:
        """Runs, newest first."""
        ...

    async def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> WorkflowRunIndex:
        """Move a run to a terminal status, merging *metadata* into the row."""
        ...

    async def update_run_progress(
        self,
        run_id: str,
        step_index: int,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record the step (or loop iteration) reached, merging *metadata* into the row."""
        ...

    async def touch_run(self, run_id: str) -> None: ...

    async def fail_stale_runs(self, inactive_since: datetime, *, reason: str) -> int:
        """Fail ``running`` runs with no activity since *inactive_since*.  Returns the count."""
        ...

    async def append_run_event(self, event: RunEvent) -> None: ...

    async def list_run_events(self, run_id: str) -> list[RunEvent]: ...
