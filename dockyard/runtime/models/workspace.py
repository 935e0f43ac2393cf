"""Codebase and workspace data models.

A codebase is a canonical repository on disk.  A workspace is one exclusive,
branch-backed git worktree of a codebase, allocated to a single task.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from dockyard.runtime.models.enums import WorkflowType, WorkspaceStatus


class CodebaseIndex(BaseModel):
    """Codebase row (PG)."""

    codebase_id: str
    name: str
    repo_path: str = Field(description="Canonical repository checkout")
    default_branch: str | None = Field(default=None, description="Overrides upstream main branch detection")
    copy_files: list[str] = Field(default_factory=list, description="Repo-specific auxiliary paths")
    created_at: datetime | None = None


class WorkspaceIndex(BaseModel):
    """Workspace row (PG)."""

    workspace_id: str
    path: str = Field(description="Worktree directory; unique among non-destroyed workspaces")
    branch_name: str
    codebase_id: str
    workflow_type: WorkflowType
    workflow_id: str
    status: WorkspaceStatus = WorkspaceStatus.ACTIVE
    metadata: dict = Field(default_factory=dict)
    created_at: datetime | None = None
    last_activity_at: datetime | None = None
    destroyed_at: datetime | None = None

    @property
    def is_live(self) -> bool:
        return self.status != WorkspaceStatus.DESTROYED


class WorkspaceBreakdown(BaseModel):
    """Live workspace counts for one codebase, by most recent classification."""

    codebase_id: str
    live: int = 0
    limit: int = 0
    active: int = 0
    stale: int = 0
    merged: int = 0
    missing: int = 0
