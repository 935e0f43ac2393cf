"""API request / response schemas.

These thin schemas sit between HTTP and the runtime.  ``TaskRequest`` is
also the unit of work handed to the task handler, so adapters that do not
go through HTTP build the same object.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator

from dockyard.runtime.models.enums import TaskStatus, WorkflowType
from dockyard.runtime.models.run import LoopConfig, WorkflowStep

# ---------------------------------------------------------------------------
# Codebase
# ---------------------------------------------------------------------------


class CodebaseCreate(BaseModel):
    """Input for registering a canonical repository."""

    codebase_id: str | None = Field(default=None, description="Optional; auto-generated UUID if omitted.")
    name: str
    repo_path: str
    default_branch: str | None = None
    copy_files: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class TaskRequest(BaseModel):
    """One inbound task: run a workflow for a conversation in its own workspace."""

    conversation_id: str
    codebase_id: str
    workflow_name: str
    steps: list[WorkflowStep] = Field(default_factory=list)
    loop: LoopConfig | None = Field(default=None, description="Run one prompt repeatedly instead of steps")
    user_message: str = ""
    context: str | None = Field(default=None, description="Issue / PR body or other external context")

    workflow_type: WorkflowType = WorkflowType.TASK
    workflow_id: str

    pr_number: int | None = None
    pr_sha: str | None = None
    pr_branch: str | None = None
    is_fork_pr: bool = False

    metadata: dict = Field(default_factory=dict)

    @model_validator(mode="after")
    def _validate_workflow(self) -> TaskRequest:
        if self.loop is not None and self.steps:
            msg = "'steps' and 'loop' are mutually exclusive"
            raise ValueError(msg)
        if self.loop is None and not self.steps:
            msg = "a workflow needs at least one step, or a loop"
            raise ValueError(msg)
        return self


class TaskAccepted(BaseModel):
    conversation_id: str
    queued: bool = Field(description="True when another task for the conversation holds the lock")


class TaskOutcome(BaseModel):
    conversation_id: str
    status: TaskStatus
    run_id: str | None = None
    workspace_id: str | None = None
    detail: str | None = None


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------


class SweepRequest(BaseModel):
    codebase_id: str | None = Field(default=None, description="Limit the sweep to one codebase")
    force: bool = Field(default=False, description="Also evict workspaces with uncommitted changes")


class WorkspaceRemove(BaseModel):
    force: bool = Field(default=False, description="Remove even with uncommitted changes or a running workflow")


class WorkflowClosed(BaseModel):
    """An issue or PR was closed; its workspace may be torn down."""

    codebase_id: str
    workflow_type: WorkflowType
    workflow_id: str
    force: bool = Field(default=False, description="Remove even with uncommitted changes")


class SweepEntryResponse(BaseModel):
    workspace_id: str
    path: str
    branch_name: str
    reason: str


class SweepResponse(BaseModel):
    removed: list[SweepEntryResponse] = Field(default_factory=list)
    skipped: list[SweepEntryResponse] = Field(default_factory=list)
    errors: list[SweepEntryResponse] = Field(default_factory=list)


class LockStatsResponse(BaseModel):
    active: int
    waiting: int
    conversations: list[str]
