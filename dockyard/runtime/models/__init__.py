"""Data models for the runtime."""

from dockyard.runtime.models.api import (
    CodebaseCreate,
    LockStatsResponse,
    SweepEntryResponse,
    SweepRequest,
    SweepResponse,
    TaskAccepted,
    TaskOutcome,
    TaskRequest,
    WorkflowClosed,
    WorkspaceRemove,
)
from dockyard.runtime.models.enums import (
    ErrorClass,
    GitOutcome,
    PromptFailure,
    RunEventType,
    RunStatus,
    StartStatus,
    TaskStatus,
    WorkflowType,
    WorkspaceStatus,
)
from dockyard.runtime.models.run import LoopConfig, RunEvent, WorkflowRunIndex, WorkflowStep
from dockyard.runtime.models.workspace import CodebaseIndex, WorkspaceBreakdown, WorkspaceIndex

__all__ = [
    # API schemas
    "CodebaseCreate",
    # Workspace
    "CodebaseIndex",
    # Enums
    "ErrorClass",
    "GitOutcome",
    "LockStatsResponse",
    "LoopConfig",
    "PromptFailure",
    # Run
    "RunEvent",
    "RunEventType",
    "RunStatus",
    "StartStatus",
    "SweepEntryResponse",
    "SweepRequest",
    "SweepResponse",
    "TaskAccepted",
    "TaskOutcome",
    "TaskRequest",
    "TaskStatus",
    "WorkflowClosed",
    "WorkflowRunIndex",
    "WorkflowStep",
    "WorkflowType",
    "WorkspaceBreakdown",
    "WorkspaceIndex",
    "WorkspaceRemove",
    "WorkspaceStatus",
]
