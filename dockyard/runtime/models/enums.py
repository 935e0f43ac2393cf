"""Shared enumerations used across the runtime."""

from __future__ import annotations

from enum import StrEnum

# -- Workspace ---------------------------------------------------------------


class WorkspaceStatus(StrEnum):
    """Durable workspace status.  Transitions only move forward."""

    ACTIVE = "active"
    STALE = "stale"
    MERGED = "merged"
    DESTROYED = "destroyed"


class WorkflowType(StrEnum):
    """What a workspace was allocated for.  Drives branch naming."""

    ISSUE = "issue"
    PR = "pr"
    REVIEW = "review"
    THREAD = "thread"
    TASK = "task"


# -- Workflow run ------------------------------------------------------------


class RunStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunEventType(StrEnum):
    """Append-only run log event types."""

    WORKFLOW_START = "workflow_start"
    STEP_START = "step_start"
    STEP_COMPLETE = "step_complete"
    ASSISTANT = "assistant"
    TOOL = "tool"
    WORKFLOW_ERROR = "workflow_error"
    WORKFLOW_COMPLETE = "workflow_complete"


class StartStatus(StrEnum):
    """Outcome of ``WorkflowRunCoordinator.start``."""

    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"
    """Another run is already ``running`` for the conversation."""
    BLOCKED = "blocked"
    """The concurrent-run guard could not be evaluated or the run could not be created."""


class TaskStatus(StrEnum):
    """Outcome of a task passed through the task handler."""

    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"
    BLOCKED = "blocked"
    ERROR = "error"


# -- Errors ------------------------------------------------------------------


class ErrorClass(StrEnum):
    TRANSIENT = "transient"
    FATAL = "fatal"
    UNKNOWN = "unknown"


class GitOutcome(StrEnum):
    """Interpretation of a failed git command's stderr."""

    BRANCH_EXISTS = "branch_exists"
    PATH_EXISTS = "path_exists"
    PATH_MISSING = "path_missing"
    BRANCH_MISSING = "branch_missing"
    BRANCH_CHECKED_OUT = "branch_checked_out"
    DIRTY = "dirty"
    FAILED = "failed"


class PromptFailure(StrEnum):
    """Why a step prompt could not be loaded."""

    INVALID_NAME = "invalid_name"
    EMPTY_FILE = "empty_file"
    NOT_FOUND = "not_found"
    UNREADABLE = "unreadable"
