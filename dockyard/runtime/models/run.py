"""Workflow run data models.

A workflow run is one attempt to execute an ordered list of steps (or a
loop over one prompt) for a conversation.  Runs move
``running -> completed | failed`` and are never deleted; the append-only
event log records what happened in between.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from dockyard.runtime.models.enums import RunEventType, RunStatus


class WorkflowStep(BaseModel):
    """One step of a workflow.

    Either a single prompt file (``command``) or a ``parallel`` block of
    single steps that run concurrently in the same workspace, each in a
    fresh completion session.
    """

    command: str | None = None
    clear_context: bool = Field(default=False, description="Start a fresh completion session for this step")
    parallel: list[WorkflowStep] | None = Field(
        default=None,
        description="Single steps run concurrently; the block fails if any of them fails",
    )

    @model_validator(mode="after")
    def _validate_shape(self) -> WorkflowStep:
        if (self.command is None) == (self.parallel is None):
            msg = "a step needs exactly one of 'command' or 'parallel'"
            raise ValueError(msg)
        if self.parallel is not None:
            if not self.parallel:
                msg = "a parallel block needs at least one step"
                raise ValueError(msg)
            if any(step.parallel is not None for step in self.parallel):
                msg = "parallel blocks cannot be nested"
                raise ValueError(msg)
        return self

    @property
    def label(self) -> str:
        """Display name: the command, or the block's commands joined with ``+``."""
        if self.parallel is not None:
            return " + ".join(step.label for step in self.parallel)
        return self.command or ""


class LoopConfig(BaseModel):
    """Repeat one prompt until its output carries the completion signal."""

    prompt: str = Field(min_length=1, description="Prompt template run on every iteration")
    until: str = Field(min_length=1, description="Completion signal, e.g. COMPLETE")
    max_iterations: int = Field(ge=1)
    fresh_context: bool = Field(default=False, description="Start every iteration in a fresh completion session")


class WorkflowRunIndex(BaseModel):
    """Workflow run row (PG)."""

    run_id: str
    workflow_name: str
    conversation_id: str
    codebase_id: str | None = None
    workspace_id: str | None = None
    status: RunStatus = RunStatus.RUNNING
    current_step_index: int = 0
    user_message: str = ""
    metadata: dict = Field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_activity_at: datetime | None = None


class RunEvent(BaseModel):
    """Append-only run log entry."""

    event_id: int | None = None
    run_id: str
    event_type: RunEventType
    step_index: int | None = None
    step_name: str | None = None
    payload: dict = Field(default_factory=dict)
    created_at: datetime | None = None
