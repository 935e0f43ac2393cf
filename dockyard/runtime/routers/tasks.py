"""Task submission endpoints.

A submitted task runs in the background; its outcome is observable through
the run endpoints and the conversation's notifications.
"""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, HTTPException, status

from dockyard.runtime.deps import Gateway, Locks, Tasks
from dockyard.runtime.execution.tasks import ShuttingDownError
from dockyard.runtime.models.api import LockStatsResponse, TaskAccepted, TaskRequest
from dockyard.runtime.store.base import CodebaseNotFoundError

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.post("/submit", response_model=TaskAccepted, status_code=status.HTTP_202_ACCEPTED)
async def submit_task(body: TaskRequest, gateway: Gateway, tasks: Tasks) -> TaskAccepted:
    """Queue a workflow for a conversation.  Runs after any earlier task of the same conversation."""
    try:
        await gateway.get_codebase(body.codebase_id)
    except CodebaseNotFoundError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Codebase '{body.codebase_id}' not found.") from exc
    try:
        return tasks.submit(body)
    except ShuttingDownError as exc:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is shutting down.") from exc


@router.get("/locks", response_model=LockStatsResponse)
async def lock_stats(locks: Locks) -> LockStatsResponse:
    """Conversations currently holding or waiting on their lock."""
    return LockStatsResponse.model_validate(asdict(locks.stats()))
