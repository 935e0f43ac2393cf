"""Workflow run read endpoints (RPC-style)."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, status

from dockyard.runtime.deps import Gateway
from dockyard.runtime.models.run import RunEvent, WorkflowRunIndex
from dockyard.runtime.store.base import RunNotFoundError

router = APIRouter(prefix="/runs", tags=["runs"])


@router.get("/list", response_model=list[WorkflowRunIndex])
async def list_runs(
    gateway: Gateway,
    conversation_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
) -> list[WorkflowRunIndex]:
    """List runs, newest first, optionally for one conversation."""
    return await gateway.list_runs(conversation_id=conversation_id, limit=limit)


@router.get("/{run_id}/get", response_model=WorkflowRunIndex)
async def get_run(run_id: str, gateway: Gateway) -> WorkflowRunIndex:
    try:
        return await gateway.get_run(run_id)
    except RunNotFoundError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Run '{run_id}' not found.") from exc


@router.get("/{run_id}/events", response_model=list[RunEvent])
async def list_run_events(run_id: str, gateway: Gateway) -> list[RunEvent]:
    """The append-only event log of a run, oldest first."""
    try:
        await gateway.get_run(run_id)
    except RunNotFoundError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Run '{run_id}' not found.") from exc
    return await gateway.list_run_events(run_id)
