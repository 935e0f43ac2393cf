"""Workspace inspection and eviction endpoints (RPC-style).

Workspaces are created by the task flow, never directly over HTTP.
"""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, HTTPException, Query, status

from dockyard.runtime.deps import Gateway, Scheduler
from dockyard.runtime.isolation.eviction import WorkspaceBusyError, WorkspaceRemovalError
from dockyard.runtime.isolation.provider import WorkspaceDestroyError
from dockyard.runtime.models.api import SweepRequest, SweepResponse, WorkflowClosed, WorkspaceRemove
from dockyard.runtime.models.workspace import WorkspaceBreakdown, WorkspaceIndex
from dockyard.runtime.store.base import CodebaseNotFoundError, WorkspaceNotFoundError

router = APIRouter(prefix="/workspaces", tags=["workspaces"])


@router.get("/list", response_model=list[WorkspaceIndex])
async def list_workspaces(
    gateway: Gateway,
    codebase_id: str | None = None,
    include_destroyed: bool = False,
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[WorkspaceIndex]:
    """List workspaces, newest first."""
    return await gateway.list_workspaces(codebase_id=codebase_id, include_destroyed=include_destroyed, limit=limit)


@router.get("/breakdown", response_model=WorkspaceBreakdown)
async def workspace_breakdown(codebase_id: str, scheduler: Scheduler) -> WorkspaceBreakdown:
    """Live workspace counts for a codebase, by classification."""
    try:
        return await scheduler.breakdown(codebase_id)
    except CodebaseNotFoundError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Codebase '{codebase_id}' not found.") from exc


@router.get("/{workspace_id}/get", response_model=WorkspaceIndex)
async def get_workspace(workspace_id: str, gateway: Gateway) -> WorkspaceIndex:
    try:
        return await gateway.get_workspace(workspace_id)
    except WorkspaceNotFoundError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Workspace '{workspace_id}' not found.") from exc


@router.post("/{workspace_id}/remove", response_model=WorkspaceIndex)
async def remove_workspace(
    workspace_id: str,
    gateway: Gateway,
    scheduler: Scheduler,
    body: WorkspaceRemove | None = None,
) -> WorkspaceIndex:
    """Destroy a workspace.  Refused (409) if dirty or in use unless ``force``."""
    try:
        workspace = await gateway.get_workspace(workspace_id)
    except WorkspaceNotFoundError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Workspace '{workspace_id}' not found.") from exc

    force = body.force if body else False
    try:
        return await scheduler.remove(workspace, force=force, reason="api")
    except WorkspaceBusyError as exc:
        raise HTTPException(status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except (WorkspaceDestroyError, WorkspaceRemovalError) as exc:
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc


@router.post("/sweep", response_model=SweepResponse)
async def sweep_workspaces(scheduler: Scheduler, body: SweepRequest | None = None) -> SweepResponse:
    """Evict merged, stale and vanished workspaces now."""
    body = body or SweepRequest()
    report = await scheduler.sweep(body.codebase_id, force=body.force)
    return SweepResponse.model_validate(asdict(report))


@router.post("/close", response_model=SweepResponse)
async def close_workflow(body: WorkflowClosed, gateway: Gateway, scheduler: Scheduler) -> SweepResponse:
    """Tear down the workspace of a closed issue or PR.

    A workspace still in use, or with uncommitted changes (unless ``force``),
    is kept and reported under ``skipped``.
    """
    try:
        await gateway.get_codebase(body.codebase_id)
    except CodebaseNotFoundError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Codebase '{body.codebase_id}' not found.") from exc

    try:
        report = await scheduler.on_workflow_closed(
            body.codebase_id,
            body.workflow_type,
            body.workflow_id,
            force=body.force,
        )
    except (WorkspaceDestroyError, WorkspaceRemovalError) as exc:
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    return SweepResponse.model_validate(asdict(report))
