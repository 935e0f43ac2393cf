"""Codebase registration endpoints (RPC-style).

All write operations use POST; reads use GET.
"""

from __future__ import annotations

from pathlib import Path

from anyio import to_thread
from fastapi import APIRouter, HTTPException, status

from dockyard.runtime.deps import Gateway
from dockyard.runtime.models.api import CodebaseCreate
from dockyard.runtime.models.workspace import CodebaseIndex
from dockyard.runtime.store.base import CodebaseNotFoundError, DuplicateCodebaseError

router = APIRouter(prefix="/codebases", tags=["codebases"])


@router.post("/create", response_model=CodebaseIndex, status_code=status.HTTP_201_CREATED)
async def create_codebase(body: CodebaseCreate, gateway: Gateway) -> CodebaseIndex:
    """Register a canonical repository checkout."""
    repo_path = Path(body.repo_path).expanduser().resolve()
    if not await to_thread.run_sync((repo_path / ".git").exists):
        raise HTTPException(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"'{repo_path}' is not a git repository.",
        )
    try:
        return await gateway.create_codebase(
            codebase_id=body.codebase_id,
            name=body.name,
            repo_path=str(repo_path),
            default_branch=body.default_branch,
            copy_files=body.copy_files,
        )
    except DuplicateCodebaseError as exc:
        raise HTTPException(status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.get("/list", response_model=list[CodebaseIndex])
async def list_codebases(gateway: Gateway) -> list[CodebaseIndex]:
    return await gateway.list_codebases()


@router.get("/{codebase_id}/get", response_model=CodebaseIndex)
async def get_codebase(codebase_id: str, gateway: Gateway) -> CodebaseIndex:
    try:
        return await gateway.get_codebase(codebase_id)
    except CodebaseNotFoundError as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Codebase '{codebase_id}' not found.") from exc
