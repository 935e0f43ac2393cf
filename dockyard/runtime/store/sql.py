"""PostgreSQL persistence gateway.

Each method opens its own short-lived ``AsyncSession`` and commits a single
statement (or a ``SELECT ... FOR UPDATE`` plus one change), so every
operation is atomic on its own.  The partial unique indexes declared in
``db/tables.py`` back the two durable invariants: one ``running`` run per
conversation and one live workspace per directory.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dockyard.runtime.db.tables import Codebase as CodebaseRow
from dockyard.runtime.db.tables import WorkflowEvent as WorkflowEventRow
from dockyard.runtime.db.tables import WorkflowRun as WorkflowRunRow
from dockyard.runtime.db.tables import Workspace as WorkspaceRow
from dockyard.runtime.models.enums import RunEventType, RunStatus, WorkflowType, WorkspaceStatus
from dockyard.runtime.models.run import RunEvent, WorkflowRunIndex
from dockyard.runtime.models.workspace import CodebaseIndex, WorkspaceIndex
from dockyard.runtime.store.base import (
    CodebaseNotFoundError,
    DuplicateCodebaseError,
    DuplicateWorkspaceError,
    RunAlreadyActiveError,
    RunNotFoundError,
    WorkspaceNotFoundError,
    check_run_transition,
    check_workspace_transition,
)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

_RUNNING_RUN_INDEX = "uq_workflow_runs_running_conversation"
_LIVE_PATH_INDEX = "uq_workspaces_live_path"


# -- Row converters ------------------------------------------------------------


def _to_codebase(row: CodebaseRow) -> CodebaseIndex:
    return CodebaseIndex(
        codebase_id=row.codebase_id,
        name=row.name,
        repo_path=row.repo_path,
        default_branch=row.default_branch,
        copy_files=list(row.copy_files or []),
        created_at=row.created_at,
    )


def _to_workspace(row: WorkspaceRow) -> WorkspaceIndex:
    return WorkspaceIndex(
        workspace_id=row.workspace_id,
        path=row.path,
        branch_name=row.branch_name,
        codebase_id=row.codebase_id,
        workflow_type=WorkflowType(row.workflow_type),
        workflow_id=row.workflow_id,
        status=WorkspaceStatus(row.status),
        metadata=dict(row.metadata_ or {}),
        created_at=row.created_at,
        last_activity_at=row.last_activity_at,
        destroyed_at=row.destroyed_at,
    )


def _to_run(row: WorkflowRunRow) -> WorkflowRunIndex:
    return WorkflowRunIndex(
        run_id=row.run_id,
        workflow_name=row.workflow_name,
        conversation_id=row.conversation_id,
        codebase_id=row.codebase_id,
        workspace_id=row.workspace_id,
        status=RunStatus(row.status),
        current_step_index=row.current_step_index,
        user_message=row.user_message,
        metadata=dict(row.metadata_ or {}),
        started_at=row.started_at,
        completed_at=row.completed_at,
        last_activity_at=row.last_activity_at,
    )


def _to_event(row: WorkflowEventRow) -> RunEvent:
    return RunEvent(
        event_id=row.event_id,
        run_id=row.run_id,
        event_type=RunEventType(row.event_type),
        step_index=row.step_index,
        step_name=row.step_name,
        payload=dict(row.payload or {}),
        created_at=row.created_at,
    )


def _violates(exc: IntegrityError, index_name: str) -> bool:
    return index_name in str(exc.orig)


class SqlGateway:
    """SQLAlchemy implementation of the PersistenceGateway protocol.

    *session_factory* is usually an ``async_sessionmaker``; any callable
    returning an async context manager that yields an ``AsyncSession`` works.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

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
        codebase_id = codebase_id or str(uuid.uuid4())
        async with self._session_factory() as db:
            if await db.get(CodebaseRow, codebase_id) is not None:
                raise DuplicateCodebaseError(codebase_id)
            row = CodebaseRow(
                codebase_id=codebase_id,
                name=name,
                repo_path=repo_path,
                default_branch=default_branch,
                copy_files=copy_files or [],
            )
            db.add(row)
            await db.commit()
            await db.refresh(row)
            logger.info("Codebase registered: {} ({})", name, repo_path)
            return _to_codebase(row)

    async def get_codebase(self, codebase_id: str) -> CodebaseIndex:
        async with self._session_factory() as db:
            row = await db.get(CodebaseRow, codebase_id)
            if row is None:
                raise CodebaseNotFoundError(codebase_id)
            return _to_codebase(row)

    async def list_codebases(self) -> list[CodebaseIndex]:
        async with self._session_factory() as db:
            result = await db.execute(select(CodebaseRow).order_by(CodebaseRow.name))
            return [_to_codebase(row) for row in result.scalars().all()]

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
        async with self._session_factory() as db:
            row = WorkspaceRow(
                workspace_id=uuid.uuid4().hex,
                path=path,
                branch_name=branch_name,
                codebase_id=codebase_id,
                workflow_type=workflow_type,
                workflow_id=workflow_id,
                status=WorkspaceStatus.ACTIVE,
                metadata_=metadata or {},
            )
            db.add(row)
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                if _violates(exc, _LIVE_PATH_INDEX):
                    raise DuplicateWorkspaceError(path) from exc
                raise
            await db.refresh(row)
            return _to_workspace(row)

    async def get_workspace(self, workspace_id: str) -> WorkspaceIndex:
        async with self._session_factory() as db:
            row = await db.get(WorkspaceRow, workspace_id)
            if row is None:
                raise WorkspaceNotFoundError(workspace_id)
            return _to_workspace(row)

    async def update_workspace_status(self, workspace_id: str, status: WorkspaceStatus) -> WorkspaceIndex:
        async with self._session_factory() as db:
            stmt = select(WorkspaceRow).where(WorkspaceRow.workspace_id == workspace_id).with_for_update()
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is None:
                raise WorkspaceNotFoundError(workspace_id)
            if check_workspace_transition(WorkspaceStatus(row.status), status):
                row.status = status
                if status == WorkspaceStatus.DESTROYED:
                    row.destroyed_at = func.now()
            await db.commit()
            await db.refresh(row)
            return _to_workspace(row)

    async def touch_workspace(self, workspace_id: str) -> None:
        async with self._session_factory() as db:
            stmt = (
                update(WorkspaceRow)
                .where(WorkspaceRow.workspace_id == workspace_id)
                .values(last_activity_at=func.now())
            )
            await db.execute(stmt)
            await db.commit()

    async def count_active_workspaces(self, codebase_id: str) -> int:
        async with self._session_factory() as db:
            stmt = (
                select(func.count())
                .select_from(WorkspaceRow)
                .where(WorkspaceRow.codebase_id == codebase_id, WorkspaceRow.status != WorkspaceStatus.DESTROYED)
            )
            return int((await db.execute(stmt)).scalar_one())

    async def list_live_workspaces(self, codebase_id: str | None = None) -> list[WorkspaceIndex]:
        async with self._session_factory() as db:
            stmt = (
                select(WorkspaceRow)
                .where(WorkspaceRow.status != WorkspaceStatus.DESTROYED)
                .order_by(WorkspaceRow.created_at)
            )
            if codebase_id is not None:
                stmt = stmt.where(WorkspaceRow.codebase_id == codebase_id)
            result = await db.execute(stmt)
            return [_to_workspace(row) for row in result.scalars().all()]

    async def list_workspaces(
        self,
        *,
        codebase_id: str | None = None,
        include_destroyed: bool = False,
        limit: int = 100,
    ) -> list[WorkspaceIndex]:
        async with self._session_factory() as db:
            stmt = select(WorkspaceRow).order_by(WorkspaceRow.created_at.desc()).limit(limit)
            if codebase_id is not None:
                stmt = stmt.where(WorkspaceRow.codebase_id == codebase_id)
            if not include_destroyed:
                stmt = stmt.where(WorkspaceRow.status != WorkspaceStatus.DESTROYED)
            result = await db.execute(stmt)
            return [_to_workspace(row) for row in result.scalars().all()]

    async def find_live_workspace(
        self,
        codebase_id: str,
        workflow_type: WorkflowType,
        workflow_id: str,
    ) -> WorkspaceIndex | None:
        async with self._session_factory() as db:
            stmt = (
                select(WorkspaceRow)
                .where(
                    WorkspaceRow.codebase_id == codebase_id,
                    WorkspaceRow.workflow_type == workflow_type,
                    WorkspaceRow.workflow_id == workflow_id,
                    WorkspaceRow.status != WorkspaceStatus.DESTROYED,
                )
                .order_by(WorkspaceRow.created_at.desc())
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return _to_workspace(row) if row is not None else None

    async def workspace_has_running_run(self, workspace_id: str) -> bool:
        async with self._session_factory() as db:
            stmt = (
                select(WorkflowRunRow.run_id)
                .where(WorkflowRunRow.workspace_id == workspace_id, WorkflowRunRow.status == RunStatus.RUNNING)
                .limit(1)
            )
            return (await db.execute(stmt)).first() is not None

    # -- Workflow runs ---------------------------------------------------------

    async def get_active_run(self, conversation_id: str) -> WorkflowRunIndex | None:
        async with self._session_factory() as db:
            stmt = select(WorkflowRunRow).where(
                WorkflowRunRow.conversation_id == conversation_id,
                WorkflowRunRow.status == RunStatus.RUNNING,
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return _to_run(row) if row is not None else None

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
        async with self._session_factory() as db:
            row = WorkflowRunRow(
                run_id=uuid.uuid4().hex,
                workflow_name=workflow_name,
                conversation_id=conversation_id,
                codebase_id=codebase_id,
                workspace_id=workspace_id,
                status=RunStatus.RUNNING,
                current_step_index=0,
                user_message=user_message,
                metadata_=metadata or {},
            )
            db.add(row)
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                if _violates(exc, _RUNNING_RUN_INDEX):
                    raise RunAlreadyActiveError(conversation_id) from exc
                raise
            await db.refresh(row)
            return _to_run(row)

    async def get_run(self, run_id: str) -> WorkflowRunIndex:
        async with self._session_factory() as db:
            row = await db.get(WorkflowRunRow, run_id)
            if row is None:
                raise RunNotFoundError(run_id)
            return _to_run(row)

    async def list_runs(self, *, conversation_id: str | None = None, limit: int = 50) -> list[WorkflowRunIndex]:
        async with self._session_factory() as db:
            stmt = select(WorkflowRunRow).order_by(WorkflowRunRow.started_at.desc()).limit(limit)
            if conversation_id is not None:
                stmt = stmt.where(WorkflowRunRow.conversation_id == conversation_id)
            result = await db.execute(stmt)
            return [_to_run(row) for row in result.scalars().all()]

    async def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> WorkflowRunIndex:
        async with self._session_factory() as db:
            stmt = select(WorkflowRunRow).where(WorkflowRunRow.run_id == run_id).with_for_update()
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is None:
                raise RunNotFoundError(run_id)
            if check_run_transition(RunStatus(row.status), status):
                row.status = status
                row.completed_at = func.now()
            if metadata:
                row.metadata_ = {**(row.metadata_ or {}), **metadata}
            row.last_activity_at = func.now()
            await db.commit()
            await db.refresh(row)
            return _to_run(row)

    async def update_run_progress(
        self,
        run_id: str,
        step_index: int,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        async with self._session_factory() as db:
            if metadata:
                stmt = select(WorkflowRunRow).where(WorkflowRunRow.run_id == run_id).with_for_update()
                row = (await db.execute(stmt)).scalar_one_or_none()
                if row is None:
                    raise RunNotFoundError(run_id)
                row.current_step_index = step_index
                row.metadata_ = {**(row.metadata_ or {}), **metadata}
                row.last_activity_at = func.now()
                await db.commit()
                return
            stmt = (
                update(WorkflowRunRow)
                .where(WorkflowRunRow.run_id == run_id)
                .values(current_step_index=step_index, last_activity_at=func.now())
            )
            await db.execute(stmt)
            await db.commit()

    async def touch_run(self, run_id: str) -> None:
        async with self._session_factory() as db:
            stmt = update(WorkflowRunRow).where(WorkflowRunRow.run_id == run_id).values(last_activity_at=func.now())
            await db.execute(stmt)
            await db.commit()

    async def fail_stale_runs(self, inactive_since: datetime, *, reason: str) -> int:
        async with self._session_factory() as db:
            stmt = (
                update(WorkflowRunRow)
                .where(
                    WorkflowRunRow.status == RunStatus.RUNNING,
                    WorkflowRunRow.last_activity_at < inactive_since,
                )
                .values(
                    status=RunStatus.FAILED,
                    completed_at=func.now(),
                    metadata_=WorkflowRunRow.metadata_.op("||")(func.jsonb_build_object("error", reason)),
                )
            )
            result = await db.execute(stmt)
            await db.commit()
            return result.rowcount  # type: ignore[return-value]

    async def append_run_event(self, event: RunEvent) -> None:
        async with self._session_factory() as db:
            db.add(
                WorkflowEventRow(
                    run_id=event.run_id,
                    event_type=event.event_type,
                    step_index=event.step_index,
                    step_name=event.step_name,
                    payload=event.payload,
                )
            )
            await db.commit()

    async def list_run_events(self, run_id: str) -> list[RunEvent]:
        async with self._session_factory() as db:
            stmt = select(WorkflowEventRow).where(WorkflowEventRow.run_id == run_id).order_by(WorkflowEventRow.event_id)
            result = await db.execute(stmt)
            return [_to_event(row) for row in result.scalars().all()]
