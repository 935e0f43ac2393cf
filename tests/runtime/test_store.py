"""Persistence gateway contract tests.

Every test runs against the in-memory gateway and, when Docker is
available (``-m integration``), against PostgreSQL through ``SqlGateway``.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from dockyard.runtime.models.enums import RunEventType, RunStatus, WorkflowType, WorkspaceStatus
from dockyard.runtime.models.run import RunEvent
from dockyard.runtime.store.base import (
    CodebaseNotFoundError,
    DuplicateCodebaseError,
    DuplicateWorkspaceError,
    InvalidTransitionError,
    PersistenceGateway,
    RunAlreadyActiveError,
    RunNotFoundError,
    WorkspaceNotFoundError,
)
from dockyard.runtime.store.memory import InMemoryGateway


@pytest.fixture(params=["memory", pytest.param("sql", marks=pytest.mark.integration)])
def store(request: pytest.FixtureRequest) -> PersistenceGateway:
    if request.param == "memory":
        return InMemoryGateway()
    return request.getfixturevalue("sql_gateway")


async def _workspace(store: PersistenceGateway, path: str = "/w/acme/app/issue-1", workflow_id: str = "1"):
    return await store.create_workspace(
        path=path,
        branch_name=path.rsplit("/", 1)[-1],
        codebase_id="cb-app",
        workflow_type=WorkflowType.ISSUE,
        workflow_id=workflow_id,
        metadata={"base_sha": "abc123"},
    )


@pytest.fixture
async def codebase(store: PersistenceGateway):
    return await store.create_codebase(codebase_id="cb-app", name="acme/app", repo_path="/repos/acme/app")


# ---------------------------------------------------------------------------
# Codebases
# ---------------------------------------------------------------------------


async def test_codebase_crud(store: PersistenceGateway) -> None:
    created = await store.create_codebase(
        codebase_id="cb-1",
        name="acme/web",
        repo_path="/repos/acme/web",
        default_branch="develop",
        copy_files=[".env.local"],
    )
    assert created.created_at is not None

    fetched = await store.get_codebase("cb-1")
    assert fetched.default_branch == "develop"
    assert fetched.copy_files == [".env.local"]
    assert [c.codebase_id for c in await store.list_codebases()] == ["cb-1"]

    with pytest.raises(DuplicateCodebaseError):
        await store.create_codebase(codebase_id="cb-1", name="again", repo_path="/repos/x")
    with pytest.raises(CodebaseNotFoundError):
        await store.get_codebase("missing")


async def test_codebase_id_is_generated(store: PersistenceGateway) -> None:
    created = await store.create_codebase(name="acme/api", repo_path="/repos/acme/api")
    assert created.codebase_id


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------


async def test_workspace_lifecycle(store: PersistenceGateway, codebase) -> None:
    workspace = await _workspace(store)
    assert workspace.status == WorkspaceStatus.ACTIVE
    assert workspace.metadata == {"base_sha": "abc123"}
    assert workspace.last_activity_at is not None
    assert await store.count_active_workspaces("cb-app") == 1

    stale = await store.update_workspace_status(workspace.workspace_id, WorkspaceStatus.STALE)
    assert stale.status == WorkspaceStatus.STALE
    assert await store.count_active_workspaces("cb-app") == 1

    destroyed = await store.update_workspace_status(workspace.workspace_id, WorkspaceStatus.DESTROYED)
    assert destroyed.status == WorkspaceStatus.DESTROYED
    assert destroyed.destroyed_at is not None
    assert await store.count_active_workspaces("cb-app") == 0


async def test_workspace_status_never_moves_backwards(store: PersistenceGateway, codebase) -> None:
    workspace = await _workspace(store)
    await store.update_workspace_status(workspace.workspace_id, WorkspaceStatus.MERGED)

    with pytest.raises(InvalidTransitionError):
        await store.update_workspace_status(workspace.workspace_id, WorkspaceStatus.ACTIVE)
    with pytest.raises(InvalidTransitionError):
        await store.update_workspace_status(workspace.workspace_id, WorkspaceStatus.STALE)

    # Repeating the current status is a no-op.
    again = await store.update_workspace_status(workspace.workspace_id, WorkspaceStatus.MERGED)
    assert again.status == WorkspaceStatus.MERGED

    await store.update_workspace_status(workspace.workspace_id, WorkspaceStatus.DESTROYED)
    with pytest.raises(InvalidTransitionError):
        await store.update_workspace_status(workspace.workspace_id, WorkspaceStatus.ACTIVE)


async def test_live_path_is_unique(store: PersistenceGateway, codebase) -> None:
    first = await _workspace(store)

    with pytest.raises(DuplicateWorkspaceError):
        await _workspace(store)

    await store.update_workspace_status(first.workspace_id, WorkspaceStatus.DESTROYED)
    second = await _workspace(store)
    assert second.workspace_id != first.workspace_id


async def test_workspace_queries(store: PersistenceGateway, codebase) -> None:
    first = await _workspace(store, "/w/acme/app/issue-1", "1")
    second = await _workspace(store, "/w/acme/app/issue-2", "2")
    await store.update_workspace_status(second.workspace_id, WorkspaceStatus.DESTROYED)

    live = await store.list_live_workspaces("cb-app")
    assert [w.workspace_id for w in live] == [first.workspace_id]
    assert await store.list_live_workspaces("other") == []

    assert len(await store.list_workspaces()) == 1
    assert len(await store.list_workspaces(include_destroyed=True)) == 2

    found = await store.find_live_workspace("cb-app", WorkflowType.ISSUE, "1")
    assert found is not None and found.workspace_id == first.workspace_id
    assert await store.find_live_workspace("cb-app", WorkflowType.ISSUE, "2") is None
    assert await store.find_live_workspace("cb-app", WorkflowType.PR, "1") is None

    await store.touch_workspace(first.workspace_id)
    with pytest.raises(WorkspaceNotFoundError):
        await store.get_workspace("missing")


# ---------------------------------------------------------------------------
# Workflow runs
# ---------------------------------------------------------------------------


async def test_one_running_run_per_conversation(store: PersistenceGateway) -> None:
    run = await store.create_run(workflow_name="fix-issue", conversation_id="conv-1", user_message="fix it")
    assert run.status == RunStatus.RUNNING
    assert run.current_step_index == 0
    assert (await store.get_active_run("conv-1")).run_id == run.run_id

    with pytest.raises(RunAlreadyActiveError):
        await store.create_run(workflow_name="fix-issue", conversation_id="conv-1")

    other = await store.create_run(workflow_name="fix-issue", conversation_id="conv-2")
    assert other.run_id != run.run_id

    await store.update_run_status(run.run_id, RunStatus.COMPLETED)
    assert await store.get_active_run("conv-1") is None
    next_run = await store.create_run(workflow_name="fix-issue", conversation_id="conv-1")
    assert next_run.status == RunStatus.RUNNING


async def test_run_status_and_progress(store: PersistenceGateway) -> None:
    run = await store.create_run(workflow_name="fix-issue", conversation_id="conv-1", metadata={"source": "github"})

    await store.update_run_progress(run.run_id, 2, metadata={"iteration_count": 2})
    await store.touch_run(run.run_id)
    progressed = await store.get_run(run.run_id)
    assert progressed.current_step_index == 2
    assert progressed.metadata == {"source": "github", "iteration_count": 2}

    failed = await store.update_run_status(run.run_id, RunStatus.FAILED, metadata={"error": "boom"})
    assert failed.status == RunStatus.FAILED
    assert failed.completed_at is not None
    assert failed.metadata == {"source": "github", "iteration_count": 2, "error": "boom"}

    with pytest.raises(InvalidTransitionError):
        await store.update_run_status(run.run_id, RunStatus.RUNNING)
    with pytest.raises(InvalidTransitionError):
        await store.update_run_status(run.run_id, RunStatus.COMPLETED)
    with pytest.raises(RunNotFoundError):
        await store.get_run("missing")


async def test_list_runs(store: PersistenceGateway) -> None:
    first = await store.create_run(workflow_name="a", conversation_id="conv-1")
    await store.update_run_status(first.run_id, RunStatus.COMPLETED)
    await store.create_run(workflow_name="b", conversation_id="conv-1")
    await store.create_run(workflow_name="c", conversation_id="conv-2")

    assert len(await store.list_runs()) == 3
    assert {r.workflow_name for r in await store.list_runs(conversation_id="conv-1")} == {"a", "b"}
    assert len(await store.list_runs(limit=1)) == 1


async def test_workspace_has_running_run(store: PersistenceGateway, codebase) -> None:
    workspace = await _workspace(store)
    assert not await store.workspace_has_running_run(workspace.workspace_id)

    run = await store.create_run(
        workflow_name="fix-issue",
        conversation_id="conv-1",
        codebase_id="cb-app",
        workspace_id=workspace.workspace_id,
    )
    assert await store.workspace_has_running_run(workspace.workspace_id)

    await store.update_run_status(run.run_id, RunStatus.COMPLETED)
    assert not await store.workspace_has_running_run(workspace.workspace_id)


async def test_fail_stale_runs(store: PersistenceGateway) -> None:
    run = await store.create_run(workflow_name="fix-issue", conversation_id="conv-1")
    done = await store.create_run(workflow_name="fix-issue", conversation_id="conv-2")
    await store.update_run_status(done.run_id, RunStatus.COMPLETED)

    assert await store.fail_stale_runs(datetime.now(tz=UTC) - timedelta(hours=1), reason="abandoned") == 0
    assert await store.fail_stale_runs(datetime.now(tz=UTC) + timedelta(minutes=1), reason="abandoned") == 1

    failed = await store.get_run(run.run_id)
    assert failed.status == RunStatus.FAILED
    assert failed.metadata["error"] == "abandoned"
    assert (await store.get_run(done.run_id)).status == RunStatus.COMPLETED


async def test_run_events_are_append_only_and_ordered(store: PersistenceGateway) -> None:
    run = await store.create_run(workflow_name="fix-issue", conversation_id="conv-1")

    await store.append_run_event(RunEvent(run_id=run.run_id, event_type=RunEventType.WORKFLOW_START))
    await store.append_run_event(
        RunEvent(run_id=run.run_id, event_type=RunEventType.STEP_START, step_index=0, step_name="plan")
    )
    await store.append_run_event(
        RunEvent(run_id=run.run_id, event_type=RunEventType.ASSISTANT, step_index=0, payload={"content": "hi"})
    )

    events = await store.list_run_events(run.run_id)
    assert [e.event_type for e in events] == [
        RunEventType.WORKFLOW_START,
        RunEventType.STEP_START,
        RunEventType.ASSISTANT,
    ]
    assert all(e.event_id is not None and e.created_at is not None for e in events)
    assert events[0].event_id < events[1].event_id < events[2].event_id
    assert events[2].payload == {"content": "hi"}
    assert await store.list_run_events("other") == []
