"""Tests for the task handler: lock, workspace allocation and run, end to end."""

from __future__ import annotations

import asyncio
import shutil
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from dockyard.runtime.execution.tasks import ShuttingDownError, TaskHandler
from dockyard.runtime.isolation.allocator import WorkspaceAllocator
from dockyard.runtime.isolation.eviction import EvictionScheduler
from dockyard.runtime.locks import ConversationLock
from dockyard.runtime.models.api import TaskRequest
from dockyard.runtime.models.enums import RunStatus, TaskStatus, WorkflowType, WorkspaceStatus
from dockyard.runtime.models.run import WorkflowStep
from dockyard.runtime.models.workspace import CodebaseIndex


@pytest.fixture
def step_prompts(git_repo: Path) -> None:
    """Untracked step prompts in the canonical repo, copied into every workspace."""
    commands = git_repo / ".dockyard" / "commands"
    commands.mkdir(parents=True)
    (commands / "plan.md").write_text("Plan: {{ user_message }}\n")
    (commands / "implement.md").write_text("Implement it.\n")


@pytest.fixture
def handler(gateway, provider, scheduler, notifier, coordinator, step_prompts) -> TaskHandler:
    allocator = WorkspaceAllocator(gateway, provider, scheduler, notifier, stale_threshold_days=14)
    return TaskHandler(ConversationLock(), allocator, coordinator, notifier)


def _task(
    codebase: CodebaseIndex,
    workflow_id: str = "42",
    conversation_id: str = "conv-1",
    **kwargs,
) -> TaskRequest:
    return TaskRequest(
        conversation_id=conversation_id,
        codebase_id=codebase.codebase_id,
        workflow_name="fix-issue",
        steps=[WorkflowStep(command="plan"), WorkflowStep(command="implement")],
        user_message="fix login",
        workflow_type=WorkflowType.ISSUE,
        workflow_id=workflow_id,
        **kwargs,
    )


async def test_task_runs_in_new_workspace(handler, gateway, client, scheduler, codebase) -> None:
    outcome = await handler.handle(_task(codebase))

    assert outcome.status == TaskStatus.COMPLETED
    assert outcome.workspace_id is not None
    workspace = await gateway.get_workspace(outcome.workspace_id)
    assert workspace.status == WorkspaceStatus.ACTIVE
    assert workspace.branch_name == "issue-42"
    assert Path(workspace.path).is_dir()
    assert workspace.metadata["base_sha"]
    assert Path(workspace.path) != Path(codebase.repo_path)

    assert all(call["cwd"] == workspace.path for call in client.calls)
    assert client.calls[0]["prompt"].startswith("Plan: fix login")
    run = await gateway.get_run(outcome.run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.workspace_id == workspace.workspace_id
    assert not scheduler.is_leased(workspace.workspace_id)


async def test_same_workflow_reuses_workspace(handler, gateway, codebase) -> None:
    first = await handler.handle(_task(codebase))
    second = await handler.handle(_task(codebase))

    assert second.status == TaskStatus.COMPLETED
    assert second.workspace_id == first.workspace_id
    assert await gateway.count_active_workspaces(codebase.codebase_id) == 1


async def test_vanished_workspace_is_replaced(handler, gateway, codebase) -> None:
    first = await handler.handle(_task(codebase))
    shutil.rmtree((await gateway.get_workspace(first.workspace_id)).path)

    second = await handler.handle(_task(codebase))

    assert second.status == TaskStatus.COMPLETED
    assert second.workspace_id != first.workspace_id
    assert (await gateway.get_workspace(first.workspace_id)).status == WorkspaceStatus.DESTROYED
    assert await gateway.count_active_workspaces(codebase.codebase_id) == 1


async def test_task_is_blocked_at_workspace_limit(handler, gateway, sink, codebase) -> None:
    for i in range(3):
        outcome = await handler.handle(_task(codebase, workflow_id=str(i), conversation_id=f"conv-{i}"))
        assert outcome.status == TaskStatus.COMPLETED

    blocked = await handler.handle(_task(codebase, workflow_id="99", conversation_id="conv-99"))

    assert blocked.status == TaskStatus.BLOCKED
    assert blocked.run_id is None
    assert await gateway.count_active_workspaces(codebase.codebase_id) == 3
    assert await gateway.list_runs(conversation_id="conv-99") == []
    message = sink.texts("conv-99")[-1]
    assert message.startswith("Workspace limit reached (3/3) for **acme/app**.")
    assert "• 3 active" in message


async def test_provisioning_failure_fails_the_task(handler, gateway, sink, client, tmp_path) -> None:
    not_a_repo = tmp_path / "plain" / "dir"
    not_a_repo.mkdir(parents=True)
    codebase = await gateway.create_codebase(codebase_id="cb-plain", name="plain", repo_path=str(not_a_repo))

    outcome = await handler.handle(_task(codebase))

    assert outcome.status == TaskStatus.FAILED
    assert client.calls == []
    assert await gateway.list_runs() == []
    assert sink.texts()[-1].endswith("Execution blocked to prevent changes to the shared repository.")


async def test_unexpected_error_is_contained(handler, gateway, sink, codebase, monkeypatch) -> None:
    async def broken(*args, **kwargs) -> None:
        msg = "index corrupted"
        raise RuntimeError(msg)

    monkeypatch.setattr(gateway, "find_live_workspace", broken)

    outcome = await handler.handle(_task(codebase))

    assert outcome.status == TaskStatus.ERROR
    assert outcome.detail == "index corrupted"
    assert "Something went wrong" in sink.texts()[-1]


async def test_tasks_for_one_conversation_run_one_after_another(handler, gateway, client, codebase) -> None:
    client.gate = asyncio.Event()

    first = handler.submit(_task(codebase))
    await asyncio.sleep(0)
    second = handler.submit(_task(codebase))
    assert not first.queued
    assert second.queued
    assert handler.in_flight == 2

    await client.started.wait()
    # The second task waits on the lock, not on the run guard.
    assert len(await gateway.list_runs(conversation_id="conv-1")) == 1

    client.gate.set()
    assert await handler.wait_until_drained(timeout=10)
    assert handler.in_flight == 0

    runs = await gateway.list_runs(conversation_id="conv-1")
    assert len(runs) == 2
    assert {run.status for run in runs} == {RunStatus.COMPLETED}


async def test_shutdown_refuses_new_tasks(handler, codebase) -> None:
    handler.begin_shutdown()

    assert handler.is_shutting_down
    with pytest.raises(ShuttingDownError):
        handler.submit(_task(codebase))
    assert await handler.wait_until_drained(timeout=1)


async def test_concurrent_conversations_never_exceed_the_limit(
    gateway, provider, notifier, coordinator, codebase, step_prompts
) -> None:
    scheduler = EvictionScheduler(gateway, provider, max_per_codebase=1, stale_threshold_days=14)
    codebase_locks: dict[str, asyncio.Lock] = {}
    allocator = WorkspaceAllocator(gateway, provider, scheduler, notifier, codebase_locks=codebase_locks)
    handler = TaskHandler(ConversationLock(), allocator, coordinator, notifier)

    outcomes = await asyncio.gather(
        handler.handle(_task(codebase, workflow_id="1", conversation_id="conv-1")),
        handler.handle(_task(codebase, workflow_id="2", conversation_id="conv-2")),
    )

    assert sorted(outcome.status for outcome in outcomes) == sorted([TaskStatus.COMPLETED, TaskStatus.BLOCKED])
    assert await gateway.count_active_workspaces(codebase.codebase_id) == 1
    assert len(await gateway.list_workspaces(include_destroyed=True)) == 1
    assert list(codebase_locks) == [codebase.codebase_id]


async def test_resolved_workspace_is_leased_until_released(
    gateway, provider, scheduler, notifier, codebase, step_prompts
) -> None:
    allocator = WorkspaceAllocator(gateway, provider, scheduler, notifier)
    workspace = await allocator.resolve(_task(codebase))

    # No run exists yet; even a forced sweep far in the future leaves it alone.
    report = await scheduler.sweep(now=datetime.now(tz=UTC) + timedelta(days=30), force=True)
    assert [entry.reason for entry in report.skipped] == ["in use"]
    assert Path(workspace.path).is_dir()

    reused = await allocator.resolve(_task(codebase))
    assert reused.workspace_id == workspace.workspace_id

    allocator.release(workspace)
    assert scheduler.is_leased(workspace.workspace_id)
    allocator.release(reused)
    assert not scheduler.is_leased(workspace.workspace_id)

    report = await scheduler.sweep(now=datetime.now(tz=UTC) + timedelta(days=30))
    assert [entry.workspace_id for entry in report.removed] == [workspace.workspace_id]


async def test_cancel_remaining_stops_unfinished_tasks(handler, gateway, client, scheduler, codebase) -> None:
    client.gate = asyncio.Event()
    handler.submit(_task(codebase))
    await client.started.wait()

    assert not await handler.wait_until_drained(timeout=0.05)
    assert await handler.cancel_remaining() == 1

    assert handler.in_flight == 0
    assert await handler.wait_until_drained(timeout=1)
    workspace = (await gateway.list_workspaces())[0]
    assert not scheduler.is_leased(workspace.workspace_id)
    assert await handler.cancel_remaining() == 0
