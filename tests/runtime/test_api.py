"""HTTP API tests against the app with in-memory services."""

from __future__ import annotations

from pathlib import Path

import pytest
from httpx import AsyncClient

from dockyard.runtime.models.workspace import CodebaseIndex
from dockyard.runtime.services import Services


@pytest.fixture
def step_prompts(git_repo: Path) -> None:
    commands = git_repo / ".dockyard" / "commands"
    commands.mkdir(parents=True)
    (commands / "plan.md").write_text("Plan: {{ user_message }}\n")


def _task_body(codebase: CodebaseIndex, conversation_id: str = "conv-1", workflow_id: str = "7") -> dict:
    return {
        "conversation_id": conversation_id,
        "codebase_id": codebase.codebase_id,
        "workflow_name": "fix-issue",
        "steps": [{"command": "plan"}],
        "user_message": "fix login",
        "workflow_type": "issue",
        "workflow_id": workflow_id,
    }


async def _run_task(http_client: AsyncClient, services: Services, codebase: CodebaseIndex) -> None:
    resp = await http_client.post("/api/tasks/submit", json=_task_body(codebase))
    assert resp.status_code == 202
    assert await services.tasks.wait_until_drained(timeout=10)


async def test_health(http_client: AsyncClient) -> None:
    resp = await http_client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


# ---------------------------------------------------------------------------
# Codebases
# ---------------------------------------------------------------------------


async def test_codebase_registration(http_client: AsyncClient, git_repo: Path) -> None:
    resp = await http_client.post(
        "/api/codebases/create",
        json={"codebase_id": "cb-web", "name": "acme/web", "repo_path": str(git_repo)},
    )
    assert resp.status_code == 201
    assert resp.json()["repo_path"] == str(git_repo.resolve())

    dup = await http_client.post(
        "/api/codebases/create",
        json={"codebase_id": "cb-web", "name": "acme/web", "repo_path": str(git_repo)},
    )
    assert dup.status_code == 409

    resp = await http_client.get("/api/codebases/list")
    assert [c["codebase_id"] for c in resp.json()] == ["cb-web"]

    resp = await http_client.get("/api/codebases/cb-web/get")
    assert resp.json()["name"] == "acme/web"
    assert (await http_client.get("/api/codebases/missing/get")).status_code == 404


async def test_codebase_must_be_a_git_repository(http_client: AsyncClient, tmp_path: Path) -> None:
    resp = await http_client.post("/api/codebases/create", json={"name": "plain", "repo_path": str(tmp_path)})
    assert resp.status_code == 422
    assert "not a git repository" in resp.json()["detail"]


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


async def test_submit_task_runs_workflow(
    http_client: AsyncClient, services: Services, codebase: CodebaseIndex, step_prompts, client
) -> None:
    resp = await http_client.post("/api/tasks/submit", json=_task_body(codebase))
    assert resp.status_code == 202
    assert resp.json() == {"conversation_id": "conv-1", "queued": False}

    assert await services.tasks.wait_until_drained(timeout=10)
    assert client.calls[0]["prompt"].startswith("Plan: fix login")

    runs = (await http_client.get("/api/runs/list", params={"conversation_id": "conv-1"})).json()
    assert len(runs) == 1
    assert runs[0]["status"] == "completed"


async def test_submit_task_validation(http_client: AsyncClient, codebase: CodebaseIndex) -> None:
    body = _task_body(codebase)
    body["steps"] = []
    assert (await http_client.post("/api/tasks/submit", json=body)).status_code == 422

    body = _task_body(codebase)
    body["codebase_id"] = "missing"
    assert (await http_client.post("/api/tasks/submit", json=body)).status_code == 404


async def test_submit_refused_while_shutting_down(
    http_client: AsyncClient, services: Services, codebase: CodebaseIndex
) -> None:
    services.tasks.begin_shutdown()

    resp = await http_client.post("/api/tasks/submit", json=_task_body(codebase))
    assert resp.status_code == 503


async def test_lock_stats(http_client: AsyncClient) -> None:
    resp = await http_client.get("/api/tasks/locks")
    assert resp.status_code == 200
    assert resp.json() == {"active": 0, "waiting": 0, "conversations": []}


async def test_services_not_initialised(http_client: AsyncClient) -> None:
    from dockyard.runtime.app import app

    app.state.services = None
    assert (await http_client.get("/api/tasks/locks")).status_code == 503


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------


async def test_workspace_endpoints(
    http_client: AsyncClient, services: Services, codebase: CodebaseIndex, step_prompts
) -> None:
    await _run_task(http_client, services, codebase)

    workspaces = (await http_client.get("/api/workspaces/list", params={"codebase_id": codebase.codebase_id})).json()
    assert len(workspaces) == 1
    workspace = workspaces[0]
    assert workspace["branch_name"] == "issue-7"
    assert workspace["status"] == "active"

    resp = await http_client.get(f"/api/workspaces/{workspace['workspace_id']}/get")
    assert resp.json()["path"] == workspace["path"]
    assert (await http_client.get("/api/workspaces/missing/get")).status_code == 404

    params = {"codebase_id": codebase.codebase_id}
    breakdown = (await http_client.get("/api/workspaces/breakdown", params=params)).json()
    assert breakdown["active"] == 1
    assert (await http_client.get("/api/workspaces/breakdown", params={"codebase_id": "missing"})).status_code == 404


async def test_remove_workspace(
    http_client: AsyncClient, services: Services, codebase: CodebaseIndex, step_prompts
) -> None:
    await _run_task(http_client, services, codebase)
    workspace = (await http_client.get("/api/workspaces/list")).json()[0]
    (Path(workspace["path"]) / "scratch.txt").write_text("work in progress\n")

    busy = await http_client.post(f"/api/workspaces/{workspace['workspace_id']}/remove")
    assert busy.status_code == 409
    assert Path(workspace["path"]).is_dir()

    resp = await http_client.post(f"/api/workspaces/{workspace['workspace_id']}/remove", json={"force": True})
    assert resp.status_code == 200
    assert resp.json()["status"] == "destroyed"
    assert not Path(workspace["path"]).exists()

    assert (await http_client.get("/api/workspaces/list")).json() == []
    assert len((await http_client.get("/api/workspaces/list", params={"include_destroyed": True})).json()) == 1
    assert (await http_client.post("/api/workspaces/missing/remove")).status_code == 404


async def test_sweep_leaves_active_workspaces(
    http_client: AsyncClient, services: Services, codebase: CodebaseIndex, step_prompts
) -> None:
    await _run_task(http_client, services, codebase)

    resp = await http_client.post("/api/workspaces/sweep", json={"codebase_id": codebase.codebase_id})
    assert resp.status_code == 200
    assert resp.json() == {"removed": [], "skipped": [], "errors": []}
    assert len((await http_client.get("/api/workspaces/list")).json()) == 1


async def test_close_workflow_destroys_its_workspace(
    http_client: AsyncClient, services: Services, codebase: CodebaseIndex, step_prompts
) -> None:
    await _run_task(http_client, services, codebase)
    workspace = (await http_client.get("/api/workspaces/list")).json()[0]
    body = {"codebase_id": codebase.codebase_id, "workflow_type": "issue", "workflow_id": "8"}

    resp = await http_client.post("/api/workspaces/close", json=body)
    assert resp.status_code == 200
    assert resp.json() == {"removed": [], "skipped": [], "errors": []}

    resp = await http_client.post("/api/workspaces/close", json={**body, "workflow_id": "7"})
    assert resp.status_code == 200
    removed = resp.json()["removed"]
    assert [(entry["workspace_id"], entry["reason"]) for entry in removed] == [
        (workspace["workspace_id"], "workflow closed")
    ]
    assert not Path(workspace["path"]).exists()
    assert (await http_client.get("/api/workspaces/list")).json() == []

    missing = await http_client.post("/api/workspaces/close", json={**body, "codebase_id": "missing"})
    assert missing.status_code == 404


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


async def test_run_endpoints(
    http_client: AsyncClient, services: Services, codebase: CodebaseIndex, step_prompts
) -> None:
    await _run_task(http_client, services, codebase)

    run = (await http_client.get("/api/runs/list")).json()[0]
    resp = await http_client.get(f"/api/runs/{run['run_id']}/get")
    assert resp.json()["workflow_name"] == "fix-issue"

    events = (await http_client.get(f"/api/runs/{run['run_id']}/events")).json()
    assert events[0]["event_type"] == "workflow_start"
    assert events[-1]["event_type"] == "workflow_complete"

    assert (await http_client.get("/api/runs/missing/get")).status_code == 404
    assert (await http_client.get("/api/runs/missing/events")).status_code == 404
