"""Shared fixtures for runtime tests.

Git-backed tests run against a throwaway repository created with the real
``git`` binary; they are skipped when it is not installed.  Everything else
runs on the in-memory gateway with scripted completion clients and a
recording notification sink.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import subprocess
from collections.abc import AsyncIterator, Callable
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from dockyard.runtime.execution.completion import CompletionEvent, CompletionEventType
from dockyard.runtime.execution.coordinator import WorkflowRunCoordinator
from dockyard.runtime.execution.notify import Notifier
from dockyard.runtime.execution.prompts import PromptResolver
from dockyard.runtime.isolation.eviction import EvictionScheduler
from dockyard.runtime.isolation.provider import WorkspaceProvider
from dockyard.runtime.models.workspace import CodebaseIndex
from dockyard.runtime.services import Services, build_services
from dockyard.runtime.settings import DockyardSettings
from dockyard.runtime.store.memory import InMemoryGateway

GitRunner = Callable[..., str]

# Commits are backdated so the repository's own history never counts as
# recent activity.
_OLD_DATE = "2020-01-01T00:00:00+00:00"


# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------


@pytest.fixture
def git() -> GitRunner:
    """Run a git command synchronously and return its stdout."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    env = {
        **os.environ,
        "GIT_AUTHOR_NAME": "Test",
        "GIT_AUTHOR_EMAIL": "test@example.com",
        "GIT_COMMITTER_NAME": "Test",
        "GIT_COMMITTER_EMAIL": "test@example.com",
        "GIT_AUTHOR_DATE": _OLD_DATE,
        "GIT_COMMITTER_DATE": _OLD_DATE,
    }

    def _run(*args: str, cwd: str | Path) -> str:
        result = subprocess.run(
            ["git", "-c", "commit.gpgsign=false", *args],
            cwd=str(cwd),
            env=env,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()

    return _run


@pytest.fixture
def git_repo(tmp_path: Path, git: GitRunner) -> Path:
    """A canonical repository at ``{tmp}/repos/acme/app`` with one commit on ``main``."""
    repo = tmp_path / "repos" / "acme" / "app"
    repo.mkdir(parents=True)
    git("init", "-b", "main", cwd=repo)
    (repo / "README.md").write_text("# app\n")
    (repo / ".gitignore").write_text(".env\n.dockyard/\n")
    git("add", ".", cwd=repo)
    git("commit", "-m", "initial", cwd=repo)
    return repo


@pytest.fixture
def commit_file(git: GitRunner) -> Callable[..., str]:
    """Write and commit one file in a checkout; returns the new HEAD sha."""

    def _commit(path: str | Path, name: str, content: str = "change\n") -> str:
        (Path(path) / name).write_text(content)
        git("add", name, cwd=path)
        git("commit", "-m", f"add {name}", cwd=path)
        return git("rev-parse", "HEAD", cwd=path)

    return _commit


# ---------------------------------------------------------------------------
# Runtime components
# ---------------------------------------------------------------------------


@pytest.fixture
def gateway() -> InMemoryGateway:
    return InMemoryGateway()


@pytest.fixture
def worktrees_root(tmp_path: Path) -> Path:
    return tmp_path / "worktrees"


@pytest.fixture
def provider(worktrees_root: Path) -> WorkspaceProvider:
    return WorkspaceProvider(worktrees_root, git_timeout=30.0)


@pytest.fixture
async def codebase(gateway: InMemoryGateway, git_repo: Path) -> CodebaseIndex:
    return await gateway.create_codebase(codebase_id="cb-app", name="acme/app", repo_path=str(git_repo))


@pytest.fixture
def scheduler(gateway: InMemoryGateway, provider: WorkspaceProvider) -> EvictionScheduler:
    return EvictionScheduler(gateway, provider, max_per_codebase=3, stale_threshold_days=14)


class RecordingSink:
    """Notification sink that keeps every message; optionally fails."""

    def __init__(self, *, fail: bool = False) -> None:
        self.messages: list[tuple[str, str]] = []
        self.fail = fail

    async def send_message(self, conversation_id: str, text: str) -> None:
        if self.fail:
            msg = "chat platform unavailable"
            raise ConnectionError(msg)
        self.messages.append((conversation_id, text))

    def texts(self, conversation_id: str | None = None) -> list[str]:
        return [text for cid, text in self.messages if conversation_id is None or cid == conversation_id]


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def notifier(sink: RecordingSink) -> Notifier:
    return Notifier(sink)


class ScriptedClient:
    """Completion client that answers each step with a short reply.

    ``errors`` maps a 0-based call number to the exception raised on that
    call, and ``replies`` to the text answered instead of ``reply N``.  When
    ``gate`` is set, every call waits on it before answering.
    """

    def __init__(self, *, errors: dict[int, Exception] | None = None, gate: asyncio.Event | None = None) -> None:
        self.calls: list[dict] = []
        self.errors = dict(errors or {})
        self.replies: dict[int, str] = {}
        self.gate = gate
        self.started = asyncio.Event()

    async def stream(
        self,
        prompt: str,
        *,
        cwd: str | Path,
        session_handle: str | None = None,
    ) -> AsyncIterator[CompletionEvent]:
        call = len(self.calls)
        self.calls.append({"prompt": prompt, "cwd": str(cwd), "session_handle": session_handle})
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if call in self.errors:
            raise self.errors[call]
        yield CompletionEvent(type=CompletionEventType.TOOL, tool_name="read_file", tool_args={"path": "README.md"})
        yield CompletionEvent(type=CompletionEventType.TEXT, text=self.replies.get(call, f"reply {call + 1}"))
        yield CompletionEvent(type=CompletionEventType.RESULT, session_handle=f"session-{call + 1}")


@pytest.fixture
def client() -> ScriptedClient:
    return ScriptedClient()


@pytest.fixture
def prompt_workspace(tmp_path: Path) -> Path:
    """A workspace directory carrying ``plan``, ``implement`` and ``review`` step prompts."""
    path = tmp_path / "ws"
    commands = path / ".dockyard" / "commands"
    commands.mkdir(parents=True)
    (commands / "plan.md").write_text("Plan the change for: {{ user_message }}\n")
    (commands / "implement.md").write_text("Implement the plan.\n")
    (commands / "review.md").write_text("Review run {{ workflow_id }}.\n")
    return path


@pytest.fixture
def coordinator(gateway: InMemoryGateway, client: ScriptedClient, notifier: Notifier) -> WorkflowRunCoordinator:
    return WorkflowRunCoordinator(gateway, client, notifier, PromptResolver([".dockyard/commands"]), step_timeout=5.0)


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@pytest.fixture
def services(
    gateway: InMemoryGateway,
    worktrees_root: Path,
    sink: RecordingSink,
    client: ScriptedClient,
) -> Services:
    settings = DockyardSettings(worktrees_dir=str(worktrees_root), max_workspaces_per_codebase=3)
    return build_services(settings, gateway, sink=sink, client=client)


@pytest.fixture
async def http_client(services: Services) -> AsyncIterator[AsyncClient]:
    """Async HTTP client wired to the app with in-memory services.

    The app lifespan does NOT run under ``ASGITransport``, so the services
    are pre-set on ``app.state``.
    """
    from dockyard.runtime.app import app

    app.state.services = services

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await services.tasks.wait_until_drained(timeout=10)
    app.state.services = None
