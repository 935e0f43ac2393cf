"""Git worktree provider: creates and destroys isolated workspaces.

Each workspace is a ``git worktree`` of a canonical repository, checked out
on its own branch under::

    {worktrees_root}/{owner}/{repo}/{branch}

The provider converges on a desired state rather than assuming a clean
slate.  The following conditions are all expected, and all are handled:

- an existing worktree at the target path (adopted);
- an orphan directory at the target path (deleted first);
- a stale branch left over from an incomplete cleanup (deleted once, then
  the add is retried);
- a worktree that is already gone on removal.

The provider never consults capacity limits.  That is the eviction
scheduler's job.
"""

from __future__ import annotations

import hashlib
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from pathlib import Path

from anyio import to_thread
from loguru import logger

from dockyard.runtime.isolation.copy import DEFAULT_COPY_FILES, copy_auxiliary_files, merge_copy_lists
from dockyard.runtime.isolation.git import DEFAULT_GIT_TIMEOUT, GitCommandError, GitResult, run_git
from dockyard.runtime.models.enums import GitOutcome, WorkflowType
from dockyard.runtime.outcomes import CopyReport, EffectOutcome


class WorkspaceCreateError(RuntimeError):
    """A workspace could not be created."""


class WorkspaceDestroyError(RuntimeError):
    """``git worktree remove`` failed for a reason other than the path being gone."""

    def __init__(self, message: str, *, outcome: GitOutcome = GitOutcome.FAILED) -> None:
        super().__init__(message)
        self.outcome = outcome


@dataclass
class WorkspaceRequest:
    """What to check out, and for which workflow."""

    codebase_id: str
    repo_path: str
    workflow_type: WorkflowType
    workflow_id: str
    pr_number: int | None = None
    pr_sha: str | None = None
    pr_branch: str | None = None
    is_fork_pr: bool = False
    copy_files: list[str] = field(default_factory=list)


@dataclass
class ProvisionedWorkspace:
    path: str
    branch_name: str
    base_sha: str | None = None
    adopted: bool = False
    copy_report: CopyReport | None = None

    def as_metadata(self) -> dict:
        metadata: dict = {"base_sha": self.base_sha, "adopted": self.adopted}
        if self.copy_report is not None:
            metadata["copy"] = self.copy_report.as_metadata()
        return metadata


@dataclass
class DestroyOutcome:
    path: str
    already_gone: bool = False
    """The worktree (or its directory) no longer existed when destroy ran."""
    directory_exists: bool = False
    """True if the directory survived destroy; such a workspace is not destroyed."""
    branch: EffectOutcome | None = None


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------

_SLUG_INVALID = re.compile(r"[^a-z0-9]+")


def slugify(value: str, *, max_length: int = 50) -> str:
    slug = _SLUG_INVALID.sub("-", value.lower()).strip("-")
    return slug[:max_length].rstrip("-") or "task"


def short_hash(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:8]


def branch_name_for(request: WorkspaceRequest) -> str:
    """Deterministic branch name for a request.

    Same-repo PRs check out the PR's own branch so pushes land on the PR;
    fork PRs get a synthetic ``pr-{n}-review`` branch.
    """
    workflow_type = request.workflow_type
    if workflow_type == WorkflowType.ISSUE:
        return f"issue-{request.workflow_id}"
    if workflow_type == WorkflowType.PR:
        if request.pr_branch and not request.is_fork_pr:
            return request.pr_branch
        return f"pr-{request.pr_number or request.workflow_id}-review"
    if workflow_type == WorkflowType.REVIEW:
        return f"review-{request.workflow_id}"
    if workflow_type == WorkflowType.THREAD:
        return f"thread-{short_hash(request.workflow_id)}"
    if workflow_type == WorkflowType.TASK:
        return f"task-{slugify(request.workflow_id)}"
    msg = f"Unsupported workflow type: {workflow_type}"
    raise ValueError(msg)


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class WorkspaceProvider:
    """Creates and destroys branch-backed worktrees via async git calls.

    Parameters
    ----------
    worktrees_root:
        Directory under which all workspaces are created.
    git_timeout:
        Upper bound in seconds for every git subprocess call.
    copy_files:
        Service-wide auxiliary paths copied into every new workspace, in
        addition to ``DEFAULT_COPY_FILES`` and the request's own list.
    """

    def __init__(
        self,
        worktrees_root: str | Path,
        *,
        git_timeout: float = DEFAULT_GIT_TIMEOUT,
        copy_files: list[str] | None = None,
    ) -> None:
        self._root = Path(worktrees_root).expanduser().resolve()
        self._git_timeout = git_timeout
        self._copy_files = list(copy_files or [])

    @property
    def worktrees_root(self) -> Path:
        return self._root

    async def _git(self, *args: str, cwd: str | Path, check: bool = True) -> GitResult:
        return await run_git(*args, cwd=cwd, timeout=self._git_timeout, check=check)

    def workspace_path(self, request: WorkspaceRequest, branch_name: str) -> Path:
        """``{root}/{owner}/{repo}/{branch}`` from the last two repo path parts."""
        parts = Path(request.repo_path).resolve().parts
        owner = parts[-2] if len(parts) >= 2 else "_"
        return self._root / owner / parts[-1] / branch_name

    # -- Create ----------------------------------------------------------------

    async def create(self, request: WorkspaceRequest) -> ProvisionedWorkspace:
        """Create (or adopt) the workspace for *request*.

        Raises ``WorkspaceCreateError`` if git cannot produce a worktree.
        """
        branch = branch_name_for(request)
        path = self.workspace_path(request, branch)

        if await self.is_worktree(path):
            logger.info("Adopting existing worktree at {} (branch={})", path, branch)
            return ProvisionedWorkspace(
                path=str(path),
                branch_name=branch,
                base_sha=await self._head_sha(path),
                adopted=True,
            )

        await self._remove_orphan_directory(path)
        # A registered-but-missing worktree also blocks ``worktree add``.
        await self.prune(request.repo_path)
        await to_thread.run_sync(partial(path.parent.mkdir, parents=True, exist_ok=True))

        try:
            if request.workflow_type == WorkflowType.PR:
                await self._create_for_pr(request, path, branch)
            else:
                await self._add_worktree_with_stale_retry(request.repo_path, path, branch)
        except GitCommandError as exc:
            msg = f"Failed to create workspace {path} on branch {branch}: {exc.stderr or exc}"
            raise WorkspaceCreateError(msg) from exc

        logger.info("Created worktree {} (branch={})", path, branch)
        workspace = ProvisionedWorkspace(path=str(path), branch_name=branch, base_sha=await self._head_sha(path))
        workspace.copy_report = await self.copy_auxiliary_files(request.repo_path, path, request.copy_files)
        return workspace

    async def _add_worktree_with_stale_retry(
        self,
        repo_path: str,
        path: Path,
        branch: str,
        base_ref: str | None = None,
    ) -> None:
        args = ["worktree", "add", "-b", branch, str(path)]
        if base_ref:
            args.append(base_ref)
        try:
            await self._git(*args, cwd=repo_path)
        except GitCommandError as exc:
            if not exc.is_outcome(GitOutcome.BRANCH_EXISTS):
                raise
            logger.info("Branch {} already exists (stale), deleting and retrying", branch)
            await self._git("branch", "-D", branch, cwd=repo_path)
            await self._git(*args, cwd=repo_path)

    async def _create_for_pr(self, request: WorkspaceRequest, path: Path, branch: str) -> None:
        repo = request.repo_path
        if request.pr_branch and not request.is_fork_pr:
            await self._git("fetch", "origin", request.pr_branch, cwd=repo)
            try:
                await self._git("worktree", "add", "-b", branch, str(path), f"origin/{request.pr_branch}", cwd=repo)
            except GitCommandError as exc:
                if not exc.is_outcome(GitOutcome.BRANCH_EXISTS):
                    raise
                # The PR's own branch is never treated as stale.
                await self._git("worktree", "add", str(path), branch, cwd=repo)
            upstream = f"origin/{request.pr_branch}"
            tracking = await self._git("branch", "--set-upstream-to", upstream, cwd=path, check=False)
            if not tracking.ok:
                logger.warning("Could not set upstream for {}: {}", branch, tracking.stderr.strip())
            return

        number = request.pr_number or request.workflow_id
        await self._git("fetch", "origin", f"pull/{number}/head", cwd=repo)
        await self._add_worktree_with_stale_retry(repo, path, branch, request.pr_sha or "FETCH_HEAD")

    async def _remove_orphan_directory(self, path: Path) -> None:
        """Delete *path* if it exists without being a worktree.

        ``git worktree add`` refuses an existing target directory, so this is
        required before every add.
        """
        if not await to_thread.run_sync(path.exists):
            return
        logger.warning("Removing orphan directory at {} (not a worktree)", path)
        await to_thread.run_sync(partial(_rmtree, path))

    # -- Destroy ---------------------------------------------------------------

    async def destroy(
        self,
        path: str | Path,
        *,
        repo_path: str,
        force: bool = False,
        branch_name: str | None = None,
    ) -> DestroyOutcome:
        """Remove the worktree at *path*, any leftover directory and its branch.

        Idempotent: destroying an already-destroyed workspace succeeds.
        Raises ``WorkspaceDestroyError`` if git refuses the removal for a
        reason other than the worktree being gone (e.g. uncommitted changes
        without *force*).
        """
        path = Path(path)
        outcome = DestroyOutcome(path=str(path))

        if await to_thread.run_sync(path.exists):
            args = ["worktree", "remove"]
            if force:
                args.append("--force")
            args.append(str(path))
            try:
                await self._git(*args, cwd=repo_path)
            except GitCommandError as exc:
                if not exc.is_outcome(GitOutcome.PATH_MISSING):
                    msg = f"Failed to remove worktree {path}: {exc.stderr or exc}"
                    raise WorkspaceDestroyError(msg, outcome=exc.outcome) from exc
                logger.info("Worktree {} already removed", path)
                outcome.already_gone = True
        else:
            logger.info("Worktree path {} already removed", path)
            outcome.already_gone = True

        outcome.directory_exists = not await self._remove_leftovers(path)
        await self.prune(repo_path)

        if branch_name:
            outcome.branch = await self.delete_branch(repo_path, branch_name)
        return outcome

    async def _remove_leftovers(self, path: Path) -> bool:
        """Force-delete whatever git left behind.  Returns True if *path* is gone."""
        if not await to_thread.run_sync(path.exists):
            return True
        logger.info("Cleaning remaining directory at {}", path)
        try:
            await to_thread.run_sync(partial(_rmtree, path))
        except OSError as exc:
            logger.error("Failed to clean remaining directory at {}: {}", path, exc)
        return not await to_thread.run_sync(path.exists)

    async def prune(self, repo_path: str) -> EffectOutcome:
        """Drop worktree metadata whose directories no longer exist."""
        try:
            await self._git("worktree", "prune", cwd=repo_path)
        except GitCommandError as exc:
            logger.warning("git worktree prune failed in {}: {}", repo_path, exc.stderr)
            return EffectOutcome.failure(exc.stderr)
        return EffectOutcome.success()

    async def delete_branch(self, repo_path: str, branch_name: str) -> EffectOutcome:
        """Delete *branch_name*.  Best-effort: logs and reports, never raises."""
        try:
            await self._git("branch", "-D", branch_name, cwd=repo_path)
        except GitCommandError as exc:
            if exc.is_outcome(GitOutcome.BRANCH_MISSING):
                logger.info("Branch {} already deleted", branch_name)
                return EffectOutcome.success("already deleted")
            if exc.is_outcome(GitOutcome.BRANCH_CHECKED_OUT):
                logger.warning("Cannot delete branch {}: checked out elsewhere", branch_name)
            else:
                logger.error("Unexpected error deleting branch {}: {}", branch_name, exc.stderr)
            return EffectOutcome.failure(exc.stderr)
        logger.info("Deleted branch {}", branch_name)
        return EffectOutcome.success()

    # -- Auxiliary files -------------------------------------------------------

    async def copy_auxiliary_files(
        self,
        repo_path: str | Path,
        path: str | Path,
        extra: list[str] | None = None,
    ) -> CopyReport:
        """Copy the default, service-wide and per-request auxiliary paths.  Never raises."""
        entries = merge_copy_lists(DEFAULT_COPY_FILES, self._copy_files, extra or [])
        try:
            report = await copy_auxiliary_files(repo_path, path, entries)
        except Exception as exc:
            logger.exception("Unexpected error copying auxiliary files into {}", path)
            return CopyReport(failed={"*": str(exc)})
        if report.copied:
            logger.info("Copied {}/{} auxiliary path(s) into {}", len(report.copied), len(entries), path)
        return report

    # -- Commit ----------------------------------------------------------------

    async def commit_all(self, path: str | Path, message: str) -> bool:
        """Stage and commit everything in the worktree at *path*.

        Returns ``False`` when there was nothing to commit.  Raises
        ``GitCommandError`` if staging or committing fails.
        """
        await self._git("add", "-A", cwd=path)
        status = await self._git("status", "--porcelain", cwd=path)
        if not status.stdout.strip():
            return False
        await self._git("commit", "-m", message, cwd=path)
        logger.info("Committed pending changes in {}: {}", path, message)
        return True

    # -- Inspection ------------------------------------------------------------

    async def is_worktree(self, path: str | Path) -> bool:
        """True if *path* is itself the top level of a git worktree."""
        path = Path(path)
        if not await to_thread.run_sync((path / ".git").exists):
            return False
        result = await self._git("rev-parse", "--show-toplevel", cwd=path, check=False)
        if not result.ok:
            return False
        return Path(result.stdout.strip()).resolve() == path.resolve()

    async def has_uncommitted_changes(self, path: str | Path) -> bool:
        """True if the worktree is dirty.  Errs on the side of True."""
        try:
            result = await self._git("status", "--porcelain", cwd=path)
        except (GitCommandError, OSError) as exc:
            logger.warning("Could not check status of {} ({}); assuming uncommitted changes", path, exc)
            return True
        return bool(result.stdout.strip())

    async def last_commit_at(self, path: str | Path) -> datetime | None:
        result = await self._git("log", "-1", "--format=%cI", cwd=path, check=False)
        if not result.ok or not result.stdout.strip():
            return None
        try:
            return datetime.fromisoformat(result.stdout.strip())
        except ValueError:
            return None

    async def main_branch(self, repo_path: str) -> str:
        """Upstream default branch, else the canonical checkout's branch, else ``main``."""
        result = await self._git("symbolic-ref", "--short", "refs/remotes/origin/HEAD", cwd=repo_path, check=False)
        if result.ok and result.stdout.strip():
            return result.stdout.strip().removeprefix("origin/")
        result = await self._git("symbolic-ref", "--short", "HEAD", cwd=repo_path, check=False)
        if result.ok and result.stdout.strip():
            return result.stdout.strip()
        return "main"

    async def is_branch_merged(
        self,
        repo_path: str,
        branch_name: str,
        *,
        main_branch: str,
        base_sha: str | None = None,
    ) -> bool:
        """True if *branch_name* carries its own commits and they all landed on main.

        A branch whose tip is still its creation point has no change of its
        own, so it is never considered merged.
        """
        ref = f"refs/heads/{branch_name}"
        tip = await self._git("rev-parse", "--verify", "--quiet", ref, cwd=repo_path, check=False)
        if not tip.ok:
            return False
        tip_sha = tip.stdout.strip()

        target = main_branch
        remote = await self._git(
            "rev-parse", "--verify", "--quiet", f"refs/remotes/origin/{main_branch}", cwd=repo_path, check=False
        )
        if remote.ok:
            target = f"origin/{main_branch}"

        if base_sha is None:
            head = await self._git("rev-parse", target, cwd=repo_path, check=False)
            base_sha = head.stdout.strip() if head.ok else None
        if tip_sha == base_sha:
            return False

        result = await self._git("merge-base", "--is-ancestor", tip_sha, target, cwd=repo_path, check=False)
        if result.returncode not in (0, 1):
            logger.warning("Merge check failed for {}: {}", branch_name, result.stderr.strip())
        return result.returncode == 0

    async def _head_sha(self, path: Path) -> str | None:
        result = await self._git("rev-parse", "HEAD", cwd=path, check=False)
        return result.stdout.strip() if result.ok else None


# -- Sync helpers (run in thread pool) -----------------------------------------


def _rmtree(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink(missing_ok=True)
    elif path.exists():
        shutil.rmtree(path)
