"""Async git subprocess runner.

Every git invocation in the package goes through ``run_git`` so that each
one is non-blocking and bounded by a timeout.  A timed-out process is
killed and reported as ``GitTimeoutError``, never left hanging.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from dockyard.runtime.classify import classify_git_failure, redact_secrets
from dockyard.runtime.models.enums import GitOutcome

DEFAULT_GIT_TIMEOUT = 30.0


@dataclass(frozen=True, slots=True)
class GitResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class GitCommandError(RuntimeError):
    """A git command exited non-zero.

    ``outcome`` is the classified stderr, so callers can tell expected
    conditions ("already exists", "path missing") from real failures.
    """

    def __init__(self, args: tuple[str, ...], returncode: int, stderr: str) -> None:
        self.git_args = args
        self.returncode = returncode
        self.stderr = redact_secrets(stderr.strip())
        self.outcome = classify_git_failure(stderr)
        super().__init__(f"git {' '.join(args)} failed ({returncode}): {self.stderr}")

    def is_outcome(self, *outcomes: GitOutcome) -> bool:
        return self.outcome in outcomes


class GitTimeoutError(GitCommandError):
    """A git command exceeded its timeout and was killed."""

    def __init__(self, args: tuple[str, ...], timeout: float) -> None:
        super().__init__(args, -1, f"timed out after {timeout:g}s")
        self.timeout = timeout


async def run_git(
    *args: str,
    cwd: str | Path,
    timeout: float = DEFAULT_GIT_TIMEOUT,
    check: bool = True,
) -> GitResult:
    """Run ``git *args`` in *cwd* without blocking the event loop.

    Raises ``GitCommandError`` on a non-zero exit when *check* is true, and
    ``GitTimeoutError`` (a ``GitCommandError``) when *timeout* elapses.
    """
    logger.debug("git {} (cwd={})", " ".join(args), cwd)
    proc = await asyncio.create_subprocess_exec(
        "git",
        *args,
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
    )
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        logger.warning("git {} timed out after {}s (cwd={})", " ".join(args), timeout, cwd)
        raise GitTimeoutError(args, timeout) from None

    result = GitResult(
        returncode=proc.returncode or 0,
        stdout=(stdout_bytes or b"").decode(errors="replace"),
        stderr=(stderr_bytes or b"").decode(errors="replace"),
    )
    if check and not result.ok:
        raise GitCommandError(args, result.returncode, result.stderr)
    return result
