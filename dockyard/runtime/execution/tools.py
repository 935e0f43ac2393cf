"""Workspace tools exposed to the completion agent.

Every tool is rooted at the workspace of the step being executed
(``WorkspaceDeps.root``).  Paths are resolved, symlinks included, and
refused when they land outside that root, so a step can never touch the
canonical repository or another workspace.

Tool failures are returned to the model as text instead of raised: the
model reads the error and decides what to do next.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

from anyio import to_thread
from pydantic_ai import RunContext, Tool

DEFAULT_COMMAND_TIMEOUT = 120.0
DEFAULT_MAX_OUTPUT_CHARS = 20_000

_SKIPPED_ENTRIES = frozenset({".git"})


@dataclass
class WorkspaceDeps:
    """Per-step dependencies handed to every tool call."""

    root: Path
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS


class ToolPathError(ValueError):
    """A tool path resolves outside the workspace."""


def resolve_in_workspace(root: Path, path: str) -> Path:
    """Resolve *path* against *root*.  Raises ``ToolPathError`` if it escapes."""
    base = root.resolve()
    target = (base / path).resolve()
    if not target.is_relative_to(base):
        msg = f"Path '{path}' is outside the workspace"
        raise ToolPathError(msg)
    return target


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n... [truncated {len(text) - limit} characters]"


# -- Tools ---------------------------------------------------------------------


async def read_file(ctx: RunContext[WorkspaceDeps], path: str) -> str:
    """Read a UTF-8 text file from the workspace.

    Args:
        path: File path relative to the workspace root.
    """
    try:
        target = resolve_in_workspace(ctx.deps.root, path)
        content = await to_thread.run_sync(target.read_text, "utf-8")
    except (ToolPathError, OSError, UnicodeDecodeError) as exc:
        return f"Error: {exc}"
    return _truncate(content, ctx.deps.max_output_chars)


async def write_file(ctx: RunContext[WorkspaceDeps], path: str, content: str) -> str:
    """Create or overwrite a text file in the workspace, creating parent directories.

    Args:
        path: File path relative to the workspace root.
        content: Full new content of the file.
    """
    try:
        target = resolve_in_workspace(ctx.deps.root, path)
        await to_thread.run_sync(_write_text, target, content)
    except (ToolPathError, OSError) as exc:
        return f"Error: {exc}"
    return f"Wrote {len(content)} characters to {path}"


async def edit_file(ctx: RunContext[WorkspaceDeps], path: str, old: str, new: str) -> str:
    """Replace one exact occurrence of ``old`` with ``new`` in a workspace file.

    Args:
        path: File path relative to the workspace root.
        old: Text to replace; must occur exactly once in the file.
        new: Replacement text.
    """
    try:
        target = resolve_in_workspace(ctx.deps.root, path)
        content = await to_thread.run_sync(target.read_text, "utf-8")
    except (ToolPathError, OSError, UnicodeDecodeError) as exc:
        return f"Error: {exc}"

    count = content.count(old)
    if count != 1:
        return f"Error: expected exactly one occurrence of the text to replace in {path}, found {count}"
    try:
        await to_thread.run_sync(_write_text, target, content.replace(old, new, 1))
    except OSError as exc:
        return f"Error: {exc}"
    return f"Edited {path}"


async def list_dir(ctx: RunContext[WorkspaceDeps], path: str = ".") -> str:
    """List a workspace directory; subdirectories end with ``/``.

    Args:
        path: Directory relative to the workspace root.
    """
    try:
        target = resolve_in_workspace(ctx.deps.root, path)
        entries = await to_thread.run_sync(_list_entries, target)
    except (ToolPathError, OSError) as exc:
        return f"Error: {exc}"
    return "\n".join(entries) if entries else "(empty)"


async def run_command(ctx: RunContext[WorkspaceDeps], command: str) -> str:
    """Run a shell command with the workspace root as working directory.

    Returns the exit code followed by combined stdout and stderr.

    Args:
        command: Shell command line, e.g. ``pytest -q`` or ``git status``.
    """
    proc = await asyncio.create_subprocess_shell(
        command,
        cwd=str(ctx.deps.root),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=ctx.deps.command_timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        return f"Error: command timed out after {ctx.deps.command_timeout:g}s"
    output = (stdout or b"").decode(errors="replace")
    return f"exit code {proc.returncode}\n{_truncate(output, ctx.deps.max_output_chars)}"


WORKSPACE_TOOLS: list[Tool[WorkspaceDeps]] = [
    Tool(read_file),
    Tool(write_file),
    Tool(edit_file),
    Tool(list_dir),
    Tool(run_command),
]


# -- Sync helpers (run in thread pool) -----------------------------------------


def _write_text(target: Path, content: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")


def _list_entries(target: Path) -> list[str]:
    entries = []
    for child in sorted(target.iterdir()):
        if child.name in _SKIPPED_ENTRIES:
            continue
        entries.append(f"{child.name}/" if child.is_dir() else child.name)
    return entries
