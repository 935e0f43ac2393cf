"""Copy untracked auxiliary files from a canonical repository into a workspace.

Some files are deliberately kept out of version control (``.env``, local
tool config) but are still needed inside a fresh worktree.  Entries are
either a plain relative path or ``"source -> destination"``.

Copying is best-effort: a missing source is skipped, any other failure is
logged and recorded in the returned ``CopyReport``.  Nothing here raises.

Both ends of an entry must stay inside their root after symlinks are
resolved: a ``.env`` that links to a file elsewhere on the host is refused,
and symlinks inside a copied directory are recreated as links rather than
followed.
"""

from __future__ import annotations

import os
import re
import shutil
from collections.abc import Iterable
from dataclasses import dataclass
from functools import partial
from pathlib import Path

from anyio import to_thread
from loguru import logger

from dockyard.runtime.outcomes import CopyReport

DEFAULT_COPY_FILES: tuple[str, ...] = (".dockyard", ".env")

_ARROW = re.compile(r"^(.*?)\s*->\s*(.*)$")


@dataclass(frozen=True, slots=True)
class CopyEntry:
    source: str
    destination: str


def parse_copy_entry(entry: str) -> CopyEntry:
    """Parse ``"src"`` or ``"src -> dest"``.  Raises ``ValueError`` when malformed."""
    trimmed = entry.strip()
    if not trimmed:
        msg = "Copy entry cannot be empty"
        raise ValueError(msg)

    match = _ARROW.match(trimmed)
    if match is None:
        return CopyEntry(source=trimmed, destination=trimmed)

    source, destination = match.group(1).strip(), match.group(2).strip()
    if not source or not destination:
        msg = f"Invalid copy entry {entry!r}: source and destination cannot be empty"
        raise ValueError(msg)
    return CopyEntry(source=source, destination=destination)


def is_within_root(root: str | Path, relative: str) -> bool:
    """True if ``root / relative`` does not escape *root* lexically.

    Symlinks are not considered here; ``resolves_within`` checks the real
    location once the path exists.
    """
    if os.path.isabs(relative):
        return False
    base = os.path.normpath(os.fspath(root))
    full = os.path.normpath(os.path.join(base, relative))
    return os.path.commonpath([base, full]) == base


class PathEscapeError(ValueError):
    """A copy source or destination resolves outside its root."""


def resolves_within(root: str | Path, path: str | Path) -> bool:
    """True if *path*, with every symlink resolved, lies inside *root*."""
    return Path(path).resolve().is_relative_to(Path(root).resolve())


def merge_copy_lists(*lists: Iterable[str]) -> list[str]:
    """Concatenate entry lists, dropping duplicates while keeping order."""
    seen: dict[str, None] = {}
    for entries in lists:
        for entry in entries:
            seen.setdefault(entry.strip(), None)
    return [entry for entry in seen if entry]


async def copy_auxiliary_files(
    repo_path: str | Path,
    workspace_path: str | Path,
    entries: Iterable[str],
) -> CopyReport:
    """Copy *entries* from *repo_path* into *workspace_path*."""
    report = CopyReport()
    for raw in entries:
        try:
            entry = parse_copy_entry(raw)
        except ValueError as exc:
            logger.error("Auxiliary copy: {}", exc)
            report.failed[raw] = str(exc)
            continue

        if not is_within_root(repo_path, entry.source) or not is_within_root(workspace_path, entry.destination):
            logger.error("Auxiliary copy: path traversal blocked for {!r}", raw)
            report.failed[raw] = "path escapes its root"
            continue

        source = Path(repo_path) / entry.source
        destination = Path(workspace_path) / entry.destination
        try:
            copied = await to_thread.run_sync(partial(_copy_path, source, destination, repo_path, workspace_path))
        except PathEscapeError as exc:
            logger.error("Auxiliary copy: {} ({!r})", exc, raw)
            report.failed[raw] = "path escapes its root"
            continue
        except OSError as exc:
            logger.error("Auxiliary copy failed: {} -> {} ({})", entry.source, entry.destination, exc)
            report.failed[raw] = str(exc)
            continue

        if copied:
            logger.info("Auxiliary copy: {} -> {}", entry.source, entry.destination)
            report.copied.append(raw)
        else:
            logger.debug("Auxiliary copy: skipped {} (not found)", entry.source)
            report.skipped.append(raw)
    return report


# -- Sync helpers (run in thread pool) -----------------------------------------


def _copy_path(source: Path, destination: Path, repo_root: str | Path, workspace_root: str | Path) -> bool:
    """Copy a file or directory tree.  Returns False if *source* is absent.

    Raises ``PathEscapeError`` when a symlink carries either end outside
    its root.
    """
    if not source.exists():
        return False
    if not resolves_within(repo_root, source):
        msg = f"source {source} resolves outside the repository"
        raise PathEscapeError(msg)
    if not resolves_within(workspace_root, destination):
        msg = f"destination {destination} resolves outside the workspace"
        raise PathEscapeError(msg)
    destination.parent.mkdir(parents=True, exist_ok=True)
    if source.is_dir():
        shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)
    else:
        shutil.copy2(source, destination)
    return True
