"""Step prompt resolution and rendering.

A workflow step names a prompt file; the file ``{name}.md`` is looked up in
an ordered list of directories (relative entries are resolved against the
workspace) and the first hit wins.

Prompt files may contain Jinja2 template syntax.  Template variables:

- ``workflow_id``  : str        -- ID of the workflow run
- ``user_message`` : str        -- the message that triggered the run
- ``arguments``    : str        -- alias of ``user_message``
- ``context``      : str | None -- issue / PR body or other external context

If a prompt never references ``context``, the context is appended after a
``---`` separator so the model still sees it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

import jinja2
from anyio import Path as AsyncPath
from jinja2 import meta
from loguru import logger

from dockyard.runtime.models.enums import PromptFailure

_VALID_NAME = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9_.-]*$")

CONTEXT_SEPARATOR = "\n\n---\n\n"


@dataclass(frozen=True)
class PromptResolution:
    ok: bool
    content: str | None = None
    path: str | None = None
    failure: PromptFailure | None = None
    message: str | None = None


def is_valid_prompt_name(name: str) -> bool:
    """Reject path separators, ``..`` and hidden names before touching disk."""
    return bool(name) and ".." not in name and _VALID_NAME.match(name) is not None


def failure_guidance(resolution: PromptResolution, name: str) -> str:
    """User-facing explanation for a failed resolution."""
    if resolution.failure == PromptFailure.INVALID_NAME:
        return f"Invalid step name '{name}': names may not contain path separators, '..', or start with '.'"
    if resolution.failure == PromptFailure.EMPTY_FILE:
        return f"Step prompt '{name}' is empty: add instructions to {resolution.path}"
    if resolution.failure == PromptFailure.UNREADABLE:
        return f"Step prompt '{name}' could not be read: {resolution.message}"
    return f"Step prompt '{name}' not found: create {name}.md in one of the step prompt directories"


class PromptResolver:
    """Finds step prompt files in an ordered list of directories."""

    def __init__(self, dirs: list[str]) -> None:
        self._dirs = list(dirs)

    def candidate_dirs(self, cwd: str | Path) -> list[Path]:
        base = Path(cwd)
        return [Path(d) if Path(d).is_absolute() else base / d for d in self._dirs]

    async def resolve(self, name: str, cwd: str | Path) -> PromptResolution:
        if not is_valid_prompt_name(name):
            logger.warning("Rejected step prompt name {!r}", name)
            return PromptResolution(ok=False, failure=PromptFailure.INVALID_NAME)

        for directory in self.candidate_dirs(cwd):
            candidate = AsyncPath(directory / f"{name}.md")
            if not await candidate.is_file():
                continue
            try:
                content = await candidate.read_text(encoding="utf-8")
            except FileNotFoundError:
                continue
            except (OSError, UnicodeDecodeError) as exc:
                logger.error("Failed to read step prompt {}: {}", candidate, exc)
                return PromptResolution(
                    ok=False,
                    path=str(candidate),
                    failure=PromptFailure.UNREADABLE,
                    message=str(exc),
                )
            if not content.strip():
                return PromptResolution(ok=False, path=str(candidate), failure=PromptFailure.EMPTY_FILE)
            logger.debug("Resolved step prompt {} -> {}", name, candidate)
            return PromptResolution(ok=True, content=content, path=str(candidate))

        return PromptResolution(ok=False, failure=PromptFailure.NOT_FOUND)


def render_step_prompt(
    template: str,
    *,
    workflow_id: str,
    user_message: str,
    arguments: str | None = None,
    context: str | None = None,
) -> str:
    """Render a step prompt with run variables.

    Returns
    -------
    str
        The rendered prompt.  Templates without Jinja2 syntax are returned
        unchanged, apart from the appended context.
    """
    template_vars: dict[str, object] = {
        "workflow_id": workflow_id,
        "user_message": user_message,
        "arguments": arguments if arguments is not None else user_message,
        "context": context,
    }

    # Fast path: skip Jinja2 if no template syntax detected
    if "{{" not in template and "{%" not in template:
        rendered, uses_context = template, False
    else:
        env = jinja2.Environment(autoescape=False)  # noqa: S701
        uses_context = "context" in meta.find_undeclared_variables(env.parse(template))
        rendered = env.from_string(template).render(**template_vars)

    if context and not uses_context:
        rendered = f"{rendered.rstrip()}{CONTEXT_SEPARATOR}{context}"
    return rendered
