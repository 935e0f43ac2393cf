"""Service configuration loaded from DOCKYARD_* environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DockyardSettings(BaseSettings):
    """Dockyard runtime settings.

    All fields are read from environment variables with the ``DOCKYARD_``
    prefix.  For example, ``DOCKYARD_MAX_WORKSPACES_PER_CODEBASE=10`` maps to
    ``max_workspaces_per_codebase``.  List fields take JSON, e.g.
    ``DOCKYARD_COPY_FILES='[".env.local", "config/dev.json -> config/local.json"]'``.

    LLM provider keys (ANTHROPIC_API_KEY, OPENAI_API_KEY, ...) are **not**
    managed here -- pydantic-ai reads them directly via its provider
    conventions.
    """

    model_config = SettingsConfigDict(
        env_prefix="DOCKYARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"
    log_json: bool = False
    """Emit one JSON object per log line (loguru ``serialize``) instead of colored text."""

    # -- Infrastructure --------------------------------------------------------
    database_url: str | None = None
    """PostgreSQL connection string (psycopg).  Without it, records live in memory."""

    # -- Data storage ----------------------------------------------------------
    data_root: str = "./data"
    """Root directory for managed data."""

    worktrees_dir: str | None = None
    """Where workspaces are created.  Defaults to ``{data_root}/worktrees``."""

    # -- Capacity --------------------------------------------------------------
    max_workspaces_per_codebase: int = Field(default=25, ge=1)
    """Hard cap on live workspaces per codebase."""

    stale_threshold_days: int = Field(default=14, ge=1)
    """Workspaces inactive for this many days are evicted by the sweep."""

    cleanup_interval_hours: float = Field(default=6.0, gt=0)
    """Period of the background eviction sweep."""

    # -- Timeouts --------------------------------------------------------------
    git_timeout_seconds: float = Field(default=30.0, gt=0)
    completion_timeout_seconds: float = Field(default=90.0, gt=0)
    """Upper bound for a single workflow step against the completion API."""
    tool_command_timeout_seconds: float = Field(default=120.0, gt=0)
    """Upper bound for one shell command run by the agent inside a workspace."""

    # -- Workflow --------------------------------------------------------------
    step_prompt_dirs: list[str] = Field(default_factory=lambda: [".dockyard/commands"])
    """Ordered candidate directories for step prompts (relative to the workspace)."""

    copy_files: list[str] = Field(default_factory=list)
    """Extra untracked paths copied from the canonical repo into new workspaces."""

    completion_model: str = "anthropic:claude-sonnet-4-5"
    """pydantic-ai model identifier used by the default completion client."""

    run_abandon_grace_minutes: int = Field(default=15, ge=0)
    """Runs left ``running`` without activity for this long are failed at startup."""

    auto_commit_artifacts: bool = True
    """Commit whatever a finished run left uncommitted in its workspace."""

    # -- Server ----------------------------------------------------------------
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8000
    graceful_shutdown_timeout: int = 600
    """Seconds to wait for in-flight tasks to finish during shutdown."""

    # -- Helpers ---------------------------------------------------------------

    def resolve_worktrees_dir(self) -> Path:
        if self.worktrees_dir:
            return Path(self.worktrees_dir).expanduser()
        return Path(self.data_root).expanduser() / "worktrees"


def get_settings() -> DockyardSettings:
    """Return a cached settings instance.

    Reads from environment variables and ``.env`` on first call, then returns
    the same object.  Call ``_get_settings_cached.cache_clear()`` in tests to
    force a re-read after overriding env vars.
    """
    return _get_settings_cached()


def _get_settings_cached() -> DockyardSettings:
    """Inner function wrapped by lru_cache (allows type-safe cache_clear)."""
    return DockyardSettings()


# Apply lru_cache at runtime so the function is only called once.
from functools import lru_cache  # noqa: E402

_get_settings_cached = lru_cache(maxsize=1)(_get_settings_cached)
