"""Message-pattern classification tables.

Git stderr and completion API errors are interpreted by matching their
normalized text against small ordered tables of ``(predicate, result)``
rules.  The first matching rule wins, so more specific rules come first.

The tables:

- ``GIT_OUTCOME_RULES``: distinguishes expected, idempotent git outcomes
  ("already exists", "path missing", ...) from real failures.
- ``ERROR_CLASS_RULES`` / ``HINT_RULES``: label a failed workflow step as
  transient, fatal or unknown, and pick the hint shown to the user.
- ``PROVISION_MESSAGE_RULES``: turn a workspace creation failure into a
  user-facing explanation.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

from dockyard.runtime.models.enums import ErrorClass, GitOutcome

T = TypeVar("T")

Predicate = Callable[[str], bool]


def normalize_message(text: str) -> str:
    """Lower-case and collapse whitespace."""
    return " ".join(text.lower().split())


def contains_any(*needles: str) -> Predicate:
    return lambda message: any(needle in message for needle in needles)


def contains_all(*needles: str) -> Predicate:
    return lambda message: all(needle in message for needle in needles)


@dataclass(frozen=True, slots=True)
class Rule(Generic[T]):
    predicate: Predicate
    result: T


def first_match(text: str, rules: Sequence[Rule[T]], default: T) -> T:
    """Evaluate *rules* in order against the normalized *text*."""
    message = normalize_message(text)
    for rule in rules:
        if rule.predicate(message):
            return rule.result
    return default


# ---------------------------------------------------------------------------
# Git outcomes
# ---------------------------------------------------------------------------

GIT_OUTCOME_RULES: tuple[Rule[GitOutcome], ...] = (
    Rule(contains_all("a branch named", "already exists"), GitOutcome.BRANCH_EXISTS),
    Rule(
        contains_any("is already checked out at", "used by worktree", "checked out at"),
        GitOutcome.BRANCH_CHECKED_OUT,
    ),
    Rule(contains_any("already exists"), GitOutcome.PATH_EXISTS),
    Rule(contains_any("contains modified or untracked files", "use --force to delete it"), GitOutcome.DIRTY),
    Rule(contains_all("branch", "not found"), GitOutcome.BRANCH_MISSING),
    Rule(
        contains_any("no such file or directory", "does not exist", "is not a working tree"),
        GitOutcome.PATH_MISSING,
    ),
)


def classify_git_failure(stderr: str) -> GitOutcome:
    return first_match(stderr, GIT_OUTCOME_RULES, GitOutcome.FAILED)


# ---------------------------------------------------------------------------
# Completion errors
# ---------------------------------------------------------------------------

_FATAL_PATTERNS = (
    "unauthorized",
    "forbidden",
    "invalid token",
    "authentication failed",
    "permission denied",
    "401",
    "403",
)

_RATE_LIMIT_PATTERNS = ("rate limit", "too many requests", "429")
_NETWORK_PATTERNS = (
    "timeout",
    "timed out",
    "etimedout",
    "econnrefused",
    "econnreset",
    "network error",
    "socket hang up",
)
_TRANSIENT_PATTERNS = (*_RATE_LIMIT_PATTERNS, *_NETWORK_PATTERNS, "502", "503")

ERROR_CLASS_RULES: tuple[Rule[ErrorClass], ...] = (
    Rule(contains_any(*_FATAL_PATTERNS), ErrorClass.FATAL),
    Rule(contains_any(*_TRANSIENT_PATTERNS), ErrorClass.TRANSIENT),
)


@dataclass(frozen=True, slots=True)
class HintRule:
    error_class: ErrorClass
    predicate: Predicate
    hint: str


HINT_RULES: tuple[HintRule, ...] = (
    HintRule(
        ErrorClass.TRANSIENT, contains_any(*_RATE_LIMIT_PATTERNS), "Rate limited - wait a few minutes and try again"
    ),
    HintRule(ErrorClass.TRANSIENT, contains_any(*_NETWORK_PATTERNS), "Network issue - try again"),
    HintRule(ErrorClass.TRANSIENT, lambda _message: True, "Temporary error - try again"),
    HintRule(
        ErrorClass.FATAL,
        contains_any("401", "unauthorized", "authentication", "invalid token"),
        "Check your API key configuration",
    ),
    HintRule(ErrorClass.FATAL, contains_any("403", "forbidden", "permission"), "Permission denied - check API access"),
)


def error_text(error: BaseException | str) -> str:
    """Text used for classification: exception type name plus message.

    ``TimeoutError()`` and friends often carry an empty message, so the type
    name is part of the matched text.
    """
    if isinstance(error, str):
        return error
    message = str(error)
    return f"{type(error).__name__}: {message}" if message else type(error).__name__


def classify_error(error: BaseException | str) -> ErrorClass:
    if isinstance(error, (TimeoutError, ConnectionError)):
        return ErrorClass.TRANSIENT
    return first_match(error_text(error), ERROR_CLASS_RULES, ErrorClass.UNKNOWN)


def failure_hint(error: BaseException | str, error_class: ErrorClass | None = None) -> str | None:
    """Return the user-facing hint for *error*, or None for unknown errors."""
    error_class = error_class or classify_error(error)
    message = normalize_message(error_text(error))
    for rule in HINT_RULES:
        if rule.error_class == error_class and rule.predicate(message):
            return rule.hint
    return None


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------

_SECRET_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(https?://)[^\s/@:]+(:[^\s/@]+)?@"), r"\1***@"),
    (re.compile(r"\b(gh[pousr]_[A-Za-z0-9]{16,})\b"), "***"),
    (re.compile(r"\b(sk-[A-Za-z0-9_-]{16,})\b"), "***"),
)


def redact_secrets(text: str) -> str:
    """Mask credentials embedded in URLs and well-known token formats."""
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def format_failure(error: BaseException | str, *, limit: int = 500) -> tuple[ErrorClass, str]:
    """Classify *error* and build the user-facing message with its hint."""
    error_class = classify_error(error)
    message = redact_secrets(str(error) if isinstance(error, BaseException) else error) or error_text(error)
    if len(message) > limit:
        message = message[:limit] + "..."
    hint = failure_hint(error, error_class)
    if hint:
        message = f"{message} (Hint: {hint})"
    return error_class, message


# ---------------------------------------------------------------------------
# Workspace provisioning errors
# ---------------------------------------------------------------------------

PROVISION_MESSAGE_RULES: tuple[Rule[str], ...] = (
    Rule(
        contains_any("permission denied", "eacces"),
        "**Error:** Permission denied while creating workspace. Check file system permissions.",
    ),
    Rule(
        contains_any("timeout", "timed out"),
        "**Error:** Timed out creating workspace. Git repository may be slow or unavailable.",
    ),
    Rule(contains_any("no space left", "enospc"), "**Error:** No disk space available for new workspace."),
    Rule(contains_any("not a git repository"), "**Error:** Target path is not a valid git repository."),
)


def provisioning_failure_message(error: BaseException | str) -> str:
    """User-facing message for a workspace that could not be created."""
    fallback = f"**Error:** Could not create isolated workspace: {redact_secrets(str(error))}"
    message = first_match(error_text(error), PROVISION_MESSAGE_RULES, fallback)
    return f"{message} Execution blocked to prevent changes to the shared repository."
