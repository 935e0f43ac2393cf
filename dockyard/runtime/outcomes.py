"""Outcome values for fire-and-log side effects.

Branch deletion, notification delivery and auxiliary-file copy are
best-effort: they log failures and report them through these values, never
through exceptions.  Callers may inspect the outcome for logging but must
not turn it back into control flow.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class EffectOutcome:
    """Result of one best-effort operation."""

    ok: bool
    detail: str | None = None

    @classmethod
    def success(cls, detail: str | None = None) -> EffectOutcome:
        return cls(ok=True, detail=detail)

    @classmethod
    def failure(cls, detail: str) -> EffectOutcome:
        return cls(ok=False, detail=detail)


@dataclass(slots=True)
class CopyReport:
    """Result of copying auxiliary files into a new workspace."""

    copied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def as_metadata(self) -> dict:
        return {"copied": list(self.copied), "skipped": list(self.skipped), "failed": dict(self.failed)}
