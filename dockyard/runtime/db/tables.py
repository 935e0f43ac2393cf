"""SQLAlchemy ORM models for PostgreSQL.

These are the single source of truth for the database schema.  Alembic reads
``Base.metadata`` to autogenerate migration scripts.

Uses SQLAlchemy 2.0 declarative style with ``Mapped`` type annotations.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Timezone-aware timestamp type for all datetime columns.
TimestampTZ = DateTime(timezone=True)


class Base(DeclarativeBase):
    """Declarative base with naming convention for constraints."""

    pass


# Apply naming convention to the metadata for deterministic constraint names.
Base.metadata.naming_convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Codebase(Base):
    __tablename__ = "codebases"

    codebase_id: Mapped[str] = mapped_column(primary_key=True)
    name: Mapped[str]
    repo_path: Mapped[str] = mapped_column(Text, nullable=False)
    default_branch: Mapped[str | None]
    copy_files: Mapped[list] = mapped_column(JSONB, nullable=False, server_default="[]")
    created_at: Mapped[datetime] = mapped_column(TimestampTZ, server_default=func.now())


class Workspace(Base):
    __tablename__ = "workspaces"
    __table_args__ = (
        Index("ix_workspaces_codebase_id_status", "codebase_id", "status"),
        # Only one live workspace may occupy a directory at a time.
        Index(
            "uq_workspaces_live_path",
            "path",
            unique=True,
            postgresql_where=text("status <> 'destroyed'"),
        ),
    )

    workspace_id: Mapped[str] = mapped_column(primary_key=True)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    branch_name: Mapped[str]
    codebase_id: Mapped[str] = mapped_column(
        ForeignKey("codebases.codebase_id", name="fk_workspaces_codebase_id"),
    )
    workflow_type: Mapped[str]
    workflow_id: Mapped[str]
    status: Mapped[str] = mapped_column(server_default="active")
    metadata_: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, server_default="{}")
    created_at: Mapped[datetime] = mapped_column(TimestampTZ, server_default=func.now())
    last_activity_at: Mapped[datetime] = mapped_column(TimestampTZ, server_default=func.now())
    destroyed_at: Mapped[datetime | None] = mapped_column(TimestampTZ)


class WorkflowRun(Base):
    __tablename__ = "workflow_runs"
    __table_args__ = (
        Index("ix_workflow_runs_conversation_id", "conversation_id"),
        Index("ix_workflow_runs_status", "status"),
        # At most one running run per conversation.
        Index(
            "uq_workflow_runs_running_conversation",
            "conversation_id",
            unique=True,
            postgresql_where=text("status = 'running'"),
        ),
    )

    run_id: Mapped[str] = mapped_column(primary_key=True)
    workflow_name: Mapped[str]
    conversation_id: Mapped[str]
    codebase_id: Mapped[str | None] = mapped_column(
        ForeignKey("codebases.codebase_id", name="fk_workflow_runs_codebase_id"),
    )
    workspace_id: Mapped[str | None] = mapped_column(
        ForeignKey("workspaces.workspace_id", name="fk_workflow_runs_workspace_id"),
    )
    status: Mapped[str] = mapped_column(server_default="running")
    current_step_index: Mapped[int] = mapped_column(Integer, server_default="0")
    user_message: Mapped[str] = mapped_column(Text, server_default="")
    metadata_: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, server_default="{}")
    started_at: Mapped[datetime] = mapped_column(TimestampTZ, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(TimestampTZ)
    last_activity_at: Mapped[datetime] = mapped_column(TimestampTZ, server_default=func.now())


class WorkflowEvent(Base):
    __tablename__ = "workflow_events"
    __table_args__ = (Index("ix_workflow_events_run_id", "run_id"),)

    event_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_runs.run_id", name="fk_workflow_events_run_id"),
    )
    event_type: Mapped[str]
    step_index: Mapped[int | None]
    step_name: Mapped[str | None]
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default="{}")
    created_at: Mapped[datetime] = mapped_column(TimestampTZ, server_default=func.now())
