"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "codebases",
        sa.Column("codebase_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("repo_path", sa.Text(), nullable=False),
        sa.Column("default_branch", sa.String(), nullable=True),
        sa.Column("copy_files", postgresql.JSONB(astext_type=sa.Text()), server_default="[]", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("codebase_id", name=op.f("pk_codebases")),
    )
    op.create_table(
        "workspaces",
        sa.Column("workspace_id", sa.String(), nullable=False),
        sa.Column("path", sa.Text(), nullable=False),
        sa.Column("branch_name", sa.String(), nullable=False),
        sa.Column("codebase_id", sa.String(), nullable=False),
        sa.Column("workflow_type", sa.String(), nullable=False),
        sa.Column("workflow_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), server_default="active", nullable=False),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), server_default="{}", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("destroyed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["codebase_id"], ["codebases.codebase_id"], name="fk_workspaces_codebase_id"),
        sa.PrimaryKeyConstraint("workspace_id", name=op.f("pk_workspaces")),
    )
    op.create_index("ix_workspaces_codebase_id_status", "workspaces", ["codebase_id", "status"], unique=False)
    op.create_index(
        "uq_workspaces_live_path",
        "workspaces",
        ["path"],
        unique=True,
        postgresql_where=sa.text("status <> 'destroyed'"),
    )
    op.create_table(
        "workflow_runs",
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("workflow_name", sa.String(), nullable=False),
        sa.Column("conversation_id", sa.String(), nullable=False),
        sa.Column("codebase_id", sa.String(), nullable=True),
        sa.Column("workspace_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), server_default="running", nullable=False),
        sa.Column("current_step_index", sa.Integer(), server_default="0", nullable=False),
        sa.Column("user_message", sa.Text(), server_default="", nullable=False),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), server_default="{}", nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["codebase_id"], ["codebases.codebase_id"], name="fk_workflow_runs_codebase_id"),
        sa.ForeignKeyConstraint(["workspace_id"], ["workspaces.workspace_id"], name="fk_workflow_runs_workspace_id"),
        sa.PrimaryKeyConstraint("run_id", name=op.f("pk_workflow_runs")),
    )
    op.create_index("ix_workflow_runs_conversation_id", "workflow_runs", ["conversation_id"], unique=False)
    op.create_index("ix_workflow_runs_status", "workflow_runs", ["status"], unique=False)
    op.create_index(
        "uq_workflow_runs_running_conversation",
        "workflow_runs",
        ["conversation_id"],
        unique=True,
        postgresql_where=sa.text("status = 'running'"),
    )
    op.create_table(
        "workflow_events",
        sa.Column("event_id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("step_index", sa.Integer(), nullable=True),
        sa.Column("step_name", sa.String(), nullable=True),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), server_default="{}", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["run_id"], ["workflow_runs.run_id"], name="fk_workflow_events_run_id"),
        sa.PrimaryKeyConstraint("event_id", name=op.f("pk_workflow_events")),
    )
    op.create_index("ix_workflow_events_run_id", "workflow_events", ["run_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_workflow_events_run_id", table_name="workflow_events")
    op.drop_table("workflow_events")
    op.drop_index("uq_workflow_runs_running_conversation", table_name="workflow_runs")
    op.drop_index("ix_workflow_runs_status", table_name="workflow_runs")
    op.drop_index("ix_workflow_runs_conversation_id", table_name="workflow_runs")
    op.drop_table("workflow_runs")
    op.drop_index("uq_workspaces_live_path", table_name="workspaces")
    op.drop_index("ix_workspaces_codebase_id_status", table_name="workspaces")
    op.drop_table("workspaces")
    op.drop_table("codebases")
