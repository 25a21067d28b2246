"""create orchestration, task and cache tables

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18 09:00:00
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "202610180001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "orchestration_plans",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("matter_id", sa.String(length=128), nullable=True),
        sa.Column("request_text", sa.Text(), nullable=False),
        sa.Column("nodes", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("intent", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("total_estimated_duration", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="planned"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_orchestration_plans_matter_id", "orchestration_plans", ["matter_id"], unique=False)

    op.create_table(
        "agent_tasks",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("matter_id", sa.String(length=128), nullable=True),
        sa.Column("plan_id", sa.String(length=64), nullable=True),
        sa.Column("agent_type", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("input", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("output", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_step", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["plan_id"], ["orchestration_plans.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_agent_tasks_matter_id", "agent_tasks", ["matter_id"], unique=False)
    op.create_index("ix_agent_tasks_plan_id", "agent_tasks", ["plan_id"], unique=False)
    op.create_index("ix_agent_tasks_status", "agent_tasks", ["status"], unique=False)

    op.create_table(
        "agent_executions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("task_id", sa.String(length=64), nullable=False),
        sa.Column("step", sa.Text(), nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["task_id"], ["agent_tasks.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_agent_executions_task_id", "agent_executions", ["task_id"], unique=False)

    op.create_table(
        "matter_cache",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("matter_id", sa.String(length=128), nullable=True),
        sa.Column("agent_type", sa.String(length=64), nullable=False),
        sa.Column("result_type", sa.String(length=64), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("query_hash", sa.String(length=32), nullable=False),
        sa.Column("result_data", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_matter_cache_hash_matter", "matter_cache", ["query_hash", "matter_id"], unique=False)
    op.create_index("ix_matter_cache_expires_at", "matter_cache", ["expires_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_matter_cache_expires_at", table_name="matter_cache")
    op.drop_index("ix_matter_cache_hash_matter", table_name="matter_cache")
    op.drop_table("matter_cache")
    op.drop_index("ix_agent_executions_task_id", table_name="agent_executions")
    op.drop_table("agent_executions")
    op.drop_index("ix_agent_tasks_status", table_name="agent_tasks")
    op.drop_index("ix_agent_tasks_plan_id", table_name="agent_tasks")
    op.drop_index("ix_agent_tasks_matter_id", table_name="agent_tasks")
    op.drop_table("agent_tasks")
    op.drop_index("ix_orchestration_plans_matter_id", table_name="orchestration_plans")
    op.drop_table("orchestration_plans")
