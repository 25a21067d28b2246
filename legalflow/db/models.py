from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB

metadata = MetaData()

orchestration_plans = Table(
    "orchestration_plans",
    metadata,
    Column("id", String(length=64), primary_key=True),
    Column("matter_id", String(length=128), nullable=True),
    Column("request_text", Text(), nullable=False),
    Column("nodes", JSONB(astext_type=Text()), nullable=False, server_default=text("'[]'::jsonb")),
    Column("intent", JSONB(astext_type=Text()), nullable=False, server_default=text("'{}'::jsonb")),
    Column("total_estimated_duration", Integer(), nullable=False, server_default="0"),
    Column("status", String(length=32), nullable=False, server_default="planned"),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
Index("ix_orchestration_plans_matter_id", orchestration_plans.c.matter_id)

agent_tasks = Table(
    "agent_tasks",
    metadata,
    Column("id", String(length=64), primary_key=True),
    Column("matter_id", String(length=128), nullable=True),
    Column("plan_id", String(length=64), ForeignKey("orchestration_plans.id", ondelete="SET NULL"), nullable=True),
    Column("agent_type", String(length=64), nullable=False),
    Column("name", String(length=256), nullable=False),
    Column("status", String(length=32), nullable=False, server_default="pending"),
    Column("input", JSONB(astext_type=Text()), nullable=False, server_default=text("'{}'::jsonb")),
    Column("output", JSONB(astext_type=Text()), nullable=True),
    Column("progress", Integer(), nullable=False, server_default="0"),
    Column("current_step", Text(), nullable=True),
    Column("error", Text(), nullable=True),
    Column("version", Integer(), nullable=False, server_default="0"),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("started_at", DateTime(timezone=True), nullable=True),
    Column("completed_at", DateTime(timezone=True), nullable=True),
)
Index("ix_agent_tasks_matter_id", agent_tasks.c.matter_id)
Index("ix_agent_tasks_plan_id", agent_tasks.c.plan_id)
Index("ix_agent_tasks_status", agent_tasks.c.status)

agent_executions = Table(
    "agent_executions",
    metadata,
    Column("id", BigInteger, primary_key=True, autoincrement=True),
    Column("task_id", String(length=64), ForeignKey("agent_tasks.id", ondelete="CASCADE"), nullable=False),
    Column("step", Text(), nullable=False),
    Column("progress", Integer(), nullable=False, server_default="0"),
    Column("message", Text(), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
Index("ix_agent_executions_task_id", agent_executions.c.task_id)

matter_cache = Table(
    "matter_cache",
    metadata,
    Column("id", String(length=64), primary_key=True),
    Column("matter_id", String(length=128), nullable=True),
    Column("agent_type", String(length=64), nullable=False),
    Column("result_type", String(length=64), nullable=False),
    Column("title", Text(), nullable=False),
    Column("summary", Text(), nullable=True),
    Column("query_hash", String(length=32), nullable=False),
    Column("result_data", JSONB(astext_type=Text()), nullable=False),
    Column("metadata", JSONB(astext_type=Text()), nullable=False, server_default=text("'{}'::jsonb")),
    Column("usage_count", Integer(), nullable=False, server_default="0"),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("last_used_at", DateTime(timezone=True), nullable=True),
)
Index("ix_matter_cache_hash_matter", matter_cache.c.query_hash, matter_cache.c.matter_id)
Index("ix_matter_cache_expires_at", matter_cache.c.expires_at)

__all__ = [
    "metadata",
    "orchestration_plans",
    "agent_tasks",
    "agent_executions",
    "matter_cache",
]
