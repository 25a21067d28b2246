from __future__ import annotations

import inspect
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Iterable, Mapping

import asyncpg

from ..core.config import Settings
from ..orchestration.enums import TaskStatus
from ..schemas.agents import AgentType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class AgentTask:
    id: str
    agent_type: AgentType
    name: str
    input: dict[str, Any]
    matter_id: str | None = None
    plan_id: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    output: dict[str, Any] | None = None
    progress: int = 0
    current_step: str | None = None
    error: str | None = None
    version: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def snapshot(self) -> "AgentTask":
        return replace(
            self,
            input=dict(self.input),
            output=dict(self.output) if self.output is not None else None,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_type": self.agent_type.value,
            "name": self.name,
            "matter_id": self.matter_id,
            "plan_id": self.plan_id,
            "status": self.status.value,
            "progress": self.progress,
            "current_step": self.current_step,
            "error": self.error,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(slots=True)
class TaskExecution:
    task_id: str
    step: str
    progress: int
    message: str | None = None
    created_at: datetime = field(default_factory=_utcnow)


class TaskStore:
    """Durable home of agent task records, backed by PostgreSQL."""

    _INSERT = """
        INSERT INTO agent_tasks(
            id, matter_id, plan_id, agent_type, name, status, input, output,
            progress, current_step, error, version, created_at, updated_at, started_at, completed_at
        )
        VALUES($1, $2, $3, $4, $5, $6, $7::jsonb, $8::jsonb, $9, $10, $11, $12, $13, $14, $15, $16)
    """

    _UPDATE = """
        UPDATE agent_tasks
        SET status = $2,
            output = $3::jsonb,
            progress = $4,
            current_step = $5,
            error = $6,
            version = $7,
            updated_at = $8,
            started_at = $9,
            completed_at = $10
        WHERE id = $1
    """

    _SELECT = """
        SELECT id, matter_id, plan_id, agent_type, name, status, input, output,
               progress, current_step, error, version, created_at, updated_at, started_at, completed_at
        FROM agent_tasks
    """

    _INSERT_EXECUTION = """
        INSERT INTO agent_executions(task_id, step, progress, message, created_at)
        VALUES($1, $2, $3, $4, $5)
    """

    def __init__(self, pool: Any | None) -> None:
        self._pool_or_factory = pool
        self._pool: asyncpg.Pool | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "TaskStore":
        if settings.storage.backend == "memory":
            return InMemoryTaskStore()
        pool = asyncpg.create_pool(
            dsn=str(settings.postgres.dsn),
            min_size=settings.postgres.pool_min_size,
            max_size=settings.postgres.pool_max_size,
        )
        return cls(pool)

    async def insert(self, task: AgentTask) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            await connection.execute(
                self._INSERT,
                task.id,
                task.matter_id,
                task.plan_id,
                task.agent_type.value,
                task.name,
                task.status.value,
                json.dumps(task.input, default=str),
                json.dumps(task.output, default=str) if task.output is not None else None,
                task.progress,
                task.current_step,
                task.error,
                task.version,
                task.created_at,
                task.updated_at,
                task.started_at,
                task.completed_at,
            )

    async def save(self, task: AgentTask) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            await connection.execute(
                self._UPDATE,
                task.id,
                task.status.value,
                json.dumps(task.output, default=str) if task.output is not None else None,
                task.progress,
                task.current_step,
                task.error,
                task.version,
                task.updated_at,
                task.started_at,
                task.completed_at,
            )

    async def get(self, task_id: str) -> AgentTask | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            row = await connection.fetchrow(self._SELECT + " WHERE id = $1", task_id)
        return _row_to_task(row) if row is not None else None

    async def list_by_matter(self, matter_id: str) -> list[AgentTask]:
        return await self._fetch_many(" WHERE matter_id = $1 ORDER BY created_at DESC", matter_id)

    async def list_by_status(self, status: TaskStatus) -> list[AgentTask]:
        return await self._fetch_many(" WHERE status = $1 ORDER BY created_at ASC", status.value)

    async def list_by_plan(self, plan_id: str) -> list[AgentTask]:
        return await self._fetch_many(" WHERE plan_id = $1 ORDER BY created_at ASC", plan_id)

    async def append_execution(self, execution: TaskExecution) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            await connection.execute(
                self._INSERT_EXECUTION,
                execution.task_id,
                execution.step,
                execution.progress,
                execution.message,
                execution.created_at,
            )

    async def list_executions(self, task_id: str) -> list[TaskExecution]:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            rows = await connection.fetch(
                """
                SELECT task_id, step, progress, message, created_at
                FROM agent_executions
                WHERE task_id = $1
                ORDER BY created_at ASC
                """,
                task_id,
            )
        return [
            TaskExecution(
                task_id=row["task_id"],
                step=row["step"],
                progress=row["progress"],
                message=row["message"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["TaskStore"]:
        try:
            await self._ensure_pool()
            yield self
        finally:
            await self.close()

    async def _fetch_many(self, clause: str, *args: Any) -> list[AgentTask]:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT + clause, *args)
        return [_row_to_task(row) for row in rows]

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is not None:
            return self._pool
        candidate = self._pool_or_factory
        if inspect.isawaitable(candidate):
            candidate = await candidate
        if not isinstance(candidate, asyncpg.Pool):
            raise RuntimeError("Invalid asyncpg pool supplied to TaskStore")
        self._pool = candidate
        return self._pool


class InMemoryTaskStore(TaskStore):
    def __init__(self) -> None:
        self._pool_or_factory = None
        self._pool = None
        self._tasks: dict[str, AgentTask] = {}
        self._executions: dict[str, list[TaskExecution]] = {}

    async def insert(self, task: AgentTask) -> None:
        if task.id in self._tasks:
            raise ValueError(f"Task {task.id} already exists")
        self._tasks[task.id] = task.snapshot()

    async def save(self, task: AgentTask) -> None:
        self._tasks[task.id] = task.snapshot()

    async def get(self, task_id: str) -> AgentTask | None:
        task = self._tasks.get(task_id)
        return task.snapshot() if task is not None else None

    async def list_by_matter(self, matter_id: str) -> list[AgentTask]:
        matches = [task for task in self._tasks.values() if task.matter_id == matter_id]
        return _copies(sorted(matches, key=lambda task: task.created_at, reverse=True))

    async def list_by_status(self, status: TaskStatus) -> list[AgentTask]:
        return _copies(task for task in self._tasks.values() if task.status == status)

    async def list_by_plan(self, plan_id: str) -> list[AgentTask]:
        return _copies(task for task in self._tasks.values() if task.plan_id == plan_id)

    async def append_execution(self, execution: TaskExecution) -> None:
        self._executions.setdefault(execution.task_id, []).append(execution)

    async def list_executions(self, task_id: str) -> list[TaskExecution]:
        return list(self._executions.get(task_id, []))

    async def close(self) -> None:
        return

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["InMemoryTaskStore"]:
        yield self


def _copies(tasks: Iterable[AgentTask]) -> list[AgentTask]:
    return [task.snapshot() for task in tasks]


def _decode_json(value: Any) -> dict[str, Any] | None:
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:  # pragma: no cover - defensive guard
            return {}
    return dict(value) if isinstance(value, Mapping) else {"value": value}


def _row_to_task(row: Mapping[str, Any]) -> AgentTask:
    return AgentTask(
        id=row["id"],
        matter_id=row["matter_id"],
        plan_id=row["plan_id"],
        agent_type=AgentType(row["agent_type"]),
        name=row["name"],
        status=TaskStatus(row["status"]),
        input=_decode_json(row["input"]) or {},
        output=_decode_json(row["output"]),
        progress=row["progress"],
        current_step=row["current_step"],
        error=row["error"],
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )
