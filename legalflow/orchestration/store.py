from __future__ import annotations

import inspect
import json
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Mapping

import asyncpg

from ..core.config import Settings
from ..schemas.agents import AgentType
from .enums import PlanStatus
from .intent import Intent
from .planner import OrchestrationPlan, PlanNode

TimestampFactory = Callable[[], datetime]


def _copy_plan(plan: OrchestrationPlan) -> OrchestrationPlan:
    return replace(plan, nodes=[replace(node) for node in plan.nodes])


class PlanStore:
    """Persists orchestration plans and their status in PostgreSQL."""

    _SELECT = """
        SELECT id, matter_id, request_text, nodes, intent, total_estimated_duration, status, created_at
        FROM orchestration_plans
        WHERE id = $1
    """

    def __init__(self, pool: Any | None, *, now: TimestampFactory | None = None) -> None:
        self._pool_or_factory = pool
        self._pool: asyncpg.Pool | None = None
        self._now: TimestampFactory = now or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(cls, settings: Settings) -> "PlanStore":
        if settings.storage.backend == "memory":
            return InMemoryPlanStore()
        pool = asyncpg.create_pool(
            dsn=str(settings.postgres.dsn),
            min_size=settings.postgres.pool_min_size,
            max_size=settings.postgres.pool_max_size,
        )
        return cls(pool)

    async def save(self, plan: OrchestrationPlan) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            await connection.execute(
                """
                INSERT INTO orchestration_plans (
                    id, matter_id, request_text, nodes, intent, total_estimated_duration, status, created_at, updated_at
                )
                VALUES ($1, $2, $3, $4::jsonb, $5::jsonb, $6, $7, $8, $8)
                """,
                plan.id,
                plan.matter_id,
                plan.request_text,
                json.dumps([node.to_payload() for node in plan.nodes]),
                json.dumps(plan.intent.model_dump(mode="json")),
                plan.total_estimated_duration,
                plan.status.value,
                plan.created_at,
            )

    async def update_status(self, plan_id: str, status: PlanStatus) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            await connection.execute(
                "UPDATE orchestration_plans SET status = $2, updated_at = $3 WHERE id = $1",
                plan_id,
                status.value,
                self._now(),
            )

    async def get(self, plan_id: str) -> OrchestrationPlan | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            row = await connection.fetchrow(self._SELECT, plan_id)
        return _row_to_plan(row) if row is not None else None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["PlanStore"]:
        try:
            await self._ensure_pool()
            yield self
        finally:
            await self.close()

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is not None:
            return self._pool
        candidate = self._pool_or_factory
        if inspect.isawaitable(candidate):
            candidate = await candidate
        if not isinstance(candidate, asyncpg.Pool):
            raise RuntimeError("Invalid asyncpg pool supplied to PlanStore")
        self._pool = candidate
        return self._pool


class InMemoryPlanStore(PlanStore):
    def __init__(self) -> None:
        self._pool_or_factory = None
        self._pool = None
        self._now = lambda: datetime.now(timezone.utc)
        self._plans: dict[str, OrchestrationPlan] = {}

    async def save(self, plan: OrchestrationPlan) -> None:
        self._plans[plan.id] = _copy_plan(plan)

    async def update_status(self, plan_id: str, status: PlanStatus) -> None:
        plan = self._plans.get(plan_id)
        if plan is not None:
            plan.status = status

    async def get(self, plan_id: str) -> OrchestrationPlan | None:
        plan = self._plans.get(plan_id)
        return _copy_plan(plan) if plan is not None else None

    async def close(self) -> None:
        return

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["InMemoryPlanStore"]:
        yield self


def _decode(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:  # pragma: no cover - defensive guard
            return default
    return value


def _row_to_plan(row: Mapping[str, Any]) -> OrchestrationPlan:
    nodes = [
        PlanNode(
            agent_type=AgentType(item["agent_type"]),
            dependencies=frozenset(AgentType(value) for value in item.get("dependencies", [])),
            priority=item.get("priority", index),
            estimated_duration_seconds=item.get("estimated_duration_seconds", 60),
        )
        for index, item in enumerate(_decode(row["nodes"], []))
    ]
    return OrchestrationPlan(
        id=row["id"],
        matter_id=row["matter_id"],
        request_text=row["request_text"],
        nodes=nodes,
        total_estimated_duration=row["total_estimated_duration"],
        intent=Intent.model_validate(_decode(row["intent"], {"primary_action": "unknown"})),
        status=PlanStatus(row["status"]),
        created_at=row["created_at"],
    )
