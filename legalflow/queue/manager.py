from __future__ import annotations

import asyncio
import contextlib
import json
import uuid
from asyncio import Queue
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from redis.asyncio import Redis

from ..core.config import Settings
from ..core.logging import get_logger
from ..core.metrics import increment_task_transition
from ..orchestration.enums import TaskStatus
from ..schemas.agents import AgentType
from .store import AgentTask, InMemoryTaskStore, TaskExecution, TaskStore

logger = get_logger(name=__name__)

TASK_NAME_QUERY_LIMIT = 50

AGENT_DISPLAY_NAMES: dict[AgentType, str] = {
    AgentType.RESEARCH: "Legal Research",
    AgentType.DEEP_LEGAL_RESEARCH: "Deep Legal Research",
    AgentType.BRIEF_WRITING: "Brief Writing",
    AgentType.DISCOVERY: "Discovery Review",
    AgentType.CONTRACT: "Contract Analysis",
    AgentType.DOCUMENT_ANALYSIS: "Document Analysis",
    AgentType.TIMELINE: "Litigation Timeline",
}

# Terminal statuses have no outgoing edges. RUNNING -> RUNNING is a progress/step update.
_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.RUNNING, TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class TaskNotFound(LookupError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class InvalidTaskTransition(ValueError):
    def __init__(self, task_id: str, current: TaskStatus, requested: TaskStatus) -> None:
        super().__init__(f"Task {task_id} cannot move from {current.value} to {requested.value}")
        self.task_id = task_id
        self.current = current
        self.requested = requested


def generate_task_name(agent_type: AgentType, query: str) -> str:
    label = AGENT_DISPLAY_NAMES.get(agent_type, agent_type.value)
    if len(query) > TASK_NAME_QUERY_LIMIT:
        return f"{label}: {query[:TASK_NAME_QUERY_LIMIT]}..."
    return f"{label}: {query}"


def can_transition(current: TaskStatus, requested: TaskStatus) -> bool:
    return requested in _ALLOWED_TRANSITIONS[current]


class TaskQueueManager:
    """Authoritative record of agent tasks plus the background job consumer.

    Every change to a task goes through :meth:`update_task_status`, which
    validates the state machine, persists the full record and then notifies
    subscribers. Readers never observe a half-written record.
    """

    def __init__(
        self,
        *,
        store: TaskStore | None = None,
        redis: Redis | None = None,
        namespace: str = "legalflow",
        max_jobs: int = 0,
    ) -> None:
        self._store = store or InMemoryTaskStore()
        self._redis = redis
        self._namespace = namespace
        self._queue: Queue[Callable[[], Awaitable[Any]]] = Queue(maxsize=max_jobs)
        self._consumer_task: asyncio.Task[None] | None = None
        self._write_lock = asyncio.Lock()
        self._subscribers: dict[str, set[Queue[AgentTask]]] = {}
        self._plan_subscribers: dict[str, set[Queue[AgentTask]]] = {}

    @property
    def store(self) -> TaskStore:
        return self._store

    # ── records ──────────────────────────────────────────────────────────────

    async def create_task(
        self,
        *,
        agent_type: AgentType,
        input_payload: dict[str, Any],
        matter_id: str | None = None,
        plan_id: str | None = None,
    ) -> AgentTask:
        query = str(input_payload.get("query", ""))
        task = AgentTask(
            id=str(uuid.uuid4()),
            agent_type=agent_type,
            name=generate_task_name(agent_type, query),
            input=dict(input_payload),
            matter_id=matter_id,
            plan_id=plan_id,
        )
        await self._store.insert(task)
        increment_task_transition(agent=agent_type.value, status=TaskStatus.PENDING.value)
        logger.info("task_created", task_id=task.id, agent=agent_type.value, plan_id=plan_id)
        await self._notify(task)
        return task.snapshot()

    async def get_task(self, task_id: str) -> AgentTask | None:
        return await self._store.get(task_id)

    async def require_task(self, task_id: str) -> AgentTask:
        task = await self._store.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    async def get_matter_tasks(self, matter_id: str) -> list[AgentTask]:
        return await self._store.list_by_matter(matter_id)

    async def get_pending_tasks(self) -> list[AgentTask]:
        return await self._store.list_by_status(TaskStatus.PENDING)

    async def get_running_tasks(self) -> list[AgentTask]:
        return await self._store.list_by_status(TaskStatus.RUNNING)

    async def get_plan_tasks(self, plan_id: str) -> list[AgentTask]:
        return await self._store.list_by_plan(plan_id)

    async def get_task_executions(self, task_id: str) -> list[TaskExecution]:
        return await self._store.list_executions(task_id)

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        progress: int | None = None,
        current_step: str | None = None,
        output: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> AgentTask:
        async with self._write_lock:
            current = await self.require_task(task_id)
            if not can_transition(current.status, status):
                raise InvalidTaskTransition(task_id, current.status, status)
            if status is TaskStatus.COMPLETED and output is None:
                raise ValueError(f"Task {task_id} cannot complete without an output payload")

            now = datetime.now(timezone.utc)
            updated = current.snapshot()
            updated.status = status
            updated.updated_at = now
            updated.version = current.version + 1
            if progress is not None:
                updated.progress = max(0, min(100, int(progress)))
            if current_step is not None:
                updated.current_step = current_step
            if output is not None:
                updated.output = dict(output)
            if error is not None:
                updated.error = error
            if status is TaskStatus.RUNNING and updated.started_at is None:
                updated.started_at = now
            if status is TaskStatus.COMPLETED:
                updated.progress = 100
            if status.is_terminal:
                updated.completed_at = now

            await self._store.save(updated)

        if status is not current.status:
            increment_task_transition(agent=updated.agent_type.value, status=status.value)
            logger.info(
                "task_status_updated",
                task_id=task_id,
                previous=current.status.value,
                status=status.value,
                progress=updated.progress,
            )
        await self._notify(updated)
        return updated.snapshot()

    async def report_progress(self, task_id: str, *, step: str, progress: int) -> AgentTask:
        """Record a step for a running task and append it to the execution log."""
        updated = await self.update_task_status(
            task_id,
            TaskStatus.RUNNING,
            progress=progress,
            current_step=step,
        )
        await self._store.append_execution(TaskExecution(task_id=task_id, step=step, progress=updated.progress))
        return updated

    async def cancel_task(self, task_id: str, *, reason: str = "Cancelled") -> AgentTask:
        return await self.update_task_status(task_id, TaskStatus.CANCELLED, error=reason)

    # ── notification ─────────────────────────────────────────────────────────

    async def watch(self, task_id: str) -> AsyncIterator[AgentTask]:
        """Yield task snapshots as they change, ending after a terminal status."""
        inbox: Queue[AgentTask] = Queue()
        self._subscribers.setdefault(task_id, set()).add(inbox)
        try:
            current = await self.require_task(task_id)
            last_version = current.version
            yield current
            if current.status.is_terminal:
                return
            while True:
                snapshot = await inbox.get()
                if snapshot.version <= last_version:
                    continue
                last_version = snapshot.version
                yield snapshot
                if snapshot.status.is_terminal:
                    return
        finally:
            listeners = self._subscribers.get(task_id)
            if listeners is not None:
                listeners.discard(inbox)
                if not listeners:
                    self._subscribers.pop(task_id, None)

    async def wait_for_terminal(self, task_id: str, *, timeout: float | None = None) -> AgentTask:
        async def _wait() -> AgentTask:
            last: AgentTask | None = None
            async with contextlib.aclosing(self.watch(task_id)) as updates:
                async for snapshot in updates:
                    last = snapshot
            assert last is not None
            return last

        return await asyncio.wait_for(_wait(), timeout=timeout)

    @asynccontextmanager
    async def plan_updates(self, plan_id: str) -> AsyncIterator[Queue[AgentTask]]:
        """Receive a snapshot of every task created or updated under ``plan_id``."""
        inbox: Queue[AgentTask] = Queue()
        self._plan_subscribers.setdefault(plan_id, set()).add(inbox)
        try:
            yield inbox
        finally:
            listeners = self._plan_subscribers.get(plan_id)
            if listeners is not None:
                listeners.discard(inbox)
                if not listeners:
                    self._plan_subscribers.pop(plan_id, None)

    async def _notify(self, task: AgentTask) -> None:
        for inbox in list(self._subscribers.get(task.id, ())):
            inbox.put_nowait(task.snapshot())
        if task.plan_id is not None:
            for inbox in list(self._plan_subscribers.get(task.plan_id, ())):
                inbox.put_nowait(task.snapshot())
        if self._redis is None:
            return
        channel = f"{self._namespace}:tasks:{task.id}"
        try:
            await self._redis.publish(channel, json.dumps(task.to_payload()))
        except Exception as exc:
            logger.warning("task_event_publish_failed", task_id=task.id, error=str(exc))

    # ── background jobs ──────────────────────────────────────────────────────

    async def enqueue(self, job: Callable[[], Awaitable[Any]]) -> None:
        await self._queue.put(job)
        logger.info("job_enqueued", queue_size=self._queue.qsize())

    async def _consumer(self) -> None:
        logger.info("job_consumer_started")
        while True:
            job = await self._queue.get()
            try:
                await job()
            except Exception as exc:
                logger.exception("job_execution_failed", error=str(exc))
            finally:
                self._queue.task_done()

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["TaskQueueManager"]:
        async with self._store.lifecycle():
            await self.start()
            try:
                yield self
            finally:
                await self.stop()

    async def start(self) -> None:
        if self._consumer_task is None or self._consumer_task.done():
            self._consumer_task = asyncio.create_task(self._consumer())

    async def stop(self) -> None:
        if self._consumer_task is not None:
            self._consumer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer_task
            self._consumer_task = None
        if self._redis is not None:
            await self._redis.aclose()

    async def join(self) -> None:
        await self._queue.join()

    @classmethod
    def from_settings(cls, settings: Settings) -> "TaskQueueManager":
        redis: Redis | None = None
        if settings.redis.publish_task_events:
            redis = Redis.from_url(str(settings.redis.url))
        return cls(
            store=TaskStore.from_settings(settings),
            redis=redis,
            namespace=settings.redis.namespace,
            max_jobs=settings.orchestration.job_queue_size,
        )
