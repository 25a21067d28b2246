from __future__ import annotations

import asyncio
import json

import pytest

from legalflow.orchestration.enums import TaskStatus
from legalflow.queue.manager import (
    InvalidTaskTransition,
    TaskNotFound,
    TaskQueueManager,
    can_transition,
    generate_task_name,
)
from legalflow.schemas.agents import AgentType


async def _create(queue: TaskQueueManager, **kwargs) -> str:
    task = await queue.create_task(
        agent_type=kwargs.pop("agent_type", AgentType.RESEARCH),
        input_payload=kwargs.pop("input_payload", {"query": "statute of limitations"}),
        **kwargs,
    )
    return task.id


def test_generate_task_name_truncates_long_queries() -> None:
    query = "x" * 60

    assert generate_task_name(AgentType.RESEARCH, "short question") == "Legal Research: short question"
    assert generate_task_name(AgentType.TIMELINE, query) == f"Litigation Timeline: {'x' * 50}..."


@pytest.mark.parametrize(
    ("current", "requested", "allowed"),
    [
        (TaskStatus.PENDING, TaskStatus.RUNNING, True),
        (TaskStatus.PENDING, TaskStatus.CANCELLED, True),
        (TaskStatus.PENDING, TaskStatus.COMPLETED, False),
        (TaskStatus.PENDING, TaskStatus.FAILED, False),
        (TaskStatus.RUNNING, TaskStatus.RUNNING, True),
        (TaskStatus.RUNNING, TaskStatus.FAILED, True),
        (TaskStatus.COMPLETED, TaskStatus.RUNNING, False),
        (TaskStatus.CANCELLED, TaskStatus.PENDING, False),
    ],
)
def test_state_machine_edges(current: TaskStatus, requested: TaskStatus, allowed: bool) -> None:
    assert can_transition(current, requested) is allowed


@pytest.mark.asyncio
async def test_create_task_starts_pending() -> None:
    queue = TaskQueueManager()

    task = await queue.create_task(
        agent_type=AgentType.CONTRACT,
        input_payload={"query": "review the indemnity clause"},
        matter_id="m-1",
    )

    assert task.status is TaskStatus.PENDING
    assert task.progress == 0
    assert task.version == 0
    assert task.name == "Contract Analysis: review the indemnity clause"
    assert [item.id for item in await queue.get_pending_tasks()] == [task.id]


@pytest.mark.asyncio
async def test_lifecycle_timestamps_and_completion() -> None:
    queue = TaskQueueManager()
    task_id = await _create(queue)

    running = await queue.update_task_status(task_id, TaskStatus.RUNNING, progress=10, current_step="Reading")
    assert running.started_at is not None
    assert running.completed_at is None
    assert [item.id for item in await queue.get_running_tasks()] == [task_id]

    done = await queue.update_task_status(task_id, TaskStatus.COMPLETED, output={"success": True})
    assert done.progress == 100
    assert done.completed_at is not None
    assert done.output == {"success": True}
    assert done.version == 2


@pytest.mark.asyncio
async def test_completion_requires_output() -> None:
    queue = TaskQueueManager()
    task_id = await _create(queue)
    await queue.update_task_status(task_id, TaskStatus.RUNNING)

    with pytest.raises(ValueError):
        await queue.update_task_status(task_id, TaskStatus.COMPLETED)

    task = await queue.require_task(task_id)
    assert task.status is TaskStatus.RUNNING


@pytest.mark.asyncio
async def test_invalid_transitions_are_rejected() -> None:
    queue = TaskQueueManager()
    task_id = await _create(queue)

    with pytest.raises(InvalidTaskTransition):
        await queue.update_task_status(task_id, TaskStatus.COMPLETED, output={})

    await queue.cancel_task(task_id, reason="Not needed")
    with pytest.raises(InvalidTaskTransition) as excinfo:
        await queue.update_task_status(task_id, TaskStatus.RUNNING)

    assert excinfo.value.current is TaskStatus.CANCELLED
    cancelled = await queue.require_task(task_id)
    assert cancelled.error == "Not needed"
    assert cancelled.completed_at is not None


@pytest.mark.asyncio
async def test_progress_is_clamped_and_logged() -> None:
    queue = TaskQueueManager()
    task_id = await _create(queue)
    await queue.update_task_status(task_id, TaskStatus.RUNNING)

    await queue.report_progress(task_id, step="Researching", progress=40)
    updated = await queue.report_progress(task_id, step="Overflow", progress=150)

    assert updated.progress == 100
    assert updated.status is TaskStatus.RUNNING
    executions = await queue.get_task_executions(task_id)
    assert [(item.step, item.progress) for item in executions] == [("Researching", 40), ("Overflow", 100)]


@pytest.mark.asyncio
async def test_unknown_task_raises() -> None:
    queue = TaskQueueManager()

    assert await queue.get_task("missing") is None
    with pytest.raises(TaskNotFound):
        await queue.update_task_status("missing", TaskStatus.RUNNING)


@pytest.mark.asyncio
async def test_matter_tasks_newest_first() -> None:
    queue = TaskQueueManager()
    first = await _create(queue, matter_id="m-1")
    second = await _create(queue, matter_id="m-1")
    await _create(queue, matter_id="m-2")

    tasks = await queue.get_matter_tasks("m-1")

    assert {task.id for task in tasks} == {first, second}
    assert tasks[0].created_at >= tasks[1].created_at


@pytest.mark.asyncio
async def test_wait_for_terminal_is_notified() -> None:
    queue = TaskQueueManager()
    task_id = await _create(queue)

    waiter = asyncio.create_task(queue.wait_for_terminal(task_id))
    await asyncio.sleep(0)
    await queue.update_task_status(task_id, TaskStatus.RUNNING)
    await queue.update_task_status(task_id, TaskStatus.FAILED, error="boom")

    finished = await asyncio.wait_for(waiter, timeout=1)
    assert finished.status is TaskStatus.FAILED
    assert finished.error == "boom"


@pytest.mark.asyncio
async def test_wait_for_terminal_times_out() -> None:
    queue = TaskQueueManager()
    task_id = await _create(queue)

    with pytest.raises(asyncio.TimeoutError):
        await queue.wait_for_terminal(task_id, timeout=0.01)


@pytest.mark.asyncio
async def test_watch_returns_immediately_for_terminal_task() -> None:
    queue = TaskQueueManager()
    task_id = await _create(queue)
    await queue.cancel_task(task_id)

    snapshots = [snapshot async for snapshot in queue.watch(task_id)]

    assert [snapshot.status for snapshot in snapshots] == [TaskStatus.CANCELLED]


@pytest.mark.asyncio
async def test_plan_updates_only_carry_their_plan() -> None:
    queue = TaskQueueManager()

    async with queue.plan_updates("plan-a") as inbox:
        task_id = await _create(queue, plan_id="plan-a")
        await _create(queue, plan_id="plan-b")
        await queue.update_task_status(task_id, TaskStatus.RUNNING, progress=5)

        received = [inbox.get_nowait() for _ in range(inbox.qsize())]

    assert [(item.id, item.status) for item in received] == [
        (task_id, TaskStatus.PENDING),
        (task_id, TaskStatus.RUNNING),
    ]


@pytest.mark.asyncio
async def test_background_jobs_run_on_the_consumer() -> None:
    queue = TaskQueueManager()
    seen: list[str] = []

    async def job() -> None:
        seen.append("ran")

    async def broken() -> None:
        raise RuntimeError("job failure is logged, not raised")

    async with queue.lifecycle():
        await queue.enqueue(broken)
        await queue.enqueue(job)
        await asyncio.wait_for(queue.join(), timeout=1)

    assert seen == ["ran"]


class RecordingRedis:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.published: list[tuple[str, str]] = []

    async def publish(self, channel: str, message: str) -> int:
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.published.append((channel, message))
        return 1


@pytest.mark.asyncio
async def test_updates_are_mirrored_to_redis() -> None:
    redis = RecordingRedis()
    queue = TaskQueueManager(redis=redis, namespace="firm-a")  # type: ignore[arg-type]

    task_id = await _create(queue, matter_id="m-1")
    await queue.update_task_status(task_id, TaskStatus.RUNNING, progress=10, current_step="Searching")

    assert [channel for channel, _ in redis.published] == [f"firm-a:tasks:{task_id}"] * 2
    payload = json.loads(redis.published[-1][1])
    assert payload["id"] == task_id
    assert payload["status"] == "running"
    assert payload["progress"] == 10
    assert payload["current_step"] == "Searching"


@pytest.mark.asyncio
async def test_redis_publish_failures_do_not_block_updates() -> None:
    queue = TaskQueueManager(redis=RecordingRedis(fail=True))  # type: ignore[arg-type]

    task_id = await _create(queue)
    task = await queue.update_task_status(task_id, TaskStatus.RUNNING)

    assert task.status is TaskStatus.RUNNING
