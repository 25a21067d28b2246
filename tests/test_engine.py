from __future__ import annotations

import asyncio

import pytest

from legalflow.core.config import get_settings
from legalflow.orchestration.engine import CancellationToken, PlanArena
from legalflow.orchestration.enums import PlanStatus, TaskStatus
from legalflow.orchestration.exceptions import (
    CapabilityExecutionError,
    DependencyTimeout,
    PlanCancelled,
)
from legalflow.queue.manager import InvalidTaskTransition
from legalflow.schemas.agents import AgentInput, AgentType

from tests.helpers.stubs import StubCapability, StubLLMService, build_orchestrator

MEMO_REQUEST = "draft a comprehensive memo about implied warranties"
RESEARCH_REQUEST = "research the statute of limitations for breach of contract"


def _task_by_agent(tasks, agent_type: AgentType):
    return next(task for task in tasks if task.agent_type is agent_type)


def test_arena_tracks_tokens() -> None:
    arena = PlanArena()
    token = arena.acquire("plan-1")

    assert "plan-1" in arena
    assert arena.acquire("plan-1") is token
    assert arena.cancel("plan-1", "stop") is True
    assert token.cancelled and token.reason == "stop"
    assert arena.cancel("plan-2") is False

    arena.release("plan-1")
    assert arena.running() == []


def test_token_keeps_first_reason() -> None:
    token = CancellationToken()
    token.cancel("first")
    token.cancel("second")

    assert token.reason == "first"


@pytest.mark.asyncio
async def test_single_research_plan_completes() -> None:
    llm = StubLLMService()
    orchestrator = build_orchestrator(llm=llm)

    plan = await orchestrator.orchestrate("m-1", RESEARCH_REQUEST)
    outcome = await orchestrator.run_plan(plan)

    tasks = await orchestrator.tasks.get_plan_tasks(plan.id)
    assert [task.agent_type for task in tasks] == [AgentType.RESEARCH]
    assert tasks[0].status is TaskStatus.COMPLETED
    assert tasks[0].output is not None and tasks[0].output["result"] is not None
    assert tasks[0].matter_id == "m-1"
    assert outcome.outputs[AgentType.RESEARCH].success is True
    assert outcome.formatted.text.startswith("The limitations period")
    assert {"title": "Smith v. Jones, 123 F.3d 456 (3d Cir. 1997)"} in outcome.formatted.sources
    assert (await orchestrator.get_plan(plan.id)).status is PlanStatus.COMPLETED  # type: ignore[union-attr]
    assert plan.id not in orchestrator.arena


@pytest.mark.asyncio
async def test_dependent_waits_for_research_and_receives_its_result() -> None:
    orchestrator = build_orchestrator()

    plan = await orchestrator.orchestrate(None, MEMO_REQUEST)
    outcome = await orchestrator.run_plan(plan)

    tasks = await orchestrator.tasks.get_plan_tasks(plan.id)
    research = _task_by_agent(tasks, AgentType.RESEARCH)
    brief = _task_by_agent(tasks, AgentType.BRIEF_WRITING)
    assert research.status is TaskStatus.COMPLETED
    assert brief.status is TaskStatus.COMPLETED
    assert research.completed_at is not None and brief.started_at is not None
    assert brief.started_at >= research.completed_at
    assert brief.input["context"]["research_results"]["query"] == MEMO_REQUEST
    assert outcome.outputs[AgentType.BRIEF_WRITING].result["used_research"] is True
    assert "## Legal Research" in outcome.formatted.text
    assert "## Brief Writing" in outcome.formatted.text


@pytest.mark.asyncio
async def test_repeated_request_is_served_from_cache() -> None:
    llm = StubLLMService()
    orchestrator = build_orchestrator(llm=llm)

    first = await orchestrator.run_plan(await orchestrator.orchestrate("m-1", RESEARCH_REQUEST))
    await orchestrator.cache.drain()
    second = await orchestrator.run_plan(await orchestrator.orchestrate("m-1", RESEARCH_REQUEST))

    assert first.outputs[AgentType.RESEARCH].result["cached"] is False
    cached = second.outputs[AgentType.RESEARCH]
    assert cached.result["cached"] is True
    assert cached.result["cache_info"]["usage_count"] == 1
    assert cached.metadata["cached"] is True
    assert len(llm.calls) == 1


@pytest.mark.asyncio
async def test_failing_capability_fails_plan_without_starting_dependents() -> None:
    failing = StubCapability(AgentType.RESEARCH, error=RuntimeError("search backend down"))
    orchestrator = build_orchestrator(overrides={AgentType.RESEARCH: failing})

    plan = await orchestrator.orchestrate("m-1", MEMO_REQUEST)
    with pytest.raises(CapabilityExecutionError) as excinfo:
        await orchestrator.run_plan(plan)

    assert excinfo.value.agent_type is AgentType.RESEARCH
    tasks = await orchestrator.tasks.get_plan_tasks(plan.id)
    assert [task.agent_type for task in tasks] == [AgentType.RESEARCH]
    assert tasks[0].status is TaskStatus.FAILED
    assert tasks[0].error == "search backend down"
    assert (await orchestrator.get_plan(plan.id)).status is PlanStatus.FAILED  # type: ignore[union-attr]
    assert plan.id not in orchestrator.arena


@pytest.mark.asyncio
async def test_unavailable_model_fails_the_task() -> None:
    orchestrator = build_orchestrator(llm=StubLLMService(unavailable=True))

    plan = await orchestrator.orchestrate(None, RESEARCH_REQUEST)
    with pytest.raises(CapabilityExecutionError):
        await orchestrator.run_plan(plan)

    [task] = await orchestrator.tasks.get_plan_tasks(plan.id)
    assert task.status is TaskStatus.FAILED
    assert task.error == "Language model unavailable for research"


@pytest.mark.asyncio
async def test_invalid_result_shape_fails_the_task() -> None:
    broken = StubCapability(AgentType.RESEARCH, result={"unexpected": True})
    orchestrator = build_orchestrator(overrides={AgentType.RESEARCH: broken})

    plan = await orchestrator.orchestrate(None, RESEARCH_REQUEST)
    with pytest.raises(CapabilityExecutionError) as excinfo:
        await orchestrator.run_plan(plan)

    assert "Invalid response for capability research" in str(excinfo.value)


@pytest.mark.asyncio
async def test_cancelled_before_start_creates_no_tasks() -> None:
    orchestrator = build_orchestrator()

    plan = await orchestrator.orchestrate(None, MEMO_REQUEST)
    assert orchestrator.cancel(plan.id) is True
    with pytest.raises(PlanCancelled):
        await orchestrator.run_plan(plan)

    assert await orchestrator.tasks.get_plan_tasks(plan.id) == []
    assert (await orchestrator.get_plan(plan.id)).status is PlanStatus.FAILED  # type: ignore[union-attr]
    assert orchestrator.cancel(plan.id) is False


@pytest.mark.asyncio
async def test_cancel_while_running_stops_the_plan() -> None:
    research = StubCapability(AgentType.RESEARCH, gate=asyncio.Event())
    orchestrator = build_orchestrator(overrides={AgentType.RESEARCH: research})
    plan = await orchestrator.orchestrate(None, MEMO_REQUEST)

    run = asyncio.create_task(orchestrator.run_plan(plan))
    await asyncio.wait_for(research.started.wait(), timeout=1)
    orchestrator.cancel(plan.id, "Cancelled by user")

    with pytest.raises(PlanCancelled):
        await asyncio.wait_for(run, timeout=1)

    tasks = await orchestrator.tasks.get_plan_tasks(plan.id)
    assert [task.agent_type for task in tasks] == [AgentType.RESEARCH]
    assert tasks[0].status is TaskStatus.CANCELLED
    assert tasks[0].error == "Cancelled by user"


@pytest.mark.asyncio
async def test_dependency_wait_times_out() -> None:
    settings = get_settings({"orchestration": {"dependency_timeout_seconds": 0.05}})
    research = StubCapability(AgentType.RESEARCH, gate=asyncio.Event())
    orchestrator = build_orchestrator(overrides={AgentType.RESEARCH: research}, settings=settings)

    plan = await orchestrator.orchestrate(None, MEMO_REQUEST)
    with pytest.raises(DependencyTimeout) as excinfo:
        await asyncio.wait_for(orchestrator.run_plan(plan), timeout=2)

    assert excinfo.value.dependency is AgentType.RESEARCH
    [task] = await orchestrator.tasks.get_plan_tasks(plan.id)
    assert task.status is TaskStatus.CANCELLED


@pytest.mark.asyncio
async def test_capability_timeout_fails_the_task() -> None:
    settings = get_settings({"orchestration": {"capability_timeout_seconds": 0.05}})
    research = StubCapability(AgentType.RESEARCH, gate=asyncio.Event())
    orchestrator = build_orchestrator(overrides={AgentType.RESEARCH: research}, settings=settings)

    plan = await orchestrator.orchestrate(None, RESEARCH_REQUEST)
    with pytest.raises(CapabilityExecutionError):
        await asyncio.wait_for(orchestrator.run_plan(plan), timeout=2)

    [task] = await orchestrator.tasks.get_plan_tasks(plan.id)
    assert task.status is TaskStatus.FAILED
    assert task.error == "research did not finish within 0.05 seconds"


@pytest.mark.asyncio
async def test_direct_task_execution() -> None:
    orchestrator = build_orchestrator(llm=StubLLMService("- Pleadings: complaint and answer | 2 months"))

    task = await orchestrator.create_simple_task(AgentType.TIMELINE, query="patent case", matter_id="m-3")
    assert task.input["parameters"]["agent_type"] == "timeline"
    assert task.input["parameters"]["estimated_duration"] == 60

    output = await orchestrator.execute_task(task.id)

    assert output.success is True
    assert output.result["stages"][0]["name"] == "Pleadings"
    stored = await orchestrator.tasks.require_task(task.id)
    assert stored.status is TaskStatus.COMPLETED
    with pytest.raises(InvalidTaskTransition):
        await orchestrator.execute_task(task.id)


@pytest.mark.asyncio
async def test_direct_task_failure_is_reported_not_raised() -> None:
    orchestrator = build_orchestrator(llm=StubLLMService(unavailable=True))

    output = await orchestrator.execute_directly(AgentType.CONTRACT, AgentInput(query="review the lease"))

    assert output.success is False
    assert output.error == "Language model unavailable for contract"


@pytest.mark.asyncio
async def test_direct_task_rejects_invalid_parameters() -> None:
    orchestrator = build_orchestrator()

    with pytest.raises(ValueError):
        await orchestrator.create_simple_task(AgentType.RESEARCH, query="q", parameters={"max_results": 500})
