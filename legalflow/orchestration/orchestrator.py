from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping

from ..agents.base import AgentContext
from ..agents.contracts import validate_agent_request
from ..agents.registry import CapabilityRegistry
from ..core.config import Settings
from ..core.logging import get_logger
from ..queue.manager import AGENT_DISPLAY_NAMES, InvalidTaskTransition, TaskQueueManager
from ..queue.store import AgentTask
from ..schemas.agents import AgentCapabilityMetadata, AgentInput, AgentOutput, AgentType
from ..services.cache import ResultCache
from ..services.llm import LLMService
from .engine import CancellationToken, ExecutionEngine, PlanArena
from .enums import PlanStatus, TaskStatus
from .exceptions import CapabilityExecutionError, OrchestrationError
from .intent import IntentAnalyzer
from .planner import OrchestrationPlan, build_plan
from .progress import ProgressChannel, StreamEvent
from .store import PlanStore

logger = get_logger(name=__name__)

_TEXT_FIELDS: tuple[str, ...] = ("response", "content", "analysis", "summary")


@dataclass(slots=True)
class FormattedResult:
    text: str
    sources: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class OrchestrationResult:
    plan: OrchestrationPlan
    outputs: dict[AgentType, AgentOutput]
    formatted: FormattedResult


def _output_text(agent_type: AgentType, output: AgentOutput) -> str:
    result = output.result
    if isinstance(result, Mapping):
        for key in _TEXT_FIELDS:
            value = result.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    if isinstance(result, str):
        return result
    return f"{AGENT_DISPLAY_NAMES[agent_type]} completed."


def _output_sources(output: AgentOutput) -> list[dict[str, Any]]:
    sources = [citation.model_dump(mode="json", exclude_none=True) for citation in output.citations]
    result = output.result
    if isinstance(result, Mapping):
        for item in result.get("sources") or []:
            if isinstance(item, Mapping):
                sources.append(dict(item))
            elif item:
                sources.append({"title": str(item)})
    return sources


def format_result(outputs: Mapping[AgentType, AgentOutput]) -> FormattedResult:
    """Join agent outputs into the final answer text and a flat source list."""
    sections: list[str] = []
    sources: list[dict[str, Any]] = []
    for agent_type, output in outputs.items():
        text = _output_text(agent_type, output)
        sections.append(text if len(outputs) == 1 else f"## {AGENT_DISPLAY_NAMES[agent_type]}\n\n{text}")
        sources.extend(_output_sources(output))
    return FormattedResult(text="\n\n".join(sections), sources=sources)


class LegalOrchestrator:
    """Entry point used by the HTTP layer.

    Owns the plan arena, so cancelling a plan only needs its id.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        tasks: TaskQueueManager,
        cache: ResultCache,
        plans: PlanStore,
        registry: CapabilityRegistry,
        analyzer: IntentAnalyzer,
        arena: PlanArena | None = None,
    ) -> None:
        self._settings = settings
        self._tasks = tasks
        self._cache = cache
        self._plans = plans
        self._registry = registry
        self._analyzer = analyzer
        self._arena = arena or PlanArena()
        self._engine = ExecutionEngine(
            tasks=tasks,
            registry=registry,
            plans=plans,
            settings=settings.orchestration,
        )

    @classmethod
    def from_settings(cls, settings: Settings, *, llm: LLMService | None = None) -> "LegalOrchestrator":
        llm_service = llm or LLMService.from_settings(settings)
        tasks = TaskQueueManager.from_settings(settings)
        cache = ResultCache.from_settings(settings)
        registry = CapabilityRegistry(AgentContext(llm=llm_service, cache=cache, tasks=tasks))
        return cls(
            settings=settings,
            tasks=tasks,
            cache=cache,
            plans=PlanStore.from_settings(settings),
            registry=registry,
            analyzer=IntentAnalyzer(llm_service, temperature=settings.orchestration.intent_temperature),
        )

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["LegalOrchestrator"]:
        async with AsyncExitStack() as stack:
            await stack.enter_async_context(self._plans.lifecycle())
            await stack.enter_async_context(self._cache.lifecycle())
            await stack.enter_async_context(self._tasks.lifecycle())
            logger.info("orchestrator_started", storage=self._settings.storage.backend)
            yield self
        logger.info("orchestrator_stopped")

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def tasks(self) -> TaskQueueManager:
        return self._tasks

    @property
    def cache(self) -> ResultCache:
        return self._cache

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    @property
    def arena(self) -> PlanArena:
        return self._arena

    @property
    def engine(self) -> ExecutionEngine:
        return self._engine

    def capabilities(self) -> list[AgentCapabilityMetadata]:
        return self._registry.capabilities()

    # ── plans ────────────────────────────────────────────────────────────────

    async def plan(self, matter_id: str | None, request_text: str) -> OrchestrationPlan:
        intent = await self._analyzer.analyze(request_text)
        plan = build_plan(matter_id, request_text, intent)
        logger.info(
            "plan_built",
            plan_id=plan.id,
            primary_action=intent.primary_action.value,
            agents=[node.agent_type.value for node in plan.nodes],
            total_estimated_duration=plan.total_estimated_duration,
        )
        return plan

    async def orchestrate(self, matter_id: str | None, request_text: str) -> OrchestrationPlan:
        """Plan and persist. The plan is registered in the arena so it can be cancelled before it starts."""
        plan = await self.plan(matter_id, request_text)
        await self._plans.save(plan)
        self._arena.acquire(plan.id)
        return plan

    async def run_plan(
        self,
        plan: OrchestrationPlan,
        *,
        matter_info: dict[str, Any] | None = None,
        documents: list[str] | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> OrchestrationResult:
        token = self._arena.acquire(plan.id)
        try:
            outputs = await self._engine.run(
                plan,
                token,
                matter_info=matter_info,
                documents=documents,
                parameters=parameters,
            )
        finally:
            self._arena.release(plan.id)
        return OrchestrationResult(plan=plan, outputs=outputs, formatted=format_result(outputs))

    async def submit(
        self,
        plan: OrchestrationPlan,
        *,
        matter_info: dict[str, Any] | None = None,
        documents: list[str] | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> None:
        """Queue a background run of ``plan`` on the task queue's job consumer."""

        async def _job() -> None:
            try:
                await self.run_plan(plan, matter_info=matter_info, documents=documents, parameters=parameters)
            except OrchestrationError as exc:
                logger.warning("background_plan_failed", plan_id=plan.id, error=str(exc))

        await self._tasks.enqueue(_job)

    def cancel(self, plan_id: str, reason: str = "Cancelled by user") -> bool:
        cancelled = self._arena.cancel(plan_id, reason)
        if cancelled:
            logger.info("plan_cancel_requested", plan_id=plan_id, reason=reason)
        return cancelled

    async def get_plan(self, plan_id: str) -> OrchestrationPlan | None:
        return await self._plans.get(plan_id)

    def format_result(self, outputs: Mapping[AgentType, AgentOutput]) -> FormattedResult:
        return format_result(outputs)

    async def stream(
        self,
        matter_id: str | None,
        request_text: str,
        *,
        matter_info: dict[str, Any] | None = None,
        documents: list[str] | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        channel = ProgressChannel(self._tasks, word_delay_seconds=self._settings.streaming.word_delay_seconds)
        plan = await self.orchestrate(matter_id, request_text)
        job: asyncio.Task[OrchestrationResult] | None = None
        try:
            yield channel.event("taskId", plan.id)
            job = asyncio.create_task(
                self.run_plan(plan, matter_info=matter_info, documents=documents, parameters=parameters),
                name=f"stream-{plan.id}",
            )
            async for event in channel.follow(plan.id, job):
                yield event
            try:
                outcome = job.result()
            except OrchestrationError as exc:
                async for event in channel.failure(str(exc)):
                    yield event
                return
            except Exception as exc:
                logger.exception("stream_plan_failed", plan_id=plan.id, error=str(exc))
                async for event in channel.failure(f"Orchestration failed: {exc}"):
                    yield event
                return
            async for event in channel.result(outcome.formatted.text, outcome.formatted.sources):
                yield event
        finally:
            if job is None:
                await self._abandon(plan, "Stream closed")
            elif not job.done():
                self.cancel(plan.id, "Stream closed")
                await asyncio.gather(job, return_exceptions=True)

    async def _abandon(self, plan: OrchestrationPlan, reason: str) -> None:
        """Close out a persisted plan whose run was never started."""
        self._arena.release(plan.id)
        plan.status = PlanStatus.FAILED
        await self._plans.update_status(plan.id, PlanStatus.FAILED)
        logger.warning("plan_abandoned", plan_id=plan.id, reason=reason)

    # ── single-agent tasks ───────────────────────────────────────────────────

    async def create_simple_task(
        self,
        agent_type: AgentType,
        *,
        query: str,
        matter_id: str | None = None,
        context: dict[str, Any] | None = None,
        documents: list[str] | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> AgentTask:
        capability = self._registry.get(agent_type)
        payload = {
            "matter_id": matter_id,
            "query": query,
            "context": dict(context or {}),
            "documents": list(documents or []),
            "parameters": dict(parameters or {}),
        }
        agent_input = validate_agent_request(agent_type, payload)
        agent_input.parameters.update(
            agent_type=agent_type.value,
            estimated_duration=capability.estimate_duration(agent_input),
        )
        return await self._tasks.create_task(
            agent_type=agent_type,
            input_payload=agent_input.model_dump(mode="json"),
            matter_id=matter_id,
        )

    async def execute_task(self, task_id: str, *, token: CancellationToken | None = None) -> AgentOutput:
        task = await self._tasks.require_task(task_id)
        if task.status is not TaskStatus.PENDING:
            raise InvalidTaskTransition(task.id, task.status, TaskStatus.RUNNING)
        try:
            return await self._engine.execute_task(task, token=token)
        except CapabilityExecutionError as exc:
            return AgentOutput(success=False, error=str(exc))

    async def execute_directly(self, agent_type: AgentType, agent_input: AgentInput) -> AgentOutput:
        task = await self.create_simple_task(
            agent_type,
            query=agent_input.query,
            matter_id=agent_input.matter_id,
            context=agent_input.context,
            documents=agent_input.documents,
            parameters=agent_input.parameters,
        )
        return await self.execute_task(task.id)

    async def submit_task(self, task_id: str) -> None:
        async def _job() -> None:
            await self.execute_task(task_id)

        await self._tasks.enqueue(_job)
