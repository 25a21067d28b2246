from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import Any, NoReturn

from ..agents.contracts import validate_agent_request, validate_agent_response
from ..agents.registry import CapabilityRegistry
from ..core.config import OrchestrationSettings
from ..core.logging import get_logger
from ..core.metrics import mark_plan_finished, mark_plan_started
from ..queue.manager import InvalidTaskTransition, TaskQueueManager
from ..queue.store import AgentTask
from ..schemas.agents import AgentInput, AgentOutput, AgentType
from .enums import PlanStatus, TaskStatus
from .exceptions import (
    CapabilityExecutionError,
    DependencyFailed,
    DependencyTimeout,
    OrchestrationError,
    PlanCancelled,
)
from .planner import OrchestrationPlan, PlanNode
from .store import InMemoryPlanStore, PlanStore

logger = get_logger(name=__name__)

DEFAULT_CANCEL_REASON = "Plan cancelled"


class CancellationToken:
    """Cooperative cancellation flag that can also be awaited."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = DEFAULT_CANCEL_REASON) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class PlanArena:
    """Running plans keyed by plan id, each with the token that stops it."""

    def __init__(self) -> None:
        self._tokens: dict[str, CancellationToken] = {}

    def __contains__(self, plan_id: object) -> bool:
        return plan_id in self._tokens

    def acquire(self, plan_id: str) -> CancellationToken:
        token = self._tokens.get(plan_id)
        if token is None:
            token = self._tokens[plan_id] = CancellationToken()
        return token

    def get(self, plan_id: str) -> CancellationToken | None:
        return self._tokens.get(plan_id)

    def cancel(self, plan_id: str, reason: str = DEFAULT_CANCEL_REASON) -> bool:
        token = self._tokens.get(plan_id)
        if token is None:
            return False
        token.cancel(reason)
        return True

    def release(self, plan_id: str) -> None:
        self._tokens.pop(plan_id, None)

    def running(self) -> list[str]:
        return list(self._tokens)


@dataclass
class _PlanRun:
    plan: OrchestrationPlan
    token: CancellationToken
    matter_info: dict[str, Any] | None = None
    documents: list[str] = field(default_factory=list)
    parameters: dict[str, Any] = field(default_factory=dict)
    created: dict[AgentType, asyncio.Future[str]] = field(default_factory=dict)


async def _cancel_and_wait(*pending: asyncio.Future[Any]) -> None:
    for item in pending:
        if not item.done():
            item.cancel()
    for item in pending:
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await item


class ExecutionEngine:
    """Runs an :class:`OrchestrationPlan` against the capability registry.

    Each node becomes its own asyncio task, scheduled in plan order. A node
    waits for its dependencies through task queue notifications, creates its
    task record, invokes the capability and records the outcome. The first
    failure aborts the plan and cancels the remaining node tasks.
    """

    def __init__(
        self,
        *,
        tasks: TaskQueueManager,
        registry: CapabilityRegistry,
        plans: PlanStore | None = None,
        settings: OrchestrationSettings | None = None,
    ) -> None:
        self._tasks = tasks
        self._registry = registry
        self._plans = plans or InMemoryPlanStore()
        self._settings = settings or OrchestrationSettings()

    @property
    def tasks(self) -> TaskQueueManager:
        return self._tasks

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    async def run(
        self,
        plan: OrchestrationPlan,
        token: CancellationToken,
        *,
        matter_info: dict[str, Any] | None = None,
        documents: list[str] | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> dict[AgentType, AgentOutput]:
        loop = asyncio.get_running_loop()
        state = _PlanRun(
            plan=plan,
            token=token,
            matter_info=matter_info,
            documents=list(documents or []),
            parameters=dict(parameters or {}),
            created={node.agent_type: loop.create_future() for node in plan.nodes},
        )

        await self._set_plan_status(plan, PlanStatus.EXECUTING)
        mark_plan_started(nodes=len(plan.nodes))
        logger.info("plan_execution_started", plan_id=plan.id, agents=[node.agent_type.value for node in plan.nodes])

        canceller = asyncio.create_task(self._cancel_on_signal(state), name=f"plan-{plan.id}-canceller")
        node_tasks = {
            node.agent_type: asyncio.create_task(self._run_node(state, node), name=f"plan-{plan.id}-{node.agent_type.value}")
            for node in plan.nodes
        }
        try:
            outputs = await self._gather_fail_fast(node_tasks)
        except PlanCancelled:
            await self._abort(state, reason=token.reason or DEFAULT_CANCEL_REASON)
            logger.warning("plan_cancelled", plan_id=plan.id, reason=token.reason)
            raise
        except OrchestrationError as exc:
            if token.cancelled:
                # Dependents of a cancelled task fail as a side effect; report the cancellation.
                reason = token.reason or DEFAULT_CANCEL_REASON
                await self._abort(state, reason=reason)
                logger.warning("plan_cancelled", plan_id=plan.id, reason=reason)
                raise PlanCancelled(reason, plan_id=plan.id) from exc
            await self._abort(state, reason=str(exc))
            logger.error("plan_execution_failed", plan_id=plan.id, error=str(exc))
            raise
        except asyncio.CancelledError:
            await _cancel_and_wait(*node_tasks.values())
            await self._abort(state, reason=DEFAULT_CANCEL_REASON)
            raise
        except Exception as exc:
            await self._abort(state, reason=str(exc))
            logger.exception("plan_execution_failed", plan_id=plan.id, error=str(exc))
            raise
        finally:
            await _cancel_and_wait(canceller, *state.created.values())

        await self._set_plan_status(plan, PlanStatus.COMPLETED)
        mark_plan_finished(status=PlanStatus.COMPLETED.value)
        logger.info("plan_execution_completed", plan_id=plan.id)
        return outputs

    async def execute_task(self, task: AgentTask, *, token: CancellationToken | None = None) -> AgentOutput:
        """Run one pending task through its capability and record the outcome.

        Shared by plan nodes and direct single-agent execution.
        """
        agent_type = task.agent_type
        if token is not None and token.cancelled:
            await self._cancel_quietly(task.id, token.reason or DEFAULT_CANCEL_REASON)
            raise PlanCancelled(token.reason or DEFAULT_CANCEL_REASON, plan_id=task.plan_id)

        try:
            await self._tasks.update_task_status(task.id, TaskStatus.RUNNING, progress=0, current_step="Starting")
        except InvalidTaskTransition as exc:
            raise PlanCancelled(f"Task {task.id} was cancelled before it started", plan_id=task.plan_id) from exc

        try:
            agent_input = validate_agent_request(agent_type, task.input)
        except ValueError as exc:
            await self._record_failure(task, f"Invalid input: {exc}")
        agent_input = agent_input.model_copy(update={"context": {**agent_input.context, "task_id": task.id}})

        capability = self._registry.get(agent_type)
        timeout = self._settings.capability_timeout_seconds
        message: str | None = None
        output: AgentOutput | None = None
        try:
            if timeout is None:
                output = await capability.execute(agent_input)
            else:
                output = await asyncio.wait_for(capability.execute(agent_input), timeout=timeout)
        except asyncio.TimeoutError:
            message = f"{agent_type.value} did not finish within {timeout} seconds"
        except Exception as exc:
            logger.exception("capability_invocation_failed", task_id=task.id, agent=agent_type.value, error=str(exc))
            message = str(exc) or type(exc).__name__

        if output is not None and not output.success:
            message = output.error or f"{agent_type.value} reported failure"
        if message is None and output is not None:
            try:
                output = validate_agent_response(agent_type, output.model_dump(mode="json"))
            except ValueError as exc:
                message = str(exc)
        if message is not None or output is None:
            await self._record_failure(task, message or f"{agent_type.value} returned no output")

        try:
            await self._tasks.update_task_status(
                task.id,
                TaskStatus.COMPLETED,
                current_step="Completed",
                output=output.model_dump(mode="json"),
            )
        except InvalidTaskTransition as exc:
            raise PlanCancelled(f"Task {task.id} was cancelled while running", plan_id=task.plan_id) from exc
        return output

    async def _run_node(self, state: _PlanRun, node: PlanNode) -> AgentOutput:
        plan = state.plan
        self._check_cancelled(state)
        upstream: dict[AgentType, AgentOutput] = {}
        for dependency in sorted(node.dependencies, key=lambda item: item.value):
            upstream[dependency] = await self._await_dependency(state, node, dependency)
        self._check_cancelled(state)

        agent_input = self._build_input(state, node, upstream)
        task = await self._tasks.create_task(
            agent_type=node.agent_type,
            input_payload=agent_input.model_dump(mode="json"),
            matter_id=plan.matter_id,
            plan_id=plan.id,
        )
        created = state.created[node.agent_type]
        if not created.done():
            created.set_result(task.id)
        return await self.execute_task(task, token=state.token)

    async def _await_dependency(self, state: _PlanRun, node: PlanNode, dependency: AgentType) -> AgentOutput:
        plan = state.plan
        created = state.created.get(dependency)
        if created is None:
            raise DependencyFailed(
                f"{node.agent_type.value} depends on {dependency.value}, which is not part of the plan",
                plan_id=plan.id,
                dependency=dependency,
            )

        async def _terminal() -> AgentTask:
            task_id = await asyncio.shield(created)
            return await self._tasks.wait_for_terminal(task_id)

        waiter = asyncio.ensure_future(_terminal())
        cancelled = asyncio.ensure_future(state.token.wait())
        timeout = self._settings.dependency_timeout_seconds
        try:
            done, _ = await asyncio.wait({waiter, cancelled}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await _cancel_and_wait(*(item for item in (waiter, cancelled) if not item.done()))

        if waiter in done:
            finished = waiter.result()
            if finished.status is TaskStatus.COMPLETED and finished.output is not None:
                return AgentOutput.model_validate(finished.output)
            raise DependencyFailed(
                f"Dependency {dependency.value} ended {finished.status.value}: {finished.error or 'no output'}",
                plan_id=plan.id,
                dependency=dependency,
            )
        if cancelled in done:
            raise PlanCancelled(state.token.reason or DEFAULT_CANCEL_REASON, plan_id=plan.id)
        raise DependencyTimeout(
            f"{node.agent_type.value} gave up waiting for {dependency.value} after {timeout} seconds",
            plan_id=plan.id,
            dependency=dependency,
        )

    def _build_input(self, state: _PlanRun, node: PlanNode, upstream: dict[AgentType, AgentOutput]) -> AgentInput:
        context: dict[str, Any] = {"matter_info": state.matter_info}
        for dependency, output in upstream.items():
            context[f"{dependency.value}_results"] = output.result
        parameters = {
            **state.parameters,
            "agent_type": node.agent_type.value,
            "estimated_duration": node.estimated_duration_seconds,
        }
        return AgentInput(
            matter_id=state.plan.matter_id,
            query=state.plan.request_text,
            context=context,
            documents=state.documents,
            parameters=parameters,
        )

    async def _gather_fail_fast(self, node_tasks: dict[AgentType, asyncio.Task[AgentOutput]]) -> dict[AgentType, AgentOutput]:
        pending: set[asyncio.Task[AgentOutput]] = set(node_tasks.values())
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_EXCEPTION)
            failed = [item for item in done if not item.cancelled() and item.exception() is not None]
            if failed:
                await _cancel_and_wait(*pending)
                raise self._primary_failure(node_tasks, failed)
        return {agent_type: task.result() for agent_type, task in node_tasks.items()}

    @staticmethod
    def _primary_failure(
        node_tasks: dict[AgentType, asyncio.Task[AgentOutput]],
        failed: list[asyncio.Task[AgentOutput]],
    ) -> BaseException:
        # DependencyFailed is a consequence of another node's failure; report the cause when known.
        ordered = [task for task in node_tasks.values() if task in failed]
        errors = [task.exception() for task in ordered]
        for error in errors:
            if not isinstance(error, DependencyFailed):
                return error  # type: ignore[return-value]
        return errors[0]  # type: ignore[return-value]

    async def _cancel_on_signal(self, state: _PlanRun) -> None:
        await state.token.wait()
        await self._cancel_open_tasks(state.plan.id, state.token.reason or DEFAULT_CANCEL_REASON)

    async def _abort(self, state: _PlanRun, *, reason: str) -> None:
        await self._cancel_open_tasks(state.plan.id, reason)
        await self._set_plan_status(state.plan, PlanStatus.FAILED)
        mark_plan_finished(status=PlanStatus.FAILED.value)

    async def _cancel_open_tasks(self, plan_id: str, reason: str) -> None:
        for task in await self._tasks.get_plan_tasks(plan_id):
            if not task.status.is_terminal:
                await self._cancel_quietly(task.id, reason)

    async def _cancel_quietly(self, task_id: str, reason: str) -> None:
        try:
            await self._tasks.cancel_task(task_id, reason=reason)
        except InvalidTaskTransition:
            logger.debug("task_already_terminal", task_id=task_id)

    async def _record_failure(self, task: AgentTask, message: str) -> NoReturn:
        try:
            await self._tasks.update_task_status(task.id, TaskStatus.FAILED, error=message)
        except InvalidTaskTransition as exc:
            raise PlanCancelled(f"Task {task.id} was cancelled while running", plan_id=task.plan_id) from exc
        logger.warning("task_failed", task_id=task.id, agent=task.agent_type.value, error=message)
        raise CapabilityExecutionError(message, plan_id=task.plan_id, agent_type=task.agent_type, task_id=task.id)

    def _check_cancelled(self, state: _PlanRun) -> None:
        if state.token.cancelled:
            raise PlanCancelled(state.token.reason or DEFAULT_CANCEL_REASON, plan_id=state.plan.id)

    async def _set_plan_status(self, plan: OrchestrationPlan, status: PlanStatus) -> None:
        plan.status = status
        await self._plans.update_status(plan.id, status)
