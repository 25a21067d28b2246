from __future__ import annotations

from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from ..core.config import Settings
from ..dependencies import get_app_settings, get_orchestrator, get_result_cache, get_task_queue
from ..orchestration.orchestrator import LegalOrchestrator
from ..orchestration.planner import OrchestrationPlan
from ..orchestration.progress import NDJSON_MEDIA_TYPE
from ..queue.manager import InvalidTaskTransition, TaskNotFound, TaskQueueManager
from ..queue.store import AgentTask, TaskExecution
from ..schemas.agents import AgentCapabilityMetadata, AgentType
from ..schemas.tasks import (
    CacheEntryModel,
    CacheSearchRequest,
    CacheSearchResponse,
    CacheStatsResponse,
    CacheSweepRequest,
    CacheSweepResponse,
    DirectTaskRequest,
    ExecutionModel,
    OrchestrateRequest,
    PlanCancelResponse,
    PlanResponse,
    TaskListStatus,
    TaskRecordModel,
)
from ..services.cache import CacheSearchOptions, ResultCache

router = APIRouter()


def _task_model(task: AgentTask) -> TaskRecordModel:
    return TaskRecordModel(
        id=task.id,
        agent_type=task.agent_type,
        name=task.name,
        status=task.status.value,
        matter_id=task.matter_id,
        plan_id=task.plan_id,
        input=task.input,
        output=task.output,
        progress=task.progress,
        current_step=task.current_step,
        error=task.error,
        created_at=task.created_at,
        updated_at=task.updated_at,
        started_at=task.started_at,
        completed_at=task.completed_at,
    )


def _execution_model(execution: TaskExecution) -> ExecutionModel:
    return ExecutionModel(
        task_id=execution.task_id,
        step=execution.step,
        progress=execution.progress,
        message=execution.message,
        created_at=execution.created_at,
    )


def _plan_response(plan: OrchestrationPlan, tasks: list[AgentTask] | None = None) -> PlanResponse:
    payload: dict[str, Any] = plan.to_payload()
    payload["tasks"] = [_task_model(task) for task in tasks or []]
    return PlanResponse.model_validate(payload)


def _parse_agent_type(value: str) -> AgentType:
    try:
        return AgentType(value)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown agent type '{value}'",
        ) from exc


async def _require_task(queue: TaskQueueManager, task_id: str) -> AgentTask:
    try:
        return await queue.require_task(task_id)
    except TaskNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.get("/health", tags=["health"])
async def healthcheck(settings: Settings = Depends(get_app_settings)) -> dict[str, str]:
    return {"status": "ok", "environment": settings.environment}


@router.get("/agents", response_model=list[AgentCapabilityMetadata], tags=["agents"])
async def list_agents(orchestrator: LegalOrchestrator = Depends(get_orchestrator)) -> list[AgentCapabilityMetadata]:
    return orchestrator.capabilities()


@router.post("/orchestrate", response_model=PlanResponse, status_code=status.HTTP_202_ACCEPTED, tags=["orchestration"])
async def orchestrate(
    payload: OrchestrateRequest,
    orchestrator: LegalOrchestrator = Depends(get_orchestrator),
) -> PlanResponse:
    plan = await orchestrator.orchestrate(payload.matter_id, payload.query)
    await orchestrator.submit(
        plan,
        matter_info=payload.matter_info,
        documents=payload.documents,
        parameters=payload.parameters,
    )
    return _plan_response(plan)


@router.post("/orchestrate/stream", tags=["orchestration"])
async def orchestrate_stream(
    payload: OrchestrateRequest,
    orchestrator: LegalOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    async def event_stream() -> AsyncIterator[str]:
        async for event in orchestrator.stream(
            payload.matter_id,
            payload.query,
            matter_info=payload.matter_info,
            documents=payload.documents,
            parameters=payload.parameters,
        ):
            yield event.to_line()

    headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    return StreamingResponse(event_stream(), media_type=NDJSON_MEDIA_TYPE, headers=headers)


@router.get("/plans/{plan_id}", response_model=PlanResponse, tags=["orchestration"])
async def get_plan(plan_id: str, orchestrator: LegalOrchestrator = Depends(get_orchestrator)) -> PlanResponse:
    plan = await orchestrator.get_plan(plan_id)
    if plan is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Plan not found")
    tasks = await orchestrator.tasks.get_plan_tasks(plan_id)
    return _plan_response(plan, tasks)


@router.post("/plans/{plan_id}/cancel", response_model=PlanCancelResponse, tags=["orchestration"])
async def cancel_plan(plan_id: str, orchestrator: LegalOrchestrator = Depends(get_orchestrator)) -> PlanCancelResponse:
    if not orchestrator.cancel(plan_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Plan is not running")
    return PlanCancelResponse(plan_id=plan_id, cancelled=True)


@router.post(
    "/agents/{agent_type}/tasks",
    response_model=TaskRecordModel,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["tasks"],
)
async def create_agent_task(
    agent_type: str,
    payload: DirectTaskRequest,
    orchestrator: LegalOrchestrator = Depends(get_orchestrator),
) -> TaskRecordModel:
    resolved = _parse_agent_type(agent_type)
    try:
        task = await orchestrator.create_simple_task(
            resolved,
            query=payload.query,
            matter_id=payload.matter_id,
            context=payload.context,
            documents=payload.documents,
            parameters=payload.parameters,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    await orchestrator.submit_task(task.id)
    return _task_model(task)


@router.get("/tasks", response_model=list[TaskRecordModel], tags=["tasks"])
async def list_tasks(
    task_status: TaskListStatus = Query("pending", alias="status"),
    queue: TaskQueueManager = Depends(get_task_queue),
) -> list[TaskRecordModel]:
    if task_status == "running":
        tasks = await queue.get_running_tasks()
    else:
        tasks = await queue.get_pending_tasks()
    return [_task_model(task) for task in tasks]


@router.get("/tasks/{task_id}", response_model=TaskRecordModel, tags=["tasks"])
async def get_task(task_id: str, queue: TaskQueueManager = Depends(get_task_queue)) -> TaskRecordModel:
    return _task_model(await _require_task(queue, task_id))


@router.post("/tasks/{task_id}/cancel", response_model=TaskRecordModel, tags=["tasks"])
async def cancel_task(task_id: str, queue: TaskQueueManager = Depends(get_task_queue)) -> TaskRecordModel:
    await _require_task(queue, task_id)
    try:
        task = await queue.cancel_task(task_id, reason="Cancelled by user")
    except InvalidTaskTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _task_model(task)


@router.get("/tasks/{task_id}/executions", response_model=list[ExecutionModel], tags=["tasks"])
async def get_task_executions(task_id: str, queue: TaskQueueManager = Depends(get_task_queue)) -> list[ExecutionModel]:
    await _require_task(queue, task_id)
    return [_execution_model(execution) for execution in await queue.get_task_executions(task_id)]


@router.get("/matters/{matter_id}/tasks", response_model=list[TaskRecordModel], tags=["tasks"])
async def get_matter_tasks(matter_id: str, queue: TaskQueueManager = Depends(get_task_queue)) -> list[TaskRecordModel]:
    return [_task_model(task) for task in await queue.get_matter_tasks(matter_id)]


@router.post("/cache/search", response_model=CacheSearchResponse, tags=["cache"])
async def search_cache(payload: CacheSearchRequest, cache: ResultCache = Depends(get_result_cache)) -> CacheSearchResponse:
    settings = cache.settings
    options = CacheSearchOptions(
        agent_types=payload.agent_types,
        result_types=payload.result_types,
        max_age_hours=payload.max_age_hours or settings.search_max_age_hours,
        limit=payload.limit or settings.search_limit,
    )
    threshold = settings.relevance_threshold if payload.threshold is None else payload.threshold
    candidates = await cache.search(payload.matter_id, options)
    ranked = [item for item in cache.rank(candidates, payload.query) if item.relevance_score > threshold]
    return CacheSearchResponse(
        results=[
            CacheEntryModel(
                id=item.entry.id,
                matter_id=item.entry.matter_id,
                agent_type=item.entry.agent_type,
                result_type=item.entry.result_type,
                title=item.entry.title,
                summary=item.entry.summary,
                usage_count=item.entry.usage_count,
                created_at=item.entry.created_at,
                expires_at=item.entry.expires_at,
                relevance_score=round(item.relevance_score, 4),
            )
            for item in ranked
        ]
    )


@router.post("/cache/sweep", response_model=CacheSweepResponse, tags=["cache"])
async def sweep_cache(payload: CacheSweepRequest, cache: ResultCache = Depends(get_result_cache)) -> CacheSweepResponse:
    removed = await cache.evict(payload.matter_id)
    return CacheSweepResponse(removed=removed)


@router.get("/cache/stats", response_model=CacheStatsResponse, tags=["cache"])
async def cache_stats(
    matter_id: str | None = Query(default=None),
    cache: ResultCache = Depends(get_result_cache),
) -> CacheStatsResponse:
    stats = await cache.stats(matter_id)
    return CacheStatsResponse(
        total_entries=stats.total_entries,
        expired_entries=stats.expired_entries,
        total_usage=stats.total_usage,
        entries_by_agent=stats.entries_by_agent,
        entries_by_type=stats.entries_by_type,
        most_used=stats.most_used,
    )
