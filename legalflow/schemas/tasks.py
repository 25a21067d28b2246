from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from .agents import AgentType


class OrchestrateRequest(BaseModel):
    query: str = Field(..., min_length=1)
    matter_id: str | None = None
    matter_info: dict[str, Any] | None = None
    documents: list[str] = Field(default_factory=list)
    parameters: dict[str, Any] = Field(default_factory=dict)


class IntentModel(BaseModel):
    primary_action: str
    secondary_actions: list[str] = Field(default_factory=list)
    document_types: list[str] = Field(default_factory=list)
    analysis_depth: str
    urgency: str
    complexity: str
    key_requirements: list[str] = Field(default_factory=list)
    practice_area: str | None = None
    jurisdiction: str | None = None
    source: str


class PlanNodeModel(BaseModel):
    agent_type: AgentType
    dependencies: list[AgentType] = Field(default_factory=list)
    priority: int
    estimated_duration_seconds: int


class TaskRecordModel(BaseModel):
    id: str
    agent_type: AgentType
    name: str
    status: str
    matter_id: str | None = None
    plan_id: str | None = None
    input: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] | None = None
    progress: int = Field(0, ge=0, le=100)
    current_step: str | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class PlanResponse(BaseModel):
    id: str
    matter_id: str | None = None
    request_text: str
    status: str
    nodes: list[PlanNodeModel]
    total_estimated_duration: int
    intent: IntentModel
    created_at: datetime
    tasks: list[TaskRecordModel] = Field(default_factory=list)


class PlanCancelResponse(BaseModel):
    plan_id: str
    cancelled: bool


class DirectTaskRequest(BaseModel):
    query: str = Field(..., min_length=1)
    matter_id: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    documents: list[str] = Field(default_factory=list)
    parameters: dict[str, Any] = Field(default_factory=dict)


class ExecutionModel(BaseModel):
    task_id: str
    step: str
    progress: int
    message: str | None = None
    created_at: datetime


class CacheSearchRequest(BaseModel):
    query: str = Field(..., min_length=1)
    matter_id: str | None = None
    agent_types: list[str] | None = None
    result_types: list[str] | None = None
    max_age_hours: float | None = Field(default=None, gt=0.0)
    limit: int | None = Field(default=None, ge=1, le=100)
    threshold: float | None = Field(default=None, ge=0.0, le=1.0)


class CacheEntryModel(BaseModel):
    id: str
    matter_id: str | None = None
    agent_type: str
    result_type: str
    title: str
    summary: str | None = None
    usage_count: int
    created_at: datetime
    expires_at: datetime
    relevance_score: float


class CacheSearchResponse(BaseModel):
    results: list[CacheEntryModel] = Field(default_factory=list)


class CacheSweepRequest(BaseModel):
    matter_id: str | None = None


class CacheSweepResponse(BaseModel):
    removed: int


class CacheStatsResponse(BaseModel):
    total_entries: int
    expired_entries: int
    total_usage: int
    entries_by_agent: dict[str, int] = Field(default_factory=dict)
    entries_by_type: dict[str, int] = Field(default_factory=dict)
    most_used: list[dict[str, Any]] = Field(default_factory=list)


TaskListStatus = Literal["pending", "running"]
