from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from ..schemas.agents import AgentType
from .enums import AnalysisDepth, PlanStatus, PrimaryAction, Urgency
from .intent import Intent

DEFAULT_BASE_DURATION_SECONDS = 60

BASE_DURATION_SECONDS: dict[AgentType, int] = {
    AgentType.RESEARCH: 60,
    AgentType.BRIEF_WRITING: 120,
    AgentType.DISCOVERY: 180,
    AgentType.CONTRACT: 90,
    AgentType.DEEP_LEGAL_RESEARCH: 180,
    AgentType.DOCUMENT_ANALYSIS: 90,
    AgentType.TIMELINE: 60,
}

DEPTH_MULTIPLIERS: dict[AnalysisDepth, float] = {
    AnalysisDepth.SUMMARY: 0.7,
    AnalysisDepth.STANDARD: 1.0,
    AnalysisDepth.COMPREHENSIVE: 1.5,
}

URGENCY_MULTIPLIERS: dict[Urgency, float] = {
    Urgency.LOW: 1.2,
    Urgency.NORMAL: 1.0,
    Urgency.HIGH: 0.8,
}

# Fixed edges; never inferred from the request.
DEPENDENCIES: dict[AgentType, frozenset[AgentType]] = {
    AgentType.BRIEF_WRITING: frozenset({AgentType.RESEARCH}),
}

CONTRACT_DOCUMENT_TYPES = frozenset({"contract", "agreement"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class PlanNode:
    agent_type: AgentType
    dependencies: frozenset[AgentType] = frozenset()
    priority: int = 0
    estimated_duration_seconds: int = DEFAULT_BASE_DURATION_SECONDS

    def to_payload(self) -> dict[str, Any]:
        return {
            "agent_type": self.agent_type.value,
            "dependencies": sorted(dependency.value for dependency in self.dependencies),
            "priority": self.priority,
            "estimated_duration_seconds": self.estimated_duration_seconds,
        }


@dataclass(slots=True)
class OrchestrationPlan:
    id: str
    matter_id: str | None
    request_text: str
    nodes: list[PlanNode]
    total_estimated_duration: int
    intent: Intent
    status: PlanStatus = PlanStatus.PLANNED
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def agent_types(self) -> list[AgentType]:
        return [node.agent_type for node in self.nodes]

    def node(self, agent_type: AgentType) -> PlanNode | None:
        return next((node for node in self.nodes if node.agent_type is agent_type), None)

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "matter_id": self.matter_id,
            "request_text": self.request_text,
            "nodes": [node.to_payload() for node in self.nodes],
            "total_estimated_duration": self.total_estimated_duration,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "intent": self.intent.model_dump(mode="json"),
        }


def agents_for_action(action: PrimaryAction, intent: Intent) -> list[AgentType]:
    if action is PrimaryAction.RESEARCH:
        if intent.analysis_depth is AnalysisDepth.COMPREHENSIVE:
            return [AgentType.DEEP_LEGAL_RESEARCH]
        return [AgentType.RESEARCH]
    if action is PrimaryAction.WRITING:
        return [AgentType.BRIEF_WRITING]
    if action is PrimaryAction.DISCOVERY:
        return [AgentType.DISCOVERY]
    if action is PrimaryAction.ANALYSIS:
        if CONTRACT_DOCUMENT_TYPES.intersection(kind.lower() for kind in intent.document_types):
            return [AgentType.CONTRACT]
        return [AgentType.DOCUMENT_ANALYSIS]
    if action is PrimaryAction.CONTRACT_ANALYSIS:
        return [AgentType.CONTRACT]
    if action is PrimaryAction.TIMELINE_GENERATION:
        return [AgentType.TIMELINE]
    return []


def _dedupe(agent_types: Iterable[AgentType]) -> list[AgentType]:
    seen: set[AgentType] = set()
    ordered: list[AgentType] = []
    for agent_type in agent_types:
        if agent_type not in seen:
            seen.add(agent_type)
            ordered.append(agent_type)
    return ordered


def select_agents(intent: Intent) -> list[AgentType]:
    selected: list[AgentType] = list(agents_for_action(intent.primary_action, intent))
    for action in intent.secondary_actions:
        selected.extend(agents_for_action(action, intent))
    if "discovery" in (kind.lower() for kind in intent.document_types):
        selected.append(AgentType.DISCOVERY)

    # Pull in missing dependencies so every edge points inside the plan.
    pending = list(selected)
    while pending:
        agent_type = pending.pop(0)
        for dependency in sorted(DEPENDENCIES.get(agent_type, ()), key=lambda item: item.value):
            if dependency not in selected:
                selected.append(dependency)
                pending.append(dependency)
    return _dedupe(selected)


def estimate_node_duration(agent_type: AgentType, intent: Intent) -> int:
    base = BASE_DURATION_SECONDS.get(agent_type, DEFAULT_BASE_DURATION_SECONDS)
    return round(base * DEPTH_MULTIPLIERS[intent.analysis_depth] * URGENCY_MULTIPLIERS[intent.urgency])


def total_duration(nodes: Iterable[PlanNode]) -> int:
    sequential = 0
    parallel = 0
    for node in nodes:
        if node.dependencies:
            sequential += node.estimated_duration_seconds
        else:
            parallel = max(parallel, node.estimated_duration_seconds)
    return sequential + parallel


def build_plan(matter_id: str | None, request_text: str, intent: Intent, *, plan_id: str | None = None) -> OrchestrationPlan:
    """Map an intent to an ordered, dependency-annotated plan. Pure apart from id generation."""
    agent_types = select_agents(intent) or [AgentType.RESEARCH]
    nodes = [
        PlanNode(
            agent_type=agent_type,
            dependencies=DEPENDENCIES.get(agent_type, frozenset()),
            estimated_duration_seconds=estimate_node_duration(agent_type, intent),
        )
        for agent_type in agent_types
    ]
    nodes.sort(key=lambda node: len(node.dependencies))
    for index, node in enumerate(nodes):
        node.priority = index

    return OrchestrationPlan(
        id=plan_id or str(uuid.uuid4()),
        matter_id=matter_id,
        request_text=request_text,
        nodes=nodes,
        total_estimated_duration=total_duration(nodes),
        intent=intent,
    )
