from __future__ import annotations

from enum import Enum


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_TASK_STATUSES


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


class PlanStatus(str, Enum):
    PLANNED = "planned"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class PrimaryAction(str, Enum):
    RESEARCH = "research"
    WRITING = "writing"
    ANALYSIS = "analysis"
    DISCOVERY = "discovery"
    CONTRACT_ANALYSIS = "contract_analysis"
    TIMELINE_GENERATION = "timeline_generation"
    UNKNOWN = "unknown"


class AnalysisDepth(str, Enum):
    SUMMARY = "summary"
    STANDARD = "standard"
    COMPREHENSIVE = "comprehensive"


class Urgency(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


__all__ = [
    "TaskStatus",
    "TERMINAL_TASK_STATUSES",
    "PlanStatus",
    "PrimaryAction",
    "AnalysisDepth",
    "Urgency",
    "Complexity",
]
