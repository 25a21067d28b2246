from __future__ import annotations

from ..schemas.agents import AgentType


class OrchestrationError(RuntimeError):
    """Base class for plan execution failures."""

    def __init__(self, message: str, *, plan_id: str | None = None) -> None:
        super().__init__(message)
        self.plan_id = plan_id


class PlanCancelled(OrchestrationError):
    """Raised when a plan's cancellation token is observed by the engine."""


class CapabilityExecutionError(OrchestrationError):
    """Raised when an agent raises, reports failure or returns an invalid output."""

    def __init__(
        self,
        message: str,
        *,
        plan_id: str | None = None,
        agent_type: AgentType | None = None,
        task_id: str | None = None,
    ) -> None:
        super().__init__(message, plan_id=plan_id)
        self.agent_type = agent_type
        self.task_id = task_id


class DependencyTimeout(OrchestrationError):
    """Raised when a dependency does not finish within the configured wait."""

    def __init__(self, message: str, *, plan_id: str | None = None, dependency: AgentType | None = None) -> None:
        super().__init__(message, plan_id=plan_id)
        self.dependency = dependency


class DependencyFailed(OrchestrationError):
    """Raised when a dependency ends failed or cancelled."""

    def __init__(self, message: str, *, plan_id: str | None = None, dependency: AgentType | None = None) -> None:
        super().__init__(message, plan_id=plan_id)
        self.dependency = dependency
