from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar, Protocol

from ..core.logging import get_logger
from ..core.metrics import observe_agent_latency
from ..schemas.agents import AgentCapabilityMetadata, AgentInput, AgentOutput, AgentType
from ..services.cache import ResultCache
from ..services.llm import LLMService, is_llm_unavailable
from .contracts import get_contract

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..queue.manager import TaskQueueManager

logger = get_logger(name=__name__)

BASE_DURATION_SECONDS = 60
LONG_QUERY_CHARS = 200
LONG_QUERY_FACTOR = 1.5
PER_DOCUMENT_FACTOR = 0.1
MAX_DOCUMENT_FACTOR = 2.0

_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(?P<item>.+)$")


class Capability(Protocol):
    """What the scheduler needs from an agent."""

    agent_type: AgentType

    @property
    def metadata(self) -> AgentCapabilityMetadata:
        ...

    def estimate_duration(self, agent_input: AgentInput) -> int:
        ...

    async def execute(self, agent_input: AgentInput) -> AgentOutput:
        ...


class LanguageModelUnavailable(RuntimeError):
    pass


@dataclass
class AgentContext:
    """Collaborators shared by every agent instance."""

    llm: LLMService
    cache: ResultCache
    tasks: "TaskQueueManager | None" = None


class LegalAgent:
    """Common plumbing for the built-in agents.

    Subclasses implement :meth:`run`. :meth:`execute` wraps it with input
    validation, timing and error capture so a failing agent reports
    ``success=False`` instead of raising.
    """

    agent_type: ClassVar[AgentType]
    system_prompt: ClassVar[str] = "You are an experienced litigation associate."
    required_context: ClassVar[tuple[str, ...]] = ()

    def __init__(self, context: AgentContext) -> None:
        self.context = context

    @property
    def metadata(self) -> AgentCapabilityMetadata:
        return get_contract(self.agent_type).metadata

    def validate_input(self, agent_input: AgentInput) -> list[str]:
        errors: list[str] = []
        if not agent_input.query.strip():
            errors.append("Query is required")
        if agent_input.matter_id:
            for key in self.required_context:
                if key not in agent_input.context:
                    errors.append(f"Missing required context: {key}")
        return errors

    def estimate_duration(self, agent_input: AgentInput) -> int:
        estimate = float(BASE_DURATION_SECONDS)
        if len(agent_input.query) > LONG_QUERY_CHARS:
            estimate *= LONG_QUERY_FACTOR
        estimate *= 1 + min(len(agent_input.documents) * PER_DOCUMENT_FACTOR, MAX_DOCUMENT_FACTOR)
        return round(estimate)

    async def execute(self, agent_input: AgentInput) -> AgentOutput:
        started = time.perf_counter()
        errors = self.validate_input(agent_input)
        if errors:
            return AgentOutput(success=False, error=f"Invalid input: {'; '.join(errors)}")
        try:
            output = await self.run(agent_input)
        except Exception as exc:
            logger.exception("agent_execution_failed", agent=self.agent_type.value, error=str(exc))
            output = AgentOutput(success=False, error=str(exc) or type(exc).__name__)
        elapsed = time.perf_counter() - started
        observe_agent_latency(agent=self.agent_type.value, latency=elapsed)
        return output.model_copy(update={"execution_time": elapsed})

    async def run(self, agent_input: AgentInput) -> AgentOutput:
        raise NotImplementedError

    async def log_execution(self, agent_input: AgentInput, step: str, progress: int) -> None:
        """Report a step against the task carrying this input, if any."""
        task_id = agent_input.context.get("task_id")
        if self.context.tasks is None or not isinstance(task_id, str):
            return
        try:
            await self.context.tasks.report_progress(task_id, step=step, progress=progress)
        except Exception as exc:
            logger.warning("agent_progress_report_failed", task_id=task_id, step=step, error=str(exc))

    async def complete(self, prompt: str, *, temperature: float | None = None) -> str:
        response = await self.context.llm.generate(prompt, system_prompt=self.system_prompt, temperature=temperature)
        if is_llm_unavailable(response):
            raise LanguageModelUnavailable(f"Language model unavailable for {self.agent_type.value}")
        return response.strip()


def dependency_results(agent_input: AgentInput) -> dict[str, Any]:
    return {
        key.removesuffix("_results"): value
        for key, value in agent_input.context.items()
        if key.endswith("_results") and value is not None
    }


def bullet_lines(text: str) -> list[str]:
    items: list[str] = []
    for line in text.splitlines():
        match = _BULLET.match(line)
        if match:
            items.append(match.group("item").strip())
    return items


def first_sentence(text: str, *, limit: int = 240) -> str:
    stripped = " ".join(text.split())
    head = re.split(r"(?<=[.!?])\s", stripped, maxsplit=1)[0]
    return head[:limit]
