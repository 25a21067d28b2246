from __future__ import annotations

from typing import Mapping

from ..schemas.agents import AgentCapabilityMetadata, AgentType
from .base import AgentContext, Capability, LegalAgent
from .contract import ContractAnalysisAgent
from .discovery import DiscoveryAgent
from .documents import DocumentAnalysisAgent
from .drafting import BriefWritingAgent
from .research import DeepLegalResearchAgent, ResearchAgent
from .timeline import TimelineAgent

_FACTORIES: dict[AgentType, type[LegalAgent]] = {
    AgentType.RESEARCH: ResearchAgent,
    AgentType.DEEP_LEGAL_RESEARCH: DeepLegalResearchAgent,
    AgentType.BRIEF_WRITING: BriefWritingAgent,
    AgentType.DISCOVERY: DiscoveryAgent,
    AgentType.CONTRACT: ContractAnalysisAgent,
    AgentType.DOCUMENT_ANALYSIS: DocumentAnalysisAgent,
    AgentType.TIMELINE: TimelineAgent,
}


def _check_exhaustive(factories: Mapping[AgentType, type[LegalAgent]]) -> None:
    missing = [agent_type.value for agent_type in AgentType if agent_type not in factories]
    if missing:
        raise RuntimeError(f"No agent registered for: {', '.join(missing)}")
    for agent_type, factory in factories.items():
        if factory.agent_type is not agent_type:
            raise RuntimeError(f"{factory.__name__} is registered as {agent_type.value} but declares {factory.agent_type.value}")


_check_exhaustive(_FACTORIES)


class CapabilityRegistry:
    """One capability instance per :class:`AgentType`, built eagerly.

    ``overrides`` replaces individual entries, which is how tests plug in
    failing or slow capabilities.
    """

    def __init__(self, context: AgentContext, overrides: Mapping[AgentType, Capability] | None = None) -> None:
        self._context = context
        self._capabilities: dict[AgentType, Capability] = {
            agent_type: factory(context) for agent_type, factory in _FACTORIES.items()
        }
        if overrides:
            self._capabilities.update(overrides)

    @property
    def context(self) -> AgentContext:
        return self._context

    def get(self, agent_type: AgentType) -> Capability:
        return self._capabilities[agent_type]

    def capabilities(self) -> list[AgentCapabilityMetadata]:
        return [self._capabilities[agent_type].metadata for agent_type in AgentType]
