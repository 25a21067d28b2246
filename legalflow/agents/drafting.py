from __future__ import annotations

import json
from typing import Any, ClassVar

from ..schemas.agents import AgentInput, AgentOutput, AgentType, DraftingResult
from .base import LegalAgent, dependency_results
from .research import RESEARCH_AGENT_TYPES

DEFAULT_DOCUMENT_TYPE = "legal_memorandum"
MAX_RESEARCH_CHARS = 4_000

_DOCUMENT_HINTS: tuple[tuple[str, str], ...] = (
    ("motion", "motion"),
    ("brief", "legal_brief"),
    ("opinion letter", "opinion_letter"),
    ("memo", "legal_memorandum"),
)


def _infer_document_type(agent_input: AgentInput) -> str:
    explicit = agent_input.parameters.get("document_type")
    if isinstance(explicit, str) and explicit:
        return explicit
    lowered = agent_input.query.lower()
    for needle, document_type in _DOCUMENT_HINTS:
        if needle in lowered:
            return document_type
    return DEFAULT_DOCUMENT_TYPE


class BriefWritingAgent(LegalAgent):
    agent_type: ClassVar[AgentType] = AgentType.BRIEF_WRITING
    system_prompt: ClassVar[str] = (
        "You draft persuasive, well organized legal documents. Use headings, state the question presented, "
        "and ground every argument in the research provided."
    )

    async def run(self, agent_input: AgentInput) -> AgentOutput:
        document_type = _infer_document_type(agent_input)
        await self.log_execution(agent_input, "Gathering research for drafting", 10)
        research = await self._research_material(agent_input)

        await self.log_execution(agent_input, f"Drafting {document_type.replace('_', ' ')}", 40)
        style = agent_input.parameters.get("style") or "formal"
        prompt = (
            f"Document type: {document_type}\n"
            f"Style: {style}\n"
            f"Assignment: {agent_input.query}\n\n"
            f"Research material:\n{json.dumps(research, default=str)[:MAX_RESEARCH_CHARS] if research else 'none'}\n\n"
            "Produce the complete document. The first line is the title."
        )
        content = await self.complete(prompt)
        await self.log_execution(agent_input, "Finalizing draft", 90)

        title = content.splitlines()[0].strip("# ").strip() if content else document_type
        result = DraftingResult(
            document_type=document_type,
            title=title or document_type,
            content=content,
            word_count=len(content.split()),
            used_research=bool(research),
        )
        return AgentOutput(success=True, result=result.model_dump(mode="json"))

    async def _research_material(self, agent_input: AgentInput) -> list[Any]:
        upstream = dependency_results(agent_input)
        material = [upstream[key] for key in RESEARCH_AGENT_TYPES if key in upstream]
        if material:
            return material
        related = await self.context.cache.find_related(
            agent_input.matter_id,
            agent_input.query,
            agent_types=RESEARCH_AGENT_TYPES,
        )
        return [item.entry.result_data for item in related]
