from __future__ import annotations

from typing import ClassVar

from ..schemas.agents import AgentInput, AgentOutput, AgentType, ContractAnalysisResult
from .base import LegalAgent, bullet_lines, first_sentence


class ContractAnalysisAgent(LegalAgent):
    agent_type: ClassVar[AgentType] = AgentType.CONTRACT
    system_prompt: ClassVar[str] = (
        "You review commercial contracts for a careful client. Identify key terms, allocate risk, "
        "and recommend concrete revisions."
    )

    async def run(self, agent_input: AgentInput) -> AgentOutput:
        await self.log_execution(agent_input, "Reading contract terms", 20)
        documents = ", ".join(agent_input.documents) if agent_input.documents else "the contract described below"
        prompt = (
            f"Review {documents}.\n"
            f"Instructions: {agent_input.query}\n\n"
            "Answer in three sections titled 'Key terms', 'Risks' and 'Recommendations', "
            "each a bulleted list, preceded by a one sentence summary."
        )
        text = await self.complete(prompt)
        await self.log_execution(agent_input, "Assessing contract risk", 75)

        sections = _split_sections(text, ("Key terms", "Risks", "Recommendations"))
        result = ContractAnalysisResult(
            summary=first_sentence(text),
            key_terms=bullet_lines(sections.get("Key terms", "")),
            risks=bullet_lines(sections.get("Risks", "")),
            recommendations=bullet_lines(sections.get("Recommendations", "")),
        )
        return AgentOutput(success=True, result=result.model_dump(mode="json"))


def _split_sections(text: str, headings: tuple[str, ...]) -> dict[str, str]:
    sections: dict[str, str] = {}
    current: str | None = None
    for line in text.splitlines():
        label = line.strip().strip("#*: ").strip()
        matched = next((heading for heading in headings if label.lower() == heading.lower()), None)
        if matched is not None:
            current = matched
            sections.setdefault(current, "")
            continue
        if current is not None:
            sections[current] += line + "\n"
    return sections
