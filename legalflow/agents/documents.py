from __future__ import annotations

from typing import ClassVar

from ..schemas.agents import AgentInput, AgentOutput, AgentType, DocumentAnalysisResult
from .base import LegalAgent


class DocumentAnalysisAgent(LegalAgent):
    agent_type: ClassVar[AgentType] = AgentType.DOCUMENT_ANALYSIS
    system_prompt: ClassVar[str] = (
        "You analyze legal documents. Quote the passages you rely on and say plainly when the "
        "documents do not answer the question."
    )

    async def run(self, agent_input: AgentInput) -> AgentOutput:
        document_type = agent_input.parameters.get("document_type") or "general"
        focus = agent_input.parameters.get("focus_areas") or []
        await self.log_execution(agent_input, "Loading documents", 10)
        prompt = (
            f"Document type: {document_type}\n"
            f"Documents: {', '.join(agent_input.documents) if agent_input.documents else 'none attached'}\n"
            f"Focus areas: {', '.join(focus) if focus else 'none'}\n"
            f"Question: {agent_input.query}"
        )
        await self.log_execution(agent_input, "Analyzing document content", 40)
        analysis = await self.complete(prompt)
        result = DocumentAnalysisResult(
            analysis=analysis,
            document_type=document_type,
            documents_reviewed=len(agent_input.documents),
        )
        return AgentOutput(success=True, result=result.model_dump(mode="json"))
