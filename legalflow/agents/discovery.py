from __future__ import annotations

import re
from typing import ClassVar

from ..schemas.agents import AgentInput, AgentOutput, AgentType, DiscoveryResponseItem, DiscoveryResult
from .base import LegalAgent, bullet_lines, first_sentence

_OBJECTION = re.compile(r"\bobject(?:ion|s)?\b", re.IGNORECASE)
_PRIVILEGE = re.compile(r"\bprivilege[d]?\b|\bwork product\b", re.IGNORECASE)


class DiscoveryAgent(LegalAgent):
    agent_type: ClassVar[AgentType] = AgentType.DISCOVERY
    system_prompt: ClassVar[str] = (
        "You are a discovery specialist. Respond to each request in a numbered list, state objections "
        "explicitly, and flag anything protected by privilege or the work product doctrine."
    )

    async def run(self, agent_input: AgentInput) -> AgentOutput:
        discovery_type = agent_input.parameters.get("discovery_type") or "document_requests"
        objection_basis = agent_input.parameters.get("objection_basis") or []
        await self.log_execution(agent_input, "Reviewing discovery requests", 15)

        documents = ", ".join(agent_input.documents) if agent_input.documents else "none provided"
        prompt = (
            f"Discovery type: {discovery_type}\n"
            f"Requests and instructions: {agent_input.query}\n"
            f"Documents under review: {documents}\n"
            f"Preferred objection grounds: {', '.join(objection_basis) if objection_basis else 'none'}\n\n"
            "Begin with a one sentence overview, then give one numbered response per request."
        )
        text = await self.complete(prompt)
        await self.log_execution(agent_input, "Assessing objections and privilege", 70)

        responses = [
            DiscoveryResponseItem(
                request_number=index,
                request=f"Request {index}",
                response=item,
                objections=[item] if _OBJECTION.search(item) else [],
                privilege_claimed=bool(_PRIVILEGE.search(item)),
            )
            for index, item in enumerate(bullet_lines(text), start=1)
        ]
        result = DiscoveryResult(
            discovery_type=discovery_type,
            responses=responses,
            general_objections=list(objection_basis),
            summary=first_sentence(text),
        )
        return AgentOutput(success=True, result=result.model_dump(mode="json"))
