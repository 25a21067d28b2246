from __future__ import annotations

import json
from typing import Any, ClassVar, Sequence

from ..core.logging import get_logger
from ..schemas.agents import (
    AgentInput,
    AgentOutput,
    AgentType,
    DeepLegalResearchResult,
    KeyLegalFinding,
    ResearchResult,
)
from ..services.cache import CacheableResult, CacheEntry, RankedEntry
from .base import LegalAgent, bullet_lines, first_sentence

logger = get_logger(name=__name__)

RESEARCH_AGENT_TYPES: tuple[str, ...] = (AgentType.RESEARCH.value, AgentType.DEEP_LEGAL_RESEARCH.value)
MAX_PRIOR_FINDINGS_CHARS = 1_500


def _cache_params(agent_input: AgentInput) -> dict[str, Any]:
    """Parameters that change the answer; orchestration bookkeeping is excluded."""
    return {
        key: value
        for key, value in agent_input.parameters.items()
        if key not in {"agent_type", "estimated_duration"}
    }


def _prior_findings(related: Sequence[RankedEntry]) -> str:
    if not related:
        return "None."
    lines: list[str] = []
    for item in related:
        summary = item.entry.summary or item.entry.title
        lines.append(f"- ({item.relevance_score:.2f}) {item.entry.original_query}: {summary}")
    return "\n".join(lines)[:MAX_PRIOR_FINDINGS_CHARS]


class ResearchAgent(LegalAgent):
    agent_type: ClassVar[AgentType] = AgentType.RESEARCH
    result_type: ClassVar[str] = "legal_research"
    system_prompt: ClassVar[str] = (
        "You are a meticulous legal researcher. Identify the governing rules, leading authorities, "
        "and open questions. Cite cases and statutes by name when you rely on them."
    )

    async def run(self, agent_input: AgentInput) -> AgentOutput:
        cache = self.context.cache
        params = _cache_params(agent_input)

        await self.log_execution(agent_input, "Checking for cached research results", 5)
        cached = await cache.lookup(
            agent_input.query,
            agent_input.matter_id,
            params,
            agent_type=self.agent_type.value,
        )
        if cached is not None:
            await self.log_execution(agent_input, "Using cached research results", 100)
            return self._from_cache(cached)

        related = await cache.find_related(
            agent_input.matter_id,
            agent_input.query,
            agent_types=RESEARCH_AGENT_TYPES,
        )
        if related:
            logger.info("research_related_cache", agent=self.agent_type.value, matches=len(related))

        await self.log_execution(agent_input, "Analyzing research question", 10)
        prompt = self.build_prompt(agent_input, related)
        await self.log_execution(agent_input, "Researching authorities", 30)
        response = await self.complete(prompt)
        await self.log_execution(agent_input, "Synthesizing findings", 70)
        result = self.build_result(agent_input, response)
        await self.log_execution(agent_input, "Formatting research results", 90)

        payload = result.model_dump(mode="json")
        await self.log_execution(agent_input, "Caching research results", 98)
        cache.store_detached(
            agent_input.matter_id,
            agent_input.query,
            CacheableResult(
                type=self.result_type,
                title=f"Research: {agent_input.query[:80]}",
                summary=result.summary,
                data=payload,
                metadata={"confidence": 1.0, "source_count": len(result.sources)},
            ),
            params,
            agent_type=self.agent_type.value,
        )
        return AgentOutput(
            success=True,
            result=payload,
            metadata={"cached": False, "related_cache_hits": len(related)},
        )

    def build_prompt(self, agent_input: AgentInput, related: Sequence[RankedEntry]) -> str:
        jurisdiction = agent_input.parameters.get("jurisdiction") or "unspecified"
        matter = agent_input.context.get("matter_info")
        return (
            f"Research question: {agent_input.query}\n"
            f"Jurisdiction: {jurisdiction}\n"
            f"Matter details: {json.dumps(matter, default=str) if matter else 'none'}\n"
            f"Prior findings on related questions:\n{_prior_findings(related)}\n\n"
            "Write a research memo. Start with a one sentence answer, then the analysis. "
            "List each authority you rely on as a bullet."
        )

    def build_result(self, agent_input: AgentInput, response: str) -> ResearchResult:
        return ResearchResult(
            response=response,
            sources=bullet_lines(response),
            query=agent_input.query,
            summary=first_sentence(response),
        )

    def _from_cache(self, entry: CacheEntry) -> AgentOutput:
        cache_info = {
            "original_query": entry.original_query,
            "cached_at": entry.created_at.isoformat(),
            "usage_count": entry.usage_count,
        }
        result = {**entry.result_data, "cached": True, "cache_info": cache_info}
        return AgentOutput(success=True, result=result, metadata={"cached": True, "cache_entry_id": entry.id})


class DeepLegalResearchAgent(ResearchAgent):
    agent_type: ClassVar[AgentType] = AgentType.DEEP_LEGAL_RESEARCH
    result_type: ClassVar[str] = "deep_legal_research"
    system_prompt: ClassVar[str] = (
        "You are a senior appellate researcher. Produce an exhaustive analysis across case law, "
        "statutes, regulations and secondary sources, flagging splits of authority and open questions."
    )

    def build_prompt(self, agent_input: AgentInput, related: Sequence[RankedEntry]) -> str:
        concepts = agent_input.parameters.get("legal_concepts") or []
        base = super().build_prompt(agent_input, related)
        return (
            f"{base}\n"
            f"Legal concepts to cover: {', '.join(concepts) if concepts else 'derive them from the question'}\n"
            "After the memo, add a section titled 'Further research' with one bullet per suggested pathway."
        )

    def build_result(self, agent_input: AgentInput, response: str) -> DeepLegalResearchResult:
        body, _, pathways = response.partition("Further research")
        findings = [KeyLegalFinding(finding=item) for item in bullet_lines(body)]
        return DeepLegalResearchResult(
            response=response,
            sources=bullet_lines(body),
            query=agent_input.query,
            summary=first_sentence(response),
            key_legal_findings=findings,
            research_pathways=bullet_lines(pathways),
        )
