from __future__ import annotations

import json
import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from ..core.logging import get_logger
from ..core.metrics import increment_intent_source
from ..services.llm import LLMService, is_llm_unavailable
from .enums import AnalysisDepth, Complexity, PrimaryAction, Urgency

logger = get_logger(name=__name__)

INTENT_SYSTEM_PROMPT = (
    "You classify requests sent to a litigation support team. "
    "Respond with a single JSON object and nothing else."
)

INTENT_PROMPT_TEMPLATE = """Analyze this legal request and determine the user's intent and requirements.

User Query: {query}

Return JSON with these keys:
{{
  "primaryAction": "research|writing|analysis|discovery|contract_analysis|timeline_generation",
  "secondaryActions": ["additional actions from the same list"],
  "documentTypes": ["contract|brief|memo|motion|agreement|discovery"],
  "analysisDepth": "summary|standard|comprehensive",
  "urgency": "low|normal|high",
  "complexity": "simple|moderate|complex",
  "practiceArea": "corporate|litigation|employment|ip|real_estate|tax|criminal|family|other",
  "jurisdiction": "federal|state|international|unknown",
  "keyRequirements": ["specific requirements extracted from the query"]
}}"""

# Ordered: the first matching row decides the primary action.
PRIMARY_ACTION_KEYWORDS: tuple[tuple[PrimaryAction, tuple[str, ...]], ...] = (
    (PrimaryAction.RESEARCH, ("research", "find", "search")),
    (PrimaryAction.WRITING, ("write", "draft", "generate")),
    (PrimaryAction.ANALYSIS, ("review", "analyze", "examine")),
    (PrimaryAction.DISCOVERY, ("discovery", "privilege")),
    (PrimaryAction.CONTRACT_ANALYSIS, ("contract",)),
    (
        PrimaryAction.TIMELINE_GENERATION,
        ("timeline", "schedule", "stages", "phases", "litigation process", "how long"),
    ),
)
DOCUMENT_TYPE_KEYWORDS: tuple[str, ...] = ("contract", "brief", "memo", "motion", "agreement", "discovery")
COMPREHENSIVE_KEYWORDS: tuple[str, ...] = ("comprehensive", "detailed", "thorough")
SUMMARY_KEYWORDS: tuple[str, ...] = ("quick", "brief", "summary")
HIGH_URGENCY_KEYWORDS: tuple[str, ...] = ("urgent", "asap", "immediately")
LOW_URGENCY_KEYWORDS: tuple[str, ...] = ("when possible", "no rush")

_CODE_FENCE = re.compile(r"```(?:json)?\s*|```")


class Intent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    primary_action: PrimaryAction
    secondary_actions: list[PrimaryAction] = Field(default_factory=list)
    document_types: list[str] = Field(default_factory=list)
    analysis_depth: AnalysisDepth = AnalysisDepth.STANDARD
    urgency: Urgency = Urgency.NORMAL
    complexity: Complexity = Complexity.MODERATE
    key_requirements: list[str] = Field(default_factory=list)
    practice_area: str | None = None
    jurisdiction: str | None = None
    source: Literal["llm", "fallback"] = "fallback"

    @field_validator("secondary_actions", mode="before")
    @classmethod
    def _known_actions_only(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        known = {action.value for action in PrimaryAction}
        return [item for item in value if isinstance(item, str) and item in known]

    @field_validator("document_types", "key_requirements", mode="before")
    @classmethod
    def _string_list(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [str(item) for item in value]


def _contains_any(text: str, keywords: tuple[str, ...]) -> bool:
    return any(keyword in text for keyword in keywords)


def keyword_intent(request_text: str) -> Intent:
    """Deterministic classification from substring checks on the lowercased request."""
    lowered = request_text.lower()

    primary = PrimaryAction.UNKNOWN
    for action, keywords in PRIMARY_ACTION_KEYWORDS:
        if _contains_any(lowered, keywords):
            primary = action
            break

    if _contains_any(lowered, COMPREHENSIVE_KEYWORDS):
        depth = AnalysisDepth.COMPREHENSIVE
    elif _contains_any(lowered, SUMMARY_KEYWORDS):
        depth = AnalysisDepth.SUMMARY
    else:
        depth = AnalysisDepth.STANDARD

    if _contains_any(lowered, HIGH_URGENCY_KEYWORDS):
        urgency = Urgency.HIGH
    elif _contains_any(lowered, LOW_URGENCY_KEYWORDS):
        urgency = Urgency.LOW
    else:
        urgency = Urgency.NORMAL

    complexity = {
        AnalysisDepth.COMPREHENSIVE: Complexity.COMPLEX,
        AnalysisDepth.SUMMARY: Complexity.SIMPLE,
    }.get(depth, Complexity.MODERATE)

    return Intent(
        primary_action=primary,
        document_types=[kind for kind in DOCUMENT_TYPE_KEYWORDS if kind in lowered],
        analysis_depth=depth,
        urgency=urgency,
        complexity=complexity,
        key_requirements=[request_text],
        source="fallback",
    )


def parse_intent_response(response: str) -> Intent:
    cleaned = _CODE_FENCE.sub("", response).strip()
    payload = json.loads(cleaned)
    if not isinstance(payload, dict):
        raise ValueError("intent response is not a JSON object")
    payload.pop("source", None)
    return Intent.model_validate({**payload, "source": "llm"})


class IntentAnalyzer:
    """Classifies a request with the language model, falling back to keywords."""

    def __init__(self, llm: LLMService | None = None, *, temperature: float = 0.0) -> None:
        self._llm = llm
        self._temperature = temperature

    async def analyze(self, request_text: str) -> Intent:
        if self._llm is None:
            increment_intent_source(source="fallback")
            return keyword_intent(request_text)
        try:
            response = await self._llm.generate(
                INTENT_PROMPT_TEMPLATE.format(query=request_text),
                system_prompt=INTENT_SYSTEM_PROMPT,
                temperature=self._temperature,
            )
            if is_llm_unavailable(response):
                raise RuntimeError("language model unavailable")
            intent = parse_intent_response(response)
        except (ValidationError, ValueError, RuntimeError) as exc:
            logger.warning("intent_analysis_fallback", error=str(exc))
            increment_intent_source(source="fallback")
            return keyword_intent(request_text)
        except Exception as exc:
            logger.exception("intent_analysis_fallback", error=str(exc))
            increment_intent_source(source="fallback")
            return keyword_intent(request_text)
        increment_intent_source(source="llm")
        logger.info("intent_analyzed", primary_action=intent.primary_action.value, source="llm")
        return intent
