from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


class AgentType(str, Enum):
    RESEARCH = "research"
    DEEP_LEGAL_RESEARCH = "deep-legal-research"
    BRIEF_WRITING = "brief-writing"
    DISCOVERY = "discovery"
    CONTRACT = "contract"
    DOCUMENT_ANALYSIS = "document-analysis"
    TIMELINE = "timeline"


CitationType = Literal["case", "statute", "regulation", "web", "document"]


class Citation(BaseModel):
    id: str
    type: CitationType
    title: str | None = None
    citation: str | None = None
    url: str | None = None
    court: str | None = None
    date: str | None = None
    relevance: float | None = Field(default=None, ge=0.0, le=1.0)


class AgentInput(BaseModel):
    matter_id: str | None = None
    query: str = Field(..., min_length=1)
    context: dict[str, Any] = Field(default_factory=dict)
    documents: list[str] = Field(default_factory=list)
    parameters: dict[str, Any] = Field(default_factory=dict)


class AgentOutput(BaseModel):
    success: bool
    result: Any = None
    citations: list[Citation] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    execution_time: float = Field(default=0.0, ge=0.0, description="Wall-clock seconds spent in execute().")


class AgentCapabilityMetadata(BaseModel):
    agent_type: AgentType
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    input_types: list[str] = Field(default_factory=list)
    output_types: list[str] = Field(default_factory=list)
    estimated_duration: int = Field(60, ge=1, description="Rough duration estimate in seconds.")
    required_context: list[str] = Field(default_factory=list)


# ──────────────────────────────────────────────────────────────────────────────
# Per-agent parameter and result shapes
# ──────────────────────────────────────────────────────────────────────────────


class DateRange(BaseModel):
    start: str | None = None
    end: str | None = None


class ResearchParameters(BaseModel):
    jurisdiction: str | None = None
    date_range: DateRange | None = None
    court: str | None = None
    include_statutes: bool | None = None
    include_regulations: bool | None = None
    max_results: int | None = Field(default=None, ge=1, le=100)


class ResearchResult(BaseModel):
    response: str
    sources: list[Any] = Field(default_factory=list)
    query: str
    summary: str | None = None
    cached: bool = False
    cache_info: dict[str, Any] | None = None


class KeyLegalFinding(BaseModel):
    finding: str
    supporting_sources: list[int] = Field(default_factory=list)
    legal_certainty: Literal["high", "medium", "low", "unclear"] | None = None


class DeepLegalResearchParameters(ResearchParameters):
    legal_concepts: list[str] = Field(default_factory=list)
    max_total_sources: int = Field(20, ge=5, le=100)


class DeepLegalResearchResult(ResearchResult):
    key_legal_findings: list[KeyLegalFinding] = Field(default_factory=list)
    research_pathways: list[str] = Field(default_factory=list)


DraftDocumentType = Literal[
    "legal_memorandum",
    "motion",
    "legal_brief",
    "contract_analysis",
    "discovery_response",
    "opinion_letter",
]


class DraftingParameters(BaseModel):
    document_type: DraftDocumentType | None = None
    template: str | None = None
    style: Literal["formal", "concise", "detailed"] | None = None
    max_pages: int | None = Field(default=None, ge=1, le=100)


class DraftingResult(BaseModel):
    document_type: str
    title: str
    content: str = Field(..., min_length=1)
    word_count: int = Field(0, ge=0)
    used_research: bool = False


class DiscoveryParameters(BaseModel):
    discovery_type: Literal["interrogatories", "document_requests", "admissions", "depositions"] | None = None
    response_deadline: str | None = None
    objection_basis: list[str] = Field(default_factory=list)
    privilege_log: bool | None = None


class DiscoveryResponseItem(BaseModel):
    request_number: int = Field(..., ge=1)
    request: str
    response: str
    objections: list[str] = Field(default_factory=list)
    privilege_claimed: bool = False


class DiscoveryResult(BaseModel):
    discovery_type: str
    responses: list[DiscoveryResponseItem] = Field(default_factory=list)
    general_objections: list[str] = Field(default_factory=list)
    summary: str


class ContractAnalysisResult(BaseModel):
    summary: str
    key_terms: list[str] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class DocumentAnalysisParameters(BaseModel):
    document_type: str | None = None
    analysis_type: Literal["interactive_analysis", "document_qa", "section_review", "type_detection"] | None = None
    focus_areas: list[str] = Field(default_factory=list)


class DocumentAnalysisResult(BaseModel):
    analysis: str
    document_type: str
    documents_reviewed: int = Field(0, ge=0)


class TimelineStage(BaseModel):
    name: str
    description: str
    estimated_duration: str | None = None


class TimelineResult(BaseModel):
    response: str
    stages: list[TimelineStage] = Field(default_factory=list)
