from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from pydantic import BaseModel, ValidationError

from ..schemas.agents import (
    AgentCapabilityMetadata,
    AgentInput,
    AgentOutput,
    AgentType,
    ContractAnalysisResult,
    DeepLegalResearchParameters,
    DeepLegalResearchResult,
    DiscoveryParameters,
    DiscoveryResult,
    DocumentAnalysisParameters,
    DocumentAnalysisResult,
    DraftingParameters,
    DraftingResult,
    ResearchParameters,
    ResearchResult,
    TimelineResult,
)


class _NoParameters(BaseModel):
    pass


@dataclass(slots=True)
class AgentContract:
    metadata: AgentCapabilityMetadata
    parameters_model: type[BaseModel]
    result_model: type[BaseModel]

    def validate_request(self, payload: dict[str, Any]) -> AgentInput:
        data = AgentInput.model_validate(payload)
        self.parameters_model.model_validate(data.parameters)
        return data

    def validate_response(self, payload: dict[str, Any]) -> AgentOutput:
        data = AgentOutput.model_validate(payload)
        if data.success:
            if data.result is None:
                raise ValueError("successful output carries no result")
            result = self.result_model.model_validate(data.result)
            data = data.model_copy(update={"result": result.model_dump(mode="json")})
        return data


def _build_contracts() -> Dict[AgentType, AgentContract]:
    return {
        AgentType.RESEARCH: AgentContract(
            metadata=AgentCapabilityMetadata(
                agent_type=AgentType.RESEARCH,
                name="Legal Research",
                description="Answers legal research questions with case law and statutory context.",
                input_types=["query", "jurisdiction"],
                output_types=["research_memo", "citations"],
                estimated_duration=60,
            ),
            parameters_model=ResearchParameters,
            result_model=ResearchResult,
        ),
        AgentType.DEEP_LEGAL_RESEARCH: AgentContract(
            metadata=AgentCapabilityMetadata(
                agent_type=AgentType.DEEP_LEGAL_RESEARCH,
                name="Deep Legal Research",
                description="Multi-source legal analysis across cases, statutes and secondary sources.",
                input_types=["query", "jurisdiction", "legal_concepts"],
                output_types=["research_memo", "key_findings", "citations"],
                estimated_duration=180,
            ),
            parameters_model=DeepLegalResearchParameters,
            result_model=DeepLegalResearchResult,
        ),
        AgentType.BRIEF_WRITING: AgentContract(
            metadata=AgentCapabilityMetadata(
                agent_type=AgentType.BRIEF_WRITING,
                name="Brief Writing",
                description="Drafts memoranda, briefs and motions from research results.",
                input_types=["query", "research_results"],
                output_types=["draft_document"],
                estimated_duration=120,
            ),
            parameters_model=DraftingParameters,
            result_model=DraftingResult,
        ),
        AgentType.DISCOVERY: AgentContract(
            metadata=AgentCapabilityMetadata(
                agent_type=AgentType.DISCOVERY,
                name="Discovery Review",
                description="Prepares discovery responses, objections and privilege assessments.",
                input_types=["query", "documents"],
                output_types=["discovery_responses"],
                estimated_duration=180,
            ),
            parameters_model=DiscoveryParameters,
            result_model=DiscoveryResult,
        ),
        AgentType.CONTRACT: AgentContract(
            metadata=AgentCapabilityMetadata(
                agent_type=AgentType.CONTRACT,
                name="Contract Analysis",
                description="Extracts key terms and risks from contracts and agreements.",
                input_types=["query", "documents"],
                output_types=["contract_analysis"],
                estimated_duration=90,
            ),
            parameters_model=_NoParameters,
            result_model=ContractAnalysisResult,
        ),
        AgentType.DOCUMENT_ANALYSIS: AgentContract(
            metadata=AgentCapabilityMetadata(
                agent_type=AgentType.DOCUMENT_ANALYSIS,
                name="Document Analysis",
                description="Reviews matter documents and answers questions about their content.",
                input_types=["query", "documents"],
                output_types=["document_analysis"],
                estimated_duration=90,
            ),
            parameters_model=DocumentAnalysisParameters,
            result_model=DocumentAnalysisResult,
        ),
        AgentType.TIMELINE: AgentContract(
            metadata=AgentCapabilityMetadata(
                agent_type=AgentType.TIMELINE,
                name="Litigation Timeline",
                description="Lays out litigation stages with expected durations.",
                input_types=["query"],
                output_types=["timeline"],
                estimated_duration=60,
            ),
            parameters_model=_NoParameters,
            result_model=TimelineResult,
        ),
    }


_CONTRACTS = _build_contracts()


def get_contract(agent_type: AgentType) -> AgentContract:
    return _CONTRACTS[agent_type]


def list_contracts() -> list[AgentCapabilityMetadata]:
    return [contract.metadata for contract in _CONTRACTS.values()]


def _describe(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in error['loc']) or 'payload'}: {error['msg']}" for error in exc.errors()
    )


def validate_agent_request(agent_type: AgentType, payload: dict[str, Any]) -> AgentInput:
    contract = get_contract(agent_type)
    try:
        return contract.validate_request(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid input for capability {agent_type.value}: {_describe(exc)}") from exc


def validate_agent_response(agent_type: AgentType, payload: dict[str, Any]) -> AgentOutput:
    contract = get_contract(agent_type)
    try:
        return contract.validate_response(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid response for capability {agent_type.value}: {_describe(exc)}") from exc
    except ValueError as exc:
        raise ValueError(f"Invalid response for capability {agent_type.value}: {exc}") from exc
