from __future__ import annotations

import pytest

from legalflow.agents.base import AgentContext, bullet_lines, dependency_results, first_sentence
from legalflow.agents.contract import ContractAnalysisAgent
from legalflow.agents.discovery import DiscoveryAgent
from legalflow.agents.documents import DocumentAnalysisAgent
from legalflow.agents.drafting import BriefWritingAgent
from legalflow.agents.research import DeepLegalResearchAgent, ResearchAgent
from legalflow.agents.timeline import DEFAULT_CIVIL_STAGES, TimelineAgent
from legalflow.orchestration.enums import TaskStatus
from legalflow.queue.manager import TaskQueueManager
from legalflow.schemas.agents import AgentInput, AgentType
from legalflow.services.cache import CacheableResult, ResultCache

from tests.helpers.stubs import StubLLMService


def _context(llm: StubLLMService, *, tasks: TaskQueueManager | None = None) -> AgentContext:
    return AgentContext(llm=llm, cache=ResultCache(), tasks=tasks)  # type: ignore[arg-type]


def test_text_helpers() -> None:
    text = "Overview sentence. More detail.\n- first item\n2) second item\nnot a bullet"

    assert bullet_lines(text) == ["first item", "second item"]
    assert first_sentence(text) == "Overview sentence."
    assert dependency_results(
        AgentInput(query="q", context={"research_results": {"a": 1}, "timeline_results": None, "other": 1})
    ) == {"research": {"a": 1}}


@pytest.mark.asyncio
async def test_research_agent_caches_its_answer() -> None:
    llm = StubLLMService()
    agent = ResearchAgent(_context(llm))
    agent_input = AgentInput(query="Statute of limitations?", matter_id="m-1", parameters={"jurisdiction": "DE"})

    first = await agent.execute(agent_input)
    await agent.context.cache.drain()
    second = await agent.execute(agent_input)

    assert first.success is True
    assert first.result["summary"] == "The limitations period for breach of a written contract is six years."
    assert first.result["sources"] == ["Smith v. Jones, 123 F.3d 456 (3d Cir. 1997)", "10 Del. C. § 8106"]
    assert second.result["cached"] is True
    assert second.metadata["cache_entry_id"]
    assert len(llm.calls) == 1
    assert "Jurisdiction: DE" in llm.calls[0]["prompt"]
    assert first.execution_time >= 0


@pytest.mark.asyncio
async def test_research_prompt_mentions_related_findings() -> None:
    llm = StubLLMService()
    context = _context(llm)
    await context.cache.store(
        "m-1",
        "statute limitations breach contract",
        CacheableResult(type="legal_research", title="Earlier memo", data={}, summary="Six years in Delaware."),
        agent_type="research",
    )

    output = await ResearchAgent(context).execute(
        AgentInput(query="statute limitations breach warranty", matter_id="m-1")
    )

    assert output.metadata["related_cache_hits"] == 1
    assert "Six years in Delaware." in llm.calls[0]["prompt"]


@pytest.mark.asyncio
async def test_deep_research_extracts_findings_and_pathways() -> None:
    response = (
        "Courts are split.\n"
        "- The Third Circuit applies the discovery rule\n"
        "- The Ninth Circuit does not\n"
        "Further research\n"
        "- Survey state appellate decisions"
    )
    agent = DeepLegalResearchAgent(_context(StubLLMService(response)))

    output = await agent.execute(AgentInput(query="discovery rule accrual", parameters={"legal_concepts": ["accrual"]}))

    assert output.success is True
    findings = [item["finding"] for item in output.result["key_legal_findings"]]
    assert findings == ["The Third Circuit applies the discovery rule", "The Ninth Circuit does not"]
    assert output.result["research_pathways"] == ["Survey state appellate decisions"]


@pytest.mark.asyncio
async def test_brief_writing_uses_upstream_research() -> None:
    llm = StubLLMService("# Motion to Dismiss\n\nThe claim is time-barred.")
    agent = BriefWritingAgent(_context(llm))
    agent_input = AgentInput(
        query="prepare a motion to dismiss",
        context={"research_results": {"response": "six years"}},
    )

    output = await agent.execute(agent_input)

    assert output.result["document_type"] == "motion"
    assert output.result["title"] == "Motion to Dismiss"
    assert output.result["used_research"] is True
    assert output.result["word_count"] == 8
    assert "six years" in llm.calls[0]["prompt"]


@pytest.mark.asyncio
async def test_brief_writing_without_research() -> None:
    agent = BriefWritingAgent(_context(StubLLMService("Memorandum\nBody text.")))

    output = await agent.execute(AgentInput(query="write up the facts", parameters={"document_type": "opinion_letter"}))

    assert output.result["document_type"] == "opinion_letter"
    assert output.result["used_research"] is False


@pytest.mark.asyncio
async def test_discovery_flags_objections_and_privilege() -> None:
    response = (
        "We produce what we have.\n"
        "1. Responsive documents will be produced.\n"
        "2. Defendant objects as overly broad.\n"
        "3. Withheld as attorney-client privileged."
    )
    agent = DiscoveryAgent(_context(StubLLMService(response)))

    output = await agent.execute(
        AgentInput(query="respond to RFPs 1-3", parameters={"objection_basis": ["overbreadth"]})
    )

    responses = output.result["responses"]
    assert [item["request_number"] for item in responses] == [1, 2, 3]
    assert responses[1]["objections"] == ["Defendant objects as overly broad."]
    assert responses[2]["privilege_claimed"] is True
    assert responses[0]["privilege_claimed"] is False
    assert output.result["general_objections"] == ["overbreadth"]
    assert output.result["summary"] == "We produce what we have."


@pytest.mark.asyncio
async def test_contract_analysis_splits_sections() -> None:
    response = (
        "The lease favours the landlord.\n"
        "## Key terms\n- Ten year term\n"
        "**Risks**\n- Uncapped indemnity\n- Automatic renewal\n"
        "Recommendations:\n- Cap indemnity at fees paid"
    )
    agent = ContractAnalysisAgent(_context(StubLLMService(response)))

    output = await agent.execute(AgentInput(query="review the lease", documents=["lease.pdf"]))

    assert output.result["key_terms"] == ["Ten year term"]
    assert output.result["risks"] == ["Uncapped indemnity", "Automatic renewal"]
    assert output.result["recommendations"] == ["Cap indemnity at fees paid"]
    assert output.result["summary"] == "The lease favours the landlord."


@pytest.mark.asyncio
async def test_document_analysis_counts_documents() -> None:
    agent = DocumentAnalysisAgent(_context(StubLLMService("Section 4 controls.")))

    output = await agent.execute(
        AgentInput(query="which clause controls?", documents=["a.pdf", "b.pdf"], parameters={"document_type": "lease"})
    )

    assert output.result == {"analysis": "Section 4 controls.", "document_type": "lease", "documents_reviewed": 2}


@pytest.mark.asyncio
async def test_timeline_falls_back_to_default_stages() -> None:
    agent = TimelineAgent(_context(StubLLMService(unavailable=True)))

    output = await agent.execute(AgentInput(query="breach of contract suit"))

    assert output.success is True
    assert [stage["name"] for stage in output.result["stages"]] == [stage.name for stage in DEFAULT_CIVIL_STAGES]


@pytest.mark.asyncio
async def test_agent_reports_progress_against_its_task() -> None:
    tasks = TaskQueueManager()
    task = await tasks.create_task(agent_type=AgentType.TIMELINE, input_payload={"query": "q"})
    await tasks.update_task_status(task.id, TaskStatus.RUNNING)
    agent = TimelineAgent(_context(StubLLMService("- Trial: verdict | 1 week"), tasks=tasks))

    await agent.execute(AgentInput(query="q", context={"task_id": task.id}))

    steps = [execution.step for execution in await tasks.get_task_executions(task.id)]
    assert steps == ["Mapping litigation stages", "Timeline assembled"]


@pytest.mark.asyncio
async def test_blank_query_is_rejected_without_calling_the_model() -> None:
    llm = StubLLMService()

    output = await DocumentAnalysisAgent(_context(llm)).execute(AgentInput(query="   "))

    assert output.success is False
    assert output.error == "Invalid input: Query is required"
    assert llm.calls == []


def test_duration_estimate_scales_with_query_and_documents() -> None:
    agent = ResearchAgent(_context(StubLLMService()))

    assert agent.estimate_duration(AgentInput(query="short")) == 60
    assert agent.estimate_duration(AgentInput(query="x" * 201)) == 90
    assert agent.estimate_duration(AgentInput(query="short", documents=["a", "b"])) == 72
    assert agent.estimate_duration(AgentInput(query="short", documents=["d"] * 40)) == 180
