from __future__ import annotations

from typing import ClassVar

from ..core.logging import get_logger
from ..schemas.agents import AgentInput, AgentOutput, AgentType, TimelineResult, TimelineStage
from .base import LanguageModelUnavailable, LegalAgent, bullet_lines

logger = get_logger(name=__name__)

DEFAULT_CIVIL_STAGES: tuple[TimelineStage, ...] = (
    TimelineStage(name="Pleadings", description="Complaint, answer and early motions.", estimated_duration="1-3 months"),
    TimelineStage(name="Discovery", description="Written discovery, document production and depositions.", estimated_duration="6-12 months"),
    TimelineStage(name="Dispositive motions", description="Summary judgment briefing and rulings.", estimated_duration="2-4 months"),
    TimelineStage(name="Pretrial", description="Pretrial conference, motions in limine and exhibit lists.", estimated_duration="1-2 months"),
    TimelineStage(name="Trial", description="Jury selection, presentation of evidence and verdict.", estimated_duration="1-3 weeks"),
    TimelineStage(name="Post-trial", description="Post-trial motions and notice of appeal.", estimated_duration="1-2 months"),
)


def _parse_stage(line: str) -> TimelineStage:
    name, _, rest = line.partition(":")
    description, _, duration = rest.partition("|")
    return TimelineStage(
        name=name.strip(),
        description=(description or name).strip(),
        estimated_duration=duration.strip() or None,
    )


class TimelineAgent(LegalAgent):
    agent_type: ClassVar[AgentType] = AgentType.TIMELINE
    system_prompt: ClassVar[str] = (
        "You are a litigation project manager. Break matters into procedural stages with realistic durations."
    )

    async def run(self, agent_input: AgentInput) -> AgentOutput:
        await self.log_execution(agent_input, "Mapping litigation stages", 20)
        prompt = (
            f"Matter: {agent_input.query}\n\n"
            "List each stage as a bullet in the form 'Stage name: what happens | expected duration'."
        )
        try:
            text = await self.complete(prompt)
            stages = [_parse_stage(line) for line in bullet_lines(text)]
        except LanguageModelUnavailable:
            logger.warning("timeline_default_stages", reason="llm_unavailable")
            text = ""
            stages = []
        if not stages:
            stages = list(DEFAULT_CIVIL_STAGES)
            text = "\n".join(f"- {stage.name}: {stage.description} | {stage.estimated_duration}" for stage in stages)
        await self.log_execution(agent_input, "Timeline assembled", 90)
        result = TimelineResult(response=text, stages=stages)
        return AgentOutput(success=True, result=result.model_dump(mode="json"))
