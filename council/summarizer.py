"""Stage and final summaries: build a transcript, call the summarizer executor, parse bullets."""

import logging
import re

from config.config_loader import PromptsConfig
from council.agents import execute_with_retry, format_agent_list
from council.interaction_log import InteractionLogger
from council.models import STAGE_ORDER, Agent, DialogueStage, Message, StageSummary, SummaryPoint
from council.providers.base import AIExecutor

logger = logging.getLogger(__name__)

_BULLET_RE = re.compile(r"^\s*[-*•]\s*(?:\*\*)?([^:：*]+?)(?:\*\*)?\s*[:：]\s*(.+)$")


def _format_transcript(messages: list[Message], agents: list[Agent]) -> str:
    names = {a.id: a.name for a in agents}
    parts = []
    for m in messages:
        if m.role != "agent":
            continue
        parts.append(f"**{names.get(m.agent_id, m.agent_id)} ({m.agent_id})**\n{m.content}")
    return "\n\n".join(parts)


def parse_summary_points(text: str) -> list[SummaryPoint]:
    """Read ``- speaker: position`` bullets; anything else becomes one system point."""
    points = []
    for line in text.splitlines():
        match = _BULLET_RE.match(line)
        if match:
            points.append(SummaryPoint(speaker=match.group(1).strip(), position=match.group(2).strip()))
    if not points and text.strip():
        points.append(SummaryPoint(speaker="system", position=text.strip()))
    return points


def format_summary_message(stage: DialogueStage | str, summary: StageSummary) -> str:
    lines = [f"{stage} summary:"]
    lines += [f"- **{p.speaker}**: {p.position}" for p in summary.summary]
    return "\n".join(lines)


def format_summaries(summaries: list[StageSummary]) -> str:
    blocks = []
    for s in summaries:
        points = "\n".join(f"- {p.speaker}: {p.position}" for p in s.summary)
        blocks.append(f"### {s.stage}\n{points}")
    return "\n\n".join(blocks)


class StageSummarizer:
    """Summarizes stages through a single, non-participant executor."""

    def __init__(
        self,
        executor: AIExecutor,
        prompts: PromptsConfig,
        interaction_logger: InteractionLogger | None = None,
    ) -> None:
        self._executor = executor
        self._prompts = prompts
        self._interaction_logger = interaction_logger

    async def summarize_stage(
        self,
        stage: DialogueStage,
        messages: list[Message],
        agents: list[Agent],
        session_id: str,
        language: str = "en",
        sequence_number: int = 1,
    ) -> StageSummary:
        """Summarize one stage into a bullet per speaker.

        Raises:
            ProviderError: If the summarizer call fails.
        """
        prompt = self._prompts.stage_summary.format(
            stage=stage,
            transcript=_format_transcript(messages, agents),
            agent_list=format_agent_list(agents),
            language_instruction=self._prompts.languages.get(language, ""),
        )
        logger.info("Summarizing stage %s via %s", stage, self._executor.name())
        completion = await execute_with_retry(
            self._executor,
            prompt,
            interaction_logger=self._interaction_logger,
            session_id=session_id,
            stage=f"{stage}-summary",
            agent_id="summarizer",
            agent_name=self._executor.name(),
        )
        return StageSummary(
            stage=stage,
            summary=parse_summary_points(completion.content),
            sequence_number=sequence_number,
            stage_number=STAGE_ORDER[stage],
        )

    async def generate_final_summary(
        self,
        summaries: list[StageSummary],
        agents: list[Agent],
        session_id: str,
        language: str = "en",
    ) -> str:
        """Overall summary across stage summaries.

        Raises:
            ProviderError: If the summarizer call fails.
            RuntimeError: If the summarizer returns empty content.
        """
        prompt = self._prompts.final_summary.format(
            summaries=format_summaries(summaries),
            agent_list=format_agent_list(agents),
            language_instruction=self._prompts.languages.get(language, ""),
        )
        completion = await execute_with_retry(
            self._executor,
            prompt,
            interaction_logger=self._interaction_logger,
            session_id=session_id,
            stage="final-summary",
            agent_id="summarizer",
            agent_name=self._executor.name(),
        )
        if not completion.content.strip():
            raise RuntimeError(f"Summarizer {self._executor.name()} returned empty content")
        return completion.content
