"""Dialogue agents: one persona bound to one AI executor, with a method per stage."""

import logging
import re
import time

from config.config_loader import AgentConfig, PromptsConfig
from council.conflicts import format_conflicts
from council.consensus import parse_consensus_response
from council.interaction_log import InteractionLogEntry, InteractionLogger
from council.models import (
    Agent,
    AgentResponse,
    Completion,
    Conflict,
    ConsensusIndicator,
    DialogueStage,
    FacilitatorAction,
    Message,
    Reflection,
    StageData,
    VotingResults,
)
from council.parsing import extract_json, parse_bool, truncate
from council.providers.base import AIExecutor, ProviderError

logger = logging.getLogger(__name__)

_APPROACH_RE = re.compile(r"^\s*\**Approach\**\s*[:：]\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_SUMMARY_RE = re.compile(r"^\s*\**Summary\**\s*[:：]\s*(.+)$", re.IGNORECASE | re.MULTILINE)

_CONCLUSION_CHARS = 200


async def execute_with_retry(
    executor: AIExecutor,
    prompt: str,
    context: str = "",
    *,
    interaction_logger: InteractionLogger | None = None,
    session_id: str = "",
    stage: str = "",
    agent_id: str = "",
    agent_name: str = "",
) -> Completion:
    """Call an executor, retrying once on timeout with 1.5x the executor's default timeout.

    Every attempt is written to the interaction log when a logger is given.

    Raises:
        ProviderError: When the call (and its single retry) fails.
    """

    def _log(output: str, duration: float, status: str, error: str = "") -> None:
        if interaction_logger is None:
            return
        interaction_logger.save_interaction_log(InteractionLogEntry(
            session_id=session_id, stage=stage, agent_id=agent_id, agent_name=agent_name,
            prompt=prompt, output=output, duration_sec=duration, status=status, error=error,
        ))

    start = time.monotonic()
    try:
        completion = await executor.execute(prompt, context)
    except ProviderError as exc:
        _log("", time.monotonic() - start, "timeout" if exc.timed_out else "error", str(exc))
        if not exc.timed_out:
            raise

        default_timeout = executor.timeout_sec()
        retry_timeout = default_timeout * 1.5 if default_timeout else None
        logger.warning("Executor %s timed out for %s, retrying once", executor.name(), agent_id or stage)

        start = time.monotonic()
        try:
            completion = await executor.execute(prompt, context, timeout_sec=retry_timeout)
        except ProviderError as retry_exc:
            _log("", time.monotonic() - start, "timeout" if retry_exc.timed_out else "error", str(retry_exc))
            raise

    _log(completion.content, time.monotonic() - start, "success")
    return completion


def agent_from_config(cfg: AgentConfig) -> Agent:
    return Agent(
        id=cfg.id,
        name=cfg.name,
        style=cfg.style,
        priority=cfg.priority,
        tone=cfg.tone,
        personality=cfg.personality,
        preferences=list(cfg.preferences),
        reading=cfg.reading,
        approach=cfg.approach,
    )


def format_messages(messages: list[Message]) -> str:
    if not messages:
        return "(no previous messages)"
    lines = []
    for m in messages:
        speaker = "user" if m.role == "user" else m.agent_id
        lines.append(f"[{speaker}] {m.content}")
    return "\n\n".join(lines)


def format_agent_list(agents: list[Agent]) -> str:
    return ", ".join(f"{a.id} ({a.name})" for a in agents)


def parse_reflections(text: str, valid_targets: set[str]) -> list[Reflection]:
    """Read the JSON reflections block. Unknown targets are dropped; no block means no reflections."""
    try:
        payload = extract_json(text)
    except ValueError:
        logger.debug("No reflections block in mutual-reflection reply")
        return []
    items = payload.get("reflections", []) if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        return []

    reflections = []
    for item in items:
        if not isinstance(item, dict):
            continue
        target = str(item.get("target", item.get("target_agent_id", "")))
        if target not in valid_targets:
            continue
        questions = item.get("questions", [])
        reflections.append(Reflection(
            target_agent_id=target,
            reaction=str(item.get("reaction", "")),
            agreement=parse_bool(item.get("agreement", True)),
            questions=[str(q) for q in questions] if isinstance(questions, list) else [str(questions)],
        ))
    return reflections


class DialogueAgent:
    """A participant: an Agent descriptor, an executor and the shared prompt templates."""

    def __init__(
        self,
        agent: Agent,
        executor: AIExecutor,
        prompts: PromptsConfig,
        interaction_logger: InteractionLogger | None = None,
    ) -> None:
        self.agent = agent
        self.executor = executor
        self.prompts = prompts
        self.interaction_logger = interaction_logger
        self.session_id = ""

    @property
    def id(self) -> str:
        return self.agent.id

    def persona(self, language: str) -> str:
        a = self.agent
        return self.prompts.persona.format(
            id=a.id,
            name=a.name,
            style=a.style,
            priority=a.priority,
            tone=a.tone,
            personality=a.personality,
            preferences=", ".join(a.preferences),
            approach=a.approach,
            language_instruction=self.prompts.languages.get(language, ""),
        )

    async def _ask(self, stage: str, prompt: str, language: str) -> str:
        completion = await execute_with_retry(
            self.executor,
            prompt,
            self.persona(language),
            interaction_logger=self.interaction_logger,
            session_id=self.session_id,
            stage=stage,
            agent_id=self.agent.id,
            agent_name=self.agent.name,
        )
        return completion.content

    def _response(
        self,
        stage: DialogueStage | None,
        content: str,
        stage_data: StageData | None = None,
    ) -> AgentResponse:
        summary = stage_data.summary if stage_data and stage_data.summary else truncate(content, 120)
        return AgentResponse(
            agent_id=self.agent.id,
            content=content,
            stage=stage,
            reasoning=summary,
            stage_data=stage_data,
        )

    async def individual_thought(
        self,
        query: str,
        context: list[Message],
        language: str = "en",
        previous_input: str = "",
        previous_conclusions: dict[str, str] | None = None,
    ) -> AgentResponse:
        previous_context = ""
        if previous_input:
            lines = [f"Previous question: {previous_input}"]
            for agent_id, conclusion in (previous_conclusions or {}).items():
                lines.append(f"- {agent_id}: {truncate(conclusion, _CONCLUSION_CHARS)}")
            previous_context = "Context from the previous discussion:\n" + "\n".join(lines) + "\n"

        prompt = self.prompts.individual_thought.format(
            query=query, context=format_messages(context), previous_context=previous_context,
        )
        content = await self._ask(DialogueStage.INDIVIDUAL_THOUGHT, prompt, language)

        approach = _APPROACH_RE.search(content)
        summary = _SUMMARY_RE.search(content)
        stage_data = StageData(
            agent_id=self.agent.id,
            content=content,
            summary=summary.group(1).strip() if summary else "",
            approach=approach.group(1).strip() if approach else self.agent.approach or self.agent.style,
        )
        return self._response(DialogueStage.INDIVIDUAL_THOUGHT, content, stage_data)

    async def mutual_reflection(
        self,
        query: str,
        other_thoughts: list[StageData],
        context: list[Message],
        language: str = "en",
    ) -> AgentResponse:
        others = "\n\n".join(f"[{t.agent_id}] ({t.approach})\n{t.content}" for t in other_thoughts)
        target_ids = [t.agent_id for t in other_thoughts]
        prompt = self.prompts.mutual_reflection.format(
            query=query,
            other_thoughts=others,
            context=format_messages(context),
            agent_ids=", ".join(target_ids),
        )
        content = await self._ask(DialogueStage.MUTUAL_REFLECTION, prompt, language)
        stage_data = StageData(
            agent_id=self.agent.id,
            content=content,
            reflections=parse_reflections(content, set(target_ids)),
        )
        return self._response(DialogueStage.MUTUAL_REFLECTION, content, stage_data)

    async def conflict_resolution(
        self,
        query: str,
        conflicts: list[Conflict],
        context: list[Message],
        language: str = "en",
    ) -> AgentResponse:
        prompt = self.prompts.conflict_resolution.format(
            query=query, conflicts=format_conflicts(conflicts), context=format_messages(context),
        )
        content = await self._ask(DialogueStage.CONFLICT_RESOLUTION, prompt, language)
        return self._response(DialogueStage.CONFLICT_RESOLUTION, content)

    async def synthesis_attempt(
        self,
        query: str,
        synthesis_data: str,
        context: list[Message],
        language: str = "en",
    ) -> AgentResponse:
        prompt = self.prompts.synthesis_attempt.format(
            query=query, synthesis_data=synthesis_data, context=format_messages(context),
        )
        content = await self._ask(DialogueStage.SYNTHESIS_ATTEMPT, prompt, language)
        return self._response(DialogueStage.SYNTHESIS_ATTEMPT, content)

    async def output_generation(
        self,
        query: str,
        context: list[Message],
        agents: list[Agent],
        language: str = "en",
    ) -> AgentResponse:
        prompt = self.prompts.output_generation.format(
            query=query, context=format_messages(context), agent_list=format_agent_list(agents),
        )
        content = await self._ask(DialogueStage.OUTPUT_GENERATION, prompt, language)
        return self._response(DialogueStage.OUTPUT_GENERATION, content)

    async def finalize(
        self,
        query: str,
        voting_results: VotingResults,
        context: list[Message],
        language: str = "en",
    ) -> AgentResponse:
        voting_summary = "\n".join(f"- {voter} -> {target}" for voter, target in voting_results.items())
        prompt = self.prompts.finalize.format(
            query=query,
            voting_summary=voting_summary or "(no votes cast)",
            context=format_messages(context),
        )
        content = await self._ask(DialogueStage.FINALIZE, prompt, language)
        return self._response(DialogueStage.FINALIZE, content)

    async def consensus_check(
        self,
        query: str,
        context: list[Message],
        round_number: int,
        language: str = "en",
    ) -> ConsensusIndicator:
        prompt = self.prompts.consensus_check.format(
            query=query, context=format_messages(context), round=round_number,
        )
        content = await self._ask("consensus-check", prompt, language)
        return parse_consensus_response(content, self.agent.id)

    async def respond_to_action(
        self,
        action: FacilitatorAction,
        query: str,
        context: list[Message],
        language: str = "en",
    ) -> AgentResponse:
        prompt = self.prompts.facilitator_action.format(
            query=query,
            action_type=action.type.replace("_", " "),
            reason=action.reason,
            context=format_messages(context),
        )
        content = await self._ask(f"action-{action.type}", prompt, language)
        return self._response(None, content)

    async def cast_vote(
        self,
        query: str,
        context: list[Message],
        agents: list[Agent],
        language: str = "en",
    ) -> AgentResponse:
        prompt = self.prompts.vote.format(
            query=query, context=format_messages(context), agent_list=format_agent_list(agents),
        )
        content = await self._ask("vote", prompt, language)
        return self._response(None, content)


class AgentRegistry:
    """Registered DialogueAgents in canonical (registration) order."""

    def __init__(self, agents: list[DialogueAgent] | None = None) -> None:
        self._agents: dict[str, DialogueAgent] = {}
        for agent in agents or []:
            self.register(agent)

    def register(self, agent: DialogueAgent) -> None:
        if agent.id in self._agents:
            raise ValueError(f"Agent already registered: {agent.id}")
        self._agents[agent.id] = agent

    def get(self, agent_id: str) -> DialogueAgent | None:
        return self._agents.get(agent_id)

    def select(self, agent_ids: list[str] | None = None) -> list[DialogueAgent]:
        """Agents for ``agent_ids`` (unknown ids skipped), or every agent."""
        if agent_ids is None:
            return list(self._agents.values())
        return [self._agents[i] for i in agent_ids if i in self._agents]

    def descriptors(self, agent_ids: list[str] | None = None) -> list[Agent]:
        return [a.agent for a in self.select(agent_ids)]

    def __len__(self) -> int:
        return len(self._agents)
