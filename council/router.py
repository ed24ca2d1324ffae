"""Stage orchestration: the per-session state machine that drives agents through the pipeline.

Each call to ``execute_stage`` commits the stage's state transition (messages,
history, votes) first and then queues a list of post-stage effects (stage
summaries, final output). Effects run in the background, one batch after
another, so their pacing delays never hold up the next stage; summary stages,
new sequences and ``run_sequence`` wait for the queue with ``drain_effects``.
"""

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import datetime

from config.config_loader import DelayConfig
from council.agents import AgentRegistry, DialogueAgent
from council.conflicts import ConflictIdentifier
from council.models import (
    SUMMARY_SOURCES,
    AgentResponse,
    DialogueStage,
    Message,
    Session,
    StageData,
    StageExecutionResult,
    StageHistory,
    new_id,
)
from council.output import OutputStorage, build_output_document
from council.parsing import truncate
from council.providers.base import ProviderError
from council.storage import SessionRepository
from council.summarizer import StageSummarizer, format_summaries, format_summary_message
from council.voting import count_votes, extract_voting_results, most_active_agent, select_summarizer

logger = logging.getLogger(__name__)

PIPELINE: list[DialogueStage] = [
    DialogueStage.INDIVIDUAL_THOUGHT,
    DialogueStage.MUTUAL_REFLECTION,
    DialogueStage.CONFLICT_RESOLUTION,
    DialogueStage.SYNTHESIS_ATTEMPT,
    DialogueStage.OUTPUT_GENERATION,
    DialogueStage.FINALIZE,
]

PIPELINE_WITH_SUMMARIES: list[DialogueStage] = [
    DialogueStage.INDIVIDUAL_THOUGHT,
    DialogueStage.MUTUAL_REFLECTION,
    DialogueStage.MUTUAL_REFLECTION_SUMMARY,
    DialogueStage.CONFLICT_RESOLUTION,
    DialogueStage.CONFLICT_RESOLUTION_SUMMARY,
    DialogueStage.SYNTHESIS_ATTEMPT,
    DialogueStage.SYNTHESIS_ATTEMPT_SUMMARY,
    DialogueStage.OUTPUT_GENERATION,
    DialogueStage.FINALIZE,
]

_CONTEXT_WINDOW = 20
_CONCLUSION_CHARS = 200
_CONCLUSION_STAGES = (
    DialogueStage.FINALIZE,
    DialogueStage.OUTPUT_GENERATION,
    DialogueStage.SYNTHESIS_ATTEMPT,
)

MessageCallback = Callable[[Message], None]


class UnknownStageError(ValueError):
    """Raised for a stage name outside the dialogue pipeline."""


@dataclass
class PostStageEffect:
    name: str
    run: Callable[[], Awaitable[None]]


def parse_stage(stage: DialogueStage | str) -> DialogueStage:
    try:
        return DialogueStage(stage)
    except ValueError as exc:
        raise UnknownStageError(f"Unknown stage: {stage}") from exc


class StageOrchestrator:
    """Runs dialogue stages for sessions held in an injected repository.

    Sessions are loaded once and then held in memory, so queued effects and
    later stages mutate the same object.

    Args:
        repository: Session store; the session is saved after every mutation.
        registry: The agents available to sessions.
        summarizer: Produces stage and final summaries. Summaries are skipped without one.
        output_storage: Receives the final output of each sequence.
        delays: Pacing between agents and before summaries.
        rng: Randomness for agent order. Pass a seeded ``random.Random`` for reproducible runs.
        sleep: Awaitable sleep, replaceable in tests.
    """

    def __init__(
        self,
        repository: SessionRepository,
        registry: AgentRegistry,
        summarizer: StageSummarizer | None = None,
        output_storage: OutputStorage | None = None,
        delays: DelayConfig | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._summarizer = summarizer
        self._output_storage = output_storage
        self._delays = delays or DelayConfig()
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._effects_task: asyncio.Task | None = None
        # session id -> the Session object every stage and queued effect mutates
        self._live: dict[str, Session] = {}

    # -- session lifecycle --------------------------------------------------

    async def create_session(
        self,
        title: str,
        agent_ids: list[str] | None = None,
        language: str = "en",
        session_id: str | None = None,
    ) -> Session:
        agents = [replace(a, is_summarizer=False) for a in self._registry.descriptors(agent_ids)]
        if not agents:
            raise ValueError("A session needs at least one registered agent")
        session = Session(
            id=session_id or new_id("session-"),
            title=title,
            agents=agents,
            language=language,
        )
        await self._repository.save_session(session)
        self._live[session.id] = session
        logger.info("Session created: %s with %d agents", session.id, len(agents))
        return session

    async def _load(self, session_id: str) -> Session:
        session = self._live.get(session_id)
        if session is None:
            session = await self._repository.require_session(session_id)
            self._live[session_id] = session
        return session

    async def reset_session(self, session_id: str) -> Session:
        await self.drain_effects()
        session = await self._load(session_id)
        session.messages.clear()
        session.stage_history.clear()
        session.stage_summaries.clear()
        session.voting_results.clear()
        session.consensus_history.clear()
        session.current_stage = None
        session.sequence_number = 1
        session.status = "active"
        session.complete = False
        for agent in session.agents:
            agent.is_summarizer = False
        await self._repository.save_session(session)
        return session

    def start_new_sequence(self, session: Session) -> None:
        session.sequence_number += 1
        session.stage_history.clear()
        session.voting_results.clear()
        session.status = "active"
        session.complete = False
        for agent in session.agents:
            agent.is_summarizer = False
        logger.info("Session %s: starting sequence %d", session.id, session.sequence_number)

    def get_previous_sequence_info(self, session: Session) -> tuple[str, dict[str, str]]:
        """Previous sequence's user input and each agent's conclusion from it."""
        previous = session.sequence_number - 1
        if previous < 1:
            return "", {}
        messages = session.sequence_messages(previous)
        user_input = next((m.content for m in messages if m.role == "user"), "")

        conclusions: dict[str, str] = {}
        for agent in session.agents:
            own = [m for m in messages if m.role == "agent" and m.agent_id == agent.id]
            if not own:
                continue
            chosen = own[-1]
            for stage in _CONCLUSION_STAGES:
                staged = [m for m in own if m.stage == stage]
                if staged:
                    chosen = staged[-1]
                    break
            conclusions[agent.id] = truncate(chosen.content, _CONCLUSION_CHARS)
        return user_input, conclusions

    # -- helpers ------------------------------------------------------------

    def shuffle(self, agents: list[DialogueAgent]) -> list[DialogueAgent]:
        order = list(agents)
        self._rng.shuffle(order)
        return order

    def _participants(self, session: Session) -> list[DialogueAgent]:
        return self._registry.select([a.id for a in session.agents])

    def _stage_context(self, session: Session, stage: DialogueStage) -> list[Message]:
        return [m for m in session.sequence_messages() if m.stage != stage][-_CONTEXT_WINDOW:]

    async def _append(self, session: Session, message: Message, on_message: MessageCallback | None) -> None:
        session.messages.append(message)
        await self._repository.save_session(session)
        if on_message:
            on_message(message)

    def _ensure_user_message(self, session: Session, user_prompt: str, stage: DialogueStage) -> None:
        if any(m.role == "user" for m in session.sequence_messages()):
            return
        session.messages.append(Message(
            agent_id="user",
            content=user_prompt,
            role="user",
            stage=stage,
            sequence_number=session.sequence_number,
        ))

    def _response_message(self, session: Session, response: AgentResponse) -> Message:
        return Message(
            agent_id=response.agent_id,
            content=response.content,
            role="agent",
            stage=response.stage,
            sequence_number=session.sequence_number,
            metadata={
                "reasoning": response.reasoning,
                "confidence": response.confidence,
                "stage_data": response.stage_data,
            },
        )

    def _thoughts(self, session: Session) -> list[StageData]:
        thoughts = []
        for m in session.sequence_messages():
            if m.role != "agent" or m.stage != DialogueStage.INDIVIDUAL_THOUGHT:
                continue
            data = m.metadata.get("stage_data")
            thoughts.append(data if isinstance(data, StageData) else StageData(m.agent_id, m.content))
        return thoughts

    def _synthesis_material(self, session: Session) -> str:
        summaries = [s for s in session.stage_summaries if s.sequence_number == session.sequence_number]
        if summaries:
            return format_summaries(summaries)
        resolutions = [
            m for m in session.sequence_messages()
            if m.role == "agent" and m.stage == DialogueStage.CONFLICT_RESOLUTION
        ]
        return "\n\n".join(f"[{m.agent_id}] {m.content}" for m in resolutions) or "(no prior material)"

    # -- stage execution ----------------------------------------------------

    async def execute_stage(
        self,
        session_id: str,
        user_prompt: str,
        stage: DialogueStage | str,
        language: str | None = None,
        on_message: MessageCallback | None = None,
    ) -> StageExecutionResult:
        """Run one stage for a stored session.

        Entering individual-thought on a session that already has dialogue
        starts a new sequence. Agent failures are logged and skipped. Stage
        summaries and the output save are queued and may still be running when
        this returns; call ``drain_effects`` to wait for them.

        Raises:
            UnknownStageError: For a stage outside the pipeline.
            SessionNotFoundError: If the repository has no such session.
        """
        stage = parse_stage(stage)
        if stage in SUMMARY_SOURCES or stage == DialogueStage.INDIVIDUAL_THOUGHT:
            await self.drain_effects()
        session = await self._load(session_id)
        language = language or session.language
        started = time.monotonic()

        if stage == DialogueStage.INDIVIDUAL_THOUGHT and (
            session.messages or session.stage_history or session.stage_summaries
        ):
            self.start_new_sequence(session)

        session.current_stage = stage
        self._ensure_user_message(session, user_prompt, stage)
        history = StageHistory(stage=stage, start_time=datetime.now(), sequence_number=session.sequence_number)
        session.stage_history.append(history)
        await self._repository.save_session(session)
        logger.info("Session %s: stage %s (sequence %d)", session.id, stage, session.sequence_number)

        context = self._stage_context(session, stage)
        if stage in SUMMARY_SOURCES:
            responses = await self._run_summary_stage(session, stage, language, on_message)
        elif stage == DialogueStage.FINALIZE:
            responses = await self._run_finalize(session, user_prompt, language, context, on_message)
        else:
            responses = await self._run_agents(session, stage, user_prompt, language, context, on_message)

        history.agent_responses = responses
        history.end_time = datetime.now()
        if stage == DialogueStage.OUTPUT_GENERATION:
            self._record_votes(session, responses)
        else:
            for agent in session.agents:
                agent.is_summarizer = False
        if stage == DialogueStage.FINALIZE:
            session.status = "completed"
            session.complete = True
        await self._repository.save_session(session)

        effects = self.plan_post_stage_effects(session, stage, responses, user_prompt, language, on_message)
        self._schedule_effects(effects)

        duration = time.monotonic() - started
        logger.info("Stage %s complete: %d response(s) in %.1fs", stage, len(responses), duration)
        return StageExecutionResult(
            stage=stage,
            sequence_number=session.sequence_number,
            responses=responses,
            duration_sec=duration,
        )

    async def _invoke(
        self,
        agent: DialogueAgent,
        session: Session,
        stage: DialogueStage,
        user_prompt: str,
        language: str,
        context: list[Message],
        stage_inputs: dict,
    ) -> AgentResponse | None:
        match stage:
            case DialogueStage.INDIVIDUAL_THOUGHT:
                previous_input, conclusions = stage_inputs["previous"]
                return await agent.individual_thought(user_prompt, context, language, previous_input, conclusions)
            case DialogueStage.MUTUAL_REFLECTION:
                others = [t for t in self._thoughts(session) if t.agent_id != agent.id]
                if not others:
                    logger.info("Skipping %s in mutual-reflection: no other thoughts", agent.id)
                    return None
                return await agent.mutual_reflection(user_prompt, others, context, language)
            case DialogueStage.CONFLICT_RESOLUTION:
                return await agent.conflict_resolution(user_prompt, stage_inputs["conflicts"], context, language)
            case DialogueStage.SYNTHESIS_ATTEMPT:
                return await agent.synthesis_attempt(user_prompt, stage_inputs["synthesis"], context, language)
            case DialogueStage.OUTPUT_GENERATION:
                return await agent.output_generation(user_prompt, context, session.agents, language)
        raise UnknownStageError(f"Unknown stage: {stage}")

    async def _run_agents(
        self,
        session: Session,
        stage: DialogueStage,
        user_prompt: str,
        language: str,
        context: list[Message],
        on_message: MessageCallback | None,
    ) -> list[AgentResponse]:
        stage_inputs: dict = {}
        if stage == DialogueStage.INDIVIDUAL_THOUGHT:
            stage_inputs["previous"] = self.get_previous_sequence_info(session)
        elif stage == DialogueStage.CONFLICT_RESOLUTION:
            identifier = ConflictIdentifier(session.agents)
            stage_inputs["conflicts"] = identifier.identify_conflicts(session.sequence_messages())
        elif stage == DialogueStage.SYNTHESIS_ATTEMPT:
            stage_inputs["synthesis"] = self._synthesis_material(session)

        responses: list[AgentResponse] = []
        for index, agent in enumerate(self.shuffle(self._participants(session))):
            if index > 0 and self._delays.agent_response_delay_sec > 0:
                await self._sleep(self._delays.agent_response_delay_sec)
            agent.session_id = session.id
            try:
                response = await self._invoke(agent, session, stage, user_prompt, language, context, stage_inputs)
            except ProviderError as exc:
                logger.warning("Agent %s failed in %s: %s", agent.id, stage, exc)
                continue
            if response is None:
                continue
            await self._append(session, self._response_message(session, response), on_message)
            responses.append(response)
        return responses

    def _record_votes(self, session: Session, responses: list[AgentResponse]) -> None:
        session.voting_results = extract_voting_results(responses, session.agents)
        for message in session.sequence_messages():
            if message.stage == DialogueStage.OUTPUT_GENERATION and message.agent_id in session.voting_results:
                message.metadata["vote_for"] = session.voting_results[message.agent_id]

        summarizer_id = select_summarizer(session.agents, session.sequence_messages(), responses)
        for agent in session.agents:
            agent.is_summarizer = agent.id == summarizer_id
        logger.info("Votes: %s, summarizer: %s", session.voting_results, summarizer_id)

    def resolve_finalizers(self, session: Session) -> list[str]:
        """Top-voted agents; without votes, the flagged summarizer or the most active agent."""
        winners = count_votes(session.voting_results, session.agents)
        if winners:
            return winners
        flagged = [a.id for a in session.agents if a.is_summarizer]
        if flagged:
            return flagged
        fallback = most_active_agent(session.agents, session.sequence_messages())
        return [fallback] if fallback else []

    async def _run_finalize(
        self,
        session: Session,
        user_prompt: str,
        language: str,
        context: list[Message],
        on_message: MessageCallback | None,
    ) -> list[AgentResponse]:
        finalizers = self.resolve_finalizers(session)
        logger.info("Finalizer(s): %s", finalizers)
        responses: list[AgentResponse] = []
        for agent_id in finalizers:
            agent = self._registry.get(agent_id)
            if agent is None:
                continue
            agent.session_id = session.id
            try:
                response = await agent.finalize(user_prompt, session.voting_results, context, language)
            except ProviderError as exc:
                logger.warning("Finalizer %s failed: %s", agent_id, exc)
                continue
            await self._append(session, self._response_message(session, response), on_message)
            responses.append(response)
        return responses

    async def _run_summary_stage(
        self,
        session: Session,
        stage: DialogueStage,
        language: str,
        on_message: MessageCallback | None,
    ) -> list[AgentResponse]:
        """Make sure the source stage has a summary message; reuse the post-stage one when present."""
        source = SUMMARY_SOURCES[stage]
        existing = [
            s for s in session.stage_summaries
            if s.stage == source and s.sequence_number == session.sequence_number
        ]
        if existing or self._summarizer is None:
            return []

        source_messages = [m for m in session.sequence_messages() if m.stage == source and m.role == "agent"]
        try:
            summary = await self._summarizer.summarize_stage(
                source, source_messages, session.agents, session.id, language, session.sequence_number,
            )
        except ProviderError as exc:
            logger.warning("Summary stage %s failed: %s", stage, exc)
            return []
        session.stage_summaries.append(summary)

        content = format_summary_message(source, summary)
        await self._append(session, Message(
            agent_id="system",
            content=content,
            role="system",
            stage=stage,
            sequence_number=session.sequence_number,
        ), on_message)
        return [AgentResponse(agent_id="system", content=content, stage=stage)]


    # -- post-stage effects -------------------------------------------------

    def plan_post_stage_effects(
        self,
        session: Session,
        stage: DialogueStage,
        responses: list[AgentResponse],
        user_prompt: str,
        language: str,
        on_message: MessageCallback | None = None,
    ) -> list[PostStageEffect]:
        """Side effects to run once the stage transition is committed."""
        effects: list[PostStageEffect] = []
        if stage == DialogueStage.FINALIZE:
            effects.append(PostStageEffect(
                "save_output",
                lambda: self._save_final_output(session, user_prompt, language, responses),
            ))
        elif stage not in SUMMARY_SOURCES and responses and self._summarizer is not None:
            effects.append(PostStageEffect(
                "stage_summary",
                lambda: self._summarize_stage(session, stage, language, on_message),
            ))
        return effects

    async def run_effects(self, effects: list[PostStageEffect]) -> None:
        for effect in effects:
            try:
                await effect.run()
            except (ProviderError, RuntimeError, OSError) as exc:
                logger.error("Post-stage effect %s failed: %s", effect.name, exc)

    def _schedule_effects(self, effects: list[PostStageEffect]) -> None:
        """Queue ``effects`` behind any batch still running."""
        if not effects:
            return
        previous = self._effects_task

        async def _after_previous() -> None:
            if previous is not None:
                await previous
            await self.run_effects(effects)

        self._effects_task = asyncio.create_task(_after_previous())

    async def drain_effects(self) -> None:
        """Wait until every queued post-stage effect has run."""
        task = self._effects_task
        if task is None:
            return
        await task
        if self._effects_task is task:
            self._effects_task = None

    async def _summarize_stage(
        self,
        session: Session,
        stage: DialogueStage,
        language: str,
        on_message: MessageCallback | None,
    ) -> None:
        if self._delays.stage_summary_delay_sec > 0:
            await self._sleep(self._delays.stage_summary_delay_sec)
        messages = [m for m in session.sequence_messages() if m.stage == stage and m.role == "agent"]
        summary = await self._summarizer.summarize_stage(
            stage, messages, session.agents, session.id, language, session.sequence_number,
        )
        session.stage_summaries.append(summary)
        await self._append(session, Message(
            agent_id="system",
            content=format_summary_message(stage, summary),
            role="system",
            stage=stage,
            sequence_number=session.sequence_number,
        ), on_message)

    async def _save_final_output(
        self,
        session: Session,
        user_prompt: str,
        language: str,
        responses: list[AgentResponse],
    ) -> None:
        summaries = [s for s in session.stage_summaries if s.sequence_number == session.sequence_number]
        final_summary = ""
        if summaries and self._summarizer is not None:
            if self._delays.final_summary_delay_sec > 0:
                await self._sleep(self._delays.final_summary_delay_sec)
            final_summary = await self._summarizer.generate_final_summary(
                summaries, session.agents, session.id, language,
            )
        if self._output_storage is None or not responses:
            return

        by_id = {a.id: a for a in session.agents}
        document = build_output_document(
            title=session.title,
            final_content="\n\n".join(r.content for r in responses),
            finalizers=[by_id[r.agent_id] for r in responses if r.agent_id in by_id],
            final_summary=final_summary,
        )
        saved = self._output_storage.save_output(session.title, document, user_prompt, language, session.id)
        session.output_ids[session.sequence_number] = saved.id
        await self._repository.save_session(session)

    # -- full pass ----------------------------------------------------------

    async def run_sequence(
        self,
        session_id: str,
        user_prompt: str,
        language: str | None = None,
        include_summary_stages: bool = False,
        on_message: MessageCallback | None = None,
        on_stage_complete: Callable[[StageExecutionResult], None] | None = None,
    ) -> Session:
        """Run every stage of the pipeline once, in order."""
        stages = PIPELINE_WITH_SUMMARIES if include_summary_stages else PIPELINE
        for stage in stages:
            result = await self.execute_stage(session_id, user_prompt, stage, language, on_message)
            if on_stage_complete:
                on_stage_complete(result)
        await self.drain_effects()
        return await self._load(session_id)
