"""Open-ended dialogue: rounds of consensus checks and facilitator actions until convergence."""

import asyncio
import logging
import math
import random
from collections.abc import Awaitable, Callable

from config.config_loader import DelayConfig
from council.agents import AgentRegistry, DialogueAgent
from council.facilitator import FacilitatorActionPlanner
from council.models import (
    AgentResponse,
    ConsensusIndicator,
    ConsensusSnapshot,
    DialogueStage,
    DialogueState,
    FacilitatorAction,
    Message,
    Session,
)
from council.output import OutputStorage, build_output_document
from council.providers.base import ProviderError
from council.storage import SessionRepository
from council.voting import extract_voting_results

logger = logging.getLogger(__name__)

_CONTEXT_WINDOW = 10

# Used when an agent cannot be polled. It does not hold the dialogue open.
_FAILED_CHECK_SATISFACTION = 5.0
# Filled in for agents skipped once a continuing majority is already known
_SKIPPED_CHECK_SATISFACTION = 6.0


class DynamicDialogue:
    """Runs the facilitator-driven round loop over one session."""

    def __init__(
        self,
        repository: SessionRepository,
        registry: AgentRegistry,
        planner: FacilitatorActionPlanner,
        output_storage: OutputStorage | None = None,
        delays: DelayConfig | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._planner = planner
        self._output_storage = output_storage
        self._delays = delays or DelayConfig()
        self._rng = rng or random.Random()
        self._sleep = sleep

    def _participants(self, session: Session) -> list[DialogueAgent]:
        return self._registry.select([a.id for a in session.agents])

    async def _pace(self, index: int) -> None:
        if index > 0 and self._delays.agent_response_delay_sec > 0:
            await self._sleep(self._delays.agent_response_delay_sec)

    async def _append(self, session: Session, response: AgentResponse, kind: str,
                      on_message: Callable[[Message], None] | None) -> Message:
        message = Message(
            agent_id=response.agent_id,
            content=response.content,
            role="agent",
            stage=response.stage,
            sequence_number=session.sequence_number,
            metadata={"kind": kind, "reasoning": response.reasoning, "stage_data": response.stage_data},
        )
        session.messages.append(message)
        self._planner.record_contribution(response.agent_id)
        await self._repository.save_session(session)
        if on_message:
            on_message(message)
        return message

    async def gather_consensus(self, session: Session, query: str, round_number: int,
                               language: str) -> list[ConsensusIndicator]:
        """Poll agents in shuffled order. Stops early once a continuing majority is certain."""
        agents = self._participants(session)
        self._rng.shuffle(agents)
        majority = math.floor(len(agents) / 2) + 1
        context = session.messages[-_CONTEXT_WINDOW:]

        indicators: dict[str, ConsensusIndicator] = {}
        continuing = 0
        for index, agent in enumerate(agents):
            await self._pace(index)
            agent.session_id = session.id
            try:
                indicator = await agent.consensus_check(query, context, round_number, language)
            except ProviderError as exc:
                logger.warning("Consensus check failed for %s: %s", agent.id, exc)
                indicator = ConsensusIndicator(
                    agent_id=agent.id,
                    satisfaction_level=_FAILED_CHECK_SATISFACTION,
                    has_additional_points=False,
                    ready_to_move=True,
                    reasoning="Consensus check failed",
                )
            indicators[agent.id] = indicator
            if not indicator.ready_to_move:
                continuing += 1
            if continuing >= majority and round_number > 2:
                logger.info("Round %d: continuing majority reached, skipping remaining checks", round_number)
                break

        for agent in agents:
            indicators.setdefault(agent.id, ConsensusIndicator(
                agent_id=agent.id,
                satisfaction_level=_SKIPPED_CHECK_SATISFACTION,
                has_additional_points=True,
                ready_to_move=False,
                reasoning="Not polled this round",
            ))
        return [indicators[a.id] for a in session.agents if a.id in indicators]

    def _action_agent(self, action: FacilitatorAction, session: Session) -> DialogueAgent | None:
        agent = self._registry.get(action.target) if action.target else None
        if agent is not None:
            return agent
        candidates = self._participants(session)
        if not candidates:
            return None
        least = min(candidates, key=lambda a: self._planner.participation.get(a.id, 0))
        return least

    async def _execute_actions(self, session: Session, state: DialogueState, query: str, language: str,
                               on_message: Callable[[Message], None] | None) -> None:
        actions = [a for a in state.suggested_actions if a.type != "conclude"]
        for index, action in enumerate(actions[: state.recommended_action_count]):
            agent = self._action_agent(action, session)
            if agent is None:
                continue
            await self._pace(index)
            agent.session_id = session.id
            try:
                response = await agent.respond_to_action(
                    action, query, session.messages[-_CONTEXT_WINDOW:], language,
                )
            except ProviderError as exc:
                logger.warning("Action %s by %s failed: %s", action.type, agent.id, exc)
                continue
            await self._append(session, response, action.type, on_message)

    async def _initial_thoughts(self, session: Session, query: str, language: str,
                                on_message: Callable[[Message], None] | None) -> None:
        agents = self._participants(session)
        self._rng.shuffle(agents)
        for index, agent in enumerate(agents):
            await self._pace(index)
            agent.session_id = session.id
            try:
                response = await agent.individual_thought(query, [], language)
            except ProviderError as exc:
                logger.warning("Initial thought failed for %s: %s", agent.id, exc)
                continue
            await self._append(session, response, "initial", on_message)

    async def _finalize(self, session: Session, query: str, language: str,
                        on_message: Callable[[Message], None] | None) -> list[AgentResponse]:
        context = session.messages[-_CONTEXT_WINDOW:]
        votes: list[AgentResponse] = []
        for index, agent in enumerate(self._participants(session)):
            await self._pace(index)
            try:
                votes.append(await agent.cast_vote(query, context, session.agents, language))
            except ProviderError as exc:
                logger.warning("Vote from %s failed: %s", agent.id, exc)

        session.voting_results = extract_voting_results(votes, session.agents)
        finalizers = await self._planner.analyze_finalize_votes(session.voting_results)
        logger.info("Votes: %s, finalizer(s): %s", session.voting_results, finalizers)

        results: list[AgentResponse] = []
        for agent_id in finalizers:
            agent = self._registry.get(agent_id)
            if agent is None:
                continue
            try:
                response = await agent.finalize(query, session.voting_results, context, language)
            except ProviderError as exc:
                logger.warning("Finalizer %s failed: %s", agent_id, exc)
                continue
            await self._append(session, response, "finalize", on_message)
            results.append(response)
        return results

    async def conduct(
        self,
        session_id: str,
        query: str,
        language: str | None = None,
        on_message: Callable[[Message], None] | None = None,
        on_round_complete: Callable[[DialogueState], None] | None = None,
    ) -> Session:
        """Run the whole open dialogue and finalize it.

        Returns:
            The completed session, with one consensus snapshot per round.
        """
        session = await self._repository.require_session(session_id)
        language = language or session.language
        self._planner.session_id = session.id

        session.messages.append(Message(
            agent_id="user", content=query, role="user",
            stage=DialogueStage.INDIVIDUAL_THOUGHT, sequence_number=session.sequence_number,
        ))
        await self._repository.save_session(session)
        await self._initial_thoughts(session, query, language, on_message)

        max_rounds = self._planner.engine.config.max_rounds
        reason = "max_rounds"
        for round_number in range(1, max_rounds + 1):
            indicators = await self.gather_consensus(session, query, round_number, language)
            self._planner.sync_with_messages(session.sequence_messages())
            state = await self._planner.analyze_dialogue_state(
                session.sequence_messages(), indicators, round_number, query,
            )
            session.consensus_history.append(ConsensusSnapshot(
                round_number=round_number,
                overall_consensus=state.overall_consensus,
                indicators=indicators,
                should_continue=state.should_continue,
            ))
            await self._repository.save_session(session)
            if on_round_complete:
                on_round_complete(state)

            if not state.should_continue:
                reason = "natural_consensus"
                break
            await self._execute_actions(session, state, query, language, on_message)

        logger.info("Dialogue converged after %d round(s): %s", len(session.consensus_history), reason)
        session.messages.append(Message(
            agent_id="system",
            content=f"Dialogue concluded ({reason}) after {len(session.consensus_history)} round(s).",
            role="system",
            sequence_number=session.sequence_number,
        ))

        final = await self._finalize(session, query, language, on_message)
        session.status = "completed"
        session.complete = True
        session.current_stage = DialogueStage.FINALIZE
        await self._repository.save_session(session)

        if self._output_storage is not None and final:
            by_id = {a.id: a for a in session.agents}
            document = build_output_document(
                title=session.title,
                final_content="\n\n".join(r.content for r in final),
                finalizers=[by_id[r.agent_id] for r in final if r.agent_id in by_id],
            )
            try:
                saved = self._output_storage.save_output(session.title, document, query, language, session.id)
            except OSError as exc:
                logger.error("Failed to save output: %s", exc)
            else:
                session.output_ids[session.sequence_number] = saved.id
                await self._repository.save_session(session)
        return session
