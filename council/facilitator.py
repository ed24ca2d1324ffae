"""Facilitator: proposes interventions each round, with a deterministic fallback."""

import logging
from collections import Counter

from config.config_loader import FacilitatorConfig, PromptsConfig
from council.agents import execute_with_retry
from council.consensus import ConsensusEngine, average_satisfaction, format_consensus_report, ready_count
from council.interaction_log import InteractionLogger
from council.models import (
    ACTION_TYPES,
    Agent,
    ConsensusIndicator,
    DialogueState,
    FacilitatorAction,
    Message,
    VotingResults,
)
from council.parsing import extract_json, truncate
from council.providers.base import AIExecutor, ProviderError
from council.voting import count_votes

logger = logging.getLogger(__name__)

_CLARIFICATION_BELOW = 6.5
_SUMMARIZE_FROM = 6.5
_CONCLUDE_FROM = 8.0
_SUMMARIZER_STYLES = ("logical", "analytical")

_RECENT_FOR_PROMPT = 5
_BALANCE_WINDOW = 5
_DRIFT_WINDOW = 3
_DRIFT_MIN_OVERLAP = 0.3
_MAX_KEYWORDS = 5

_STOPWORDS = {
    "the", "and", "for", "are", "but", "not", "you", "all", "can", "was", "one", "our",
    "has", "have", "this", "that", "with", "what", "how", "why", "when", "which", "who",
    "from", "they", "will", "would", "should", "could", "there", "their", "about", "into",
    "does", "is", "it", "of", "to", "in", "on", "a", "an", "be", "or", "as", "at", "by",
}


def extract_keywords(text: str) -> list[str]:
    words = [w.strip(".,!?;:\"'()[]").lower() for w in text.split()]
    return [w for w in words if len(w) > 2 and w not in _STOPWORDS][:_MAX_KEYWORDS]


def detect_topic_drift(messages: list[Message], original_query: str) -> bool:
    """True when under 30% of the query's keywords appear in the last 3 messages."""
    keywords = extract_keywords(original_query)
    recent = [m for m in messages if m.role != "system"][-_DRIFT_WINDOW:]
    if not keywords or not recent:
        return False
    recent_text = " ".join(m.content for m in recent).lower()
    hits = sum(1 for k in keywords if k in recent_text)
    return hits / len(keywords) < _DRIFT_MIN_OVERLAP


def parse_actions(text: str, valid_targets: set[str], priorities: dict[str, int]) -> list[FacilitatorAction]:
    """Parse a facilitator reply into actions.

    Raises:
        ValueError: If no JSON array is found or it holds no usable action.
    """
    payload = extract_json(text)
    if isinstance(payload, dict):
        payload = payload.get("actions", [])
    if not isinstance(payload, list):
        raise ValueError("Facilitator reply is not a list")

    actions = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        action_type = str(item.get("type", "summarize"))
        if action_type not in ACTION_TYPES:
            continue
        target = str(item.get("target", ""))
        if target and target not in valid_targets:
            target = ""
        try:
            priority = int(item.get("priority", priorities.get(action_type, 5)))
        except (TypeError, ValueError):
            priority = priorities.get(action_type, 5)
        actions.append(FacilitatorAction(
            type=action_type,
            target=target,
            reason=str(item.get("reason", "General discussion improvement")),
            priority=max(1, min(10, priority)),
        ))
    if not actions:
        raise ValueError("Facilitator reply holds no usable action")
    return actions


class FacilitatorActionPlanner:
    """Suggests facilitation actions and tracks who has been speaking.

    With an executor, suggestions come from the model and fall back to the
    heuristic walk on any failure. Without one, only the heuristic runs.
    """

    def __init__(
        self,
        agents: list[Agent],
        config: FacilitatorConfig | None = None,
        engine: ConsensusEngine | None = None,
        executor: AIExecutor | None = None,
        prompts: PromptsConfig | None = None,
        interaction_logger: InteractionLogger | None = None,
    ) -> None:
        self.agents = list(agents)
        self.config = config or FacilitatorConfig()
        self.engine = engine or ConsensusEngine()
        self._executor = executor
        self._prompts = prompts
        self._interaction_logger = interaction_logger
        self.session_id = ""
        self.participation: dict[str, int] = {a.id: 0 for a in self.agents}
        self._last_used: dict[str, int] = {}

    # -- participation ------------------------------------------------------

    def record_contribution(self, agent_id: str) -> None:
        self.participation[agent_id] = self.participation.get(agent_id, 0) + 1

    def update_participation_counts(self, counts: dict[str, int]) -> None:
        """Resynchronize counters, e.g. from the authoritative message history."""
        for agent_id in self.participation:
            self.participation[agent_id] = 0
        self.participation.update(counts)

    def sync_with_messages(self, messages: list[Message]) -> None:
        self.update_participation_counts(dict(Counter(m.agent_id for m in messages if m.role == "agent")))

    def _least_active(self, agent_ids: list[str]) -> str:
        return min(agent_ids, key=lambda i: self.participation.get(i, 0))

    # -- suggestions --------------------------------------------------------

    def _priority(self, action_type: str) -> int:
        return self.config.action_priority.get(action_type, 5)

    def _cooling_down(self, action_type: str, round_number: int) -> bool:
        last = self._last_used.get(action_type)
        return last is not None and round_number - last < self.config.intervention_cooldown

    def _candidate(self, action_type: str, indicators: list[ConsensusIndicator]) -> FacilitatorAction | None:
        avg = average_satisfaction(indicators)
        by_id = {a.id: a for a in self.agents}

        if action_type == "perspective_shift":
            askers = [i.agent_id for i in indicators if i.questions_for_others]
            if askers:
                target = self._least_active(askers)
                return FacilitatorAction(
                    "perspective_shift", target, f"{target} has open questions for others", self._priority(action_type),
                )
        elif action_type == "clarification":
            lowest = min(indicators, key=lambda i: i.satisfaction_level)
            if lowest.satisfaction_level < _CLARIFICATION_BELOW:
                return FacilitatorAction(
                    "clarification", lowest.agent_id,
                    f"{lowest.agent_id} is least satisfied ({lowest.satisfaction_level:g}/10)",
                    self._priority(action_type),
                )
        elif action_type == "summarize":
            summarizers = [
                i.agent_id for i in indicators
                if i.agent_id in by_id and by_id[i.agent_id].style in _SUMMARIZER_STYLES
            ]
            if avg >= _SUMMARIZE_FROM and summarizers:
                return FacilitatorAction(
                    "summarize", summarizers[0], "Discussion is mature enough to consolidate",
                    self._priority(action_type),
                )
        elif action_type == "conclude":
            if avg >= _CONCLUDE_FROM and ready_count(indicators) * 2 >= len(indicators):
                return FacilitatorAction(
                    "conclude", "", "High satisfaction and most agents are ready", self._priority(action_type),
                )
        elif action_type == "deep_dive":
            with_points = [i.agent_id for i in indicators if i.has_additional_points]
            target = with_points[0] if with_points else self._least_active([i.agent_id for i in indicators])
            return FacilitatorAction(
                "deep_dive", target, f"{target} has more to contribute", self._priority(action_type),
            )
        return None

    def fallback_actions(
        self,
        indicators: list[ConsensusIndicator],
        round_number: int = 0,
    ) -> list[FacilitatorAction]:
        """Walk the configured order and return the first applicable action.

        An action type used within the cooldown window is passed over when a
        later type also applies.
        """
        if not indicators:
            if not self.agents:
                return []
            target = self._least_active([a.id for a in self.agents])
            return [FacilitatorAction("deep_dive", target, "No consensus data yet", self._priority("deep_dive"))]

        applicable = [
            action for action in (self._candidate(t, indicators) for t in self.config.fallback_order)
            if action is not None
        ]
        if not applicable:
            return []
        fresh = [a for a in applicable if not self._cooling_down(a.type, round_number)]
        chosen = (fresh or applicable)[0]
        self._last_used[chosen.type] = round_number
        logger.info("Fallback facilitator action: %s -> %s", chosen.type, chosen.target or "(all)")
        return [chosen]

    def _speaker_balance(self, messages: list[Message]) -> str:
        counts = Counter(m.agent_id for m in messages[-_BALANCE_WINDOW:] if m.role == "agent")
        return "\n".join(f"{a.id}: {counts.get(a.id, 0)}" for a in self.agents)

    async def suggest_actions(
        self,
        messages: list[Message],
        indicators: list[ConsensusIndicator],
        round_number: int,
        original_query: str = "",
    ) -> list[FacilitatorAction]:
        """Ranked actions for this round, highest priority first."""
        if self._executor is None or self._prompts is None:
            return self.fallback_actions(indicators, round_number)

        recent = "\n".join(
            f"[{m.agent_id}] {truncate(m.content, 100)}" for m in messages[-_RECENT_FOR_PROMPT:]
        )
        prompt = self._prompts.facilitator_analysis.format(
            query=original_query,
            round=round_number,
            recent_messages=recent,
            consensus_report=format_consensus_report(indicators),
            speaker_balance=self._speaker_balance(messages),
        )
        try:
            completion = await execute_with_retry(
                self._executor,
                prompt,
                interaction_logger=self._interaction_logger,
                session_id=self.session_id,
                stage="facilitator-analysis",
                agent_id="facilitator",
                agent_name="Facilitator",
            )
            actions = parse_actions(
                completion.content, {a.id for a in self.agents}, self.config.action_priority,
            )
        except (ProviderError, ValueError) as exc:
            logger.info("Facilitator suggestion failed, using fallback: %s", exc)
            return self.fallback_actions(indicators, round_number)

        for action in actions:
            self._last_used[action.type] = round_number
        return sorted(actions, key=lambda a: a.priority, reverse=True)

    async def analyze_dialogue_state(
        self,
        messages: list[Message],
        indicators: list[ConsensusIndicator],
        round_number: int,
        original_query: str = "",
    ) -> DialogueState:
        consensus = self.engine.calculate_overall_consensus(indicators)
        should_continue = self.engine.should_continue_dialogue(round_number, indicators, consensus)
        drift = bool(original_query) and detect_topic_drift(messages, original_query)

        actions: list[FacilitatorAction] = []
        if should_continue:
            actions = await self.suggest_actions(messages, indicators, round_number, original_query)
            if drift and not any(a.type == "perspective_shift" for a in actions) and self.agents:
                target = self._least_active([a.id for a in self.agents])
                actions.append(FacilitatorAction(
                    "perspective_shift", target, "Discussion has drifted from the original question",
                    self._priority("perspective_shift"),
                ))
                actions.sort(key=lambda a: a.priority, reverse=True)

        state = DialogueState(
            round_number=round_number,
            overall_consensus=consensus,
            should_continue=should_continue,
            suggested_actions=actions,
            recommended_action_count=self.engine.determine_action_count(round_number, consensus, indicators),
            topic_drift=drift,
        )
        logger.info(
            "Round %d: consensus %.1f, continue=%s, %d action(s) suggested, drift=%s",
            round_number, consensus, should_continue, len(actions), drift,
        )
        return state

    # -- finalization -------------------------------------------------------

    async def analyze_finalize_votes(self, voting_results: VotingResults) -> list[str]:
        """Finalizer ids: model choice limited to valid ids, else tally winners, else the first agent."""
        valid_ids = [a.id for a in self.agents]
        if self._executor is not None and self._prompts is not None and voting_results:
            prompt = self._prompts.vote_analysis.format(
                voting_results="\n".join(f"{v} -> {t}" for v, t in voting_results.items()),
                agent_ids=", ".join(valid_ids),
            )
            try:
                completion = await execute_with_retry(
                    self._executor,
                    prompt,
                    interaction_logger=self._interaction_logger,
                    session_id=self.session_id,
                    stage="vote-analysis",
                    agent_id="facilitator",
                    agent_name="Facilitator",
                )
                payload = extract_json(completion.content)
                chosen = [str(i) for i in payload] if isinstance(payload, list) else []
                selected = [i for i in valid_ids if i in chosen]
                if selected:
                    return selected
            except (ProviderError, ValueError) as exc:
                logger.info("Vote analysis failed, using tally: %s", exc)

        winners = count_votes(voting_results, self.agents)
        if winners:
            return winners
        return valid_ids[:1]
