"""Consensus scoring and round-termination decisions."""

import logging
import math
import re
from dataclasses import dataclass

from config.config_loader import ConsensusConfig
from council.models import ConsensusIndicator
from council.parsing import parse_bool

logger = logging.getLogger(__name__)

# Dialogue always continues up to and including this round
_MIN_EXPLORATION_ROUNDS = 2
# Only a unanimous, highly satisfied panel may stop up to this round
_EARLY_EXIT_LAST_ROUND = 4

_SATISFACTION_RE = re.compile(r"Satisfaction\s*[:：]\s*(\d+(?:\.\d+)?)", re.IGNORECASE)
_READY_RE = re.compile(r"Ready to conclude\s*[:：]\s*(\w+)", re.IGNORECASE)
_ADDITIONAL_RE = re.compile(r"(?:Additional points|Critical points remaining)\s*[:：]\s*(\w+)", re.IGNORECASE)
_QUESTIONS_RE = re.compile(r"Questions\s*[:：]\s*([^\n]*)", re.IGNORECASE)
_REASONING_RE = re.compile(r"Reasoning\s*[:：]\s*([^\n]*)", re.IGNORECASE)


@dataclass(frozen=True)
class StopCondition:
    """Stop the dialogue once every set threshold holds. ``None`` disables a check."""

    name: str
    min_round: int
    min_satisfaction: float | None = None
    min_consensus: float | None = None
    min_ready: int | None = None
    ready_majority: bool = False

    def holds(self, round_number: int, avg_satisfaction: float, consensus: float,
              ready: int, total: int) -> bool:
        if round_number < self.min_round:
            return False
        if self.min_satisfaction is not None and avg_satisfaction < self.min_satisfaction:
            return False
        if self.min_consensus is not None and consensus < self.min_consensus:
            return False
        if self.min_ready is not None and ready < self.min_ready:
            return False
        if self.ready_majority and ready < math.ceil(total / 2):
            return False
        return True


def default_stop_conditions(config: ConsensusConfig) -> list[StopCondition]:
    return [
        StopCondition("high_satisfaction", min_round=5, min_satisfaction=8.0, min_ready=4),
        StopCondition("ready_majority", min_round=6, min_satisfaction=7.0, ready_majority=True),
        StopCondition("convergence_threshold", min_round=7,
                      min_satisfaction=config.convergence_threshold, min_ready=3),
        StopCondition("strong_consensus", min_round=7, min_consensus=8.5, min_satisfaction=6.5),
        StopCondition("max_rounds", min_round=config.max_rounds,
                      min_satisfaction=config.min_satisfaction_level),
        StopCondition("late_consensus", min_round=8, min_consensus=9.0, min_ready=3),
    ]


def average_satisfaction(indicators: list[ConsensusIndicator]) -> float:
    if not indicators:
        return 0.0
    return sum(i.satisfaction_level for i in indicators) / len(indicators)


def ready_count(indicators: list[ConsensusIndicator]) -> int:
    return sum(1 for i in indicators if i.ready_to_move)


def _round_half_up(value: float, digits: int = 1) -> float:
    scale = 10 ** digits
    return math.floor(value * scale + 0.5) / scale


class ConsensusEngine:
    """Per-round consensus score and continue/stop decisions."""

    def __init__(self, config: ConsensusConfig | None = None,
                 stop_conditions: list[StopCondition] | None = None) -> None:
        self.config = config or ConsensusConfig()
        self.stop_conditions = stop_conditions or default_stop_conditions(self.config)

    def calculate_overall_consensus(self, indicators: list[ConsensusIndicator]) -> float:
        """Blend average satisfaction with the share of agents ready to conclude (0-10)."""
        if not indicators:
            return 0.0
        try:
            ready_ratio = ready_count(indicators) / len(indicators)
            score = (
                self.config.satisfaction_weight * average_satisfaction(indicators)
                + self.config.readiness_weight * ready_ratio * 10
            )
        except (TypeError, AttributeError) as exc:
            logger.warning("Consensus scored as 0, malformed indicators: %s", exc)
            return 0.0
        return _round_half_up(score)

    def should_continue_dialogue(
        self,
        round_number: int,
        indicators: list[ConsensusIndicator],
        consensus: float | None = None,
    ) -> bool:
        """Decide whether another round is needed.

        Rounds up to 2 always continue. Rounds 3-4 stop only on a unanimous,
        highly satisfied panel. From round 5 any matching stop condition ends
        the dialogue.
        """
        if round_number <= _MIN_EXPLORATION_ROUNDS:
            return True
        if not indicators:
            return True

        total = len(indicators)
        avg = average_satisfaction(indicators)
        ready = ready_count(indicators)
        if consensus is None:
            consensus = self.calculate_overall_consensus(indicators)

        if round_number <= _EARLY_EXIT_LAST_ROUND:
            if avg >= self.config.early_exit_satisfaction and ready == total:
                logger.info("Round %d: unanimous early exit (avg %.1f)", round_number, avg)
                return False
            return True

        for condition in self.stop_conditions:
            if condition.holds(round_number, avg, consensus, ready, total):
                logger.info(
                    "Round %d: stop condition '%s' met (avg %.1f, consensus %.1f, ready %d/%d)",
                    round_number, condition.name, avg, consensus, ready, total,
                )
                return False
        return True

    def determine_action_count(
        self,
        round_number: int,
        consensus: float,
        indicators: list[ConsensusIndicator],
    ) -> int:
        """How many facilitator actions to run this round (1-3)."""
        avg = average_satisfaction(indicators)
        with_points = sum(1 for i in indicators if i.has_additional_points)

        if round_number <= _MIN_EXPLORATION_ROUNDS:
            return 3 if with_points >= 3 else 2
        if round_number < 8:
            if avg < 5.5:
                return 3 if with_points > 0 else 2
            if avg < self.config.convergence_threshold:
                return 2
            return 1
        # One more push before the hard cap unless the panel is already settled
        if avg >= self.config.convergence_threshold or consensus >= 8.0:
            return 1
        return 2


def parse_consensus_response(text: str, agent_id: str) -> ConsensusIndicator:
    """Read a consensus self-assessment. Missing fields fall back to neutral defaults."""
    satisfaction = 5.0
    ready = False
    additional = False
    questions: list[str] = []
    reasoning = ""

    if match := _SATISFACTION_RE.search(text):
        satisfaction = min(10.0, max(0.0, float(match.group(1))))
    if match := _READY_RE.search(text):
        ready = parse_bool(match.group(1))
    if match := _ADDITIONAL_RE.search(text):
        additional = parse_bool(match.group(1))
        if additional and match.group(0).lower().startswith("critical"):
            ready = False
    if match := _QUESTIONS_RE.search(text):
        raw = match.group(1).strip()
        if raw and raw.lower() not in {"none", "n/a", "-"}:
            questions = [q.strip() for q in raw.split(";") if q.strip()]
    if match := _REASONING_RE.search(text):
        reasoning = match.group(1).strip()

    return ConsensusIndicator(
        agent_id=agent_id,
        satisfaction_level=satisfaction,
        has_additional_points=additional,
        ready_to_move=ready,
        questions_for_others=questions,
        reasoning=reasoning,
    )


def format_consensus_report(indicators: list[ConsensusIndicator]) -> str:
    return "\n".join(
        f"{i.agent_id}: Satisfaction {i.satisfaction_level:g}/10, "
        f"Additional points: {i.has_additional_points}, Ready: {i.ready_to_move}"
        for i in indicators
    )
