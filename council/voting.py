"""Vote extraction and tallying.

Agents vote in free-form text, in English or Japanese. A vote is read with a
tiny grammar: a labelled section (``Agent Vote: ...``), a bold token
(``**eiro-001**``) and the name variants of every known agent. The extractor
returns a typed result instead of a nullable id so callers can see why a
vote was or was not counted.
"""

import logging
import re
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass

from council.models import Agent, AgentResponse, Message, VotingResults

logger = logging.getLogger(__name__)

_LABEL_RE = re.compile(r"(?:まとめ役|投票|Agent Vote|agent_vote)[^\n:：]*[:：]\s*([^\n]+)", re.IGNORECASE)
_BOLD_RE = re.compile(r"\*\*([A-Za-z0-9-]+)\*\*")
_PARENTHETICAL_RE = re.compile(r"\s*[（(][^）)]*[）)]\s*")

# Window used by the activity fallback when no votes were cast
_RECENT_ACTIVITY_WINDOW = 20


@dataclass(frozen=True)
class Matched:
    agent_id: str


@dataclass(frozen=True)
class Ambiguous:
    candidates: tuple[str, ...]  # canonical agent order


@dataclass(frozen=True)
class NotFound:
    pass


VoteResult = Matched | Ambiguous | NotFound


@dataclass(frozen=True)
class VoteTokens:
    labelled: str | None
    bold: str | None


def tokenize_vote(text: str) -> VoteTokens:
    """Pick out the labelled vote value and the first bold token."""
    label = _LABEL_RE.search(text)
    bold = _BOLD_RE.search(text)
    return VoteTokens(
        labelled=label.group(1).strip() if label else None,
        bold=bold.group(1) if bold else None,
    )


def name_variants(agent: Agent) -> list[str]:
    """Id, display name, reading and the name without any parenthetical."""
    variants = [agent.id, agent.name, agent.reading, _PARENTHETICAL_RE.sub("", agent.name).strip()]
    unique: list[str] = []
    for v in variants:
        if v and v not in unique:
            unique.append(v)
    return unique


class VoteExtractor:
    """Resolve free-form vote text to one of a fixed set of agents."""

    def __init__(self, agents: list[Agent]) -> None:
        self._agents = list(agents)
        self._patterns = {
            a.id: [re.compile(re.escape(v), re.IGNORECASE) for v in name_variants(a)]
            for a in self._agents
        }

    def _matching(self, text: str, voter_id: str | None) -> list[str]:
        return [
            agent.id
            for agent in self._agents
            if agent.id != voter_id and any(p.search(text) for p in self._patterns[agent.id])
        ]

    def extract(self, text: str, voter_id: str | None = None) -> VoteResult:
        """Find the agent a piece of text votes for.

        Candidates are tried from most to least specific: the bold token,
        then the labelled section, then the whole text. The first candidate
        that names exactly one agent wins. A self-vote by ``voter_id`` is
        never counted.
        """
        if not text:
            return NotFound()

        tokens = tokenize_vote(text)
        for candidate in (tokens.bold, tokens.labelled):
            if not candidate:
                continue
            hits = self._matching(candidate, voter_id)
            if len(hits) == 1:
                return Matched(hits[0])
            if hits:
                return Ambiguous(tuple(hits))

        hits = self._matching(text, voter_id)
        if len(hits) == 1:
            return Matched(hits[0])
        if hits:
            return Ambiguous(tuple(hits))
        return NotFound()

    def extract_vote(self, text: str, voter_id: str | None = None) -> str | None:
        """Permissive variant: an ambiguous vote resolves to its first agent in canonical order."""
        result = self.extract(text, voter_id)
        match result:
            case Matched(agent_id=agent_id):
                return agent_id
            case Ambiguous(candidates=candidates):
                logger.debug("Ambiguous vote from %s, taking %s of %s", voter_id, candidates[0], candidates)
                return candidates[0]
            case _:
                return None


def extract_voting_results(responses: Iterable[AgentResponse | Message], agents: list[Agent]) -> VotingResults:
    """Build voter -> voted-for mapping. An explicit ``vote_for`` in message metadata wins."""
    extractor = VoteExtractor(agents)
    valid_ids = {a.id for a in agents}
    results: VotingResults = {}
    for response in responses:
        metadata = getattr(response, "metadata", {}) or {}
        explicit = metadata.get("vote_for")
        if explicit in valid_ids and explicit != response.agent_id:
            results[response.agent_id] = explicit
            continue
        vote = extractor.extract_vote(response.content, voter_id=response.agent_id)
        if vote is not None:
            results[response.agent_id] = vote
    return results


def count_votes(voting_results: VotingResults, agents: list[Agent]) -> list[str]:
    """Return every agent tied at the maximum vote count, in canonical order.

    Votes for ids outside ``agents`` are ignored. Empty when no vote counts.
    """
    counts = Counter(v for v in voting_results.values())
    tally = {a.id: counts.get(a.id, 0) for a in agents}
    top = max(tally.values(), default=0)
    if top == 0:
        return []
    return [agent_id for agent_id, n in tally.items() if n == top]


def tally_votes(responses: Iterable[AgentResponse | Message], agents: list[Agent]) -> list[str]:
    """Extract votes from every response and return the winner set (ties preserved)."""
    return count_votes(extract_voting_results(responses, agents), agents)


def most_active_agent(agents: list[Agent], messages: list[Message]) -> str | None:
    """Agent with the most messages in the recent window; ties go to the earliest agent."""
    if not agents:
        return None
    recent = Counter(m.agent_id for m in messages[-_RECENT_ACTIVITY_WINDOW:])
    best = agents[0].id
    for agent in agents[1:]:
        if recent.get(agent.id, 0) > recent.get(best, 0):
            best = agent.id
    return best


def select_summarizer(
    agents: list[Agent],
    messages: list[Message],
    responses: Iterable[AgentResponse | Message] = (),
) -> str | None:
    """Pick a single summarizer: first tied vote winner, else the most active agent."""
    winners = tally_votes(responses, agents)
    if winners:
        return winners[0]
    selected = most_active_agent(agents, messages)
    logger.info("No votes cast, falling back to most active agent: %s", selected)
    return selected
