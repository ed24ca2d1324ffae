"""Tests for council/router.py."""

import asyncio
import random
from unittest.mock import AsyncMock

import pytest

from config.config_loader import DelayConfig
from council.models import (
    Agent,
    AgentResponse,
    DialogueStage,
    Message,
    Session,
    StageSummary,
    SummaryPoint,
)
from council.output import OutputStorage
from council.providers.base import ProviderError
from council.router import PIPELINE, StageOrchestrator, UnknownStageError, parse_stage
from council.storage import InMemorySessionRepository, JsonSessionRepository, SessionNotFoundError
from council.summarizer import StageSummarizer
from tests.conftest import MockExecutor, make_completion

QUESTION = "What makes a good explanation?"


def _script_votes(executor: MockExecutor, agent_id: str, vote_for: str) -> None:
    """Answer every stage normally but vote for ``vote_for`` in output-generation."""

    async def _execute(prompt: str, context: str = ""):
        if "Vote among" in prompt:
            return make_completion(f"My final answer.\nAgent Vote: {vote_for}", agent_id)
        return make_completion(f"Response from {agent_id}", agent_id)

    executor.execute.side_effect = _execute


@pytest.fixture
def repository() -> InMemorySessionRepository:
    return InMemorySessionRepository()


@pytest.fixture
def orchestrator(repository, registry, zero_delays, tmp_path) -> StageOrchestrator:
    return StageOrchestrator(
        repository=repository,
        registry=registry,
        output_storage=OutputStorage(tmp_path / "output"),
        delays=zero_delays,
        rng=random.Random(7),
    )


# --- sessions ---

async def test_create_session_copies_selected_agents(orchestrator, registry):
    session = await orchestrator.create_session("t", ["kanshi-001", "eiro-001", "ghost-999"])
    assert [a.id for a in session.agents] == ["kanshi-001", "eiro-001"]
    session.agents[0].is_summarizer = True
    assert registry.get("kanshi-001").agent.is_summarizer is False


async def test_create_session_without_agents_fails(orchestrator):
    with pytest.raises(ValueError):
        await orchestrator.create_session("t", ["ghost-999"])


async def test_unknown_stage_raises(orchestrator):
    session = await orchestrator.create_session("t")
    with pytest.raises(UnknownStageError):
        await orchestrator.execute_stage(session.id, QUESTION, "brainstorm")


def test_parse_stage_accepts_names():
    assert parse_stage("mutual-reflection-summary") is DialogueStage.MUTUAL_REFLECTION_SUMMARY


async def test_missing_session_raises(orchestrator):
    with pytest.raises(SessionNotFoundError):
        await orchestrator.execute_stage("nope", QUESTION, DialogueStage.INDIVIDUAL_THOUGHT)


# --- full sequence ---

async def test_full_sequence_completes_and_saves_output(orchestrator, tmp_path):
    session = await orchestrator.create_session("Good explanations")
    completed: list[DialogueStage] = []

    session = await orchestrator.run_sequence(
        session.id, QUESTION, on_stage_complete=lambda r: completed.append(r.stage),
    )

    assert completed == PIPELINE
    assert session.complete is True
    assert session.status == "completed"
    assert [m.role for m in session.messages].count("user") == 1
    for stage in PIPELINE[:-1]:
        assert len([m for m in session.messages if m.stage == stage and m.role == "agent"]) == 4
    finalize = [m for m in session.messages if m.stage == DialogueStage.FINALIZE]
    # no votes were cast, so the most active agent (first in order on a tie) finalizes
    assert [m.agent_id for m in finalize] == ["eiro-001"]

    output_id = session.output_ids[1]
    saved = (tmp_path / "output" / f"{output_id}.md").read_text(encoding="utf-8")
    assert "Response from eiro-001" in saved
    assert f"session_id: {session.id}" in saved


async def test_history_records_each_stage(orchestrator):
    session = await orchestrator.create_session("t")
    session = await orchestrator.run_sequence(session.id, QUESTION)
    assert [h.stage for h in session.stage_history] == PIPELINE
    assert all(h.end_time is not None for h in session.stage_history)
    assert all(h.sequence_number == 1 for h in session.stage_history)


async def test_new_sequence_carries_previous_conclusions(orchestrator, repository, mock_executors):
    session = await orchestrator.create_session("t")
    await orchestrator.run_sequence(session.id, QUESTION)

    result = await orchestrator.execute_stage(session.id, "And for children?", DialogueStage.INDIVIDUAL_THOUGHT)

    session = await repository.require_session(session.id)
    assert result.sequence_number == 2
    assert session.sequence_number == 2
    assert session.complete is False
    assert [h.stage for h in session.stage_history] == [DialogueStage.INDIVIDUAL_THOUGHT]
    assert [m.content for m in session.sequence_messages() if m.role == "user"] == ["And for children?"]

    prompt = mock_executors["kanshi-001"].execute.call_args.args[0]
    assert f"Previous question: {QUESTION}" in prompt
    assert "- eiro-001: Response from eiro-001" in prompt
    assert "- kanshi-001: Response from kanshi-001" in prompt


async def test_failing_agent_is_skipped(orchestrator, mock_executors):
    mock_executors["kanshi-001"].execute.side_effect = ProviderError("kanshi-001", "boom")
    session = await orchestrator.create_session("t")

    result = await orchestrator.execute_stage(session.id, QUESTION, DialogueStage.INDIVIDUAL_THOUGHT)

    assert sorted(r.agent_id for r in result.responses) == ["eiro-001", "hekito-001", "yoga-001"]


async def test_seeded_order_is_reproducible(registry, zero_delays, sample_agents):
    orders = []
    for _ in range(2):
        orchestrator = StageOrchestrator(
            InMemorySessionRepository(), registry, delays=zero_delays, rng=random.Random(42),
        )
        session = await orchestrator.create_session("t")
        seen: list[str] = []
        await orchestrator.execute_stage(
            session.id, QUESTION, DialogueStage.INDIVIDUAL_THOUGHT, on_message=lambda m: seen.append(m.agent_id),
        )
        orders.append(seen)

    expected = [a.id for a in sample_agents]
    random.Random(42).shuffle(expected)
    assert orders[0] == orders[1] == expected


async def test_delay_between_agents(registry, repository):
    sleep = AsyncMock()
    orchestrator = StageOrchestrator(repository, registry, delays=DelayConfig(2.0, 0, 0), sleep=sleep)
    session = await orchestrator.create_session("t")
    await orchestrator.execute_stage(session.id, QUESTION, DialogueStage.INDIVIDUAL_THOUGHT)
    assert sleep.await_count == 3
    sleep.assert_awaited_with(2.0)


async def test_mutual_reflection_needs_other_thoughts(orchestrator):
    session = await orchestrator.create_session("t", ["eiro-001"])
    await orchestrator.execute_stage(session.id, QUESTION, DialogueStage.INDIVIDUAL_THOUGHT)
    result = await orchestrator.execute_stage(session.id, QUESTION, DialogueStage.MUTUAL_REFLECTION)
    assert result.responses == []


# --- voting and finalize ---

async def test_vote_winner_finalizes(orchestrator, repository, mock_executors):
    for agent_id in ("eiro-001", "yoga-001", "hekito-001"):
        _script_votes(mock_executors[agent_id], agent_id, "kanshi-001")
    _script_votes(mock_executors["kanshi-001"], "kanshi-001", "yoga-001")
    session = await orchestrator.create_session("t")

    for stage in PIPELINE[:-1]:
        await orchestrator.execute_stage(session.id, QUESTION, stage)

    session = await repository.require_session(session.id)
    assert session.voting_results == {
        "eiro-001": "kanshi-001",
        "yoga-001": "kanshi-001",
        "hekito-001": "kanshi-001",
        "kanshi-001": "yoga-001",
    }
    assert [a.id for a in session.agents if a.is_summarizer] == ["kanshi-001"]
    votes = {m.agent_id: m.metadata["vote_for"] for m in session.messages if m.stage == DialogueStage.OUTPUT_GENERATION}
    assert votes["eiro-001"] == "kanshi-001"

    result = await orchestrator.execute_stage(session.id, QUESTION, DialogueStage.FINALIZE)
    await orchestrator.drain_effects()
    assert [r.agent_id for r in result.responses] == ["kanshi-001"]
    assert not any(a.is_summarizer for a in session.agents)


async def test_tied_finalizers_all_run(orchestrator, mock_executors):
    _script_votes(mock_executors["eiro-001"], "eiro-001", "yoga-001")
    _script_votes(mock_executors["yoga-001"], "yoga-001", "eiro-001")
    session = await orchestrator.create_session("t", ["eiro-001", "yoga-001"])

    await orchestrator.execute_stage(session.id, QUESTION, DialogueStage.OUTPUT_GENERATION)
    result = await orchestrator.execute_stage(session.id, QUESTION, DialogueStage.FINALIZE)
    await orchestrator.drain_effects()

    assert [r.agent_id for r in result.responses] == ["eiro-001", "yoga-001"]


# --- summaries ---

async def test_stage_summaries_with_summary_stages(repository, registry, zero_delays, sample_prompts_config):
    summarizer_executor = MockExecutor("claude", "- 慧露: logic first\n- 観至: doubts remain")
    orchestrator = StageOrchestrator(
        repository,
        registry,
        summarizer=StageSummarizer(summarizer_executor, sample_prompts_config),
        delays=zero_delays,
        rng=random.Random(1),
    )
    session = await orchestrator.create_session("t")

    session = await orchestrator.run_sequence(session.id, QUESTION, include_summary_stages=True)

    # five agent stages summarized once each, plus the final summary; summary stages reuse them
    assert summarizer_executor.execute.await_count == 6
    assert [s.stage for s in session.stage_summaries] == PIPELINE[:-1]
    reflection_summaries = [
        m for m in session.messages
        if m.role == "system" and m.content.startswith("mutual-reflection summary:")
    ]
    assert len(reflection_summaries) == 1
    assert reflection_summaries[0].stage == DialogueStage.MUTUAL_REFLECTION
    assert "- **慧露**: logic first" in reflection_summaries[0].content
    summary_stage = next(h for h in session.stage_history if h.stage == DialogueStage.MUTUAL_REFLECTION_SUMMARY)
    assert summary_stage.agent_responses == []
    assert summary_stage.end_time is not None


async def test_summary_stage_summarizes_when_nothing_was_queued(repository, registry, zero_delays,
                                                                 sample_prompts_config):
    summarizer_executor = MockExecutor("claude", "- 慧露: logic first")
    without_summaries = StageOrchestrator(repository, registry, delays=zero_delays)
    session = await without_summaries.create_session("t")
    await without_summaries.execute_stage(session.id, QUESTION, DialogueStage.INDIVIDUAL_THOUGHT)
    await without_summaries.execute_stage(session.id, QUESTION, DialogueStage.MUTUAL_REFLECTION)

    orchestrator = StageOrchestrator(
        repository, registry, summarizer=StageSummarizer(summarizer_executor, sample_prompts_config),
        delays=zero_delays,
    )
    result = await orchestrator.execute_stage(session.id, QUESTION, DialogueStage.MUTUAL_REFLECTION_SUMMARY)

    [response] = result.responses
    assert response.content.startswith("mutual-reflection summary:")
    summaries = [m for m in session.messages if m.role == "system"]
    assert [m.stage for m in summaries] == [DialogueStage.MUTUAL_REFLECTION_SUMMARY]
    assert summarizer_executor.execute.await_count == 1


async def test_summary_delay_does_not_hold_up_next_stage(repository, registry, sample_prompts_config):
    release = asyncio.Event()
    delays_seen: list[float] = []

    async def gated_sleep(seconds: float) -> None:
        delays_seen.append(seconds)
        await release.wait()

    orchestrator = StageOrchestrator(
        repository,
        registry,
        summarizer=StageSummarizer(MockExecutor("claude", "- 慧露: ok"), sample_prompts_config),
        delays=DelayConfig(0, 30.0, 0),
        sleep=gated_sleep,
    )
    session = await orchestrator.create_session("t")

    await orchestrator.execute_stage(session.id, QUESTION, DialogueStage.INDIVIDUAL_THOUGHT)
    result = await orchestrator.execute_stage(session.id, QUESTION, DialogueStage.MUTUAL_REFLECTION)

    assert len(result.responses) == 4
    assert session.stage_summaries == []

    release.set()
    await orchestrator.drain_effects()

    assert delays_seen == [30.0, 30.0]
    assert [s.stage for s in session.stage_summaries] == [
        DialogueStage.INDIVIDUAL_THOUGHT,
        DialogueStage.MUTUAL_REFLECTION,
    ]


async def test_json_repository_keeps_queued_summaries(registry, zero_delays, sample_prompts_config, tmp_path):
    orchestrator = StageOrchestrator(
        JsonSessionRepository(tmp_path / "sessions"),
        registry,
        summarizer=StageSummarizer(MockExecutor("claude", "- 慧露: ok"), sample_prompts_config),
        delays=zero_delays,
    )
    session = await orchestrator.create_session("t")
    await orchestrator.run_sequence(session.id, QUESTION)

    stored = await JsonSessionRepository(tmp_path / "sessions").require_session(session.id)

    assert [s.stage for s in stored.stage_summaries] == PIPELINE[:-1]
    assert len([m for m in stored.messages if m.role == "system"]) == 5
    assert stored.complete is True


async def test_failed_summary_does_not_break_stage(repository, registry, zero_delays, sample_prompts_config):
    summarizer_executor = MockExecutor("claude")
    summarizer_executor.execute.side_effect = ProviderError("claude", "quota")
    orchestrator = StageOrchestrator(
        repository, registry, summarizer=StageSummarizer(summarizer_executor, sample_prompts_config),
        delays=zero_delays,
    )
    session = await orchestrator.create_session("t")
    result = await orchestrator.execute_stage(session.id, QUESTION, DialogueStage.INDIVIDUAL_THOUGHT)
    await orchestrator.drain_effects()

    assert len(result.responses) == 4
    assert summarizer_executor.execute.await_count == 1
    assert session.stage_summaries == []


def test_post_stage_effects_plan(repository, registry, sample_prompts_config):
    session = Session(id="s", title="t", agents=[])
    responses = [AgentResponse(agent_id="eiro-001", content="x")]
    plain = StageOrchestrator(repository, registry)
    with_summaries = StageOrchestrator(
        repository, registry, summarizer=StageSummarizer(MockExecutor(), sample_prompts_config),
    )

    def names(orchestrator, stage, stage_responses):
        return [e.name for e in orchestrator.plan_post_stage_effects(session, stage, stage_responses, "q", "en")]

    assert names(plain, DialogueStage.FINALIZE, responses) == ["save_output"]
    assert names(plain, DialogueStage.INDIVIDUAL_THOUGHT, responses) == []
    assert names(with_summaries, DialogueStage.INDIVIDUAL_THOUGHT, responses) == ["stage_summary"]
    assert names(with_summaries, DialogueStage.INDIVIDUAL_THOUGHT, []) == []
    assert names(with_summaries, DialogueStage.SYNTHESIS_ATTEMPT_SUMMARY, responses) == []


# --- previous sequence info ---

def test_previous_sequence_prefers_finalize_and_truncates(repository, registry):
    agents = [Agent(id="a", name="A", style="logical"), Agent(id="b", name="B", style="critical")]
    long_text = "y" * 250
    session = Session(id="s", title="t", agents=agents, sequence_number=2, messages=[
        Message(agent_id="user", content="First question", role="user"),
        Message(agent_id="a", content="a thought", role="agent", stage=DialogueStage.INDIVIDUAL_THOUGHT),
        Message(agent_id="a", content="a output", role="agent", stage=DialogueStage.OUTPUT_GENERATION),
        Message(agent_id="a", content="a final", role="agent", stage=DialogueStage.FINALIZE),
        Message(agent_id="b", content=long_text, role="agent", stage=DialogueStage.SYNTHESIS_ATTEMPT),
        Message(agent_id="b", content="b reflection", role="agent", stage=DialogueStage.MUTUAL_REFLECTION),
    ])
    user_input, conclusions = StageOrchestrator(repository, registry).get_previous_sequence_info(session)

    assert user_input == "First question"
    assert conclusions == {"a": "a final", "b": "y" * 200 + "..."}


def test_first_sequence_has_no_previous_info(repository, registry):
    session = Session(id="s", title="t", agents=[])
    assert StageOrchestrator(repository, registry).get_previous_sequence_info(session) == ("", {})


async def test_reset_session(orchestrator):
    session = await orchestrator.create_session("t")
    await orchestrator.run_sequence(session.id, QUESTION)
    session.stage_summaries.append(StageSummary(
        DialogueStage.MUTUAL_REFLECTION, [SummaryPoint("a", "b")], sequence_number=1, stage_number=2,
    ))

    session = await orchestrator.reset_session(session.id)

    assert session.messages == []
    assert session.stage_history == []
    assert session.stage_summaries == []
    assert session.sequence_number == 1
    assert session.complete is False
