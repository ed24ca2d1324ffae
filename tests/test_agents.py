"""Tests for council/agents.py."""

import pytest

from council.agents import (
    AgentRegistry,
    DialogueAgent,
    execute_with_retry,
    format_messages,
    parse_reflections,
)
from council.interaction_log import InteractionLogger
from council.models import DialogueStage, Message, StageData
from council.providers.base import ProviderError
from tests.conftest import MockExecutor, make_completion


@pytest.fixture
def eiro(sample_agents, sample_prompts_config) -> DialogueAgent:
    return DialogueAgent(sample_agents[0], MockExecutor("claude"), sample_prompts_config)


# --- parse_reflections ---

def test_parse_reflections_fenced_block():
    text = (
        "I mostly agree.\n```json\n"
        '{"reflections": ['
        '{"target": "kanshi-001", "agreement": false, "reaction": "Too harsh.", "questions": ["Why?"]},'
        '{"target": "ghost-999", "agreement": true, "reaction": "?"}'
        "]}\n```"
    )
    [reflection] = parse_reflections(text, {"kanshi-001", "yoga-001"})
    assert reflection.target_agent_id == "kanshi-001"
    assert reflection.agreement is False
    assert reflection.reaction == "Too harsh."
    assert reflection.questions == ["Why?"]


def test_parse_reflections_string_agreement():
    text = '[{"target": "yoga-001", "agreement": "no", "reaction": "Hmm", "questions": "What then?"}]'
    [reflection] = parse_reflections(text, {"yoga-001"})
    assert reflection.agreement is False
    assert reflection.questions == ["What then?"]


def test_parse_reflections_without_block():
    assert parse_reflections("Nice thoughts, everyone.", {"yoga-001"}) == []


def test_format_messages():
    assert format_messages([]) == "(no previous messages)"
    text = format_messages([
        Message(agent_id="user", content="Q?", role="user"),
        Message(agent_id="eiro-001", content="A.", role="agent"),
    ])
    assert text == "[user] Q?\n\n[eiro-001] A."


# --- execute_with_retry ---

async def test_retry_once_on_timeout_with_longer_timeout(tmp_path):
    executor = MockExecutor("claude", timeout_sec=60)
    executor.execute.side_effect = [
        ProviderError("claude", "Request timed out after 60s", timed_out=True),
        make_completion("late but fine"),
    ]
    log = InteractionLogger(tmp_path)

    completion = await execute_with_retry(
        executor, "p", "persona", interaction_logger=log, session_id="s", stage="individual-thought",
        agent_id="eiro-001",
    )

    assert completion.content == "late but fine"
    first, retry = executor.execute.await_args_list
    assert first.args == ("p", "persona")
    assert retry.kwargs == {"timeout_sec": 90.0}
    assert executor.timeout_sec() == 60
    assert [e["status"] for e in log.get_session_logs("s")] == ["timeout", "success"]


async def test_timeout_text_alone_does_not_retry():
    executor = MockExecutor("claude", timeout_sec=60)
    executor.execute.side_effect = ProviderError("claude", "upstream said: timed out")
    with pytest.raises(ProviderError):
        await execute_with_retry(executor, "p")
    assert executor.execute.await_count == 1


async def test_non_timeout_error_is_not_retried(tmp_path):
    executor = MockExecutor("claude")
    executor.execute.side_effect = ProviderError("claude", "API call failed: 401")
    log = InteractionLogger(tmp_path)

    with pytest.raises(ProviderError):
        await execute_with_retry(executor, "p", interaction_logger=log, session_id="s", stage="x", agent_id="a")

    assert executor.execute.await_count == 1
    [entry] = log.get_session_logs("s")
    assert entry["status"] == "error"
    assert "401" in entry["error"]


async def test_second_timeout_raises():
    executor = MockExecutor("claude")
    executor.execute.side_effect = ProviderError("claude", "Request timed out after 60s", timed_out=True)
    with pytest.raises(ProviderError):
        await execute_with_retry(executor, "p")
    assert executor.execute.await_count == 2
    # nothing to stretch without a default timeout
    assert executor.execute.await_args.kwargs == {"timeout_sec": None}


# --- DialogueAgent ---

async def test_individual_thought_reads_approach_and_summary(eiro):
    eiro.executor.execute.return_value = make_completion(
        "Long reasoning...\nApproach: first principles\nSummary: It depends on definitions."
    )
    response = await eiro.individual_thought("Is free will real?", [], "en")

    assert response.stage == DialogueStage.INDIVIDUAL_THOUGHT
    assert response.stage_data.approach == "first principles"
    assert response.stage_data.summary == "It depends on definitions."
    assert response.reasoning == "It depends on definitions."
    prompt, persona = eiro.executor.execute.call_args.args
    assert "Q: Is free will real?" in prompt
    assert "You are 慧露 (eiro-001)" in persona
    assert "Respond in English." in persona


async def test_individual_thought_defaults_approach_to_style(eiro):
    response = await eiro.individual_thought("q", [], "ja")
    assert response.stage_data.approach == "logical"
    assert "日本語" in eiro.executor.execute.call_args.args[1]


async def test_individual_thought_includes_previous_sequence(eiro):
    await eiro.individual_thought(
        "Follow-up?", [], "en", previous_input="First?", previous_conclusions={"kanshi-001": "z" * 300},
    )
    prompt = eiro.executor.execute.call_args.args[0]
    assert "Previous question: First?" in prompt
    assert "- kanshi-001: " + "z" * 200 + "..." in prompt


async def test_mutual_reflection_lists_targets(eiro):
    eiro.executor.execute.return_value = make_completion(
        '```json\n{"reflections": [{"target": "yoga-001", "agreement": false, "reaction": "No."}]}\n```'
    )
    others = [StageData("yoga-001", "Dreams.", approach="metaphor"), StageData("kanshi-001", "Doubt.")]
    response = await eiro.mutual_reflection("q", others, [], "en")

    assert "Ids: yoga-001, kanshi-001" in eiro.executor.execute.call_args.args[0]
    assert [r.target_agent_id for r in response.stage_data.reflections] == ["yoga-001"]


async def test_finalize_without_votes(eiro):
    response = await eiro.finalize("q", {}, [], "en")
    assert response.stage == DialogueStage.FINALIZE
    assert "(no votes cast)" in eiro.executor.execute.call_args.args[0]


async def test_consensus_check_parses_reply(eiro):
    eiro.executor.execute.return_value = make_completion("Satisfaction: 7\nReady to conclude: no")
    result = await eiro.consensus_check("q", [], 4, "en")
    assert result.agent_id == "eiro-001"
    assert result.satisfaction_level == 7.0
    assert "Round 4." in eiro.executor.execute.call_args.args[0]


# --- AgentRegistry ---

def test_registry_rejects_duplicates(eiro):
    registry = AgentRegistry([eiro])
    with pytest.raises(ValueError):
        registry.register(eiro)


def test_registry_select_skips_unknown(registry):
    assert [a.id for a in registry.select(["yoga-001", "ghost-999", "eiro-001"])] == ["yoga-001", "eiro-001"]
    assert len(registry.select()) == 4
    assert [a.id for a in registry.descriptors(["kanshi-001"])] == ["kanshi-001"]
