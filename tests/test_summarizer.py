"""Tests for council/summarizer.py."""

import pytest

from council.models import DialogueStage, Message, StageSummary, SummaryPoint
from council.summarizer import (
    StageSummarizer,
    format_summaries,
    format_summary_message,
    parse_summary_points,
)
from tests.conftest import MockExecutor


def test_parse_bullets():
    text = "Here is the summary:\n- 慧露: Definitions first.\n* **観至**: Doubts the premise.\n"
    points = parse_summary_points(text)
    assert points == [
        SummaryPoint("慧露", "Definitions first."),
        SummaryPoint("観至", "Doubts the premise."),
    ]


def test_parse_free_text_becomes_system_point():
    assert parse_summary_points("Everyone broadly agreed.") == [SummaryPoint("system", "Everyone broadly agreed.")]
    assert parse_summary_points("   ") == []


def test_format_summary_message():
    summary = StageSummary(DialogueStage.MUTUAL_REFLECTION, [SummaryPoint("慧露", "Agrees.")], 1, 2)
    assert format_summary_message(DialogueStage.MUTUAL_REFLECTION, summary) == (
        "mutual-reflection summary:\n- **慧露**: Agrees."
    )


def test_format_summaries():
    summaries = [
        StageSummary(DialogueStage.INDIVIDUAL_THOUGHT, [SummaryPoint("a", "x")], 1, 1),
        StageSummary(DialogueStage.SYNTHESIS_ATTEMPT, [SummaryPoint("b", "y")], 1, 4),
    ]
    assert format_summaries(summaries) == "### individual-thought\n- a: x\n\n### synthesis-attempt\n- b: y"


async def test_summarize_stage(sample_agents, sample_prompts_config):
    executor = MockExecutor("claude", "- 慧露: Logic.\n- 陽雅: Metaphor.")
    summarizer = StageSummarizer(executor, sample_prompts_config)
    messages = [
        Message(agent_id="eiro-001", content="Logic first.", role="agent", stage=DialogueStage.SYNTHESIS_ATTEMPT),
        Message(agent_id="system", content="ignored", role="system", stage=DialogueStage.SYNTHESIS_ATTEMPT),
    ]

    summary = await summarizer.summarize_stage(
        DialogueStage.SYNTHESIS_ATTEMPT, messages, sample_agents, "s-1", "en", sequence_number=2,
    )

    assert summary.stage == DialogueStage.SYNTHESIS_ATTEMPT
    assert summary.stage_number == 4
    assert summary.sequence_number == 2
    assert [p.speaker for p in summary.summary] == ["慧露", "陽雅"]
    prompt = executor.execute.call_args.args[0]
    assert "**慧露 (eiro-001)**\nLogic first." in prompt
    assert "ignored" not in prompt


async def test_final_summary_rejects_empty(sample_agents, sample_prompts_config):
    summarizer = StageSummarizer(MockExecutor("claude", "  "), sample_prompts_config)
    with pytest.raises(RuntimeError):
        await summarizer.generate_final_summary([], sample_agents, "s-1")


async def test_final_summary(sample_agents, sample_prompts_config):
    executor = MockExecutor("claude", "It converged.")
    summarizer = StageSummarizer(executor, sample_prompts_config)
    summaries = [StageSummary(DialogueStage.INDIVIDUAL_THOUGHT, [SummaryPoint("a", "x")], 1, 1)]
    assert await summarizer.generate_final_summary(summaries, sample_agents, "s-1", "ja") == "It converged."
    assert "日本語" in executor.execute.call_args.args[0]
