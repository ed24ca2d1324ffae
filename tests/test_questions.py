"""Unit tests for council/questions.py."""

import textwrap
from pathlib import Path

from council.questions import parse_question_file


def test_parse_file_no_frontmatter(tmp_path: Path) -> None:
    """File without front matter returns full content and empty metadata."""
    f = tmp_path / "question.md"
    f.write_text("Is free will compatible with determinism?", encoding="utf-8")
    content, metadata = parse_question_file(f)
    assert content == "Is free will compatible with determinism?"
    assert metadata == {}


def test_parse_file_with_frontmatter(tmp_path: Path) -> None:
    """Known keys come through; agent lists given as strings are split."""
    f = tmp_path / "question.md"
    f.write_text(
        textwrap.dedent("""\
            ---
            agents: eiro-001, kanshi-001
            language: ja
            dynamic: true
            rounds: 3
            ---
            What makes a good explanation?
        """),
        encoding="utf-8",
    )
    content, metadata = parse_question_file(f)
    assert content == "What makes a good explanation?"
    assert metadata["agents"] == ["eiro-001", "kanshi-001"]
    assert metadata["language"] == "ja"
    assert metadata["dynamic"] is True
    assert "rounds" not in metadata


def test_parse_file_agent_list(tmp_path: Path) -> None:
    f = tmp_path / "question.md"
    f.write_text("---\nagents: [yoga-001]\nsummaries: false\n---\nWhy?\n", encoding="utf-8")
    content, metadata = parse_question_file(f)
    assert content == "Why?"
    assert metadata == {"agents": ["yoga-001"], "summaries": False}
