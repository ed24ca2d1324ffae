"""Tests for council/output.py."""

from pathlib import Path

import frontmatter
import pytest

from council.models import Agent
from council.output import OutputStorage, _slug, build_output_document


def test_slug_basic():
    assert _slug("Should we use YAML or JSON?") == "should-we-use-yaml-or-json"


def test_slug_max_len():
    long_text = "a" * 100
    assert len(_slug(long_text)) <= 40


def test_slug_special_chars():
    result = _slug("API vs. SDK (2024)")
    assert "." not in result
    assert "(" not in result
    assert ")" not in result


def test_slug_empty_falls_back():
    assert _slug("???") == "output"


@pytest.fixture
def storage(tmp_path: Path) -> OutputStorage:
    return OutputStorage(tmp_path / "output")


def test_save_output_creates_output_dir(tmp_path: Path):
    output_dir = tmp_path / "nested" / "output"
    assert not output_dir.exists()
    OutputStorage(output_dir).save_output("t", "body", "q", "en", "s-1")
    assert output_dir.exists()


def test_save_output_writes_front_matter(storage: OutputStorage):
    saved = storage.save_output("Is free will real?", "## Answer\nMaybe.", "Is free will real?", "ja", "session-1")

    assert saved.path.exists()
    assert saved.path.suffix == ".md"
    assert saved.path.stem == saved.id
    assert saved.id.endswith("_is-free-will-real")

    post = frontmatter.load(saved.path)
    assert post["session_id"] == "session-1"
    assert post["language"] == "ja"
    assert post["user_prompt"] == "Is free will real?"
    assert post.content == "## Answer\nMaybe."


def test_load_and_list_outputs(storage: OutputStorage):
    assert storage.list_outputs() == []
    saved = storage.save_output("Topic", "Body text", "q", "en", "s-1")
    assert storage.list_outputs() == [saved.id]
    assert storage.load_output(saved.id).content == "Body text"


def test_build_output_document():
    finalizers = [Agent(id="eiro-001", name="慧露", style="logical")]
    document = build_output_document("Title", "Final words.", finalizers, "It went well.")
    assert document.startswith("# Title")
    assert "**Finalized by:** 慧露 (eiro-001)" in document
    assert "Final words." in document
    assert "## Dialogue Summary" in document
    assert "It went well." in document


def test_build_output_document_without_summary():
    document = build_output_document("Title", "Final words.", [])
    assert "Finalized by" not in document
    assert "Dialogue Summary" not in document
