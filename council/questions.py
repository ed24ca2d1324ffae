"""Question files: markdown body plus optional front matter overrides."""

from pathlib import Path
from typing import Any

import frontmatter

_KNOWN_KEYS = {"language", "agents", "dynamic", "summaries", "title"}


def parse_question_file(path: Path) -> tuple[str, dict[str, Any]]:
    """Return (question text, metadata).

    Recognised metadata keys: language, agents (list or comma-separated
    string), dynamic, summaries, title. Other keys are dropped.
    """
    post = frontmatter.load(path)
    metadata = {k: v for k, v in post.metadata.items() if k in _KNOWN_KEYS}
    if isinstance(metadata.get("agents"), str):
        metadata["agents"] = [a.strip() for a in metadata["agents"].split(",") if a.strip()]
    return post.content.strip(), metadata
