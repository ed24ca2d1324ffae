"""Rich console output and markdown persistence of final dialogue outputs."""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import frontmatter
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from council.models import Agent, DialogueState, Message

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


@dataclass
class SavedOutput:
    id: str
    path: Path


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len] or "output"


def _preview(content: str, words: int = 50) -> str:
    all_words = content.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


class OutputStorage:
    """Saves final outputs as markdown files with YAML front matter."""

    def __init__(self, output_dir: Path) -> None:
        self._output_dir = output_dir

    def save_output(
        self,
        title: str,
        content: str,
        user_prompt: str,
        language: str,
        session_id: str,
    ) -> SavedOutput:
        self._output_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        output_id = f"{timestamp}_{_slug(title)}"
        path = self._output_dir / f"{output_id}.md"

        post = frontmatter.Post(
            content,
            id=output_id,
            title=title,
            user_prompt=user_prompt,
            language=language,
            session_id=session_id,
            created_at=datetime.now().isoformat(timespec="seconds"),
        )
        path.write_text(frontmatter.dumps(post), encoding="utf-8")
        logger.info("Output saved to: %s", path)
        return SavedOutput(id=output_id, path=path)

    def load_output(self, output_id: str) -> frontmatter.Post:
        return frontmatter.load(self._output_dir / f"{output_id}.md")

    def list_outputs(self) -> list[str]:
        if not self._output_dir.exists():
            return []
        return sorted((p.stem for p in self._output_dir.glob("*.md")), reverse=True)


def build_output_document(
    title: str,
    final_content: str,
    finalizers: list[Agent],
    final_summary: str = "",
) -> str:
    lines = [f"# {title}", ""]
    if finalizers:
        lines += [f"**Finalized by:** {', '.join(f'{a.name} ({a.id})' for a in finalizers)}", ""]
    lines += [final_content, ""]
    if final_summary:
        lines += ["## Dialogue Summary", "", final_summary, ""]
    return "\n".join(lines)


def print_stage(stage: str, messages: list[Message], agents: list[Agent]) -> None:
    """Print a brief preview of each response in a stage."""
    names = {a.id: a.name for a in agents}
    console.print(Rule(f"[bold cyan]{stage}[/bold cyan]"))
    for m in messages:
        if m.role == "system":
            console.print(Text(m.content, style="dim"))
            continue
        console.print(
            Panel(
                _preview(m.content),
                title=f"[bold]{names.get(m.agent_id, m.agent_id)}[/bold] ({m.agent_id})",
                border_style="dim",
            )
        )


def print_round(state: DialogueState) -> None:
    actions = ", ".join(f"{a.type}->{a.target or 'all'}" for a in state.suggested_actions) or "none"
    console.print(
        Text(
            f"Round {state.round_number} | consensus {state.overall_consensus:.1f} | "
            f"continue: {state.should_continue} | actions: {actions}",
            style="dim",
        )
    )


def print_final_output(content: str, finalizers: list[str], duration_sec: float) -> None:
    """Print the final answer using Rich markdown."""
    console.print(Rule("[bold green]Final Output[/bold green]"))
    console.print(
        Text(f"Finalized by: {', '.join(finalizers) or 'n/a'} | Duration: {duration_sec:.1f}s", style="dim")
    )
    console.print(Markdown(content))
