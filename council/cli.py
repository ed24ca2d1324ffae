"""Click CLI: loads config, builds executors and agents, runs a dialogue, prints and saves the outcome."""

import asyncio
import logging
import random
import sys
import time
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from config.config_loader import AppConfig, ConfigError, DelayConfig, load_config
from council.agents import AgentRegistry, DialogueAgent, agent_from_config
from council.consensus import ConsensusEngine
from council.dynamic import DynamicDialogue
from council.facilitator import FacilitatorActionPlanner
from council.healthcheck import run_health_checks
from council.interaction_log import InteractionLogger
from council.models import DialogueStage, Message, Session, StageExecutionResult
from council.output import OutputStorage, print_final_output, print_round, print_stage
from council.providers.anthropic import AnthropicExecutor
from council.providers.base import AIExecutor, ProviderError
from council.providers.gemini import GeminiExecutor
from council.providers.openai_provider import OpenAIExecutor, XAIExecutor
from council.questions import parse_question_file
from council.router import StageOrchestrator
from council.storage import JsonSessionRepository
from council.summarizer import StageSummarizer

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

EXECUTOR_CLASSES: dict[str, type[AIExecutor]] = {
    "claude": AnthropicExecutor,
    "openai": OpenAIExecutor,
    "gemini": GeminiExecutor,
    "grok": XAIExecutor,
}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _build_all_executors(config: AppConfig) -> dict[str, AIExecutor]:
    """Build all available executors. Returns dict keyed by provider name."""
    executors: dict[str, AIExecutor] = {}
    for name in sorted(config.available_providers):
        if name not in EXECUTOR_CLASSES:
            logger.warning("Provider '%s' unknown, skipping", name)
            continue
        try:
            executors[name] = EXECUTOR_CLASSES[name](config.models[name])
        except ProviderError as exc:
            logger.warning("Failed to instantiate provider '%s': %s", name, exc)
    return executors


def _pick_executor(executors: dict[str, AIExecutor], preferred: str) -> AIExecutor:
    """The preferred executor when available, else the first one by name."""
    if preferred in executors:
        return executors[preferred]
    return executors[sorted(executors)[0]]


def _build_registry(
    config: AppConfig,
    executors: dict[str, AIExecutor],
    interaction_logger: InteractionLogger | None,
) -> AgentRegistry:
    """One DialogueAgent per configured agent. Agents whose provider is down borrow another executor."""
    registry = AgentRegistry()
    for agent_cfg in config.agents:
        executor = executors.get(agent_cfg.provider)
        if executor is None:
            executor = _pick_executor(executors, agent_cfg.provider)
            logger.warning(
                "Agent %s: provider '%s' unavailable, using '%s'",
                agent_cfg.id, agent_cfg.provider, executor.name(),
            )
        registry.register(DialogueAgent(agent_from_config(agent_cfg), executor, config.prompts, interaction_logger))
    return registry


def _parse_agent_ids(agents_arg: str | list[str] | None) -> list[str] | None:
    if agents_arg is None:
        return None
    if isinstance(agents_arg, list):
        return agents_arg
    return [a.strip() for a in agents_arg.split(",") if a.strip()]


def _check_and_filter_executors(executors: dict[str, AIExecutor]) -> dict[str, AIExecutor]:
    """Run health checks, print results, and ask what to do on failures."""
    console.print("\n[bold]Checking providers...[/bold]")
    results = asyncio.run(run_health_checks(executors))

    failed = []
    for name in sorted(results):
        result = results[name]
        if result.ok:
            console.print(f"  [green]OK  [/green] {name} ({result.model}, {result.latency_sec:.1f}s)")
        else:
            short_err = result.error.splitlines()[0][:120] if result.error else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {short_err}")
            failed.append(name)

    if not failed:
        console.print()
        return executors

    working = {n: e for n, e in executors.items() if n not in failed}
    if not working:
        console.print("\n[bold red]Error:[/bold red] No providers passed the health check.")
        sys.exit(1)

    console.print(f"\n[yellow]{len(failed)} provider(s) failed:[/yellow] {', '.join(failed)}")
    if not click.confirm("Continue with working providers only?", default=True):
        sys.exit(0)
    console.print()
    return working


async def _run_staged(
    orchestrator: StageOrchestrator,
    session: Session,
    question: str,
    include_summaries: bool,
) -> Session:
    pending: list[Message] = []

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Running stages...", total=None)

        def on_stage_complete(result: StageExecutionResult) -> None:
            print_stage(str(result.stage), list(pending), session.agents)
            pending.clear()
            progress.update(task, description=f"Completed {result.stage}")

        return await orchestrator.run_sequence(
            session.id,
            question,
            include_summary_stages=include_summaries,
            on_message=pending.append,
            on_stage_complete=on_stage_complete,
        )


async def _run(
    config: AppConfig,
    executors: dict[str, AIExecutor],
    question: str,
    language: str,
    agent_ids: list[str] | None,
    dynamic: bool,
    include_summaries: bool,
    seed: int | None,
    output_dir: Path,
    delays: DelayConfig,
) -> Session:
    interaction_logger = InteractionLogger(config.defaults.log_dir)
    registry = _build_registry(config, executors, interaction_logger)
    repository = JsonSessionRepository(config.defaults.sessions_dir)
    output_storage = OutputStorage(output_dir)
    summarizer_executor = _pick_executor(executors, config.defaults.summarizer)
    rng = random.Random(seed)

    orchestrator = StageOrchestrator(
        repository=repository,
        registry=registry,
        summarizer=StageSummarizer(summarizer_executor, config.prompts, interaction_logger),
        output_storage=output_storage,
        delays=delays,
        rng=rng,
    )
    session = await orchestrator.create_session(question[:80], agent_ids, language)

    console.print(f"\n[bold cyan]Dialogue Council[/bold cyan] {len(session.agents)} agents, "
                  f"{'dynamic' if dynamic else 'staged'} mode")
    console.print(f"Agents: {', '.join(f'{a.name} ({a.id})' for a in session.agents)}")
    console.print(f"Question: [italic]{question[:80]}{'...' if len(question) > 80 else ''}[/italic]\n")

    if not dynamic:
        return await _run_staged(orchestrator, session, question, include_summaries)

    planner = FacilitatorActionPlanner(
        session.agents,
        config=config.facilitator,
        engine=ConsensusEngine(config.consensus),
        executor=summarizer_executor,
        prompts=config.prompts,
        interaction_logger=interaction_logger,
    )
    dialogue = DynamicDialogue(repository, registry, planner, output_storage, delays, rng)
    return await dialogue.conduct(session.id, question, language, on_round_complete=print_round)


@click.command()
@click.argument("question", required=False)
@click.option("--file", "question_file", type=click.Path(exists=True), help="Read question from .md file")
@click.option("--language", default=None, type=click.Choice(["en", "ja"]), help="Dialogue language")
@click.option("--agents", "agents_arg", default=None, help="Comma-separated agent ids (default: all)")
@click.option("--dynamic", "use_dynamic", is_flag=True, default=False,
              help="Run facilitator-driven consensus rounds instead of the fixed stages")
@click.option("--summaries", "use_summaries", is_flag=True, default=False,
              help="Include the explicit summary stages in the staged pipeline")
@click.option("--seed", default=None, type=int, help="Seed for agent ordering")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--no-delay", is_flag=True, default=False, help="Disable pacing delays between calls")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the API connectivity check at startup")
def main(
    question: str | None,
    question_file: str | None,
    language: str | None,
    agents_arg: str | None,
    use_dynamic: bool,
    use_summaries: bool,
    seed: int | None,
    output_path: str | None,
    no_delay: bool,
    verbose: bool,
    skip_health_check: bool,
) -> None:
    """Dialogue Council -- staged multi-agent dialogue with voting.

    \b
    Examples:
      council "What makes a good explanation?"
      council "Is free will compatible with determinism?" --agents eiro-001,kanshi-001,yoga-001
      council --file question.md --dynamic --seed 7
    """
    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
    except (FileNotFoundError, ConfigError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    metadata: dict = {}
    if question_file:
        question_text, metadata = parse_question_file(Path(question_file))
    elif question:
        question_text = question
    else:
        console.print("[bold red]Error:[/bold red] Provide a QUESTION argument or --file.")
        sys.exit(1)

    # CLI flags win over front matter, front matter over config defaults
    effective_language = language or metadata.get("language") or config.defaults.language
    agent_ids = _parse_agent_ids(agents_arg) or _parse_agent_ids(metadata.get("agents"))
    dynamic = use_dynamic or bool(metadata.get("dynamic", config.defaults.dynamic))
    include_summaries = use_summaries or bool(metadata.get("summaries", config.defaults.include_summary_stages))
    output_dir = Path(output_path) if output_path else config.defaults.output_dir
    delays = DelayConfig(0, 0, 0) if no_delay else config.delays

    executors = _build_all_executors(config)
    if not executors:
        console.print("[bold red]Error:[/bold red] No providers available. Check API keys in .env.")
        sys.exit(1)

    if not skip_health_check:
        executors = _check_and_filter_executors(executors)

    start = time.monotonic()
    try:
        session = asyncio.run(
            _run(config, executors, question_text, effective_language, agent_ids,
                 dynamic, include_summaries, seed, output_dir, delays)
        )
    except ValueError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)

    final = [m for m in session.sequence_messages() if m.stage == DialogueStage.FINALIZE and m.role == "agent"]
    print_final_output(
        "\n\n".join(m.content for m in final) or "_No final output was produced._",
        [m.agent_id for m in final],
        time.monotonic() - start,
    )
    output_id = session.output_ids.get(session.sequence_number)
    if output_id:
        console.print(f"\n[dim]Saved to: {output_dir / (output_id + '.md')}[/dim]")


if __name__ == "__main__":
    main()
