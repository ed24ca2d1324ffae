"""Load settings.yaml into typed dataclasses. Validates ranges and API keys at startup."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

_AGENT_STYLES = {"logical", "critical", "intuitive", "meta", "emotive", "analytical"}
_ACTION_TYPES = ("deep_dive", "clarification", "perspective_shift", "summarize", "conclude")


class ConfigError(ValueError):
    """Raised when settings.yaml holds an invalid value."""


@dataclass
class ModelConfig:
    name: str
    sdk: str
    model: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    base_url: str | None = None


@dataclass
class AgentConfig:
    id: str
    name: str
    style: str
    provider: str
    priority: str = "balance"
    tone: str = ""
    personality: str = ""
    preferences: list[str] = field(default_factory=list)
    reading: str = ""
    approach: str = ""


@dataclass
class PromptsConfig:
    persona: str
    individual_thought: str
    mutual_reflection: str
    conflict_resolution: str
    synthesis_attempt: str
    output_generation: str
    finalize: str
    consensus_check: str = ""
    facilitator_action: str = ""
    facilitator_analysis: str = ""
    vote: str = ""
    vote_analysis: str = ""
    stage_summary: str = ""
    final_summary: str = ""
    languages: dict[str, str] = field(default_factory=dict)


@dataclass
class DelayConfig:
    agent_response_delay_sec: float = 1.0
    stage_summary_delay_sec: float = 30.0
    final_summary_delay_sec: float = 60.0


@dataclass
class ConsensusConfig:
    convergence_threshold: float = 7.5
    max_rounds: int = 20
    min_satisfaction_level: float = 6.0
    satisfaction_weight: float = 0.8
    readiness_weight: float = 0.2
    early_exit_satisfaction: float = 8.5


@dataclass
class FacilitatorConfig:
    action_priority: dict[str, int] = field(default_factory=lambda: {
        "deep_dive": 8,
        "clarification": 7,
        "perspective_shift": 6,
        "summarize": 5,
        "conclude": 9,
    })
    fallback_order: list[str] = field(default_factory=lambda: [
        "perspective_shift", "clarification", "summarize", "conclude", "deep_dive",
    ])
    intervention_cooldown: int = 2


@dataclass
class DefaultsConfig:
    language: str = "en"
    output_dir: Path = Path("./output")
    sessions_dir: Path = Path("./sessions")
    log_dir: Path = Path("./logs")
    summarizer: str = "claude"
    include_summary_stages: bool = False
    dynamic: bool = False


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    agents: list[AgentConfig]
    prompts: PromptsConfig
    delays: DelayConfig = field(default_factory=DelayConfig)
    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)
    facilitator: FacilitatorConfig = field(default_factory=FacilitatorConfig)
    available_providers: set[str] = field(default_factory=set)


def _check_range(name: str, value: float, low: float, high: float) -> None:
    if not low <= value <= high:
        raise ConfigError(f"{name} must be between {low} and {high}, got {value}")


def validate_consensus(cfg: ConsensusConfig) -> None:
    _check_range("consensus.convergence_threshold", cfg.convergence_threshold, 5, 10)
    _check_range("consensus.max_rounds", cfg.max_rounds, 5, 50)
    _check_range("consensus.min_satisfaction_level", cfg.min_satisfaction_level, 1, 10)
    if abs(cfg.satisfaction_weight + cfg.readiness_weight - 1.0) > 1e-6:
        raise ConfigError("consensus weights must sum to 1.0")


def validate_facilitator(cfg: FacilitatorConfig) -> None:
    for action, priority in cfg.action_priority.items():
        if action not in _ACTION_TYPES:
            raise ConfigError(f"Unknown facilitator action: {action}")
        _check_range(f"facilitator.action_priority.{action}", priority, 1, 10)
    for action in cfg.fallback_order:
        if action not in _ACTION_TYPES:
            raise ConfigError(f"Unknown facilitator action in fallback_order: {action}")
    _check_range("facilitator.intervention_cooldown", cfg.intervention_cooldown, 0, 10)


def _parse_agent(raw: dict) -> AgentConfig:
    style = str(raw["style"])
    if style not in _AGENT_STYLES:
        raise ConfigError(f"Agent {raw.get('id')}: unknown style '{style}'")
    return AgentConfig(
        id=str(raw["id"]),
        name=str(raw["name"]),
        style=style,
        provider=str(raw["provider"]),
        priority=str(raw.get("priority", "balance")),
        tone=str(raw.get("tone", "")),
        personality=str(raw.get("personality", "")),
        preferences=[str(p) for p in raw.get("preferences", [])],
        reading=str(raw.get("reading", "")),
        approach=str(raw.get("approach", "")),
    )


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises:
        FileNotFoundError: If the settings file is missing.
        ConfigError: If a threshold, priority or agent style is out of range.

    Missing API keys are logged, not raised; callers check available_providers.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw.get("defaults", {})
    defaults = DefaultsConfig(
        language=str(defaults_raw.get("language", "en")),
        output_dir=Path(defaults_raw.get("output_dir", "./output")),
        sessions_dir=Path(defaults_raw.get("sessions_dir", "./sessions")),
        log_dir=Path(defaults_raw.get("log_dir", "./logs")),
        summarizer=str(defaults_raw.get("summarizer", "claude")),
        include_summary_stages=bool(defaults_raw.get("include_summary_stages", False)),
        dynamic=bool(defaults_raw.get("dynamic", False)),
    )

    delays = DelayConfig(**{k: float(v) for k, v in raw.get("delays", {}).items()})

    consensus_raw = raw.get("consensus", {})
    consensus = ConsensusConfig(
        convergence_threshold=float(consensus_raw.get("convergence_threshold", 7.5)),
        max_rounds=int(consensus_raw.get("max_rounds", 20)),
        min_satisfaction_level=float(consensus_raw.get("min_satisfaction_level", 6.0)),
        satisfaction_weight=float(consensus_raw.get("satisfaction_weight", 0.8)),
        readiness_weight=float(consensus_raw.get("readiness_weight", 0.2)),
        early_exit_satisfaction=float(consensus_raw.get("early_exit_satisfaction", 8.5)),
    )
    validate_consensus(consensus)

    facilitator = FacilitatorConfig()
    facilitator_raw = raw.get("facilitator", {})
    if "action_priority" in facilitator_raw:
        facilitator.action_priority.update(
            {k: int(v) for k, v in facilitator_raw["action_priority"].items()}
        )
    if "fallback_order" in facilitator_raw:
        facilitator.fallback_order = [str(a) for a in facilitator_raw["fallback_order"]]
    if "intervention_cooldown" in facilitator_raw:
        facilitator.intervention_cooldown = int(facilitator_raw["intervention_cooldown"])
    validate_facilitator(facilitator)

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        **{k: str(v) for k, v in prompts_raw.items() if k != "languages"},
        languages={k: str(v) for k, v in prompts_raw.get("languages", {}).items()},
    )

    agents = [_parse_agent(a) for a in raw.get("agents", [])]
    seen: set[str] = set()
    for agent in agents:
        if agent.id in seen:
            raise ConfigError(f"Duplicate agent id: {agent.id}")
        seen.add(agent.id)

    models: dict[str, ModelConfig] = {}
    available_providers: set[str] = set()

    for provider_name, model_raw in raw["models"].items():
        models[provider_name] = ModelConfig(
            name=provider_name,
            sdk=model_raw["sdk"],
            model=model_raw["model"],
            api_key_env=model_raw["api_key_env"],
            timeout_sec=int(model_raw["timeout_sec"]),
            max_tokens=int(model_raw["max_tokens"]),
            base_url=model_raw.get("base_url"),
        )

        api_key = os.environ.get(model_raw["api_key_env"], "").strip()
        if api_key:
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider skipped (no API key): %s, set %s in .env",
                provider_name,
                model_raw["api_key_env"],
            )

    return AppConfig(
        defaults=defaults,
        models=models,
        agents=agents,
        prompts=prompts,
        delays=delays,
        consensus=consensus,
        facilitator=facilitator,
        available_providers=available_providers,
    )
