"""Shared pytest fixtures."""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from config.config_loader import (
    AppConfig,
    ConsensusConfig,
    DefaultsConfig,
    DelayConfig,
    FacilitatorConfig,
    ModelConfig,
    PromptsConfig,
)
from council.agents import AgentRegistry, DialogueAgent
from council.models import Agent, Completion, ConsensusIndicator
from council.providers.base import AIExecutor


def make_completion(content: str, provider: str = "mock") -> Completion:
    return Completion(content=content, provider=provider, model="mock-model", latency_sec=0.1, token_count=10)


class MockExecutor(AIExecutor):
    """Test double AIExecutor."""

    def __init__(
        self,
        provider_name: str = "mock",
        response_content: str = "Mock response",
        timeout_sec: float | None = None,
    ) -> None:
        self._name = provider_name
        self._response_content = response_content
        self._timeout_sec = timeout_sec
        # Shadow the class method with an AsyncMock at the instance level.
        self.execute = AsyncMock(  # type: ignore[assignment]
            return_value=make_completion(response_content, provider_name)
        )

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "mock-model"

    def timeout_sec(self) -> float | None:
        return self._timeout_sec

    async def execute(  # type: ignore[override]
        self, prompt: str, context: str = "", timeout_sec: float | None = None,
    ) -> Completion:
        """Default implementation; replaced by AsyncMock in __init__."""
        return make_completion(self._response_content, self._name)


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        persona="You are {name} ({id}), style {style}. {language_instruction}",
        individual_thought="Q: {query}\n{previous_context}\n{context}",
        mutual_reflection="Q: {query}\n{other_thoughts}\n{context}\nIds: {agent_ids}",
        conflict_resolution="Q: {query}\n{conflicts}\n{context}",
        synthesis_attempt="Q: {query}\n{synthesis_data}\n{context}",
        output_generation="Q: {query}\n{context}\nVote among: {agent_list}",
        finalize="Q: {query}\nVotes:\n{voting_summary}\n{context}",
        consensus_check="Round {round}. Q: {query}\n{context}",
        facilitator_action="{action_type} for {query}: {reason}\n{context}",
        facilitator_analysis="Round {round} Q: {query}\n{recent_messages}\n{consensus_report}\n{speaker_balance}",
        vote="Vote. Q: {query}\n{context}\n{agent_list}",
        vote_analysis="{voting_results}\nIds: {agent_ids}",
        stage_summary="Summarize {stage}\n{agent_list}\n{transcript}\n{language_instruction}",
        final_summary="{agent_list}\n{summaries}\n{language_instruction}",
        languages={"en": "Respond in English.", "ja": "日本語で回答してください。"},
    )


@pytest.fixture
def sample_agents() -> list[Agent]:
    return [
        Agent(id="eiro-001", name="慧露", reading="えいろ", style="logical"),
        Agent(id="kanshi-001", name="観至", reading="かんし", style="critical"),
        Agent(id="yoga-001", name="陽雅", reading="ようが", style="intuitive"),
        Agent(id="hekito-001", name="碧統 (Hekito)", reading="へきとう", style="analytical"),
    ]


@pytest.fixture
def zero_delays() -> DelayConfig:
    return DelayConfig(agent_response_delay_sec=0, stage_summary_delay_sec=0, final_summary_delay_sec=0)


@pytest.fixture
def mock_executors(sample_agents: list[Agent]) -> dict[str, MockExecutor]:
    return {a.id: MockExecutor(a.id, f"Response from {a.id}") for a in sample_agents}


@pytest.fixture
def registry(
    sample_agents: list[Agent],
    mock_executors: dict[str, MockExecutor],
    sample_prompts_config: PromptsConfig,
) -> AgentRegistry:
    return AgentRegistry([
        DialogueAgent(agent, mock_executors[agent.id], sample_prompts_config) for agent in sample_agents
    ])


def indicator(agent_id: str, satisfaction: float, ready: bool = False,
              additional: bool = False, questions: list[str] | None = None) -> ConsensusIndicator:
    return ConsensusIndicator(
        agent_id=agent_id,
        satisfaction_level=satisfaction,
        has_additional_points=additional,
        ready_to_move=ready,
        questions_for_others=questions or [],
    )


@pytest.fixture
def sample_app_config(tmp_path: Path, sample_prompts_config: PromptsConfig) -> AppConfig:
    model_cfg = ModelConfig(
        name="claude",
        sdk="anthropic",
        model="claude-sonnet-4-20250514",
        api_key_env="ANTHROPIC_API_KEY",
        timeout_sec=60,
        max_tokens=4096,
    )
    return AppConfig(
        defaults=DefaultsConfig(output_dir=tmp_path / "output", sessions_dir=tmp_path / "sessions",
                                log_dir=tmp_path / "logs"),
        models={"claude": model_cfg},
        agents=[],
        prompts=sample_prompts_config,
        delays=DelayConfig(0, 0, 0),
        consensus=ConsensusConfig(),
        facilitator=FacilitatorConfig(),
        available_providers={"claude"},
    )
