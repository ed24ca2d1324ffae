"""Pure dataclasses for the dialogue council pipeline. No I/O, no deps."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal


class DialogueStage(StrEnum):
    INDIVIDUAL_THOUGHT = "individual-thought"
    MUTUAL_REFLECTION = "mutual-reflection"
    MUTUAL_REFLECTION_SUMMARY = "mutual-reflection-summary"
    CONFLICT_RESOLUTION = "conflict-resolution"
    CONFLICT_RESOLUTION_SUMMARY = "conflict-resolution-summary"
    SYNTHESIS_ATTEMPT = "synthesis-attempt"
    SYNTHESIS_ATTEMPT_SUMMARY = "synthesis-attempt-summary"
    OUTPUT_GENERATION = "output-generation"
    FINALIZE = "finalize"


# Summary stage -> the regular stage it summarizes
SUMMARY_SOURCES: dict[DialogueStage, DialogueStage] = {
    DialogueStage.MUTUAL_REFLECTION_SUMMARY: DialogueStage.MUTUAL_REFLECTION,
    DialogueStage.CONFLICT_RESOLUTION_SUMMARY: DialogueStage.CONFLICT_RESOLUTION,
    DialogueStage.SYNTHESIS_ATTEMPT_SUMMARY: DialogueStage.SYNTHESIS_ATTEMPT,
}

# Position of each stage in the pipeline; summary stages sit between their neighbours
STAGE_ORDER: dict[DialogueStage, float] = {
    DialogueStage.INDIVIDUAL_THOUGHT: 1,
    DialogueStage.MUTUAL_REFLECTION: 2,
    DialogueStage.MUTUAL_REFLECTION_SUMMARY: 2.5,
    DialogueStage.CONFLICT_RESOLUTION: 3,
    DialogueStage.CONFLICT_RESOLUTION_SUMMARY: 3.5,
    DialogueStage.SYNTHESIS_ATTEMPT: 4,
    DialogueStage.SYNTHESIS_ATTEMPT_SUMMARY: 4.5,
    DialogueStage.OUTPUT_GENERATION: 5,
    DialogueStage.FINALIZE: 5.1,
}

AgentStyle = Literal["logical", "critical", "intuitive", "meta", "emotive", "analytical"]
AGENT_STYLES: tuple[str, ...] = ("logical", "critical", "intuitive", "meta", "emotive", "analytical")

ActionType = Literal["deep_dive", "clarification", "perspective_shift", "summarize", "conclude"]
ACTION_TYPES: tuple[str, ...] = ("deep_dive", "clarification", "perspective_shift", "summarize", "conclude")

# agent_id -> voted-for agent_id
VotingResults = dict[str, str]


def new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid.uuid4().hex[:12]}"


@dataclass
class Agent:
    id: str
    name: str
    style: str             # one of AGENT_STYLES
    priority: str = "balance"
    tone: str = ""
    personality: str = ""
    preferences: list[str] = field(default_factory=list)
    reading: str = ""      # phonetic reading of the name, e.g. furigana
    approach: str = ""
    is_summarizer: bool = False


@dataclass
class Reflection:
    target_agent_id: str
    reaction: str
    agreement: bool
    questions: list[str] = field(default_factory=list)


@dataclass
class StageData:
    agent_id: str
    content: str
    summary: str = ""
    approach: str = ""
    reflections: list[Reflection] = field(default_factory=list)


@dataclass
class Message:
    agent_id: str
    content: str
    role: Literal["user", "agent", "system"]
    stage: DialogueStage | None = None
    sequence_number: int = 1
    id: str = field(default_factory=lambda: new_id("msg-"))
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentResponse:
    agent_id: str
    content: str
    stage: DialogueStage | None = None
    reasoning: str = ""
    confidence: float = 0.7
    stage_data: StageData | None = None


@dataclass
class StageHistory:
    stage: DialogueStage
    start_time: datetime
    sequence_number: int
    end_time: datetime | None = None  # None while the stage is in progress
    agent_responses: list[AgentResponse] = field(default_factory=list)


@dataclass
class SummaryPoint:
    speaker: str
    position: str


@dataclass
class StageSummary:
    stage: DialogueStage
    summary: list[SummaryPoint]
    sequence_number: int
    stage_number: float
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class ConsensusIndicator:
    agent_id: str
    satisfaction_level: float
    has_additional_points: bool
    ready_to_move: bool
    questions_for_others: list[str] = field(default_factory=list)
    reasoning: str = ""


@dataclass
class ConsensusSnapshot:
    round_number: int
    overall_consensus: float
    indicators: list[ConsensusIndicator]
    should_continue: bool


@dataclass
class Conflict:
    agents: list[str]
    description: str
    severity: Literal["low", "medium", "high"]
    id: str = field(default_factory=lambda: new_id("conflict-"))


@dataclass
class FacilitatorAction:
    type: ActionType
    target: str
    reason: str
    priority: int


@dataclass
class DialogueState:
    round_number: int
    overall_consensus: float
    should_continue: bool
    suggested_actions: list[FacilitatorAction]
    recommended_action_count: int
    topic_drift: bool = False


@dataclass
class Session:
    id: str
    title: str
    agents: list[Agent]
    messages: list[Message] = field(default_factory=list)
    stage_history: list[StageHistory] = field(default_factory=list)
    stage_summaries: list[StageSummary] = field(default_factory=list)
    current_stage: DialogueStage | None = None
    sequence_number: int = 1
    status: Literal["active", "completed", "paused"] = "active"
    complete: bool = False
    language: str = "en"
    voting_results: VotingResults = field(default_factory=dict)
    consensus_history: list[ConsensusSnapshot] = field(default_factory=list)
    output_ids: dict[int, str] = field(default_factory=dict)  # sequence -> saved output id
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def sequence_messages(self, sequence_number: int | None = None) -> list[Message]:
        seq = self.sequence_number if sequence_number is None else sequence_number
        return [m for m in self.messages if m.sequence_number == seq]


@dataclass
class Completion:
    content: str
    provider: str
    model: str
    latency_sec: float
    token_count: int | None = None


@dataclass
class StageExecutionResult:
    stage: DialogueStage
    sequence_number: int
    responses: list[AgentResponse]
    duration_sec: float
