"""Session repositories: in-memory for tests and single runs, JSON files for persistence."""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any

from council.models import (
    Agent,
    AgentResponse,
    ConsensusIndicator,
    ConsensusSnapshot,
    DialogueStage,
    Message,
    Reflection,
    Session,
    StageData,
    StageHistory,
    StageSummary,
    SummaryPoint,
)

logger = logging.getLogger(__name__)


class SessionNotFoundError(KeyError):
    """Raised when a session id is unknown to the repository."""


class SessionRepository(ABC):
    """Where sessions live between stage executions."""

    @abstractmethod
    async def save_session(self, session: Session) -> None: ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Session | None: ...

    @abstractmethod
    async def get_all_sessions(self) -> list[Session]: ...

    @abstractmethod
    async def delete_session(self, session_id: str) -> bool: ...

    async def require_session(self, session_id: str) -> Session:
        session = await self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session


class InMemorySessionRepository(SessionRepository):
    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    async def save_session(self, session: Session) -> None:
        session.updated_at = datetime.now()
        self._sessions[session.id] = session

    async def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    async def get_all_sessions(self) -> list[Session]:
        return sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)

    async def delete_session(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None


class JsonSessionRepository(SessionRepository):
    """One ``<session_id>.json`` file per session under ``directory``."""

    def __init__(self, directory: Path) -> None:
        self._dir = directory

    def _path(self, session_id: str) -> Path:
        return self._dir / f"{session_id}.json"

    async def save_session(self, session: Session) -> None:
        session.updated_at = datetime.now()
        self._dir.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(session_to_dict(session), ensure_ascii=False, indent=2, default=_json_default)
        self._path(session.id).write_text(payload, encoding="utf-8")
        logger.debug("Session saved: %s (%d messages)", session.id, len(session.messages))

    async def get_session(self, session_id: str) -> Session | None:
        path = self._path(session_id)
        if not path.exists():
            return None
        return session_from_dict(json.loads(path.read_text(encoding="utf-8")))

    async def get_all_sessions(self) -> list[Session]:
        if not self._dir.exists():
            return []
        sessions = []
        for path in sorted(self._dir.glob("*.json")):
            try:
                sessions.append(session_from_dict(json.loads(path.read_text(encoding="utf-8"))))
            except (json.JSONDecodeError, KeyError, ValueError) as exc:
                logger.warning("Skipping unreadable session file %s: %s", path.name, exc)
        return sorted(sessions, key=lambda s: s.updated_at, reverse=True)

    async def delete_session(self, session_id: str) -> bool:
        path = self._path(session_id)
        if not path.exists():
            return False
        path.unlink()
        return True


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    raise TypeError(f"Not JSON serializable: {type(value).__name__}")


def session_to_dict(session: Session) -> dict[str, Any]:
    return asdict(session)


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _stage(value: str | None) -> DialogueStage | None:
    return DialogueStage(value) if value else None


def _stage_data_from_dict(raw: dict[str, Any] | None) -> StageData | None:
    if not raw:
        return None
    return StageData(
        agent_id=raw["agent_id"],
        content=raw["content"],
        summary=raw.get("summary", ""),
        approach=raw.get("approach", ""),
        reflections=[Reflection(**r) for r in raw.get("reflections", [])],
    )


def _message_from_dict(raw: dict[str, Any]) -> Message:
    metadata = dict(raw.get("metadata", {}))
    if isinstance(metadata.get("stage_data"), dict):
        metadata["stage_data"] = _stage_data_from_dict(metadata["stage_data"])
    return Message(
        id=raw["id"],
        agent_id=raw["agent_id"],
        content=raw["content"],
        role=raw["role"],
        stage=_stage(raw.get("stage")),
        sequence_number=raw.get("sequence_number", 1),
        timestamp=_dt(raw["timestamp"]),
        metadata=metadata,
    )


def _response_from_dict(raw: dict[str, Any]) -> AgentResponse:
    return AgentResponse(
        agent_id=raw["agent_id"],
        content=raw["content"],
        stage=_stage(raw.get("stage")),
        reasoning=raw.get("reasoning", ""),
        confidence=raw.get("confidence", 0.7),
        stage_data=_stage_data_from_dict(raw.get("stage_data")),
    )


def session_from_dict(raw: dict[str, Any]) -> Session:
    return Session(
        id=raw["id"],
        title=raw["title"],
        agents=[Agent(**a) for a in raw["agents"]],
        messages=[_message_from_dict(m) for m in raw.get("messages", [])],
        stage_history=[
            StageHistory(
                stage=DialogueStage(h["stage"]),
                start_time=_dt(h["start_time"]),
                end_time=_dt(h.get("end_time")),
                sequence_number=h["sequence_number"],
                agent_responses=[_response_from_dict(r) for r in h.get("agent_responses", [])],
            )
            for h in raw.get("stage_history", [])
        ],
        stage_summaries=[
            StageSummary(
                stage=DialogueStage(s["stage"]),
                summary=[SummaryPoint(**p) for p in s["summary"]],
                sequence_number=s["sequence_number"],
                stage_number=s["stage_number"],
                timestamp=_dt(s["timestamp"]),
            )
            for s in raw.get("stage_summaries", [])
        ],
        current_stage=_stage(raw.get("current_stage")),
        sequence_number=raw.get("sequence_number", 1),
        status=raw.get("status", "active"),
        complete=raw.get("complete", False),
        language=raw.get("language", "en"),
        voting_results=dict(raw.get("voting_results", {})),
        consensus_history=[
            ConsensusSnapshot(
                round_number=c["round_number"],
                overall_consensus=c["overall_consensus"],
                indicators=[ConsensusIndicator(**i) for i in c["indicators"]],
                should_continue=c["should_continue"],
            )
            for c in raw.get("consensus_history", [])
        ],
        output_ids={int(k): v for k, v in raw.get("output_ids", {}).items()},
        created_at=_dt(raw["created_at"]),
        updated_at=_dt(raw["updated_at"]),
    )
