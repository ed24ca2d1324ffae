"""Audit trail of every AI call, one JSON array per session/stage/agent."""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Literal

from council.models import new_id

logger = logging.getLogger(__name__)


@dataclass
class InteractionLogEntry:
    session_id: str
    stage: str
    agent_id: str
    agent_name: str
    prompt: str
    output: str
    duration_sec: float
    status: Literal["success", "error", "timeout"]
    error: str = ""
    id: str = field(default_factory=lambda: new_id("log-"))
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())


class InteractionLogger:
    """Appends entries to ``<log_dir>/<session_id>/<stage>/<agent_id>.json``.

    Logging is best effort: a failed write is reported and the dialogue goes on.
    """

    def __init__(self, log_dir: Path) -> None:
        self._log_dir = log_dir

    def path_for(self, session_id: str, stage: str, agent_id: str) -> Path:
        return self._log_dir / session_id / stage / f"{agent_id}.json"

    def save_interaction_log(self, entry: InteractionLogEntry) -> None:
        path = self.path_for(entry.session_id or "no-session", entry.stage, entry.agent_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            entries = json.loads(path.read_text(encoding="utf-8")) if path.exists() else []
            entries.append(asdict(entry))
            path.write_text(json.dumps(entries, ensure_ascii=False, indent=2), encoding="utf-8")
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to write interaction log %s: %s", path, exc)

    def get_session_logs(self, session_id: str) -> list[dict]:
        session_dir = self._log_dir / session_id
        if not session_dir.exists():
            return []
        entries: list[dict] = []
        for path in sorted(session_dir.glob("*/*.json")):
            entries.extend(json.loads(path.read_text(encoding="utf-8")))
        return sorted(entries, key=lambda e: e["timestamp"])
