"""Domain model dataclasses and normalization helpers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal, Optional, cast


TaskStatus = Literal["open", "assigned", "closed"]
RunningAgentStatus = Literal["starting", "running", "stopping"]
SessionStatus = Literal["running", "stopping", "stopped"]
_VALID_TASK_STATUSES = {"open", "assigned", "closed"}

AGENT_ROLE = "implementor"


def now_iso() -> str:
    """Get the current UTC timestamp formatted as ISO-8601 text."""
    return datetime.now(timezone.utc).isoformat()


def agent_id_for(task_id: str) -> str:
    """Derive the deterministic agent id bound to a task."""
    return f"{task_id}-{AGENT_ROLE}"


@dataclass
class Task:
    """Externally sourced unit of work; read-only to the orchestrator."""
    id: str
    title: str = ""
    description: str = ""
    status: TaskStatus = "open"
    assignee: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status == "open"

    def to_dict(self) -> dict[str, Any]:
        """Serialize a task to a dictionary payload."""
        data = asdict(self)
        if data["assignee"] is None:
            data.pop("assignee")
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Deserialize and normalize a task from persisted data.

        Unknown statuses are treated as ``closed`` so a malformed record never
        causes an agent to be started.
        """
        status = str(data.get("status") or "open").strip().lower()
        if status not in _VALID_TASK_STATUSES:
            status = "closed"
        return cls(
            id=str(data.get("id") or "").strip(),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            status=cast(TaskStatus, status),
            assignee=(str(data.get("assignee")) if data.get("assignee") else None),
        )


@dataclass
class AgentSession:
    """Remote conversational-agent session bound to one task's worktree."""
    session_id: str
    task_id: str
    working_directory: Path
    status: SessionStatus = "running"
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the session record."""
        data = asdict(self)
        data["working_directory"] = str(self.working_directory)
        return data


@dataclass
class RunningAgent:
    """Orchestrator-owned record of the agent serving one open task."""
    task_id: str
    agent_id: str
    worktree_path: Path
    status: RunningAgentStatus = "starting"
    session_id: Optional[str] = None
    started_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the running agent record."""
        data = asdict(self)
        data["worktree_path"] = str(self.worktree_path)
        return data
