"""Domain models for orchestrator runtime state."""

from .models import AgentSession, RunningAgent, Task, agent_id_for, now_iso

__all__ = [
    "Task",
    "RunningAgent",
    "AgentSession",
    "agent_id_for",
    "now_iso",
]
