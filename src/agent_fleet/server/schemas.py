"""Pydantic response schemas for the fleet status API."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


class OrchestratorStatusResponse(BaseModel):
    """Loop state and agent counts of the orchestrator."""

    running: bool
    agents: int
    starting: int = 0
    stopping: int = 0
    passes: int = 0
    session_backend: str
    project: str


class RunningAgentModel(BaseModel):
    task_id: str
    agent_id: str
    status: Literal["starting", "running", "stopping"]
    worktree_path: str
    session_id: Optional[str] = None
    started_at: str


class AgentsResponse(BaseModel):
    agents: list[RunningAgentModel] = Field(default_factory=list)


class SessionModel(BaseModel):
    session_id: str
    task_id: str
    working_directory: str
    status: Literal["running", "stopping", "stopped"]
    created_at: str


class SessionsResponse(BaseModel):
    sessions: list[SessionModel] = Field(default_factory=list)


class ControlRequest(BaseModel):
    """Payload for starting or stopping the reconciliation loop."""

    action: Literal["start", "stop"]
