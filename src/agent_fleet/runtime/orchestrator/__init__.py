"""Orchestrator wiring: reconciliation loop, agent lifecycle and worktrees."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from ...config import FleetConfig, get_fleet_config
from ...paths import get_config_file, get_state_dir
from ..sessions import SessionProvider, session_provider_from_config
from ..storage import FileConfigRepository, FileTaskSource, ensure_state_root
from ..tasks.base import TaskSource
from .lifecycle import AgentLifecycleManager
from .service import AgentCompletedHook, AgentOrchestrator
from .worktree_manager import GitWorktreeManager, WorkspaceProvider


def load_fleet_config(project_dir: Path) -> FleetConfig:
    """Bootstrap the state directory of ``project_dir`` and resolve its config."""
    state_root = ensure_state_root(project_dir)
    raw = FileConfigRepository(get_config_file(project_dir), state_root / "config.lock").load()
    return get_fleet_config(config=raw, project_dir=project_dir)


def create_orchestrator(
    project_dir: Path,
    config: Optional[FleetConfig] = None,
    *,
    task_source: Optional[TaskSource] = None,
    workspace_provider: Optional[WorkspaceProvider] = None,
    session_provider: Optional[SessionProvider] = None,
    on_agent_completed: Optional[AgentCompletedHook] = None,
) -> AgentOrchestrator:
    """Build an orchestrator for ``project_dir`` from its on-disk configuration.

    Args:
        project_dir (Path): Git repository whose tasks are worked on.
        config (Optional[FleetConfig]): Pre-resolved configuration; loaded from
            ``.agent_fleet/config.yaml`` when omitted.
        task_source (Optional[TaskSource]): Override for the YAML task file.
        workspace_provider (Optional[WorkspaceProvider]): Override for git worktrees.
        session_provider (Optional[SessionProvider]): Override for the
            configured session backend.
        on_agent_completed (Optional[AgentCompletedHook]): Hook run after an
            idle agent is torn down.

    Returns:
        AgentOrchestrator: Wired, not yet started orchestrator.

    Raises:
        ValueError: If the configured session backend is invalid.
    """
    project_dir = Path(project_dir).resolve()
    cfg = config or load_fleet_config(project_dir)
    if task_source is None:
        task_source = FileTaskSource(
            cfg.tasks_file,
            get_state_dir(project_dir) / "tasks.lock",
            poll_seconds=cfg.task_poll_seconds,
        )
    sessions = session_provider or session_provider_from_config(cfg)
    lifecycle = AgentLifecycleManager(
        workspace_provider=workspace_provider or GitWorktreeManager(project_dir),
        session_provider=sessions,
        task_source=task_source,
        worktrees_dir=cfg.worktrees_dir,
        base_ref=cfg.base_ref,
    )
    return AgentOrchestrator(
        task_source,
        lifecycle,
        sessions,
        stream_restart_delay_seconds=cfg.stream_restart_delay_seconds,
        on_agent_completed=on_agent_completed,
    )


__all__ = [
    "AgentLifecycleManager",
    "AgentOrchestrator",
    "GitWorktreeManager",
    "WorkspaceProvider",
    "create_orchestrator",
    "load_fleet_config",
]
