"""Deterministic on-disk locations for a managed project."""

from __future__ import annotations

from pathlib import Path

STATE_DIR_NAME = ".agent_fleet"
WORKTREES_DIR_NAME = "worktrees"


def get_state_dir(project_dir: Path) -> Path:
    """Directory holding runtime configuration and state for ``project_dir``."""
    return Path(project_dir).resolve() / STATE_DIR_NAME


def get_worktrees_dir(project_dir: Path) -> Path:
    """Root under which one worktree per task is created."""
    return Path(project_dir).resolve() / WORKTREES_DIR_NAME


def get_sessions_dir(project_dir: Path) -> Path:
    return get_state_dir(project_dir) / "sessions"


def get_config_file(project_dir: Path) -> Path:
    return get_state_dir(project_dir) / "config.yaml"


def get_tasks_file(project_dir: Path) -> Path:
    return get_state_dir(project_dir) / "tasks.yaml"


def task_scoped_path(root: Path, task_id: str) -> Path:
    """Direct child of ``root`` named after ``task_id``.

    Raises:
        ValueError: If ``task_id`` would resolve anywhere but directly under ``root``.
    """
    root = Path(root)
    path = root / task_id
    if not task_id or path.resolve().parent != root.resolve():
        raise ValueError(f"Task id {task_id!r} does not name a directory under {root}")
    return path


def worktree_path_for(worktrees_dir: Path, task_id: str) -> Path:
    """Path of the worktree bound to ``task_id``."""
    return task_scoped_path(worktrees_dir, task_id)
