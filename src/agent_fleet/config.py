"""Parse fleet runtime configuration and resolve the session backend."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, Optional, cast

from .paths import get_sessions_dir, get_tasks_file, get_worktrees_dir

SessionBackendType = Literal["opencode", "command"]

DEFAULT_OPENCODE_URL = "http://127.0.0.1:4096"
DEFAULT_AGENT_COMMAND = "claude -p"
DEFAULT_BASE_REF = "HEAD"
DEFAULT_POLL_INTERVAL_MS = 5000
DEFAULT_MONITOR_TIMEOUT_MS = 300000
DEFAULT_TASK_POLL_SECONDS = 2.0
DEFAULT_STREAM_RESTART_DELAY_SECONDS = 5.0


@dataclass(frozen=True)
class SessionBackendSpec:
    """Normalized settings for the session backend.

    Attributes:
        type: Backend variant; ``opencode`` pushes idle events, ``command`` is polled.
        base_url: OpenCode server URL (``opencode`` only).
        command: Shell command launching a CLI coding agent (``command`` only).
    """
    type: SessionBackendType
    base_url: Optional[str] = None
    command: Optional[str] = None


@dataclass(frozen=True)
class FleetConfig:
    """Fully resolved runtime configuration for one managed project.

    Attributes:
        project_dir: Repository whose tasks are being worked on.
        worktrees_dir: Root of the per-task worktrees.
        sessions_dir: Per-session log directory for subprocess backends.
        tasks_file: YAML file backing the file task source.
        base_ref: Git ref each worktree is checked out at.
        poll_interval_ms: Completion monitor poll interval.
        monitor_timeout_ms: Completion monitor upper bound per session.
        task_poll_seconds: How often the file task source re-reads its file.
        stream_restart_delay_seconds: Back-off before re-acquiring a failed task stream.
        session_backend: Selected session backend.
    """

    project_dir: Path
    worktrees_dir: Path
    sessions_dir: Path
    tasks_file: Path
    base_ref: str
    poll_interval_ms: int
    monitor_timeout_ms: int
    task_poll_seconds: float
    stream_restart_delay_seconds: float
    session_backend: SessionBackendSpec


def _as_dict(value: Any) -> dict[str, Any]:
    """Return ``value`` only when it is a dictionary."""
    return value if isinstance(value, dict) else {}


def _positive_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _positive_float(value: Any, default: float) -> float:
    if isinstance(value, bool):
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _resolve_dir(raw: Any, project_dir: Path, default: Path) -> Path:
    text = str(raw or "").strip()
    if not text:
        return default
    path = Path(text).expanduser()
    if not path.is_absolute():
        path = project_dir / path
    return path.resolve()


def resolve_session_backend(raw: Any) -> SessionBackendSpec:
    """Validate the ``session_backend`` node and fill in defaults.

    Args:
        raw (Any): Mapping with ``type`` and backend-specific keys. A missing
            node selects the OpenCode backend.

    Returns:
        SessionBackendSpec: Validated backend selection.

    Raises:
        ValueError: If the type is unknown or a required field is blank.
    """
    item = _as_dict(raw)
    typ = str(item.get("type") or "opencode").strip().lower()
    if typ == "opencode":
        base_url = str(item.get("base_url") or DEFAULT_OPENCODE_URL).strip()
        if not base_url:
            raise ValueError("Session backend 'opencode' missing required 'base_url'")
        return SessionBackendSpec(type="opencode", base_url=base_url.rstrip("/"))
    if typ == "command":
        command = str(item.get("command") or DEFAULT_AGENT_COMMAND).strip()
        if not command:
            raise ValueError("Session backend 'command' missing required 'command'")
        return SessionBackendSpec(type=cast(SessionBackendType, typ), command=command)
    raise ValueError(f"Unsupported session backend type '{typ}' (available: command, opencode)")


def get_fleet_config(*, config: dict[str, Any], project_dir: Path) -> FleetConfig:
    """Resolve paths, timings and the session backend from runtime config.

    Args:
        config (dict[str, Any]): Parsed runtime configuration; settings live
            under the ``fleet`` key. Missing or malformed values fall back to
            defaults.
        project_dir (Path): Project directory relative paths are resolved against.

    Returns:
        FleetConfig: Normalized configuration ready for orchestrator wiring.

    Raises:
        ValueError: If the session backend selection is invalid.
    """
    project_dir = Path(project_dir).resolve()
    fleet_cfg = _as_dict(config.get("fleet"))
    base_ref = str(fleet_cfg.get("base_ref") or DEFAULT_BASE_REF).strip() or DEFAULT_BASE_REF
    return FleetConfig(
        project_dir=project_dir,
        worktrees_dir=_resolve_dir(fleet_cfg.get("worktrees_dir"), project_dir, get_worktrees_dir(project_dir)),
        sessions_dir=_resolve_dir(fleet_cfg.get("sessions_dir"), project_dir, get_sessions_dir(project_dir)),
        tasks_file=_resolve_dir(fleet_cfg.get("tasks_file"), project_dir, get_tasks_file(project_dir)),
        base_ref=base_ref,
        poll_interval_ms=_positive_int(fleet_cfg.get("poll_interval_ms"), DEFAULT_POLL_INTERVAL_MS),
        monitor_timeout_ms=_positive_int(fleet_cfg.get("monitor_timeout_ms"), DEFAULT_MONITOR_TIMEOUT_MS),
        task_poll_seconds=_positive_float(fleet_cfg.get("task_poll_seconds"), DEFAULT_TASK_POLL_SECONDS),
        stream_restart_delay_seconds=_positive_float(
            fleet_cfg.get("stream_restart_delay_seconds"), DEFAULT_STREAM_RESTART_DELAY_SECONDS
        ),
        session_backend=resolve_session_backend(fleet_cfg.get("session_backend")),
    )
