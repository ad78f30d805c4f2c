from __future__ import annotations

from pathlib import Path

from ...config import DEFAULT_BASE_REF, DEFAULT_MONITOR_TIMEOUT_MS, DEFAULT_OPENCODE_URL, DEFAULT_POLL_INTERVAL_MS
from ...paths import STATE_DIR_NAME, WORKTREES_DIR_NAME, get_config_file, get_state_dir, get_tasks_file
from .file_repos import TASKS_FILE_VERSION, FileConfigRepository

CONFIG_SCHEMA_VERSION = 1
_GITIGNORE_HEADER = "# Agent fleet runtime data"


def _ensure_gitignored(project_dir: Path) -> None:
    """Add the state and worktree directories to the project's .gitignore if not already present."""
    gitignore = project_dir / ".gitignore"
    entries = [f"{STATE_DIR_NAME}/", f"{WORKTREES_DIR_NAME}/"]
    if gitignore.exists():
        content = gitignore.read_text(encoding="utf-8")
        existing_stripped = {line.strip() for line in content.splitlines()}
        missing = [e for e in entries if e not in existing_stripped and e.rstrip("/") not in existing_stripped]
        if not missing:
            return
        if content and not content.endswith("\n"):
            content += "\n"
        if _GITIGNORE_HEADER not in content:
            content += f"\n{_GITIGNORE_HEADER}\n"
        for e in missing:
            content += f"{e}\n"
        gitignore.write_text(content, encoding="utf-8")
    else:
        lines = f"{_GITIGNORE_HEADER}\n"
        for e in entries:
            lines += f"{e}\n"
        gitignore.write_text(lines, encoding="utf-8")


def ensure_state_root(project_dir: Path) -> Path:
    project_dir = Path(project_dir).resolve()
    state_root = get_state_dir(project_dir)
    state_root.mkdir(parents=True, exist_ok=True)
    (state_root / "sessions").mkdir(parents=True, exist_ok=True)
    _ensure_gitignored(project_dir)

    tasks_file = get_tasks_file(project_dir)
    if not tasks_file.exists():
        tasks_file.write_text(f"version: {TASKS_FILE_VERSION}\ntasks: []\n", encoding="utf-8")

    config_repo = FileConfigRepository(get_config_file(project_dir), state_root / "config.lock")
    config = config_repo.load()
    config["schema_version"] = CONFIG_SCHEMA_VERSION
    fleet = config.setdefault("fleet", {})
    if isinstance(fleet, dict):
        fleet.setdefault("base_ref", DEFAULT_BASE_REF)
        fleet.setdefault("poll_interval_ms", DEFAULT_POLL_INTERVAL_MS)
        fleet.setdefault("monitor_timeout_ms", DEFAULT_MONITOR_TIMEOUT_MS)
        fleet.setdefault("session_backend", {"type": "opencode", "base_url": DEFAULT_OPENCODE_URL})
    config_repo.save(config)

    return state_root
