"""Prompt template loader with caching."""

from pathlib import Path

_DIR = Path(__file__).parent
_cache: dict[str, str] = {}

AGENT_PROMPT = "implementor.md"


def load(name: str) -> str:
    """Load a prompt template by relative path (e.g. 'implementor.md')."""
    if name not in _cache:
        _cache[name] = (_DIR / name).read_text(encoding="utf-8").strip()
    return _cache[name]


def fill_agent_prompt(task_title: str, task_description: str, worktree_path: str) -> str:
    """Render the initial instruction sent to a freshly created agent session."""
    return (
        load(AGENT_PROMPT)
        .replace("{title}", task_title or "")
        .replace("{description}", task_description or "")
        .replace("{worktree_path}", str(worktree_path))
    )
