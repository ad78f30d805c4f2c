from __future__ import annotations

from agent_fleet import prompts
from agent_fleet.prompts import fill_agent_prompt


def test_agent_prompt_contains_task_and_worktree() -> None:
    text = fill_agent_prompt("Test Task Title", "This is a test task description.", "/path/to/worktree")

    assert text.startswith("# Task Implementation")
    assert "## Test Task Title\n\nThis is a test task description." in text
    assert "You are working in a dedicated worktree at: /path/to/worktree" in text
    assert "{" not in text


def test_missing_fields_render_empty() -> None:
    text = fill_agent_prompt("", "", "/w")

    assert "## \n" in text
    assert "/w" in text


def test_templates_are_cached() -> None:
    assert prompts.load(prompts.AGENT_PROMPT) is prompts.load(prompts.AGENT_PROMPT)
