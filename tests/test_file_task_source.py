from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
import yaml

from agent_fleet.paths import get_config_file, get_tasks_file
from agent_fleet.runtime.domain.models import Task
from agent_fleet.runtime.storage import FileConfigRepository, FileTaskSource, ensure_state_root


def _write_tasks(path: Path, tasks: list[dict]) -> None:
    path.write_text(yaml.safe_dump({"version": 1, "tasks": tasks}, sort_keys=False), encoding="utf-8")


def _source(tmp_path: Path) -> FileTaskSource:
    return FileTaskSource(tmp_path / "tasks.yaml", tmp_path / "tasks.lock", poll_seconds=0.01)


def test_ensure_state_root_seeds_files_and_gitignore(tmp_path: Path) -> None:
    (tmp_path / ".gitignore").write_text("node_modules/", encoding="utf-8")

    state_root = ensure_state_root(tmp_path)
    ensure_state_root(tmp_path)

    assert state_root == (tmp_path / ".agent_fleet").resolve()
    assert yaml.safe_load(get_tasks_file(tmp_path).read_text(encoding="utf-8")) == {"version": 1, "tasks": []}
    config = FileConfigRepository(get_config_file(tmp_path), state_root / "config.lock").load()
    assert config["schema_version"] == 1
    assert config["fleet"]["session_backend"]["type"] == "opencode"
    lines = (tmp_path / ".gitignore").read_text(encoding="utf-8").splitlines()
    assert lines.count(".agent_fleet/") == 1
    assert lines.count("worktrees/") == 1
    assert lines[0] == "node_modules/"


def test_ensure_state_root_keeps_user_settings(tmp_path: Path) -> None:
    state_root = ensure_state_root(tmp_path)
    repo = FileConfigRepository(get_config_file(tmp_path), state_root / "config.lock")
    repo.save({"fleet": {"base_ref": "main", "session_backend": {"type": "command", "command": "codex exec -"}}})

    ensure_state_root(tmp_path)

    fleet = repo.load()["fleet"]
    assert fleet["base_ref"] == "main"
    assert fleet["session_backend"] == {"type": "command", "command": "codex exec -"}
    assert fleet["poll_interval_ms"] == 5000


def test_list_skips_malformed_entries(tmp_path: Path) -> None:
    source = _source(tmp_path)
    _write_tasks(
        tmp_path / "tasks.yaml",
        [
            {"id": "t1", "title": "One", "status": "open"},
            {"title": "no id"},
            "garbage",
            {"id": "t2", "status": "weird"},
        ],
    )

    tasks = source.list()

    assert [t.id for t in tasks] == ["t1", "t2"]
    assert tasks[1].status == "closed"
    assert [t.id for t in source.list_open()] == ["t1"]


def test_missing_file_has_no_tasks(tmp_path: Path) -> None:
    assert _source(tmp_path).list() == []


@pytest.mark.asyncio
async def test_assignment_only_touches_assignee(tmp_path: Path) -> None:
    source = _source(tmp_path)
    source.upsert(Task(id="t1", title="One", description="first"))

    await source.assign_task("t1", "t1-implementor")
    task = source.get("t1")
    assert task is not None
    assert task.assignee == "t1-implementor"
    assert task.status == "open"

    await source.unassign_task("t1")
    raw = yaml.safe_load((tmp_path / "tasks.yaml").read_text(encoding="utf-8"))
    assert raw["tasks"] == [{"id": "t1", "title": "One", "description": "first", "status": "open"}]


@pytest.mark.asyncio
async def test_assigning_unknown_task_raises(tmp_path: Path) -> None:
    with pytest.raises(KeyError):
        await _source(tmp_path).assign_task("missing", "missing-implementor")


@pytest.mark.asyncio
async def test_stream_yields_initial_and_changed_open_sets(tmp_path: Path) -> None:
    source = _source(tmp_path)
    source.upsert(Task(id="t1"))
    stream = source.list_open_task_stream()

    first = await asyncio.wait_for(stream.__anext__(), timeout=1.0)
    assert [t.id for t in first] == ["t1"]

    await source.assign_task("t1", "t1-implementor")
    source.upsert(Task(id="t2"))
    second = await asyncio.wait_for(stream.__anext__(), timeout=1.0)
    assert sorted(t.id for t in second) == ["t1", "t2"]

    source.upsert(Task(id="t1", status="closed"))
    third = await asyncio.wait_for(stream.__anext__(), timeout=1.0)
    assert [t.id for t in third] == ["t2"]
    await stream.aclose()


@pytest.mark.asyncio
async def test_each_call_starts_a_fresh_stream(tmp_path: Path) -> None:
    source = _source(tmp_path)
    source.upsert(Task(id="t1"))

    for _ in range(2):
        stream = source.list_open_task_stream()
        snapshot = await asyncio.wait_for(stream.__anext__(), timeout=1.0)
        assert [t.id for t in snapshot] == ["t1"]
        await stream.aclose()
