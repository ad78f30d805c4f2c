from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from agent_fleet.runtime.domain.models import Task
from agent_fleet.runtime.errors import LifecycleError
from agent_fleet.runtime.orchestrator.lifecycle import AgentLifecycleManager


@pytest.mark.asyncio
async def test_start_provisions_worktree_session_prompt_and_assignment(
    lifecycle: AgentLifecycleManager, task_source, workspaces, sessions, make_task, tmp_path: Path
) -> None:
    session = await lifecycle.start(make_task("t1", title="Add retries"))

    path = tmp_path / "worktrees" / "t1"
    assert workspaces.created == [path]
    assert session.working_directory == path
    assert session.task_id == "t1"
    [(session_id, message, directory)] = sessions.messages
    assert session_id == session.session_id
    assert directory == path
    assert "## Add retries" in message
    assert "Do t1" in message
    assert str(path) in message
    assert task_source.assigned == [("t1", "t1-implementor")]
    assert lifecycle.get_session("t1") is session
    assert lifecycle.active_sessions() == [session]


@pytest.mark.asyncio
async def test_session_failure_removes_worktree(
    lifecycle: AgentLifecycleManager, task_source, workspaces, sessions, make_task
) -> None:
    sessions.fail_create.add("t1")

    with pytest.raises(LifecycleError) as excinfo:
        await lifecycle.start(make_task("t1"))

    assert excinfo.value.task_id == "t1"
    assert excinfo.value.step == "create session"
    assert excinfo.value.cause is not None
    assert workspaces.active == set()
    assert [p.name for p in workspaces.removed] == ["t1"]
    assert task_source.assigned == []


@pytest.mark.asyncio
async def test_prompt_failure_removes_session_then_worktree(
    lifecycle: AgentLifecycleManager, task_source, workspaces, sessions, make_task
) -> None:
    sessions.fail_send.add("t1")

    with pytest.raises(LifecycleError, match="send initial prompt"):
        await lifecycle.start(make_task("t1"))

    assert sessions.removed == ["t1"]
    assert sessions.sessions == {}
    assert workspaces.active == set()
    assert task_source.assigned == []
    assert lifecycle.get_session("t1") is None


@pytest.mark.asyncio
async def test_worktree_failure_creates_nothing_else(
    lifecycle: AgentLifecycleManager, workspaces, sessions, make_task
) -> None:
    workspaces.fail_create.add("t1")

    with pytest.raises(LifecycleError, match="create worktree"):
        await lifecycle.start(make_task("t1"))

    assert sessions.sessions == {}
    assert workspaces.removed == []


@pytest.mark.asyncio
async def test_provider_reporting_false_counts_as_failure(
    lifecycle: AgentLifecycleManager, workspaces, sessions, make_task
) -> None:
    workspaces.report_false_on_create.add("t1")

    with pytest.raises(LifecycleError) as excinfo:
        await lifecycle.start(make_task("t1"))

    assert excinfo.value.cause is None
    assert "provider reported failure" in str(excinfo.value)
    assert sessions.sessions == {}


@pytest.mark.asyncio
async def test_assignment_failure_is_not_fatal(lifecycle: AgentLifecycleManager, task_source, make_task) -> None:
    task_source.fail_assign = True

    session = await lifecycle.start(make_task("t1"))

    assert lifecycle.get_session("t1") is session


@pytest.mark.asyncio
async def test_rollback_failure_does_not_mask_original_error(
    lifecycle: AgentLifecycleManager, workspaces, sessions, make_task
) -> None:
    sessions.fail_create.add("t1")
    workspaces.fail_remove.add("t1")

    with pytest.raises(LifecycleError, match="create session"):
        await lifecycle.start(make_task("t1"))


@pytest.mark.asyncio
async def test_stop_attempts_every_step(
    lifecycle: AgentLifecycleManager, task_source, workspaces, sessions, make_task
) -> None:
    await lifecycle.start(make_task("t1"))
    sessions.fail_remove.add("t1")
    task_source.fail_unassign = True
    workspaces.fail_remove.add("t1")

    await lifecycle.stop("t1")

    assert sessions.removed == ["t1"]
    assert [p.name for p in workspaces.removed] == ["t1"]
    assert lifecycle.get_session("t1") is None


@pytest.mark.asyncio
async def test_concurrent_stop_is_a_no_op(
    lifecycle: AgentLifecycleManager, task_source, workspaces, sessions, make_task
) -> None:
    await lifecycle.start(make_task("t1"))
    workspaces.delay = 0.02

    await asyncio.gather(lifecycle.stop("t1"), lifecycle.stop("t1"))

    assert sessions.removed == ["t1"]
    assert task_source.unassigned == ["t1"]
    assert [p.name for p in workspaces.removed] == ["t1"]


@pytest.mark.asyncio
@pytest.mark.parametrize("task_id", ["../escape", "nested/t1", ".."])
async def test_task_id_outside_worktree_root_is_rejected(
    lifecycle: AgentLifecycleManager, workspaces, sessions, task_id: str
) -> None:
    task = Task(id=task_id, title="Escape", description="", status="open")

    with pytest.raises(LifecycleError) as excinfo:
        await lifecycle.start(task)

    assert excinfo.value.step == "resolve worktree path"
    assert workspaces.created == []
    assert sessions.sessions == {}
