from __future__ import annotations

import asyncio
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional, Union

import pytest

from agent_fleet.runtime.domain.models import AgentSession, Task
from agent_fleet.runtime.sessions.base import SessionProvider, SessionProviderError
from agent_fleet.runtime.orchestrator.lifecycle import AgentLifecycleManager

_END = object()


class FakeTaskSource:
    """Task source fed by the test through ``push``."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue[object] = asyncio.Queue()
        self.streams_opened = 0
        self.assigned: list[tuple[str, str]] = []
        self.unassigned: list[str] = []
        self.fail_assign = False
        self.fail_unassign = False

    def push(self, snapshot: Union[list[Task], BaseException]) -> None:
        self.queue.put_nowait(snapshot)

    def end(self) -> None:
        self.queue.put_nowait(_END)

    async def list_open_task_stream(self) -> AsyncIterator[list[Task]]:
        self.streams_opened += 1
        while True:
            item = await self.queue.get()
            if item is _END:
                return
            if isinstance(item, BaseException):
                raise item
            yield list(item)

    async def assign_task(self, task_id: str, agent_id: str) -> None:
        if self.fail_assign:
            raise RuntimeError("task store unavailable")
        self.assigned.append((task_id, agent_id))

    async def unassign_task(self, task_id: str) -> None:
        if self.fail_unassign:
            raise RuntimeError("task store unavailable")
        self.unassigned.append(task_id)


class FakeWorkspaceProvider:
    def __init__(self) -> None:
        self.created: list[Path] = []
        self.removed: list[Path] = []
        self.active: set[Path] = set()
        self.fail_create: set[str] = set()
        self.fail_remove: set[str] = set()
        self.report_false_on_create: set[str] = set()
        self.delay = 0.0

    async def create(self, path: Path, ref: str, *, detach: bool = False) -> bool:
        if self.delay:
            await asyncio.sleep(self.delay)
        if path.name in self.fail_create:
            raise RuntimeError(f"cannot create worktree {path}")
        if path.name in self.report_false_on_create:
            return False
        assert detach
        self.created.append(path)
        self.active.add(path)
        return True

    async def remove(self, path: Path, *, force: bool = False) -> bool:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.removed.append(path)
        if path.name in self.fail_remove:
            raise RuntimeError(f"cannot remove worktree {path}")
        self.active.discard(path)
        return True


class FakeSessionProvider(SessionProvider):
    name = "fake"

    def __init__(self) -> None:
        super().__init__()
        self.sessions: dict[str, AgentSession] = {}
        self.messages: list[tuple[str, str, Path]] = []
        self.removed: list[str] = []
        self.fail_create: set[str] = set()
        self.fail_send: set[str] = set()
        self.fail_remove: set[str] = set()
        self.idle_on_send: set[str] = set()
        self.closed = False
        self._counter = 0

    async def create_session(self, task_id: str, *, working_directory: Path) -> AgentSession:
        if task_id in self.fail_create:
            raise SessionProviderError(f"backend refused session for {task_id}")
        if task_id in self.sessions:
            raise SessionProviderError(f"Session for task {task_id} already exists")
        self._counter += 1
        session = AgentSession(session_id=f"ses-{self._counter}", task_id=task_id, working_directory=working_directory)
        self.sessions[task_id] = session
        return session

    async def get_session(self, task_id: str) -> Optional[AgentSession]:
        return self.sessions.get(task_id)

    async def send_message(self, session_id: str, message: str, working_directory: Path) -> None:
        task_id = next((t for t, s in self.sessions.items() if s.session_id == session_id), None)
        if task_id is None:
            raise SessionProviderError(f"Session {session_id} not found")
        if task_id in self.idle_on_send:
            self.fire_idle(task_id)
        if task_id in self.fail_send:
            raise SessionProviderError(f"cannot prompt {session_id}")
        self.messages.append((session_id, message, working_directory))

    async def remove_session(self, task_id: str) -> None:
        self.removed.append(task_id)
        if task_id in self.fail_remove:
            raise SessionProviderError(f"cannot delete session for {task_id}")
        session = self.sessions.pop(task_id, None)
        if session is None:
            raise SessionProviderError(f"Session for task {task_id} not found")
        session.status = "stopped"

    async def get_all_sessions(self) -> list[AgentSession]:
        return list(self.sessions.values())

    async def aclose(self) -> None:
        self.closed = True

    def fire_idle(self, task_id: str) -> None:
        self._trigger_session_idle(task_id, self.sessions[task_id])


WaitUntil = Callable[[Callable[[], bool]], Awaitable[None]]


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def task_source() -> FakeTaskSource:
    return FakeTaskSource()


@pytest.fixture
def workspaces() -> FakeWorkspaceProvider:
    return FakeWorkspaceProvider()


@pytest.fixture
def sessions() -> FakeSessionProvider:
    return FakeSessionProvider()


@pytest.fixture
def lifecycle(
    tmp_path: Path,
    task_source: FakeTaskSource,
    workspaces: FakeWorkspaceProvider,
    sessions: FakeSessionProvider,
) -> AgentLifecycleManager:
    return AgentLifecycleManager(
        workspace_provider=workspaces,
        session_provider=sessions,
        task_source=task_source,
        worktrees_dir=tmp_path / "worktrees",
    )


@pytest.fixture
def wait_until() -> WaitUntil:
    return _wait_until


def open_task(task_id: str, title: str = "") -> Task:
    return Task(id=task_id, title=title or f"Task {task_id}", description=f"Do {task_id}", status="open")


@pytest.fixture
def make_task() -> Callable[..., Task]:
    return open_task
