"""Session backend that drives a CLI coding agent as a subprocess.

The CLI has no event stream: a session counts as idle once its process has
exited, which the backend discovers by polling through ``CompletionMonitor``.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ...paths import task_scoped_path
from ..domain.models import AgentSession
from ..completion_monitor import (
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_TIMEOUT_MS,
    CompletionMonitor,
)
from .base import SessionProvider, SessionProviderError

logger = logging.getLogger(__name__)

_DEFAULT_TERMINATE_GRACE_SECONDS = 5.0


@dataclass
class _CommandSession:
    session: AgentSession
    log_dir: Path
    process: Optional[asyncio.subprocess.Process] = None
    waiter: Optional["asyncio.Task[None]"] = None


class CommandSessionProvider(SessionProvider):
    """Run one agent process per session, with the message passed on stdin."""

    name = "command"

    def __init__(
        self,
        *,
        command: str,
        sessions_dir: Path,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        terminate_grace_seconds: float = _DEFAULT_TERMINATE_GRACE_SECONDS,
    ) -> None:
        """Initialize the CommandSessionProvider.

        Args:
            command (str): Shell-style command line of the agent CLI.
            sessions_dir (Path): Root for per-task prompt and output logs.
            poll_interval_ms (int): Idle polling interval.
            timeout_ms (int): Idle polling upper bound per session.
            terminate_grace_seconds (float): Wait after SIGTERM before SIGKILL.

        Raises:
            ValueError: If ``command`` is blank.
        """
        super().__init__()
        argv = shlex.split(command or "")
        if not argv:
            raise ValueError("Command session backend requires a non-empty 'command'")
        self._argv = argv
        self._sessions_dir = Path(sessions_dir)
        self._terminate_grace_seconds = terminate_grace_seconds
        self._sessions: dict[str, _CommandSession] = {}
        self._monitor = CompletionMonitor(
            self.get_all_sessions,
            self._handle_idle,
            poll_interval_ms=poll_interval_ms,
            timeout_ms=timeout_ms,
        )

    @property
    def monitor(self) -> CompletionMonitor:
        return self._monitor

    async def create_session(self, task_id: str, *, working_directory: Path) -> AgentSession:
        if task_id in self._sessions:
            raise SessionProviderError(f"Session for task {task_id} already exists")
        try:
            log_dir = task_scoped_path(self._sessions_dir, task_id)
        except ValueError as exc:
            raise SessionProviderError(str(exc)) from exc
        working_directory = Path(working_directory)
        working_directory.mkdir(parents=True, exist_ok=True)
        log_dir.mkdir(parents=True, exist_ok=True)
        session = AgentSession(
            session_id=f"cmd-{task_id}-{uuid.uuid4().hex[:8]}",
            task_id=task_id,
            working_directory=working_directory,
        )
        self._sessions[task_id] = _CommandSession(session=session, log_dir=log_dir)
        logger.info("Created command session %s for task %s", session.session_id, task_id)
        return session

    async def get_session(self, task_id: str) -> Optional[AgentSession]:
        entry = self._sessions.get(task_id)
        return entry.session if entry else None

    async def get_all_sessions(self) -> list[AgentSession]:
        return [entry.session for entry in self._sessions.values()]

    async def send_message(self, session_id: str, message: str, working_directory: Path) -> None:
        entry = self._find(session_id)
        if entry.process is not None and entry.process.returncode is None:
            raise SessionProviderError(f"Session {session_id} is still processing a previous message")

        (entry.log_dir / "prompt.txt").write_text(message, encoding="utf-8")
        with (entry.log_dir / "stdout.log").open("ab") as stdout, (entry.log_dir / "stderr.log").open("ab") as stderr:
            try:
                process = await asyncio.create_subprocess_exec(
                    *self._argv,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=stdout,
                    stderr=stderr,
                    cwd=str(working_directory),
                )
            except OSError as exc:
                raise SessionProviderError(f"Failed to launch agent command for session {session_id}: {exc}") from exc

        entry.process = process
        entry.session.status = "running"
        assert process.stdin is not None
        process.stdin.write(message.encode("utf-8"))
        try:
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.warning("Agent process for session %s closed stdin early", session_id)
        process.stdin.close()

        entry.waiter = asyncio.get_running_loop().create_task(
            self._wait_for_exit(entry, process),
            name=f"agent-process-{entry.session.task_id}",
        )
        self._monitor.start_monitoring(entry.session)
        logger.info("Started agent process %s for session %s", process.pid, session_id)

    async def remove_session(self, task_id: str) -> None:
        entry = self._sessions.get(task_id)
        if entry is None:
            raise SessionProviderError(f"Session for task {task_id} not found")
        entry.session.status = "stopping"
        self._monitor.stop_monitoring(entry.session.session_id)
        try:
            await self._terminate(entry)
        finally:
            entry.session.status = "stopped"
            self._sessions.pop(task_id, None)
        logger.info("Removed command session %s for task %s", entry.session.session_id, task_id)

    async def aclose(self) -> None:
        await self.stop_all_sessions()
        await self._monitor.aclose()

    def _find(self, session_id: str) -> _CommandSession:
        for entry in self._sessions.values():
            if entry.session.session_id == session_id:
                return entry
        raise SessionProviderError(f"Session {session_id} not found")

    async def _wait_for_exit(self, entry: _CommandSession, process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        if entry.session.status == "running":
            entry.session.status = "stopped"
        logger.info("Agent process for task %s exited with code %s", entry.session.task_id, code)

    async def _terminate(self, entry: _CommandSession) -> None:
        process = entry.process
        if process is not None and process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=self._terminate_grace_seconds)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                logger.warning("Agent process %s ignored SIGTERM; killing", process.pid)
                process.kill()
                await process.wait()
        if entry.waiter is not None:
            await asyncio.gather(entry.waiter, return_exceptions=True)

    def _handle_idle(self, session: AgentSession) -> None:
        self._trigger_session_idle(session.task_id, session)
