"""Start and stop sequence of one task's agent."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from ...paths import worktree_path_for
from ...prompts import fill_agent_prompt
from ..domain.models import AgentSession, Task, agent_id_for
from ..errors import LifecycleError
from ..sessions.base import SessionProvider
from ..tasks.base import TaskSource
from .worktree_manager import WorkspaceProvider

logger = logging.getLogger(__name__)

PromptBuilder = Callable[[str, str, str], str]


class AgentLifecycleManager:
    """Own the workspace, session and assignment of every agent it starts.

    ``start`` provisions in order (worktree, session, initial prompt,
    assignment) and rolls back what it created when a step fails. ``stop``
    tears everything down best-effort; every step is attempted even when an
    earlier one fails.
    """

    def __init__(
        self,
        *,
        workspace_provider: WorkspaceProvider,
        session_provider: SessionProvider,
        task_source: TaskSource,
        worktrees_dir: Path,
        base_ref: str = "HEAD",
        prompt_builder: PromptBuilder = fill_agent_prompt,
    ) -> None:
        """Initialize the AgentLifecycleManager.

        Args:
            workspace_provider (WorkspaceProvider): Creates and removes worktrees.
            session_provider (SessionProvider): Backend hosting agent sessions.
            task_source (TaskSource): Receives advisory assign/unassign calls.
            worktrees_dir (Path): Root under which ``<task_id>`` worktrees live.
            base_ref (str): Ref every worktree is checked out at (detached).
            prompt_builder (PromptBuilder): Renders the initial instruction from
                title, description and worktree path.
        """
        self._workspaces = workspace_provider
        self._sessions = session_provider
        self._task_source = task_source
        self._worktrees_dir = Path(worktrees_dir)
        self._base_ref = base_ref
        self._prompt_builder = prompt_builder
        self._active: dict[str, AgentSession] = {}
        self._stopping: set[str] = set()

    @property
    def worktrees_dir(self) -> Path:
        return self._worktrees_dir

    def worktree_path(self, task_id: str) -> Path:
        return worktree_path_for(self._worktrees_dir, task_id)

    def get_session(self, task_id: str) -> Optional[AgentSession]:
        return self._active.get(task_id)

    def active_sessions(self) -> list[AgentSession]:
        return list(self._active.values())

    async def start(self, task: Task) -> AgentSession:
        """Provision the agent for ``task``.

        Args:
            task (Task): Open task to work on.

        Returns:
            AgentSession: Session that received the initial instruction.

        Raises:
            LifecycleError: If the task id cannot name a worktree, or if
                creating the worktree, creating the session or sending the
                prompt fails. Anything created before the failing
                step has been removed by then.
        """
        task_id = task.id
        agent_id = agent_id_for(task_id)
        try:
            path = self.worktree_path(task_id)
        except ValueError as exc:
            raise LifecycleError(task_id, "resolve worktree path", exc) from exc
        logger.info("Starting agent %s for task %s", agent_id, task_id)

        await self._step(
            task_id,
            "create worktree",
            self._workspaces.create(path, self._base_ref, detach=True),
        )

        try:
            session = await self._sessions.create_session(task_id, working_directory=path)
        except Exception as exc:
            await self._rollback_worktree(task_id, path)
            raise LifecycleError(task_id, "create session", exc) from exc

        prompt = self._prompt_builder(task.title, task.description, str(path))
        try:
            await self._sessions.send_message(session.session_id, prompt, path)
        except Exception as exc:
            await self._rollback_session(task_id)
            await self._rollback_worktree(task_id, path)
            raise LifecycleError(task_id, "send initial prompt", exc) from exc

        self._active[task_id] = session

        try:
            await self._task_source.assign_task(task_id, agent_id)
        except Exception:
            logger.warning("Failed to assign task %s to %s", task_id, agent_id, exc_info=True)

        logger.info("Agent %s running in session %s at %s", agent_id, session.session_id, path)
        return session

    async def stop(self, task_id: str) -> None:
        """Tear down the agent of ``task_id``; a concurrent second call returns immediately."""
        if task_id in self._stopping:
            logger.debug("Stop already in progress for task %s", task_id)
            return
        self._stopping.add(task_id)
        path = self.worktree_path(task_id)
        logger.info("Stopping agent for task %s", task_id)
        try:
            try:
                await self._sessions.remove_session(task_id)
            except Exception:
                logger.exception("Failed to remove session for task %s", task_id)

            try:
                await self._task_source.unassign_task(task_id)
            except Exception:
                logger.warning("Failed to unassign task %s", task_id, exc_info=True)

            try:
                removed = await self._workspaces.remove(path, force=True)
                if removed is False:
                    logger.error("Worktree removal reported failure for task %s at %s", task_id, path)
            except Exception:
                logger.exception("Failed to remove worktree for task %s at %s", task_id, path)
        finally:
            self._active.pop(task_id, None)
            self._stopping.discard(task_id)

    async def _step(self, task_id: str, step: str, call: Awaitable[Any]) -> Any:
        try:
            result = await call
        except Exception as exc:
            raise LifecycleError(task_id, step, exc) from exc
        if result is False:
            raise LifecycleError(task_id, step)
        return result

    async def _rollback_session(self, task_id: str) -> None:
        try:
            await self._sessions.remove_session(task_id)
        except Exception:
            logger.exception("Rollback: failed to remove session for task %s", task_id)

    async def _rollback_worktree(self, task_id: str, path: Path) -> None:
        try:
            await self._workspaces.remove(path, force=True)
        except Exception:
            logger.exception("Rollback: failed to remove worktree for task %s at %s", task_id, path)
