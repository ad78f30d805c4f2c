"""Session provider contract shared by every agent-session backend."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional

from ..domain.models import AgentSession

logger = logging.getLogger(__name__)

SessionIdleCallback = Callable[[str, AgentSession], None]


class SessionProviderError(RuntimeError):
    """A session backend rejected or failed a request."""


class SessionProvider(ABC):
    """Capability interface implemented by each session backend.

    Backends own the normalization of their responses into ``AgentSession``
    records. Completion is reported through ``on_session_idle`` regardless of
    whether the backend pushes events or has to be polled.
    """

    name: str = "abstract"

    def __init__(self) -> None:
        self._idle_callbacks: list[SessionIdleCallback] = []

    @abstractmethod
    async def create_session(self, task_id: str, *, working_directory: Path) -> AgentSession:
        """Create a session for ``task_id`` rooted at ``working_directory``.

        Raises:
            SessionProviderError: If a session already exists for the task or
                the backend refuses the request.
        """
        raise NotImplementedError

    @abstractmethod
    async def get_session(self, task_id: str) -> Optional[AgentSession]:
        """Return the tracked session for ``task_id``, if any."""
        raise NotImplementedError

    @abstractmethod
    async def send_message(self, session_id: str, message: str, working_directory: Path) -> None:
        """Deliver ``message`` to the session identified by ``session_id``."""
        raise NotImplementedError

    @abstractmethod
    async def remove_session(self, task_id: str) -> None:
        """Tear down the session for ``task_id``.

        Raises:
            SessionProviderError: If no session is tracked for the task.
        """
        raise NotImplementedError

    @abstractmethod
    async def get_all_sessions(self) -> list[AgentSession]:
        """Return the live session set, used for status polling."""
        raise NotImplementedError

    def on_session_idle(self, callback: SessionIdleCallback) -> None:
        """Register ``callback`` to be invoked with ``(task_id, session)`` on idle."""
        self._idle_callbacks.append(callback)

    async def stop_all_sessions(self) -> None:
        """Remove every tracked session, logging individual failures."""
        for session in await self.get_all_sessions():
            try:
                await self.remove_session(session.task_id)
            except Exception:
                logger.exception("Failed to remove session %s for task %s", session.session_id, session.task_id)

    async def aclose(self) -> None:
        """Release backend resources held by the provider."""

    def _trigger_session_idle(self, task_id: str, session: AgentSession) -> None:
        for callback in list(self._idle_callbacks):
            try:
                callback(task_id, session)
            except Exception:
                logger.exception("Session idle callback failed for task %s", task_id)
