"""Session backend for an OpenCode server.

Sessions are created and deleted through the server's HTTP API. Completion is
pushed: the server's ``/event`` stream emits ``session.idle`` events, which are
forwarded to the registered idle callbacks.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import aiohttp

from ...http_client import STREAM_TIMEOUT, create_client_session
from ..domain.models import AgentSession
from .base import SessionProvider, SessionProviderError

logger = logging.getLogger(__name__)

_DEFAULT_RECONNECT_DELAY_SECONDS = 2.0
_IDLE_EVENT = "session.idle"


async def iter_sse_events(content: aiohttp.StreamReader) -> AsyncIterator[dict[str, Any]]:
    """Decode a ``text/event-stream`` body into JSON event objects.

    Multi-line ``data:`` fields are joined; blocks that are not JSON objects
    are skipped.
    """
    data_lines: list[str] = []
    async for raw in content:
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
            continue
        if line or not data_lines:
            continue
        payload = "\n".join(data_lines)
        data_lines = []
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON event payload: %s", payload[:200])
            continue
        if isinstance(event, dict):
            yield event


class OpencodeSessionProvider(SessionProvider):
    """Manage one OpenCode session per task over HTTP."""

    name = "opencode"

    def __init__(
        self,
        *,
        base_url: str,
        http_session: Optional[aiohttp.ClientSession] = None,
        reconnect_delay_seconds: float = _DEFAULT_RECONNECT_DELAY_SECONDS,
    ) -> None:
        """Initialize the OpencodeSessionProvider.

        Args:
            base_url (str): Root URL of the OpenCode server.
            http_session (Optional[aiohttp.ClientSession]): Session to reuse; one
                is created lazily (and owned) when omitted.
            reconnect_delay_seconds (float): Back-off before re-opening a
                dropped event stream.
        """
        super().__init__()
        self._base_url = base_url.rstrip("/")
        self._http = http_session
        self._owns_http = http_session is None
        self._reconnect_delay_seconds = reconnect_delay_seconds
        self._sessions: dict[str, AgentSession] = {}
        self._event_task: Optional[asyncio.Task[None]] = None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def create_session(self, task_id: str, *, working_directory: Path) -> AgentSession:
        if task_id in self._sessions:
            raise SessionProviderError(f"Session for task {task_id} already exists")
        working_directory = Path(working_directory)
        data = await self._request(
            "POST",
            "/session",
            params={"directory": str(working_directory)},
            payload={"title": f"Agent Session for {task_id}"},
            action=f"create session for task {task_id}",
        )
        session_id = data.get("id") if isinstance(data, dict) else None
        if not isinstance(session_id, str) or not session_id:
            raise SessionProviderError(f"Failed to get session ID from create response for task {task_id}")

        session = AgentSession(session_id=session_id, task_id=task_id, working_directory=working_directory)
        self._sessions[task_id] = session
        self._ensure_event_stream()
        logger.info("Created OpenCode session %s for task %s", session_id, task_id)
        return session

    async def get_session(self, task_id: str) -> Optional[AgentSession]:
        return self._sessions.get(task_id)

    async def get_all_sessions(self) -> list[AgentSession]:
        return list(self._sessions.values())

    async def send_message(self, session_id: str, message: str, working_directory: Path) -> None:
        if not any(s.session_id == session_id for s in self._sessions.values()):
            raise SessionProviderError(f"Session {session_id} not found")
        await self._request(
            "POST",
            f"/session/{session_id}/prompt_async",
            params={"directory": str(working_directory)},
            payload={"parts": [{"type": "text", "text": message}]},
            action=f"send message to session {session_id}",
        )

    async def remove_session(self, task_id: str) -> None:
        session = self._sessions.get(task_id)
        if session is None:
            raise SessionProviderError(f"Session for task {task_id} not found")
        session.status = "stopping"
        try:
            await self._request(
                "DELETE",
                f"/session/{session.session_id}",
                params={"directory": str(session.working_directory)},
                action=f"delete session {session.session_id}",
            )
        except SessionProviderError:
            # Local tracking is dropped even when the server refuses the delete.
            logger.warning("Error deleting session %s for task %s", session.session_id, task_id, exc_info=True)
        finally:
            session.status = "stopped"
            self._sessions.pop(task_id, None)

    async def aclose(self) -> None:
        task = self._event_task
        self._event_task = None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if self._owns_http and self._http is not None and not self._http.closed:
            await self._http.close()

    def _client(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = create_client_session()
            self._owns_http = True
        return self._http

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, str]] = None,
        payload: Optional[dict[str, Any]] = None,
        action: str,
    ) -> Any:
        try:
            async with self._client().request(method, f"{self._base_url}{path}", params=params, json=payload) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise SessionProviderError(f"Failed to {action}: HTTP {resp.status} {body[:200]}")
                if resp.status == 204 or resp.content_length == 0:
                    return None
                return await resp.json(content_type=None)
        except aiohttp.ClientError as exc:
            raise SessionProviderError(f"Failed to {action}: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise SessionProviderError(f"Failed to {action}: request timed out") from exc

    def _ensure_event_stream(self) -> None:
        if self._event_task is None or self._event_task.done():
            self._event_task = asyncio.get_running_loop().create_task(self._consume_events(), name="opencode-events")

    async def _consume_events(self) -> None:
        while True:
            try:
                async with self._client().get(f"{self._base_url}/event", timeout=STREAM_TIMEOUT) as resp:
                    resp.raise_for_status()
                    async for event in iter_sse_events(resp.content):
                        self._handle_event(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("OpenCode event stream failed; reconnecting", exc_info=True)
            await asyncio.sleep(self._reconnect_delay_seconds)

    def _handle_event(self, event: dict[str, Any]) -> None:
        if event.get("type") != _IDLE_EVENT:
            return
        properties = event.get("properties")
        session_id = properties.get("sessionID") if isinstance(properties, dict) else None
        for session in list(self._sessions.values()):
            if session.session_id == session_id:
                logger.info("OpenCode reported session %s idle for task %s", session_id, session.task_id)
                self._trigger_session_idle(session.task_id, session)
                return
