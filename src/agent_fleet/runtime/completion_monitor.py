"""Polling-based idle detection for agent sessions.

Some session backends never push a completion event, so the monitor polls the
backend's live session set until the session reports ``stopped`` or disappears.
Each monitored session gets its own background task and cancellation token;
cancelling the token interrupts both the status query and the inter-poll
delay immediately.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .domain.models import AgentSession
from .errors import OperationCancelled

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_MS = 5000
DEFAULT_TIMEOUT_MS = 300000

T = TypeVar("T")

SessionLister = Callable[[], Awaitable[list[AgentSession]]]
CompletionCallback = Callable[[AgentSession], Any]


class MonitorResult(str, enum.Enum):
    """Terminal outcome of one polling loop."""

    IDLE_DETECTED = "idle-detected"
    TIMED_OUT = "timed-out"
    ABORTED = "aborted"


class CancellationToken:
    """Cooperative cancellation scope observed at every suspension point."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for up to ``seconds``.

        Returns:
            bool: ``True`` when the token was cancelled before the delay elapsed.
        """
        if self.cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(seconds, 0.0))
        except asyncio.TimeoutError:
            return False
        return True

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token is cancelled first.

        Raises:
            OperationCancelled: If the token is cancelled before the awaitable
                resolves. The pending work is cancelled.
        """
        if self.cancelled:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelled("operation cancelled")
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not work.done():
                work.cancel()
        if work in done:
            return work.result()
        raise OperationCancelled("operation cancelled")


@dataclass
class MonitorHandle:
    """Book-keeping for one in-flight polling loop."""
    session_id: str
    token: CancellationToken
    started_at: float
    task: Optional["asyncio.Task[MonitorResult]"] = None


class CompletionMonitor:
    """Detect when sessions go idle by polling the backend's session list."""

    def __init__(
        self,
        get_sessions: SessionLister,
        on_complete: CompletionCallback,
        *,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the CompletionMonitor.

        Args:
            get_sessions (SessionLister): Coroutine function returning the live
                session set of the backend.
            on_complete (CompletionCallback): Invoked once per session when it is
                detected idle. May be sync or async.
            poll_interval_ms (int): Delay between status queries.
            timeout_ms (int): Upper bound on monitoring one session.
            clock (Callable[[], float]): Monotonic clock in seconds.
        """
        self._get_sessions = get_sessions
        self._on_complete = on_complete
        self._poll_interval_ms = poll_interval_ms
        self._timeout_ms = timeout_ms
        self._clock = clock
        self._handles: dict[str, MonitorHandle] = {}
        self._tasks: set[asyncio.Task[MonitorResult]] = set()

    @property
    def poll_interval_ms(self) -> int:
        return self._poll_interval_ms

    @property
    def timeout_ms(self) -> int:
        return self._timeout_ms

    def is_monitoring(self, session_id: str) -> bool:
        return session_id in self._handles

    def monitored_session_ids(self) -> list[str]:
        return list(self._handles)

    def start_monitoring(self, session: AgentSession) -> None:
        """Begin polling ``session`` in the background; no-op if already monitored."""
        if session.session_id in self._handles:
            logger.debug("Session %s is already monitored", session.session_id)
            return
        handle = MonitorHandle(
            session_id=session.session_id,
            token=CancellationToken(),
            started_at=self._clock(),
        )
        self._handles[session.session_id] = handle
        task = asyncio.get_running_loop().create_task(
            self._poll(session, handle),
            name=f"monitor-{session.session_id}",
        )
        handle.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug("Monitoring session %s for task %s", session.session_id, session.task_id)

    def stop_monitoring(self, session_id: str) -> None:
        """Cancel the polling loop for ``session_id`` if one is active."""
        handle = self._handles.pop(session_id, None)
        if handle is None:
            return
        handle.token.cancel()
        logger.debug("Stopped monitoring session %s", session_id)

    def stop_all_monitoring(self) -> None:
        for session_id in list(self._handles):
            self.stop_monitoring(session_id)

    async def wait(self, session_id: str) -> Optional[MonitorResult]:
        """Wait for the active loop of ``session_id`` to finish and return its result."""
        handle = self._handles.get(session_id)
        if handle is None or handle.task is None:
            return None
        return await asyncio.shield(handle.task)

    async def aclose(self) -> None:
        """Cancel every loop and wait until all of them have exited."""
        self.stop_all_monitoring()
        pending = list(self._tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _poll(self, session: AgentSession, handle: MonitorHandle) -> MonitorResult:
        token = handle.token
        result = MonitorResult.ABORTED
        try:
            while not token.cancelled:
                elapsed_ms = (self._clock() - handle.started_at) * 1000
                remaining_ms = self._timeout_ms - elapsed_ms
                if remaining_ms <= 0:
                    logger.warning(
                        "Session %s for task %s did not go idle within %d ms; monitoring stopped",
                        session.session_id,
                        session.task_id,
                        self._timeout_ms,
                    )
                    result = MonitorResult.TIMED_OUT
                    break
                try:
                    idle = await token.run(
                        asyncio.wait_for(self._is_idle(session.session_id), timeout=remaining_ms / 1000)
                    )
                except OperationCancelled:
                    break
                except asyncio.TimeoutError:
                    logger.warning(
                        "Status query for session %s outlived the %d ms monitoring budget",
                        session.session_id,
                        self._timeout_ms,
                    )
                    idle = False
                except Exception:
                    logger.warning("Failed to query status of session %s", session.session_id, exc_info=True)
                    idle = False
                if idle:
                    result = MonitorResult.IDLE_DETECTED
                    break
                if await token.sleep(self._poll_interval_ms / 1000):
                    break
        finally:
            if self._handles.get(handle.session_id) is handle:
                del self._handles[handle.session_id]

        if result is MonitorResult.IDLE_DETECTED:
            logger.info("Session %s for task %s is idle", session.session_id, session.task_id)
            await self._notify(session)
        return result

    async def _is_idle(self, session_id: str) -> bool:
        sessions = await self._get_sessions()
        for candidate in sessions:
            if candidate.session_id == session_id:
                return candidate.status == "stopped"
        return True

    async def _notify(self, session: AgentSession) -> None:
        try:
            outcome = self._on_complete(session)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("Completion callback failed for session %s", session.session_id)
