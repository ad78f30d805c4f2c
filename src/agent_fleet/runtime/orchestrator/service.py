"""Reconciliation loop keeping one agent per open task."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import replace
from typing import Any, AsyncIterator, Callable, Coroutine, Iterable, Optional

from ..domain.models import AgentSession, RunningAgent, Task, agent_id_for
from ..errors import LifecycleError
from ..sessions.base import SessionProvider
from ..tasks.base import TaskSource
from .lifecycle import AgentLifecycleManager

logger = logging.getLogger(__name__)

DEFAULT_STREAM_RESTART_DELAY_SECONDS = 5.0

AgentCompletedHook = Callable[[str, AgentSession], Any]


class AgentOrchestrator:
    """Drive agent starts and stops so running agents match the open task set.

    The orchestrator is the only writer of its ``RunningAgent`` registry.
    Snapshots are reconciled one at a time; within a pass, starts and stops of
    distinct tasks run concurrently. Teardown triggered by a snapshot, by an
    idle session or by ``stop`` funnels through one guarded routine.
    """

    def __init__(
        self,
        task_source: TaskSource,
        lifecycle: AgentLifecycleManager,
        session_provider: SessionProvider,
        *,
        stream_restart_delay_seconds: float = DEFAULT_STREAM_RESTART_DELAY_SECONDS,
        on_agent_completed: Optional[AgentCompletedHook] = None,
    ) -> None:
        """Initialize the AgentOrchestrator.

        Args:
            task_source (TaskSource): Source of open-task snapshots.
            lifecycle (AgentLifecycleManager): Starts and stops individual agents.
            session_provider (SessionProvider): Backend whose idle signal ends an agent.
            stream_restart_delay_seconds (float): Back-off before re-acquiring a
                failed task stream.
            on_agent_completed (Optional[AgentCompletedHook]): Called with
                ``(task_id, session)`` after an idle agent has been torn down.
        """
        self.task_source = task_source
        self.lifecycle = lifecycle
        self.session_provider = session_provider
        self._stream_restart_delay_seconds = stream_restart_delay_seconds
        self._on_agent_completed = on_agent_completed
        self._agents: dict[str, RunningAgent] = {}
        self._starting: set[str] = set()
        self._stopping: set[str] = set()
        self._idle_pending: dict[str, AgentSession] = {}
        self._idle_tasks: set[asyncio.Task[None]] = set()
        self._consumer: Optional[asyncio.Task[None]] = None
        self._current_pass: Optional[asyncio.Future[None]] = None
        self._running = False
        self._passes = 0
        session_provider.on_session_idle(self._handle_session_idle)

    def is_running(self) -> bool:
        return self._running

    def get_running_agents(self) -> list[RunningAgent]:
        """Return a point-in-time copy of the running agents."""
        return [replace(agent) for agent in self._agents.values()]

    def status(self) -> dict[str, Any]:
        """Build a status snapshot of the loop and its agents.

        Returns:
            dict[str, Any]: Loop flag, agent counts and completed pass count.
        """
        return {
            "running": self._running,
            "agents": len(self._agents),
            "starting": len(self._starting),
            "stopping": len(self._stopping),
            "passes": self._passes,
            "session_backend": self.session_provider.name,
        }

    async def start(self) -> None:
        """Begin consuming task snapshots in the background; no-op when already running."""
        if self._running:
            logger.debug("Orchestrator already running")
            return
        stream = self.task_source.list_open_task_stream()
        self._running = True
        self._consumer = asyncio.get_running_loop().create_task(self._consume(stream), name="orchestrator-consumer")
        logger.info("Orchestrator started")

    async def stop(self) -> None:
        """Stop consuming snapshots and tear down every running agent.

        Returns once every teardown attempt has finished, successfully or not.
        """
        self._running = False
        consumer = self._consumer
        self._consumer = None
        if consumer is not None:
            consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)

        current = self._current_pass
        if current is not None and not current.done():
            await asyncio.gather(current, return_exceptions=True)
        await self._drain_idle_tasks()
        self._idle_pending.clear()

        task_ids = list(self._agents)
        if task_ids:
            logger.info("Stopping %d agent(s)", len(task_ids))
            await asyncio.gather(*(self._stop_agent(task_id) for task_id in task_ids))
        await self._drain_idle_tasks()
        logger.info("Orchestrator stopped")

    async def reconcile(self, snapshot: Iterable[Task]) -> None:
        """Converge running agents on one snapshot of open tasks.

        Tasks without an agent are started, agents whose task left the snapshot
        are stopped and everything else is left alone, so re-delivering the
        same snapshot issues no further calls.
        """
        desired: dict[str, Task] = {}
        for task in snapshot:
            if task.is_open and task.id and task.id not in desired:
                desired[task.id] = task

        to_start = [
            task for task_id, task in desired.items() if task_id not in self._agents and task_id not in self._starting
        ]
        to_stop = [task_id for task_id in self._agents if task_id not in desired and task_id not in self._stopping]

        if not to_start and not to_stop:
            self._passes += 1
            return
        # Claimed before any suspension so an overlapping pass cannot start the same task.
        self._starting.update(task.id for task in to_start)
        logger.debug("Reconciling: %d to start, %d to stop", len(to_start), len(to_stop))
        await asyncio.gather(
            *(self._start_agent(task) for task in to_start),
            *(self._stop_agent(task_id) for task_id in to_stop),
        )
        self._passes += 1

    async def _consume(self, stream: AsyncIterator[list[Task]]) -> None:
        while True:
            try:
                async for snapshot in stream:
                    await self._run_pass(list(snapshot))
                logger.info("Task stream ended")
                return
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Task stream failed; re-acquiring in %.1fs", self._stream_restart_delay_seconds)
            finally:
                await self._close_stream(stream)
            await asyncio.sleep(self._stream_restart_delay_seconds)
            stream = self.task_source.list_open_task_stream()

    async def _run_pass(self, snapshot: list[Task]) -> None:
        # Cancelling the consumer must not interrupt provider calls mid-pass.
        current = asyncio.ensure_future(self.reconcile(snapshot))
        self._current_pass = current
        try:
            await asyncio.shield(current)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Reconciliation pass failed")

    @staticmethod
    async def _close_stream(stream: AsyncIterator[list[Task]]) -> None:
        aclose = getattr(stream, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception:
            logger.debug("Failed to close task stream", exc_info=True)

    async def _start_agent(self, task: Task) -> None:
        task_id = task.id
        self._starting.add(task_id)
        try:
            session = await self.lifecycle.start(task)
        except LifecycleError as exc:
            logger.error("Agent for task %s not started: %s", task_id, exc)
            self._idle_pending.pop(task_id, None)
            return
        except Exception:
            logger.exception("Unexpected failure starting agent for task %s", task_id)
            self._idle_pending.pop(task_id, None)
            return
        finally:
            self._starting.discard(task_id)

        self._agents[task_id] = RunningAgent(
            task_id=task_id,
            agent_id=agent_id_for(task_id),
            worktree_path=self.lifecycle.worktree_path(task_id),
            status="running",
            session_id=session.session_id,
        )
        logger.info("Agent %s registered for task %s", agent_id_for(task_id), task_id)

        pending = self._idle_pending.pop(task_id, None)
        if pending is not None:
            self._spawn(self._complete_agent(task_id, pending))

    async def _stop_agent(self, task_id: str) -> bool:
        """Tear down ``task_id``'s agent once; concurrent callers return ``False`` immediately."""
        agent = self._agents.get(task_id)
        if agent is None or task_id in self._stopping:
            return False
        self._stopping.add(task_id)
        agent.status = "stopping"
        try:
            await self.lifecycle.stop(task_id)
        except Exception:
            logger.exception("Teardown of agent for task %s failed", task_id)
        finally:
            self._agents.pop(task_id, None)
            self._stopping.discard(task_id)
        logger.info("Agent for task %s removed", task_id)
        return True

    def _handle_session_idle(self, task_id: str, session: AgentSession) -> None:
        if task_id in self._starting:
            self._idle_pending[task_id] = session
            return
        if task_id not in self._agents:
            logger.debug("Ignoring idle signal for task %s without a running agent", task_id)
            return
        self._spawn(self._complete_agent(task_id, session))

    async def _complete_agent(self, task_id: str, session: AgentSession) -> None:
        logger.info("Agent for task %s finished (session %s)", task_id, session.session_id)
        if not await self._stop_agent(task_id):
            return
        hook = self._on_agent_completed
        if hook is None:
            return
        try:
            outcome = hook(task_id, session)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("Completion hook failed for task %s", task_id)

    async def _drain_idle_tasks(self) -> None:
        # Completions may spawn further completions while being awaited.
        current = asyncio.current_task()
        while True:
            pending = [task for task in self._idle_tasks if task is not current]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._idle_tasks.add(task)
        task.add_done_callback(self._idle_tasks.discard)
