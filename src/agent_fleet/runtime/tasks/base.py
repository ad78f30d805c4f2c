"""Task source contract consumed by the orchestrator."""

from __future__ import annotations

from typing import AsyncIterator, Protocol

from ..domain.models import Task


class TaskSource(Protocol):
    """External store of tasks; the orchestrator only reads it and writes advisory assignments."""

    def list_open_task_stream(self) -> AsyncIterator[list[Task]]:
        """Return a fresh, live sequence of open-task snapshots.

        Every call starts a new sequence, so a consumer can re-acquire the
        stream after a failure. Snapshots may contain non-open tasks; callers
        filter on ``Task.status``.
        """
        ...

    async def assign_task(self, task_id: str, agent_id: str) -> None:
        """Record ``agent_id`` as working on ``task_id``. Best-effort bookkeeping."""
        ...

    async def unassign_task(self, task_id: str) -> None:
        """Clear the assignment of ``task_id``. Best-effort bookkeeping."""
        ...
