"""Exception types raised by the orchestration runtime."""

from __future__ import annotations

from typing import Optional


class LifecycleError(RuntimeError):
    """An agent could not be started; wraps the first failing step's cause."""

    def __init__(self, task_id: str, step: str, cause: Optional[BaseException] = None) -> None:
        detail = str(cause) if cause is not None else "provider reported failure"
        super().__init__(f"Failed to {step} for task {task_id}: {detail}")
        self.task_id = task_id
        self.step = step
        self.cause = cause


class WorktreeError(RuntimeError):
    """A git worktree command failed."""


class OperationCancelled(RuntimeError):
    """Raised when a cancellable operation observes its token being cancelled."""
