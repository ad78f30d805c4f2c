"""File-backed repositories for fleet configuration and tasks."""

from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import yaml

from ...io_utils import FileLock, atomic_write_text
from ..domain.models import Task

logger = logging.getLogger(__name__)

TASKS_FILE_VERSION = 1
DEFAULT_TASK_POLL_SECONDS = 2.0


def _dump_yaml(payload: Any) -> str:
    return yaml.safe_dump(payload, sort_keys=False)


class FileConfigRepository:
    """YAML-backed repository for runtime configuration."""
    def __init__(self, path: Path, lock_path: Path) -> None:
        """Initialize the FileConfigRepository.

        Args:
            path (Path): YAML file path for runtime configuration.
            lock_path (Path): Lock file path used while reading or writing config.
        """
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, Any]:
        """Load configuration from disk.

        Returns:
            dict[str, Any]: Configuration mapping from disk, or an empty mapping.
        """
        with self._thread_lock:
            with self._lock:
                if not self._path.exists():
                    return {}
                raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
                return raw if isinstance(raw, dict) else {}

    def save(self, config: dict[str, Any]) -> dict[str, Any]:
        """Persist configuration to disk atomically.

        Args:
            config (dict[str, Any]): Configuration mapping to persist.

        Returns:
            dict[str, Any]: Saved configuration mapping.
        """
        with self._thread_lock:
            with self._lock:
                atomic_write_text(self._path, _dump_yaml(config))
        return config


class FileTaskSource:
    """Task source backed by a ``tasks.yaml`` file.

    The file is polled; a snapshot of open tasks is yielded on the first read
    and every time the set of open tasks changes. Assignment only touches the
    ``assignee`` field so the orchestrator never flips a task out of ``open``
    by its own bookkeeping.
    """

    def __init__(self, path: Path, lock_path: Path, *, poll_seconds: float = DEFAULT_TASK_POLL_SECONDS) -> None:
        """Initialize the FileTaskSource.

        Args:
            path (Path): YAML file holding the ``tasks`` list.
            lock_path (Path): Lock file path used while mutating task data.
            poll_seconds (float): Delay between reads of the task file.
        """
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()
        self._poll_seconds = poll_seconds

    @property
    def path(self) -> Path:
        return self._path

    def list(self) -> list[Task]:
        """Load every task record, skipping entries without an id."""
        with self._thread_lock:
            with self._lock:
                return self._load()

    def get(self, task_id: str) -> Optional[Task]:
        for task in self.list():
            if task.id == task_id:
                return task
        return None

    def upsert(self, task: Task) -> Task:
        """Insert or replace a task by id."""
        with self._thread_lock:
            with self._lock:
                tasks = self._load()
                for idx, existing in enumerate(tasks):
                    if existing.id == task.id:
                        tasks[idx] = task
                        break
                else:
                    tasks.append(task)
                self._save(tasks)
        return task

    def list_open(self) -> list[Task]:
        return [task for task in self.list() if task.is_open]

    async def list_open_task_stream(self) -> AsyncIterator[list[Task]]:
        last_ids: Optional[frozenset[str]] = None
        while True:
            tasks = await asyncio.to_thread(self.list_open)
            ids = frozenset(task.id for task in tasks)
            if ids != last_ids:
                last_ids = ids
                logger.debug("Task file %s has %d open task(s)", self._path, len(tasks))
                yield tasks
            await asyncio.sleep(self._poll_seconds)

    async def assign_task(self, task_id: str, agent_id: str) -> None:
        await asyncio.to_thread(self._set_assignee, task_id, agent_id)

    async def unassign_task(self, task_id: str) -> None:
        await asyncio.to_thread(self._set_assignee, task_id, None)

    def _set_assignee(self, task_id: str, agent_id: Optional[str]) -> None:
        with self._thread_lock:
            with self._lock:
                tasks = self._load()
                for task in tasks:
                    if task.id == task_id:
                        task.assignee = agent_id
                        self._save(tasks)
                        return
        raise KeyError(f"Task {task_id} not found in {self._path}")

    def _load(self) -> list[Task]:
        if not self._path.exists():
            return []
        raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            return []
        items = raw.get("tasks") or []
        out: list[Task] = []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            task = Task.from_dict(item)
            if task.id:
                out.append(task)
        return out

    def _save(self, tasks: list[Task]) -> None:
        payload = {"version": TASKS_FILE_VERSION, "tasks": [task.to_dict() for task in tasks]}
        atomic_write_text(self._path, _dump_yaml(payload))
