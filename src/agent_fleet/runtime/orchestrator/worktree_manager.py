"""Git worktree helpers backing per-task agent workspaces."""

from __future__ import annotations

import asyncio
import logging
import subprocess
from pathlib import Path
from typing import Protocol

from ..errors import WorktreeError

logger = logging.getLogger(__name__)


class WorkspaceProvider(Protocol):
    """Contract used by the lifecycle manager to create and remove workspaces."""

    async def create(self, path: Path, ref: str, *, detach: bool = False) -> bool:
        """Create an isolated workspace at ``path`` checked out at ``ref``."""
        ...

    async def remove(self, path: Path, *, force: bool = False) -> bool:
        """Remove the workspace at ``path``; ``force`` discards local changes."""
        ...


class GitWorktreeManager:
    """Create and remove git worktrees of one repository."""

    def __init__(self, repo_dir: Path) -> None:
        """Bind the manager to the main repository checkout."""
        self._repo_dir = Path(repo_dir).resolve()

    @property
    def repo_dir(self) -> Path:
        return self._repo_dir

    async def create(self, path: Path, ref: str = "HEAD", *, detach: bool = False) -> bool:
        """Add a worktree at ``path`` for ``ref``.

        Detached worktrees avoid creating a branch per task, so several tasks
        can check out the same ref concurrently.

        Raises:
            WorktreeError: If git refuses to create the worktree.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        args = ["worktree", "add"]
        if detach:
            args.append("--detach")
        args.extend([str(path), ref])
        await self._git(*args)
        logger.info("Created worktree %s at %s", path, ref)
        return True

    async def remove(self, path: Path, *, force: bool = False) -> bool:
        """Remove the worktree at ``path``.

        Raises:
            WorktreeError: If git refuses to remove the worktree.
        """
        args = ["worktree", "remove", str(path)]
        if force:
            args.append("--force")
        await self._git(*args)
        logger.info("Removed worktree %s", path)
        return True

    async def list(self) -> list[Path]:
        """Return the paths of every worktree registered with the repository."""
        output = await self._git("worktree", "list", "--porcelain")
        return [Path(line[len("worktree "):]) for line in output.splitlines() if line.startswith("worktree ")]

    async def prune(self) -> None:
        """Drop administrative entries of worktrees whose directories are gone."""
        await self._git("worktree", "prune")

    async def is_worktree(self, path: Path) -> bool:
        target = Path(path).resolve()
        return any(p.resolve() == target for p in await self.list())

    async def _git(self, *args: str) -> str:
        return await asyncio.to_thread(self._run_git, list(args))

    def _run_git(self, args: list[str]) -> str:
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self._repo_dir,
                check=True,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or exc.stdout or "").strip()
            raise WorktreeError(f"git {' '.join(args)} failed: {detail}") from exc
        except OSError as exc:
            raise WorktreeError(f"git {' '.join(args)} failed: {exc}") from exc
        return result.stdout
