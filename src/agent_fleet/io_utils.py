"""Small filesystem helpers shared by the file-backed repositories."""

from __future__ import annotations

import fcntl
import os
from pathlib import Path
from typing import IO, Optional


class FileLock:
    """Exclusive advisory lock on ``path`` held for the duration of a ``with`` block.

    Serializes read-modify-write cycles of YAML state files across processes.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._handle: Optional[IO[str]] = None

    def __enter__(self) -> "FileLock":
        self._path.parent.mkdir(parents=True, exist_ok=True)
        handle = self._path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        except OSError:
            handle.close()
            raise
        self._handle = handle
        return self

    def __exit__(self, *exc: object) -> None:
        handle = self._handle
        self._handle = None
        if handle is None:
            return
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` through a temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(f"{path.suffix}.tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        handle.write(text)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)
