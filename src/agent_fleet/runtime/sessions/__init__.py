"""Session provider boundary and its backend variants."""

from __future__ import annotations

from pathlib import Path

from ...config import FleetConfig, SessionBackendSpec
from .base import SessionIdleCallback, SessionProvider, SessionProviderError
from .command import CommandSessionProvider
from .opencode import OpencodeSessionProvider


def create_session_provider(backend: SessionBackendSpec, *, sessions_dir: Path, poll_interval_ms: int, timeout_ms: int) -> SessionProvider:
    """Instantiate the backend selected by ``backend``.

    Raises:
        ValueError: If ``backend.type`` is not a known backend.
    """
    if backend.type == "opencode":
        return OpencodeSessionProvider(base_url=backend.base_url or "")
    if backend.type == "command":
        return CommandSessionProvider(
            command=backend.command or "",
            sessions_dir=sessions_dir,
            poll_interval_ms=poll_interval_ms,
            timeout_ms=timeout_ms,
        )
    raise ValueError(f"Unsupported session backend type '{backend.type}'")


def session_provider_from_config(config: FleetConfig) -> SessionProvider:
    return create_session_provider(
        config.session_backend,
        sessions_dir=config.sessions_dir,
        poll_interval_ms=config.poll_interval_ms,
        timeout_ms=config.monitor_timeout_ms,
    )


__all__ = [
    "CommandSessionProvider",
    "OpencodeSessionProvider",
    "SessionIdleCallback",
    "SessionProvider",
    "SessionProviderError",
    "create_session_provider",
    "session_provider_from_config",
]
