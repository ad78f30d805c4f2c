"""Shared aiohttp session configuration with explicit timeouts."""

from __future__ import annotations

import aiohttp
from aiohttp import ClientTimeout

__all__ = [
    "DEFAULT_TIMEOUT",
    "STREAM_TIMEOUT",
    "create_client_session",
]

# Request/response calls against the session backend
DEFAULT_TIMEOUT = ClientTimeout(
    total=30,
    connect=10,
    sock_read=20,
)

# Long-lived server-sent-event streams: only bound the connect phase
STREAM_TIMEOUT = ClientTimeout(
    total=None,
    connect=10,
    sock_read=None,
)


def create_client_session(
    timeout: ClientTimeout | None = None,
    **kwargs,
) -> aiohttp.ClientSession:
    """Create an aiohttp ClientSession with proper timeout configuration.

    Args:
        timeout: Optional custom timeout. Uses DEFAULT_TIMEOUT if not specified.
        **kwargs: Additional arguments passed to ClientSession.

    Returns:
        Configured aiohttp.ClientSession.
    """
    if timeout is None:
        timeout = DEFAULT_TIMEOUT
    return aiohttp.ClientSession(timeout=timeout, **kwargs)
