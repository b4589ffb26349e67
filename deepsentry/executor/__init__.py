"""Execution backends: run shell commands locally or over SSH.

``init_backend`` is the single place the local/remote choice is made.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from deepsentry.config import SentryConfig
from deepsentry.executor.base import (
    BackendConnectionError,
    ExecutionBackend,
    ExecutionResult,
    truncate_for_display,
)
from deepsentry.executor.local import LocalBackend


def create_backend(config: SentryConfig) -> ExecutionBackend:
    """Build the backend the configuration asks for, without opening it.

    Raises:
        ValueError: If the SSH endpoint is malformed.
    """
    if not config.is_remote:
        return LocalBackend(command_timeout=config.command_timeout)

    # Imported lazily so local mode works where asyncssh's crypto stack is broken
    from deepsentry.executor.remote import RemoteBackend

    host, port = config.ssh_endpoint
    return RemoteBackend(
        host,
        port,
        username=config.ssh_user,
        password=config.ssh_password,
        key_path=config.ssh_key_path,
        known_hosts_path=config.known_hosts_path,
        connect_timeout=config.connect_timeout,
        command_timeout=config.command_timeout,
    )


async def init_backend(config: SentryConfig) -> ExecutionBackend:
    """Create and open the configured backend.

    Raises:
        BackendConnectionError: If the remote session cannot be established.
            Also raised for a malformed SSH endpoint. A backend that
            fails to open has already been closed.
    """
    try:
        backend = create_backend(config)
    except ValueError as e:
        raise BackendConnectionError(config.ssh_host, str(e)) from e

    try:
        await backend.open()
    except BaseException:
        await backend.close()
        raise
    return backend


@asynccontextmanager
async def open_backend(config: SentryConfig) -> AsyncIterator[ExecutionBackend]:
    """Scoped acquisition: the backend is closed on every exit path."""
    backend = await init_backend(config)
    try:
        yield backend
    finally:
        await backend.close()


__all__ = [
    "BackendConnectionError",
    "ExecutionBackend",
    "ExecutionResult",
    "LocalBackend",
    "create_backend",
    "init_backend",
    "open_backend",
    "truncate_for_display",
]
