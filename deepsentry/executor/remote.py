"""SSH command execution on a remote target.

Uses asyncssh for all remote operations, never shells out to ssh. One
authenticated connection is opened before the first command and every
``run`` executes over it; nothing reconnects per command.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import asyncssh
import structlog

from deepsentry.executor.base import (
    BackendConnectionError,
    ExecutionBackend,
    ExecutionResult,
    describe_exit_status,
    strip_ansi,
)

logger = structlog.get_logger()

_READ_CHUNK = 4096


class RemoteBackend(ExecutionBackend):
    """Run commands over a single persistent SSH session."""

    def __init__(
        self,
        host: str,
        port: int = 22,
        *,
        username: str = "root",
        password: str | None = None,
        key_path: str | None = None,
        known_hosts_path: str | None = None,
        connect_timeout: int = 10,
        command_timeout: int | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._key_path = key_path
        self._known_hosts_path = known_hosts_path
        self._connect_timeout = connect_timeout
        self._command_timeout = command_timeout
        self._conn: asyncssh.SSHClientConnection | None = None

    @property
    def is_remote(self) -> bool:
        return True

    @property
    def target(self) -> str:
        return f"{self._username}@{self._host}:{self._port}"

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def open(self) -> None:
        """Establish and authenticate the SSH session.

        Raises:
            BackendConnectionError: On timeout, authentication failure,
                host key rejection, unreadable key or network error.
        """
        if self._conn is not None:
            return

        endpoint = f"{self._host}:{self._port}"

        if self._key_path and not Path(self._key_path).exists():
            raise BackendConnectionError(
                endpoint,
                f"SSH key not found: {self._key_path}",
                "Check ssh_key_path in the configuration, or switch to password auth.",
            )

        if self._key_path:
            auth: dict[str, object] = {"client_keys": [self._key_path]}
        else:
            # Password only: don't let stray agent or default keys interfere
            auth = {"password": self._password, "client_keys": (), "agent_path": None}

        try:
            # Wrap connect() in its own timeout so an unreachable host fails
            # fast with a clear message.
            self._conn = await asyncio.wait_for(
                asyncssh.connect(
                    self._host,
                    port=self._port,
                    username=self._username,
                    known_hosts=self._known_hosts_path,
                    **auth,
                ),
                timeout=self._connect_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("ssh_connect_timeout", host=endpoint)
            raise BackendConnectionError(
                endpoint,
                f"connection timed out after {self._connect_timeout}s",
                "Check: Is the address correct? Is SSH open on the target?",
            ) from None
        except asyncssh.PermissionDenied as e:
            logger.error("ssh_permission_denied", host=endpoint, error=str(e))
            raise BackendConnectionError(
                endpoint,
                f"permission denied: {e}",
                f"Check the password or key for user {self._username!r}.",
            ) from e
        except asyncssh.HostKeyNotVerifiable as e:
            logger.error("ssh_host_key_rejected", host=endpoint, error=str(e))
            raise BackendConnectionError(
                endpoint,
                f"host key not trusted: {e}",
                f"Fix: ssh-keyscan -p {self._port} {self._host} >> {self._known_hosts_path}",
            ) from e
        except asyncssh.KeyImportError as e:
            logger.error("ssh_key_error", host=endpoint, error=str(e))
            raise BackendConnectionError(
                endpoint, f"SSH key is invalid or corrupt ({self._key_path}): {e}"
            ) from e
        except asyncssh.DisconnectError as e:
            logger.error("ssh_disconnect", host=endpoint, error=str(e))
            raise BackendConnectionError(endpoint, f"disconnected: {e}") from e
        except OSError as e:
            logger.error("ssh_connection_failed", host=endpoint, error=str(e))
            raise BackendConnectionError(
                endpoint,
                str(e),
                "Check: Is the address correct? Is the server online? Is the port open?",
            ) from e

        logger.info("ssh_connected", target=self.target)

    async def run(self, command: str) -> ExecutionResult:
        """Execute a command over the open session.

        Args:
            command: The command line, run by the remote user's shell.

        Returns:
            ExecutionResult with merged output and the remote exit status.
            A timed-out command keeps whatever output it produced.
        """
        if self._conn is None:
            return ExecutionResult(error="SSH session is not open", exit_code=1)
        if not command.strip():
            return ExecutionResult(error="Empty command", exit_code=1)

        chunks: list[str] = []
        try:
            process = await self._conn.create_process(command, stderr=asyncssh.STDOUT)
            result = await asyncio.wait_for(
                _collect(process, chunks), timeout=self._command_timeout
            )
        except asyncio.TimeoutError:
            process.close()
            logger.warning("ssh_command_timeout", target=self.target, timeout=self._command_timeout)
            return ExecutionResult(
                output=_join(chunks),
                error=f"Command timed out after {self._command_timeout}s on {self._host}",
                exit_code=1,
            )
        except (asyncssh.Error, OSError) as e:
            logger.error("ssh_run_failed", target=self.target, error=str(e))
            return ExecutionResult(
                output=_join(chunks), error=f"SSH session error: {e}", exit_code=1
            )

        output = _join(chunks)
        if result.exit_status is None and result.exit_signal:
            signal_name = result.exit_signal[0]
            return ExecutionResult(
                output=output, error=f"terminated by signal {signal_name}", exit_code=1
            )
        code = result.exit_status or 0
        return ExecutionResult(output=output, error=describe_exit_status(code), exit_code=code)

    async def close(self) -> None:
        """Close the SSH connection if one is open."""
        conn, self._conn = self._conn, None
        if conn is None:
            return
        conn.close()
        await conn.wait_closed()
        logger.info("ssh_closed", target=self.target)


async def _collect(
    process: asyncssh.SSHClientProcess, chunks: list[str]
) -> asyncssh.SSHCompletedProcess:
    """Read merged output into chunks until EOF, then wait for the exit status.

    Chunks already read survive cancellation, so a timed-out command
    still reports what it printed.
    """
    while True:
        chunk = await process.stdout.read(_READ_CHUNK)
        if not chunk:
            break
        chunks.append(_as_text(chunk))
    return await process.wait(check=False)


def _join(chunks: list[str]) -> str:
    return strip_ansi("".join(chunks)).rstrip()


def _as_text(data: str | bytes | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data
