"""Local command execution on this machine.

Commands go through the host shell (``/bin/sh -c`` on POSIX, ``cmd``
on Windows) because proposals are full shell command lines with pipes
and redirects. stdout and stderr are merged into one stream so the
diagnostic text arrives in the order the command wrote it.

On POSIX each command runs in its own session, so a timeout kills the
shell together with every process it started.
"""

from __future__ import annotations

import asyncio
import os
import platform
import signal

import structlog

from deepsentry.executor.base import (
    ExecutionBackend,
    ExecutionResult,
    describe_exit_status,
    strip_ansi,
)

logger = structlog.get_logger()

_POSIX = os.name == "posix"
_READ_CHUNK = 4096
_DRAIN_TIMEOUT = 2.0  # seconds to collect remaining output after a kill


class LocalBackend(ExecutionBackend):
    """Run commands through the local host shell."""

    def __init__(self, command_timeout: int | None = None) -> None:
        self._timeout = command_timeout

    @property
    def is_remote(self) -> bool:
        return False

    @property
    def target(self) -> str:
        return f"local ({platform.node() or 'localhost'})"

    async def open(self) -> None:
        logger.debug("local_backend_ready", target=self.target)

    async def run(self, command: str) -> ExecutionResult:
        """Execute a command with create_subprocess_shell.

        Args:
            command: The command line to execute.

        Returns:
            ExecutionResult with merged output; non-zero exit is an error.
            A timed-out command keeps whatever output it produced.
        """
        if not command.strip():
            return ExecutionResult(error="Empty command", exit_code=1)

        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                **({"start_new_session": True} if _POSIX else {}),
            )
        except OSError as e:
            logger.error("local_spawn_failed", command=command, error=str(e))
            return ExecutionResult(error=f"Failed to start shell: {e}", exit_code=1)

        chunks: list[bytes] = []
        try:
            await asyncio.wait_for(_collect(proc, chunks), timeout=self._timeout)
        except asyncio.TimeoutError:
            _kill(proc)
            try:
                await asyncio.wait_for(_collect(proc, chunks), timeout=_DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                # A grandchild left the process group and still holds the pipe
                logger.warning("local_output_drain_abandoned", command=command)
            logger.warning("local_command_timeout", command=command, timeout=self._timeout)
            return ExecutionResult(
                output=_decode(b"".join(chunks)),
                error=f"Command timed out after {self._timeout}s",
                exit_code=1,
            )

        code = proc.returncode or 0
        return ExecutionResult(
            output=_decode(b"".join(chunks)),
            error=describe_exit_status(code),
            exit_code=code,
        )

    async def close(self) -> None:
        """Nothing to release; present for interface symmetry."""


async def _collect(proc: asyncio.subprocess.Process, chunks: list[bytes]) -> None:
    """Read stdout into chunks until EOF, then reap the process.

    Chunks already read survive cancellation, so a caller that times out
    still has the partial output.
    """
    while proc.stdout is not None:
        chunk = await proc.stdout.read(_READ_CHUNK)
        if not chunk:
            break
        chunks.append(chunk)
    await proc.wait()


def _kill(proc: asyncio.subprocess.Process) -> None:
    """Kill the shell and, on POSIX, its whole process group."""
    try:
        if _POSIX:
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


def _decode(raw: bytes | None) -> str:
    return strip_ansi((raw or b"").decode("utf-8", errors="replace")).rstrip()
