"""Base backend class defining the execution interface.

A backend runs an arbitrary shell command on the target machine and
hands back whatever text the command produced. Exactly two variants
exist (local and remote SSH); one is chosen at session start and held
until the session ends.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from types import TracebackType

# Matches ANSI CSI sequences (\x1b[...letter) and OSC sequences (\x1b]...BEL)
_ANSI_RE = re.compile(r"\x1b(?:\[[0-9;]*[A-Za-z]|\][^\x07]*\x07)")

DISPLAY_LIMIT = 300
NO_OUTPUT = "(no output)"

# POSIX shells report these for missing and non-executable commands
_NOT_FOUND_STATUS = 127
_NOT_EXECUTABLE_STATUS = 126


def strip_ansi(text: str) -> str:
    """Remove ANSI escape codes and carriage returns from text."""
    return _ANSI_RE.sub("", text).replace("\r", "")


def truncate_for_display(output: str, limit: int = DISPLAY_LIMIT) -> str:
    """Shorten command output for the interactive display.

    The audit log and the transcript always get the full text.
    """
    display = output.strip()
    if not display:
        return NO_OUTPUT
    if len(display) > limit:
        return display[:limit] + "..."
    return display


def describe_exit_status(code: int) -> str | None:
    """Turn a shell exit status into error text, None for success."""
    if code == 0:
        return None
    if code == _NOT_FOUND_STATUS:
        return f"exit status {code} (command not found)"
    if code == _NOT_EXECUTABLE_STATUS:
        return f"exit status {code} (permission denied)"
    if code < 0:
        return f"terminated by signal {-code}"
    return f"exit status {code}"


class BackendConnectionError(Exception):
    """Raised when the remote session cannot be established.

    Recoverable: the caller decides whether to reconfigure, fall back
    to local mode or give up. The backend never retries on its own.
    """

    def __init__(self, host: str, reason: str, hint: str = "") -> None:
        self.host = host
        self.reason = reason
        self.hint = hint
        message = f"Cannot connect to {host}: {reason}"
        if hint:
            message += f"\n{hint}"
        super().__init__(message)


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of a single command.

    ``output`` holds merged stdout/stderr and is populated even when the
    command failed; ``error`` is None on success.
    """

    output: str = ""
    error: str | None = None
    exit_code: int = 0

    @property
    def success(self) -> bool:
        """Whether the command ran and exited with status 0."""
        return self.error is None

    @property
    def display(self) -> str:
        """Output shortened for the terminal."""
        return truncate_for_display(self.output)


class ExecutionBackend(ABC):
    """Abstract base class for the local and remote execution backends."""

    @property
    @abstractmethod
    def is_remote(self) -> bool:
        """Whether commands run on a remote host."""

    @property
    @abstractmethod
    def target(self) -> str:
        """Human-readable description of where commands run."""

    @abstractmethod
    async def open(self) -> None:
        """Acquire whatever the backend needs before the first ``run``.

        Raises:
            BackendConnectionError: If a remote session cannot be established.
        """

    @abstractmethod
    async def run(self, command: str) -> ExecutionResult:
        """Execute a shell command and capture its output.

        Command failures are reported in the result, never raised.

        Args:
            command: The command line, interpreted by the target's shell.

        Returns:
            ExecutionResult with merged output, error text and exit code.
        """

    @abstractmethod
    async def close(self) -> None:
        """Release the backend. Safe to call repeatedly or after a failed ``open``."""

    async def __aenter__(self) -> ExecutionBackend:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
