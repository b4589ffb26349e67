"""Human-readable audit report written with structlog.

Every thought, command, full command output and the final report is
appended to a Markdown file, one timestamped block per entry. The
report is best-effort: if it cannot be opened or written, the session
carries on with a no-op logger.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from types import TracebackType
from typing import Any, TextIO

import structlog

logger = structlog.get_logger()


def _render_block(_logger: Any, _method: str, event_dict: dict[str, Any]) -> str:
    """Render one audit entry as a Markdown block."""
    timestamp = event_dict.pop("timestamp", "")
    kind = event_dict.pop("event", "")
    detail = event_dict.pop("detail", "")
    return f"## [{timestamp}] {kind}\n\n{detail}\n"


def _format_command(command: str, output: str) -> str:
    body = output if output.strip() else "(no output)"
    return f"```\n$ {command}\n```\n\n```\n{body}\n```"


class AuditLog:
    """Append-only audit report for one session."""

    def __init__(self, path: str | Path) -> None:
        """Open the report file in append mode.

        Args:
            path: Path to the Markdown report file.

        Raises:
            OSError: If the file or its parent directory cannot be created.
        """
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file: TextIO = open(self._path, "a", buffering=1, encoding="utf-8")  # noqa: SIM115

        self._logger = structlog.wrap_logger(
            structlog.PrintLogger(file=self._file),
            processors=[
                structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False),
                _render_block,
            ],
        )

    @property
    def path(self) -> Path | None:
        return self._path

    def log_event(self, kind: str, detail: str) -> None:
        """Append a titled entry such as "AI Thought" or "Final Report"."""
        self._write(kind, detail)

    def log_command(self, command: str, output: str) -> None:
        """Append an executed command with its untruncated output."""
        self._write("Command", _format_command(command, output))

    def log_session_start(self, goal: str, target: str) -> None:
        self._write("Session Start", f"Goal: {goal}\nTarget: {target}")

    def log_session_end(self, status: str) -> None:
        self._write("Session End", f"Status: {status}")

    def _write(self, kind: str, detail: str) -> None:
        if self._file.closed:
            return
        try:
            self._logger.info(kind, detail=detail)
        except (OSError, ValueError) as e:
            logger.warning("audit_write_failed", path=str(self._path), error=str(e))

    def close(self) -> None:
        """Close the report file. Safe to call more than once."""
        if not self._file.closed:
            self._file.close()

    def __enter__(self) -> AuditLog:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


class NullAuditLog:
    """Stand-in used when the report file could not be opened."""

    path: Path | None = None

    def log_event(self, kind: str, detail: str) -> None:
        pass

    def log_command(self, command: str, output: str) -> None:
        pass

    def log_session_start(self, goal: str, target: str) -> None:
        pass

    def log_session_end(self, status: str) -> None:
        pass

    def close(self) -> None:
        pass

    def __enter__(self) -> NullAuditLog:
        return self

    def __exit__(self, *exc_info: object) -> None:
        pass


def report_path(report_dir: str | Path, now: datetime | None = None) -> Path:
    """Build a per-session report file name inside report_dir."""
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return Path(report_dir) / f"deepsentry_report_{stamp}.md"


def open_audit_log(report_dir: str | Path) -> AuditLog | NullAuditLog:
    """Open a fresh audit report, degrading to a no-op logger on failure."""
    path = report_path(report_dir)
    try:
        return AuditLog(path)
    except OSError as e:
        logger.warning("audit_log_unavailable", path=str(path), error=str(e))
        return NullAuditLog()
