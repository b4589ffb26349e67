"""Approval ledger: a JSONL record of human-approved high-risk commands.

Each line carries the command text and an ISO timestamp. Like the
audit report, the ledger is best-effort and never blocks execution.
"""

from __future__ import annotations

from pathlib import Path
from typing import TextIO

import structlog

logger = structlog.get_logger()


class ApprovalLedger:
    """Append-only JSONL file of operator approvals."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._file: TextIO | None = None
        self._logger: structlog.BoundLogger | None = None

    @property
    def path(self) -> Path:
        return self._path

    def record(self, command: str, reason: str = "") -> None:
        """Append an approval entry for command."""
        try:
            ledger = self._logger or self._open()
            ledger.info("command_approved", command=command, reason=reason)
        except OSError as e:
            logger.warning("approval_ledger_write_failed", path=str(self._path), error=str(e))

    def _open(self) -> structlog.BoundLogger:
        # Opened on first approval so sessions without approvals leave no file
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._path, "a", buffering=1, encoding="utf-8")  # noqa: SIM115
        self._logger = structlog.wrap_logger(
            structlog.PrintLogger(file=self._file),
            processors=[
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.JSONRenderer(),
            ],
        )
        return self._logger

    def close(self) -> None:
        if self._file is not None and not self._file.closed:
            self._file.close()
        self._file = None
        self._logger = None
