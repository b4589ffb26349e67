"""Risk gate deciding whether a proposed command may run.

Policy, in order:

1. Unattended (batch) mode executes everything without asking.
2. ``low`` risk commands execute without asking.
3. Anything else (``high`` or unset) needs an explicit yes from the
   operator. A no, a cancelled prompt or a broken prompt all mean skip.

Approvals of high-risk commands are written to the approval ledger.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum

import structlog
from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from deepsentry.models import Proposal, RiskLevel
from deepsentry.security.audit import AuditLog, NullAuditLog
from deepsentry.security.ledger import ApprovalLedger

logger = structlog.get_logger()

Confirmer = Callable[[str], Awaitable[bool]]


class Decision(str, Enum):
    """Outcome of the risk gate for one proposal."""

    EXECUTE = "execute"
    SKIP = "skip"


class SafetyGate:
    """Classifies proposed commands and asks the operator when needed."""

    def __init__(
        self,
        confirm: Confirmer,
        *,
        batch_mode: bool = False,
        ledger: ApprovalLedger | None = None,
        audit: AuditLog | NullAuditLog | None = None,
    ) -> None:
        """Initialize the gate.

        Args:
            confirm: Async yes/no prompt. Only a literal True approves.
            batch_mode: Unattended mode; every command executes unprompted.
                Callers must opt into this explicitly.
            ledger: Where human approvals are recorded.
            audit: Session audit report.
        """
        self._confirm = confirm
        self._batch_mode = batch_mode
        self._ledger = ledger
        self._audit = audit

    @property
    def batch_mode(self) -> bool:
        return self._batch_mode

    async def decide(self, proposal: Proposal) -> Decision:
        """Decide whether proposal's command may execute.

        Args:
            proposal: A proposal with a non-empty command.

        Returns:
            Decision.EXECUTE or Decision.SKIP.
        """
        command = proposal.command

        if self._batch_mode:
            logger.info("gate_batch_execute", command=command)
            return Decision.EXECUTE

        if proposal.risk_level == RiskLevel.LOW:
            logger.info("gate_low_risk_execute", command=command)
            return Decision.EXECUTE

        reason = proposal.reason or "no reason given"
        question = f"High risk ({reason}). Execute `{command}`?"
        approved = await self._ask(question, command)

        if not approved:
            logger.info("approval_denied", command=command)
            self._record_audit("Refused", f"Command: {command}\nReason: {reason}")
            return Decision.SKIP

        logger.info("approval_granted", command=command)
        if self._ledger is not None:
            self._ledger.record(command, reason)
        self._record_audit("Approved", f"Command: {command}\nReason: {reason}")
        return Decision.EXECUTE

    async def _ask(self, question: str, command: str) -> bool:
        """Run the confirmation prompt; any failure counts as a refusal."""
        try:
            answer = await self._confirm(question)
        except (Exception, KeyboardInterrupt) as e:
            logger.warning("approval_prompt_failed", command=command, error=repr(e))
            return False
        return answer is True

    def _record_audit(self, kind: str, detail: str) -> None:
        if self._audit is not None:
            self._audit.log_event(kind, detail)


async def confirm_on_terminal(question: str, console: Console | None = None) -> bool:
    """Ask the operator a yes/no question on the terminal.

    Args:
        question: The question, including the command and the stated reason.
        console: Rich console for display (optional).

    Returns:
        True only for an explicit "y"/"yes".
    """
    con = console or Console()
    con.print(
        Panel(
            Text(question),
            title="[bold red]Approval Required[/]",
            border_style="red",
        )
    )

    # Run the blocking input() in a thread so we don't block the event loop
    loop = asyncio.get_running_loop()
    try:
        response = await loop.run_in_executor(
            None,
            lambda: input("Execute this command? [y/N]: ").strip().lower(),
        )
    except (EOFError, KeyboardInterrupt):
        con.print("[red]Approval denied (no input).[/]")
        return False

    approved = response in ("y", "yes")
    if approved:
        con.print("[green]Approved.[/]")
    else:
        con.print("[red]Denied.[/]")
    return approved
