"""Rich-based terminal interface for DeepSentry.

Shows each step of the loop: the model's thought, the proposed command
and its risk, the (shortened) result and the final report.
"""

from __future__ import annotations

from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from deepsentry.executor.base import ExecutionResult, truncate_for_display
from deepsentry.models import Proposal, RiskLevel, SystemContext


class TerminalUI:
    """Interactive terminal UI using Rich."""

    def __init__(self, console: Console | None = None) -> None:
        self._console = console or Console()

    @property
    def console(self) -> Console:
        return self._console

    def display_banner(self, version: str) -> None:
        """Show the startup banner."""
        banner = Text()
        banner.append("DeepSentry", style="bold cyan")
        banner.append(f" v{version}\n", style="dim")
        banner.append("Autonomous diagnosis and remediation agent", style="")
        self._console.print(Panel(banner, border_style="cyan"))

    def display_session_info(
        self,
        target: str,
        context: SystemContext,
        report_path: Path | None,
        batch_mode: bool,
    ) -> None:
        """Show connection and target details before the loop starts."""
        self._console.print(Rule(style="dim"))
        self._console.print(Text.assemble(("[+] Connection: ", ""), (target, "bold yellow")))
        self._console.print(f"[+] Target system: {context.os} / {context.arch}")
        self._console.print(f"[+] User: {context.username}@{context.hostname}")
        if report_path is not None:
            self._console.print(f"[+] Audit log: {report_path}")
        if batch_mode:
            self._console.print("[bold white on red] UNATTENDED MODE: commands run without confirmation [/]")
        self._console.print(Rule(style="dim"))

    def display_step(self, step: int, max_steps: int) -> None:
        self._console.print()
        self._console.print(Rule(f"Step {step} / {max_steps}", align="left", style="blue"))

    def display_thought(self, thought: str) -> None:
        text = Text("Thought: ", style="bold magenta")
        text.append(thought, style="")
        self._console.print(text)

    def display_command(self, proposal: Proposal, *, batch_mode: bool = False) -> None:
        """Show the proposed command and how the gate will treat it."""
        text = Text("Command: ", style="bold")
        text.append(proposal.command, style="cyan")
        self._console.print(text)

        if batch_mode:
            self._console.print("[yellow]Batch mode: executing automatically[/]")
        elif proposal.risk_level == RiskLevel.LOW:
            self._console.print("[green]Risk: low, executing automatically[/]")
        else:
            reason = Text("Risk: high", style="bold red")
            if proposal.reason:
                reason.append(f" ({proposal.reason})", style="red")
            self._console.print(reason)

    def display_nudge(self, count: int, limit: int) -> None:
        self._console.print(
            f"[yellow]No command given, asking the agent to act [{count}/{limit}][/]"
        )

    def display_refused(self, command: str) -> None:
        text = Text("Refused: ", style="bold red")
        text.append(command)
        self._console.print(text)

    def display_result(self, result: ExecutionResult) -> None:
        """Display a command result, shortened to the display limit."""
        display = truncate_for_display(result.output)
        if result.success:
            self._console.print(
                Panel(Text(display), title="[bold green]✓ Result[/]", border_style="green", padding=(0, 1))
            )
            return

        line = Text("⚠ Execution error: ", style="bold yellow")
        line.append(result.error or "", style="yellow")
        self._console.print(line)
        if result.output.strip():
            self._console.print(
                Panel(Text(display), title="[yellow]Output[/]", border_style="yellow", padding=(0, 1))
            )

    def display_final_report(
        self, report: str, report_path: Path | None, *, stalled: bool = False
    ) -> None:
        """Show the final report and where the audit log lives."""
        if stalled:
            self._console.print("[bold yellow]The agent stopped proposing commands, ending the session.[/]")
        self._console.print()
        self._console.print(
            Panel(
                Text(report),
                title="[bold]Final Report[/]",
                border_style="yellow" if stalled else "cyan",
                padding=(1, 2),
            )
        )
        if report_path is not None:
            self._console.print(f"[dim]Log: {report_path}[/]")

    def display_error(self, message: str) -> None:
        """Display an error message."""
        self._console.print(Text.assemble(("Error: ", "bold red"), message))

    def display_info(self, message: str) -> None:
        """Display an informational message."""
        self._console.print(f"[dim]{message}[/]")
