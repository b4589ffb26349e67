"""CLI entry point for DeepSentry using Click."""

from __future__ import annotations

import asyncio
import os
import sys
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING

import click
import structlog

from deepsentry import __version__
from deepsentry.config import (
    SentryConfig,
    config_exists,
    load_config,
    resolve_config_path,
    save_config,
)

if TYPE_CHECKING:
    from deepsentry.executor.base import ExecutionBackend

logger = structlog.get_logger()

# Setup wizard presets: (label, api_url, default model)
PROVIDER_PRESETS: dict[str, tuple[str, str, str]] = {
    "anthropic": ("Anthropic (official API)", "https://api.anthropic.com", "claude-sonnet-4-5-20250929"),
    "gateway": ("Anthropic-compatible gateway or proxy", "http://localhost:4000", "claude-sonnet-4-5-20250929"),
}

CHOICE_RECONFIGURE = "reconfigure"
CHOICE_LOCAL = "local"
CHOICE_ABORT = "abort"

_LOG_LEVELS = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40}


def _configure_logging(log_level: str) -> None:
    """Configure structlog for console output on stderr."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if sys.stderr.isatty() else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            _LOG_LEVELS.get(log_level.upper(), _LOG_LEVELS["WARNING"])
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# --- Wizards ---


def run_ssh_wizard(config: SentryConfig, *, ask_host: bool) -> SentryConfig:
    """Collect SSH host, user and credentials.

    Args:
        config: Current configuration, used for defaults.
        ask_host: Whether to ask for the host (False right after the setup
            wizard has already asked for it).

    Returns:
        A copy of config with the SSH fields replaced.
    """
    click.echo("\nSSH authentication" if not ask_host else "\nSSH configuration")
    host = config.ssh_host
    if ask_host:
        host = click.prompt("SSH host (host:port)", default=config.ssh_host or "", show_default=bool(config.ssh_host))
    user = click.prompt("SSH user", default=config.ssh_user or "root")
    method = click.prompt(
        "Authentication method",
        type=click.Choice(["password", "key"], case_sensitive=False),
        default="password",
    )

    update: dict[str, object] = {"ssh_host": host, "ssh_user": user}
    if method == "password":
        update["ssh_password"] = click.prompt("Password", hide_input=True)
        update["ssh_key_path"] = None
    else:
        default_key = config.ssh_key_path or str(Path.home() / ".ssh" / "id_rsa")
        update["ssh_key_path"] = click.prompt("Private key path", default=default_key)
        update["ssh_password"] = None

    return SentryConfig(**{**config.model_dump(), **update})


def run_setup_wizard(config: SentryConfig) -> SentryConfig:
    """Interactive first-run configuration.

    Returns:
        The new configuration (not yet saved).
    """
    click.echo("\nDeepSentry setup")
    click.echo("-" * 40)

    provider = click.prompt(
        "AI provider",
        type=click.Choice(list(PROVIDER_PRESETS), case_sensitive=False),
        default="anthropic",
    )
    _, default_url, default_model = PROVIDER_PRESETS[provider]

    api_url = click.prompt("API endpoint", default=default_url)
    model_name = click.prompt("Model", default=default_model)
    api_key = click.prompt(
        "API key (leave empty to use ANTHROPIC_API_KEY)",
        default="",
        show_default=False,
        hide_input=True,
    )
    max_steps = click.prompt("Max steps", default=30, type=int)
    ssh_host = click.prompt(
        "SSH host (host:port, empty for local mode)", default="", show_default=False
    )

    new_config = SentryConfig(
        **{
            **config.model_dump(),
            "api_url": api_url,
            "model_name": model_name,
            "api_key": api_key or None,
            "max_steps": max_steps,
            "ssh_host": ssh_host,
        }
    )
    if new_config.is_remote:
        return run_ssh_wizard(new_config, ask_host=False)
    return new_config.use_local_mode()


def _save(config: SentryConfig, path: Path) -> None:
    try:
        save_config(config, path)
        click.echo(f"Configuration saved to {path}")
    except OSError as e:
        click.echo(f"Warning: could not save configuration: {e}", err=True)


# --- Session ---


async def connect_with_recovery(
    config: SentryConfig, config_path: Path
) -> tuple[ExecutionBackend, SentryConfig]:
    """Open the execution backend, offering recovery on SSH failure.

    On a remote connection failure the operator may reconfigure SSH and
    retry, fall back to local mode, or abort.

    Returns:
        Tuple of (open ExecutionBackend, the configuration that worked).

    Raises:
        click.Abort: If the operator chooses to abort.
        BackendConnectionError: If the failure is not a remote one.
    """
    from deepsentry.executor import BackendConnectionError, init_backend

    while True:
        try:
            backend = await init_backend(config)
            return backend, config
        except BackendConnectionError as e:
            if not config.is_remote:
                raise
            click.echo(f"\nSSH connection failed: {e}", err=True)
            choice = click.prompt(
                "Choose: reconfigure SSH, switch to local mode, or abort",
                type=click.Choice([CHOICE_RECONFIGURE, CHOICE_LOCAL, CHOICE_ABORT]),
                default=CHOICE_RECONFIGURE,
            )
            if choice == CHOICE_RECONFIGURE:
                config = run_ssh_wizard(config, ask_host=True)
                _save(config, config_path)
            elif choice == CHOICE_LOCAL:
                config = config.use_local_mode()
                _save(config, config_path)
            else:
                raise click.Abort() from e


async def run_session(
    config: SentryConfig, config_path: Path, goal: str, batch_mode: bool
) -> int:
    """Connect, run the agent loop and clean up.

    Returns:
        Process exit code: 0 when the session finished, 1 when it aborted.
    """
    from deepsentry.analyzer import LLMProposalSource
    from deepsentry.collector import collect_system_context
    from deepsentry.orchestrator import LoopState, Orchestrator
    from deepsentry.security import ApprovalLedger, SafetyGate, confirm_on_terminal, open_audit_log
    from deepsentry.ui.terminal import TerminalUI

    ui = TerminalUI()
    backend, config = await connect_with_recovery(config, config_path)

    async with backend:
        if batch_mode:
            ui.console.print("\n[bold white on red] WARNING: unattended (batch) mode requested [/]")
            if not click.confirm("Run with every command executed without confirmation?", default=False):
                return 1

        audit = open_audit_log(config.report_dir)
        ledger = ApprovalLedger(config.approval_ledger_path)
        try:
            ui.display_info("Collecting system fingerprint...")
            context = await collect_system_context(backend)
            ui.display_session_info(backend.target, context, audit.path, batch_mode)
            audit.log_session_start(goal, backend.target)

            gate = SafetyGate(
                partial(confirm_on_terminal, console=ui.console),
                batch_mode=batch_mode,
                ledger=ledger,
                audit=audit,
            )
            orchestrator = Orchestrator(
                source=LLMProposalSource(config, remote=backend.is_remote),
                backend=backend,
                gate=gate,
                audit=audit,
                ui=ui,
                context=context,
                max_steps=config.max_steps,
            )
            outcome = await orchestrator.run(goal)
            audit.log_session_end(f"{outcome.state.value} ({outcome.reason.value})")
        finally:
            audit.close()
            ledger.close()

    return 0 if outcome.state == LoopState.FINISHED else 1


@click.group()
@click.version_option(version=__version__, prog_name="deepsentry")
def cli() -> None:
    """DeepSentry - AI-driven diagnosis and remediation for local or SSH targets."""


@cli.command()
@click.argument("goal", nargs=-1)
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to config file. Defaults to DEEPSENTRY_CONFIG env or ./config.yaml",
)
@click.option("--batch", is_flag=True, default=False, help="Unattended mode: never ask before executing.")
@click.option("--init", "reinit", is_flag=True, default=False, help="Run the setup wizard first.")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level. Defaults to DEEPSENTRY_LOG_LEVEL env or WARNING.",
)
def run(
    goal: tuple[str, ...],
    config_file: str | None,
    batch: bool,
    reinit: bool,
    log_level: str | None,
) -> None:
    """Diagnose and fix GOAL on the configured target."""
    _configure_logging(log_level or os.environ.get("DEEPSENTRY_LOG_LEVEL", "WARNING"))
    config_path = resolve_config_path(config_file)

    try:
        config = load_config(config_path)
    except Exception as e:
        click.echo(f"Error: failed to load configuration {config_path}: {e}", err=True)
        sys.exit(1)

    if reinit or not config_exists(config_path):
        click.echo("No configuration found or re-initialisation requested, starting setup.")
        config = run_setup_wizard(config)
        _save(config, config_path)
    else:
        click.echo(f"Loaded configuration: {config_path}")

    if not config.resolved_api_key:
        click.echo("Error: no API key configured and ANTHROPIC_API_KEY is not set.", err=True)
        sys.exit(1)

    user_goal = " ".join(goal).strip()
    if not user_goal:
        user_goal = click.prompt("What should I look into?", default="", show_default=False).strip()
    if not user_goal:
        click.echo("Error: no goal given.", err=True)
        sys.exit(1)

    from deepsentry.executor import BackendConnectionError
    from deepsentry.ui.terminal import TerminalUI

    TerminalUI().display_banner(__version__)
    try:
        code = asyncio.run(run_session(config, config_path, user_goal, batch))
    except click.Abort:
        click.echo("Aborted.", err=True)
        sys.exit(1)
    except BackendConnectionError as e:
        click.echo(f"Error: failed to initialise execution backend: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nSession interrupted.")
        sys.exit(130)
    sys.exit(code)


@cli.command()
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to config file.",
)
def init(config_file: str | None) -> None:
    """Run the setup wizard and save the configuration."""
    config_path = resolve_config_path(config_file)
    try:
        current = load_config(config_path)
    except Exception:
        current = SentryConfig()
    _save(run_setup_wizard(current), config_path)


@cli.command()
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to config file.",
)
def check_config(config_file: str | None) -> None:
    """Validate the configuration file without starting a session."""
    config_path = resolve_config_path(config_file)
    if not config_exists(config_path):
        click.echo(f"FAIL: configuration file not found: {config_path}", err=True)
        sys.exit(1)

    try:
        config = load_config(config_path)
    except Exception as e:
        click.echo(f"FAIL: {e}", err=True)
        sys.exit(1)

    click.echo("Configuration OK")
    click.echo(f"  Endpoint: {config.api_url}")
    click.echo(f"  Model: {config.model_name}")
    click.echo(f"  API key: {'set' if config.resolved_api_key else 'MISSING'}")
    click.echo(f"  Max steps: {config.max_steps}")
    if config.is_remote:
        auth = "key" if config.ssh_key_path else "password"
        click.echo(f"  Mode: remote ({config.ssh_user}@{config.ssh_host}, {auth} auth)")
    else:
        click.echo("  Mode: local")
    click.echo(f"  Reports: {config.report_dir}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
