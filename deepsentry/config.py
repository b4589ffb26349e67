"""Configuration loading and validation using Pydantic models.

Loads the DeepSentry configuration from a single YAML file. A missing
file yields defaults (local mode) so the CLI can run the setup wizard
and persist the answers with ``save_config``.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = "./config.yaml"
DEFAULT_MAX_STEPS = 30
DEFAULT_SSH_PORT = 22


class SentryConfig(BaseModel):
    """Top-level configuration loaded from config.yaml."""

    # Proposal source
    api_url: str = "https://api.anthropic.com"
    model_name: str = "claude-sonnet-4-5-20250929"
    api_key: str | None = None
    max_tokens: int = Field(default=2048, ge=1, le=8192)

    # Session bounds
    max_steps: int = DEFAULT_MAX_STEPS

    # Execution backend. An empty ssh_host means local mode.
    ssh_host: str = ""
    ssh_user: str = "root"
    ssh_password: str | None = None
    ssh_key_path: str | None = None
    known_hosts_path: str | None = None
    connect_timeout: int = Field(default=10, ge=1, le=120)
    command_timeout: int | None = Field(default=None, ge=1)

    # Audit artifacts
    report_dir: str = "./logs"
    approval_ledger_path: str = "./logs/approvals.jsonl"

    @field_validator("max_steps", mode="before")
    @classmethod
    def default_max_steps(cls, v: Any) -> int:
        """Unset, blank or non-positive step bounds fall back to the default."""
        if v is None or v == "":
            return DEFAULT_MAX_STEPS
        try:
            steps = int(v)
        except (TypeError, ValueError):
            return DEFAULT_MAX_STEPS
        return steps if steps > 0 else DEFAULT_MAX_STEPS

    @field_validator("ssh_key_path", "known_hosts_path")
    @classmethod
    def expand_path(cls, v: str | None) -> str | None:
        """Expand ~ in key paths to the actual home directory."""
        if v:
            return str(Path(v).expanduser())
        return None

    @field_validator("ssh_host")
    @classmethod
    def strip_host(cls, v: str | None) -> str:
        return (v or "").strip()

    @property
    def is_remote(self) -> bool:
        """Whether an SSH target is configured."""
        return bool(self.ssh_host)

    @property
    def ssh_endpoint(self) -> tuple[str, int]:
        """Split ``ssh_host`` into (host, port), defaulting the port to 22.

        Raises:
            ValueError: If no SSH host is configured or the port is invalid.
        """
        if not self.ssh_host:
            raise ValueError("No SSH host configured (local mode).")
        value = self.ssh_host
        if value.startswith("["):
            # [ipv6]:port
            host, _, rest = value[1:].partition("]")
            port = rest.lstrip(":")
        elif value.count(":") == 1:
            host, port = value.split(":")
        else:
            # Bare host, or an unbracketed IPv6 literal
            host, port = value, ""
        if not port:
            return host, DEFAULT_SSH_PORT
        if not port.isdigit():
            raise ValueError(f"Invalid SSH port in {value!r}")
        return host, int(port)

    @property
    def resolved_api_key(self) -> str | None:
        """The configured API key, or ANTHROPIC_API_KEY from the environment."""
        if self.api_key and self.api_key != "none":
            return self.api_key
        return os.environ.get("ANTHROPIC_API_KEY")

    def use_local_mode(self) -> SentryConfig:
        """Return a copy with every SSH setting cleared."""
        return self.model_copy(
            update={"ssh_host": "", "ssh_password": None, "ssh_key_path": None}
        )


def resolve_config_path(config_path: str | None) -> Path:
    """Pick the config file: explicit flag, DEEPSENTRY_CONFIG env, then ./config.yaml."""
    return Path(config_path or os.environ.get("DEEPSENTRY_CONFIG", DEFAULT_CONFIG_PATH))


def config_exists(path: str | Path) -> bool:
    """Whether a configuration file is present at path."""
    return Path(path).is_file()


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load and parse a YAML file, returning an empty dict if missing."""
    if not path.exists():
        return {}
    with open(path) as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def load_config(path: str | Path) -> SentryConfig:
    """Load configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        The validated configuration (defaults when the file is missing).

    Raises:
        yaml.YAMLError: If the file is not valid YAML.
        pydantic.ValidationError: If the file has invalid content.
    """
    return SentryConfig(**_load_yaml(Path(path)))


def save_config(config: SentryConfig, path: str | Path) -> Path:
    """Write configuration to a YAML file, creating parent directories.

    The file may contain an SSH password or API key, so it is created
    readable by the owner only.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="json", exclude_none=True)
    fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        yaml.safe_dump(data, f, sort_keys=False)
    return target
