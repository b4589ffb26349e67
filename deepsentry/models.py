"""Data model shared by the orchestrator, the safety gate and the proposal source.

Messages form the transcript replayed to the proposal source on every
step. A Proposal is the structured action suggested for one step; it
is parsed from the model's JSON reply and consumed immediately.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator


class Role(str, Enum):
    """Transcript message author."""

    USER = "user"
    ASSISTANT = "assistant"


class RiskLevel(str, Enum):
    """Risk classification attached to a proposed command."""

    LOW = "low"
    HIGH = "high"


class Message(BaseModel):
    """One transcript entry. Immutable once appended."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to the plain dict shape chat APIs expect."""
        return {"role": self.role.value, "content": self.content}


class Proposal(BaseModel):
    """The action suggested by the proposal source for a single step."""

    thought: str = ""
    command: str = ""
    risk_level: RiskLevel | None = None
    reason: str = ""
    is_finished: bool = False
    final_report: str = ""

    @field_validator("thought", "command", "reason", "final_report", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        """Models sometimes emit null for fields they have nothing to say about."""
        return "" if v is None else v

    @field_validator("command", mode="after")
    @classmethod
    def strip_command(cls, v: str) -> str:
        return v.strip()

    @field_validator("risk_level", mode="before")
    @classmethod
    def normalize_risk(cls, v: Any) -> Any:
        """Accept any casing; anything that isn't low/high is treated as unset."""
        if isinstance(v, str):
            v = v.strip().lower()
            if v in (RiskLevel.LOW.value, RiskLevel.HIGH.value):
                return v
            return None
        return v

    @property
    def has_command(self) -> bool:
        """Whether this proposal carries a command to execute."""
        return bool(self.command)


@dataclass(frozen=True)
class SystemContext:
    """Fingerprint of the target machine, passed opaquely to the proposal source."""

    os: str
    arch: str
    username: str
    hostname: str = "unknown"

    def describe(self) -> str:
        """One line summary for prompts and banners."""
        return f"{self.os}/{self.arch} as {self.username}@{self.hostname}"
