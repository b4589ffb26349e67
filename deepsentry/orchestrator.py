"""The agent loop: proposal, risk decision, execution, observation.

Each step asks the proposal source for the next action given the full
transcript, records it to the audit report, lets the safety gate decide
whether the command may run, runs it on the backend and feeds the
output back into the transcript. The loop ends when the proposal source
declares the task finished, when it stops proposing commands three
times in a row (a stall), when the step bound is exhausted, or when the
proposal source fails.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import structlog

from deepsentry.executor.base import ExecutionBackend, ExecutionResult
from deepsentry.models import Message, Proposal, Role, SystemContext
from deepsentry.security.audit import AuditLog, NullAuditLog
from deepsentry.security.gate import Decision, SafetyGate

logger = structlog.get_logger()

STALL_LIMIT = 3

NUDGE_MESSAGE = (
    "System warning: no 'command' was given. Execute a concrete shell command "
    "to verify your hypothesis, or set 'is_finished' to true if the task is done."
)
REFUSED_MESSAGE = "The user refused to execute this command. Try an alternative approach."


class ProposalError(Exception):
    """Raised by a proposal source when it cannot produce a valid proposal."""


class ProposalSource(Protocol):
    """Turns the transcript into the next proposed action."""

    async def propose(
        self, transcript: Sequence[Message], context: SystemContext
    ) -> Proposal:
        """Return the next proposal.

        Raises:
            ProposalError: On API failure or a malformed reply.
        """
        ...


class LoopState(str, Enum):
    """States of the step state machine."""

    RUNNING = "running"
    AWAITING_PROPOSAL = "awaiting_proposal"
    FINISHED = "finished"
    ABORTED = "aborted"


class FinishReason(str, Enum):
    """Why the loop reached a terminal state."""

    COMPLETED = "completed"
    STALLED = "stalled"
    STEP_LIMIT = "step_limit"
    PROPOSAL_ERROR = "proposal_error"
    CANCELLED = "cancelled"


@dataclass
class SessionState:
    """Mutable per-session counters, owned by one Orchestrator run."""

    max_steps: int
    step_count: int = 0
    consecutive_empty_count: int = 0
    state: LoopState = LoopState.RUNNING
    last_thought: str = ""

    @property
    def steps_exhausted(self) -> bool:
        return self.step_count >= self.max_steps


@dataclass(frozen=True)
class SessionOutcome:
    """Result of a finished or aborted session."""

    state: LoopState
    reason: FinishReason
    steps: int
    report: str = ""
    error: str | None = None
    transcript: tuple[Message, ...] = field(default_factory=tuple)

    @property
    def succeeded(self) -> bool:
        return self.reason == FinishReason.COMPLETED


class Orchestrator:
    """Drives one diagnosis session against one backend."""

    def __init__(
        self,
        *,
        source: ProposalSource,
        backend: ExecutionBackend,
        gate: SafetyGate,
        audit: AuditLog | NullAuditLog,
        ui: Any,
        context: SystemContext,
        max_steps: int = 30,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            source: Proposal source (normally the LLM client).
            backend: Open execution backend; the caller owns its lifetime.
            gate: Risk gate deciding execution eligibility.
            audit: Session audit report.
            ui: Display sink (TerminalUI) - must implement display_step,
                display_thought, display_command, display_nudge,
                display_refused, display_result, display_final_report,
                display_error.
            context: System fingerprint handed to the proposal source.
            max_steps: Upper bound on proposals requested this session.
        """
        if max_steps <= 0:
            raise ValueError("max_steps must be positive")
        self._source = source
        self._backend = backend
        self._gate = gate
        self._audit = audit
        self._ui = ui
        self._context = context
        self._state = SessionState(max_steps=max_steps)
        self._transcript: list[Message] = []
        self._cancel_event: asyncio.Event | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def transcript(self) -> tuple[Message, ...]:
        """Snapshot of the conversation so far."""
        return tuple(self._transcript)

    def set_cancel_event(self, event: asyncio.Event) -> None:
        """Stop the loop before the next step once event is set."""
        self._cancel_event = event

    def _append(self, role: Role, content: str) -> None:
        self._transcript.append(Message(role=role, content=content))

    async def run(self, goal: str) -> SessionOutcome:
        """Run the loop for goal until a terminal state is reached.

        Args:
            goal: The operator's request, seeded as the first user message.

        Returns:
            SessionOutcome describing how the session ended.
        """
        if self._transcript:
            raise RuntimeError("Orchestrator.run() may only be called once per session")

        self._append(Role.USER, f"Goal: {goal}")
        state = self._state

        while not state.steps_exhausted:
            if self._cancel_event is not None and self._cancel_event.is_set():
                logger.info("session_cancelled", step=state.step_count)
                return self._abort(FinishReason.CANCELLED, "Cancelled by user.")

            state.step_count += 1
            self._ui.display_step(state.step_count, state.max_steps)

            state.state = LoopState.AWAITING_PROPOSAL
            try:
                proposal = await self._source.propose(self.transcript, self._context)
            except ProposalError as e:
                logger.error("proposal_failed", step=state.step_count, error=str(e))
                self._ui.display_error(f"Proposal source error: {e}")
                return self._abort(FinishReason.PROPOSAL_ERROR, str(e))
            state.state = LoopState.RUNNING

            outcome = await self._step(proposal)
            if outcome is not None:
                return outcome

        logger.warning("max_steps_reached", limit=state.max_steps)
        report = (
            f"Step limit reached ({state.max_steps} steps) before the task finished.\n"
            f"Last thought: {state.last_thought or '(none)'}"
        )
        return self._finish(FinishReason.STEP_LIMIT, report)

    async def _step(self, proposal: Proposal) -> SessionOutcome | None:
        """Apply one proposal. Returns an outcome when the session ends."""
        state = self._state
        state.last_thought = proposal.thought

        self._audit.log_event(
            "AI Thought", f"Thought: {proposal.thought}\nCommand: {proposal.command}"
        )
        if proposal.thought:
            self._ui.display_thought(proposal.thought)

        if proposal.is_finished:
            report = proposal.final_report.strip() or (
                f"Task complete. Summary: {proposal.thought}"
            )
            return self._finish(FinishReason.COMPLETED, report)

        if not proposal.has_command:
            state.consecutive_empty_count += 1
            if state.consecutive_empty_count >= STALL_LIMIT:
                logger.warning("session_stalled", step=state.step_count)
                report = proposal.final_report.strip() or (
                    "Aborted: the agent repeatedly failed to propose a command.\n"
                    f"Last thought: {proposal.thought}"
                )
                return self._finish(FinishReason.STALLED, report)

            self._ui.display_nudge(state.consecutive_empty_count, STALL_LIMIT)
            self._append(
                Role.ASSISTANT,
                json.dumps(
                    {"thought": proposal.thought, "command": "", "is_finished": False},
                    ensure_ascii=False,
                ),
            )
            self._append(Role.USER, NUDGE_MESSAGE)
            return None

        state.consecutive_empty_count = 0
        command = proposal.command
        self._ui.display_command(proposal, batch_mode=self._gate.batch_mode)

        decision = await self._gate.decide(proposal)
        if decision == Decision.SKIP:
            self._ui.display_refused(command)
            self._append(Role.USER, REFUSED_MESSAGE)
            return None

        result = await self._backend.run(command)
        logger.info(
            "command_executed",
            step=state.step_count,
            command=command,
            exit_code=result.exit_code,
            output_chars=len(result.output),
        )
        self._ui.display_result(result)
        self._audit.log_command(command, result.output)

        self._append(Role.ASSISTANT, json.dumps({"command": command}, ensure_ascii=False))
        self._append(Role.USER, format_observation(result))
        return None

    def _finish(self, reason: FinishReason, report: str) -> SessionOutcome:
        self._state.state = LoopState.FINISHED
        self._audit.log_event("Final Report", report)
        self._ui.display_final_report(report, self._audit.path, stalled=reason == FinishReason.STALLED)
        logger.info("session_finished", reason=reason.value, steps=self._state.step_count)
        return SessionOutcome(
            state=LoopState.FINISHED,
            reason=reason,
            steps=self._state.step_count,
            report=report,
            transcript=self.transcript,
        )

    def _abort(self, reason: FinishReason, error: str) -> SessionOutcome:
        self._state.state = LoopState.ABORTED
        self._audit.log_event("Aborted", error)
        return SessionOutcome(
            state=LoopState.ABORTED,
            reason=reason,
            steps=self._state.step_count,
            error=error,
            transcript=self.transcript,
        )


def format_observation(result: ExecutionResult) -> str:
    """Build the user message that carries a command's full output."""
    text = f"Output:\n{result.output}" if result.output else "Output:\n(no output)"
    if result.error:
        text += f"\nError: {result.error}"
    return text
