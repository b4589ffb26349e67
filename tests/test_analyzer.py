"""Tests for the proposal model, reply parsing and the Anthropic proposal source."""

from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import anthropic
import httpx
import pytest

from deepsentry.analyzer import LLMProposalSource, parse_proposal, to_api_messages
from deepsentry.config import SentryConfig
from deepsentry.models import Message, Proposal, RiskLevel, Role, SystemContext
from deepsentry.orchestrator import ProposalError
from deepsentry.prompts import build_system_prompt

CONTEXT = SystemContext(os="linux", arch="aarch64", username="ops", hostname="edge-1")


class TestProposalModel:
    """Tests for Proposal validation."""

    def test_defaults(self) -> None:
        p = Proposal()
        assert p.command == ""
        assert p.risk_level is None
        assert p.is_finished is False
        assert p.has_command is False

    @pytest.mark.parametrize("raw,expected", [("low", RiskLevel.LOW), ("HIGH", RiskLevel.HIGH), (" Low ", RiskLevel.LOW)])
    def test_risk_normalized(self, raw: str, expected: RiskLevel) -> None:
        assert Proposal(command="x", risk_level=raw).risk_level == expected

    @pytest.mark.parametrize("raw", ["", "medium", "unknown"])
    def test_unknown_risk_is_unset(self, raw: str) -> None:
        assert Proposal(command="x", risk_level=raw).risk_level is None

    def test_null_fields_become_empty(self) -> None:
        p = Proposal.model_validate({"thought": None, "command": None, "final_report": None})
        assert p.thought == ""
        assert p.command == ""

    def test_whitespace_command_is_empty(self) -> None:
        assert Proposal(command="   ").has_command is False


class TestParseProposal:
    """Tests for turning model replies into proposals."""

    def test_plain_json(self) -> None:
        p = parse_proposal('{"thought": "t", "command": "uptime", "risk_level": "low"}')
        assert p.command == "uptime"
        assert p.risk_level == RiskLevel.LOW

    def test_code_fence(self) -> None:
        p = parse_proposal('```json\n{"thought": "t", "command": "df -h", "risk_level": "low"}\n```')
        assert p.command == "df -h"

    def test_surrounding_prose(self) -> None:
        p = parse_proposal('Sure, here you go:\n{"is_finished": true, "final_report": "ok"}\nThanks')
        assert p.is_finished is True
        assert p.final_report == "ok"

    def test_no_json(self) -> None:
        with pytest.raises(ProposalError, match="no JSON"):
            parse_proposal("I think the disk is full.")

    def test_invalid_json(self) -> None:
        with pytest.raises(ProposalError, match="not valid JSON"):
            parse_proposal('{"thought": "unterminated}')

    def test_schema_violation(self) -> None:
        with pytest.raises(ProposalError, match="schema"):
            parse_proposal('{"is_finished": "perhaps"}')


class TestApiMessages:
    """Tests for transcript conversion."""

    def test_alternating_messages_unchanged(self) -> None:
        transcript = [
            Message(role=Role.USER, content="Goal: x"),
            Message(role=Role.ASSISTANT, content='{"command": "uptime"}'),
            Message(role=Role.USER, content="Output:\nup"),
        ]
        assert to_api_messages(transcript) == [m.to_dict() for m in transcript]

    def test_consecutive_user_messages_merged(self) -> None:
        transcript = (
            Message(role=Role.USER, content="Goal: x"),
            Message(role=Role.USER, content="The user refused."),
        )
        messages = to_api_messages(transcript)
        assert messages == [{"role": "user", "content": "Goal: x\n\nThe user refused."}]
        assert transcript[0].content == "Goal: x"


def _response(text: str) -> SimpleNamespace:
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)])


class TestLLMProposalSource:
    """Tests for the Anthropic-backed proposal source with a fake client."""

    @pytest.mark.asyncio
    async def test_propose(self) -> None:
        client = MagicMock()
        reply = {"thought": "check load", "command": "uptime", "risk_level": "low", "reason": "read-only"}
        client.messages.create.return_value = _response(json.dumps(reply))
        source = LLMProposalSource(SentryConfig(model_name="test-model", max_tokens=512), client=client)

        transcript = [Message(role=Role.USER, content="Goal: load is high")]
        proposal = await source.propose(transcript, CONTEXT)

        assert proposal.command == "uptime"
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["max_tokens"] == 512
        assert kwargs["messages"] == [{"role": "user", "content": "Goal: load is high"}]
        assert "aarch64" in kwargs["system"]

    @pytest.mark.asyncio
    async def test_api_error_becomes_proposal_error(self) -> None:
        client = MagicMock()
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        client.messages.create.side_effect = anthropic.APIConnectionError(request=request)
        source = LLMProposalSource(SentryConfig(), client=client)

        with pytest.raises(ProposalError, match="API error"):
            await source.propose([Message(role=Role.USER, content="Goal: x")], CONTEXT)

    @pytest.mark.asyncio
    async def test_malformed_reply(self) -> None:
        client = MagicMock()
        client.messages.create.return_value = _response("no idea")
        source = LLMProposalSource(SentryConfig(), client=client)
        with pytest.raises(ProposalError):
            await source.propose([Message(role=Role.USER, content="Goal: x")], CONTEXT)


class TestSystemPrompt:
    def test_includes_context_and_format(self) -> None:
        prompt = build_system_prompt(CONTEXT, remote=True)
        assert "ops" in prompt
        assert "edge-1" in prompt
        assert "remote (SSH)" in prompt
        assert '"is_finished"' in prompt
