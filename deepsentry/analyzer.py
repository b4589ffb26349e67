"""Anthropic API proposal source.

Sends the transcript to the model with the system prompt and parses the
reply into a Proposal. API failures and malformed replies surface as
ProposalError; the orchestrator treats either as fatal to the session.
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Sequence
from typing import Any

import anthropic
import structlog
from pydantic import ValidationError

from deepsentry.config import SentryConfig
from deepsentry.models import Message, Proposal, SystemContext
from deepsentry.orchestrator import ProposalError
from deepsentry.prompts import build_system_prompt

logger = structlog.get_logger()

_RATE_LIMIT_MAX_RETRIES = 3
_RATE_LIMIT_BASE_DELAY = 2.0  # seconds

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class LLMProposalSource:
    """Proposal source backed by the Anthropic Messages API."""

    def __init__(
        self,
        config: SentryConfig,
        *,
        remote: bool = False,
        client: anthropic.Anthropic | None = None,
    ) -> None:
        """Initialize the proposal source.

        Args:
            config: Model name, endpoint, key and token budget.
            remote: Whether the target is reached over SSH (prompt wording).
            client: Pre-built SDK client, mainly for tests.
        """
        self._config = config
        self._remote = remote
        self._client = client or anthropic.Anthropic(
            api_key=config.resolved_api_key,
            base_url=config.api_url,
        )

    async def propose(
        self, transcript: Sequence[Message], context: SystemContext
    ) -> Proposal:
        """Ask the model for the next step.

        Raises:
            ProposalError: On API failure or if the reply is not a valid proposal.
        """
        system_prompt = build_system_prompt(context, remote=self._remote)
        messages = to_api_messages(transcript)

        try:
            response = await self._api_call_with_retry(system_prompt, messages)
        except anthropic.APIError as e:
            logger.error("api_error", error=str(e))
            raise ProposalError(f"API error: {e}") from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        return parse_proposal(text)

    async def _api_call_with_retry(
        self, system_prompt: str, messages: list[dict[str, Any]]
    ) -> anthropic.types.Message:
        """Call the API, retrying with exponential backoff on rate limits.

        The synchronous SDK call runs in a thread executor so the event
        loop stays responsive.
        """
        loop = asyncio.get_running_loop()

        def _sync_create() -> anthropic.types.Message:
            return self._client.messages.create(
                model=self._config.model_name,
                max_tokens=self._config.max_tokens,
                system=system_prompt,
                messages=messages,
            )

        for attempt in range(_RATE_LIMIT_MAX_RETRIES + 1):
            try:
                return await loop.run_in_executor(None, _sync_create)
            except anthropic.RateLimitError:
                if attempt >= _RATE_LIMIT_MAX_RETRIES:
                    raise
                delay = _RATE_LIMIT_BASE_DELAY * (2 ** attempt)
                logger.warning("rate_limited", attempt=attempt + 1, retry_in=delay)
                await asyncio.sleep(delay)
        # unreachable, but keeps type checkers happy
        raise RuntimeError("retry loop exited unexpectedly")


def to_api_messages(transcript: Sequence[Message]) -> list[dict[str, Any]]:
    """Convert the transcript to API messages.

    Consecutive messages from the same role are joined, since the API
    requires strict user/assistant alternation. The transcript itself is
    left untouched.
    """
    messages: list[dict[str, Any]] = []
    for message in transcript:
        entry = message.to_dict()
        if messages and messages[-1]["role"] == entry["role"]:
            messages[-1]["content"] += "\n\n" + entry["content"]
        else:
            messages.append(entry)
    return messages


def parse_proposal(text: str) -> Proposal:
    """Parse the model's reply into a Proposal.

    Tolerates Markdown code fences and prose around the JSON object.

    Raises:
        ProposalError: If no valid JSON proposal can be extracted.
    """
    cleaned = _FENCE_RE.sub("", text.strip())
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start == -1 or end <= start:
        raise ProposalError(f"Reply contains no JSON object: {text[:200]!r}")

    try:
        data = json.loads(cleaned[start : end + 1])
    except json.JSONDecodeError as e:
        raise ProposalError(f"Reply is not valid JSON: {e}") from e

    try:
        return Proposal.model_validate(data)
    except ValidationError as e:
        raise ProposalError(f"Reply does not match the proposal schema: {e}") from e
