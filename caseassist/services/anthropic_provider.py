"""ModelProvider adapter for the Anthropic Messages API.

Registered action types are offered to the model as tools; the first
``tool_use`` block of the response becomes the proposed action. The model
never executes anything itself: the proposal goes through the same
confirmation protocol as any other.
"""

import json
import logging
import time
from typing import Any

import anthropic

from caseassist.errors import ModelProviderError, ModelTimeoutError, RateLimitError, TransientProviderError
from caseassist.services.model_provider import (
    ConversationContext,
    ModelTier,
    ModelTurn,
    ProposedAction,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-haiku-4-5"
DEFAULT_MAX_TOKENS = 1024

SYSTEM_PROMPT = """You are the assistant of a law firm's case-management system.
Answer questions about the firm's cases, tasks and documents concisely.
When the user asks for something to be done (create a task, record a deadline,
schedule an event, draft an email, generate a document), call the matching
tool with a complete payload. Calling a tool only proposes the action: the
user must confirm it before anything happens, so say what you are proposing.
Propose at most one action per reply."""

_ROLE_MAP = {"User": "user", "Assistant": "assistant"}


def build_messages(context: ConversationContext) -> list[dict[str, Any]]:
    """Map conversation history to alternating Messages API turns.

    System notes (action outcomes) are passed as bracketed user text.
    Consecutive turns of the same role are merged and leading assistant
    turns are dropped, since the API requires a user turn first.
    """
    messages: list[dict[str, Any]] = []
    for entry in context.history:
        role = _ROLE_MAP.get(entry.role, "user")
        text = entry.content if entry.role in _ROLE_MAP else f"[{entry.content}]"
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += "\n\n" + text
        elif messages or role == "user":
            messages.append({"role": role, "content": text})
    return messages


def build_system_prompt(context: ConversationContext) -> str:
    lines = [SYSTEM_PROMPT]
    if context.case_id:
        lines.append(f"The conversation is about case {context.case_id}.")
    if context.context:
        lines.append("Known context: " + json.dumps(context.context, sort_keys=True))
    return "\n\n".join(lines)


class AnthropicProvider:
    """Generates turns with the Anthropic async client.

    Args:
        model: Model identifier (must be priced).
        tier: Latency tier of the model.
        client: Preconfigured AsyncAnthropic client (created from the
            environment when omitted).
        max_tokens: Completion token cap.
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        tier: ModelTier = ModelTier.fast,
        client: anthropic.AsyncAnthropic | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        self.model = model
        self.tier = tier
        self.max_tokens = max_tokens
        # Retries are the caller's decision (batch runner), not the SDK's
        self._client = client or anthropic.AsyncAnthropic(max_retries=0)

    async def generate(self, context: ConversationContext) -> ModelTurn:
        request: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": build_system_prompt(context),
            "messages": build_messages(context),
        }
        if context.available_actions:
            request["tools"] = context.available_actions

        started = time.monotonic()
        try:
            response = await self._client.messages.create(**request)
        except anthropic.APITimeoutError as e:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            raise ModelTimeoutError(self.model, elapsed_ms) from e
        except anthropic.RateLimitError as e:
            raise RateLimitError(self.model, _retry_after(e)) from e
        except anthropic.APIConnectionError as e:
            raise TransientProviderError(self.model, f"connection error: {e}") from e
        except anthropic.APIStatusError as e:
            if e.status_code >= 500:
                raise TransientProviderError(self.model, f"HTTP {e.status_code}") from e
            raise ModelProviderError(self.model, f"HTTP {e.status_code}: {e.message}") from e
        latency_ms = int((time.monotonic() - started) * 1000)

        text_parts: list[str] = []
        proposal: ProposedAction | None = None
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use" and proposal is None:
                proposal = ProposedAction(action_type=block.name, payload=dict(block.input))
            elif block.type == "tool_use":
                logger.warning("Ignoring extra tool_use block %s from %s", block.name, self.model)

        return ModelTurn(
            text="\n".join(t.strip() for t in text_parts if t.strip()),
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            intent="propose_action" if proposal else "answer",
            proposed_action=proposal,
            latency_ms=latency_ms,
        )


def _retry_after(error: anthropic.RateLimitError) -> float | None:
    """Seconds from the retry-after header, when present and numeric."""
    response = getattr(error, "response", None)
    if response is None:
        return None
    value = response.headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None
