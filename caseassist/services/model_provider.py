"""Model-call capability used by the conversation engine.

The engine never talks to an AI SDK directly. It hands a ConversationContext
to a ModelProvider and gets back a ModelTurn: the assistant text, an optional
proposed action and the token counts the ledger needs. ScriptedProvider
replays canned turns and is what the test suite and local demos run on.
"""

import asyncio
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from caseassist.errors import ModelProviderError


class ModelTier(str, Enum):
    """Latency tier of a model; selects the call timeout budget."""

    fast = "fast"
    standard = "standard"
    advanced = "advanced"


@dataclass(frozen=True)
class ProposedAction:
    """Side effect suggested by the assistant, pending confirmation."""

    action_type: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HistoryMessage:
    role: str
    content: str


@dataclass
class ConversationContext:
    """Everything a provider may use to generate the next turn."""

    conversation_id: str
    firm_id: str
    user_id: str
    case_id: str | None
    history: list[HistoryMessage]
    context: dict[str, Any] = field(default_factory=dict)
    available_actions: list[dict[str, Any]] = field(default_factory=list)

    @property
    def last_user_message(self) -> str | None:
        for message in reversed(self.history):
            if message.role == "User":
                return message.content
        return None


@dataclass
class ModelTurn:
    """One generated assistant turn.

    Attributes:
        text: Assistant reply shown to the user.
        input_tokens: Prompt tokens billed for the call.
        output_tokens: Completion tokens billed for the call.
        intent: Classified purpose of the turn.
        confidence: Classifier confidence in [0, 1].
        proposed_action: Action the assistant wants to take, if any.
        latency_ms: Provider-measured latency (engine measures if None).
        context_updates: Entities resolved during the turn, merged into
            the conversation context.
    """

    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    intent: str | None = None
    confidence: float | None = None
    proposed_action: ProposedAction | None = None
    latency_ms: int | None = None
    context_updates: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ModelProvider(Protocol):
    """Generates assistant turns for a conversation."""

    model: str
    tier: ModelTier

    async def generate(self, context: ConversationContext) -> ModelTurn: ...


class ScriptedProvider:
    """Provider that replays queued turns or raises queued errors.

    Args:
        turns: Initial script; exceptions in it are raised when reached.
        model: Model name reported to the ledger.
        tier: Latency tier.
        delay_seconds: Simulated call latency.
    """

    def __init__(
        self,
        turns: Iterable[ModelTurn | Exception] = (),
        model: str = "claude-haiku-4-5",
        tier: ModelTier = ModelTier.fast,
        delay_seconds: float = 0.0,
    ) -> None:
        self.model = model
        self.tier = tier
        self.delay_seconds = delay_seconds
        self._script: deque[ModelTurn | Exception] = deque(turns)
        self.calls: list[ConversationContext] = []

    def enqueue(self, *items: ModelTurn | Exception) -> None:
        self._script.extend(items)

    @property
    def remaining(self) -> int:
        return len(self._script)

    async def generate(self, context: ConversationContext) -> ModelTurn:
        self.calls.append(context)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if not self._script:
            raise ModelProviderError(self.model, "script exhausted")
        item = self._script.popleft()
        if isinstance(item, Exception):
            raise item
        return item
