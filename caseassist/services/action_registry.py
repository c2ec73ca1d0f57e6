"""Registry of executable assistant actions.

Maps an action type name to its payload schema (a pydantic model), the
async executor that performs the real domain side effect, and an optional
builder for the confirmation prompt shown to the user. Registration happens
once at process start; the conversation engine validates every proposal
against the registry before a user is asked to confirm it.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ValidationError

from caseassist.errors import InvalidActionPayloadError, UnknownActionTypeError
from caseassist.utils.redaction import redact_payload, sanitize_error_message

logger = logging.getLogger(__name__)

EXECUTOR_ERROR = "executor_error"


@dataclass(frozen=True)
class ExecutionContext:
    """Who and what an action is executed for."""

    firm_id: str
    user_id: str
    conversation_id: str
    message_id: str
    case_id: str | None = None


@dataclass(frozen=True)
class ExecutorOutcome:
    """Result returned by an executor.

    Attributes:
        ok: Whether the side effect took place.
        reason_code: Machine-readable failure code (None on success).
        message: Human-readable summary or failure reason.
        entity_type: Type of the entity created or changed, if any.
        entity_id: Id of the entity created or changed, if any.
    """

    ok: bool
    reason_code: str | None = None
    message: str = ""
    entity_type: str | None = None
    entity_id: str | None = None

    @classmethod
    def success(
        cls,
        message: str = "",
        entity_type: str | None = None,
        entity_id: str | None = None,
    ) -> "ExecutorOutcome":
        return cls(ok=True, message=message, entity_type=entity_type, entity_id=entity_id)

    @classmethod
    def failure(cls, reason_code: str, message: str) -> "ExecutorOutcome":
        return cls(ok=False, reason_code=reason_code, message=message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "reason_code": self.reason_code,
            "message": self.message,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
        }


Executor = Callable[[BaseModel, ExecutionContext], Awaitable[ExecutorOutcome]]
Describer = Callable[[BaseModel], str]


@dataclass(frozen=True)
class ActionSpec:
    """Registration of one action type."""

    action_type: str
    payload_model: type[BaseModel]
    executor: Executor
    description: str = ""
    describe: Describer | None = field(default=None, compare=False)


class ActionRegistry:
    """Static lookup from action type to its ActionSpec."""

    def __init__(self, specs: list[ActionSpec] | None = None) -> None:
        self._specs: dict[str, ActionSpec] = {}
        for spec in specs or []:
            self.register(spec)

    def register(self, spec: ActionSpec) -> None:
        """Register an action type.

        Raises:
            ValueError: If the action type is already registered.
        """
        if spec.action_type in self._specs:
            raise ValueError(f"Action type already registered: {spec.action_type}")
        self._specs[spec.action_type] = spec
        logger.debug("Registered action type %s", spec.action_type)

    def __contains__(self, action_type: str) -> bool:
        return action_type in self._specs

    def action_types(self) -> list[str]:
        return sorted(self._specs)

    def get(self, action_type: str) -> ActionSpec:
        """Look up an action type.

        Raises:
            UnknownActionTypeError: If the type is not registered.
        """
        spec = self._specs.get(action_type)
        if spec is None:
            raise UnknownActionTypeError(action_type)
        return spec

    def validate(self, action_type: str, payload: dict[str, Any] | None) -> BaseModel:
        """Validate a raw payload against the registered schema.

        Args:
            action_type: Proposed action type.
            payload: Raw payload from the model or the caller.

        Returns:
            The validated payload model instance.

        Raises:
            UnknownActionTypeError: If the type is not registered.
            InvalidActionPayloadError: If the payload does not match.
        """
        spec = self.get(action_type)
        try:
            return spec.payload_model.model_validate(payload or {})
        except ValidationError as e:
            reasons = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
                for err in e.errors()
            )
            raise InvalidActionPayloadError(action_type, reasons) from e

    def describe(self, action_type: str, payload: BaseModel) -> str:
        """Build the confirmation prompt for a validated payload."""
        spec = self.get(action_type)
        if spec.describe is not None:
            return spec.describe(payload)
        return spec.description or action_type

    async def execute(
        self, action_type: str, payload: BaseModel, context: ExecutionContext
    ) -> ExecutorOutcome:
        """Run the executor for a validated payload.

        Executor exceptions never escape: they are logged and returned as
        a failed outcome with reason code ``executor_error``.
        """
        spec = self.get(action_type)
        try:
            outcome = await spec.executor(payload, context)
        except Exception as e:
            logger.exception(
                "Executor for %s crashed (message %s, payload %s)",
                action_type,
                context.message_id,
                redact_payload(payload),
            )
            return ExecutorOutcome.failure(
                EXECUTOR_ERROR, sanitize_error_message(str(e) or type(e).__name__, 500)
            )
        if not isinstance(outcome, ExecutorOutcome):
            logger.error(
                "Executor for %s returned %s instead of ExecutorOutcome",
                action_type, type(outcome).__name__,
            )
            return ExecutorOutcome.failure(EXECUTOR_ERROR, "executor returned no outcome")
        return outcome

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Describe registered actions as model tool definitions."""
        return [
            {
                "name": spec.action_type,
                "description": spec.description or spec.action_type,
                "input_schema": spec.payload_model.model_json_schema(),
            }
            for spec in (self._specs[name] for name in self.action_types())
        ]
