"""Typed domain exceptions for engine and API error mapping.

Every exception carries an E-XXXX registry code so callers can render a
consistent user-facing message and remediation, and routes can map
exception types to HTTP status codes.

Usage:
    # In service layer
    raise StaleActionError(conversation_id, message_id)

    # In route handler
    try:
        result = await engine.confirm_pending_action(conversation_id, message_id)
    except StaleActionError as e:
        raise HTTPException(status_code=409, detail=str(e))
"""

from typing import Any

from caseassist.errors.registry import get_error


def _render(code: str, context: dict[str, Any]) -> str:
    """Format the registry template for a code, tolerating missing keys."""
    error_def = get_error(code)
    if error_def is None:
        return f"Unknown error: {code}"
    try:
        return error_def.message_template.format(**context)
    except KeyError:
        return error_def.message_template


class DomainError(Exception):
    """Base exception for all domain errors."""

    code: str = "E-1004"

    def __init__(self, message: str | None = None, **context: Any) -> None:
        self.context = context
        super().__init__(message or _render(self.code, context))

    @property
    def message(self) -> str:
        """Human-readable error message."""
        return str(self)

    @property
    def remediation(self) -> str:
        """Action the user should take, from the registry."""
        error_def = get_error(self.code)
        return error_def.remediation if error_def else "Contact support."

    @property
    def is_retryable(self) -> bool:
        """Whether the operation can be retried without user action."""
        error_def = get_error(self.code)
        return bool(error_def and error_def.is_retryable)


# State errors


class NotFoundError(DomainError):
    """Resource was not found. Maps to HTTP 404."""

    code = "E-1004"

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(resource_type=resource_type, identifier=identifier)
        self.resource_type = resource_type
        self.identifier = identifier


class ConversationExpiredError(DomainError):
    """Conversation is Expired or Completed. Maps to HTTP 409."""

    code = "E-1001"

    def __init__(self, conversation_id: str, status: str) -> None:
        super().__init__(conversation_id=conversation_id, status=status)
        self.conversation_id = conversation_id
        self.status = status


class ActionPendingError(DomainError):
    """Plain chat while an action awaits a decision. Maps to HTTP 409."""

    code = "E-1002"

    def __init__(self, conversation_id: str, message_id: str | None = None) -> None:
        super().__init__(conversation_id=conversation_id)
        self.conversation_id = conversation_id
        self.message_id = message_id


class StaleActionError(DomainError):
    """Decision targets an action that is no longer pending. Maps to HTTP 409.

    Covers an already-decided action, a wrong message id, and the loser of
    two racing decisions on the same action.
    """

    code = "E-1003"

    def __init__(
        self, conversation_id: str, message_id: str, reason: str | None = None
    ) -> None:
        super().__init__(conversation_id=conversation_id, message_id=message_id)
        self.conversation_id = conversation_id
        self.message_id = message_id
        self.reason = reason


class ConversationBusyError(DomainError):
    """Conversation kept changing under a write. Maps to HTTP 409."""

    code = "E-1006"

    def __init__(self, conversation_id: str) -> None:
        super().__init__(conversation_id=conversation_id)
        self.conversation_id = conversation_id


class BatchJobStateError(DomainError):
    """Batch job is no longer running. Maps to HTTP 409."""

    code = "E-1005"

    def __init__(self, job_id: str, status: str) -> None:
        super().__init__(job_id=job_id, status=status)
        self.job_id = job_id
        self.status = status


# Validation errors


class UnknownActionTypeError(DomainError):
    """Assistant proposed an unregistered action type. Maps to HTTP 422."""

    code = "E-5001"

    def __init__(self, action_type: str) -> None:
        super().__init__(action_type=action_type)
        self.action_type = action_type


class InvalidActionPayloadError(DomainError):
    """Action payload does not match its registered schema. Maps to HTTP 422."""

    code = "E-5002"

    def __init__(self, action_type: str, reason: str) -> None:
        super().__init__(action_type=action_type, reason=reason)
        self.action_type = action_type
        self.reason = reason


# Accounting errors


class PricingNotFoundError(DomainError):
    """No pricing entry for a model. Maps to HTTP 500."""

    code = "E-4001"

    def __init__(self, model: str) -> None:
        super().__init__(model=model)
        self.model = model


class InvalidCompensationError(DomainError):
    """Compensating entry would corrupt the ledger. Maps to HTTP 409."""

    code = "E-4002"

    def __init__(self, entry_id: str, reason: str) -> None:
        super().__init__(entry_id=entry_id, reason=reason)
        self.entry_id = entry_id
        self.reason = reason


# Provider errors


class ModelProviderError(DomainError):
    """Model call failed for a non-transient reason. Maps to HTTP 502."""

    code = "E-2003"

    def __init__(self, model: str, reason: str) -> None:
        super().__init__(model=model, reason=reason)
        self.model = model
        self.reason = reason


class TransientProviderError(ModelProviderError):
    """Model call failed for a reason worth retrying (batch processing only)."""


class ModelTimeoutError(TransientProviderError):
    """Model call exceeded its tier budget. Maps to HTTP 504."""

    code = "E-2001"

    def __init__(self, model: str, timeout_ms: int) -> None:
        DomainError.__init__(self, model=model, timeout_ms=timeout_ms)
        self.model = model
        self.timeout_ms = timeout_ms
        self.reason = f"timeout after {timeout_ms}ms"


class RateLimitError(TransientProviderError):
    """Model provider rejected the call with a rate limit. Maps to HTTP 429."""

    code = "E-2002"

    def __init__(self, model: str, retry_after: float | None = None) -> None:
        DomainError.__init__(self, model=model)
        self.model = model
        self.retry_after = retry_after
        self.reason = "rate limited"
