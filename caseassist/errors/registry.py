"""Error code registry with E-XXXX format codes.

This module defines the error code system for CaseAssist, organizing errors
into categories:
- E-1xxx: State errors (caller acted on outdated state)
- E-2xxx: Transient provider errors
- E-3xxx: Action execution errors
- E-4xxx: Accounting/system errors
- E-5xxx: Validation errors

Each error includes a code, title, message template, and remediation steps.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    STATE = "state"  # E-1xxx: Outdated or invalid caller state
    TRANSIENT = "transient"  # E-2xxx: Model provider hiccups
    EXECUTION = "execution"  # E-3xxx: Domain executor failures
    ACCOUNTING = "accounting"  # E-4xxx: Ledger/system errors
    VALIDATION = "validation"  # E-5xxx: Invalid input


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action user should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str  # E-XXXX format
    category: ErrorCategory
    title: str  # Short title for display
    message_template: str  # Message with {placeholders}
    remediation: str  # Action user should take
    is_retryable: bool = False  # Can be retried without user action


_REFRESH = "Please refresh the conversation and try again."

# Error registry - all defined error codes
ERROR_REGISTRY: dict[str, ErrorCode] = {
    # State errors (E-1xxx)
    "E-1001": ErrorCode(
        code="E-1001",
        category=ErrorCategory.STATE,
        title="Conversation Closed",
        message_template="Conversation {conversation_id} is {status} and accepts no further messages.",
        remediation="Start a new conversation.",
    ),
    "E-1002": ErrorCode(
        code="E-1002",
        category=ErrorCategory.STATE,
        title="Action Pending",
        message_template="Conversation {conversation_id} has an action awaiting confirmation.",
        remediation="Confirm or reject the pending action before sending another message.",
    ),
    "E-1003": ErrorCode(
        code="E-1003",
        category=ErrorCategory.STATE,
        title="Stale Action",
        message_template="Message {message_id} is not the pending action of conversation {conversation_id}.",
        remediation=_REFRESH,
    ),
    "E-1004": ErrorCode(
        code="E-1004",
        category=ErrorCategory.STATE,
        title="Not Found",
        message_template="{resource_type} '{identifier}' not found.",
        remediation=_REFRESH,
    ),
    "E-1005": ErrorCode(
        code="E-1005",
        category=ErrorCategory.STATE,
        title="Batch Job Not Running",
        message_template="Batch job {job_id} is {status}; item outcomes can no longer be recorded.",
        remediation="Start a new batch job for the remaining items.",
    ),
    "E-1006": ErrorCode(
        code="E-1006",
        category=ErrorCategory.STATE,
        title="Conversation Busy",
        message_template="Conversation {conversation_id} is being updated by another request.",
        remediation=_REFRESH,
    ),
    # Transient provider errors (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.TRANSIENT,
        title="Model Timeout",
        message_template="Model {model} did not answer within {timeout_ms}ms.",
        remediation="Retry the message.",
        is_retryable=True,
    ),
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.TRANSIENT,
        title="Rate Limited",
        message_template="Model provider rate limit reached for {model}.",
        remediation="Wait a moment and retry the message.",
        is_retryable=True,
    ),
    "E-2003": ErrorCode(
        code="E-2003",
        category=ErrorCategory.TRANSIENT,
        title="Model Provider Error",
        message_template="Model {model} failed: {reason}",
        remediation="Retry the message. Contact support if this persists.",
    ),
    # Execution errors (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.EXECUTION,
        title="Action Failed",
        message_template="The action could not be completed: {reason}",
        remediation="Review the details and ask the assistant to try again.",
    ),
    # Accounting/system errors (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.ACCOUNTING,
        title="Unpriced Model",
        message_template="No pricing configured for model '{model}'.",
        remediation="Add the model to the pricing table in the configuration.",
    ),
    "E-4002": ErrorCode(
        code="E-4002",
        category=ErrorCategory.ACCOUNTING,
        title="Invalid Compensation",
        message_template="Usage entry {entry_id} cannot be compensated: {reason}",
        remediation="Check the ledger entry and its existing corrections.",
    ),
    # Validation errors (E-5xxx)
    "E-5001": ErrorCode(
        code="E-5001",
        category=ErrorCategory.VALIDATION,
        title="Unknown Action Type",
        message_template="Action type '{action_type}' is not registered.",
        remediation="Ask the assistant for a supported action.",
    ),
    "E-5002": ErrorCode(
        code="E-5002",
        category=ErrorCategory.VALIDATION,
        title="Invalid Action Payload",
        message_template="Payload for action '{action_type}' is invalid: {reason}",
        remediation="Correct the action details and try again.",
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Look up error code definition.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode definition if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all error codes in a category.

    Args:
        category: The error category to filter by.

    Returns:
        List of ErrorCode definitions in the category.
    """
    return [e for e in ERROR_REGISTRY.values() if e.category == category]
