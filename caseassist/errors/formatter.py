"""Error formatting utilities.

This module provides:
- User-facing rendering of domain errors with remediation
- Rendering of failed action executions
- Structured error bodies for API responses
"""

from typing import Any

from caseassist.errors.domain import DomainError
from caseassist.errors.registry import get_error

ACTION_FAILED_CODE = "E-3001"


def format_error(error: DomainError, include_remediation: bool = True) -> str:
    """Format error for display to user.

    Args:
        error: The DomainError to format.
        include_remediation: Whether to include remediation steps.

    Returns:
        Multi-line formatted string suitable for user display.
    """
    lines = [f"{error.code}: {error.message}"]
    if include_remediation:
        lines.append(f"  Action: {error.remediation}")
    return "\n".join(lines)


def format_action_failure(reason: str) -> str:
    """Render an executor failure as shown to the user.

    Args:
        reason: Executor-provided failure description.

    Returns:
        "The action could not be completed: <reason>".
    """
    error_def = get_error(ACTION_FAILED_CODE)
    template = error_def.message_template if error_def else "{reason}"
    return template.format(reason=reason)


def error_body(error: DomainError) -> dict[str, Any]:
    """Build a JSON-serializable error body for API responses.

    Args:
        error: The DomainError to serialize.

    Returns:
        Dict with code, message, remediation and retryable flag.
    """
    error_def = get_error(error.code)
    return {
        "code": error.code,
        "title": error_def.title if error_def else "Error",
        "message": error.message,
        "remediation": error.remediation,
        "is_retryable": error.is_retryable,
    }
