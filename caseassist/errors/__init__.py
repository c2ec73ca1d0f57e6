"""Error handling framework for CaseAssist.

This package provides:
- Error code registry with E-XXXX format codes
- Typed domain exceptions carrying their registry code
- Error formatting for users and API responses

Error categories:
- E-1xxx: State errors
- E-2xxx: Transient provider errors
- E-3xxx: Action execution errors
- E-4xxx: Accounting errors
- E-5xxx: Validation errors
"""

from caseassist.errors.domain import (
    ActionPendingError,
    BatchJobStateError,
    ConversationBusyError,
    ConversationExpiredError,
    DomainError,
    InvalidActionPayloadError,
    InvalidCompensationError,
    ModelProviderError,
    ModelTimeoutError,
    NotFoundError,
    PricingNotFoundError,
    RateLimitError,
    StaleActionError,
    TransientProviderError,
    UnknownActionTypeError,
)
from caseassist.errors.formatter import (
    error_body,
    format_action_failure,
    format_error,
)
from caseassist.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    get_error,
    get_errors_by_category,
)

__all__ = [
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    # Domain errors
    "DomainError",
    "NotFoundError",
    "ConversationExpiredError",
    "ActionPendingError",
    "StaleActionError",
    "BatchJobStateError",
    "ConversationBusyError",
    "UnknownActionTypeError",
    "InvalidActionPayloadError",
    "PricingNotFoundError",
    "InvalidCompensationError",
    "ModelProviderError",
    "TransientProviderError",
    "ModelTimeoutError",
    "RateLimitError",
    # Formatter
    "format_error",
    "format_action_failure",
    "error_body",
]
