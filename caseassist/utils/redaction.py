"""Redaction of privileged client data before it is logged or stored.

Action payloads carry free text written by or for the client (task
descriptions, drafting instructions, document context). Payload models mark
those fields with the ``CONFIDENTIAL`` annotation; ``redact_payload`` masks
them and keeps everything else (ids, dates, titles) readable for operators.

Error text from the model provider and from executors can echo credentials
back, so it goes through ``sanitize_error_message`` before it is persisted.
"""

import re
from typing import Any

from pydantic import BaseModel


class _ConfidentialMarker:
    def __repr__(self) -> str:
        return "CONFIDENTIAL"


# Usage: description: Annotated[str | None, CONFIDENTIAL] = None
CONFIDENTIAL = _ConfidentialMarker()


def confidential_fields(model: type[BaseModel]) -> frozenset[str]:
    """Names of the fields of ``model`` annotated as confidential."""
    return frozenset(
        name
        for name, field in model.model_fields.items()
        if any(isinstance(item, _ConfidentialMarker) for item in field.metadata)
    )


def _mask(value: Any) -> str:
    if isinstance(value, str):
        return f"<redacted {len(value)} chars>"
    return "<redacted>"


def redact_payload(payload: BaseModel) -> dict[str, Any]:
    """JSON-ready dump of a payload with its confidential fields masked.

    Unset optional fields are omitted. Nested payload models are redacted
    by their own markers.
    """
    data = payload.model_dump(mode="json", exclude_none=True)
    hidden = confidential_fields(type(payload))
    for name in list(data):
        if name in hidden:
            data[name] = _mask(data[name])
            continue
        value = getattr(payload, name)
        if isinstance(value, BaseModel):
            data[name] = redact_payload(value)
    return data


_SECRET_KEYS = r"[a-z_]*(?:api[_-]?key|password|secret|token)"

# (pattern, replacement) applied in order
_ERROR_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    # Anthropic API keys wherever they appear
    (re.compile(r"sk-ant-[A-Za-z0-9_\-]+"), "sk-ant-***"),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/\-]+=*"), "Bearer ***"),
    # key=value, key: value and "key": "value"; the key name is kept
    (
        re.compile(r'(?i)\b(' + _SECRET_KEYS + r')("?\s*[=:]\s*)("[^"]*"|\S+)'),
        r"\1\2***",
    ),
)


def sanitize_error_message(msg: str | None, max_length: int = 2000) -> str | None:
    """Mask credentials in error text and cap its length.

    Args:
        msg: Error text (None passes through).
        max_length: Maximum length of the result, ellipsis included.

    Returns:
        The sanitized text, or None.
    """
    if msg is None:
        return None
    for pattern, replacement in _ERROR_RULES:
        msg = pattern.sub(replacement, msg)
    if len(msg) > max_length:
        msg = msg[: max_length - 3] + "..."
    return msg
