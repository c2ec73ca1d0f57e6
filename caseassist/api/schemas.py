"""Pydantic schemas for API request/response validation.

This module defines the data contracts for the CaseAssist REST API:
conversations and their actions, batch job runs and usage reporting.
"""

import json
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _parse_json(v: str | dict | None) -> dict | None:
    """Parse a JSON text column (SQLite stores JSON as text)."""
    if v is None or isinstance(v, dict):
        return v
    return json.loads(v)


# Conversation schemas


class OpenConversationRequest(BaseModel):
    """Request schema for opening or resuming a conversation."""

    case_id: str | None = Field(None, max_length=64)


class PostMessageRequest(BaseModel):
    """Request schema for posting a user message."""

    text: str = Field(..., min_length=1, max_length=10000)


class ConfirmActionRequest(BaseModel):
    """Request schema for confirming a pending action."""

    modifications: dict[str, Any] | None = None


class RejectActionRequest(BaseModel):
    """Request schema for rejecting a pending action."""

    reason: str | None = Field(None, max_length=1000)


class ContextUpdateRequest(BaseModel):
    """Request schema for merging resolved entities into the context."""

    updates: dict[str, Any]


class ConversationResponse(BaseModel):
    """Response schema for a conversation."""

    id: str
    firm_id: str
    user_id: str
    case_id: str | None
    status: str
    context: dict[str, Any] = Field(default_factory=dict)
    closed_at: str | None
    created_at: str
    updated_at: str

    model_config = ConfigDict(from_attributes=True)


class MessageResponse(BaseModel):
    """Response schema for a conversation message."""

    id: str
    sequence: int
    role: str
    content: str
    intent: str | None = None
    confidence: float | None = None
    action_type: str | None = None
    action_payload: dict[str, Any] | None = None
    action_preview: str | None = None
    action_status: str | None = None
    action_result: dict[str, Any] | None = None
    tokens_used: int | None = None
    model_used: str | None = None
    latency_ms: int | None = None
    created_at: str

    model_config = ConfigDict(from_attributes=True)

    @field_validator("action_payload", "action_result", mode="before")
    @classmethod
    def _parse_json_columns(cls, v: str | dict | None) -> dict | None:
        return _parse_json(v)


class ConversationDetailResponse(BaseModel):
    """Conversation with its message history and accumulated cost."""

    conversation: ConversationResponse
    messages: list[MessageResponse]
    total_cost_eur: Decimal


class ExecutionResultResponse(BaseModel):
    """Response schema for a confirmed action."""

    conversation_id: str
    message_id: str
    action_type: str
    status: str
    ok: bool
    reason_code: str | None
    detail: str
    entity_type: str | None = None
    entity_id: str | None = None
    replayed: bool = False

    model_config = ConfigDict(from_attributes=True)


# Batch job schemas


class BatchJobResponse(BaseModel):
    """Response schema for a batch job run."""

    id: str
    firm_id: str
    feature: str
    status: str
    items_submitted: int | None
    items_processed: int
    items_failed: int
    total_tokens: int
    total_cost_eur: Decimal
    error_message: str | None
    started_at: str
    completed_at: str | None

    model_config = ConfigDict(from_attributes=True)


class BatchJobListResponse(BaseModel):
    """Paginated list of batch job runs."""

    jobs: list[BatchJobResponse]
    total: int
    limit: int
    offset: int


# Usage schemas


class UsageSummaryResponse(BaseModel):
    """Firm usage totals over a date range."""

    firm_id: str
    start: str
    end: str
    total_cost_eur: Decimal
    input_tokens: int
    output_tokens: int
    total_tokens: int
    calls: int
    failed_calls: int
    average_latency_ms: float
    average_daily_cost_eur: Decimal
    projected_month_end_eur: Decimal

    model_config = ConfigDict(from_attributes=True)


class CostBreakdownResponse(BaseModel):
    """One row of a cost grouping."""

    key: str
    cost_eur: Decimal
    tokens: int
    calls: int
    percent_of_total: float

    model_config = ConfigDict(from_attributes=True)


class DailyCostResponse(BaseModel):
    """Cost of one UTC calendar day."""

    day: str
    cost_eur: Decimal
    tokens: int
    calls: int

    model_config = ConfigDict(from_attributes=True)
