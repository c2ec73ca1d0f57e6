"""SQLAlchemy ORM models for the CaseAssist state database.

This module defines the persisted state of the assistant engine:
conversations and their messages, the append-only AI usage ledger, and
batch job run records. Uses SQLAlchemy 2.0 style with Mapped and
mapped_column.
"""

import json
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)

# Fixed-point money: 1 EUR == 1_000_000 micro-euros (6 fractional digits)
MICRO_EUR_PER_EUR = 1_000_000


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def to_iso(moment: datetime) -> str:
    """Render a datetime as a fixed-width UTC ISO8601 string.

    Naive datetimes are treated as UTC. Fixed microsecond precision keeps
    lexical ordering identical to chronological ordering.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="microseconds")


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return to_iso(datetime.now(UTC))


def eur_to_micros(amount: Decimal | int | str) -> int:
    """Convert a EUR amount to integer micro-euros.

    Raises:
        ValueError: If the amount has more than 6 fractional digits.
    """
    value = Decimal(str(amount)) * MICRO_EUR_PER_EUR
    if value != value.to_integral_value():
        raise ValueError(f"EUR amount {amount} exceeds 6 decimal places")
    return int(value)


def micros_to_eur(micros: int) -> Decimal:
    """Convert integer micro-euros to a Decimal EUR amount with 6 places."""
    return (Decimal(micros) / MICRO_EUR_PER_EUR).quantize(Decimal("0.000001"))


# Enums matching the persisted values exactly


class ConversationStatus(str, Enum):
    """Status values for assistant conversations.

    Lifecycle: Active -> AwaitingConfirmation -> Active
               Active/AwaitingConfirmation -> Completed/Expired (terminal)
    """

    Active = "Active"
    AwaitingConfirmation = "AwaitingConfirmation"
    Completed = "Completed"
    Expired = "Expired"


LIVE_CONVERSATION_STATUSES = (
    ConversationStatus.Active.value,
    ConversationStatus.AwaitingConfirmation.value,
)


class MessageRole(str, Enum):
    """Author of a conversation message."""

    User = "User"
    Assistant = "Assistant"
    System = "System"


class ActionStatus(str, Enum):
    """Status of an action proposed by the assistant.

    Lifecycle: Proposed -> Confirmed -> Executed/Failed
               Proposed -> Rejected
    """

    Proposed = "Proposed"
    Confirmed = "Confirmed"
    Executed = "Executed"
    Rejected = "Rejected"
    Failed = "Failed"


TERMINAL_ACTION_STATUSES = (
    ActionStatus.Executed.value,
    ActionStatus.Rejected.value,
    ActionStatus.Failed.value,
)


class BatchJobStatus(str, Enum):
    """Status values for batch job runs."""

    Running = "Running"
    Completed = "Completed"
    Failed = "Failed"


# SQLAlchemy Base


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Models


class Conversation(Base):
    """Assistant conversation scoped to a firm, a user and an optional case.

    Attributes:
        id: UUID primary key
        firm_id: Owning firm
        user_id: Owning user
        case_id: Linked case, if any
        status: Active, AwaitingConfirmation, Completed or Expired
        context_data: JSON object carried across turns (resolved entities)
        live_key: sha256 of the (firm, user, case) scope while non-terminal,
            NULL once terminal.
            Unique, so at most one live conversation exists per scope.
        version: Optimistic concurrency counter, bumped on every write
        closed_at: ISO8601 timestamp of entry into a terminal state
        created_at: ISO8601 timestamp of creation
        updated_at: ISO8601 timestamp of the last activity
    """

    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    firm_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    case_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(
        String(24), nullable=False, default=ConversationStatus.Active.value
    )
    context_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    live_key: Mapped[str | None] = mapped_column(String(200), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    closed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    messages: Mapped[list["ConversationMessage"]] = relationship(
        "ConversationMessage",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="ConversationMessage.sequence",
    )

    __table_args__ = (
        UniqueConstraint("live_key", name="uq_conversations_live_key"),
        Index("idx_conversations_scope", "firm_id", "user_id", "case_id"),
        Index("idx_conversations_status_updated", "status", "updated_at"),
    )

    @property
    def context(self) -> dict[str, Any]:
        """Parse context_data JSON into a dict."""
        if not self.context_data:
            return {}
        return json.loads(self.context_data)

    @context.setter
    def context(self, value: dict[str, Any]) -> None:
        """Serialize a dict into the context_data column."""
        self.context_data = json.dumps(value, sort_keys=True) if value else None

    @property
    def is_terminal(self) -> bool:
        """Whether the conversation accepts no further transitions."""
        return self.status not in LIVE_CONVERSATION_STATUSES

    def __repr__(self) -> str:
        return (
            f"<Conversation(id={self.id!r}, firm_id={self.firm_id!r}, "
            f"user_id={self.user_id!r}, status={self.status!r})>"
        )


class ConversationMessage(Base):
    """Single turn within a conversation.

    Messages are append-only. The only mutable fields are the action
    decision fields (action_status, action_result, version), which move
    along Proposed -> Confirmed -> Executed/Failed or Proposed -> Rejected.

    Attributes:
        id: UUID primary key
        conversation_id: Parent conversation (cascade delete)
        sequence: 1-based position within the conversation
        role: User, Assistant or System
        content: Message text
        intent: Classified purpose of the turn
        confidence: Classifier confidence (0-1)
        action_type: Registered action type proposed by the assistant
        action_payload: JSON payload describing the proposed side effect
        action_preview: Confirmation prompt built from the validated payload
        action_status: Decision state, present iff action_type is present
        action_result: JSON object describing the terminal decision/outcome
        version: Optimistic concurrency counter for action transitions
        tokens_used: Total tokens consumed by the model call
        model_used: Model identifier used for the turn
        latency_ms: Model call latency
        created_at: ISO8601 timestamp of creation
    """

    __tablename__ = "conversation_messages"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    conversation_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    intent: Mapped[str | None] = mapped_column(String(100), nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)

    action_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    action_payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    action_preview: Mapped[str | None] = mapped_column(Text, nullable=True)
    action_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    action_result: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    tokens_used: Mapped[int | None] = mapped_column(Integer, nullable=True)
    model_used: Mapped[str | None] = mapped_column(String(120), nullable=True)
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    conversation: Mapped["Conversation"] = relationship(
        "Conversation", back_populates="messages"
    )

    __table_args__ = (
        UniqueConstraint(
            "conversation_id", "sequence", name="uq_conversation_message_sequence"
        ),
        Index("idx_conversation_messages_conversation", "conversation_id"),
        Index("idx_conversation_messages_action_status", "action_status"),
    )

    @property
    def payload(self) -> dict[str, Any] | None:
        """Parse action_payload JSON."""
        if self.action_payload is None:
            return None
        return json.loads(self.action_payload)

    @property
    def result(self) -> dict[str, Any] | None:
        """Parse action_result JSON."""
        if self.action_result is None:
            return None
        return json.loads(self.action_result)

    def __repr__(self) -> str:
        return (
            f"<ConversationMessage(id={self.id!r}, seq={self.sequence}, "
            f"role={self.role!r}, action_status={self.action_status!r})>"
        )


class UsageLogEntry(Base):
    """Immutable financial record of one model invocation.

    Cost is held in integer micro-euros so that sums are exact. Corrections
    are made with a compensating entry (negated tokens and cost) that
    references the original through compensates_entry_id.

    Attributes:
        id: UUID primary key
        feature: Logical capability name (e.g. 'conversation-turn')
        model: Model identifier
        input_tokens: Prompt tokens
        output_tokens: Completion tokens (zero for failed calls)
        cost_micro_eur: Cost in micro-euros
        firm_id: Firm billed for the call
        user_id: User who triggered the call (NULL for batch processing)
        entity_type: Polymorphic reference type (e.g. 'conversation')
        entity_id: Polymorphic reference id
        duration_ms: Call duration
        error: Sanitized error description when the call failed
        note: Free-text annotation (e.g. reason for a compensation)
        batch_job_id: Batch job the call is attributed to
        compensates_entry_id: Entry this row corrects, if any
        created_at: ISO8601 timestamp of the call
    """

    __tablename__ = "usage_log_entries"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    feature: Mapped[str] = mapped_column(String(100), nullable=False)
    model: Mapped[str] = mapped_column(String(120), nullable=False)
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost_micro_eur: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    firm_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entity_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    batch_job_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("batch_job_runs.id"), nullable=True
    )
    compensates_entry_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("usage_log_entries.id"), nullable=True
    )
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        UniqueConstraint("compensates_entry_id", name="uq_usage_compensates"),
        Index("idx_usage_firm_created", "firm_id", "created_at"),
        Index("idx_usage_feature_created", "feature", "created_at"),
        Index("idx_usage_batch_job", "batch_job_id"),
        Index("idx_usage_entity", "entity_type", "entity_id"),
    )

    @property
    def cost_eur(self) -> Decimal:
        """Cost as a Decimal EUR amount with 6 fractional digits."""
        return micros_to_eur(self.cost_micro_eur)

    @property
    def total_tokens(self) -> int:
        """Input plus output tokens."""
        return self.input_tokens + self.output_tokens

    def __repr__(self) -> str:
        return (
            f"<UsageLogEntry(id={self.id!r}, feature={self.feature!r}, "
            f"model={self.model!r}, cost_eur={self.cost_eur})>"
        )


class BatchJobRun(Base):
    """Tracked execution of a bulk, multi-item AI operation.

    Attributes:
        id: UUID primary key
        firm_id: Firm the job runs for
        feature: Logical capability name (e.g. 'email-summary')
        status: Running, Completed or Failed
        items_submitted: Number of items handed to the job, when known
        items_processed: Items that succeeded
        items_failed: Items that failed after retries
        total_tokens: Roll-up of attributed usage entries
        total_cost_micro_eur: Roll-up of attributed usage cost
        error_message: Job-level error description
        started_at: ISO8601 timestamp of start
        completed_at: ISO8601 timestamp of completion (freezes counters)
    """

    __tablename__ = "batch_job_runs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    firm_id: Mapped[str] = mapped_column(String(64), nullable=False)
    feature: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BatchJobStatus.Running.value
    )
    items_submitted: Mapped[int | None] = mapped_column(Integer, nullable=True)
    items_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_cost_micro_eur: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    completed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    __table_args__ = (
        Index("idx_batch_job_runs_firm_feature", "firm_id", "feature"),
        Index("idx_batch_job_runs_status", "status"),
        Index("idx_batch_job_runs_started_at", "started_at"),
    )

    @property
    def total_cost_eur(self) -> Decimal:
        """Total cost as a Decimal EUR amount with 6 fractional digits."""
        return micros_to_eur(self.total_cost_micro_eur)

    def __repr__(self) -> str:
        return (
            f"<BatchJobRun(id={self.id!r}, feature={self.feature!r}, "
            f"status={self.status!r})>"
        )
