"""Database module for CaseAssist state management and persistence."""

from caseassist.db.connection import (
    SessionLocal,
    engine,
    get_db,
    get_db_context,
    init_db,
)
from caseassist.db.models import (
    ActionStatus,
    BatchJobRun,
    BatchJobStatus,
    Conversation,
    ConversationMessage,
    ConversationStatus,
    MessageRole,
    UsageLogEntry,
)

__all__ = [
    # Models
    "Conversation",
    "ConversationMessage",
    "UsageLogEntry",
    "BatchJobRun",
    # Enums
    "ConversationStatus",
    "MessageRole",
    "ActionStatus",
    "BatchJobStatus",
    # Connection
    "engine",
    "SessionLocal",
    "get_db",
    "get_db_context",
    "init_db",
]
