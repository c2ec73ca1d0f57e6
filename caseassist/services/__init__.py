"""Service layer for CaseAssist.

Provides the conversation engine, the action registry, the cost ledger and
batch job tracking.
"""

from caseassist.services.action_registry import (
    ActionRegistry,
    ActionSpec,
    ExecutionContext,
    ExecutorOutcome,
)
from caseassist.services.batch_runner import BatchItemContext, BatchRunner
from caseassist.services.batch_tracker import BatchJobTracker
from caseassist.services.conversation_engine import ConversationEngine, ExecutionResult
from caseassist.services.cost_ledger import CostLedger
from caseassist.services.model_provider import (
    ConversationContext,
    ModelProvider,
    ModelTier,
    ModelTurn,
    ProposedAction,
    ScriptedProvider,
)
from caseassist.services.pricing import PricingTable

__all__ = [
    "ActionRegistry",
    "ActionSpec",
    "ExecutionContext",
    "ExecutorOutcome",
    "BatchItemContext",
    "BatchRunner",
    "BatchJobTracker",
    "ConversationEngine",
    "ExecutionResult",
    "CostLedger",
    "ConversationContext",
    "ModelProvider",
    "ModelTier",
    "ModelTurn",
    "ProposedAction",
    "ScriptedProvider",
    "PricingTable",
]
