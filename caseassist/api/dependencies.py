"""FastAPI dependencies shared by the route modules.

Caller identity arrives in the X-Firm-Id / X-User-Id headers set by the
authenticating gateway in front of this service. The action registry, the
model provider and the configuration live on ``app.state`` and are set up
by create_app().
"""

from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from caseassist.config import CaseAssistConfig
from caseassist.db.connection import get_db
from caseassist.services import (
    ActionRegistry,
    BatchJobTracker,
    ConversationEngine,
    CostLedger,
    ModelProvider,
)


@dataclass(frozen=True)
class Caller:
    firm_id: str
    user_id: str


def get_caller(
    x_firm_id: str = Header(..., min_length=1, max_length=64),
    x_user_id: str = Header(..., min_length=1, max_length=64),
) -> Caller:
    """Identity of the calling user."""
    return Caller(firm_id=x_firm_id, user_id=x_user_id)


def get_config(request: Request) -> CaseAssistConfig:
    return request.app.state.config


def get_registry(request: Request) -> ActionRegistry:
    return request.app.state.registry


def get_provider(request: Request) -> ModelProvider:
    """Configured model provider; 503 when none is available."""
    provider = getattr(request.app.state, "provider", None)
    if provider is None:
        raise HTTPException(status_code=503, detail="No model provider configured")
    return provider


def get_engine(
    request: Request,
    db: Session = Depends(get_db),
    registry: ActionRegistry = Depends(get_registry),
    config: CaseAssistConfig = Depends(get_config),
) -> ConversationEngine:
    """Dependency to get a request-scoped ConversationEngine.

    The provider may be absent; only posting a message needs it (see
    get_provider).
    """
    provider = getattr(request.app.state, "provider", None)
    return ConversationEngine(db, registry, provider, config=config)


def get_ledger(db: Session = Depends(get_db)) -> CostLedger:
    """Dependency to get CostLedger instance."""
    return CostLedger(db)


def get_tracker(db: Session = Depends(get_db)) -> BatchJobTracker:
    """Dependency to get BatchJobTracker instance."""
    return BatchJobTracker(db)
