"""FastAPI routes for assistant conversations.

Open or resume a conversation, post messages, and decide on the actions
the assistant proposes. Domain errors raised by the engine are turned
into HTTP responses by the application's exception handler.
"""

from fastapi import APIRouter, Depends

from caseassist.api.dependencies import Caller, get_caller, get_engine, get_provider
from caseassist.api.schemas import (
    ConfirmActionRequest,
    ContextUpdateRequest,
    ConversationDetailResponse,
    ConversationResponse,
    ExecutionResultResponse,
    MessageResponse,
    OpenConversationRequest,
    PostMessageRequest,
    RejectActionRequest,
)
from caseassist.db.models import Conversation
from caseassist.services import ConversationEngine
from caseassist.services.conversation_engine import ENTITY_CONVERSATION

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.post("", response_model=ConversationResponse)
def open_conversation(
    body: OpenConversationRequest,
    caller: Caller = Depends(get_caller),
    engine: ConversationEngine = Depends(get_engine),
) -> Conversation:
    """Return the caller's live conversation for the case, creating one if needed."""
    return engine.open_or_resume_conversation(caller.firm_id, caller.user_id, body.case_id)


@router.get("/{conversation_id}", response_model=ConversationDetailResponse)
def get_conversation(
    conversation_id: str,
    caller: Caller = Depends(get_caller),
    engine: ConversationEngine = Depends(get_engine),
) -> ConversationDetailResponse:
    """Get a conversation with its messages and accumulated model cost."""
    conversation = engine.get_conversation(conversation_id, caller.firm_id)
    messages = engine.list_messages(conversation_id, caller.firm_id)
    return ConversationDetailResponse(
        conversation=ConversationResponse.model_validate(conversation),
        messages=[MessageResponse.model_validate(m) for m in messages],
        total_cost_eur=engine.ledger.total_for_entity(ENTITY_CONVERSATION, conversation_id),
    )


@router.post(
    "/{conversation_id}/messages",
    response_model=MessageResponse,
    dependencies=[Depends(get_provider)],
)
async def post_message(
    conversation_id: str,
    body: PostMessageRequest,
    caller: Caller = Depends(get_caller),
    engine: ConversationEngine = Depends(get_engine),
) -> MessageResponse:
    """Post a user message and return the assistant's reply."""
    message = await engine.post_user_message(conversation_id, body.text, caller.firm_id)
    return MessageResponse.model_validate(message)


@router.post(
    "/{conversation_id}/actions/{message_id}/confirm",
    response_model=ExecutionResultResponse,
)
async def confirm_action(
    conversation_id: str,
    message_id: str,
    body: ConfirmActionRequest | None = None,
    caller: Caller = Depends(get_caller),
    engine: ConversationEngine = Depends(get_engine),
) -> ExecutionResultResponse:
    """Confirm the pending action; retries return the first outcome."""
    result = await engine.confirm_pending_action(
        conversation_id,
        message_id,
        modifications=body.modifications if body else None,
        firm_id=caller.firm_id,
    )
    return ExecutionResultResponse(
        conversation_id=result.conversation_id,
        message_id=result.message_id,
        action_type=result.action_type,
        status=result.status.value,
        ok=result.ok,
        reason_code=result.reason_code,
        detail=result.detail,
        entity_type=result.entity_type,
        entity_id=result.entity_id,
        replayed=result.replayed,
    )


@router.post(
    "/{conversation_id}/actions/{message_id}/reject",
    response_model=ConversationResponse,
)
def reject_action(
    conversation_id: str,
    message_id: str,
    body: RejectActionRequest | None = None,
    caller: Caller = Depends(get_caller),
    engine: ConversationEngine = Depends(get_engine),
) -> Conversation:
    """Reject the pending action without executing it."""
    return engine.reject_pending_action(
        conversation_id,
        message_id,
        reason=body.reason if body else None,
        firm_id=caller.firm_id,
    )


@router.patch("/{conversation_id}/context", response_model=ConversationResponse)
def update_context(
    conversation_id: str,
    body: ContextUpdateRequest,
    caller: Caller = Depends(get_caller),
    engine: ConversationEngine = Depends(get_engine),
) -> Conversation:
    """Merge resolved entities into the conversation context."""
    return engine.update_context(conversation_id, body.updates, caller.firm_id)


@router.post("/{conversation_id}/close", response_model=ConversationResponse)
def close_conversation(
    conversation_id: str,
    caller: Caller = Depends(get_caller),
    engine: ConversationEngine = Depends(get_engine),
) -> Conversation:
    """Close the conversation; closing twice returns the same result."""
    return engine.close_conversation(conversation_id, caller.firm_id)
