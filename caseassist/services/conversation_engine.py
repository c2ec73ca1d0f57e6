"""Conversation engine: multi-turn chat with confirmation-gated actions.

The engine owns conversation and message state. A user message is appended,
the model provider generates the assistant turn, and any action the
assistant proposes is parked as ``Proposed`` until the user confirms or
rejects it. Only a confirmed action reaches its executor, at most once.

Every state transition is a single conditional UPDATE (compare-and-swap on
status and version) whose affected-row count decides the winner, so several
service instances can share one database without in-process locks. Every
model call, failed or not, is written to the cost ledger before the engine
returns or raises.
"""

import asyncio
import hashlib
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from caseassist.config import CaseAssistConfig
from caseassist.db.models import (
    LIVE_CONVERSATION_STATUSES,
    ActionStatus,
    Conversation,
    ConversationMessage,
    ConversationStatus,
    MessageRole,
    to_iso,
)
from caseassist.errors import (
    ActionPendingError,
    ConversationBusyError,
    ConversationExpiredError,
    InvalidActionPayloadError,
    ModelProviderError,
    ModelTimeoutError,
    NotFoundError,
    PricingNotFoundError,
    StaleActionError,
    UnknownActionTypeError,
    format_action_failure,
)
from caseassist.services.action_registry import ActionRegistry, ExecutionContext
from caseassist.services.cost_ledger import CostLedger
from caseassist.services.model_provider import (
    ConversationContext,
    HistoryMessage,
    ModelProvider,
    ModelTurn,
)
from caseassist.services.pricing import PricingTable
from caseassist.utils.redaction import redact_payload, sanitize_error_message

logger = logging.getLogger(__name__)

FEATURE_CONVERSATION_TURN = "conversation-turn"
ENTITY_CONVERSATION = "conversation"

REASON_EXPIRED = "conversation expired"
REASON_CLOSED = "conversation closed"
REASON_CASE_RESOLVED = "case resolved"
REASON_ANOTHER_PENDING = "another action pending"

_APPEND_ATTEMPTS = 3


@dataclass(frozen=True)
class ExecutionResult:
    """Terminal outcome of a confirmed action.

    ``replayed`` is True when the outcome was read back from an earlier
    confirmation instead of running the executor.
    """

    conversation_id: str
    message_id: str
    action_type: str
    status: ActionStatus
    ok: bool
    reason_code: str | None
    detail: str
    entity_type: str | None = None
    entity_id: str | None = None
    replayed: bool = False


def _live_key(firm_id: str, user_id: str, case_id: str | None) -> str:
    """Fingerprint of the (firm, user, case) scope; null case stays distinct."""
    canonical = json.dumps([firm_id, user_id, case_id], separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _decision(
    status: ActionStatus,
    ok: bool,
    reason_code: str | None,
    detail: str,
    decided_at: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
) -> str:
    return json.dumps({
        "decision": status.value,
        "ok": ok,
        "reason_code": reason_code,
        "detail": detail,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "decided_at": decided_at,
    })


class ConversationEngine:
    """Propose/confirm/execute protocol over persisted conversations.

    Args:
        db: SQLAlchemy session (one per request or task).
        registry: Registered action types and their executors.
        provider: Model-call capability (None for maintenance use such as
            the reaper; posting messages then fails).
        config: Engine configuration (defaults when omitted).
        ledger: Cost ledger sharing ``db`` (created when omitted).
        pricing: Pricing table (built from ``config.pricing`` when omitted).
        clock: Source of the current time, UTC.

    Raises:
        PricingNotFoundError: If the provider's model has no price, since
            none of its calls could be accounted for.
    """

    def __init__(
        self,
        db: Session,
        registry: ActionRegistry,
        provider: ModelProvider | None,
        config: CaseAssistConfig | None = None,
        ledger: CostLedger | None = None,
        pricing: PricingTable | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.db = db
        self.registry = registry
        self.provider = provider
        self.config = config or CaseAssistConfig()
        self.ledger = ledger or CostLedger(db)
        self.pricing = pricing or PricingTable(self.config.pricing)
        self._clock = clock or (lambda: datetime.now(UTC))
        if provider is not None and provider.model not in self.pricing:
            raise PricingNotFoundError(provider.model)

    # =========================================================================
    # Helpers
    # =========================================================================

    @property
    def inactivity_window(self) -> timedelta:
        return timedelta(hours=self.config.conversation.inactivity_window_hours)

    @property
    def timeout_ms(self) -> int:
        """Hard timeout of one model call: the p99 budget of the provider tier."""
        budget = getattr(self.config.model_tiers, self.provider.tier.value)
        return budget.p99_ms

    def _is_stale(self, conversation: Conversation, now: datetime) -> bool:
        return conversation.updated_at < to_iso(now - self.inactivity_window)

    def _next_sequence(self, conversation_id: str) -> int:
        current = (
            self.db.query(func.max(ConversationMessage.sequence))
            .filter(ConversationMessage.conversation_id == conversation_id)
            .scalar()
        )
        return (current or 0) + 1

    def _get_message(self, conversation_id: str, message_id: str) -> ConversationMessage | None:
        return (
            self.db.query(ConversationMessage)
            .filter(
                ConversationMessage.id == message_id,
                ConversationMessage.conversation_id == conversation_id,
            )
            .first()
        )

    def _append_system_message(self, conversation_id: str, content: str) -> None:
        """Append a System message; caller commits."""
        self.db.add(
            ConversationMessage(
                conversation_id=conversation_id,
                sequence=self._next_sequence(conversation_id),
                role=MessageRole.System.value,
                content=content,
                created_at=to_iso(self._clock()),
            )
        )

    def _terminate(
        self,
        conversation_id: str,
        version: int,
        target: ConversationStatus,
        reason: str,
        now: datetime,
        not_touched_since: str | None = None,
    ) -> bool:
        """Move a live conversation to a terminal state, rejecting its pending action.

        Both writes commit together. Returns False when the conversation
        changed since ``version`` was read (another writer won).
        """
        now_iso = to_iso(now)
        conditions = [
            Conversation.id == conversation_id,
            Conversation.status.in_(LIVE_CONVERSATION_STATUSES),
            Conversation.version == version,
        ]
        if not_touched_since is not None:
            conditions.append(Conversation.updated_at < not_touched_since)
        result = self.db.execute(
            update(Conversation)
            .where(*conditions)
            .values(
                status=target.value,
                live_key=None,
                closed_at=now_iso,
                updated_at=now_iso,
                version=Conversation.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            return False

        rejected = self.db.execute(
            update(ConversationMessage)
            .where(
                ConversationMessage.conversation_id == conversation_id,
                ConversationMessage.action_status == ActionStatus.Proposed.value,
            )
            .values(
                action_status=ActionStatus.Rejected.value,
                action_result=_decision(
                    ActionStatus.Rejected, False, reason.replace(" ", "_"), reason, now_iso
                ),
                version=ConversationMessage.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        logger.info(
            "Conversation %s %s (%s); %d pending action(s) rejected",
            conversation_id, target.value, reason, rejected.rowcount,
        )
        return True

    # =========================================================================
    # Queries
    # =========================================================================

    def get_conversation(self, conversation_id: str, firm_id: str | None = None) -> Conversation:
        """Fetch a conversation, optionally scoped to a firm.

        Raises:
            NotFoundError: If missing or owned by another firm.
        """
        conversation = self.db.get(Conversation, conversation_id)
        if conversation is None or (firm_id is not None and conversation.firm_id != firm_id):
            raise NotFoundError("conversation", conversation_id)
        return conversation

    def list_messages(
        self, conversation_id: str, firm_id: str | None = None
    ) -> list[ConversationMessage]:
        """Messages of a conversation, oldest first."""
        self.get_conversation(conversation_id, firm_id)
        return (
            self.db.query(ConversationMessage)
            .filter(ConversationMessage.conversation_id == conversation_id)
            .order_by(ConversationMessage.sequence)
            .all()
        )

    def pending_action(self, conversation_id: str) -> ConversationMessage | None:
        """The message whose action awaits a decision, if any."""
        return (
            self.db.query(ConversationMessage)
            .filter(
                ConversationMessage.conversation_id == conversation_id,
                ConversationMessage.action_status == ActionStatus.Proposed.value,
            )
            .first()
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def open_or_resume_conversation(
        self, firm_id: str, user_id: str, case_id: str | None = None
    ) -> Conversation:
        """Return the caller's live conversation for the scope, or create one.

        A live conversation already past the inactivity window is expired
        on the spot and a fresh one is created. Two concurrent opens for
        the same scope converge on one conversation through the unique
        live key.
        """
        key = _live_key(firm_id, user_id, case_id)
        now = self._clock()

        for _ in range(_APPEND_ATTEMPTS):
            existing = self.db.query(Conversation).filter(Conversation.live_key == key).first()
            if existing is None:
                break
            if not self._is_stale(existing, now):
                return existing
            self._terminate(existing.id, existing.version, ConversationStatus.Expired,
                            REASON_EXPIRED, now)
            self.db.expire_all()

        now_iso = to_iso(now)
        conversation = Conversation(
            firm_id=firm_id,
            user_id=user_id,
            case_id=case_id,
            status=ConversationStatus.Active.value,
            live_key=key,
            version=1,
            created_at=now_iso,
            updated_at=now_iso,
        )
        self.db.add(conversation)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            winner = self.db.query(Conversation).filter(Conversation.live_key == key).first()
            if winner is None:
                raise
            logger.info("Concurrent open for %s resolved to conversation %s", key, winner.id)
            return winner
        self.db.refresh(conversation)
        logger.info(
            "Conversation %s opened: firm=%s user=%s case=%s",
            conversation.id, firm_id, user_id, case_id,
        )
        return conversation

    def close_conversation(self, conversation_id: str, firm_id: str | None = None) -> Conversation:
        """Complete a conversation. Closing a terminal conversation is a no-op."""
        for _ in range(_APPEND_ATTEMPTS):
            conversation = self.get_conversation(conversation_id, firm_id)
            self.db.refresh(conversation)
            if conversation.is_terminal:
                return conversation
            if self._terminate(conversation.id, conversation.version,
                               ConversationStatus.Completed, REASON_CLOSED, self._clock()):
                break
        conversation = self.get_conversation(conversation_id, firm_id)
        self.db.refresh(conversation)
        return conversation

    def complete_case_conversations(self, firm_id: str, case_id: str) -> int:
        """Complete every live conversation linked to a resolved case.

        Returns:
            Number of conversations completed.
        """
        rows = (
            self.db.query(Conversation.id, Conversation.version)
            .filter(
                Conversation.firm_id == firm_id,
                Conversation.case_id == case_id,
                Conversation.status.in_(LIVE_CONVERSATION_STATUSES),
            )
            .all()
        )
        now = self._clock()
        return sum(
            1 for conversation_id, version in rows
            if self._terminate(conversation_id, version, ConversationStatus.Completed,
                               REASON_CASE_RESOLVED, now)
        )

    def expire_stale_conversations(self, now: datetime | None = None) -> int:
        """Expire live conversations idle longer than the inactivity window.

        Safe to run concurrently: each row transition is conditional on the
        status and version read here, so only one reaper wins per row and a
        conversation touched in the meantime is left alone.

        Args:
            now: Reference time (default: the engine clock).

        Returns:
            Number of conversations expired by this call.
        """
        now = now or self._clock()
        cutoff = to_iso(now - self.inactivity_window)
        rows = (
            self.db.query(Conversation.id, Conversation.version)
            .filter(
                Conversation.status.in_(LIVE_CONVERSATION_STATUSES),
                Conversation.updated_at < cutoff,
            )
            .all()
        )
        expired = sum(
            1 for conversation_id, version in rows
            if self._terminate(conversation_id, version, ConversationStatus.Expired,
                               REASON_EXPIRED, now, not_touched_since=cutoff)
        )
        if expired:
            logger.info("Reaper expired %d conversation(s) idle since before %s", expired, cutoff)
        return expired

    def update_context(
        self,
        conversation_id: str,
        updates: dict[str, Any],
        firm_id: str | None = None,
    ) -> Conversation:
        """Shallow-merge resolved entities into the conversation context.

        Raises:
            ConversationExpiredError: If the conversation is terminal.
        """
        for _ in range(_APPEND_ATTEMPTS):
            conversation = self.get_conversation(conversation_id, firm_id)
            self.db.refresh(conversation)
            if conversation.is_terminal:
                raise ConversationExpiredError(conversation_id, conversation.status)
            if not updates:
                return conversation
            merged = {**conversation.context, **updates}
            result = self.db.execute(
                update(Conversation)
                .where(
                    Conversation.id == conversation_id,
                    Conversation.version == conversation.version,
                )
                .values(
                    context_data=json.dumps(merged, sort_keys=True),
                    version=Conversation.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            if result.rowcount == 1:
                break
        conversation = self.get_conversation(conversation_id, firm_id)
        self.db.refresh(conversation)
        return conversation

    # =========================================================================
    # Turns
    # =========================================================================

    def _append_user_message(self, conversation_id: str, text: str, firm_id: str | None) -> Conversation:
        """Check status and append the User message in one transaction."""
        now = self._clock()
        for _ in range(_APPEND_ATTEMPTS):
            conversation = self.get_conversation(conversation_id, firm_id)
            self.db.refresh(conversation)
            if conversation.is_terminal:
                raise ConversationExpiredError(conversation_id, conversation.status)
            if self._is_stale(conversation, now):
                if self._terminate(conversation.id, conversation.version,
                                   ConversationStatus.Expired, REASON_EXPIRED, now):
                    raise ConversationExpiredError(
                        conversation_id, ConversationStatus.Expired.value
                    )
                continue
            if conversation.status == ConversationStatus.AwaitingConfirmation.value:
                pending = self.pending_action(conversation_id)
                raise ActionPendingError(conversation_id, pending.id if pending else None)

            now_iso = to_iso(now)
            result = self.db.execute(
                update(Conversation)
                .where(
                    Conversation.id == conversation_id,
                    Conversation.status == ConversationStatus.Active.value,
                    Conversation.version == conversation.version,
                )
                .values(updated_at=now_iso, version=Conversation.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.rollback()
                continue
            self.db.add(
                ConversationMessage(
                    conversation_id=conversation_id,
                    sequence=self._next_sequence(conversation_id),
                    role=MessageRole.User.value,
                    content=text,
                    created_at=now_iso,
                )
            )
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                continue
            return conversation
        raise ConversationBusyError(conversation_id)

    def _build_context(self, conversation: Conversation) -> ConversationContext:
        limit = self.config.conversation.history_limit
        recent = (
            self.db.query(ConversationMessage)
            .filter(
                ConversationMessage.conversation_id == conversation.id,
                # Undecided proposals are not part of the history yet
                or_(
                    ConversationMessage.action_status.is_(None),
                    ConversationMessage.action_status != ActionStatus.Proposed.value,
                ),
            )
            .order_by(ConversationMessage.sequence.desc())
            .limit(limit)
            .all()
        )
        return ConversationContext(
            conversation_id=conversation.id,
            firm_id=conversation.firm_id,
            user_id=conversation.user_id,
            case_id=conversation.case_id,
            history=[HistoryMessage(m.role, m.content) for m in reversed(recent)],
            context=conversation.context,
            available_actions=self.registry.tool_definitions(),
        )

    def _record_turn_usage(
        self,
        conversation: Conversation,
        input_tokens: int,
        output_tokens: int,
        duration_ms: int,
        error: str | None = None,
    ) -> None:
        cost = self.pricing.cost_for(self.provider.model, input_tokens, output_tokens)
        self.ledger.record_usage(
            feature=FEATURE_CONVERSATION_TURN,
            model=self.provider.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_eur=cost,
            firm_id=conversation.firm_id,
            user_id=conversation.user_id,
            entity_type=ENTITY_CONVERSATION,
            entity_id=conversation.id,
            duration_ms=duration_ms,
            error=error,
        )

    async def _call_model(self, conversation: Conversation) -> ModelTurn:
        """Generate a turn within the tier budget; always writes one ledger entry."""
        context = self._build_context(conversation)
        timeout_ms = self.timeout_ms
        started = time.monotonic()
        try:
            turn = await asyncio.wait_for(self.provider.generate(context), timeout=timeout_ms / 1000)
        except TimeoutError as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            error = ModelTimeoutError(self.provider.model, timeout_ms)
            self._record_turn_usage(conversation, 0, 0, duration_ms, error=error.reason)
            logger.warning(
                "Model %s timed out after %dms on conversation %s",
                self.provider.model, timeout_ms, conversation.id,
            )
            raise error from e
        except ModelProviderError as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            self._record_turn_usage(conversation, 0, 0, duration_ms, error=e.reason)
            logger.warning(
                "Model %s failed on conversation %s: %s",
                self.provider.model, conversation.id, e.reason,
            )
            raise
        except Exception as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            reason = sanitize_error_message(str(e) or type(e).__name__, 500)
            self._record_turn_usage(conversation, 0, 0, duration_ms, error=reason)
            raise ModelProviderError(self.provider.model, reason) from e

        duration_ms = turn.latency_ms
        if duration_ms is None:
            duration_ms = int((time.monotonic() - started) * 1000)
        self._record_turn_usage(conversation, turn.input_tokens, turn.output_tokens, duration_ms)
        turn.latency_ms = duration_ms
        return turn

    def _store_assistant_turn(
        self,
        conversation_id: str,
        turn: ModelTurn,
        action_type: str | None,
        payload_json: str | None,
        preview: str | None,
    ) -> ConversationMessage:
        """Append the Assistant message and, for a proposal, flip the status.

        A proposal that lands in a terminal conversation, or while another
        action is pending, is stored already Rejected.
        """
        attempt = 0
        while True:
            attempt += 1
            now_iso = to_iso(self._clock())
            message = ConversationMessage(
                conversation_id=conversation_id,
                role=MessageRole.Assistant.value,
                content=turn.text or preview or "",
                intent=turn.intent,
                confidence=turn.confidence,
                tokens_used=turn.input_tokens + turn.output_tokens,
                model_used=self.provider.model,
                latency_ms=turn.latency_ms,
                created_at=now_iso,
            )
            if action_type is not None:
                message.action_type = action_type
                message.action_payload = payload_json
                message.action_preview = preview
                flipped = self.db.execute(
                    update(Conversation)
                    .where(
                        Conversation.id == conversation_id,
                        Conversation.status == ConversationStatus.Active.value,
                    )
                    .values(
                        status=ConversationStatus.AwaitingConfirmation.value,
                        updated_at=now_iso,
                        version=Conversation.version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if flipped.rowcount == 1:
                    message.action_status = ActionStatus.Proposed.value
                else:
                    status = (
                        self.db.query(Conversation.status)
                        .filter(Conversation.id == conversation_id)
                        .scalar()
                    )
                    reason = (
                        REASON_ANOTHER_PENDING
                        if status == ConversationStatus.AwaitingConfirmation.value
                        else REASON_CLOSED
                    )
                    message.action_status = ActionStatus.Rejected.value
                    message.action_result = _decision(
                        ActionStatus.Rejected, False, reason.replace(" ", "_"), reason, now_iso
                    )
                    logger.warning(
                        "Proposal %s on conversation %s stored as Rejected: %s",
                        action_type, conversation_id, reason,
                    )
            else:
                self.db.execute(
                    update(Conversation)
                    .where(
                        Conversation.id == conversation_id,
                        Conversation.status.in_(LIVE_CONVERSATION_STATUSES),
                    )
                    .values(updated_at=now_iso, version=Conversation.version + 1)
                    .execution_options(synchronize_session=False)
                )
            message.sequence = self._next_sequence(conversation_id)
            self.db.add(message)
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                if attempt >= _APPEND_ATTEMPTS:
                    raise
                continue
            self.db.refresh(message)
            return message

    async def post_user_message(
        self, conversation_id: str, text: str, firm_id: str | None = None
    ) -> ConversationMessage:
        """Append a user message and generate the assistant reply.

        Args:
            conversation_id: Target conversation.
            text: User message text.
            firm_id: Caller's firm, for isolation.

        Returns:
            The Assistant message (carrying the proposal, if any).

        Raises:
            ValueError: If the text is blank.
            NotFoundError: If the conversation does not exist.
            ConversationExpiredError: If the conversation is terminal.
            ActionPendingError: If an action awaits a decision.
            ModelTimeoutError: If the call exceeded the tier budget.
            ModelProviderError: If the call failed otherwise.
            UnknownActionTypeError: If the assistant proposed an
                unregistered action (its text is still stored).
            InvalidActionPayloadError: If the proposed payload does not
                match its schema (its text is still stored).
        """
        if self.provider is None:
            raise RuntimeError("ConversationEngine has no model provider")
        text = (text or "").strip()
        if not text:
            raise ValueError("Message text must not be empty")

        conversation = self._append_user_message(conversation_id, text, firm_id)
        turn = await self._call_model(conversation)

        action_type = payload_json = preview = None
        proposal_error: UnknownActionTypeError | InvalidActionPayloadError | None = None
        if turn.proposed_action is not None:
            proposed = turn.proposed_action
            try:
                payload = self.registry.validate(proposed.action_type, proposed.payload)
            except (UnknownActionTypeError, InvalidActionPayloadError) as e:
                proposal_error = e
                logger.warning(
                    "Discarded proposal %s on conversation %s: %s",
                    proposed.action_type, conversation_id, e,
                )
            else:
                action_type = proposed.action_type
                payload_json = payload.model_dump_json()
                preview = self.registry.describe(action_type, payload)

        message = self._store_assistant_turn(conversation_id, turn, action_type, payload_json, preview)
        if action_type is not None:
            logger.info(
                "Action %s proposed on conversation %s (message %s, status %s)",
                action_type, conversation_id, message.id, message.action_status,
            )

        if turn.context_updates:
            try:
                self.update_context(conversation_id, turn.context_updates)
            except ConversationExpiredError:
                logger.info("Context updates dropped: conversation %s closed", conversation_id)

        if proposal_error is not None:
            raise proposal_error
        return message

    # =========================================================================
    # Decisions
    # =========================================================================

    def _load_decision_target(
        self, conversation_id: str, message_id: str, firm_id: str | None
    ) -> tuple[Conversation, ConversationMessage]:
        conversation = self.get_conversation(conversation_id, firm_id)
        self.db.refresh(conversation)
        message = self._get_message(conversation_id, message_id)
        if message is None or message.action_type is None:
            raise StaleActionError(conversation_id, message_id, reason="no action on this message")
        self.db.refresh(message)
        return conversation, message

    def _require_pending(self, conversation: Conversation, message: ConversationMessage) -> None:
        if message.action_status != ActionStatus.Proposed.value:
            raise StaleActionError(
                conversation.id, message.id, reason=f"action is {message.action_status}"
            )
        if conversation.status != ConversationStatus.AwaitingConfirmation.value:
            raise StaleActionError(
                conversation.id, message.id, reason=f"conversation is {conversation.status}"
            )

    def _finish_decision(
        self, conversation_id: str, system_text: str, now_iso: str
    ) -> None:
        """Return the conversation to Active and note the outcome; caller commits."""
        back = self.db.execute(
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                Conversation.status == ConversationStatus.AwaitingConfirmation.value,
            )
            .values(
                status=ConversationStatus.Active.value,
                updated_at=now_iso,
                version=Conversation.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if back.rowcount == 1:
            self._append_system_message(conversation_id, system_text)

    @staticmethod
    def _result_from_message(message: ConversationMessage, replayed: bool) -> ExecutionResult:
        result = message.result or {}
        return ExecutionResult(
            conversation_id=message.conversation_id,
            message_id=message.id,
            action_type=message.action_type,
            status=ActionStatus(message.action_status),
            ok=bool(result.get("ok")),
            reason_code=result.get("reason_code"),
            detail=result.get("detail", ""),
            entity_type=result.get("entity_type"),
            entity_id=result.get("entity_id"),
            replayed=replayed,
        )

    async def confirm_pending_action(
        self,
        conversation_id: str,
        message_id: str,
        modifications: dict[str, Any] | None = None,
        firm_id: str | None = None,
    ) -> ExecutionResult:
        """Confirm and execute the pending action, at most once.

        Confirming an action that already reached Executed or Failed
        returns the stored outcome without calling the executor again.

        Args:
            conversation_id: Conversation holding the action.
            message_id: Message carrying the Proposed action.
            modifications: Payload fields to override before execution.
            firm_id: Caller's firm, for isolation.

        Returns:
            ExecutionResult with the terminal status.

        Raises:
            StaleActionError: If the action is not the current pending
                one, or a concurrent decision won.
            InvalidActionPayloadError: If the modifications make the
                payload invalid (the action stays Proposed).
        """
        conversation, message = self._load_decision_target(conversation_id, message_id, firm_id)
        if message.action_status in (ActionStatus.Executed.value, ActionStatus.Failed.value):
            logger.info("Confirm replayed for message %s (%s)", message_id, message.action_status)
            return self._result_from_message(message, replayed=True)
        self._require_pending(conversation, message)

        action_type = message.action_type
        raw_payload = {**(message.payload or {}), **(modifications or {})}
        payload = self.registry.validate(action_type, raw_payload)

        won = self.db.execute(
            update(ConversationMessage)
            .where(
                ConversationMessage.id == message_id,
                ConversationMessage.action_status == ActionStatus.Proposed.value,
                ConversationMessage.version == message.version,
            )
            .values(
                action_status=ActionStatus.Confirmed.value,
                action_payload=payload.model_dump_json(),
                version=ConversationMessage.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if won.rowcount != 1:
            logger.warning("Lost confirm race on message %s", message_id)
            raise StaleActionError(conversation_id, message_id, reason="decided concurrently")

        logger.info(
            "Action %s confirmed on message %s: %s",
            action_type, message_id, redact_payload(payload),
        )
        outcome = await self.registry.execute(
            action_type,
            payload,
            ExecutionContext(
                firm_id=conversation.firm_id,
                user_id=conversation.user_id,
                conversation_id=conversation_id,
                message_id=message_id,
                case_id=conversation.case_id,
            ),
        )

        status = ActionStatus.Executed if outcome.ok else ActionStatus.Failed
        detail = sanitize_error_message(outcome.message, 1000) or ""
        now_iso = to_iso(self._clock())
        self.db.execute(
            update(ConversationMessage)
            .where(
                ConversationMessage.id == message_id,
                ConversationMessage.action_status == ActionStatus.Confirmed.value,
            )
            .values(
                action_status=status.value,
                action_result=_decision(
                    status, outcome.ok, outcome.reason_code, detail, now_iso,
                    outcome.entity_type, outcome.entity_id,
                ),
                version=ConversationMessage.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if outcome.ok:
            system_text = f"Action completed: {detail or action_type}"
        else:
            system_text = format_action_failure(detail or outcome.reason_code or "unknown error")
        self._finish_decision(conversation_id, system_text, now_iso)
        self.db.commit()

        if outcome.ok:
            logger.info("Action %s executed (message %s)", action_type, message_id)
        else:
            logger.warning(
                "Action %s failed (message %s): %s %s",
                action_type, message_id, outcome.reason_code, detail,
            )
        return ExecutionResult(
            conversation_id=conversation_id,
            message_id=message_id,
            action_type=action_type,
            status=status,
            ok=outcome.ok,
            reason_code=outcome.reason_code,
            detail=detail,
            entity_type=outcome.entity_type,
            entity_id=outcome.entity_id,
        )

    def reject_pending_action(
        self,
        conversation_id: str,
        message_id: str,
        reason: str | None = None,
        firm_id: str | None = None,
    ) -> Conversation:
        """Reject the pending action without executing it.

        Raises:
            StaleActionError: If the action is not the current pending
                one, or a concurrent decision won.
        """
        conversation, message = self._load_decision_target(conversation_id, message_id, firm_id)
        self._require_pending(conversation, message)

        detail = sanitize_error_message(reason, 1000) or "rejected by user"
        now_iso = to_iso(self._clock())
        won = self.db.execute(
            update(ConversationMessage)
            .where(
                ConversationMessage.id == message_id,
                ConversationMessage.action_status == ActionStatus.Proposed.value,
                ConversationMessage.version == message.version,
            )
            .values(
                action_status=ActionStatus.Rejected.value,
                action_result=_decision(
                    ActionStatus.Rejected, False, "rejected_by_user", detail, now_iso
                ),
                version=ConversationMessage.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if won.rowcount != 1:
            self.db.rollback()
            logger.warning("Lost reject race on message %s", message_id)
            raise StaleActionError(conversation_id, message_id, reason="decided concurrently")
        self._finish_decision(conversation_id, f"Action cancelled: {detail}", now_iso)
        self.db.commit()
        logger.info("Action %s rejected (message %s)", message.action_type, message_id)

        conversation = self.get_conversation(conversation_id, firm_id)
        self.db.refresh(conversation)
        return conversation
