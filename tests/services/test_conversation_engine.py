"""Tests for the conversation engine's propose/confirm/execute protocol."""

import asyncio
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import false
from sqlalchemy.exc import IntegrityError

from caseassist.config import CaseAssistConfig, ModelTierConfig, TierBudget
from caseassist.db.models import (
    ActionStatus,
    Conversation,
    ConversationMessage,
    ConversationStatus,
    MessageRole,
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
)
from caseassist.services.action_registry import EXECUTOR_ERROR, ExecutorOutcome
from caseassist.services.actions import build_default_registry
from caseassist.services.conversation_engine import (
    ENTITY_CONVERSATION,
    FEATURE_CONVERSATION_TURN,
    ConversationEngine,
)
from caseassist.services.cost_ledger import CostLedger
from caseassist.services.model_provider import ModelTier, ScriptedProvider
from tests.helpers import RecordingExecutor, answer_turn, deadline_turn

FIRM = "firm-1"
USER = "user-1"
CASE = "case-1"


async def propose(engine: ConversationEngine, provider: ScriptedProvider, **turn_kwargs):
    """Open a conversation and drive it to an action awaiting confirmation."""
    conversation = engine.open_or_resume_conversation(FIRM, USER, CASE)
    provider.enqueue(deadline_turn(**turn_kwargs))
    message = await engine.post_user_message(
        conversation.id, "Add the statement of defence deadline", FIRM
    )
    return conversation, message


def messages_of(db, conversation_id: str) -> list[ConversationMessage]:
    db.expire_all()
    return (
        db.query(ConversationMessage)
        .filter(ConversationMessage.conversation_id == conversation_id)
        .order_by(ConversationMessage.sequence)
        .all()
    )


def assert_action_invariants(db, conversation_id: str) -> None:
    messages = messages_of(db, conversation_id)
    proposed = [m for m in messages if m.action_status == ActionStatus.Proposed.value]
    assert len(proposed) <= 1
    for m in messages:
        assert (m.action_type is None) == (m.action_status is None)
    conversation = db.get(Conversation, conversation_id)
    if proposed:
        assert conversation.status == ConversationStatus.AwaitingConfirmation.value


class TestEngineConstruction:
    """Tests for ConversationEngine setup."""

    def test_unpriced_model_rejected(self, db_session, registry):
        with pytest.raises(PricingNotFoundError):
            ConversationEngine(db_session, registry, ScriptedProvider(model="unpriced-model"))

    def test_provider_optional_for_maintenance(self, db_session, registry):
        engine = ConversationEngine(db_session, registry, None)
        assert engine.expire_stale_conversations() == 0

    @pytest.mark.asyncio
    async def test_posting_without_provider_fails(self, db_session, registry):
        engine = ConversationEngine(db_session, registry, None)
        conversation = engine.open_or_resume_conversation(FIRM, USER)
        with pytest.raises(RuntimeError):
            await engine.post_user_message(conversation.id, "hello")

    def test_timeout_follows_provider_tier(self, db_session, registry, config):
        engine = ConversationEngine(
            db_session, registry, ScriptedProvider(tier=ModelTier.standard), config=config
        )
        assert engine.timeout_ms == config.model_tiers.standard.p99_ms


class TestOpenConversation:
    """Tests for open_or_resume_conversation."""

    def test_creates_active_conversation(self, conv_engine):
        conversation = conv_engine.open_or_resume_conversation(FIRM, USER, CASE)

        assert conversation.status == ConversationStatus.Active.value
        assert conversation.case_id == CASE
        assert conversation.context == {}
        assert conversation.closed_at is None

    def test_resumes_live_conversation(self, conv_engine):
        first = conv_engine.open_or_resume_conversation(FIRM, USER, CASE)
        second = conv_engine.open_or_resume_conversation(FIRM, USER, CASE)
        assert first.id == second.id

    def test_scope_includes_case_and_user(self, conv_engine):
        with_case = conv_engine.open_or_resume_conversation(FIRM, USER, CASE)
        without_case = conv_engine.open_or_resume_conversation(FIRM, USER)
        other_user = conv_engine.open_or_resume_conversation(FIRM, "user-2", CASE)
        assert len({with_case.id, without_case.id, other_user.id}) == 3

    def test_stale_conversation_expired_on_open(self, conv_engine, db_session, clock):
        old = conv_engine.open_or_resume_conversation(FIRM, USER, CASE)
        clock.advance(hours=25)

        fresh = conv_engine.open_or_resume_conversation(FIRM, USER, CASE)

        assert fresh.id != old.id
        db_session.expire_all()
        expired = db_session.get(Conversation, old.id)
        assert expired.status == ConversationStatus.Expired.value
        assert expired.live_key is None

    def test_open_after_close_starts_new_conversation(self, conv_engine):
        first = conv_engine.open_or_resume_conversation(FIRM, USER, CASE)
        conv_engine.close_conversation(first.id)
        second = conv_engine.open_or_resume_conversation(FIRM, USER, CASE)
        assert second.id != first.id

    def test_other_firm_cannot_read(self, conv_engine):
        conversation = conv_engine.open_or_resume_conversation(FIRM, USER)
        with pytest.raises(NotFoundError):
            conv_engine.get_conversation(conversation.id, firm_id="firm-2")

    def test_separator_characters_do_not_merge_scopes(self, conv_engine):
        acme_legal = conv_engine.open_or_resume_conversation("acme|legal", "alice")
        acme = conv_engine.open_or_resume_conversation("acme", "legal|alice")

        assert acme.id != acme_legal.id
        assert acme.firm_id == "acme"
        assert acme.context == {}

    def test_case_named_dash_is_not_the_caseless_scope(self, conv_engine):
        caseless = conv_engine.open_or_resume_conversation(FIRM, USER)
        dash_case = conv_engine.open_or_resume_conversation(FIRM, USER, "-")

        assert caseless.id != dash_case.id
        assert dash_case.case_id == "-"

    def test_concurrent_opens_converge(self, session_factory, registry, provider, config, clock,
                                       monkeypatch):
        first_db, second_db = session_factory(), session_factory()
        try:
            first = ConversationEngine(first_db, registry, provider, config=config, clock=clock)
            second = ConversationEngine(second_db, registry, provider, config=config, clock=clock)
            # Second instance looks up the scope before the first one commits
            real_query = second_db.query
            lookups = []

            def query_before_commit(*entities):
                query = real_query(*entities)
                if not lookups:
                    lookups.append(entities)
                    return query.filter(false())
                return query

            monkeypatch.setattr(second_db, "query", query_before_commit)
            winner = first.open_or_resume_conversation(FIRM, USER, CASE)

            loser = second.open_or_resume_conversation(FIRM, USER, CASE)

            assert lookups
            assert loser.id == winner.id
            live = (
                first_db.query(Conversation)
                .filter(Conversation.firm_id == FIRM, Conversation.case_id == CASE)
                .all()
            )
            assert [c.id for c in live] == [winner.id]
        finally:
            first_db.close()
            second_db.close()


class TestPostUserMessage:
    """Tests for post_user_message."""

    @pytest.mark.asyncio
    async def test_answer_turn_appends_user_and_assistant(self, conv_engine, provider, db_session):
        conversation = conv_engine.open_or_resume_conversation(FIRM, USER, CASE)
        provider.enqueue(answer_turn())

        reply = await conv_engine.post_user_message(conversation.id, "When is the hearing?", FIRM)

        assert reply.role == MessageRole.Assistant.value
        assert reply.content == "The hearing is on Tuesday."
        assert reply.tokens_used == 1500
        assert reply.model_used == "claude-haiku-4-5"
        assert reply.action_type is None
        messages = messages_of(db_session, conversation.id)
        assert [(m.sequence, m.role) for m in messages] == [(1, "User"), (2, "Assistant")]
        assert db_session.get(Conversation, conversation.id).status == "Active"

    @pytest.mark.asyncio
    async def test_turn_usage_is_recorded(self, conv_engine, provider, db_session):
        conversation = conv_engine.open_or_resume_conversation(FIRM, USER, CASE)
        provider.enqueue(answer_turn())

        await conv_engine.post_user_message(conversation.id, "When is the hearing?")

        entries = CostLedger(db_session).list_entries(FIRM)
        assert len(entries) == 1
        entry = entries[0]
        assert entry.feature == FEATURE_CONVERSATION_TURN
        assert entry.entity_type == ENTITY_CONVERSATION
        assert entry.entity_id == conversation.id
        assert entry.user_id == USER
        assert entry.cost_eur == Decimal("0.003220")
        assert entry.error is None

    @pytest.mark.asyncio
    async def test_history_sent_to_provider(self, conv_engine, provider):
        conversation = conv_engine.open_or_resume_conversation(FIRM, USER, CASE)
        provider.enqueue(answer_turn(), answer_turn("Room 4."))

        await conv_engine.post_user_message(conversation.id, "When is the hearing?")
        await conv_engine.post_user_message(conversation.id, "Which room?")

        context = provider.calls[-1]
        assert [m.role for m in context.history] == ["User", "Assistant", "User"]
        assert context.last_user_message == "Which room?"
        assert "CreateDeadline" in [tool["name"] for tool in context.available_actions]

    @pytest.mark.asyncio
    async def test_proposal_awaits_confirmation(self, conv_engine, provider, db_session):
        conversation, message = await propose(conv_engine, provider)

        assert message.action_type == "CreateDeadline"
        assert message.action_status == ActionStatus.Proposed.value
        assert message.payload["due_date"] == "2026-10-23"
        assert message.action_preview == "Add deadline 'Statement of defence' on 2026-10-23"
        db_session.expire_all()
        assert db_session.get(Conversation, conversation.id).status == "AwaitingConfirmation"
        assert conv_engine.pending_action(conversation.id).id == message.id

    @pytest.mark.asyncio
    async def test_message_while_pending_is_refused(self, conv_engine, provider):
        conversation, message = await propose(conv_engine, provider)

        with pytest.raises(ActionPendingError) as exc_info:
            await conv_engine.post_user_message(conversation.id, "And another thing")

        assert exc_info.value.message_id == message.id
        assert provider.remaining == 0
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_blank_text_rejected(self, conv_engine):
        conversation = conv_engine.open_or_resume_conversation(FIRM, USER)
        with pytest.raises(ValueError):
            await conv_engine.post_user_message(conversation.id, "   ")

    @pytest.mark.asyncio
    async def test_persistent_write_conflict_reports_busy(
        self, conv_engine, provider, db_session, monkeypatch
    ):
        conversation = conv_engine.open_or_resume_conversation(FIRM, USER, CASE)
        attempts = []

        def conflicting_commit():
            attempts.append(1)
            raise IntegrityError("INSERT INTO conversation_messages", {}, Exception("UNIQUE"))

        monkeypatch.setattr(db_session, "commit", conflicting_commit)

        with pytest.raises(ConversationBusyError) as exc_info:
            await conv_engine.post_user_message(conversation.id, "When is the hearing?")

        assert exc_info.value.code == "E-1006"
        assert exc_info.value.conversation_id == conversation.id
        assert not isinstance(exc_info.value, StaleActionError)
        assert len(attempts) == 3
        assert provider.calls == []
        assert messages_of(db_session, conversation.id) == []

    @pytest.mark.asyncio
    async def test_unknown_action_type_keeps_text(self, conv_engine, provider, db_session):
        conversation = conv_engine.open_or_resume_conversation(FIRM, USER, CASE)
        provider.enqueue(deadline_turn(action_type="FileLawsuit"))

        with pytest.raises(UnknownActionTypeError):
            await conv_engine.post_user_message(conversation.id, "Sue them")

        messages = messages_of(db_session, conversation.id)
        assert [m.role for m in messages] == ["User", "Assistant"]
        assert messages[1].action_type is None
        assert messages[1].content == "Shall I add the deadline?"
        assert db_session.get(Conversation, conversation.id).status == "Active"
        assert len(CostLedger(db_session).list_entries(FIRM)) == 1

    @pytest.mark.asyncio
    async def test_invalid_payload_is_not_proposed(self, conv_engine, provider, db_session):
        conversation = conv_engine.open_or_resume_conversation(FIRM, USER, CASE)
        provider.enqueue(deadline_turn(payload={"title": "Reply", "case_id": CASE}))

        with pytest.raises(InvalidActionPayloadError) as exc_info:
            await conv_engine.post_user_message(conversation.id, "Add a deadline")

        assert "due_date" in exc_info.value.reason
        assert conv_engine.pending_action(conversation.id) is None
        assert_action_invariants(db_session, conversation.id)

    @pytest.mark.asyncio
    async def test_context_updates_are_merged(self, conv_engine, provider, db_session):
        conversation = conv_engine.open_or_resume_conversation(FIRM, USER, CASE)
        provider.enqueue(answer_turn(context_updates={"client_id": "cl-9"}))

        await conv_engine.post_user_message(conversation.id, "Who is the client?")

        db_session.expire_all()
        assert db_session.get(Conversation, conversation.id).context == {"client_id": "cl-9"}

    @pytest.mark.asyncio
    async def test_provider_error_is_recorded_and_raised(self, conv_engine, provider, db_session):
        conversation = conv_engine.open_or_resume_conversation(FIRM, USER, CASE)
        provider.enqueue(ModelProviderError("claude-haiku-4-5", "overloaded"))

        with pytest.raises(ModelProviderError):
            await conv_engine.post_user_message(conversation.id, "Hello")

        (entry,) = CostLedger(db_session).list_entries(FIRM)
        assert entry.error == "overloaded"
        assert entry.output_tokens == 0
        assert entry.cost_micro_eur == 0
        assert [m.role for m in messages_of(db_session, conversation.id)] == ["User"]
        assert db_session.get(Conversation, conversation.id).status == "Active"

    @pytest.mark.asyncio
    async def test_unexpected_provider_exception_is_wrapped(self, conv_engine, provider, db_session):
        conversation = conv_engine.open_or_resume_conversation(FIRM, USER)
        provider.enqueue(RuntimeError("socket closed"))

        with pytest.raises(ModelProviderError, match="socket closed"):
            await conv_engine.post_user_message(conversation.id, "Hello")

        (entry,) = CostLedger(db_session).list_entries(FIRM)
        assert entry.error == "socket closed"

    @pytest.mark.asyncio
    async def test_proposal_after_close_is_stored_rejected(self, db_session, registry, config, clock):
        class ClosingProvider(ScriptedProvider):
            """Closes the conversation while the model call is in flight."""

            async def generate(self, context):
                engine.close_conversation(context.conversation_id)
                return await super().generate(context)

        provider = ClosingProvider([deadline_turn()])
        engine = ConversationEngine(db_session, registry, provider, config=config, clock=clock)
        conversation = engine.open_or_resume_conversation(FIRM, USER, CASE)

        message = await engine.post_user_message(conversation.id, "Add the deadline")

        assert message.action_status == ActionStatus.Rejected.value
        assert message.result["reason_code"] == "conversation_closed"
        assert engine.pending_action(conversation.id) is None
        db_session.expire_all()
        assert db_session.get(Conversation, conversation.id).status == "Completed"


class TestModelTimeout:
    """Tests for the per-tier hard timeout."""

    @pytest.fixture
    def tight_config(self):
        return CaseAssistConfig(
            model_tiers=ModelTierConfig(fast=TierBudget(p95_ms=20, p99_ms=50))
        )

    @pytest.mark.asyncio
    async def test_timeout_raises_and_records_usage(self, db_session, registry, tight_config, clock):
        provider = ScriptedProvider([answer_turn()], delay_seconds=0.5)
        engine = ConversationEngine(
            db_session, registry, provider, config=tight_config, clock=clock
        )
        conversation = engine.open_or_resume_conversation(FIRM, USER, CASE)

        with pytest.raises(ModelTimeoutError) as exc_info:
            await engine.post_user_message(conversation.id, "Summarise the file")

        assert exc_info.value.timeout_ms == 50
        assert exc_info.value.is_retryable
        entries = CostLedger(db_session).list_entries(FIRM)
        assert len(entries) == 1
        assert entries[0].output_tokens == 0
        assert "timeout after 50ms" in entries[0].error
        assert [m.role for m in messages_of(db_session, conversation.id)] == ["User"]
        assert db_session.get(Conversation, conversation.id).status == "Active"


class TestConfirmPendingAction:
    """Tests for confirm_pending_action."""

    @pytest.mark.asyncio
    async def test_confirm_executes_once(self, conv_engine, provider, executor, db_session):
        conversation, message = await propose(conv_engine, provider)

        result = await conv_engine.confirm_pending_action(conversation.id, message.id, firm_id=FIRM)

        assert result.status == ActionStatus.Executed
        assert result.ok
        assert result.entity_type == "deadline"
        assert result.entity_id == "dl-1"
        assert not result.replayed
        assert len(executor.calls) == 1
        payload, context = executor.calls[0]
        assert payload.due_date == date(2026, 10, 23)
        assert context.case_id == CASE
        assert context.message_id == message.id

        messages = messages_of(db_session, conversation.id)
        assert messages[1].action_status == ActionStatus.Executed.value
        assert messages[-1].role == MessageRole.System.value
        assert messages[-1].content == "Action completed: Deadline created"
        assert db_session.get(Conversation, conversation.id).status == "Active"
        assert_action_invariants(db_session, conversation.id)

    @pytest.mark.asyncio
    async def test_second_confirm_replays_outcome(self, conv_engine, provider, executor):
        conversation, message = await propose(conv_engine, provider)

        first = await conv_engine.confirm_pending_action(conversation.id, message.id)
        second = await conv_engine.confirm_pending_action(conversation.id, message.id)

        assert second.replayed
        assert second.status == first.status
        assert second.entity_id == first.entity_id
        assert len(executor.calls) == 1

    @pytest.mark.asyncio
    async def test_modifications_override_payload(self, conv_engine, provider, executor, db_session):
        conversation, message = await propose(conv_engine, provider)

        await conv_engine.confirm_pending_action(
            conversation.id, message.id, modifications={"due_date": "2026-10-30"}
        )

        assert executor.calls[0][0].due_date == date(2026, 10, 30)
        db_session.expire_all()
        assert db_session.get(ConversationMessage, message.id).payload["due_date"] == "2026-10-30"

    @pytest.mark.asyncio
    async def test_invalid_modifications_keep_action_pending(self, conv_engine, provider, executor):
        conversation, message = await propose(conv_engine, provider)

        with pytest.raises(InvalidActionPayloadError):
            await conv_engine.confirm_pending_action(
                conversation.id, message.id, modifications={"due_date": "next week"}
            )

        assert executor.calls == []
        assert conv_engine.pending_action(conversation.id).id == message.id

    @pytest.mark.asyncio
    async def test_executor_failure_marks_failed(self, conv_engine, provider, executor, db_session):
        executor.outcome = ExecutorOutcome.failure(
            "calendar_unavailable", "Calendar service unavailable"
        )
        conversation, message = await propose(conv_engine, provider)

        result = await conv_engine.confirm_pending_action(conversation.id, message.id)

        assert result.status == ActionStatus.Failed
        assert not result.ok
        assert result.reason_code == "calendar_unavailable"
        messages = messages_of(db_session, conversation.id)
        assert messages[-1].content == (
            "The action could not be completed: Calendar service unavailable"
        )
        assert db_session.get(Conversation, conversation.id).status == "Active"

    @pytest.mark.asyncio
    async def test_executor_crash_marks_failed(self, conv_engine, provider, executor):
        executor.error = RuntimeError("deadline store down")
        conversation, message = await propose(conv_engine, provider)

        result = await conv_engine.confirm_pending_action(conversation.id, message.id)

        assert result.status == ActionStatus.Failed
        assert result.reason_code == EXECUTOR_ERROR
        assert "deadline store down" in result.detail

    @pytest.mark.asyncio
    async def test_action_without_executor_is_never_proposed(self, conv_engine, provider, db_session):
        conversation = conv_engine.open_or_resume_conversation(FIRM, USER, CASE)
        provider.enqueue(deadline_turn(action_type="CompleteTask", payload={"task_id": "t-1"}))

        with pytest.raises(UnknownActionTypeError):
            await conv_engine.post_user_message(conversation.id, "Close task t-1")

        messages = messages_of(db_session, conversation.id)
        assert all(m.action_status is None for m in messages)
        assert conv_engine.pending_action(conversation.id) is None
        assert db_session.get(Conversation, conversation.id).status == "Active"

    @pytest.mark.asyncio
    async def test_message_without_action_is_stale(self, conv_engine, provider, db_session):
        conversation, _ = await propose(conv_engine, provider)
        user_message = messages_of(db_session, conversation.id)[0]

        with pytest.raises(StaleActionError):
            await conv_engine.confirm_pending_action(conversation.id, user_message.id)

    @pytest.mark.asyncio
    async def test_confirm_after_reject_is_stale(self, conv_engine, provider, executor):
        conversation, message = await propose(conv_engine, provider)
        conv_engine.reject_pending_action(conversation.id, message.id)

        with pytest.raises(StaleActionError):
            await conv_engine.confirm_pending_action(conversation.id, message.id)
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_other_firm_cannot_confirm(self, conv_engine, provider, executor):
        conversation, message = await propose(conv_engine, provider)

        with pytest.raises(NotFoundError):
            await conv_engine.confirm_pending_action(
                conversation.id, message.id, firm_id="firm-2"
            )
        assert executor.calls == []


class TestRejectPendingAction:
    """Tests for reject_pending_action."""

    @pytest.mark.asyncio
    async def test_reject_returns_to_active(self, conv_engine, provider, executor, db_session):
        conversation, message = await propose(conv_engine, provider)

        result = conv_engine.reject_pending_action(conversation.id, message.id, reason="wrong date")

        assert result.status == ConversationStatus.Active.value
        assert executor.calls == []
        messages = messages_of(db_session, conversation.id)
        assert messages[1].action_status == ActionStatus.Rejected.value
        assert messages[1].result["reason_code"] == "rejected_by_user"
        assert messages[-1].content == "Action cancelled: wrong date"
        assert_action_invariants(db_session, conversation.id)

    @pytest.mark.asyncio
    async def test_conversation_continues_after_reject(self, conv_engine, provider):
        conversation, message = await propose(conv_engine, provider)
        conv_engine.reject_pending_action(conversation.id, message.id)
        provider.enqueue(answer_turn("Understood."))

        reply = await conv_engine.post_user_message(conversation.id, "Never mind")

        assert reply.content == "Understood."

    @pytest.mark.asyncio
    async def test_reject_twice_is_stale(self, conv_engine, provider):
        conversation, message = await propose(conv_engine, provider)
        conv_engine.reject_pending_action(conversation.id, message.id)

        with pytest.raises(StaleActionError):
            conv_engine.reject_pending_action(conversation.id, message.id)


class TestConcurrentDecisions:
    """Two service instances (two sessions) deciding on the same action."""

    @pytest.fixture
    def engines(self, session_factory, registry, config, clock):
        provider = ScriptedProvider()
        first_db, second_db = session_factory(), session_factory()
        first = ConversationEngine(first_db, registry, provider, config=config, clock=clock)
        second = ConversationEngine(second_db, registry, provider, config=config, clock=clock)
        yield first, second, provider
        first_db.close()
        second_db.close()

    @pytest.mark.asyncio
    async def test_concurrent_confirms_execute_once(self, engines, executor):
        first, second, provider = engines
        executor.on_call = lambda: asyncio.sleep(0)
        conversation, message = await propose(first, provider)

        results = await asyncio.gather(
            first.confirm_pending_action(conversation.id, message.id),
            second.confirm_pending_action(conversation.id, message.id),
            return_exceptions=True,
        )

        assert len(executor.calls) == 1
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], StaleActionError)
        (winner,) = [r for r in results if not isinstance(r, Exception)]
        assert winner.status == ActionStatus.Executed

    @pytest.mark.asyncio
    async def test_decision_on_stale_read_loses(self, engines, executor, monkeypatch):
        first, second, provider = engines
        conversation, message = await propose(first, provider)
        # Second instance reads the action while it is still Proposed
        second.list_messages(conversation.id)
        await first.confirm_pending_action(conversation.id, message.id)
        monkeypatch.setattr(second.db, "refresh", lambda *args, **kwargs: None)

        with pytest.raises(StaleActionError) as exc_info:
            await second.confirm_pending_action(conversation.id, message.id)
        assert exc_info.value.reason == "decided concurrently"
        assert len(executor.calls) == 1

    @pytest.mark.asyncio
    async def test_confirm_and_reject_race(self, engines, executor):
        first, second, provider = engines
        conversation, message = await propose(first, provider)
        second.reject_pending_action(conversation.id, message.id)

        with pytest.raises(StaleActionError):
            await first.confirm_pending_action(conversation.id, message.id)
        assert executor.calls == []

    def test_reapers_expire_once(self, engines, clock):
        first, second, _ = engines
        first.open_or_resume_conversation(FIRM, USER, CASE)
        clock.advance(hours=30)

        assert first.expire_stale_conversations() + second.expire_stale_conversations() == 1


class TestExpiry:
    """Tests for inactivity expiry."""

    @pytest.mark.asyncio
    async def test_reaper_expires_and_rejects_pending(self, conv_engine, provider, clock, db_session):
        conversation, message = await propose(conv_engine, provider)
        clock.advance(hours=25)

        assert conv_engine.expire_stale_conversations() == 1

        db_session.expire_all()
        expired = db_session.get(Conversation, conversation.id)
        assert expired.status == ConversationStatus.Expired.value
        assert expired.closed_at is not None
        assert expired.live_key is None
        stored = db_session.get(ConversationMessage, message.id)
        assert stored.action_status == ActionStatus.Rejected.value
        assert stored.result["reason_code"] == "conversation_expired"
        assert conv_engine.pending_action(conversation.id) is None

    @pytest.mark.asyncio
    async def test_expired_conversation_refuses_messages(self, conv_engine, provider, clock):
        conversation, message = await propose(conv_engine, provider)
        clock.advance(hours=25)
        conv_engine.expire_stale_conversations()

        with pytest.raises(ConversationExpiredError):
            await conv_engine.post_user_message(conversation.id, "Still there?")
        with pytest.raises(StaleActionError):
            await conv_engine.confirm_pending_action(conversation.id, message.id)

    @pytest.mark.asyncio
    async def test_stale_conversation_expires_on_post(self, conv_engine, provider, clock, db_session):
        conversation = conv_engine.open_or_resume_conversation(FIRM, USER, CASE)
        clock.advance(hours=25)

        with pytest.raises(ConversationExpiredError):
            await conv_engine.post_user_message(conversation.id, "Hello again")

        db_session.expire_all()
        assert db_session.get(Conversation, conversation.id).status == "Expired"
        assert provider.calls == []

    def test_recent_conversation_survives(self, conv_engine, clock):
        conv_engine.open_or_resume_conversation(FIRM, USER, CASE)
        clock.advance(hours=23)
        assert conv_engine.expire_stale_conversations() == 0


class TestCloseConversation:
    """Tests for close_conversation and complete_case_conversations."""

    def test_close_is_idempotent(self, conv_engine):
        conversation = conv_engine.open_or_resume_conversation(FIRM, USER)

        first = conv_engine.close_conversation(conversation.id)
        closed_at = first.closed_at
        second = conv_engine.close_conversation(conversation.id)

        assert second.status == ConversationStatus.Completed.value
        assert second.closed_at == closed_at

    @pytest.mark.asyncio
    async def test_close_rejects_pending_action(self, conv_engine, provider, db_session):
        conversation, message = await propose(conv_engine, provider)

        conv_engine.close_conversation(conversation.id)

        db_session.expire_all()
        stored = db_session.get(ConversationMessage, message.id)
        assert stored.action_status == ActionStatus.Rejected.value
        assert stored.result["reason_code"] == "conversation_closed"

    def test_case_resolution_completes_case_conversations(self, conv_engine, db_session):
        a = conv_engine.open_or_resume_conversation(FIRM, USER, CASE)
        b = conv_engine.open_or_resume_conversation(FIRM, "user-2", CASE)
        other = conv_engine.open_or_resume_conversation(FIRM, USER, "case-2")

        assert conv_engine.complete_case_conversations(FIRM, CASE) == 2

        db_session.expire_all()
        assert db_session.get(Conversation, a.id).status == "Completed"
        assert db_session.get(Conversation, b.id).status == "Completed"
        assert db_session.get(Conversation, other.id).status == "Active"


class TestUpdateContext:
    """Tests for update_context."""

    def test_shallow_merge(self, conv_engine):
        conversation = conv_engine.open_or_resume_conversation(FIRM, USER)
        conv_engine.update_context(conversation.id, {"client_id": "cl-1", "matter": "lease"})

        updated = conv_engine.update_context(conversation.id, {"matter": "tenancy"})

        assert updated.context == {"client_id": "cl-1", "matter": "tenancy"}

    def test_terminal_conversation_refuses_updates(self, conv_engine):
        conversation = conv_engine.open_or_resume_conversation(FIRM, USER)
        conv_engine.close_conversation(conversation.id)

        with pytest.raises(ConversationExpiredError):
            conv_engine.update_context(conversation.id, {"client_id": "cl-1"})


class TestActionInvariants:
    """At most one Proposed action per conversation, across a full session."""

    @pytest.mark.asyncio
    async def test_invariants_hold_through_session(self, conv_engine, provider, db_session):
        conversation, first = await propose(conv_engine, provider)
        assert_action_invariants(db_session, conversation.id)
        await conv_engine.confirm_pending_action(conversation.id, first.id)
        assert_action_invariants(db_session, conversation.id)

        provider.enqueue(deadline_turn(payload={**first.payload, "title": "Reply brief"}))
        second = await conv_engine.post_user_message(conversation.id, "And the reply brief")
        assert_action_invariants(db_session, conversation.id)
        conv_engine.reject_pending_action(conversation.id, second.id)
        assert_action_invariants(db_session, conversation.id)

        statuses = [m.action_status for m in messages_of(db_session, conversation.id) if m.action_type]
        assert statuses == ["Executed", "Rejected"]
