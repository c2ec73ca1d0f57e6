"""Tests for the operator CLI commands."""

import json
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from typer.testing import CliRunner

from caseassist.cli import main as cli_main
from caseassist.db.models import BatchJobStatus, Conversation, ConversationStatus
from caseassist.services.actions import build_default_registry
from caseassist.services.batch_tracker import BatchJobTracker
from caseassist.services.conversation_engine import ConversationEngine
from caseassist.services.cost_ledger import CostLedger

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_db(db_session, monkeypatch):
    """Route every CLI command to the in-memory session."""

    @contextmanager
    def _context():
        yield db_session
        db_session.commit()

    monkeypatch.setattr(cli_main, "get_db_context", _context)
    monkeypatch.setattr(cli_main, "_config_path", None)
    return db_session


class TestInitDb:
    def test_creates_tables(self, monkeypatch):
        calls = []
        monkeypatch.setattr(cli_main, "init_db", lambda: calls.append(True))

        result = runner.invoke(cli_main.app, ["init-db"])

        assert result.exit_code == 0
        assert calls == [True]
        assert "Database initialized" in result.output


class TestReap:
    def _open_idle(self, db_session, hours_ago: float) -> Conversation:
        opened_at = datetime.now(UTC) - timedelta(hours=hours_ago)
        engine = ConversationEngine(
            db_session, build_default_registry(), None, clock=lambda: opened_at
        )
        return engine.open_or_resume_conversation("firm-1", "user-1", "case-1")

    def test_expires_idle_conversations(self, cli_db):
        conversation = self._open_idle(cli_db, hours_ago=72)

        result = runner.invoke(cli_main.app, ["reap"])

        assert result.exit_code == 0
        assert "Expired 1 conversation(s)." in result.output
        cli_db.refresh(conversation)
        assert conversation.status == ConversationStatus.Expired.value

    def test_recent_conversation_survives(self, cli_db):
        conversation = self._open_idle(cli_db, hours_ago=1)

        result = runner.invoke(cli_main.app, ["reap"])

        assert "Expired 0 conversation(s)." in result.output
        cli_db.refresh(conversation)
        assert conversation.status == ConversationStatus.Active.value

    def test_window_override(self, cli_db):
        self._open_idle(cli_db, hours_ago=3)

        result = runner.invoke(cli_main.app, ["reap", "--window-hours", "2"])

        assert "Expired 1 conversation(s)." in result.output

    def test_non_positive_window_rejected(self):
        result = runner.invoke(cli_main.app, ["reap", "--window-hours", "0"])
        assert result.exit_code == 1


class TestJobsList:
    @pytest.fixture
    def jobs(self, cli_db):
        tracker = BatchJobTracker(cli_db)
        done = tracker.start_job("firm-1", "email-summary", total_items=1)
        tracker.record_item_outcome(done.id, success=True)
        tracker.complete_job(done.id)
        running = tracker.start_job("firm-1", "deadline-scan")
        other = tracker.start_job("firm-2", "email-summary")
        return done, running, other

    def test_table_output(self, jobs):
        result = runner.invoke(cli_main.app, ["jobs", "list", "--firm", "firm-1"])

        assert result.exit_code == 0
        assert "Batch jobs" in result.output
        assert "firm-2" not in result.output

    def test_json_output(self, jobs):
        done, running, _ = jobs

        result = runner.invoke(cli_main.app, ["jobs", "list", "--firm", "firm-1", "--json"])

        assert result.exit_code == 0
        rows = json.loads(result.output)
        assert {r["id"] for r in rows} == {done.id, running.id}

    def test_status_filter(self, jobs):
        done, _, _ = jobs

        result = runner.invoke(
            cli_main.app,
            ["jobs", "list", "--status", BatchJobStatus.Completed.value, "--json"],
        )

        rows = json.loads(result.output)
        assert [r["id"] for r in rows] == [done.id]
        assert rows[0]["items_processed"] == 1

    def test_unknown_status(self, jobs):
        result = runner.invoke(cli_main.app, ["jobs", "list", "--status", "Paused"])

        assert result.exit_code == 1
        assert "Unknown status" in result.output

    def test_empty(self):
        result = runner.invoke(cli_main.app, ["jobs", "list"])
        assert "No batch jobs found." in result.output


class TestUsageSummary:
    @pytest.fixture
    def usage(self, cli_db):
        ledger = CostLedger(cli_db)
        ledger.record_usage(
            feature="conversation-turn", model="claude-haiku-4-5", input_tokens=1000,
            output_tokens=500, cost_eur=Decimal("0.003220"), firm_id="firm-1",
            user_id="user-1",
        )
        ledger.record_usage(
            feature="email-summary", model="claude-haiku-4-5", input_tokens=10,
            output_tokens=10, cost_eur=Decimal("1"), firm_id="firm-2",
        )

    def test_json_summary(self, usage):
        result = runner.invoke(cli_main.app, ["usage", "summary", "--firm", "firm-1", "--json"])

        assert result.exit_code == 0
        body = json.loads(result.output)
        assert body["firm_id"] == "firm-1"
        assert body["calls"] == 1
        assert body["total_tokens"] == 1500
        assert Decimal(body["total_cost_eur"]) == Decimal("0.003220")
        assert [row["feature"] for row in body["by_feature"]] == ["conversation-turn"]

    def test_table_summary(self, usage):
        result = runner.invoke(cli_main.app, ["usage", "summary", "--firm", "firm-1"])

        assert result.exit_code == 0
        assert "AI usage for firm-1" in result.output
        assert "conversation-turn" in result.output

    def test_firm_required(self):
        result = runner.invoke(cli_main.app, ["usage", "summary"])
        assert result.exit_code != 0
