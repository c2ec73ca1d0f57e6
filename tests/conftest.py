"""Root-level pytest fixtures for all tests.

Provides shared fixtures:
- Database fixtures (in-memory SQLite, file-based SQLite for two-session races)
- A controllable clock
- An action registry whose executor records its calls
- A scripted model provider and a conversation engine built on them
"""

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from caseassist.config import CaseAssistConfig, ConversationConfig
from caseassist.db.connection import _set_sqlite_pragma, create_db_engine, init_db
from caseassist.db.models import Base
from caseassist.services.actions import build_default_registry
from caseassist.services.conversation_engine import ConversationEngine
from caseassist.services.model_provider import ScriptedProvider
from tests.helpers import FakeClock, RecordingExecutor


# ============================================================================
# Pytest Markers
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests requiring external services"
    )


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    """In-memory SQLite session with all tables created."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(engine, "connect", _set_sqlite_pragma)
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def session_factory(tmp_path) -> Generator[sessionmaker, None, None]:
    """Session factory over a file database, for tests that need two sessions."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'caseassist-test.db'}")
    init_db(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


# ============================================================================
# Engine collaborators
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def executor() -> RecordingExecutor:
    return RecordingExecutor()


@pytest.fixture
def registry(executor):
    """Built-in registry with CreateDeadline bound to the recording executor."""
    return build_default_registry(executors={"CreateDeadline": executor})


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def config() -> CaseAssistConfig:
    return CaseAssistConfig(conversation=ConversationConfig(inactivity_window_hours=24))


@pytest.fixture
def conv_engine(db_session, registry, provider, config, clock) -> ConversationEngine:
    return ConversationEngine(db_session, registry, provider, config=config, clock=clock)
