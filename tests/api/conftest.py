"""Pytest fixtures for API tests.

Provides a test client wired to an in-memory database, the recording
executor registry and a scripted model provider.
"""

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from caseassist.api.main import create_app
from caseassist.config import CaseAssistConfig
from caseassist.db.connection import _set_sqlite_pragma, get_db
from caseassist.db.models import Base

@pytest.fixture
def test_db() -> Generator[Session, None, None]:
    """Create an in-memory SQLite database for testing.

    Creates all tables, yields a session, and cleans up after test.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(engine, "connect", _set_sqlite_pragma)
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


def _client(test_db: Session, **app_kwargs) -> Generator[TestClient, None, None]:
    app = create_app(config=CaseAssistConfig(), init_database=False, **app_kwargs)

    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def client(test_db, registry, provider) -> Generator[TestClient, None, None]:
    """TestClient with the scripted provider and recording executor."""
    yield from _client(test_db, registry=registry, provider=provider)


@pytest.fixture
def client_without_provider(test_db, registry, monkeypatch) -> Generator[TestClient, None, None]:
    """TestClient with no model provider available."""
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    yield from _client(test_db, registry=registry, provider=None)
