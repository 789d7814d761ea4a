"""
Pytest configuration and shared fixtures.

Test environment variables are set here before any anonchat import so the
settings, engine and security log pick them up.
"""

import os
import tempfile

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_anonchat.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("SECURITY_LOG_DIR", tempfile.mkdtemp(prefix="anonchat-seclog-"))
os.environ.setdefault("FAILED_LOGIN_DELAY_MS", "0")
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from anonchat.config import get_settings
get_settings.cache_clear()

from anonchat.main import app
from anonchat.storage import Base, SessionLocal, engine, create_admin, create_conversation
from anonchat.utils import hash_password, utcnow


ADMIN_USER = "alice"
ADMIN_PASSWORD = "correct-horse-battery"


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    # Cleanup - drop all tables after test
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(client):
    """Database session on the same schema the client uses."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def admin_account(db):
    return create_admin(db, ADMIN_USER, hash_password(ADMIN_PASSWORD))


@pytest.fixture
def conversation(db):
    return create_conversation(db, "CONVA001", "203.0.113.5", utcnow(), 24)


@pytest.fixture
def other_conversation(db):
    return create_conversation(db, "CONVB002", "203.0.113.6", utcnow(), 24)


def csrf(client, purpose: str) -> str:
    """Fetch the session's CSRF token for a purpose."""
    response = client.get("/api/csrf", params={"purpose": purpose})
    assert response.status_code == 200
    return response.json()["data"]["csrf"]


def login(client, user: str = ADMIN_USER, password: str = ADMIN_PASSWORD):
    token = csrf(client, "admin-login")
    return client.post(
        "/api/admin-login",
        json={"user": user, "password": password, "csrf": token},
    )


def chat(client, action: str, conversation_id: int, **fields):
    token = csrf(client, "chat")
    body = {"action": action, "conversation_id": conversation_id, "csrf": token}
    body.update(fields)
    return client.post("/api/chat", json=body)


@pytest.fixture
def admin_client(client, admin_account):
    """Client whose session holds an admin claim."""
    response = login(client)
    assert response.status_code == 200
    return client


@pytest.fixture
def participant_client(conversation):
    """Second client joined to `conversation` as the anonymous participant."""
    # No context manager: the lifespan (and its session store) belongs to `client`
    participant = TestClient(app)
    token = csrf(participant, "join")
    response = participant.post("/api/join", json={"code": conversation.code, "csrf": token})
    assert response.status_code == 200
    return participant
