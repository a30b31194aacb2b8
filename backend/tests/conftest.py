"""Shared fixtures: in-memory database, API client and fake external clients.

Environment is set BEFORE importing paypulse so Settings never reads a real
.env secret or database.
"""

import os
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["USE_KEYVAULT"] = "false"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from paypulse import models, security
from paypulse.database import get_db
from paypulse.main import app
from paypulse.models import utcnow
from paypulse.services.gmail_service import GmailMessage
from paypulse.store import ServiceStore, UserStore


# ============================================================================
# DATABASE
# ============================================================================


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    models.Base.metadata.create_all(bind=engine)
    yield engine
    models.Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user(db_session):
    user = models.User(email="owner@example.com", name="Bill Owner")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def other_user(db_session):
    user = models.User(email="someone@example.com", name="Someone Else")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def prefs(db_session, user):
    """Free-tier preferences with a Google connection that has not expired."""
    prefs = models.UserPreferences(
        user_id=user.id,
        email=user.email,
        google_access_token="access-token",
        google_refresh_token="refresh-token",
        google_token_expiry=utcnow() + timedelta(hours=1),
        gmail_sync_enabled=True,
    )
    db_session.add(prefs)
    db_session.commit()
    return prefs


@pytest.fixture
def store(db_session, user):
    return UserStore(db_session, user.id)


@pytest.fixture
def service_store(db_session):
    return ServiceStore(db_session)


def add_bills(store, count, **overrides):
    """Insert ``count`` active bills directly, bypassing the creation gate."""
    bills = []
    for i in range(count):
        fields = dict(name=f"Bill {i}", amount=10 + i, due_day=1 + (i % 28), category="Other",
                      recurrence="monthly", is_active=True)
        fields.update(overrides)
        bills.append(store.add_bill(**fields))
    store.commit()
    return bills


# ============================================================================
# FAKE EXTERNAL CLIENTS
# ============================================================================


def completion(content):
    """Shape of an OpenAI chat completion response."""
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def fake_llm(responses_by_subject=None, default='{"isBill": false, "confidence": 0}'):
    """LLM client whose reply is chosen by the email subject found in the prompt."""
    responses_by_subject = responses_by_subject or {}
    client = MagicMock()

    def create(**kwargs):
        prompt = kwargs["messages"][0]["content"]
        for subject, content in responses_by_subject.items():
            if f"Email Subject: {subject}\n" in prompt:
                return completion(content)
        return completion(default)

    client.chat.completions.create.side_effect = create
    return client


def make_email(email_id, subject="Your bill is ready", sender="billing@example.com", body="Amount due: $10.00"):
    return GmailMessage(id=email_id, thread_id=f"t-{email_id}", subject=subject, sender=sender,
                        date="Mon, 1 Jan 2024 10:00:00 +0000", snippet="", body=body)


class FakeGmail:
    def __init__(self, emails):
        self.emails = emails
        self.searches = []

    def search_bill_emails(self, after):
        self.searches.append(after)
        return iter(self.emails)


# ============================================================================
# API CLIENT
# ============================================================================


@pytest.fixture
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(user):
    return {"Authorization": f"Bearer {security.create_jwt_token(user_id=user.id)}"}
