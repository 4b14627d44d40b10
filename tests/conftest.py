import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("JOB_WORKER_ENABLED", "false")
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("PAGE_SETTLE_SECONDS", "0")
os.environ.setdefault("SUBMIT_SETTLE_SECONDS", "0")

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from unsubscriber.database import Base, get_db
from unsubscriber.main import app
from unsubscriber.models import Email
from unsubscriber.services.jobs import UnsubscribeJobRunner, get_job_runner
from unsubscriber.services.unsubscribe import UnsubscribeOutcome


TEST_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def fake_engine():
    mock_engine = MagicMock()
    mock_engine.attempt = AsyncMock(return_value=UnsubscribeOutcome.succeeded("one_click"))
    return mock_engine


@pytest.fixture
def runner(db, fake_engine):
    return UnsubscribeJobRunner(
        session_factory=TestingSessionLocal,
        engine=fake_engine,
        poll_interval=0.05,
    )


@pytest.fixture(scope="function")
def client(db, runner):
    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_job_runner] = lambda: runner
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def test_email(db):
    email = Email(
        gmail_message_id="msg_123",
        subject="Weekly Newsletter",
        sender="Newsletter",
        sender_email="news@example.com",
        body_text="Thanks for reading.",
        body_html='<p>Thanks for reading. <a href="https://lists.example.com/unsubscribe?u=1">Unsubscribe</a></p>',
        unsubscribe_link="<mailto:leave@example.com>, <https://lists.example.com/unsubscribe?u=1>",
    )
    db.add(email)
    db.commit()
    db.refresh(email)
    return email


@pytest.fixture
def email_without_link(db):
    email = Email(
        gmail_message_id="msg_456",
        subject="Receipt",
        sender="Shop",
        sender_email="orders@example.com",
        body_text="Your order has shipped.",
        body_html="<p>Your order has shipped.</p>",
    )
    db.add(email)
    db.commit()
    db.refresh(email)
    return email
