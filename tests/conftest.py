"""
Pytest configuration shared across the suite.

Every test gets its own SQLite database (TOOLSIGHT_DB_PATH under tmp_path)
and a clean telemetry registry. Dates are built relative to today.
"""

from __future__ import annotations

import itertools
import uuid
from datetime import UTC, date, datetime, timedelta

import pytest

from toolsight.detection.lexicon import DetectionLexicon, load_lexicon
from toolsight.infrastructure.database import init_database, reset_pool
from toolsight.mailbox.connection_repository import ConnectionRepository
from toolsight.mailbox.models import EmailConnection, MailboxProvider, RawMessage
from toolsight.observability.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def temp_db(tmp_path, monkeypatch):
    """Point the pool at a fresh database for each test."""
    db_path = tmp_path / "toolsight.db"
    monkeypatch.setenv("TOOLSIGHT_DB_PATH", str(db_path))
    monkeypatch.delenv("TOOLSIGHT_USE_LLM", raising=False)
    reset_pool()
    init_database()
    reset_telemetry()
    yield db_path
    reset_pool()


@pytest.fixture
def lexicon() -> DetectionLexicon:
    return load_lexicon()


@pytest.fixture
def today() -> date:
    return datetime.now(UTC).date()


@pytest.fixture
def hubspot_body(today):
    """Body of the canonical HubSpot invoice, renewing ``days`` from today."""

    def _body(days: int = 20, amount: str = "$450") -> str:
        next_charge = (today + timedelta(days=days)).isoformat()
        return f"Your subscription renews monthly. Total: {amount}. Next charge: {next_charge}."

    return _body


@pytest.fixture
def make_message():
    ids = itertools.count(1)

    def _make(
        sender: str = "billing@hubspot.com",
        subject: str = "Your HubSpot invoice",
        body: str = "",
        received_at: datetime | None = None,
        message_id: str | None = None,
        recipients: list[str] | None = None,
    ) -> RawMessage:
        n = next(ids)
        return RawMessage(
            id=message_id or f"msg-{n}",
            sender=sender,
            subject=subject,
            body_text=body,
            received_at=received_at or datetime.now(UTC) - timedelta(hours=1, seconds=n),
            recipients=recipients or ["owner@example.com"],
        )

    return _make


@pytest.fixture
def make_connection():
    """Persist an active connection with a token valid for the next hour."""

    def _make(
        user_id: str = "user-1",
        organization_id: str = "org-1",
        provider: MailboxProvider = MailboxProvider.GMAIL,
        **overrides,
    ) -> EmailConnection:
        fields = {
            "id": f"conn-{uuid.uuid4().hex[:8]}",
            "user_id": user_id,
            "organization_id": organization_id,
            "provider": provider,
            "email_address": f"{user_id}@example.com",
            "access_token": "access-token",
            "refresh_token": "refresh-token",
            "token_expires_at": datetime.now(UTC) + timedelta(hours=1),
        }
        fields.update(overrides)
        return ConnectionRepository.create(EmailConnection(**fields))

    return _make
