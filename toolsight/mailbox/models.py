"""
Mailbox domain models: connected inboxes and the messages fetched from them.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from toolsight.config import MAILBOX_BODY_TRUNCATION, SCAN_DEFAULT_BACKFILL_MONTHS


def utc_now() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def parse_dt(val: str | None) -> datetime | None:
    """Parse an ISO timestamp from the database, assuming UTC when naive."""
    if not val:
        return None
    parsed = datetime.fromisoformat(val)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class MailboxProvider(str, Enum):
    GMAIL = "gmail"
    OUTLOOK = "outlook"


class RawMessage(BaseModel):
    """
    One fetched email, as the detection pipeline sees it.

    Ephemeral: built per scan from the provider payload and discarded after
    processing. Only provenance (id, subject, sender) survives on the tool.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Provider message id, unique per mailbox")
    sender: str = Field(default="")
    subject: str = Field(default="")
    body_text: str = Field(default="")
    received_at: datetime
    recipients: list[str] = Field(default_factory=list)

    @field_validator("body_text")
    @classmethod
    def truncate_body(cls, v: str) -> str:
        return v[:MAILBOX_BODY_TRUNCATION]

    @field_validator("received_at")
    @classmethod
    def ensure_aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v.astimezone(UTC)


class EmailConnection(BaseModel):
    """An inbox connected through OAuth, with its scan watermarks."""

    model_config = ConfigDict(use_enum_values=True)

    id: str
    user_id: str
    organization_id: str
    provider: MailboxProvider
    email_address: str = ""
    owner_role: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    is_active: bool = True
    backfill_months: int = Field(default=SCAN_DEFAULT_BACKFILL_MONTHS, ge=1)
    last_scan_at: datetime | None = None
    last_scanned_email_date: datetime | None = None
    last_backfill_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def to_db_dict(self) -> dict[str, Any]:
        """Convert to dict for database storage."""

        def iso(val: datetime | None) -> str | None:
            return val.isoformat() if val else None

        return {
            "id": self.id,
            "user_id": self.user_id,
            "organization_id": self.organization_id,
            "provider": self.provider if isinstance(self.provider, str) else self.provider.value,
            "email_address": self.email_address,
            "owner_role": self.owner_role,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_expires_at": iso(self.token_expires_at),
            "is_active": 1 if self.is_active else 0,
            "backfill_months": self.backfill_months,
            "last_scan_at": iso(self.last_scan_at),
            "last_scanned_email_date": iso(self.last_scanned_email_date),
            "last_backfill_at": iso(self.last_backfill_at),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> EmailConnection:
        """Create EmailConnection from database row."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            organization_id=row["organization_id"],
            provider=MailboxProvider(row["provider"]),
            email_address=row.get("email_address") or "",
            owner_role=row.get("owner_role"),
            access_token=row.get("access_token"),
            refresh_token=row.get("refresh_token"),
            token_expires_at=parse_dt(row.get("token_expires_at")),
            is_active=bool(row.get("is_active", 1)),
            backfill_months=row.get("backfill_months") or SCAN_DEFAULT_BACKFILL_MONTHS,
            last_scan_at=parse_dt(row.get("last_scan_at")),
            last_scanned_email_date=parse_dt(row.get("last_scanned_email_date")),
            last_backfill_at=parse_dt(row.get("last_backfill_at")),
            created_at=parse_dt(row.get("created_at")) or utc_now(),
            updated_at=parse_dt(row.get("updated_at")) or utc_now(),
        )
