"""
Detected tool domain models.

A DetectedTool is the canonical record of one vendor an organization pays,
keyed by (organization_id, normalized_vendor). The pipeline creates and
merges tools but never deletes them; a cancelled subscription keeps its row
with status "cancelled".
"""

from __future__ import annotations

import re
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from toolsight.mailbox.models import parse_dt, utc_now


def normalize_vendor(vendor_name: str) -> str:
    """
    Dedup key for a vendor: lower-cased, non-alphanumeric runs collapsed to "_".

    "HubSpot" -> "hubspot", "Monday.com" -> "monday_com"
    """
    return re.sub(r"[^a-z0-9]+", "_", vendor_name.lower()).strip("_")


class ToolStatus(str, Enum):
    ACTIVE = "active"
    TRIAL = "trial"
    CANCELLED = "cancelled"


class OwnershipStatus(str, Enum):
    UNCONFIRMED = "unconfirmed"
    CONFIRMED = "confirmed"
    DISPUTED = "disputed"


class ToolCategory(str, Enum):
    MARKETING = "marketing"
    MARKETING_ADJACENT = "marketing_adjacent"
    OTHER = "other"


def _parse_date(val: str | None) -> date | None:
    return date.fromisoformat(val[:10]) if val else None


class DetectedTool(BaseModel):
    """Canonical subscription record for one vendor in one organization."""

    model_config = ConfigDict(use_enum_values=True)

    # Identity
    id: str
    organization_id: str
    vendor_name: str
    normalized_vendor: str

    # Billing
    last_charge_amount: float | None = None
    currency: str | None = None
    last_charge_date: date | None = None
    billing_frequency: str = "unknown"
    estimated_renewal_date: date | None = None
    first_seen_date: date

    # Lifecycle
    status: ToolStatus = ToolStatus.ACTIVE
    renewal_count: int = Field(default=0, ge=0)
    confidence_score: int = Field(default=0, ge=0, le=100)

    # Ownership and interaction
    inferred_owner_id: str | None = None
    owner_confirmation_status: OwnershipStatus = OwnershipStatus.UNCONFIRMED
    last_interaction_date: datetime | None = None

    # Categorisation
    tool_category: ToolCategory = ToolCategory.OTHER
    marketing_relevance_score: int = Field(default=0, ge=0, le=100)
    detection_reason: str | None = None

    # Provenance of the message that created the tool
    source_connection_id: str | None = None
    source_email_id: str | None = None
    source_email_subject: str | None = None
    source_email_sender: str | None = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("vendor_name")
    @classmethod
    def vendor_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("vendor_name cannot be empty")
        return v.strip()

    def to_db_dict(self) -> dict[str, Any]:
        """Convert to dict for database storage."""

        def iso(val: date | datetime | None) -> str | None:
            return val.isoformat() if val else None

        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "vendor_name": self.vendor_name,
            "normalized_vendor": self.normalized_vendor,
            "last_charge_amount": self.last_charge_amount,
            "currency": self.currency,
            "last_charge_date": iso(self.last_charge_date),
            "billing_frequency": self.billing_frequency,
            "estimated_renewal_date": iso(self.estimated_renewal_date),
            "first_seen_date": iso(self.first_seen_date),
            "status": self.status if isinstance(self.status, str) else self.status.value,
            "renewal_count": self.renewal_count,
            "confidence_score": self.confidence_score,
            "inferred_owner_id": self.inferred_owner_id,
            "owner_confirmation_status": self.owner_confirmation_status
            if isinstance(self.owner_confirmation_status, str)
            else self.owner_confirmation_status.value,
            "last_interaction_date": iso(self.last_interaction_date),
            "tool_category": self.tool_category
            if isinstance(self.tool_category, str)
            else self.tool_category.value,
            "marketing_relevance_score": self.marketing_relevance_score,
            "detection_reason": self.detection_reason,
            "source_connection_id": self.source_connection_id,
            "source_email_id": self.source_email_id,
            "source_email_subject": self.source_email_subject,
            "source_email_sender": self.source_email_sender,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> DetectedTool:
        """Create DetectedTool from database row."""
        return cls(
            id=row["id"],
            organization_id=row["organization_id"],
            vendor_name=row["vendor_name"],
            normalized_vendor=row["normalized_vendor"],
            last_charge_amount=row.get("last_charge_amount"),
            currency=row.get("currency"),
            last_charge_date=_parse_date(row.get("last_charge_date")),
            billing_frequency=row.get("billing_frequency") or "unknown",
            estimated_renewal_date=_parse_date(row.get("estimated_renewal_date")),
            first_seen_date=_parse_date(row["first_seen_date"]),
            status=ToolStatus(row["status"]),
            renewal_count=row.get("renewal_count") or 0,
            confidence_score=row.get("confidence_score") or 0,
            inferred_owner_id=row.get("inferred_owner_id"),
            owner_confirmation_status=OwnershipStatus(
                row.get("owner_confirmation_status") or "unconfirmed"
            ),
            last_interaction_date=parse_dt(row.get("last_interaction_date")),
            tool_category=ToolCategory(row.get("tool_category") or "other"),
            marketing_relevance_score=row.get("marketing_relevance_score") or 0,
            detection_reason=row.get("detection_reason"),
            source_connection_id=row.get("source_connection_id"),
            source_email_id=row.get("source_email_id"),
            source_email_subject=row.get("source_email_subject"),
            source_email_sender=row.get("source_email_sender"),
            created_at=parse_dt(row.get("created_at")) or utc_now(),
            updated_at=parse_dt(row.get("updated_at")) or utc_now(),
        )
