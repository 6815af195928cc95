"""Scan bookkeeping models: scan history rows, per-connection results and the
extraction audit trail."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from toolsight.mailbox.models import parse_dt, utc_now


class ScanType(str, Enum):
    BACKFILL = "backfill"
    DAILY = "daily"
    MANUAL = "manual"


class ScanStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class ScanLog(BaseModel):
    """One row of scan history. Append-only apart from completing the row."""

    model_config = ConfigDict(use_enum_values=True)

    id: str
    connection_id: str
    scan_type: ScanType
    status: ScanStatus = ScanStatus.RUNNING
    emails_scanned: int = Field(default=0, ge=0)
    tools_detected: int = Field(default=0, ge=0)
    tools_updated: int = Field(default=0, ge=0)
    quota_limited: bool = False
    stop_reason: str | None = None
    error_message: str | None = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    def to_db_dict(self) -> dict[str, Any]:
        """Convert to dict for database storage."""
        return {
            "id": self.id,
            "connection_id": self.connection_id,
            "scan_type": self.scan_type,
            "status": self.status,
            "emails_scanned": self.emails_scanned,
            "tools_detected": self.tools_detected,
            "tools_updated": self.tools_updated,
            "quota_limited": 1 if self.quota_limited else 0,
            "stop_reason": self.stop_reason,
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> ScanLog:
        """Create ScanLog from database row."""
        return cls(
            id=row["id"],
            connection_id=row["connection_id"],
            scan_type=ScanType(row["scan_type"]),
            status=ScanStatus(row["status"]),
            emails_scanned=row.get("emails_scanned") or 0,
            tools_detected=row.get("tools_detected") or 0,
            tools_updated=row.get("tools_updated") or 0,
            quota_limited=bool(row.get("quota_limited")),
            stop_reason=row.get("stop_reason"),
            error_message=row.get("error_message"),
            started_at=parse_dt(row["started_at"]) or utc_now(),
            completed_at=parse_dt(row.get("completed_at")),
        )


@dataclass
class ScanResult:
    """Outcome of scanning one connection, as returned to the caller."""

    connection_id: str
    status: str
    scan_log_id: str | None = None
    emails_scanned: int = 0
    tools_detected: int = 0
    tools_updated: int = 0
    interruptions_created: int = 0
    quota_limited: bool = False
    stop_reason: str | None = None
    error_message: str | None = None

    @classmethod
    def skipped(cls, connection_id: str, reason: str) -> ScanResult:
        return cls(
            connection_id=connection_id,
            status="skipped",
            quota_limited=True,
            stop_reason=reason,
        )

    @classmethod
    def failed(cls, connection_id: str, error: str, scan_log_id: str | None = None) -> ScanResult:
        return cls(
            connection_id=connection_id,
            status=ScanStatus.FAILED.value,
            scan_log_id=scan_log_id,
            error_message=error,
        )


@dataclass
class ExtractionLogEntry:
    """Audit row for one classified message."""

    user_id: str
    email_id: str
    email_subject: str | None
    classification_confidence: int
    connection_id: str | None = None
    extraction_attempted: bool = False
    extraction_success: bool = False
    validation_passed: bool = False
    failure_reason: str | None = None
    created_at: datetime | None = None
