"""
Scan history and extraction audit repositories.
"""

from __future__ import annotations

from datetime import datetime

from toolsight.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from toolsight.mailbox.models import utc_now
from toolsight.observability.logging import get_logger
from toolsight.scanning.models import ExtractionLogEntry, ScanLog, ScanStatus

logger = get_logger(__name__)


class ScanLogRepository:
    @staticmethod
    @retry_on_db_lock()
    def start(log: ScanLog) -> ScanLog:
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO email_scan_logs (
                    id, connection_id, scan_type, status, emails_scanned,
                    tools_detected, tools_updated, quota_limited, stop_reason,
                    error_message, started_at, completed_at
                ) VALUES (
                    :id, :connection_id, :scan_type, :status, :emails_scanned,
                    :tools_detected, :tools_updated, :quota_limited, :stop_reason,
                    :error_message, :started_at, :completed_at
                )
                """,
                log.to_db_dict(),
            )
        return log

    @staticmethod
    @retry_on_db_lock()
    def complete(
        log_id: str,
        emails_scanned: int,
        tools_detected: int,
        tools_updated: int,
        quota_limited: bool = False,
        stop_reason: str | None = None,
        completed_at: datetime | None = None,
    ) -> None:
        with db_transaction() as conn:
            conn.execute(
                """
                UPDATE email_scan_logs
                SET status = ?, emails_scanned = ?, tools_detected = ?, tools_updated = ?,
                    quota_limited = ?, stop_reason = ?, completed_at = ?
                WHERE id = ?
                """,
                (
                    ScanStatus.SUCCESS.value,
                    emails_scanned,
                    tools_detected,
                    tools_updated,
                    1 if quota_limited else 0,
                    stop_reason,
                    (completed_at or utc_now()).isoformat(),
                    log_id,
                ),
            )

    @staticmethod
    @retry_on_db_lock()
    def fail(
        log_id: str,
        error_message: str,
        emails_scanned: int = 0,
        completed_at: datetime | None = None,
    ) -> None:
        with db_transaction() as conn:
            conn.execute(
                """
                UPDATE email_scan_logs
                SET status = ?, error_message = ?, emails_scanned = ?, completed_at = ?
                WHERE id = ?
                """,
                (
                    ScanStatus.FAILED.value,
                    error_message[:1000],
                    emails_scanned,
                    (completed_at or utc_now()).isoformat(),
                    log_id,
                ),
            )

    @staticmethod
    def get_by_id(log_id: str) -> ScanLog | None:
        with get_db_connection() as conn:
            row = conn.execute("SELECT * FROM email_scan_logs WHERE id = ?", (log_id,)).fetchone()
        return ScanLog.from_db_row(dict(row)) if row else None

    @staticmethod
    def list_for_connection(connection_id: str, limit: int = 50) -> list[ScanLog]:
        """Most recent scans first."""
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM email_scan_logs
                WHERE connection_id = ?
                ORDER BY started_at DESC
                LIMIT ?
                """,
                (connection_id, limit),
            ).fetchall()
        return [ScanLog.from_db_row(dict(row)) for row in rows]


class ExtractionLogRepository:
    @staticmethod
    @retry_on_db_lock()
    def append(entry: ExtractionLogEntry) -> None:
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO extraction_logs (
                    user_id, connection_id, email_id, email_subject,
                    classification_confidence, extraction_attempted,
                    extraction_success, validation_passed, failure_reason, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.user_id,
                    entry.connection_id,
                    entry.email_id,
                    (entry.email_subject or "")[:200],
                    entry.classification_confidence,
                    1 if entry.extraction_attempted else 0,
                    1 if entry.extraction_success else 0,
                    1 if entry.validation_passed else 0,
                    entry.failure_reason,
                    (entry.created_at or utc_now()).isoformat(),
                ),
            )

    @staticmethod
    def list_for_user(user_id: str, limit: int = 500) -> list[ExtractionLogEntry]:
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM extraction_logs
                WHERE user_id = ?
                ORDER BY id
                LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [
            ExtractionLogEntry(
                user_id=row["user_id"],
                connection_id=row["connection_id"],
                email_id=row["email_id"],
                email_subject=row["email_subject"],
                classification_confidence=row["classification_confidence"],
                extraction_attempted=bool(row["extraction_attempted"]),
                extraction_success=bool(row["extraction_success"]),
                validation_passed=bool(row["validation_passed"]),
                failure_reason=row["failure_reason"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]
