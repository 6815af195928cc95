"""
Email Connection Repository - reads and writes for connected inboxes.

Consent and token exchange happen elsewhere; the pipeline only reads
connections, persists refreshed tokens and moves scan watermarks.
"""

from __future__ import annotations

from datetime import datetime

from toolsight.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from toolsight.mailbox.models import EmailConnection, utc_now
from toolsight.observability.logging import get_logger

logger = get_logger(__name__)


class ConnectionRepository:
    @staticmethod
    @retry_on_db_lock()
    def create(connection: EmailConnection) -> EmailConnection:
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO email_connections (
                    id, user_id, organization_id, provider, email_address, owner_role,
                    access_token, refresh_token, token_expires_at, is_active,
                    backfill_months, last_scan_at, last_scanned_email_date,
                    last_backfill_at, created_at, updated_at
                ) VALUES (
                    :id, :user_id, :organization_id, :provider, :email_address, :owner_role,
                    :access_token, :refresh_token, :token_expires_at, :is_active,
                    :backfill_months, :last_scan_at, :last_scanned_email_date,
                    :last_backfill_at, :created_at, :updated_at
                )
                """,
                connection.to_db_dict(),
            )
        logger.info("Created email connection %s (%s)", connection.id, connection.provider)
        return connection

    @staticmethod
    def get_by_id(connection_id: str) -> EmailConnection | None:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT * FROM email_connections WHERE id = ?", (connection_id,)
            ).fetchone()
        return EmailConnection.from_db_row(dict(row)) if row else None

    @staticmethod
    def list_active() -> list[EmailConnection]:
        with get_db_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM email_connections WHERE is_active = 1 ORDER BY created_at"
            ).fetchall()
        return [EmailConnection.from_db_row(dict(row)) for row in rows]

    @staticmethod
    @retry_on_db_lock()
    def update_tokens(
        connection_id: str,
        access_token: str,
        token_expires_at: datetime | None,
        refresh_token: str | None = None,
    ) -> None:
        """Persist a refreshed access token (and a rotated refresh token, if any)."""
        now = utc_now().isoformat()
        expires = token_expires_at.isoformat() if token_expires_at else None
        with db_transaction() as conn:
            if refresh_token:
                conn.execute(
                    """
                    UPDATE email_connections
                    SET access_token = ?, refresh_token = ?, token_expires_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (access_token, refresh_token, expires, now, connection_id),
                )
            else:
                conn.execute(
                    """
                    UPDATE email_connections
                    SET access_token = ?, token_expires_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (access_token, expires, now, connection_id),
                )

    @staticmethod
    @retry_on_db_lock()
    def update_watermarks(
        connection_id: str,
        last_scan_at: datetime,
        last_scanned_email_date: datetime | None = None,
        last_backfill_at: datetime | None = None,
    ) -> None:
        """
        Move a connection's scan watermarks forward.

        last_scanned_email_date only ever advances; None leaves it unchanged.
        """
        with db_transaction() as conn:
            conn.execute(
                """
                UPDATE email_connections
                SET last_scan_at = :last_scan_at,
                    last_scanned_email_date = CASE
                        WHEN :email_date IS NULL THEN last_scanned_email_date
                        WHEN last_scanned_email_date IS NULL
                             OR last_scanned_email_date < :email_date THEN :email_date
                        ELSE last_scanned_email_date
                    END,
                    last_backfill_at = COALESCE(:last_backfill_at, last_backfill_at),
                    updated_at = :last_scan_at
                WHERE id = :id
                """,
                {
                    "id": connection_id,
                    "last_scan_at": last_scan_at.isoformat(),
                    "email_date": last_scanned_email_date.isoformat()
                    if last_scanned_email_date
                    else None,
                    "last_backfill_at": last_backfill_at.isoformat() if last_backfill_at else None,
                },
            )
